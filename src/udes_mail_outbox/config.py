"""Configuration for the UDES E-Exchange mail outbox worker."""
import os
from typing import Literal, Mapping

from pydantic import BaseModel

from .exceptions import ConfigError

# --- Business Logic Constants ---
DEFAULT_SUBJECT: str = "UDES E-Exchange"
TEXT_TEMPLATE_FILE_NAME: str = "contact_message.txt"
HTML_TEMPLATE_FILE_NAME: str = "contact_message.html"
MAX_ERROR_LENGTH: int = 2000

# --- Timer Trigger (read at import, the Functions host needs it to register the trigger) ---
MAIL_QUEUE_SCHEDULE: str = os.getenv("MAIL_QUEUE_SCHEDULE", "*/10 * * * * *")

TRUE_VALUES = ("true", "1", "yes", "on")


class DatabaseConfig(BaseModel):
    """Settings for the Queue Store connection."""
    sqlalchemy_connection_string: str
    sqlalchemy_echo: bool = False


class WorkerConfig(DatabaseConfig):
    """Settings for the outbox dispatcher and its collaborators."""
    mail_transport: Literal["smtp", "blob"] = "smtp"
    mail_host: str | None = None
    mail_port: int = 587
    mail_user: str | None = None
    mail_pass: str | None = None
    mail_secure: bool = False
    mail_from: str

    acs_sender_connection_string: str | None = None
    acs_sender_container_name: str | None = None

    batch_size: int = 10
    poll_interval: float = 10.0
    max_attempts: int = 1
    claim_rows: bool = True
    lease_seconds: int = 300

    disable_email: bool = False


def _get_required_env(environ: Mapping[str, str], var_name: str, missing: list[str]) -> str | None:
    """Gets a required environment variable, recording its name when it is missing or blank."""
    value = environ.get(var_name)
    if value is None or not value.strip():
        missing.append(var_name)
        return None
    return value


def _get_flag(environ: Mapping[str, str], var_name: str, default: bool = False) -> bool:
    """Parses an on/off environment setting."""
    setting: str | None = environ.get(var_name)
    if setting is None or not setting.strip():
        return default
    return setting.strip().lower() in TRUE_VALUES


def _get_number(environ: Mapping[str, str], var_name: str, default: int | float, cast=int):
    """Parses a numeric environment setting, raising ConfigError when it is not a positive number."""
    setting: str | None = environ.get(var_name)
    if setting is None or not setting.strip():
        return default
    try:
        value = cast(setting.strip())
    except ValueError:
        raise ConfigError(f"Environment variable '{var_name}' must be a number, got '{setting}'")
    if value <= 0:
        raise ConfigError(f"Environment variable '{var_name}' must be greater than zero, got '{setting}'")
    return value


def load_database_config(environ: Mapping[str, str] | None = None) -> DatabaseConfig:
    """
    Read only the Queue Store settings, for callers that never send mail.

    Raises:
        ConfigError: If SQLALCHEMY_CONNECTION_STRING is missing or blank.
    """
    if environ is None:
        environ = os.environ

    missing: list[str] = []
    connection_string = _get_required_env(environ, "SQLALCHEMY_CONNECTION_STRING", missing)
    if missing:
        raise ConfigError(f"Missing required environment variable(s): {', '.join(missing)}")

    return DatabaseConfig(
        sqlalchemy_connection_string=connection_string,
        sqlalchemy_echo=_get_flag(environ, "SQLALCHEMY_ECHO"),
    )


def load_config(environ: Mapping[str, str] | None = None) -> WorkerConfig:
    """
    Build the worker configuration from environment variables.

    Args:
        environ (Mapping[str, str] | None): The environment to read, defaults to os.environ.

    Returns:
        WorkerConfig: The validated configuration.

    Raises:
        ConfigError: If required settings are missing or malformed. Every missing
            variable is named in the message.
    """
    if environ is None:
        environ = os.environ

    missing: list[str] = []

    # --- Queue Store (Required) ---
    connection_string = _get_required_env(environ, "SQLALCHEMY_CONNECTION_STRING", missing)

    # --- Mail Transport ---
    transport = (environ.get("MAIL_TRANSPORT") or "smtp").strip().lower()
    if transport not in ("smtp", "blob"):
        raise ConfigError(f"Unsupported MAIL_TRANSPORT '{transport}', expected 'smtp' or 'blob'")

    mail_host: str | None = None
    acs_connection_string: str | None = None
    acs_container_name: str | None = None
    if transport == "smtp":
        mail_host = _get_required_env(environ, "MAIL_HOST", missing)
    else:
        acs_connection_string = _get_required_env(environ, "ACS_SENDER_CONNECTION_STRING", missing)
        acs_container_name = _get_required_env(environ, "ACS_SENDER_CONTAINER_NAME", missing)

    mail_user: str | None = environ.get("MAIL_USER") or None
    mail_from: str | None = environ.get("MAIL_FROM") or mail_user
    if not mail_from:
        missing.append("MAIL_FROM")

    if missing:
        raise ConfigError(f"Missing required environment variable(s): {', '.join(missing)}")

    return WorkerConfig(
        sqlalchemy_connection_string=connection_string,
        sqlalchemy_echo=_get_flag(environ, "SQLALCHEMY_ECHO"),
        mail_transport=transport,
        mail_host=mail_host,
        mail_port=_get_number(environ, "MAIL_PORT", 587),
        mail_user=mail_user,
        mail_pass=environ.get("MAIL_PASS") or None,
        mail_secure=_get_flag(environ, "MAIL_SECURE"),
        mail_from=mail_from,
        acs_sender_connection_string=acs_connection_string,
        acs_sender_container_name=acs_container_name,
        batch_size=_get_number(environ, "MAIL_QUEUE_BATCH_SIZE", 10),
        poll_interval=_get_number(environ, "MAIL_QUEUE_POLL_INTERVAL", 10.0, cast=float),
        max_attempts=_get_number(environ, "MAIL_QUEUE_MAX_ATTEMPTS", 1),
        claim_rows=_get_flag(environ, "MAIL_QUEUE_CLAIM_ROWS", default=True),
        lease_seconds=_get_number(environ, "MAIL_QUEUE_LEASE_SECONDS", 300),
        disable_email=_get_flag(environ, "DISABLE_EMAIL"),
    )
