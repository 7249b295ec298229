"""Mail transports used by the outbox dispatcher."""
import logging
import smtplib
import uuid
from email.message import EmailMessage as MimeMessage
from typing import Protocol

from azure.core.exceptions import AzureError
from azure.storage.blob import BlobClient, ContentSettings

from ..config import WorkerConfig
from ..exceptions import ConfigError, SendError
from ..models.email import EmailMessage


class MailTransport(Protocol):
    """Delivers a composed email message."""

    def send(self, email_message: EmailMessage) -> None:
        """Send the message, raising SendError on any transport failure."""


class SmtpTransport:
    """Sends each message over its own SMTP connection."""

    def __init__(
            self,
            host: str,
            port: int = 587,
            username: str | None = None,
            password: str | None = None,
            use_ssl: bool = False,
            timeout: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.timeout = timeout

    def build_mime_message(self, email_message: EmailMessage) -> MimeMessage:
        """Builds a multipart/alternative message with plain-text and HTML parts."""
        mime = MimeMessage()
        mime["From"] = email_message.sender
        mime["To"] = ", ".join(email_message.to)
        if email_message.cc:
            mime["Cc"] = ", ".join(email_message.cc)
        mime["Subject"] = email_message.subject
        mime.set_content(email_message.plaintext or "")
        if email_message.html:
            mime.add_alternative(email_message.html, subtype="html")
        return mime

    def send(self, email_message: EmailMessage) -> None:
        """
        Send a message through the configured SMTP server.

        Args:
            email_message (EmailMessage): The message to send.

        Raises:
            SendError: On malformed headers, connection, authentication or recipient errors.
        """
        try:
            mime = self.build_mime_message(email_message)
            if self.use_ssl:
                server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            with server:
                if not self.use_ssl:
                    server.ehlo()
                    if server.has_extn("starttls"):
                        server.starttls()
                        server.ehlo()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(mime)
        except (smtplib.SMTPException, OSError, ValueError) as e:
            logging.error(f"SMTP delivery to {', '.join(email_message.to)} failed: {e}")
            raise SendError(f"SMTP delivery failed: {e}") from e
        logging.debug(f"SMTP delivery to {', '.join(email_message.to)} accepted by {self.host}.")


class BlobRelayTransport:
    """
    Serializes messages to blobs, which trigger the downstream email sending service.
    """

    def __init__(self, connection_string: str, container_name: str):
        if not all([connection_string, container_name]):
            raise ConfigError("Blob relay connection string and container name are required.")
        self.connection_string = connection_string
        self.container_name = container_name

    def send(self, email_message: EmailMessage) -> None:
        """
        Upload the message as JSON to the relay container.

        Args:
            email_message (EmailMessage): The message to send.

        Raises:
            SendError: If the blob could not be written.
        """
        prefix = email_message.reference or "mail"
        blob_name = f"{prefix}-{uuid.uuid4()}.json"
        try:
            logging.info(f"Mail {prefix}: Uploading email content to blob '{self.container_name}/{blob_name}'.")
            blob_client = BlobClient.from_connection_string(
                conn_str=self.connection_string,
                container_name=self.container_name,
                blob_name=blob_name
            )
            blob_client.upload_blob(
                email_message.model_dump_json(),
                overwrite=True,
                content_settings=ContentSettings(content_type='application/json')
            )
            logging.info(f"Mail {prefix}: Successfully uploaded email content blob.")
        except (AzureError, ValueError) as e:
            logging.exception(f"Mail {prefix}: Failed to create blob for email message: {e}")
            raise SendError(f"Blob relay upload failed: {e}") from e


def build_transport(config: WorkerConfig) -> MailTransport:
    """
    Create the transport selected by MAIL_TRANSPORT.

    Args:
        config (WorkerConfig): The worker configuration.

    Returns:
        MailTransport: An SMTP or blob relay transport.
    """
    if config.mail_transport == "blob":
        return BlobRelayTransport(
            connection_string=config.acs_sender_connection_string,
            container_name=config.acs_sender_container_name,
        )
    return SmtpTransport(
        host=config.mail_host,
        port=config.mail_port,
        username=config.mail_user,
        password=config.mail_pass,
        use_ssl=config.mail_secure,
    )
