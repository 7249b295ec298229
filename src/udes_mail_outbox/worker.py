"""Long-running mail outbox worker.

Usage:
    python -m src.udes_mail_outbox.worker

Reads its settings from the environment (see config.py) and polls the mail queue
until it receives SIGINT or SIGTERM.
"""
import logging
import os
import signal
import sys
import threading
from typing import Mapping

from .config import WorkerConfig, load_config
from .exceptions import ConfigError
from .repositories.database import get_session_maker
from .repositories.mail_queue_repo import MailQueueRepository
from .services.outbox_service import OutboxDispatcher
from .services.transport_service import build_transport


def configure_logging(level_name: str | None = None) -> None:
    """Configure root logging for a standalone process."""
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Stop the polling loop after the current cycle on SIGINT or SIGTERM."""
    def _handle(signum, _frame):
        logging.info(f"Received signal {signum}, stopping after the current cycle.")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def main(environ: Mapping[str, str] | None = None, stop_event: threading.Event | None = None) -> int:
    """
    Run the outbox worker until stopped.

    Args:
        environ (Mapping[str, str] | None): The environment to configure from, defaults to os.environ.
        stop_event (threading.Event | None): Event that ends the loop, signal handlers are installed when omitted.

    Returns:
        int: The process exit status.
    """
    if environ is None:
        environ = os.environ
    configure_logging(environ.get("LOG_LEVEL"))

    try:
        config: WorkerConfig = load_config(environ)
    except ConfigError as e:
        logging.error(f"Mail outbox worker cannot start: {e}")
        return 1

    if stop_event is None:
        stop_event = threading.Event()
        install_signal_handlers(stop_event)

    session_maker = get_session_maker(config.sqlalchemy_connection_string, config.sqlalchemy_echo)
    with session_maker() as db:
        dispatcher: OutboxDispatcher = OutboxDispatcher.from_config(
            config=config,
            store=MailQueueRepository(db),
            transport=build_transport(config),
        )
        dispatcher.run_forever(stop_event)
    return 0


if __name__ == "__main__":
    sys.exit(main())
