"""Outbox dispatcher that delivers queued mail."""
import logging
import threading
from dataclasses import dataclass
from typing import Protocol

from jinja2 import TemplateError

from ..config import WorkerConfig
from ..exceptions import SendError, StoreUnavailable, UpdateError
from ..models.email import EmailMessage, RenderedMail
from ..models.mail_queue import MailQueueRecord, MailQueueStatus
from .template_service import MailRenderer
from .transport_service import MailTransport


class QueueStore(Protocol):
    """Storage operations the dispatcher needs from the mail queue."""

    def fetch_pending(self, limit: int) -> list[MailQueueRecord]: ...

    def claim(self, record_id: str) -> bool: ...

    def release_stale_claims(self, lease_seconds: int) -> int: ...

    def mark_sent(self, record_id: str) -> None: ...

    def mark_failed(self, record_id: str, error_text: str, max_attempts: int = 1) -> MailQueueStatus: ...


@dataclass
class BatchSummary:
    """Counts for one dispatch cycle."""
    fetched: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class OutboxDispatcher:
    """
    Polls the mail queue and delivers pending messages, oldest first.

    Records are processed one at a time. A failure on one record is written to that
    record and never stops the rest of the batch.
    """

    def __init__(
            self,
            store: QueueStore,
            transport: MailTransport,
            sender: str,
            renderer: MailRenderer | None = None,
            batch_size: int = 10,
            poll_interval: float = 10.0,
            max_attempts: int = 1,
            claim_rows: bool = True,
            lease_seconds: int = 300,
            disable_email: bool = False,
    ):
        self.store = store
        self.transport = transport
        self.sender = sender
        self.renderer = renderer or MailRenderer()
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.claim_rows = claim_rows
        self.lease_seconds = lease_seconds
        self.disable_email = disable_email
        self._running = threading.Lock()

    @classmethod
    def from_config(
            cls, config: WorkerConfig, store: QueueStore, transport: MailTransport,
            renderer: MailRenderer | None = None
    ) -> "OutboxDispatcher":
        """Create a dispatcher using the batch, retry and claim settings from the configuration."""
        return cls(
            store=store,
            transport=transport,
            sender=config.mail_from,
            renderer=renderer,
            batch_size=config.batch_size,
            poll_interval=config.poll_interval,
            max_attempts=config.max_attempts,
            claim_rows=config.claim_rows,
            lease_seconds=config.lease_seconds,
            disable_email=config.disable_email,
        )

    def process_batch(self) -> BatchSummary:
        """
        Deliver up to batch_size pending messages.

        Store outages end the cycle early and are only logged; the next cycle tries again.

        Returns:
            BatchSummary: What happened during the cycle.
        """
        summary = BatchSummary()

        if self.disable_email:
            logging.info("OutboxDispatcher: Email is disabled. Skipping mail queue.")
            return summary

        if not self._running.acquire(blocking=False):
            logging.warning("OutboxDispatcher: Previous batch still running. Skipping this cycle.")
            return summary

        try:
            try:
                if self.claim_rows:
                    released: int = self.store.release_stale_claims(self.lease_seconds)
                    if released:
                        logging.warning(f"OutboxDispatcher: Released {released} stale claim(s) back to the queue.")

                records: list[MailQueueRecord] = self.store.fetch_pending(self.batch_size)
            except StoreUnavailable as e:
                logging.error(f"OutboxDispatcher: Mail queue unavailable, ending cycle: {e}")
                return summary

            summary.fetched = len(records)
            if not records:
                logging.debug("OutboxDispatcher: No pending mail.")
                return summary

            logging.info(f"OutboxDispatcher: Processing batch of {len(records)} pending message(s).")
            for record in records:
                self._dispatch_record(record, summary)

            logging.info(
                f"OutboxDispatcher: Batch complete. Sent: {summary.sent}, failed: {summary.failed}, "
                f"skipped: {summary.skipped}."
            )
            return summary
        finally:
            self._running.release()

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        """
        Run process_batch every poll_interval seconds until stop_event is set.

        Args:
            stop_event (threading.Event | None): Set it to stop the loop after the current cycle.
        """
        if stop_event is None:
            stop_event = threading.Event()

        logging.info(f"OutboxDispatcher: Polling mail queue every {self.poll_interval} seconds.")
        while not stop_event.is_set():
            try:
                self.process_batch()
            except Exception as e:
                logging.exception(f"OutboxDispatcher: Unexpected error during cycle: {e}")
            stop_event.wait(self.poll_interval)
        logging.info("OutboxDispatcher: Stopped.")

    def compose(self, record: MailQueueRecord, rendered: RenderedMail) -> EmailMessage:
        """Build the transport message for a rendered record."""
        return EmailMessage(
            sender=self.sender,
            to=[record.recipient_email],
            subject=rendered.subject,
            plaintext=rendered.text,
            html=rendered.html,
            reference=record.id,
        )

    def _dispatch_record(self, record: MailQueueRecord, summary: BatchSummary) -> None:
        record_id: str = record.id

        if self.claim_rows:
            try:
                if not self.store.claim(record_id):
                    logging.info(f"Mail {record_id}: Claimed by another worker. Skipping.")
                    summary.skipped += 1
                    return
            except StoreUnavailable as e:
                logging.error(f"Mail {record_id}: Could not claim record, leaving it pending: {e}")
                summary.skipped += 1
                return

        try:
            rendered: RenderedMail = self.renderer.render(record)
            self.transport.send(self.compose(record, rendered))
        except SendError as e:
            logging.error(f"Mail {record_id}: Send to {record.recipient_email} failed: {e}")
            self._record_failure(record_id, e, summary)
            return
        except TemplateError as e:
            logging.error(f"Mail {record_id}: Error rendering templates: {e}", exc_info=True)
            self._record_failure(record_id, e, summary)
            return
        except Exception as e:
            logging.exception(f"Mail {record_id}: Unexpected error sending mail: {e}")
            self._record_failure(record_id, e, summary)
            return

        summary.sent += 1
        try:
            self.store.mark_sent(record_id)
            logging.info(f"Mail {record_id}: Sent to {record.recipient_email}.")
        except UpdateError as e:
            logging.error(f"Mail {record_id}: Sent, but the status update failed: {e}")

    def _record_failure(self, record_id: str, error: Exception, summary: BatchSummary) -> None:
        summary.failed += 1
        try:
            status: MailQueueStatus = self.store.mark_failed(record_id, str(error) or repr(error), self.max_attempts)
        except UpdateError as e:
            logging.error(f"Mail {record_id}: Failed, and the status update failed too: {e}")
            return
        if status == MailQueueStatus.PENDING:
            logging.warning(f"Mail {record_id}: Left pending for a later attempt.")
