"""Repository for the mail queue table."""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import Select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import MAX_ERROR_LENGTH
from ..exceptions import StoreUnavailable, UpdateError
from ..models.mail_queue import MailQueueRecord, MailQueueStatus, utcnow


class MailQueueRepository:
    """
    Repository for reading and updating queued messages.
    """

    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self.session: Session = session
        self.clock = clock

    def fetch_pending(self, limit: int) -> list[MailQueueRecord]:
        """
        Get the oldest pending messages.

        Args:
            limit (int): The maximum number of messages to return.

        Returns:
            list[MailQueueRecord]: Pending messages ordered by creation time, oldest first.

        Raises:
            StoreUnavailable: If the mail queue cannot be read.
        """
        stmt = (
            Select(MailQueueRecord)
            .where(MailQueueRecord.status == MailQueueStatus.PENDING)
            .order_by(MailQueueRecord.created_at.asc(), MailQueueRecord.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        try:
            return list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logging.error(f'Database error fetching pending mail: {e}')
            self.session.rollback()
            raise StoreUnavailable(f'Unable to fetch pending mail: {e}') from e

    def claim(self, record_id: str) -> bool:
        """
        Atomically move a pending message to in-progress.

        Args:
            record_id (str): The ID of the message to claim.

        Returns:
            bool: True if this call claimed the message, False if it was no longer pending.

        Raises:
            StoreUnavailable: If the claim could not be written.
        """
        stmt = (
            update(MailQueueRecord)
            .where(MailQueueRecord.id == record_id, MailQueueRecord.status == MailQueueStatus.PENDING)
            .values(status=MailQueueStatus.IN_PROGRESS, claimed_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as e:
            logging.error(f'Database error claiming mail {record_id}: {e}')
            self.session.rollback()
            raise StoreUnavailable(f'Unable to claim mail {record_id}: {e}') from e
        return result.rowcount == 1

    def release_stale_claims(self, lease_seconds: int) -> int:
        """
        Return messages whose claim has outlived the lease to pending.

        Args:
            lease_seconds (int): How long a claim is honoured.

        Returns:
            int: The number of messages released.

        Raises:
            StoreUnavailable: If the release could not be written.
        """
        cutoff: datetime = self.clock() - timedelta(seconds=lease_seconds)
        stmt = (
            update(MailQueueRecord)
            .where(MailQueueRecord.status == MailQueueStatus.IN_PROGRESS, MailQueueRecord.claimed_at < cutoff)
            .values(status=MailQueueStatus.PENDING, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as e:
            logging.error(f'Database error releasing stale mail claims: {e}')
            self.session.rollback()
            raise StoreUnavailable(f'Unable to release stale claims: {e}') from e
        return result.rowcount

    def mark_sent(self, record_id: str) -> None:
        """
        Record a successful delivery.

        Args:
            record_id (str): The ID of the delivered message.

        Raises:
            UpdateError: If the message does not exist or the update fails.
        """
        try:
            record = self._get_for_update(record_id)
            record.status = MailQueueStatus.SENT
            record.processed_at = self.clock()
            record.claimed_at = None
            record.last_error = None
            record.attempt_count = (record.attempt_count or 0) + 1
            self.session.commit()
        except SQLAlchemyError as e:
            logging.error(f'Database error marking mail {record_id} as sent: {e}')
            self.session.rollback()
            raise UpdateError(f'Unable to mark mail {record_id} as sent: {e}') from e

    def mark_failed(self, record_id: str, error_text: str, max_attempts: int = 1) -> MailQueueStatus:
        """
        Record a failed delivery attempt.

        The message becomes Failed once its attempt count reaches max_attempts, otherwise
        it goes back to Pending for a later cycle. Sent messages are left untouched.

        Args:
            record_id (str): The ID of the message.
            error_text (str): The error to store in last_error.
            max_attempts (int): Attempts allowed before the message is failed for good.

        Returns:
            MailQueueStatus: The status the message was left in.

        Raises:
            UpdateError: If the message does not exist or the update fails.
        """
        try:
            record = self._get_for_update(record_id)
            if record.status == MailQueueStatus.SENT:
                logging.warning(f'Mail {record_id} is already sent, not recording failure: {error_text}')
                return record.status
            record.attempt_count = (record.attempt_count or 0) + 1
            record.last_error = error_text[:MAX_ERROR_LENGTH]
            record.claimed_at = None
            if record.attempt_count >= max_attempts:
                record.status = MailQueueStatus.FAILED
            else:
                record.status = MailQueueStatus.PENDING
            self.session.commit()
            return record.status
        except SQLAlchemyError as e:
            logging.error(f'Database error marking mail {record_id} as failed: {e}')
            self.session.rollback()
            raise UpdateError(f'Unable to mark mail {record_id} as failed: {e}') from e

    def enqueue(self, recipient_email: str, subject: str | None = None,
                payload: dict[str, Any] | None = None) -> MailQueueRecord:
        """
        Add a pending message to the queue.

        Args:
            recipient_email (str): The destination address.
            subject (str | None): The subject, the default subject is used when empty.
            payload (dict[str, Any] | None): Fields rendered into the message body.

        Returns:
            MailQueueRecord: The created message.
        """
        record = MailQueueRecord(
            recipient_email=recipient_email,
            subject=subject,
            payload=payload or {},
            status=MailQueueStatus.PENDING,
            attempt_count=0,
            created_at=self.clock(),
        )
        try:
            self.session.add(record)
            self.session.commit()
            self.session.refresh(record)
            return record
        except SQLAlchemyError as e:
            logging.error(f'Error enqueuing mail for {recipient_email}: {e}')
            self.session.rollback()
            raise StoreUnavailable(f'Unable to enqueue mail: {e}') from e

    def get_by_id(self, record_id: str) -> MailQueueRecord | None:
        """
        Get a message by its ID.

        Args:
            record_id (str): The ID of the message.

        Returns:
            MailQueueRecord | None: The message, or None if it does not exist.
        """
        stmt = Select(MailQueueRecord).where(MailQueueRecord.id == record_id)
        try:
            return self.session.execute(stmt).scalars().first()
        except SQLAlchemyError as e:
            logging.error(f'Database error getting mail {record_id}: {e}')
            self.session.rollback()
            raise StoreUnavailable(f'Unable to read mail {record_id}: {e}') from e

    def list_records(self, status: MailQueueStatus | None = None, skip: int = 0,
                     limit: int = 100) -> list[MailQueueRecord]:
        """
        Get messages, newest first.

        Args:
            status (MailQueueStatus | None): Only return messages in this status.
            skip (int): The offset for pagination.
            limit (int): The maximum number of messages to retrieve.

        Returns:
            list[MailQueueRecord]: The matching messages.
        """
        stmt = Select(MailQueueRecord)
        if status is not None:
            stmt = stmt.where(MailQueueRecord.status == status)
        stmt = stmt.order_by(MailQueueRecord.created_at.desc()).limit(limit).offset(skip)
        try:
            return list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logging.error(f'Database error listing mail: {e}')
            self.session.rollback()
            raise StoreUnavailable(f'Unable to list mail: {e}') from e

    def requeue(self, record_id: str) -> MailQueueRecord | None:
        """
        Reset a failed message to pending so the dispatcher tries it again.

        Args:
            record_id (str): The ID of the message.

        Returns:
            MailQueueRecord | None: The requeued message, or None if it does not exist.

        Raises:
            ValueError: If the message is not in the Failed status.
        """
        stmt = (
            update(MailQueueRecord)
            .where(MailQueueRecord.id == record_id, MailQueueRecord.status == MailQueueStatus.FAILED)
            .values(status=MailQueueStatus.PENDING, attempt_count=0, last_error=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as e:
            logging.error(f'Database error requeuing mail {record_id}: {e}')
            self.session.rollback()
            raise StoreUnavailable(f'Unable to requeue mail {record_id}: {e}') from e

        record = self.get_by_id(record_id)
        if record is None:
            return None
        if result.rowcount != 1:
            raise ValueError(f"Mail {record_id} is {record.status.value}, only Failed mail can be requeued")
        self.session.refresh(record)
        return record

    def _get_for_update(self, record_id: str) -> MailQueueRecord:
        record = self.session.get(MailQueueRecord, record_id, populate_existing=True)
        if record is None:
            raise UpdateError(f'Mail {record_id} does not exist')
        return record
