from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.udes_mail_outbox.exceptions import SendError
from src.udes_mail_outbox.models.base import Base
from src.udes_mail_outbox.models.email import EmailMessage
from src.udes_mail_outbox.models.mail_queue import MailQueueRecord, MailQueueStatus
from src.udes_mail_outbox.repositories.mail_queue_repo import MailQueueRepository

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

CONTACT_PAYLOAD: dict[str, Any] = {
    "sender_name": "Ana",
    "sender_email": "a@x.com",
    "university_representing": "Universidad de Santander",
    "reason": "Intercambio",
    "message": "Hola\nMundo",
}


class RecordingTransport:
    """Transport double that records every attempt and fails for chosen recipients."""

    def __init__(self, fail_for: Iterable[str] = ()) -> None:
        self.fail_for = set(fail_for)
        self.attempts: list[EmailMessage] = []
        self.sent: list[EmailMessage] = []

    def send(self, email_message: EmailMessage) -> None:
        self.attempts.append(email_message)
        if email_message.to[0] in self.fail_for:
            raise SendError(f"550 mailbox unavailable: {email_message.to[0]}")
        self.sent.append(email_message)

    @property
    def attempted_recipients(self) -> list[str]:
        return [message.to[0] for message in self.attempts]


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'mail_queue.sqlite'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory) -> Session:
    with session_factory() as db:
        yield db


@pytest.fixture
def repo(session: Session) -> MailQueueRepository:
    return MailQueueRepository(session, clock=lambda: BASE_TIME + timedelta(hours=1))


@pytest.fixture
def seed(session: Session) -> Callable[..., list[MailQueueRecord]]:
    """Insert records whose created_at increases by one minute per record."""

    def _seed(
        count: int = 1,
        *,
        start: datetime = BASE_TIME,
        status: MailQueueStatus = MailQueueStatus.PENDING,
        subject: str | None = "Nuevo mensaje",
        payload: dict[str, Any] | None = None,
        prefix: str = "prof",
    ) -> list[MailQueueRecord]:
        records = [
            MailQueueRecord(
                id=f"{prefix}-{index}",
                recipient_email=f"{prefix}{index}@udes.edu.co",
                subject=subject,
                payload=dict(payload if payload is not None else CONTACT_PAYLOAD),
                status=status,
                attempt_count=0,
                created_at=start + timedelta(minutes=index),
            )
            for index in range(count)
        ]
        session.add_all(records)
        session.commit()
        return records

    return _seed


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_transport() -> Callable[..., RecordingTransport]:
    return RecordingTransport
