from __future__ import annotations

import logging
import threading

from jinja2 import TemplateNotFound

from src.udes_mail_outbox.config import DEFAULT_SUBJECT, load_config
from src.udes_mail_outbox.exceptions import StoreUnavailable, UpdateError
from src.udes_mail_outbox.models.mail_queue import MailQueueStatus
from src.udes_mail_outbox.repositories.mail_queue_repo import MailQueueRepository
from src.udes_mail_outbox.services.outbox_service import BatchSummary, OutboxDispatcher
from src.udes_mail_outbox.services.template_service import MailRenderer

SENDER = "E-Exchange <noreply@udes.edu.co>"


def make_dispatcher(store, transport, **kwargs) -> OutboxDispatcher:
    kwargs.setdefault("sender", SENDER)
    return OutboxDispatcher(store=store, transport=transport, **kwargs)


def statuses(repo: MailQueueRepository, records) -> list[MailQueueStatus]:
    return [repo.get_by_id(record.id).status for record in records]


class UnavailableStore:
    """Store whose every call fails as if the database were unreachable."""

    def __init__(self) -> None:
        self.calls = 0

    def release_stale_claims(self, lease_seconds: int) -> int:
        self.calls += 1
        raise StoreUnavailable("connection refused")

    def fetch_pending(self, limit: int):
        self.calls += 1
        raise StoreUnavailable("connection refused")


class FlakyUpdateStore:
    """Wraps a repository and fails status writes for selected records."""

    def __init__(self, repo: MailQueueRepository, fail_updates_for: set[str], lost_claims: set[str] = frozenset()):
        self.repo = repo
        self.fail_updates_for = fail_updates_for
        self.lost_claims = lost_claims

    def fetch_pending(self, limit: int):
        return self.repo.fetch_pending(limit)

    def claim(self, record_id: str) -> bool:
        if record_id in self.lost_claims:
            return False
        return self.repo.claim(record_id)

    def release_stale_claims(self, lease_seconds: int) -> int:
        return self.repo.release_stale_claims(lease_seconds)

    def mark_sent(self, record_id: str) -> None:
        if record_id in self.fail_updates_for:
            raise UpdateError(f"lost connection updating {record_id}")
        self.repo.mark_sent(record_id)

    def mark_failed(self, record_id: str, error_text: str, max_attempts: int = 1):
        if record_id in self.fail_updates_for:
            raise UpdateError(f"lost connection updating {record_id}")
        return self.repo.mark_failed(record_id, error_text, max_attempts)


def test_batch_marks_sent_and_failed_records_in_order(repo, seed, make_transport) -> None:
    r1, r2, r3 = seed(3)
    transport = make_transport(fail_for={r2.recipient_email})

    summary = make_dispatcher(repo, transport).process_batch()

    assert transport.attempted_recipients == [r1.recipient_email, r2.recipient_email, r3.recipient_email]
    assert statuses(repo, [r1, r2, r3]) == [MailQueueStatus.SENT, MailQueueStatus.FAILED, MailQueueStatus.SENT]
    assert repo.get_by_id(r2.id).last_error
    assert "550 mailbox unavailable" in repo.get_by_id(r2.id).last_error
    assert repo.get_by_id(r1.id).processed_at is not None
    assert summary == BatchSummary(fetched=3, sent=2, failed=1, skipped=0)


def test_batch_is_bounded_by_batch_size(repo, seed, transport) -> None:
    records = seed(12)

    summary = make_dispatcher(repo, transport).process_batch()

    assert summary.fetched == 10
    assert len(transport.attempts) == 10
    assert [record.to[0] for record in transport.attempts] == [r.recipient_email for r in records[:10]]
    assert [record.id for record in repo.fetch_pending(10)] == [records[10].id, records[11].id]


def test_send_failure_does_not_stop_later_records(repo, seed, make_transport) -> None:
    first, second = seed(2)
    transport = make_transport(fail_for={first.recipient_email})

    make_dispatcher(repo, transport).process_batch()

    assert repo.get_by_id(second.id).status == MailQueueStatus.SENT
    assert [message.to[0] for message in transport.sent] == [second.recipient_email]


def test_sent_records_are_not_sent_again(repo, seed, transport) -> None:
    seed(3)
    dispatcher = make_dispatcher(repo, transport)

    dispatcher.process_batch()
    summary = dispatcher.process_batch()

    assert summary.fetched == 0
    assert len(transport.attempts) == 3


def test_failed_records_are_not_retried_by_default(repo, seed, make_transport) -> None:
    (record,) = seed(1)
    transport = make_transport(fail_for={record.recipient_email})
    dispatcher = make_dispatcher(repo, transport)

    dispatcher.process_batch()
    dispatcher.process_batch()

    assert len(transport.attempts) == 1
    assert repo.get_by_id(record.id).status == MailQueueStatus.FAILED


def test_failed_records_are_retried_on_later_cycles_up_to_max_attempts(repo, seed, make_transport) -> None:
    (record,) = seed(1)
    transport = make_transport(fail_for={record.recipient_email})
    dispatcher = make_dispatcher(repo, transport, max_attempts=2)

    dispatcher.process_batch()
    assert repo.get_by_id(record.id).status == MailQueueStatus.PENDING
    assert repo.get_by_id(record.id).last_error

    dispatcher.process_batch()
    dispatcher.process_batch()

    assert len(transport.attempts) == 2
    assert repo.get_by_id(record.id).status == MailQueueStatus.FAILED
    assert repo.get_by_id(record.id).attempt_count == 2


def test_composed_message_uses_sender_and_rendered_bodies(repo, seed, transport) -> None:
    (record,) = seed(1, subject=None)

    make_dispatcher(repo, transport).process_batch()

    (message,) = transport.sent
    assert message.sender == SENDER
    assert message.to == [record.recipient_email]
    assert message.subject == DEFAULT_SUBJECT
    assert "Remitente: Ana <a@x.com>" in message.plaintext
    assert "Hola<br/>Mundo" in message.html
    assert message.reference == record.id


def test_empty_queue_is_a_no_op(repo, transport) -> None:
    summary = make_dispatcher(repo, transport).process_batch()

    assert summary == BatchSummary()
    assert transport.attempts == []


def test_unavailable_store_ends_cycle_without_raising(transport, caplog) -> None:
    store = UnavailableStore()

    with caplog.at_level(logging.ERROR):
        summary = make_dispatcher(store, transport).process_batch()

    assert summary == BatchSummary()
    assert transport.attempts == []
    assert "Mail queue unavailable" in caplog.text


def test_unavailable_store_without_claims_fails_on_fetch(transport) -> None:
    store = UnavailableStore()

    summary = make_dispatcher(store, transport, claim_rows=False).process_batch()

    assert summary == BatchSummary()
    assert store.calls == 1


def test_status_update_failure_is_logged_and_batch_continues(repo, seed, transport, caplog) -> None:
    first, second = seed(2)
    store = FlakyUpdateStore(repo, fail_updates_for={first.id})

    with caplog.at_level(logging.ERROR):
        summary = make_dispatcher(store, transport).process_batch()

    assert [message.to[0] for message in transport.sent] == [first.recipient_email, second.recipient_email]
    assert repo.get_by_id(second.id).status == MailQueueStatus.SENT
    assert summary.sent == 2
    assert "status update failed" in caplog.text


def test_records_claimed_elsewhere_are_skipped(repo, seed, transport) -> None:
    first, second = seed(2)
    store = FlakyUpdateStore(repo, fail_updates_for=set(), lost_claims={first.id})

    summary = make_dispatcher(store, transport).process_batch()

    assert [message.to[0] for message in transport.sent] == [second.recipient_email]
    assert summary.skipped == 1


def test_claimed_records_are_invisible_to_a_second_dispatcher(repo, seed, transport) -> None:
    (record,) = seed(1)
    assert repo.claim(record.id)

    summary = make_dispatcher(repo, transport).process_batch()

    assert summary.fetched == 0
    assert transport.attempts == []


def test_without_claims_records_go_straight_to_terminal_state(repo, seed, transport) -> None:
    (record,) = seed(1)

    make_dispatcher(repo, transport, claim_rows=False).process_batch()

    assert repo.get_by_id(record.id).status == MailQueueStatus.SENT


def test_render_failure_marks_record_failed(repo, seed, transport) -> None:
    first, second = seed(2)
    real_renderer = MailRenderer()

    class BrokenRenderer:
        def render(self, record):
            if record.id == first.id:
                raise TemplateNotFound("contact_message.html")
            return real_renderer.render(record)

    make_dispatcher(repo, transport, renderer=BrokenRenderer()).process_batch()

    assert repo.get_by_id(first.id).status == MailQueueStatus.FAILED
    assert "contact_message.html" in repo.get_by_id(first.id).last_error
    assert repo.get_by_id(second.id).status == MailQueueStatus.SENT


def test_unexpected_transport_error_marks_record_failed(repo, seed) -> None:
    (record,) = seed(1)

    class ExplodingTransport:
        def send(self, email_message) -> None:
            raise RuntimeError("boom")

    summary = make_dispatcher(repo, ExplodingTransport()).process_batch()

    assert summary.failed == 1
    assert repo.get_by_id(record.id).last_error == "boom"


def test_disabled_email_leaves_queue_untouched(repo, seed, transport) -> None:
    (record,) = seed(1)

    summary = make_dispatcher(repo, transport, disable_email=True).process_batch()

    assert summary == BatchSummary()
    assert transport.attempts == []
    assert repo.get_by_id(record.id).status == MailQueueStatus.PENDING


def test_overlapping_cycles_are_skipped(repo, seed, transport, caplog) -> None:
    seed(1)
    dispatcher = make_dispatcher(repo, transport)
    dispatcher._running.acquire()

    with caplog.at_level(logging.WARNING):
        summary = dispatcher.process_batch()
    dispatcher._running.release()

    assert summary == BatchSummary()
    assert transport.attempts == []
    assert "Previous batch still running" in caplog.text
    assert dispatcher.process_batch().sent == 1


def test_run_forever_polls_until_stopped(repo, seed, transport) -> None:
    stop_event = threading.Event()
    cycles: list[int] = []

    class CountingStore(FlakyUpdateStore):
        def fetch_pending(self, limit: int):
            cycles.append(limit)
            if len(cycles) == 3:
                stop_event.set()
            return super().fetch_pending(limit)

    seed(1)
    dispatcher = make_dispatcher(CountingStore(repo, set()), transport, poll_interval=0.01)

    dispatcher.run_forever(stop_event)

    assert len(cycles) == 3
    assert len(transport.sent) == 1


def test_run_forever_survives_unexpected_cycle_errors(transport) -> None:
    stop_event = threading.Event()

    class BrokenStore:
        calls = 0

        def release_stale_claims(self, lease_seconds: int) -> int:
            return 0

        def fetch_pending(self, limit: int):
            BrokenStore.calls += 1
            if BrokenStore.calls == 2:
                stop_event.set()
            raise RuntimeError("driver crashed")

    make_dispatcher(BrokenStore(), transport, poll_interval=0.01).run_forever(stop_event)

    assert BrokenStore.calls == 2


def test_from_config_applies_settings(repo, transport) -> None:
    config = load_config({
        "SQLALCHEMY_CONNECTION_STRING": "sqlite://",
        "MAIL_HOST": "smtp.udes.edu.co",
        "MAIL_FROM": SENDER,
        "MAIL_QUEUE_BATCH_SIZE": "3",
        "MAIL_QUEUE_MAX_ATTEMPTS": "4",
        "MAIL_QUEUE_CLAIM_ROWS": "false",
    })

    dispatcher = OutboxDispatcher.from_config(config, store=repo, transport=transport)

    assert dispatcher.sender == SENDER
    assert dispatcher.batch_size == 3
    assert dispatcher.max_attempts == 4
    assert dispatcher.claim_rows is False
    assert dispatcher.poll_interval == 10.0


def test_multi_line_subject_is_delivered_on_one_line(repo, seed, transport) -> None:
    records = seed(1, subject="Consulta\r\nintercambio")

    summary = make_dispatcher(repo, transport).process_batch()

    assert summary.sent == 1
    assert transport.sent[0].subject == "Consulta intercambio"
    assert statuses(repo, records) == [MailQueueStatus.SENT]
