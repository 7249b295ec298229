"""Timer trigger to deliver pending mail from the mail queue."""
import logging
from datetime import datetime, timezone

import azure.functions as func

from src.udes_mail_outbox.config import MAIL_QUEUE_SCHEDULE, WorkerConfig, load_config
from src.udes_mail_outbox.exceptions import ConfigError
from src.udes_mail_outbox.repositories.database import get_session_maker
from src.udes_mail_outbox.repositories.mail_queue_repo import MailQueueRepository
from src.udes_mail_outbox.services.outbox_service import BatchSummary, OutboxDispatcher
from src.udes_mail_outbox.services.transport_service import build_transport

bp = func.Blueprint()


@bp.timer_trigger(schedule=MAIL_QUEUE_SCHEDULE, arg_name="mailqueuetimer", run_on_startup=False, use_monitor=False)
def MailQueueTimer(mailqueuetimer: func.TimerRequest) -> None:
    """
    Timer function that runs one dispatch cycle over the mail queue.

    Args:
        mailqueuetimer (func.TimerRequest): The timer request object.
    """
    if mailqueuetimer.past_due:
        logging.warning('MailQueueTimer: The timer is past due!')

    logging.info(f"MailQueueTimer: Mail queue timer triggered at: {datetime.now(timezone.utc)}")

    try:
        config: WorkerConfig = load_config()
    except ConfigError as e:
        logging.error(f"MailQueueTimer: Cannot process mail queue: {e}")
        return

    session_maker = get_session_maker(config.sqlalchemy_connection_string, config.sqlalchemy_echo)
    with session_maker() as db:
        dispatcher: OutboxDispatcher = OutboxDispatcher.from_config(
            config=config,
            store=MailQueueRepository(db),
            transport=build_transport(config),
        )
        summary: BatchSummary = dispatcher.process_batch()

    if summary.fetched:
        logging.info(f"MailQueueTimer: Cycle finished: {summary}")
