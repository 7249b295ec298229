"""FastAPI operator API for the UDES E-Exchange mail queue."""
import logging
from typing import List

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from src.udes_mail_outbox.api.dependencies import get_db
from src.udes_mail_outbox.api.models.mail_queue import MailQueueCreate, MailQueueRecord
from src.udes_mail_outbox.exceptions import ConfigError, StoreUnavailable
from src.udes_mail_outbox.models.mail_queue import MailQueueStatus
from src.udes_mail_outbox.repositories.mail_queue_repo import MailQueueRepository


# noinspection PyArgumentEqualDefault
crud_api_app = FastAPI(
    title="UDES E-Exchange Mail Queue API",
    description="API to enqueue, inspect and requeue outbound mail",
    version="0.1.0",
)
router = APIRouter(prefix="/api")


@crud_api_app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """Report mail queue outages as 503 Service Unavailable."""
    logging.error(f"Mail queue API: {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Mail queue is unavailable"})


@crud_api_app.exception_handler(ConfigError)
async def config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    """Report a missing database configuration as 503 Service Unavailable."""
    logging.error(f"Mail queue API: {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Mail queue is not configured"})


@router.post("/mail-queue/", response_model=MailQueueRecord, status_code=201)
def create_mail(
    mail_in: MailQueueCreate,
    db: Session = Depends(get_db)
) -> MailQueueRecord:
    """
    Enqueue a new message.

    Args:
        mail_in (MailQueueCreate): the message to enqueue.
        db (Session): the database session

    Returns:
        MailQueueRecord: the pending message

    """
    mail_repo = MailQueueRepository(db)
    record = mail_repo.enqueue(
        recipient_email=str(mail_in.recipient_email),
        subject=mail_in.subject,
        payload=mail_in.payload.model_dump(exclude_none=True),
    )
    return MailQueueRecord.model_validate(record)


@router.get("/mail-queue/", response_model=List[MailQueueRecord])
def read_mail(
    status: MailQueueStatus | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db)
) -> List[MailQueueRecord]:
    """
    Read messages, newest first.

    Args:
        status (MailQueueStatus | None): only return messages in this status
        skip (int): the number of messages to skip
        limit (int): the number of messages to return
        db (Session): the database session

    Returns:
        List[MailQueueRecord]: the list of messages

    """
    mail_repo = MailQueueRepository(db)
    records = mail_repo.list_records(status=status, skip=skip, limit=limit)
    return [MailQueueRecord.model_validate(record) for record in records]


@router.get("/mail-queue/{record_id}", response_model=MailQueueRecord)
def read_mail_record(
    record_id: str,
    db: Session = Depends(get_db)
) -> MailQueueRecord:
    """
    Read a message.

    Args:
        record_id (str): the id of the message
        db (Session): the database session

    Returns:
        MailQueueRecord: the message

    """
    mail_repo = MailQueueRepository(db)
    record = mail_repo.get_by_id(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Mail {record_id} not found")
    return MailQueueRecord.model_validate(record)


@router.post("/mail-queue/{record_id}/requeue", response_model=MailQueueRecord)
def requeue_mail_record(
    record_id: str,
    db: Session = Depends(get_db)
) -> MailQueueRecord:
    """
    Send a failed message back to the queue.

    Args:
        record_id (str): the id of the failed message
        db (Session): the database session

    Returns:
        MailQueueRecord: the pending message

    """
    mail_repo = MailQueueRepository(db)
    try:
        record = mail_repo.requeue(record_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if record is None:
        raise HTTPException(status_code=404, detail=f"Mail {record_id} not found")
    logging.info(f"Mail {record_id}: Requeued by operator.")
    return MailQueueRecord.model_validate(record)


crud_api_app.include_router(router)
