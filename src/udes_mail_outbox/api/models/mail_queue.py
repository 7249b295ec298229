"""Pydantic Models for Mail Queue API"""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from src.udes_mail_outbox.models.mail_queue import MailQueueStatus


class ContactPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    sender_name: str | None = None
    sender_email: str | None = None
    university_representing: str | None = None
    reason: str | None = None
    reason_other: str | None = None
    message: str | None = Field(default=None, max_length=2000)


class MailQueueCreate(BaseModel):
    recipient_email: EmailStr
    subject: str | None = Field(default=None, max_length=255)
    payload: ContactPayload = Field(default_factory=ContactPayload)


class MailQueueRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    recipient_email: str
    subject: str | None = None
    payload: dict[str, Any] | None = None
    status: MailQueueStatus
    attempt_count: int
    created_at: datetime
    claimed_at: datetime | None = None
    processed_at: datetime | None = None
    last_error: str | None = None
