"""Pydantic models for application data structures."""
from pydantic import BaseModel


class EmailMessage(BaseModel):
    """Represents a composed email message handed to a mail transport."""
    sender: str
    to: list[str]
    cc: list[str] | None = None
    subject: str
    html: str | None = None
    plaintext: str | None = None
    reference: str | None = None


class RenderedMail(BaseModel):
    """Subject and bodies rendered from a queue record."""
    subject: str
    text: str
    html: str
