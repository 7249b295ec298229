"""Service for rendering queued messages into email bodies."""
import logging
import pathlib
from typing import Any

from jinja2 import Environment, FileSystemLoader, Template, select_autoescape
from markupsafe import Markup, escape

from ..config import DEFAULT_SUBJECT, HTML_TEMPLATE_FILE_NAME, TEXT_TEMPLATE_FILE_NAME
from ..models.email import RenderedMail
from ..models.mail_queue import MailQueueRecord

PAYLOAD_FIELDS = (
    "sender_name",
    "sender_email",
    "university_representing",
    "reason",
    "reason_other",
    "message",
)


def nl2br(value: Any) -> Markup:
    """Escape a value and turn its line breaks into <br/> tags."""
    text = "" if value is None else str(value)
    lines = text.replace("\r\n", "\n").split("\n")
    return Markup("<br/>").join(escape(line) for line in lines)


def build_template_context(payload: dict[str, Any] | None) -> dict[str, str]:
    """
    Build the template context from a record payload.

    Absent or null fields become empty strings so templates never print "None".
    """
    payload = payload or {}
    context: dict[str, str] = {}
    for field in PAYLOAD_FIELDS:
        value = payload.get(field)
        context[field] = "" if value is None else str(value)
    return context


class MailRenderer:
    """Renders the subject, plain-text and HTML versions of a queued message."""

    def __init__(self, template_dir: pathlib.Path | None = None):
        if template_dir is None:
            template_dir = pathlib.Path(__file__).parent.parent / "templates"
        if not template_dir.is_dir():
            logging.error(f"Jinja template directory not found at: {template_dir}")
            raise FileNotFoundError(f"Jinja template directory not found: {template_dir}")

        self.jinja_env: Environment = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=select_autoescape(['html', 'xml'])
        )
        self.jinja_env.filters["nl2br"] = nl2br
        logging.info(f"Jinja2 environment loaded successfully from: {template_dir}")

    def render(self, record: MailQueueRecord) -> RenderedMail:
        """
        Render a queued message.

        Args:
            record (MailQueueRecord): The message to render.

        Returns:
            RenderedMail: The subject and both bodies.

        Raises:
            jinja2.TemplateError: If a template is missing or fails to render.
        """
        context = build_template_context(record.payload)

        text_template: Template = self.jinja_env.get_template(TEXT_TEMPLATE_FILE_NAME)
        html_template: Template = self.jinja_env.get_template(HTML_TEMPLATE_FILE_NAME)

        rendered = RenderedMail(
            subject=" ".join((record.subject or "").split()) or DEFAULT_SUBJECT,
            text=text_template.render(context),
            html=html_template.render(context),
        )
        logging.debug(f"Mail {record.id}: Email templates rendered successfully.")
        return rendered
