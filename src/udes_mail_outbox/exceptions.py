"""Exceptions raised by the mail outbox worker."""


class MailOutboxError(Exception):
    """Base class for mail outbox errors."""


class ConfigError(MailOutboxError, ValueError):
    """Required configuration is missing or malformed."""


class StoreUnavailable(MailOutboxError):
    """The mail queue table could not be read or claimed."""


class SendError(MailOutboxError):
    """The mail transport failed to deliver a message."""


class UpdateError(MailOutboxError):
    """A queue record's status could not be written after an attempt."""
