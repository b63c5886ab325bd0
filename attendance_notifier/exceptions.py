"""Exception hierarchy shared by the notification worker components."""

from __future__ import annotations

from typing import Optional


class NotifierError(RuntimeError):
    """Base class for every error raised by the worker."""

    code = "notifier_error"


class BridgeError(NotifierError):
    """Raised when the messaging bridge rejects a request or drops the link."""

    code = "bridge_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionNotReadyError(NotifierError):
    """Raised when a send is attempted while the session is not open."""

    code = "session_not_ready"

    def __init__(self, message: str = "WhatsApp session is not connected"):
        super().__init__(message)


class RecipientNotRegisteredError(NotifierError):
    """Raised when a phone number is not a registered WhatsApp account."""

    code = "recipient_not_registered"

    def __init__(self, recipient: str):
        super().__init__(f"Recipient {recipient} is not registered on WhatsApp")
        self.recipient = recipient


class GroupNotFoundError(NotifierError):
    """Raised when a group display name cannot be resolved to a group id."""

    code = "group_not_found"

    def __init__(self, name: str):
        super().__init__(f"WhatsApp group '{name}' not found")
        self.name = name


class JobValidationError(NotifierError):
    """Raised when a queued job payload is malformed."""

    code = "invalid_job"


class TriggerValidationError(NotifierError):
    """Raised when a manual trigger document is malformed."""

    code = "invalid_trigger"
