"""Exception hierarchy for the helpdesk core.

Every event handler boundary catches HelpdeskError subclasses and decides,
per event, whether to report them to the acting connection or only log them.
"""
from typing import Optional


class HelpdeskError(Exception):
    """Base class for all domain errors.

    Attributes:
        message: Human readable description, safe to send to clients.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(HelpdeskError):
    """A required field is missing or malformed."""


class AuthorizationError(HelpdeskError):
    """The acting identity may not perform the requested action."""


class NotFoundError(HelpdeskError):
    """A referenced chat, group, message or user does not exist."""


class InvalidTransitionError(HelpdeskError):
    """A state machine rejected the requested transition."""


class ProviderError(HelpdeskError):
    """The external messaging provider rejected or failed a request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response = response
