"""
Error taxonomy for the registration flow.

Raw failures from the data store never reach callers directly: the state
machine translates them into one of the RegistrationError kinds below.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Registration error codes."""

    TRANSIENT_FETCH = "TRANSIENT_FETCH"
    EVENT_FULL = "EVENT_FULL"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    GENERIC_ACTION = "GENERIC_ACTION"


class RegistrationError(Exception):
    """Base error with a code and a user-safe message."""

    code: ErrorCode = ErrorCode.GENERIC_ACTION
    default_message = "We couldn't complete that. Please try again."
    retryable = True

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class TransientFetchError(RegistrationError):
    """Reading counts or registration status failed; show an unknown state."""

    code = ErrorCode.TRANSIENT_FETCH
    default_message = "Availability is temporarily unavailable."


class EventFullError(RegistrationError):
    code = ErrorCode.EVENT_FULL
    default_message = "This event is sold out."
    retryable = False


class NotAuthenticatedError(RegistrationError):
    code = ErrorCode.NOT_AUTHENTICATED
    default_message = "Please sign in to register for this event."
    retryable = False


class AlreadyRegisteredError(RegistrationError):
    code = ErrorCode.ALREADY_REGISTERED
    default_message = "You are already registered for this event."
    retryable = False


class EventNotFoundError(RegistrationError):
    code = ErrorCode.EVENT_NOT_FOUND
    default_message = "This event does not exist."
    retryable = False


class GenericActionError(RegistrationError):
    """Any other remote procedure failure; the user may try again."""

    code = ErrorCode.GENERIC_ACTION

    def __init__(self, message: Optional[str] = None, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class ProcedureError(Exception):
    """Raw failure reported by a remote procedure, carrying the server message."""

    def __init__(self, procedure: str, message: str):
        self.procedure = procedure
        self.message = message or ""
        super().__init__(f"{procedure}: {self.message}")


# Markers raised by the backend's remote procedures, checked in order.
_PROCEDURE_MARKERS = (
    ("event_full", EventFullError),
    ("not_authenticated", NotAuthenticatedError),
    ("already_registered", AlreadyRegisteredError),
    ("event_not_found", EventNotFoundError),
    ("activity_not_found", EventNotFoundError),
)


def classify_procedure_error(error: ProcedureError) -> RegistrationError:
    """Translate a raw procedure failure into a user-facing error kind."""
    message = error.message.lower()
    for marker, error_class in _PROCEDURE_MARKERS:
        if marker in message:
            return error_class()
    return GenericActionError()
