"""
Tests for the registration error taxonomy.
"""

import pytest

from registrations.services.errors import (
    AlreadyRegisteredError,
    ErrorCode,
    EventFullError,
    EventNotFoundError,
    GenericActionError,
    NotAuthenticatedError,
    ProcedureError,
    RegistrationError,
    TransientFetchError,
    classify_procedure_error,
)


class TestClassifyProcedureError:
    """Test translation of raw procedure failures."""

    @pytest.mark.parametrize("message,expected", [
        ("event_full", EventFullError),
        ("ERROR:  event_full\nCONTEXT:  PL/pgSQL function register_for_event", EventFullError),
        ("EVENT_FULL", EventFullError),
        ("not_authenticated", NotAuthenticatedError),
        ("already_registered", AlreadyRegisteredError),
        ("event_not_found", EventNotFoundError),
        ("ERROR:  activity_not_found\nCONTEXT:  PL/pgSQL function register_activity", EventNotFoundError),
        ("connection reset by peer", GenericActionError),
        ("", GenericActionError),
    ])
    def test_classification(self, message, expected):
        error = classify_procedure_error(ProcedureError("register_for_event", message))
        assert type(error) is expected

    def test_raw_text_never_exposed(self):
        """User-facing messages are fixed strings."""
        raw = "could not connect to server: Connection refused (10.0.0.3:5432)"

        error = classify_procedure_error(ProcedureError("cancel_event_registration", raw))

        assert raw not in error.message
        assert error.message == GenericActionError.default_message


class TestRegistrationErrors:
    """Test error kinds."""

    def test_retryability(self):
        assert TransientFetchError().retryable is True
        assert GenericActionError().retryable is True
        assert EventFullError().retryable is False
        assert NotAuthenticatedError().retryable is False
        assert AlreadyRegisteredError().retryable is False
        assert EventNotFoundError().retryable is False

    def test_codes(self):
        assert EventFullError().code == ErrorCode.EVENT_FULL
        assert NotAuthenticatedError().code == ErrorCode.NOT_AUTHENTICATED

    def test_all_kinds_are_registration_errors(self):
        for error_class in (TransientFetchError, EventFullError, NotAuthenticatedError,
                            AlreadyRegisteredError, EventNotFoundError, GenericActionError):
            assert issubclass(error_class, RegistrationError)

    def test_str_includes_code(self):
        assert str(EventFullError()) == "EVENT_FULL: This event is sold out."

    def test_timed_out_flag(self):
        assert GenericActionError(timed_out=True).timed_out is True
        assert GenericActionError().timed_out is False

    def test_procedure_error_is_not_user_facing(self):
        """Raw procedure failures are not RegistrationErrors."""
        assert not issubclass(ProcedureError, RegistrationError)
