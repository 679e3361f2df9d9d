"""
Tests for request context, error capture and error envelopes.
"""

import asyncio
import re

import pytest
import structlog

from deliberai.api.responses import describe_validation_errors, error_response
from deliberai.core.context import (
    clear_context,
    generate_error_id,
    generate_request_id,
    get_context_dict,
    get_request_id,
    set_request_id,
)
from deliberai.core.errors import (
    ErrorHandler,
    InferenceAPIError,
    _before_send,
    capture_exception,
    init_sentry,
)
from deliberai.middleware.context import _validate_id


@pytest.fixture(autouse=True)
def reset_context():
    clear_context()
    yield
    clear_context()


class TestRequestContext:
    """Tests for request id context helpers."""

    def test_request_id_format(self):
        """Request ids look like req_ plus 16 hex digits."""
        assert re.fullmatch(r"req_[0-9a-f]{16}", generate_request_id())

    def test_error_id_is_uuid(self):
        """Error ids are UUID4 strings."""
        assert re.fullmatch(r"[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[0-9a-f]{4}-[0-9a-f]{12}", generate_error_id())

    def test_set_request_id_binds_logging_context(self):
        """Setting the request id binds it into structlog context."""
        set_request_id("req_abc")

        assert get_request_id() == "req_abc"
        assert get_context_dict() == {"request_id": "req_abc"}
        assert structlog.contextvars.get_contextvars()["request_id"] == "req_abc"

    def test_clear_context(self):
        """clear_context() drops the request id everywhere."""
        set_request_id("req_abc")
        clear_context()

        assert get_request_id() is None
        assert structlog.contextvars.get_contextvars() == {}


class TestIdValidation:
    """Tests for X-Request-ID validation."""

    @pytest.mark.parametrize("value", ["abc", "req_0123456789abcdef", "a-b_c"])
    def test_accepts_safe_ids(self, value):
        """Safe ids pass through."""
        assert _validate_id(value) == value

    @pytest.mark.parametrize("value", [None, "", "has space", "line\nbreak", "x" * 65, "semi;colon"])
    def test_rejects_unsafe_ids(self, value):
        """Empty, long or unsafe ids are rejected."""
        assert _validate_id(value) is None


class TestErrorHandler:
    """Tests for the ErrorHandler context manager."""

    def test_suppresses_and_records(self):
        """An Exception is suppressed and kept on the handler."""
        with ErrorHandler("persist_embedding", context={"id": "k1"}) as handler:
            raise ValueError("disk full")

        assert handler.failed
        assert isinstance(handler.error, ValueError)

    def test_no_error(self):
        """A clean block leaves the handler unfailed."""
        with ErrorHandler("persist_embedding") as handler:
            pass

        assert not handler.failed

    def test_never_swallows_cancellation(self):
        """Cancellation always propagates."""
        with pytest.raises(asyncio.CancelledError):
            with ErrorHandler("persist_embedding"):
                raise asyncio.CancelledError()

    def test_never_swallows_system_exit(self):
        """SystemExit always propagates."""
        with pytest.raises(SystemExit):
            with ErrorHandler("persist_embedding"):
                raise SystemExit(1)


class TestCapture:
    """Tests for exception capture and Sentry hooks."""

    def test_capture_without_sentry_returns_none(self):
        """Without Sentry capture only logs."""
        assert capture_exception(RuntimeError("x"), context={"operation": "test"}) is None

    def test_init_sentry_without_dsn(self):
        """An empty DSN keeps Sentry off."""
        assert init_sentry("") is False

    def test_before_send_drops_health_checks(self):
        """Health check events are dropped."""
        assert _before_send({"request": {"url": "http://svc/health"}}, {}) is None

    def test_before_send_tags_request_id(self):
        """Events are tagged with the request id."""
        set_request_id("req_123")
        event = _before_send({"request": {"url": "http://svc/api/v1/issues/recommendations"}}, {})
        assert event["tags"]["request_id"] == "req_123"


class TestErrorEnvelope:
    """Tests for the JSON error envelope."""

    def test_error_response_body(self):
        """The envelope answers 200 with success false and an error id."""
        response = error_response("Invalid operation", operation="embedding_backfill")

        assert response.status_code == 200
        assert b'"success":false' in response.body
        assert b'"error_id"' in response.body

    def test_describe_validation_errors(self):
        """Validation errors read as one message."""
        errors = [
            {"loc": ("body", "deliberationId"), "msg": "Field required"},
            {"loc": ("body",), "msg": "Input should be a valid dictionary"},
        ]

        message = describe_validation_errors(errors)

        assert message == "Invalid request - deliberationId: Field required; body: Input should be a valid dictionary"

    def test_api_error_detail_truncated(self):
        """API error detail is cut to 200 characters."""
        error = InferenceAPIError(500, "x" * 500)
        assert len(error.detail) == 200
        assert error.status_code == 500
