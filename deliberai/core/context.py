"""
Request context management for log correlation.

Every invocation gets a request_id that is bound into structlog's
contextvars, so all log lines emitted while serving the request (breaker
transitions, model calls, backfill progress) carry it.

Usage:
    # In middleware (automatic)
    set_request_id(generate_request_id())

    # In error handlers
    capture_exception(exc, context={"request_id": get_request_id()})
"""

from contextvars import ContextVar
from typing import Optional
import uuid

import structlog

__all__ = [
    "set_request_id",
    "get_request_id",
    "generate_request_id",
    "generate_error_id",
    "clear_context",
    "get_context_dict",
]

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def generate_error_id() -> str:
    """Generate a correlation id for an error response (full UUID4)."""
    return str(uuid.uuid4())


def set_request_id(request_id: str) -> None:
    """Set request ID for current async context and bind it for logging."""
    _request_id.set(request_id)
    structlog.contextvars.bind_contextvars(request_id=request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def clear_context() -> None:
    """Clear all context variables at the end of a request."""
    _request_id.set(None)
    structlog.contextvars.clear_contextvars()


def get_context_dict() -> dict:
    return {
        "request_id": get_request_id(),
    }
