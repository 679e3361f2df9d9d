"""
Error classes and error reporting.

Failures are sorted by what the caller should do about them:

- ConfigurationError: credentials or settings missing; fail the request
- InferenceTransportError: timeout or network failure; degrade, do not count
- InferenceAPIError: the API answered non-2xx; degrade and count against the breaker
- InvalidResponseError: 2xx with an unusable body; degrade, do not count
- StoreError: persistence failed; logged, never fatal for breaker bookkeeping
- CallFailed: raised by Degraded.unwrap() for callers that want an exception

Reporting always goes to the structured log. When SENTRY_DSN is configured
the same event is also sent to Sentry, tagged with the current request id.

    with ErrorHandler("persist_embedding", context={"id": record_id}) as handler:
        await store.update(...)
    if handler.failed:
        errors += 1
"""

from typing import Any, Callable, Dict, Optional
from datetime import datetime, timezone

import structlog

from deliberai.core.context import get_context_dict, get_request_id

logger = structlog.get_logger(__name__)


class DeliberaiError(Exception):
    """Base class for package errors."""


class ConfigurationError(DeliberaiError):
    """Required configuration (e.g. API credentials) is missing."""


class StoreError(DeliberaiError):
    """A persistence operation failed."""


class InferenceAPIError(DeliberaiError):
    """The inference API answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail[:200]
        super().__init__(f"Inference API error: {status_code} - {self.detail}")


class InferenceTransportError(DeliberaiError):
    """Timeout, abort or network failure talking to the inference API."""


class InvalidResponseError(DeliberaiError):
    """The inference API answered 2xx but the body was empty or malformed."""


class CallFailed(DeliberaiError):
    """A resilient call ended degraded and the caller asked for an exception."""

    def __init__(self, operation: str, kind: str, reason: str):
        self.operation = operation
        self.kind = kind
        self.reason = reason
        super().__init__(f"{operation} failed ({kind}): {reason}")


_sentry_enabled = False


def init_sentry(dsn: str, environment: str = "production", traces_sample_rate: float = 0.1) -> bool:
    """Turn on Sentry forwarding. Returns False (and stays log-only) without a DSN."""
    global _sentry_enabled

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    import logging

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_enabled = True
    logger.info("Sentry initialized", environment=environment, traces_sample_rate=traces_sample_rate)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Drop health check noise and tag events with the request id."""
    url = event.get("request", {}).get("url", "")
    if "/health" in url:
        return None

    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id
    return event


def _forward(
    send: Callable[[], Optional[str]],
    context: Dict[str, Any],
    level: str,
    tags: Optional[Dict[str, str]],
) -> Optional[str]:
    """Run a sentry_sdk capture call inside a scope carrying context and tags."""
    import sentry_sdk

    try:
        with sentry_sdk.push_scope() as scope:
            for key, value in context.items():
                if value is not None:
                    scope.set_extra(key, value)
            for key, value in (tags or {}).items():
                scope.set_tag(key, value)
            scope.level = level
            return send()
    except Exception as e:
        logger.warning("Failed to forward event to Sentry", error=str(e))
        return None


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
) -> Optional[str]:
    """Log an exception with request context; returns the Sentry event id when forwarded."""
    details = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }
    getattr(logger, level, logger.error)("Exception captured", exc_info=exc, **details)

    if not _sentry_enabled:
        return None

    import sentry_sdk

    return _forward(lambda: sentry_sdk.capture_exception(exc), details, level, None)


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Log a notable non-exception event, e.g. a circuit breaker transition.

    Only warning and worse are forwarded to Sentry.
    """
    details = {**get_context_dict(), **(context or {})}
    getattr(logger, level, logger.info)(message, **details)

    if not _sentry_enabled or level not in ("warning", "error", "fatal"):
        return None

    import sentry_sdk

    return _forward(lambda: sentry_sdk.capture_message(message, level=level), details, level, tags)


class ErrorHandler:
    """
    Captures and suppresses an Exception raised inside the block.

    Cancellation and interpreter exit (BaseException) always propagate.
    """

    def __init__(self, operation: str, context: Optional[Dict[str, Any]] = None):
        self.operation = operation
        self.context = context or {}
        self.error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if not isinstance(exc_val, Exception):
            return False
        self.error = exc_val
        capture_exception(exc_val, context={"operation": self.operation, **self.context})
        return True
