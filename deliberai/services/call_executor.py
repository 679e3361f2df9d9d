"""
Resilient execution of external inference calls.

Every model call goes through ResilientCallExecutor.execute(), which:

1. Short-circuits when the operation's circuit breaker is open (no network call)
2. Runs the call under a hard deadline, cancelling it on timeout
3. Classifies failures:
   - transport (timeout, connection error): not counted against the breaker
   - service (non-2xx from the API): counted via record_failure()
   - invalid_response (2xx, unusable body): not counted
4. Resets the breaker on success

Callers get a Result instead of an exception, so every capability handles
degradation the same way:

    result = await executor.execute("issue_recommendations", lambda: client.chat(messages))
    if not result.ok:
        return fallback(result.reason)
    raw_text = result.value
"""

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Generic, TypeVar, Union

import anyio
import structlog

from deliberai.core.circuit_breaker import PersistedCircuitBreaker
from deliberai.core.errors import (
    CallFailed,
    InferenceAPIError,
    InferenceTransportError,
    InvalidResponseError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class DegradedKind(str, Enum):
    CIRCUIT_OPEN = "circuit_open"
    TRANSPORT = "transport"
    SERVICE = "service"
    INVALID_RESPONSE = "invalid_response"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Degraded:
    operation: str
    kind: DegradedKind
    reason: str

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise CallFailed(self.operation, self.kind.value, self.reason)


Result = Union[Ok[T], Degraded]


class ResilientCallExecutor:
    """Breaker-gated, deadline-bounded executor for external API calls."""

    def __init__(self, breaker: PersistedCircuitBreaker, timeout_seconds: float = 45.0):
        self.breaker = breaker
        self.timeout_seconds = timeout_seconds
        self._metrics = {
            "calls": 0,
            "successes": 0,
            "short_circuited": 0,
            "transport_errors": 0,
            "service_errors": 0,
            "invalid_responses": 0,
        }

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)

    async def is_available(self, operation: str) -> bool:
        """Breaker gate on its own, for callers that check before doing setup work."""
        if await self.breaker.is_open(operation):
            self._metrics["short_circuited"] += 1
            return False
        return True

    async def execute(
        self,
        operation: str,
        request: Callable[[], Awaitable[T]],
        breaker_checked: bool = False,
    ) -> "Result[T]":
        """
        Run request() behind the breaker and deadline.

        Pass breaker_checked=True when is_available() was already called for
        this invocation; checking twice would spend the half-open probe on
        the first check and reject the call on the second.
        """
        if not breaker_checked and not await self.is_available(operation):
            return Degraded(operation, DegradedKind.CIRCUIT_OPEN, "Circuit breaker open")

        self._metrics["calls"] += 1
        try:
            with anyio.fail_after(self.timeout_seconds):
                value = await request()
        except TimeoutError:
            self._metrics["transport_errors"] += 1
            logger.warning("Inference call timed out", operation=operation, timeout_seconds=self.timeout_seconds)
            return Degraded(operation, DegradedKind.TRANSPORT, f"timeout after {self.timeout_seconds}s")
        except InferenceTransportError as e:
            self._metrics["transport_errors"] += 1
            logger.warning("Inference transport error", operation=operation, error=str(e))
            return Degraded(operation, DegradedKind.TRANSPORT, str(e))
        except InferenceAPIError as e:
            self._metrics["service_errors"] += 1
            logger.warning("Inference API error", operation=operation, status_code=e.status_code, error=e.detail)
            await self.breaker.record_failure(operation)
            return Degraded(operation, DegradedKind.SERVICE, str(e))
        except InvalidResponseError as e:
            self._metrics["invalid_responses"] += 1
            logger.warning("Inference API returned an unusable body", operation=operation, error=str(e))
            return Degraded(operation, DegradedKind.INVALID_RESPONSE, str(e))

        self._metrics["successes"] += 1
        await self.breaker.reset(operation)
        return Ok(value)
