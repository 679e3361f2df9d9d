from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog

from deliberai.core.store import CIRCUIT_BREAKER_STATE, Store
from deliberai.core.typing import as_utc, utc_now

logger = structlog.get_logger(__name__)

# Type alias for notification callback - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]  # (name, old_state, new_state)

# Global notification callback - set by application on startup
_notification_callback: Optional[StateChangeCallback] = None


def set_notification_callback(callback: Optional[StateChangeCallback]) -> None:
    """Set the global notification callback for circuit breaker state changes."""
    global _notification_callback
    _notification_callback = callback


def _notify_state_change(name: str, old_state: str, new_state: str) -> None:
    """Notify about state change if callback is registered."""
    if _notification_callback:
        try:
            _notification_callback(name, old_state, new_state)
        except Exception as e:
            logger.error("Circuit breaker notification failed", error=str(e))


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # One probe granted for this cooldown cycle


@dataclass
class PersistedCircuitBreaker:
    """
    Circuit breaker whose state lives in the shared store, keyed by operation name.

    Every invocation reads the row fresh, so all processes and serverless
    instances see the same breaker. Reads and writes are read-modify-write
    without locking; concurrent failures can be under-counted, which is fine
    for a heuristic guard.

    The breaker never raises: store read errors count as "closed" and store
    write errors are logged and dropped.

    Half-open: once the cooldown has elapsed, the first is_open() check grants
    a single probe. Granting clears the stored open flag and restamps
    last_failure_time while keeping failure_count, so later checks in the
    same cycle still see the breaker as open. A successful probe is followed
    by reset(); a failed one by record_failure(), which reopens the breaker
    for a full cooldown.
    """

    store: Store
    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    clock: Callable[[], datetime] = field(default=utc_now)

    async def _load(self, name: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(CIRCUIT_BREAKER_STATE, name)

    async def _write(self, record: Dict[str, Any]) -> bool:
        try:
            await self.store.upsert(CIRCUIT_BREAKER_STATE, record)
            return True
        except Exception as e:
            logger.warning("Failed to persist circuit breaker state", operation=record["id"], error=str(e))
            return False

    def _elapsed(self, state: Dict[str, Any]) -> Optional[float]:
        last_failure = state.get("last_failure_time")
        if last_failure is None:
            return None
        return (self.clock() - as_utc(last_failure)).total_seconds()

    async def is_open(self, name: str) -> bool:
        try:
            state = await self._load(name)
        except Exception as e:
            logger.warning("Circuit breaker check failed, assuming closed", operation=name, error=str(e))
            return False

        if not state:
            return False

        failure_count = state.get("failure_count") or 0
        if failure_count < self.failure_threshold:
            return False

        elapsed = self._elapsed(state)
        if elapsed is not None and elapsed < self.cooldown_seconds:
            logger.warning(
                "Circuit breaker OPEN",
                operation=name,
                retry_after_seconds=round(self.cooldown_seconds - elapsed, 1),
            )
            return True

        await self._grant_probe(name, failure_count)
        return False

    async def _grant_probe(self, name: str, failure_count: int) -> None:
        now = self.clock()
        await self._write(
            {
                "id": name,
                "failure_count": failure_count,
                "last_failure_time": now,
                "is_open": False,
                "updated_at": now,
            }
        )
        logger.info("Circuit breaker cooldown elapsed, allowing one probe", operation=name)
        _notify_state_change(name, CircuitState.OPEN.value, CircuitState.HALF_OPEN.value)

    async def record_failure(self, name: str) -> None:
        try:
            state = await self._load(name)
        except Exception as e:
            logger.warning("Failed to read circuit breaker state", operation=name, error=str(e))
            state = None

        previous_count = (state or {}).get("failure_count") or 0
        new_count = previous_count + 1
        now = self.clock()
        is_open = new_count >= self.failure_threshold

        written = await self._write(
            {
                "id": name,
                "failure_count": new_count,
                "last_failure_time": now,
                "is_open": is_open,
                "updated_at": now,
            }
        )
        if not written:
            return

        logger.info(
            "Circuit breaker failure recorded",
            operation=name,
            failures=new_count,
            threshold=self.failure_threshold,
        )
        if is_open:
            if previous_count >= self.failure_threshold:
                logger.warning("Circuit breaker HALF_OPEN -> OPEN (probe failed)", operation=name)
                _notify_state_change(name, CircuitState.HALF_OPEN.value, CircuitState.OPEN.value)
            else:
                logger.warning("Circuit breaker CLOSED -> OPEN (threshold reached)", operation=name)
                _notify_state_change(name, CircuitState.CLOSED.value, CircuitState.OPEN.value)

    async def reset(self, name: str) -> None:
        """Close the breaker. Only touches an existing row; rows are created by failures."""
        try:
            await self.store.update(
                CIRCUIT_BREAKER_STATE,
                name,
                {"failure_count": 0, "is_open": False, "updated_at": self.clock()},
            )
        except Exception as e:
            logger.warning("Failed to reset circuit breaker", operation=name, error=str(e))

    def _describe(self, name: str, state: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not state:
            return {
                "name": name,
                "state": CircuitState.CLOSED.value,
                "failure_count": 0,
                "last_failure_time": None,
                "retry_after_seconds": 0.0,
            }

        failure_count = state.get("failure_count") or 0
        elapsed = self._elapsed(state)
        in_cooldown = elapsed is not None and elapsed < self.cooldown_seconds

        if failure_count < self.failure_threshold:
            current = CircuitState.CLOSED
        elif in_cooldown and not state.get("is_open", True):
            current = CircuitState.HALF_OPEN
        elif in_cooldown:
            current = CircuitState.OPEN
        else:
            # Cooldown over; the next check will grant a probe
            current = CircuitState.HALF_OPEN

        retry_after = 0.0
        if current == CircuitState.OPEN and elapsed is not None:
            retry_after = round(self.cooldown_seconds - elapsed, 1)

        return {
            "name": name,
            "state": current.value,
            "failure_count": failure_count,
            "last_failure_time": state.get("last_failure_time"),
            "retry_after_seconds": retry_after,
        }

    async def get_state(self, name: str) -> Dict[str, Any]:
        """Describe a breaker without changing it (operator view)."""
        try:
            state = await self._load(name)
        except Exception as e:
            logger.warning("Failed to read circuit breaker state", operation=name, error=str(e))
            state = None
        return self._describe(name, state)

    async def get_all_states(self) -> List[Dict[str, Any]]:
        try:
            rows = await self.store.query(CIRCUIT_BREAKER_STATE, order="id")
        except Exception as e:
            logger.warning("Failed to list circuit breaker states", error=str(e))
            return []
        return [self._describe(row["id"], row) for row in rows]
