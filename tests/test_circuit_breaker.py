"""
Tests for the persisted circuit breaker.

Tests cover:
1. Opening after the failure threshold and staying open for the cooldown
2. Exactly one half-open probe per cooldown cycle
3. Probe success (reset) and probe failure (reopen)
4. Store failures: reads fail open, writes are swallowed
5. State change notifications and the operator view
6. Persistence through SQLModelStore (state shared across instances)
"""

import pytest
from unittest.mock import MagicMock

from deliberai.core.circuit_breaker import (
    CircuitState,
    PersistedCircuitBreaker,
    set_notification_callback,
)
from deliberai.core.errors import StoreError
from deliberai.core.store import CIRCUIT_BREAKER_STATE, InMemoryStore

OP = "issue_recommendations"


class BrokenReadStore(InMemoryStore):
    async def get(self, collection, key):
        raise StoreError("connection refused")


class BrokenWriteStore(InMemoryStore):
    async def upsert(self, collection, record):
        raise StoreError("read-only replica")

    async def update(self, collection, key, patch):
        raise StoreError("read-only replica")


async def trip(breaker: PersistedCircuitBreaker, times: int = 3) -> None:
    for _ in range(times):
        await breaker.record_failure(OP)


class TestCircuitState:
    """Tests for CircuitState enum."""

    def test_circuit_states_exist(self):
        """Verify all expected circuit states are defined."""
        assert CircuitState.CLOSED.value == "closed"
        assert CircuitState.OPEN.value == "open"
        assert CircuitState.HALF_OPEN.value == "half_open"


class TestOpening:
    """Tests for the closed to open transition."""

    @pytest.mark.asyncio
    async def test_closed_when_no_state(self, breaker):
        """A breaker that never failed is closed and has no row."""
        assert await breaker.is_open(OP) is False

    @pytest.mark.asyncio
    async def test_stays_closed_below_threshold(self, breaker):
        """Two failures keep the breaker closed."""
        await trip(breaker, 2)
        assert await breaker.is_open(OP) is False

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker, memory_store):
        """Third consecutive failure opens the breaker."""
        await trip(breaker, 3)

        assert await breaker.is_open(OP) is True
        state = await memory_store.get(CIRCUIT_BREAKER_STATE, OP)
        assert state["failure_count"] == 3
        assert state["is_open"] is True

    @pytest.mark.asyncio
    async def test_stays_open_during_cooldown(self, breaker, clock):
        """The breaker stays open until the cooldown elapses."""
        await trip(breaker)

        clock.advance(59)
        assert await breaker.is_open(OP) is True

    @pytest.mark.asyncio
    async def test_breakers_are_independent(self, breaker):
        """Each operation name has its own breaker."""
        await trip(breaker)
        assert await breaker.is_open("embedding_backfill") is False


class TestHalfOpen:
    """Tests for the single probe after cooldown."""

    @pytest.mark.asyncio
    async def test_single_probe_after_cooldown(self, breaker, clock):
        """Exactly one check returns False once the cooldown has elapsed."""
        await trip(breaker)
        clock.advance(61)

        assert await breaker.is_open(OP) is False
        assert await breaker.is_open(OP) is True
        assert await breaker.is_open(OP) is True

    @pytest.mark.asyncio
    async def test_probe_keeps_failure_count(self, breaker, clock, memory_store):
        """Granting the probe does not clear the failure count."""
        await trip(breaker)
        clock.advance(61)
        await breaker.is_open(OP)

        state = await memory_store.get(CIRCUIT_BREAKER_STATE, OP)
        assert state["failure_count"] == 3
        assert state["is_open"] is False
        assert state["last_failure_time"] == clock.now

    @pytest.mark.asyncio
    async def test_probe_success_closes(self, breaker, clock, memory_store):
        """reset() after a successful probe fully closes the breaker."""
        await trip(breaker)
        clock.advance(61)
        assert await breaker.is_open(OP) is False

        await breaker.reset(OP)

        assert await breaker.is_open(OP) is False
        assert await breaker.is_open(OP) is False
        state = await memory_store.get(CIRCUIT_BREAKER_STATE, OP)
        assert state["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_probe_failure_reopens_for_full_cooldown(self, breaker, clock):
        """A failed probe reopens the breaker for a full cooldown."""
        await trip(breaker)
        clock.advance(61)
        assert await breaker.is_open(OP) is False

        await breaker.record_failure(OP)

        assert await breaker.is_open(OP) is True
        clock.advance(59)
        assert await breaker.is_open(OP) is True
        clock.advance(2)
        assert await breaker.is_open(OP) is False

    @pytest.mark.asyncio
    async def test_failures_after_reset_start_from_zero(self, breaker):
        """After a reset the threshold counts from zero again."""
        await trip(breaker, 2)
        await breaker.reset(OP)
        await trip(breaker, 2)

        assert await breaker.is_open(OP) is False


class TestReset:
    """Tests for reset bookkeeping."""

    @pytest.mark.asyncio
    async def test_reset_without_failures_creates_no_row(self, breaker, memory_store):
        """reset() on a healthy operation writes nothing."""
        await breaker.reset(OP)
        assert memory_store.all(CIRCUIT_BREAKER_STATE) == []


class TestStoreFailures:
    """Tests for persistence failures inside the breaker."""

    @pytest.mark.asyncio
    async def test_read_error_fails_open(self, clock):
        """If state can't be read the call is allowed."""
        breaker = PersistedCircuitBreaker(BrokenReadStore(), clock=clock)
        assert await breaker.is_open(OP) is False

    @pytest.mark.asyncio
    async def test_record_failure_with_read_error_still_writes(self, clock):
        """record_failure() still writes when the read fails."""
        store = BrokenReadStore()
        breaker = PersistedCircuitBreaker(store, clock=clock)

        await breaker.record_failure(OP)

        assert store.all(CIRCUIT_BREAKER_STATE)[0]["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_write_errors_are_swallowed(self, clock):
        """Store write errors are logged, not raised."""
        breaker = PersistedCircuitBreaker(BrokenWriteStore(), clock=clock)

        await breaker.record_failure(OP)
        await breaker.reset(OP)

        assert await breaker.is_open(OP) is False


class TestNotifications:
    """Tests for state change notifications."""

    @pytest.mark.asyncio
    async def test_closed_to_open(self, breaker):
        """Opening the breaker notifies closed to open."""
        callback = MagicMock()
        set_notification_callback(callback)

        await trip(breaker, 2)
        callback.assert_not_called()

        await breaker.record_failure(OP)
        callback.assert_called_once_with(OP, "closed", "open")

    @pytest.mark.asyncio
    async def test_probe_cycle_transitions(self, breaker, clock):
        """A failed probe notifies open to half_open and back to open."""
        await trip(breaker)
        callback = MagicMock()
        set_notification_callback(callback)

        clock.advance(61)
        await breaker.is_open(OP)
        await breaker.record_failure(OP)

        assert [c.args for c in callback.call_args_list] == [
            (OP, "open", "half_open"),
            (OP, "half_open", "open"),
        ]

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_propagate(self, breaker):
        """A failing callback never breaks the breaker."""
        set_notification_callback(MagicMock(side_effect=RuntimeError("webhook down")))

        await trip(breaker)

        assert await breaker.is_open(OP) is True


class TestOperatorView:
    """Tests for get_state and get_all_states."""

    @pytest.mark.asyncio
    async def test_unknown_breaker_is_closed(self, breaker):
        """An unknown operation reports closed."""
        state = await breaker.get_state(OP)
        assert state["state"] == "closed"
        assert state["failure_count"] == 0
        assert state["last_failure_time"] is None

    @pytest.mark.asyncio
    async def test_open_reports_retry_after(self, breaker, clock):
        """An open breaker reports seconds until retry."""
        await trip(breaker)
        clock.advance(20)

        state = await breaker.get_state(OP)

        assert state["state"] == "open"
        assert state["retry_after_seconds"] == 40.0

    @pytest.mark.asyncio
    async def test_get_state_does_not_spend_probe(self, breaker, clock):
        """Reading the state never spends the probe."""
        await trip(breaker)
        clock.advance(61)

        assert (await breaker.get_state(OP))["state"] == "half_open"
        assert await breaker.is_open(OP) is False

    @pytest.mark.asyncio
    async def test_get_all_states(self, breaker):
        """All persisted breakers are listed."""
        await trip(breaker)
        await breaker.record_failure("relationship_evaluation")

        states = await breaker.get_all_states()

        assert [(s["name"], s["state"]) for s in states] == [
            (OP, "open"),
            ("relationship_evaluation", "closed"),
        ]


class TestSQLPersistence:
    """Tests for breaker state persisted through SQLModel."""

    @pytest.mark.asyncio
    async def test_state_shared_between_instances(self, sql_store, clock):
        """A breaker opened through one instance is open for another one."""
        first = PersistedCircuitBreaker(sql_store, clock=clock)
        await trip(first)

        second = PersistedCircuitBreaker(sql_store, clock=clock)
        assert await second.is_open(OP) is True

        clock.advance(61)
        assert await second.is_open(OP) is False
        assert await first.is_open(OP) is True

    @pytest.mark.asyncio
    async def test_reset_persists(self, sql_store, clock):
        """A reset is visible to a fresh instance."""
        breaker = PersistedCircuitBreaker(sql_store, clock=clock)
        await trip(breaker)
        await breaker.reset(OP)

        state = await sql_store.get(CIRCUIT_BREAKER_STATE, OP)
        assert state["failure_count"] == 0
        assert state["is_open"] is False
