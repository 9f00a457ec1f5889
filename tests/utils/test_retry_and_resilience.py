"""
Tests for the backoff and reconnect primitives in src.utils.

Table of Contents:
- ExponentialBackoff Tests
- ResilientConnection Tests
- Logging Formatter Tests
"""

# ============================================================================
# IMPORTS AND SETUP
# ============================================================================

import asyncio
import logging

import pytest

from src.utils.logging import KeyValueFormatter
from src.utils.resilience import ConnectionState, ResilientConnection
from src.utils.retry import ExponentialBackoff


class FlakyConnection(ResilientConnection):
    """Connection whose first ``failures`` connect attempts raise."""

    component = "test"

    def __init__(self, backoff, failures=0):
        super().__init__(backoff)
        self.failures = failures
        self.connect_calls = 0
        self.disconnect_calls = 0

    async def _connect(self):
        self.connect_calls += 1
        if self.connect_calls <= self.failures:
            raise ConnectionError(f"attempt {self.connect_calls} refused")

    async def _disconnect(self):
        self.disconnect_calls += 1


async def wait_until(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout)


def fast_backoff(max_attempts=10):
    return ExponentialBackoff(initial_delay_ms=1, max_delay_ms=8, max_attempts=max_attempts)


# ============================================================================
# EXPONENTIAL BACKOFF TESTS
# ============================================================================

class TestExponentialBackoff:
    """Tests for the delay formula and attempt bookkeeping."""

    def test_delay_formula(self):
        """Delay is min(base * 2^n, max) for every attempt."""
        backoff = ExponentialBackoff(initial_delay_ms=1000, max_delay_ms=30000)

        for n in range(50):
            assert backoff.delay_ms(n) == min(1000 * 2 ** n, 30000)

    def test_delay_is_non_decreasing(self):
        backoff = ExponentialBackoff(initial_delay_ms=250, max_delay_ms=10000)
        delays = [backoff.delay_ms(n) for n in range(40)]

        assert delays == sorted(delays)
        assert delays[-1] == 10000

    def test_huge_attempt_is_capped(self):
        backoff = ExponentialBackoff(initial_delay_ms=1000, max_delay_ms=30000)

        assert backoff.delay_ms(10_000) == 30000

    def test_next_delay_advances_attempt(self):
        backoff = ExponentialBackoff(initial_delay_ms=1000, max_delay_ms=30000)

        assert backoff.next_delay_ms() == 1000
        assert backoff.next_delay_ms() == 2000
        assert backoff.next_delay_ms() == 4000
        assert backoff.attempt_count == 3

    def test_attempt_saturates_below_ceiling(self):
        """After the ceiling, attempt is clamped to ceiling - 1 and delay stays at max."""
        backoff = ExponentialBackoff(initial_delay_ms=1000, max_delay_ms=30000, max_attempts=10)

        for _ in range(25):
            backoff.advance()

        assert backoff.attempt_count == 9
        assert backoff.delay_ms() == 30000
        assert backoff.saturated is True

    def test_reset(self):
        backoff = ExponentialBackoff()
        backoff.advance()
        backoff.advance()

        backoff.reset()

        assert backoff.attempt_count == 0
        assert backoff.delay_ms() == backoff.initial_delay_ms

    @pytest.mark.parametrize("kwargs", [
        {"initial_delay_ms": 0},
        {"initial_delay_ms": 1000, "max_delay_ms": 10},
        {"max_attempts": 0},
    ])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            ExponentialBackoff(**kwargs)


# ============================================================================
# RESILIENT CONNECTION TESTS
# ============================================================================

class TestResilientConnection:
    """Tests for the reconnect state machine."""

    @pytest.mark.asyncio
    async def test_connect_success_resets_backoff(self):
        conn = FlakyConnection(fast_backoff())
        conn.backoff.attempt_count = 4

        await conn.connect()

        assert conn.state is ConnectionState.CONNECTED
        assert conn.backoff.attempt_count == 0

    @pytest.mark.asyncio
    async def test_connect_failure_raises_and_leaves_disconnected(self):
        """A direct connect() is a single fail-fast attempt."""
        conn = FlakyConnection(fast_backoff(), failures=1)

        with pytest.raises(ConnectionError):
            await conn.connect()

        assert conn.state is ConnectionState.DISCONNECTED
        assert conn._reconnect_task is None

    @pytest.mark.asyncio
    async def test_schedule_is_idempotent_while_pending(self):
        conn = FlakyConnection(fast_backoff())
        conn.state = ConnectionState.CONNECTED

        assert conn.schedule_reconnect("closed") is True
        assert conn.schedule_reconnect("publish_failed") is False
        assert conn.state is ConnectionState.RECONNECT_PENDING

        await wait_until(lambda: conn.is_connected)
        assert conn.connect_calls == 1
        await conn.close()

    @pytest.mark.asyncio
    async def test_failed_reconnect_reenters_scheduling(self):
        """Connect failures during reconnect keep retrying until one succeeds."""
        conn = FlakyConnection(fast_backoff(), failures=3)
        conn.state = ConnectionState.CONNECTED

        conn.schedule_reconnect("closed")
        await wait_until(lambda: conn.is_connected)

        assert conn.connect_calls == 4
        assert conn.reconnect_count == 4
        assert conn.backoff.attempt_count == 0
        await conn.close()

    @pytest.mark.asyncio
    async def test_retry_never_stops_at_ceiling(self):
        conn = FlakyConnection(fast_backoff(max_attempts=3), failures=8)
        conn.state = ConnectionState.CONNECTED

        conn.schedule_reconnect("closed")
        await wait_until(lambda: conn.is_connected)

        assert conn.connect_calls == 9
        await conn.close()

    @pytest.mark.asyncio
    async def test_next_failure_after_success_starts_at_attempt_zero(self, caplog):
        conn = FlakyConnection(fast_backoff(), failures=2)
        conn.state = ConnectionState.CONNECTED
        conn.schedule_reconnect("closed")
        await wait_until(lambda: conn.is_connected)

        caplog.clear()
        with caplog.at_level(logging.INFO, logger="src.utils.resilience"):
            conn.schedule_reconnect("closed")

        scheduled = [r for r in caplog.records if r.getMessage() == "reconnect_scheduled"]
        assert scheduled[-1].attempt == 0
        assert scheduled[-1].delay_ms == conn.backoff.initial_delay_ms
        await conn.close()

    @pytest.mark.asyncio
    async def test_reconnect_count_is_logged(self, caplog):
        conn = FlakyConnection(fast_backoff(), failures=2)
        conn.state = ConnectionState.CONNECTED

        with caplog.at_level(logging.INFO, logger="src.utils.resilience"):
            conn.schedule_reconnect("closed")
            await wait_until(lambda: conn.is_connected)

        reconnecting = [r for r in caplog.records if r.getMessage() == "reconnecting"]
        assert [r.reconnect_count for r in reconnecting] == [1, 2, 3]
        connected = [r for r in caplog.records if r.getMessage() == "connected"]
        assert connected[-1].reconnect_count == conn.reconnect_count == 3
        await conn.close()

    @pytest.mark.asyncio
    async def test_close_cancels_pending_reconnect(self):
        conn = FlakyConnection(ExponentialBackoff(initial_delay_ms=10_000, max_delay_ms=10_000))
        conn.state = ConnectionState.CONNECTED
        conn.schedule_reconnect("closed")

        await conn.close()

        assert conn.state is ConnectionState.CLOSED
        assert conn.connect_calls == 0
        assert conn.disconnect_calls == 1
        assert conn.schedule_reconnect("closed") is False

    @pytest.mark.asyncio
    async def test_connect_after_close_is_rejected(self):
        conn = FlakyConnection(fast_backoff())
        await conn.close()

        with pytest.raises(RuntimeError):
            await conn.connect()


# ============================================================================
# LOGGING FORMATTER TESTS
# ============================================================================

class TestKeyValueFormatter:
    """Tests for the key=value operator log format."""

    def _record(self, msg, **extra):
        record = logging.LogRecord("src.test", logging.INFO, __file__, 1, msg, None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_formats_level_event_and_extras(self):
        line = KeyValueFormatter().format(
            self._record("reconnect_scheduled", component="ingress", attempt=2, delay_ms=4000)
        )

        assert " at=info " in line
        assert "event=reconnect_scheduled" in line
        assert "component=ingress attempt=2 delay_ms=4000" in line

    def test_quotes_values_with_spaces(self):
        line = KeyValueFormatter().format(self._record("disconnected", close_reason="going away"))

        assert 'close_reason="going away"' in line

    def test_skips_none_extras(self):
        line = KeyValueFormatter().format(self._record("disconnected", error_details=None))

        assert "error_details" not in line
