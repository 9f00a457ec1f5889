"""
Reconnect state machine shared by the long-lived feed and broker connections.

A ``ResilientConnection`` owns one transport handle and walks it through:

    DISCONNECTED -> CONNECTING -> CONNECTED -> (close/error) -> RECONNECT_PENDING
         ^                                                           |
         +---------------- connect failed <------ CONNECTING <-------+

``RECONNECT_PENDING`` and ``CONNECTING`` double as the re-entrancy guard: a
failure signal that arrives while either is active does not arm a second
timer. ``CLOSED`` is terminal and set only by ``close()``.

Subclasses implement ``_connect()`` (open a fresh handle, raise on failure)
and ``_disconnect()`` (release the current handle).
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

from src.utils.logging import get_logger
from src.utils.retry import ExponentialBackoff

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_PENDING = "reconnect_pending"
    CLOSED = "closed"


class ResilientConnection:
    """Base class for a connection that reconnects forever with capped backoff.

    ``connect()`` is a single attempt that raises on failure; callers that
    need fail-fast startup use it directly. Failures observed after that
    go through ``schedule_reconnect()``, which never gives up.
    """

    component = "connection"

    def __init__(self, backoff: ExponentialBackoff):
        self.backoff = backoff
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_count = 0
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    async def _connect(self) -> None:
        raise NotImplementedError

    async def _disconnect(self) -> None:
        raise NotImplementedError

    def _prepare_reconnect(self) -> None:
        """Hook run once per scheduled reconnect, before the delay is computed."""

    def _log_fields(self) -> Dict[str, Any]:
        return {
            "component": self.component,
            "attempt": self.backoff.attempt_count,
            "reconnect_count": self.reconnect_count,
        }

    def _mark_connected(self) -> None:
        self.backoff.reset()
        self.state = ConnectionState.CONNECTED
        logger.info("connected", extra=self._log_fields())

    async def connect(self) -> None:
        """Make one connection attempt.

        Raises:
            RuntimeError: If the connection was closed.
            Exception: Whatever the transport raised on failure.
        """
        if self.state is ConnectionState.CLOSED:
            raise RuntimeError(f"{self.component} connection is closed")

        self.state = ConnectionState.CONNECTING
        logger.info("connecting", extra=self._log_fields())
        try:
            await self._connect()
        except Exception:
            if self.state is ConnectionState.CONNECTING:
                self.state = ConnectionState.DISCONNECTED
            raise
        self._mark_connected()

    def schedule_reconnect(self, reason: str) -> bool:
        """Arm a one-shot reconnect timer unless one is already in flight.

        Returns:
            True if a timer was armed, False if the signal was absorbed.
        """
        if self.state in (
            ConnectionState.RECONNECT_PENDING,
            ConnectionState.CONNECTING,
            ConnectionState.CLOSED,
        ):
            logger.debug(
                "reconnect_ignored",
                extra={**self._log_fields(), "reason": reason, "state": self.state.value},
            )
            return False

        self._prepare_reconnect()
        delay_ms = self.backoff.delay_ms()
        self.state = ConnectionState.RECONNECT_PENDING
        logger.info(
            "reconnect_scheduled",
            extra={
                **self._log_fields(),
                "reason": reason,
                "delay_ms": delay_ms,
                "saturated": self.backoff.saturated,
            },
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(delay_ms)
        )
        return True

    async def _reconnect_after(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000.0)
        if self.state is not ConnectionState.RECONNECT_PENDING:
            return

        self.backoff.advance()
        self.reconnect_count += 1
        self.state = ConnectionState.CONNECTING
        logger.info("reconnecting", extra=self._log_fields())

        try:
            await self._connect()
        except Exception as e:
            logger.warning(
                "reconnect_failed",
                extra={
                    **self._log_fields(),
                    "error_type": type(e).__name__,
                    "error_details": str(e),
                },
            )
            if self.state is ConnectionState.CONNECTING:
                self.state = ConnectionState.DISCONNECTED
                self.schedule_reconnect("connect_failed")
            return

        if self.state is not ConnectionState.CONNECTING:
            # close() ran while the handle was opening
            await self._disconnect()
            return
        self._mark_connected()

    async def close(self) -> None:
        """Stop reconnecting and release the handle. Idempotent."""
        self.state = ConnectionState.CLOSED

        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._disconnect()
        logger.info("closed", extra={"component": self.component})
