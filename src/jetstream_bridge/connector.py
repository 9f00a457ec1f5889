"""
Jetstream-AMQP Bridge

Bridges the Bluesky Jetstream firehose (WebSocket) into a durable AMQP stream
queue. Both connections are long-lived and reconnect on their own:

- Ingress: Jetstream WebSocket, round-robin across a pool of hosts
- Egress: AMQP connection + channel, re-declares the stream on reconnect
- Forwarder: derives routing headers, publishes, reports throughput

Delivery is at-most-once: nothing is buffered or replayed across a reconnect.

Table of Contents:
==================
1. IMPORTS
2. CONFIGURATION
3. WEBSOCKET INGRESS
4. AMQP EGRESS
5. FORWARDER
6. MAIN BRIDGE
7. CLI ENTRYPOINT
"""

# ============================================================================
# 1. IMPORTS
# ============================================================================

import asyncio
import math
import signal
import sys
import time
from typing import Awaitable, Callable, Dict, List, NamedTuple, Optional

import aio_pika
import websockets
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractQueue
from websockets.asyncio.client import ClientConnection

from src.jetstream_bridge.routing import extract_routing_metadata
from src.utils.config import get_env_float, get_env_int, get_env_list, get_env_str
from src.utils.logging import get_logger, setup_logging
from src.utils.resilience import ConnectionState, ResilientConnection
from src.utils.retry import ExponentialBackoff


# ============================================================================
# 2. CONFIGURATION
# ============================================================================

class Config:
    """Configuration class that loads settings from environment variables."""

    _DEFAULT_JETSTREAM_SERVERS = [
        "jetstream1.us-east.bsky.network",
        "jetstream2.us-east.bsky.network",
    ]

    # Jetstream Configuration
    JETSTREAM_SERVERS: List[str] = get_env_list("JETSTREAM_SERVERS", _DEFAULT_JETSTREAM_SERVERS)
    JETSTREAM_PATH: str = get_env_str("JETSTREAM_PATH", "/subscribe")
    WS_CONNECTION_TIMEOUT: float = get_env_float("WS_CONNECTION_TIMEOUT", 10.0)
    # Largest accepted WebSocket message; larger frames close the connection
    WS_MAX_MESSAGE_BYTES: int = get_env_int("WS_MAX_MESSAGE_BYTES", 2 ** 20)

    # AMQP Configuration
    AMQP_URL: str = get_env_str("AMQP_URL", "amqp://localhost:5672")
    STREAM_NAME: str = get_env_str("STREAM_NAME", "bluesky-stream")

    # Reconnect backoff, shared by both connections
    RECONNECT_BASE_DELAY_MS: int = get_env_int("RECONNECT_BASE_DELAY_MS", 1000)
    RECONNECT_MAX_DELAY_MS: int = get_env_int("RECONNECT_MAX_DELAY_MS", 30000)
    RECONNECT_MAX_ATTEMPTS: int = get_env_int("RECONNECT_MAX_ATTEMPTS", 10)

    THROUGHPUT_INTERVAL_SECONDS: float = get_env_float("THROUGHPUT_INTERVAL_SECONDS", 5.0)

    # Operator dashboard port, served by a separate static file server
    HTTP_PORT: int = get_env_int("HTTP_PORT", 3000)

    # Logging Configuration
    LOG_LEVEL: str = get_env_str("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration settings.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        if not cls.JETSTREAM_SERVERS:
            raise ValueError("JETSTREAM_SERVERS is required")

        if not cls.AMQP_URL:
            raise ValueError("AMQP_URL is required")

        if not cls.STREAM_NAME:
            raise ValueError("STREAM_NAME is required")

        if cls.RECONNECT_BASE_DELAY_MS <= 0:
            raise ValueError("RECONNECT_BASE_DELAY_MS must be positive")

        if cls.RECONNECT_MAX_DELAY_MS < cls.RECONNECT_BASE_DELAY_MS:
            raise ValueError("RECONNECT_MAX_DELAY_MS must be >= RECONNECT_BASE_DELAY_MS")

        if cls.RECONNECT_MAX_ATTEMPTS < 1:
            raise ValueError("RECONNECT_MAX_ATTEMPTS must be >= 1")

        if cls.THROUGHPUT_INTERVAL_SECONDS <= 0:
            raise ValueError("THROUGHPUT_INTERVAL_SECONDS must be positive")

        if cls.WS_MAX_MESSAGE_BYTES <= 0:
            raise ValueError("WS_MAX_MESSAGE_BYTES must be positive")

    @classmethod
    def make_backoff(cls) -> ExponentialBackoff:
        return ExponentialBackoff(
            initial_delay_ms=cls.RECONNECT_BASE_DELAY_MS,
            max_delay_ms=cls.RECONNECT_MAX_DELAY_MS,
            multiplier=2.0,
            max_attempts=cls.RECONNECT_MAX_ATTEMPTS,
        )


# Create a singleton instance
config = Config()

logger = get_logger(__name__)

MessageHandler = Callable[[bytes], Awaitable[object]]


# ============================================================================
# 3. WEBSOCKET INGRESS
# ============================================================================

class JetstreamIngress(ResilientConnection):
    """Jetstream WebSocket subscription that reconnects forever.

    Every reconnect moves to the next host in ``servers`` (round-robin).
    Messages are handed to ``on_message`` one at a time in arrival order;
    whatever is in flight when the socket drops is lost.
    """

    component = "ingress"

    def __init__(
        self,
        servers: List[str],
        on_message: MessageHandler,
        backoff: ExponentialBackoff,
        path: str = "/subscribe",
        connect_timeout: float = 10.0,
        max_message_size: int = 2 ** 20,
    ):
        if not servers:
            raise ValueError("at least one Jetstream server is required")
        super().__init__(backoff)
        self.servers = list(servers)
        self.server_index = 0
        self.path = path
        self.connect_timeout = connect_timeout
        self.max_message_size = max_message_size
        self._on_message = on_message

        self.websocket: Optional[ClientConnection] = None
        self._reader: Optional[asyncio.Task] = None
        self.messages_received = 0

    @property
    def current_server(self) -> str:
        return self.servers[self.server_index]

    @property
    def url(self) -> str:
        return f"wss://{self.current_server}{self.path}"

    def _prepare_reconnect(self) -> None:
        self.server_index = (self.server_index + 1) % len(self.servers)

    def _log_fields(self) -> Dict[str, object]:
        fields = super()._log_fields()
        fields["endpoint"] = self.current_server
        return fields

    async def _connect(self) -> None:
        websocket = await asyncio.wait_for(
            websockets.connect(self.url, max_size=self.max_message_size),
            timeout=self.connect_timeout,
        )
        self.websocket = websocket
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(websocket))

    async def _read_loop(self, websocket: ClientConnection) -> None:
        reason = "closed"
        try:
            async for message in websocket:
                data = message.encode("utf-8") if isinstance(message, str) else bytes(message)
                self.messages_received += 1
                await self._on_message(data)
        except websockets.exceptions.ConnectionClosed as e:
            reason = "error"
            logger.error(
                "websocket_error",
                extra={**self._log_fields(), "error_type": type(e).__name__, "error_details": str(e)},
            )
        except Exception as e:
            reason = "error"
            logger.error(
                "websocket_error",
                extra={**self._log_fields(), "error_type": type(e).__name__, "error_details": str(e)},
                exc_info=True,
            )

        if self.websocket is not websocket:
            # Handle was replaced or released by close()
            return

        logger.warning(
            "disconnected",
            extra={
                **self._log_fields(),
                "reason": reason,
                "close_code": websocket.close_code,
                "close_reason": websocket.close_reason or "no reason",
                "messages_received": self.messages_received,
            },
        )
        self.websocket = None
        self._reader = None
        if self.state is ConnectionState.CONNECTED:
            self.state = ConnectionState.DISCONNECTED
        self.schedule_reconnect(reason)

    async def _disconnect(self) -> None:
        websocket, self.websocket = self.websocket, None
        reader, self._reader = self._reader, None

        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.error(
                    "websocket_close_failed",
                    extra={"component": self.component, "error_type": type(e).__name__, "error_details": str(e)},
                )


# ============================================================================
# 4. AMQP EGRESS
# ============================================================================

class StreamChannel(NamedTuple):
    """An open AMQP connection, its channel and the declared stream queue."""
    connection: AbstractConnection
    channel: AbstractChannel
    queue: AbstractQueue


async def open_stream_channel(
    url: str,
    stream_name: str,
    prefetch_count: Optional[int] = None,
) -> StreamChannel:
    """Connect, open a channel and declare the durable stream queue.

    Raises:
        Exception: Whatever aio-pika raised; the connection is closed first.
    """
    connection = await aio_pika.connect(url)
    try:
        channel = await connection.channel()
        if prefetch_count:
            await channel.set_qos(prefetch_count=prefetch_count)
        queue = await channel.declare_queue(
            stream_name,
            durable=True,
            arguments={"x-queue-type": "stream"},
        )
    except Exception:
        await connection.close()
        raise
    return StreamChannel(connection, channel, queue)


class AMQPStreamPublisher(ResilientConnection):
    """Publishes to an AMQP stream queue and reconnects when the channel dies.

    A close callback and a failed publish can both report the same outage;
    the reconnect state machine absorbs the second signal. Messages published
    while no channel is open are dropped, never queued.
    """

    component = "egress"

    def __init__(self, url: str, stream_name: str, backoff: ExponentialBackoff):
        super().__init__(backoff)
        self.url = url
        self.stream_name = stream_name
        self._handle: Optional[StreamChannel] = None
        self._retired: List[StreamChannel] = []

    def _log_fields(self) -> Dict[str, object]:
        fields = super()._log_fields()
        fields["stream"] = self.stream_name
        return fields

    async def _connect(self) -> None:
        await self._close_retired()
        handle = await open_stream_channel(self.url, self.stream_name)
        handle.connection.close_callbacks.add(self._on_transport_closed)
        handle.channel.close_callbacks.add(self._on_transport_closed)
        self._handle = handle

    def _on_transport_closed(self, sender: object, exc: Optional[BaseException] = None) -> None:
        handle = self._handle
        if handle is None or (sender is not handle.connection and sender is not handle.channel):
            return
        self._retire(handle, "channel_closed", exc)

    def _retire(self, handle: StreamChannel, reason: str, exc: Optional[BaseException] = None) -> None:
        """Stop using ``handle`` and start a reconnect if one is not already running."""
        if handle is not self._handle:
            return
        logger.warning(
            "disconnected",
            extra={
                **self._log_fields(),
                "reason": reason,
                "error_details": str(exc) if exc else None,
            },
        )
        self._handle = None
        self._retired.append(handle)
        if self.state is ConnectionState.CONNECTED:
            self.state = ConnectionState.DISCONNECTED
        self.schedule_reconnect(reason)

    async def publish(self, body: bytes, metadata: Optional[Dict[str, str]] = None) -> bool:
        """Publish one message to the stream.

        Returns:
            True if the broker accepted the publish, False if it was dropped.
        """
        # Everything below works on this snapshot; a reconnect swaps self._handle
        handle = self._handle
        if self.state is not ConnectionState.CONNECTED or handle is None:
            logger.debug("publish_dropped", extra={**self._log_fields(), "state": self.state.value})
            return False

        if handle.channel.is_closed:
            self._retire(handle, "publish_failed")
            return False

        message = aio_pika.Message(
            body=body,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            headers=dict(metadata or {}),
        )
        try:
            await handle.channel.default_exchange.publish(message, routing_key=self.stream_name)
        except Exception as e:
            logger.error(
                "publish_failed",
                extra={**self._log_fields(), "error_type": type(e).__name__, "error_details": str(e)},
            )
            self._retire(handle, "publish_failed", e)
            return False
        return True

    async def _close_retired(self) -> None:
        retired, self._retired = self._retired, []
        for handle in retired:
            await self._close_handle(handle)

    async def _close_handle(self, handle: StreamChannel) -> None:
        try:
            if not handle.connection.is_closed:
                await handle.connection.close()
        except Exception as e:
            logger.error(
                "amqp_close_failed",
                extra={"component": self.component, "error_type": type(e).__name__, "error_details": str(e)},
            )

    async def _disconnect(self) -> None:
        handle, self._handle = self._handle, None
        await self._close_retired()
        if handle is not None:
            await self._close_handle(handle)


# ============================================================================
# 5. FORWARDER
# ============================================================================

# Intervals shorter than this report a rate of 0
MIN_ELAPSED_SECONDS = 1e-9


class Forwarder:
    """Hands each ingress message to the publisher and tracks throughput.

    Never raises: metadata errors forward the message with empty headers,
    publish errors count the message as dropped.
    """

    def __init__(
        self,
        publisher: AMQPStreamPublisher,
        report_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.publisher = publisher
        self.report_interval = report_interval
        self._clock = clock

        # Per-interval counters, reset by report_throughput()
        self.published = 0
        self.dropped = 0
        self.metadata_errors = 0
        # Lifetime counters
        self.total_published = 0
        self.total_dropped = 0

        self._last_report = clock()
        self._report_task: Optional[asyncio.Task] = None

    async def forward(self, data: bytes) -> bool:
        try:
            metadata = extract_routing_metadata(data)
        except ValueError as e:
            self.metadata_errors += 1
            logger.warning(
                "metadata_extraction_failed",
                extra={"error_type": type(e).__name__, "error_details": str(e)[:200], "bytes": len(data)},
            )
            metadata = {}

        try:
            ok = await self.publisher.publish(data, metadata)
        except Exception as e:
            logger.error(
                "forward_failed",
                extra={"error_type": type(e).__name__, "error_details": str(e)},
                exc_info=True,
            )
            ok = False

        if ok:
            self.published += 1
            self.total_published += 1
        else:
            self.dropped += 1
            self.total_dropped += 1
        return ok

    def report_throughput(self) -> float:
        """Log and return the publish rate since the last report, then reset."""
        now = self._clock()
        elapsed = now - self._last_report
        rate = self.published / elapsed if elapsed > MIN_ELAPSED_SECONDS else 0.0
        if not math.isfinite(rate):
            rate = 0.0

        logger.info(
            "throughput",
            extra={
                "published": self.published,
                "dropped": self.dropped,
                "metadata_errors": self.metadata_errors,
                "elapsed_s": max(elapsed, 0.0),
                "rate": rate,
                "egress_state": self.publisher.state.value,
            },
        )
        self.published = 0
        self.dropped = 0
        self.metadata_errors = 0
        self._last_report = now
        return rate

    def start_reporting(self) -> None:
        if self._report_task is not None:
            logger.warning("throughput_reporter_already_running")
            return
        self._last_report = self._clock()
        self._report_task = asyncio.get_running_loop().create_task(self._report_loop())

    async def stop_reporting(self) -> None:
        if self._report_task is None:
            return
        self._report_task.cancel()
        try:
            await self._report_task
        except asyncio.CancelledError:
            pass
        self._report_task = None

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self.report_interval)
            self.report_throughput()


# ============================================================================
# 6. MAIN BRIDGE
# ============================================================================

class StartupError(Exception):
    """Initial connection to the feed or the broker failed."""


class BlueskyAMQPBridge:
    """Wires ingress -> forwarder -> egress and runs until a shutdown signal.

    Startup is fail-fast: if either side cannot connect once, ``start()``
    raises ``StartupError``. After that every failure is retried forever.
    """

    def __init__(self, settings: Config = config):
        settings.validate()
        self.settings = settings

        self.publisher = AMQPStreamPublisher(
            url=settings.AMQP_URL,
            stream_name=settings.STREAM_NAME,
            backoff=settings.make_backoff(),
        )
        self.forwarder = Forwarder(
            self.publisher,
            report_interval=settings.THROUGHPUT_INTERVAL_SECONDS,
        )
        self.ingress = JetstreamIngress(
            servers=settings.JETSTREAM_SERVERS,
            on_message=self.forwarder.forward,
            backoff=settings.make_backoff(),
            path=settings.JETSTREAM_PATH,
            connect_timeout=settings.WS_CONNECTION_TIMEOUT,
            max_message_size=settings.WS_MAX_MESSAGE_BYTES,
        )
        self._shutdown = asyncio.Event()

    def request_shutdown(self) -> None:
        """Signal handler - just sets the shutdown event."""
        logger.info("shutdown_requested")
        self._shutdown.set()

    async def start(self) -> None:
        try:
            await self.publisher.connect()
        except Exception as e:
            raise StartupError(f"AMQP connection failed: {type(e).__name__}: {e}") from e

        try:
            await self.ingress.connect()
        except Exception as e:
            raise StartupError(f"Jetstream connection failed: {type(e).__name__}: {e}") from e

        self.forwarder.start_reporting()
        logger.info(
            "bridge_started",
            extra={
                "endpoint": self.ingress.current_server,
                "stream": self.settings.STREAM_NAME,
                "servers": len(self.ingress.servers),
            },
        )

    async def run(self) -> None:
        """Install signal handlers, start, and wait for shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)

        try:
            await self.start()
            await self._shutdown.wait()
        finally:
            await self.close()

    async def close(self) -> None:
        logger.info("bridge_stopping")
        await self.forwarder.stop_reporting()
        try:
            await self.ingress.close()
        except Exception as e:
            logger.error("ingress_close_failed", extra={"error_type": type(e).__name__, "error_details": str(e)})
        try:
            await self.publisher.close()
        except Exception as e:
            logger.error("egress_close_failed", extra={"error_type": type(e).__name__, "error_details": str(e)})
        logger.info(
            "bridge_stopped",
            extra={
                "total_published": self.forwarder.total_published,
                "total_dropped": self.forwarder.total_dropped,
            },
        )


# ============================================================================
# 7. CLI ENTRYPOINT
# ============================================================================

def main() -> int:
    """Main entry point for the application."""
    setup_logging(level=config.LOG_LEVEL, logfmt=True)

    _logger = get_logger(__name__)
    _logger.info("bridge_starting")

    try:
        bridge = BlueskyAMQPBridge()
        asyncio.run(bridge.run())
    except KeyboardInterrupt:
        _logger.info("keyboard_interrupt")
    except (StartupError, ValueError) as e:
        _logger.error("startup_failed", extra={"error_type": type(e).__name__, "error_details": str(e)})
        return 1
    except Exception as e:
        _logger.error("fatal_error", extra={"error_type": type(e).__name__, "error_details": str(e)}, exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
