"""
Stream Consumer

Reads messages back out of the AMQP stream queue written by the bridge.

Two modes, selected by whether a message limit is given:
- Unbounded: print every message as pretty JSON and acknowledge it, until cancelled
- Bounded: collect exactly N messages, acknowledge each, cancel the
  subscription and return them; fail with DrainTimeoutError if N messages do
  not arrive within the timeout

Unlike the bridge, the consumer never reconnects: any connection failure is
surfaced to the caller so scripts can detect incomplete results.
"""

import argparse
import asyncio
import json
import signal
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from aio_pika.abc import AbstractIncomingMessage

from src.jetstream_bridge.connector import StreamChannel, open_stream_channel
from src.utils.config import get_env_float, get_env_int, get_env_str
from src.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

JSON_CONTENT_TYPE = "application/json"


# ============================================================================
# CONFIGURATION
# ============================================================================

class ConsumerConfig:
    """Consumer settings loaded from environment variables."""

    AMQP_URL: str = get_env_str("AMQP_URL", "amqp://localhost:5672")
    STREAM_NAME: str = get_env_str("STREAM_NAME", "bluesky-stream")
    CONSUMER_TIMEOUT_SECONDS: float = get_env_float("CONSUMER_TIMEOUT_SECONDS", 10.0)
    # Stream queues refuse consumers without a prefetch limit
    CONSUMER_PREFETCH: int = get_env_int("CONSUMER_PREFETCH", 100)
    # x-stream-offset: "first", "last", "next", or an offset/timestamp
    STREAM_OFFSET: Optional[str] = get_env_str("STREAM_OFFSET")
    LOG_LEVEL: str = get_env_str("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Raises:
            ValueError: If required configuration is missing or invalid.
        """
        if not cls.AMQP_URL:
            raise ValueError("AMQP_URL is required")
        if not cls.STREAM_NAME:
            raise ValueError("STREAM_NAME is required")
        if cls.CONSUMER_TIMEOUT_SECONDS <= 0:
            raise ValueError("CONSUMER_TIMEOUT_SECONDS must be positive")
        if cls.CONSUMER_PREFETCH <= 0:
            raise ValueError("CONSUMER_PREFETCH must be positive")


consumer_config = ConsumerConfig()


# ============================================================================
# DRAIN SESSION
# ============================================================================

class DrainTimeoutError(Exception):
    """The message limit was not reached before the timeout."""

    def __init__(self, collected: int, limit: int):
        super().__init__(f"Timeout: only received {collected}/{limit} messages")
        self.collected = collected
        self.limit = limit


@dataclass
class DrainSession:
    """State of one consume() call."""
    limit: Optional[int]
    collected: List[Any] = field(default_factory=list)
    count: int = 0
    deadline: Optional[float] = None
    # Set once the limit is hit or the session is being torn down
    cancelling: bool = False

    @property
    def bounded(self) -> bool:
        return self.limit is not None


# ============================================================================
# CONSUMER
# ============================================================================

class StreamConsumer:
    """Subscribes to the stream queue with manual acknowledgement."""

    def __init__(
        self,
        message_limit: Optional[int] = None,
        amqp_url: Optional[str] = None,
        stream_name: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        prefetch_count: Optional[int] = None,
        stream_offset: Optional[str] = None,
        output: Callable[[str], None] = print,
    ):
        self.message_limit = message_limit
        self.amqp_url = amqp_url or consumer_config.AMQP_URL
        self.stream_name = stream_name or consumer_config.STREAM_NAME
        self.timeout_seconds = timeout_seconds or consumer_config.CONSUMER_TIMEOUT_SECONDS
        self.prefetch_count = prefetch_count or consumer_config.CONSUMER_PREFETCH
        self.stream_offset = stream_offset or consumer_config.STREAM_OFFSET
        self.output = output

        self.handle: Optional[StreamChannel] = None
        self.consumer_tag: Optional[str] = None
        self.session: Optional[DrainSession] = None
        self._finished: Optional[asyncio.Future] = None

    async def connect(self) -> None:
        logger.info("connecting", extra={"component": "consumer", "stream": self.stream_name})
        self.handle = await open_stream_channel(
            self.amqp_url,
            self.stream_name,
            prefetch_count=self.prefetch_count,
        )
        self.handle.connection.close_callbacks.add(self._on_transport_closed)
        self.handle.channel.close_callbacks.add(self._on_transport_closed)
        logger.info("connected", extra={"component": "consumer", "stream": self.stream_name})

    def _on_transport_closed(self, sender: object, exc: Optional[BaseException] = None) -> None:
        """Fail the running session when the broker drops the connection or channel."""
        if self._finished is None or self._finished.done():
            return
        if self.session is not None:
            self.session.cancelling = True
        logger.error(
            "disconnected",
            extra={"component": "consumer", "stream": self.stream_name, "error_details": str(exc) if exc else None},
        )
        self._finished.set_exception(ConnectionError(f"broker connection lost: {exc or 'closed'}"))

    async def consume(self) -> Optional[List[Any]]:
        """Run one drain session.

        Returns:
            The collected messages in bounded mode, None in unbounded mode
            once cancel() or close() is called.

        Raises:
            RuntimeError: If connect() has not been called.
            DrainTimeoutError: If the limit is not reached in time.
            ConnectionError: If the broker drops the connection mid-session.
        """
        if self.handle is None:
            raise RuntimeError("Consumer is not connected. Call connect() first.")

        loop = asyncio.get_running_loop()
        session = DrainSession(limit=self.message_limit)
        self.session = session
        self._finished = loop.create_future()

        arguments = {"x-stream-offset": self.stream_offset} if self.stream_offset else None
        self.consumer_tag = await self.handle.queue.consume(
            self._on_message,
            no_ack=False,
            arguments=arguments,
        )

        if not session.bounded:
            logger.info("consuming", extra={"stream": self.stream_name})
            await self._finished
            return None

        logger.info("fetching", extra={"stream": self.stream_name, "limit": session.limit})
        session.deadline = loop.time() + self.timeout_seconds
        try:
            await asyncio.wait_for(asyncio.shield(self._finished), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            session.cancelling = True
            await self._cancel_subscription()
            raise DrainTimeoutError(session.count, session.limit) from None

        await self._cancel_subscription()
        logger.info("drain_complete", extra={"collected": session.count, "limit": session.limit})
        return list(session.collected)

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        session = self.session
        if session is None or session.cancelling:
            await message.reject(requeue=False)
            return

        if message.content_type != JSON_CONTENT_TYPE:
            logger.debug("skipped_message", extra={"content_type": message.content_type})
            await message.ack()
            return

        try:
            payload = json.loads(message.body)
        except ValueError as e:
            logger.error(
                "unparseable_message",
                extra={"error_type": type(e).__name__, "error_details": str(e)[:200]},
            )
            await message.reject(requeue=False)
            return

        if not session.bounded:
            self.output(json.dumps(payload, indent=2, ensure_ascii=False))
            self.output("---")
            await message.ack()
            return

        # Count before the first await so later deliveries see the limit
        session.collected.append(payload)
        session.count += 1
        limit_reached = session.count >= session.limit
        if limit_reached:
            session.cancelling = True

        await message.ack()
        if limit_reached:
            self._finish()

    def _finish(self) -> None:
        if self._finished is not None and not self._finished.done():
            self._finished.set_result(None)

    def cancel(self) -> None:
        """Stop the current session; unbounded consume() returns None."""
        if self.session is not None:
            self.session.cancelling = True
        self._finish()

    async def _cancel_subscription(self) -> None:
        tag, self.consumer_tag = self.consumer_tag, None
        if tag is None or self.handle is None:
            return
        try:
            await self.handle.queue.cancel(tag)
        except Exception as e:
            logger.warning("cancel_failed", extra={"error_type": type(e).__name__, "error_details": str(e)})

    async def close(self) -> None:
        """Cancel the subscription, then close channel and connection."""
        self.cancel()
        await self._cancel_subscription()

        handle, self.handle = self.handle, None
        if handle is None:
            return
        try:
            if not handle.channel.is_closed:
                await handle.channel.close()
            if not handle.connection.is_closed:
                await handle.connection.close()
        except Exception as e:
            logger.error("close_failed", extra={"error_type": type(e).__name__, "error_details": str(e)})


def format_results(messages: List[Any]) -> str:
    return json.dumps(messages, ensure_ascii=False)


# ============================================================================
# CLI ENTRYPOINT
# ============================================================================

USAGE_EPILOG = """\
Examples:
  python -m src.stream_consumer                          # Consume messages indefinitely
  python -m src.stream_consumer 10                       # Get 10 messages as JSON array
  python -m src.stream_consumer 100 > samples.json       # Get 100 messages and save to file
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m src.stream_consumer",
        description="Read messages from the Bluesky AMQP stream.",
        epilog=USAGE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "number_of_messages",
        nargs="?",
        default=None,
        help="Number of messages to retrieve (optional, defaults to unlimited)",
    )
    return parser


def parse_message_limit(value: Optional[str]) -> Optional[int]:
    """Positive integer limit, or None (unbounded) for anything else."""
    if value is None:
        return None
    try:
        limit = int(value)
    except ValueError:
        return None
    return limit if limit > 0 else None


async def run_consumer(consumer: StreamConsumer) -> int:
    """Connect, consume and close. Returns the process exit code."""
    if consumer.message_limit is None:
        # A bounded drain exits on its own, so only unbounded mode handles signals
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, consumer.cancel)

    try:
        await consumer.connect()
        result = await consumer.consume()
    except DrainTimeoutError as e:
        logger.error("drain_timeout", extra={"collected": e.collected, "limit": e.limit})
        return 1
    except Exception as e:
        logger.error("consumer_failed", extra={"error_type": type(e).__name__, "error_details": str(e)})
        return 1
    finally:
        logger.info("consumer_stopping")
        await consumer.close()

    if result is not None:
        consumer.output(format_results(result))
    return 0


def parse_cli_limit(argv: Optional[List[str]] = None) -> Optional[int]:
    """Message limit from the command line; unknown arguments are ignored."""
    args, _ = build_parser().parse_known_args(argv)
    return parse_message_limit(args.number_of_messages)


def main(argv: Optional[List[str]] = None) -> int:
    message_limit = parse_cli_limit(argv)

    setup_logging(level=consumer_config.LOG_LEVEL, logfmt=True)
    try:
        consumer_config.validate()
    except ValueError as e:
        logger.error("invalid_config", extra={"error_details": str(e)})
        return 1

    consumer = StreamConsumer(message_limit=message_limit)
    try:
        return asyncio.run(run_consumer(consumer))
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")
        return 0


if __name__ == "__main__":
    sys.exit(main())
