"""
Stream Consumer Module

Drains messages from the AMQP stream queue written by the Jetstream bridge.

Components:
- ConsumerConfig: Configuration loaded from the environment
- StreamConsumer: Bounded/unbounded drain with manual acknowledgement
- DrainSession: Per-invocation drain state
- DrainTimeoutError: Raised when a bounded drain does not complete in time
- main: CLI entrypoint
"""

from src.stream_consumer.consumer import (
    ConsumerConfig,
    DrainSession,
    DrainTimeoutError,
    StreamConsumer,
    consumer_config,
    format_results,
    main,
    parse_cli_limit,
    parse_message_limit,
    run_consumer,
)

__all__ = [
    "ConsumerConfig",
    "DrainSession",
    "DrainTimeoutError",
    "StreamConsumer",
    "consumer_config",
    "format_results",
    "main",
    "parse_cli_limit",
    "parse_message_limit",
    "run_consumer",
]
