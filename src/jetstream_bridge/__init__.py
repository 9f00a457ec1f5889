"""Jetstream-AMQP Bridge: Bluesky firehose into a durable AMQP stream queue."""

__version__ = "0.1.0"

from .connector import (
    AMQPStreamPublisher,
    BlueskyAMQPBridge,
    Config,
    config,
    Forwarder,
    JetstreamIngress,
    StartupError,
    StreamChannel,
    open_stream_channel,
)
from .routing import (
    JetstreamEvent,
    build_routing_metadata,
    extract_routing_metadata,
)
from src.utils.logging import setup_logging, get_logger

__all__ = [
    "AMQPStreamPublisher",
    "BlueskyAMQPBridge",
    "Config",
    "config",
    "Forwarder",
    "JetstreamIngress",
    "StartupError",
    "StreamChannel",
    "open_stream_channel",
    "JetstreamEvent",
    "build_routing_metadata",
    "extract_routing_metadata",
    "setup_logging",
    "get_logger",
]
