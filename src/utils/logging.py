"""
Logging setup for the operator log stream.

Every record is rendered as a single ``key=value`` line so that the log
stream can be grepped or fed to logfmt tooling:

    ts=2026-10-19T12:00:00.000Z at=info logger=src.jetstream_bridge.connector
    event=reconnect_scheduled component=ingress attempt=2 delay_ms=4000

The log message is the ``event`` and structured context is passed through
``extra``.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# Loggers from the transport libraries that are chatty at INFO
NOISY_LOGGERS = ["aio_pika", "aiormq", "websockets"]

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        text = f"{value:.2f}"
    else:
        text = str(value)
    if text == "" or any(ch in text for ch in ' "=\n'):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        return f'"{escaped}"'
    return text


class KeyValueFormatter(logging.Formatter):
    """Render log records as ``key=value`` lines with ``extra`` fields appended."""

    def extra_fields(self, record: logging.LogRecord) -> Dict[str, Any]:
        return {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith("_") and value is not None
        }

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        fields: Dict[str, Any] = {
            "ts": ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "at": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        fields.update(self.extra_fields(record))

        line = " ".join(f"{key}={_format_value(value)}" for key, value in fields.items())
        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            line += f" exc_type={_format_value(exc_type.__name__ if exc_type else None)}"
            line += f" exc_message={_format_value(str(exc_value))}"
        return line


def setup_logging(level: str = "INFO", logfmt: bool = True) -> None:
    """Configure the root logger to write to stderr.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        logfmt: Emit ``key=value`` lines; otherwise a plain console format
    """
    handler = logging.StreamHandler(sys.stderr)
    if logfmt:
        handler.setFormatter(KeyValueFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
