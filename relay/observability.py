"""
Logging, correlation IDs and timing for the relay.

Usage:
    from relay.observability import setup_logging, get_logger, correlation_context

    # In app startup:
    setup_logging()

    # In modules:
    logger = get_logger(__name__)

    # Around one webhook / one scheduled job:
    with correlation_context():
        logger.info("Webhook received", extra={"courier": login})
"""
import json
import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

# Correlation ID of the webhook, request or job currently being handled
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID in context."""
    _correlation_id.set(correlation_id)


def generate_correlation_id() -> str:
    """Generate a new short correlation ID."""
    return uuid.uuid4().hex[:8]


class correlation_context:
    """Context manager for setting correlation ID."""

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.token = None

    def __enter__(self):
        self.token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, *args):
        _correlation_id.reset(self.token)


def _extras(record: logging.LogRecord) -> dict:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """JSON log formatter: one object per line with extras and correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        entry.update(_extras(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class HumanReadableFormatter(logging.Formatter):
    """
    Format: TIMESTAMP - LEVEL - LOGGER [CORRELATION_ID] - MESSAGE | extras
    """

    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        correlation_str = f" [{correlation_id}]" if correlation_id else ""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        line = f"{timestamp} - {record.levelname:8} - {record.name}{correlation_str} - {record.getMessage()}"

        extras = _extras(record)
        if extras:
            line += f" | {extras}"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure root logging.

    Args:
        level: Log level name
        json_format: Output JSON lines instead of human-readable text
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


class Timer:
    """
    Context manager for timing operations.

    Usage:
        with Timer("amocrm_leads", logger) as t:
            response = await client.get(...)
        print(t.elapsed_ms)
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None, warn_ms: float = 2000):
        self.name = name
        self.logger = logger
        self.warn_ms = warn_ms
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000
        if self.logger:
            level = logging.WARNING if self.elapsed_ms > self.warn_ms else logging.DEBUG
            self.logger.log(
                level,
                f"{self.name} completed",
                extra={"duration_ms": round(self.elapsed_ms, 2)},
            )
