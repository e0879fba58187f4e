import json
import logging
from logging import Filter, Formatter, LogRecord
from typing import IO, Any, Dict, Optional

# Ingest messages are attributed with `extra={"endpoint": <variables link>}`.
ENDPOINT_ATTR = "endpoint"
NO_ENDPOINT = "-"

TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(endpoint)s %(name)s: %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"


class EndpointContextFilter(Filter):
    """Gives every record an `endpoint` attribute so both formats can rely on it."""

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, ENDPOINT_ATTR, None):
            setattr(record, ENDPOINT_ATTR, NO_ENDPOINT)
        return True


class JSONFormatter(Formatter):
    """
    One JSON object per line. Records that concern a single endpoint carry it
    under "endpoint", and records from ingest workers carry the worker's thread.
    """

    def format(self, record: LogRecord) -> str:
        log_object: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.name,
        }
        endpoint = getattr(record, ENDPOINT_ATTR, None)
        if endpoint and endpoint != NO_ENDPOINT:
            log_object["endpoint"] = endpoint
        if record.threadName and record.threadName != "MainThread":
            log_object["thread"] = record.threadName
        if record.exc_info:
            log_object["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_object)


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    stream: Optional[IO[str]] = None,
    force: bool = False,
) -> None:
    """
    Configures the root logger. The CLI and the Orchestrator both call this, so
    a second call only adjusts the level unless `force` is set.

    Args:
        level: The minimum logging level to output.
        log_format: 'text' or 'json'.
        stream: The stream to log to. Defaults to sys.stderr.
        force: If True, clear existing handlers and re-configure.
    """
    root = logging.getLogger()
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    if root.hasHandlers() and not force:
        root.setLevel(numeric_level)
        return

    root.handlers.clear()
    root.setLevel(numeric_level)

    handler = logging.StreamHandler(stream)
    handler.setLevel(numeric_level)
    handler.addFilter(EndpointContextFilter())
    if log_format.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(Formatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT))
    root.addHandler(handler)
