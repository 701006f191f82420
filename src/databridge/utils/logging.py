"""Structured logging for DataBridge.

structlog renders every event once; the stdlib root logger then fans the
rendered line out to a Rich console handler on stderr and, optionally, to
a log file holding either JSON lines or the plain rendered text.
"""

import json
import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console
from rich.logging import RichHandler
from structlog.typing import EventDict, Processor, WrappedLogger

from databridge import __version__

APP_NAME = "databridge"

# Keys whose values never reach a log line
SENSITIVE_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization", "credential")

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")


def _to_level(name: str | None, default: int) -> int:
    if not name:
        return default
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else default


def stamp_application(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """structlog processor that tags each event with the application name and version."""
    event_dict.setdefault("app", APP_NAME)
    event_dict.setdefault("version", __version__)
    return event_dict


class JsonLinesFormatter(logging.Formatter):
    """Write each record as a single JSON object.

    Records arrive already rendered by structlog, so the message is the
    full key=value line with any color codes removed.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": _ANSI_ESCAPE.sub("", record.getMessage()),
            "app": APP_NAME,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _console_handler(level: int) -> logging.Handler:
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    return handler


def _file_handler(path: Path, level: int, log_format: str) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        JsonLinesFormatter() if log_format == "json" else logging.Formatter("%(message)s")
    )
    return handler


def configure_logging(
    level: str = "WARNING",
    log_format: str = "json",
    log_file: str | None = None,
    file_level: str | None = None,
) -> None:
    """Install the console handler and, when asked, a file handler.

    Safe to call more than once: handlers from an earlier call are closed
    and replaced.

    Args:
        level: Console log level
        log_format: File format, 'json' or 'console'
        log_file: Path of the log file, or None for console only
        file_level: Log level of the file handler (DEBUG when omitted)
    """
    console_level = _to_level(level, logging.WARNING)
    handlers = [_console_handler(console_level)]
    lowest = console_level
    if log_file:
        file_log_level = _to_level(file_level, logging.DEBUG)
        handlers.append(_file_handler(Path(log_file), file_log_level, log_format))
        lowest = min(lowest, file_log_level)

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    root.setLevel(logging.DEBUG)
    for handler in handlers:
        root.addHandler(handler)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        stamp_application,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer(colors=False),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(lowest),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, usually named after the calling module."""
    return structlog.get_logger(name)


def log_api_request(
    logger: structlog.stdlib.BoundLogger,
    method: str,
    url: str,
    status_code: int,
    duration_ms: float | None = None,
    **extra: Any,
) -> None:
    """Log a finished HTTP call. Successful calls log at debug, others at warning.

    Args:
        logger: Logger instance
        method: HTTP method
        url: Request URL
        status_code: Response status
        duration_ms: Round trip time in milliseconds
        **extra: Additional fields
    """
    fields: dict[str, Any] = {"method": method, "url": url, "status_code": status_code, **extra}
    if duration_ms is not None:
        fields["duration_ms"] = round(duration_ms, 2)

    if status_code < 400:
        logger.debug("http_response", **fields)
    else:
        kind = "client_error" if status_code < 500 else "server_error"
        logger.warning(f"http_{kind}", **fields)


def log_stage_progress(
    logger: structlog.stdlib.BoundLogger,
    stage: str,
    table: str,
    completed: int,
    total: int | None = None,
    **extra: Any,
) -> None:
    """Log how many rows of a table a stage has handled so far."""
    fields: dict[str, Any] = {"stage": stage, "table": table, "completed": completed, **extra}
    if total:
        fields["total"] = total
        fields["percentage"] = round(100 * completed / total, 2)
    logger.info("stage_progress", **fields)


def log_error(
    logger: structlog.stdlib.BoundLogger,
    error: BaseException,
    context: str,
    **extra: Any,
) -> None:
    """Log an exception together with where it happened and its traceback."""
    logger.error(
        "error_occurred",
        context=context,
        error_type=type(error).__name__,
        error=str(error),
        exc_info=error,
        **extra,
    )


def sanitize_payload(payload: Any, max_depth: int = 10) -> Any:
    """Return a copy of payload with the values of sensitive keys masked.

    Args:
        payload: dict, list or scalar to clean
        max_depth: Nesting depth after which the remainder is dropped

    Returns:
        The cleaned copy
    """
    if max_depth <= 0:
        return "<truncated>"
    if isinstance(payload, list):
        return [sanitize_payload(item, max_depth - 1) for item in payload]
    if not isinstance(payload, dict):
        return payload

    cleaned: dict[Any, Any] = {}
    for key, value in payload.items():
        lowered = str(key).lower()
        if any(marker in lowered for marker in SENSITIVE_KEYS):
            cleaned[key] = "***" if value else value
        else:
            cleaned[key] = sanitize_payload(value, max_depth - 1)
    return cleaned
