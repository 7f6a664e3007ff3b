"""Logging setup for DocChat.

Console output is either human-readable (optionally colored) or one JSON
object per line. Per-session context such as the WebSocket session id or
the documentation URL travels on each record as ``ctx_<name>`` attributes;
both formatters render it.
"""

from __future__ import annotations
import functools
import json
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

CONTEXT_PREFIX = "ctx_"

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "openai", "aiohttp")

# Keyword arguments the logging API itself understands
_LOGGING_KWARGS = {"exc_info", "stack_info", "stacklevel", "extra"}

# Present on every LogRecord; anything else arrived through ``extra``
_STANDARD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _split_extras(record: logging.LogRecord):
    context: Dict[str, Any] = {}
    fields: Dict[str, Any] = {}
    for key, value in vars(record).items():
        if key in _STANDARD_ATTRS:
            continue
        if key.startswith(CONTEXT_PREFIX):
            context[key[len(CONTEXT_PREFIX):]] = value
        else:
            fields[key] = value
    return context, fields


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Session context is nested under ``context``; other ``extra`` fields
    (timings, counters) sit at the top level.
    """

    def __init__(self, service_name: str = "docchat"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        context, fields = _split_extras(record)
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
            **fields,
        }
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """``time | LEVEL | logger | message key=value ...`` for terminals."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        context, _ = _split_extras(record)
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        line = f"{timestamp} | {record.levelname:8} | {record.name} | {record.getMessage()}"
        if context:
            line += " " + " ".join(f"{key}={value}" for key, value in context.items())

        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color:
            line = f"{color}{line}{self.RESET}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    service_name: str = "docchat",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Replace the root logger's handlers with DocChat's.

    Args:
        level: Log level name; unknown names fall back to INFO
        service_name: Value of the ``service`` field in JSON output
        log_file: Also append JSON records to this file
        use_json: JSON instead of the readable console format
        use_colors: Color the readable console format
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter(service_name) if use_json else ColoredFormatter(use_colors))
    handlers = [console]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter(service_name))
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    for handler in handlers:
        handler.setLevel(numeric_level)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


class StructuredLogger(logging.LoggerAdapter):
    """Logger adapter that stamps bound context onto every record.

    Keyword arguments other than the logging API's own become context for
    that call only::

        log = get_structured_logger(__name__, session_id=sid)
        log.warning("Documentation load failed", url=url)
    """

    def process(self, msg, kwargs):
        context = dict(self.extra or {})
        for key in [k for k in kwargs if k not in _LOGGING_KWARGS]:
            context[key] = kwargs.pop(key)
        extra = dict(kwargs.get("extra") or {})
        extra.update({f"{CONTEXT_PREFIX}{key}": value for key, value in context.items()})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context) -> "StructuredLogger":
        """A new adapter with additional bound context."""
        return StructuredLogger(self.logger, {**(self.extra or {}), **context})


def get_structured_logger(name: str, **context) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), context)


def log_performance(logger_name: Optional[str] = None, threshold_ms: float = 1000.0):
    """Decorator for coroutine functions: warn when slow, record failures."""
    def decorator(func):
        logger = logging.getLogger(logger_name or func.__module__)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{func.__name__} failed after {(time.perf_counter() - started) * 1000:.0f}ms",
                    extra={"function": func.__name__, "error_type": type(e).__name__}
                )
                raise
            finally:
                duration_ms = (time.perf_counter() - started) * 1000
                if duration_ms > threshold_ms:
                    logger.warning(
                        f"Slow function execution: {func.__name__}",
                        extra={"function": func.__name__, "duration_ms": round(duration_ms, 1),
                               "threshold_ms": threshold_ms}
                    )

        return wrapper
    return decorator
