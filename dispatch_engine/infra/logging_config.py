# dispatch_engine/infra/logging_config.py
"""
Logging setup: JSON lines in production, colored console lines in dev.

Dispatch code logs with ``extra={"job_id": ..., "attempt_id": ...}`` (or
through ``LogContext``); both formatters lift those fields out of the
record so one job can be followed across commands, timers and deliveries.
"""
import json
import logging
import sys
from datetime import datetime, timezone

# Correlation ids, shown by both formatters
CONTEXT_FIELDS = ("job_id", "attempt_id", "professional_id", "request_id")

# Request / timing details, JSON output only
DETAIL_FIELDS = ("step", "method", "route", "status_code", "duration_ms", "error_type")

_NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.INFO,
    "aiohttp.access": logging.WARNING,
    "asyncio": logging.WARNING,
}


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping in production"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for name in CONTEXT_FIELDS + DETAIL_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable format for development"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    # label, attribute, characters kept (None = all)
    _SHORT = (
        ("job", "job_id", 8),
        ("attempt", "attempt_id", 8),
        ("pro", "professional_id", None),
        ("req", "request_id", 8),
    )

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]
        timestamp = _record_time(record).strftime("%Y-%m-%d %H:%M:%S")

        context_parts = []
        for label, attr, keep in self._SHORT:
            value = getattr(record, attr, None)
            if value is not None:
                context_parts.append(f"{label}={str(value)[:keep]}")
        context = f" [{' '.join(context_parts)}]" if context_parts else ""

        message = (
            f"{color}[{timestamp}] {record.levelname:8}{reset} "
            f"{record.name}{context} - {record.getMessage()}"
        )
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure the root logger with a single stdout handler.

    Safe to call more than once (tests, reloads): earlier handlers are
    replaced, not stacked.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())
    root_logger.addHandler(handler)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    logging.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Logger wrapper that stamps the same correlation ids on every record.

        log = LogContext(logger, job_id=job.id)
        log.info("Dispatch started")
    """

    def __init__(self, logger: logging.Logger, **fields):
        self.logger = logger
        self.context = {k: v for k, v in fields.items() if v is not None}

    def log(self, level: int, msg: str, *args, **kwargs) -> None:
        extra = dict(kwargs.pop("extra", None) or {})
        extra.update(self.context)
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.ERROR, msg, *args, **kwargs)


def mask_coordinates(lat: float, lon: float) -> str:
    """Mask GPS coordinates for logging.

    Example: ``mask_coordinates(43.651, -79.383)`` → ``"43.7**, -79.4**"``

    One decimal (roughly 10 km) is enough to debug a radius query without
    putting a requester's address in the logs.
    """
    return f"{lat:.1f}**, {lon:.1f}**"
