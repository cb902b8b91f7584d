"""
Application logging.

LOG_FORMAT=json switches stdout to one JSON object per line for log drains;
otherwise a short human format is used. Every record is stamped with the
current request's correlation id and owner from contextvars.
"""
import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Set per request by CorrelationMiddleware and the owner dependency
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")
request_owner_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_owner_id", default="")

# Fields copied from logger.info("msg", extra={...}) into JSON output
EXTRA_FIELDS = (
    "method", "path", "status", "duration_ms", "client_ip",
    "error", "error_type", "service", "circuit_state",
    "job_id", "old_status", "new_status", "progress",
    "checked", "updated", "unchanged", "failed", "ttl",
)


class RequestContextFilter(logging.Filter):
    """Fills correlation_id/owner_id on records that did not pass them explicitly"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = correlation_id_var.get()
        if not getattr(record, "owner_id", None):
            record.owner_id = request_owner_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("correlation_id", "owner_id") + EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None and value != "":
                entry[key] = value

        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.filename}:{record.lineno}"
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }
        return json.dumps(entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Local development: time, level, short correlation id, message"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        cid = getattr(record, "correlation_id", "")
        return f"{line} [{cid[:8]}]" if cid else line


def setup_logger(name: str = "sora_studio", level: str = None) -> logging.Logger:
    """
    Configure the package logger once. LOG_LEVEL sets the level; LOG_FILE adds
    a rotating JSON file when not already logging JSON to stdout.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    log_level = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logger.setLevel(log_level)
    json_output = os.getenv("LOG_FORMAT") == "json"

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(log_level)
    console.setFormatter(StructuredFormatter() if json_output else SimpleFormatter())
    console.addFilter(RequestContextFilter())
    logger.addHandler(console)

    log_file = os.getenv("LOG_FILE")
    if log_file and not json_output:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(StructuredFormatter())
            file_handler.addFilter(RequestContextFilter())
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Could not set up file logging: {e}")

    return logger


logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """Child of the package logger, e.g. get_logger("reconciler")"""
    if name:
        return logging.getLogger(f"sora_studio.{name}")
    return logger
