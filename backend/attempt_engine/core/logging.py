"""Structured JSON logging configuration.

Fields bound with ``bind_log_context`` are added to every record emitted in the
same context (the request, for API traffic).
"""

import contextvars
import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger

from attempt_engine.core.config import settings

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("log_context", default={})


def bind_log_context(**fields: Any) -> contextvars.Token:
    """Add fields to the current log context. Pass the token to ``reset_log_context``."""
    return _log_context.set({**_log_context.get(), **fields})


def reset_log_context(token: contextvars.Token) -> None:
    _log_context.reset(token)


def get_log_context() -> dict[str, Any]:
    return dict(_log_context.get())


class AttemptJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with fixed fields plus the bound log context."""

    def add_fields(self, log_record: dict[str, Any], record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["event_message"] = record.getMessage()

        # Explicit extra= values win over the bound context
        for key, value in _log_context.get().items():
            log_record.setdefault(key, value)

        log_record.pop("message", None)
        log_record.pop("asctime", None)


def setup_logging() -> None:
    """Configure root logging: JSON lines on stdout."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(AttemptJsonFormatter("%(timestamp)s %(level)s %(logger)s", datefmt="%Y-%m-%dT%H:%M:%S"))
    root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
