from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any


_RESERVED_RECORD_FIELDS = set(logging.makeLogRecord({}).__dict__.keys())
# Extras under these names never reach a handler: signing material and credentials.
SECRET_FIELDS = frozenset({"authorization", "private_key", "private_key_content", "key_passphrase", "signature"})
REDACTED = "***"


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class _RedactingFormatter(logging.Formatter):
    """Shared base: service name, UTC timestamp and the redacted ``extra`` context."""

    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    @staticmethod
    def context(record: logging.LogRecord) -> dict[str, Any]:
        return {
            key: REDACTED if key.lower() in SECRET_FIELDS else value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_FIELDS and not key.startswith("_")
        }

    @staticmethod
    def timestamp() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="seconds")


class JsonFormatter(_RedactingFormatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service,
            "message": record.getMessage(),
        }
        context = self.context(record)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, separators=(",", ":"))


class KeyValueFormatter(_RedactingFormatter):
    """``<ts> LEVEL logger service=... message=... key='value'`` lines for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [self.timestamp(), record.levelname, record.name, f"service={self.service}", f"message={record.getMessage()}"]
        parts.extend(f"{key}={value!r}" for key, value in sorted(self.context(record).items()))
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: str | None = None, service: str = "ocistorage", logger_name: str | None = "ocistorage") -> logging.Logger:
    """Attach one stdout handler to ``logger_name`` (the library's logger by default).

    Pass ``logger_name=None`` to configure the root logger instead. ``LOG_LEVEL``
    and ``LOG_JSON`` fill in what the arguments leave out. The library itself
    never calls this; it only logs through ``get_logger``.
    """
    env_level = level or os.getenv("LOG_LEVEL", "INFO")
    resolved_level = getattr(logging, env_level.upper(), logging.INFO)
    use_json = _parse_bool(os.getenv("LOG_JSON"), default=False)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter(service=service) if use_json else KeyValueFormatter(service=service))

    target = logging.getLogger(logger_name)
    target.handlers.clear()
    target.addHandler(handler)
    target.setLevel(resolved_level)
    if logger_name is None:
        logging.captureWarnings(True)
    return target


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def with_context(logger: logging.Logger, **context: Any) -> logging.LoggerAdapter:
    """Bind ``context`` as ``extra`` on every record; secret names are redacted at format time."""
    return logging.LoggerAdapter(logger, extra=context)
