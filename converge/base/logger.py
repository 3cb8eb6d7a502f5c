"""
Structured logging for Converge.

Provides a pre-configured logger that emits JSON-structured log records
carrying reconciliation context (instance, phase, change kind) so a whole
pass can be followed in a log aggregation tool by its ``request_id``.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

_CONTEXT_KEYS = ("request_id", "instance_id", "phase", "change_kind", "attempt")


class StructuredFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = str(record.exc_info[1])
        return json.dumps(log_entry, default=str)


def new_request_id() -> str:
    """Correlation ID for one reconciliation pass."""
    return uuid.uuid4().hex[:12]


class ConvergeLogger:
    """Convenience wrapper around :mod:`logging` for reconciliation passes."""

    def __init__(self, name: str = "converge") -> None:
        self.logger = logging.getLogger(name)
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def log_operation(
        self,
        level: int,
        message: str,
        *,
        instance_id: str | None = None,
        phase: str | None = None,
        change_kind: str | None = None,
        request_id: str | None = None,
        attempt: int | None = None,
        exc_info: bool = False,
    ) -> None:
        """Emit a structured log record with reconciliation context.

        Args:
            level: Logging level (e.g. logging.INFO).
            message: Human-readable message.
            instance_id: Instance being reconciled.
            phase: Workflow phase (e.g. ``wait-running``).
            change_kind: Change kind being applied (e.g. ``InstanceType``).
            request_id: Pass correlation ID; auto-generated if omitted.
            attempt: Attempt number for retried calls.
            exc_info: Whether to include exception info.
        """
        extra = {
            "instance_id": instance_id,
            "phase": phase,
            "change_kind": change_kind,
            "attempt": attempt,
            "request_id": request_id or new_request_id(),
        }
        self.logger.log(level, message, extra=extra, exc_info=exc_info)

    def info(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.DEBUG, message, **kwargs)


# Module-level singleton
cv_logger = ConvergeLogger()
