"""
Check-in Engine - Structured Logging

JSON log lines (or plain text) for the `checkin` logger tree, plus a
RunLogger that stamps every batch event with the run's correlation id.

Usage:
    from checkin.logging import configure_logging, RunLogger

    configure_logging(level="INFO", fmt="json", file="errors.log")
    events = RunLogger()
    events.on_run_start(total=120)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "checkin"
TEXT_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def __init__(self, service_name: str = "checkin"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("CHECKIN_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        # Merge structured fields from RunLogger
        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str, ensure_ascii=False)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    fmt: str = "json",
    file: str | None = None,
    service_name: str = "checkin",
) -> logging.Logger:
    """
    Configure the `checkin` logger.

    Args:
        level:  DEBUG, INFO, WARNING, ERROR
        stream: console stream (default: sys.stderr)
        fmt:    "json" or "text"
        file:   optional path; receives WARNING and above

    Reconfiguring replaces handlers rather than stacking them.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    if fmt == "text":
        formatter: logging.Formatter = logging.Formatter(TEXT_FORMAT)
    else:
        formatter = JSONFormatter(service_name=service_name)

    console = logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(formatter)
    console.setLevel(log_level)
    logger.addHandler(console)

    if file:
        file_handler = logging.FileHandler(file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.WARNING)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the checkin namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


# ═══════════════════════════════════════════════════════════════════
# Run Logger
# ═══════════════════════════════════════════════════════════════════

class RunLogger:
    """
    Structured batch events, all tagged with run_id.

    Events: run_start, request_start, attempt_failed, candidate_exhausted,
    request_end, run_cancelled, run_end.
    """

    def __init__(self, run_id: str | None = None):
        self.run_id = run_id or generate_run_id()
        self._logger = get_logger("run")

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {"run_id": self.run_id, "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def on_run_start(self, total: int, personnel: dict[str, Any] | None = None) -> None:
        self._emit(logging.INFO, "run_start", total=total, personnel=personnel or {})

    def on_request_start(self, index: int, total: int, request_id: str) -> None:
        self._emit(logging.INFO, "request_start", index=index, total=total,
                   request_id=request_id)

    def on_attempt_failed(self, request_id: str, attempt: int, error_class: str,
                          action: str, reason: str) -> None:
        self._emit(logging.WARNING, "attempt_failed", request_id=request_id,
                   attempt=attempt, error_class=error_class, next_action=action,
                   reason=reason[:500])

    def on_candidate_exhausted(self, role: str, candidate_id: str) -> None:
        self._emit(logging.WARNING, "candidate_exhausted", role=role,
                   candidate_id=candidate_id)

    def on_request_end(self, request_id: str, status: str, attempts: int,
                       reason: str = "") -> None:
        level = logging.WARNING if status == "failed" else logging.INFO
        self._emit(level, "request_end", request_id=request_id, status=status,
                   attempts=attempts, reason=reason[:500])

    def on_run_cancelled(self, processed: int, total: int) -> None:
        self._emit(logging.WARNING, "run_cancelled", processed=processed, total=total)

    def on_run_end(self, statistics: dict[str, Any], elapsed_s: float,
                   personnel: dict[str, Any] | None = None) -> None:
        self._emit(logging.INFO, "run_end", statistics=statistics,
                   elapsed_s=round(elapsed_s, 2), personnel=personnel or {})
