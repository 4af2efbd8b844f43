"""
QA Resolver — Structured Logging

JSON-lines output for everything under the qa_resolver logger namespace,
plus ResolutionTrace, which emits one structured event per resolution
stage so a selector or data resolution can be followed end to end by
trace_id.

Usage:
    from resolver.logging import configure_logging, ResolutionTrace

    configure_logging(level="INFO")
    trace = ResolutionTrace(project_id="p1", application_id="app1")
    trace.knowledge_hit(kind="selector", key="login_button")

Events:
    knowledge_hit, knowledge_miss, generation_start, generation_end,
    knowledge_persist, resolution_failed
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "qa_resolver"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines, merging record.structured if present."""

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("RESOLVER_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the qa_resolver logger with JSON output.

    Safe to call repeatedly; handlers are replaced, not stacked.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the qa_resolver namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_trace_id() -> str:
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Resolution Trace
# ═══════════════════════════════════════════════════════════════════

class ResolutionTrace:
    """
    Structured events for one resolution request.

    Every entry carries trace_id, project_id and application_id (when set).
    Never pass credentials or raw prompts as fields.
    """

    def __init__(
        self,
        project_id: str = "",
        application_id: str = "",
        trace_id: str | None = None,
    ):
        self.project_id = project_id
        self.application_id = application_id
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("trace")

    def _base_fields(self) -> dict[str, Any]:
        fields = {"trace_id": self.trace_id, "project_id": self.project_id}
        if self.application_id:
            fields["application_id"] = self.application_id
        return fields

    def _emit(self, level: int, event: str, **fields) -> None:
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=event,
            args=(), exc_info=None,
        )
        record.structured = {**self._base_fields(), "event": event, **fields}
        self._logger.handle(record)

    def knowledge_hit(self, kind: str, key: str) -> None:
        self._emit(logging.INFO, "knowledge_hit", kind=kind, key=key)

    def knowledge_miss(self, kind: str, key: str) -> None:
        self._emit(logging.INFO, "knowledge_miss", kind=kind, key=key)

    def generation_start(self, kind: str, key: str, source: str) -> None:
        self._emit(logging.DEBUG, "generation_start", kind=kind, key=key, source=source)

    def generation_end(self, kind: str, key: str, elapsed: float, response_chars: int) -> None:
        self._emit(
            logging.INFO, "generation_end",
            kind=kind,
            key=key,
            latency_ms=round(elapsed * 1000, 1),
            response_chars=response_chars,
        )

    def knowledge_persist(self, kind: str, key: str) -> None:
        self._emit(logging.INFO, "knowledge_persist", kind=kind, key=key)

    def resolution_failed(self, kind: str, key: str, error: BaseException) -> None:
        self._emit(
            logging.WARNING, "resolution_failed",
            kind=kind,
            key=key,
            error_type=type(error).__name__,
            error=str(error)[:500],
        )
