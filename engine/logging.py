"""
Skill Router — Structured Logging with Trace IDs

Emits one JSON log line per router event (transition, context load,
criterion result, loop-back). Field names follow OpenTelemetry
semantic conventions so the output can move to an OTel SDK later.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Schema: OTel-compatible (trace_id, span_id, service.name)
  - Level: DEBUG (payload sizes, digests), INFO (transitions), WARN (relaxations, aborts)

Usage:
    from engine.logging import StructuredLogger, configure_logging

    configure_logging(level="INFO")
    log = StructuredLogger(instance_id="wf_1a2b3c", intent="full_pipeline")
    log.on_transition("awaiting_approval", "executing", phase_id="contracts")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "skill_router"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    OTel semantic conventions used:
      - trace_id: one per workflow instance
      - span_id: one per phase attempt
      - service.name: "skill_router"
      - service.version: from env
    """

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("SR_VERSION", "0.1.0")

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
    service_name: str = SERVICE_NAME,
) -> logging.Logger:
    """
    Configure the skill_router logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured root logger for skill_router
    """
    logger = logging.getLogger(SERVICE_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(f"{SERVICE_NAME}."):
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
    """Get a child logger under the skill_router namespace."""
    if name:
        return logging.getLogger(f"{SERVICE_NAME}.{name}")
    return logging.getLogger(SERVICE_NAME)


# ═══════════════════════════════════════════════════════════════════
# Trace ID Generation
# ═══════════════════════════════════════════════════════════════════

def generate_trace_id() -> str:
    """Generate an OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """Generate an OTel-compatible span ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Structured Logger
# ═══════════════════════════════════════════════════════════════════

class StructuredLogger:
    """
    Per-instance event logger.

    Every entry carries the instance id and trace_id. Each phase entry
    opens a new span so repeated attempts after a loop-back are
    distinguishable in the log stream.
    """

    def __init__(
        self,
        instance_id: str = "",
        intent: str = "",
        trace_id: str | None = None,
    ):
        self.instance_id = instance_id
        self.intent = intent
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("trace")
        self._phase_spans: dict[str, str] = {}

    def _base_fields(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "instance_id": self.instance_id,
            "intent": self.intent,
        }

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def _span_fields(self, phase_id: str | None) -> dict[str, Any]:
        if phase_id and phase_id in self._phase_spans:
            return {"span_id": self._phase_spans[phase_id]}
        return {}

    # ── Workflow events ─────────────────────────────────────────

    def on_transition(self, from_status: str, to_status: str, phase_id: str | None = None) -> None:
        if to_status in ("executing", "looped_back") and phase_id:
            self._phase_spans[phase_id] = generate_span_id()
        level = logging.WARNING if to_status == "aborted" else logging.INFO
        self._emit(
            level, "transition",
            from_status=from_status,
            to_status=to_status,
            phase_id=phase_id,
            **self._span_fields(phase_id),
        )

    def on_phase_loaded(self, phase_id: str, size: int, digest: str, evicted: str | None) -> None:
        self._emit(
            logging.INFO, "phase_loaded",
            phase_id=phase_id,
            evicted=evicted,
            **self._span_fields(phase_id),
        )
        self._emit(
            logging.DEBUG, "phase_payload",
            phase_id=phase_id,
            size=size,
            digest=digest,
        )

    def on_phase_evicted(self, phase_id: str) -> None:
        self._emit(logging.INFO, "phase_evicted", phase_id=phase_id)

    def on_criterion_recorded(
        self,
        phase_id: str,
        criterion_id: str,
        status: str,
        justification: str = "",
    ) -> None:
        level = logging.WARNING if status in ("failed", "waived") else logging.INFO
        self._emit(
            level, "criterion_recorded",
            phase_id=phase_id,
            criterion_id=criterion_id,
            status=status,
            justification=justification[:500],
            **self._span_fields(phase_id),
        )

    def on_loop_back(
        self,
        from_phase: str,
        to_phase: str,
        condition: str,
        loop_back_count: int,
    ) -> None:
        self._emit(
            logging.WARNING, "loop_back",
            from_phase=from_phase,
            to_phase=to_phase,
            condition=condition,
            loop_back_count=loop_back_count,
        )

    def on_dependency_assumed(self, phase_id: str, dependency: str) -> None:
        self._emit(
            logging.WARNING, "dependency_assumed",
            phase_id=phase_id,
            dependency=dependency,
        )

    def on_workflow_end(self, status: str, phases_completed: int, error: str | None = None) -> None:
        self._emit(
            logging.INFO if status == "completed" else logging.WARNING,
            "workflow_end",
            status=status,
            phases_completed=phases_completed,
            error=(error or "")[:500] or None,
        )
