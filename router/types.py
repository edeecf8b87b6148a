"""
Skill Router — Type Definitions

Data structures for intents, workflow instances, history events, and
exit-criterion results. Everything here serialises to plain JSON
dicts so the store can persist it and `status` can return it.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Union

from router.errors import InputError


# ─── Intents ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FullPipeline:
    """Run every phase in canonical order, minus explicit exclusions."""
    excluded: frozenset[str] = frozenset()
    kind = "full_pipeline"


@dataclass(frozen=True)
class PartialSet:
    """Run exactly the named phases. Dependencies are assumed satisfied."""
    phase_ids: frozenset[str]
    kind = "partial_set"


@dataclass(frozen=True)
class Repair:
    """Re-run from the origin phase through the re-validation phase."""
    origin: str
    kind = "repair"


Intent = Union[FullPipeline, PartialSet, Repair]


def intent_to_dict(intent: Intent) -> dict[str, Any]:
    if isinstance(intent, FullPipeline):
        return {"kind": intent.kind, "excluded": sorted(intent.excluded)}
    if isinstance(intent, PartialSet):
        return {"kind": intent.kind, "phase_ids": sorted(intent.phase_ids)}
    if isinstance(intent, Repair):
        return {"kind": intent.kind, "origin": intent.origin}
    raise InputError(f"Not an intent: {intent!r}")


def intent_from_dict(data: dict[str, Any]) -> Intent:
    if not isinstance(data, dict):
        raise InputError(f"Intent must be an object, got {type(data).__name__}")
    kind = data.get("kind")
    if kind == FullPipeline.kind:
        return FullPipeline(excluded=frozenset(_phase_list(data, "excluded")))
    if kind == PartialSet.kind:
        ids = _phase_list(data, "phase_ids")
        if not ids:
            raise InputError("partial_set intent needs at least one phase id")
        return PartialSet(phase_ids=frozenset(ids))
    if kind == Repair.kind:
        origin = data.get("origin")
        if not isinstance(origin, str) or not origin:
            raise InputError("repair intent needs an origin phase id string")
        return Repair(origin=origin)
    raise InputError(f"Unknown intent kind: {kind!r}")


def _phase_list(data: dict[str, Any], key: str) -> list[str]:
    # A bare string would otherwise be read as a set of letters
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise InputError(f"{key} must be a list of phase id strings")
    return list(value)


def describe_intent(intent: Intent) -> str:
    if isinstance(intent, FullPipeline):
        if intent.excluded:
            return f"FullPipeline(excluding {', '.join(sorted(intent.excluded))})"
        return "FullPipeline"
    if isinstance(intent, PartialSet):
        return f"PartialSet({', '.join(sorted(intent.phase_ids))})"
    return f"Repair({intent.origin})"


# ─── Workflow Instances ──────────────────────────────────────────────

class WorkflowStatus(str, enum.Enum):
    """Lifecycle states for a workflow instance."""
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    LOOPED_BACK = "looped_back"
    COMPLETED = "completed"
    ABORTED = "aborted"


TERMINAL_STATUSES = {WorkflowStatus.COMPLETED, WorkflowStatus.ABORTED}


class Outcome(str, enum.Enum):
    """History event outcomes."""
    PLANNED = "planned"
    DEPENDENCY_ASSUMED = "DependencyAssumed"
    APPROVED = "approved"
    REJECTED = "rejected"
    ENTERED = "entered"
    COMPLETED = "completed"
    COMPLETION_REJECTED = "completion_rejected"
    FAILED = "failed"
    LOOPED_BACK = "looped_back"
    INVALIDATED = "invalidated"
    SEQUENCE_EXTENDED = "sequence_extended"
    RESOURCE_UNAVAILABLE = "ResourceUnavailable"
    LOOP_LIMIT_EXCEEDED = "LoopLimitExceeded"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


@dataclass
class HistoryEvent:
    """One entry in an instance's ordered log."""
    phase_id: str | None
    outcome: str
    timestamp: float
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "outcome": self.outcome,
            "timestamp": self.timestamp,
            "detail": self.detail,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> HistoryEvent:
        return HistoryEvent(
            phase_id=data.get("phase_id"),
            outcome=data["outcome"],
            timestamp=data["timestamp"],
            detail=data.get("detail", ""),
        )


class CriterionStatus(str, enum.Enum):
    UNCHECKED = "unchecked"
    PASSED = "passed"
    FAILED = "failed"
    WAIVED = "waived"


@dataclass
class CriterionResult:
    """
    One recorded result. Results are append-only: a later result for
    the same (phase, criterion, attempt) supersedes an earlier one
    without removing it.
    """
    phase_id: str
    criterion_id: str
    status: CriterionStatus
    attempt: int
    justification: str = ""
    accepted: bool = False
    recorded_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "criterion_id": self.criterion_id,
            "status": self.status.value,
            "attempt": self.attempt,
            "justification": self.justification,
            "accepted": self.accepted,
            "recorded_at": self.recorded_at,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> CriterionResult:
        return CriterionResult(
            phase_id=data["phase_id"],
            criterion_id=data["criterion_id"],
            status=CriterionStatus(data["status"]),
            attempt=int(data["attempt"]),
            justification=data.get("justification", ""),
            accepted=bool(data.get("accepted", False)),
            recorded_at=data.get("recorded_at", 0.0),
        )


@dataclass
class WorkflowInstance:
    """
    Durable record of one request's run.

    The persisted fields are exactly what is needed to rebuild the
    state machine after a restart; the resident context module is
    not persisted and is re-established on resume.
    """
    instance_id: str
    intent: Intent
    sequence: list[str]
    status: WorkflowStatus
    created_at: float
    updated_at: float
    current_index: int = 0
    history: list[HistoryEvent] = field(default_factory=list)
    criteria_results: list[CriterionResult] = field(default_factory=list)
    loop_back_count: int = 0
    request_text: str = ""
    error: str | None = None
    archived_at: float | None = None

    @staticmethod
    def create(intent: Intent, request_text: str = "") -> WorkflowInstance:
        now = time.time()
        return WorkflowInstance(
            instance_id=f"wf_{uuid.uuid4().hex[:12]}",
            intent=intent,
            sequence=[],
            status=WorkflowStatus.PLANNING,
            created_at=now,
            updated_at=now,
            request_text=request_text,
        )

    @property
    def current_phase(self) -> str | None:
        if 0 <= self.current_index < len(self.sequence):
            return self.sequence[self.current_index]
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def log(self, phase_id: str | None, outcome: Outcome | str, detail: str = "") -> HistoryEvent:
        event = HistoryEvent(
            phase_id=phase_id,
            outcome=outcome.value if isinstance(outcome, Outcome) else outcome,
            timestamp=time.time(),
            detail=detail,
        )
        self.history.append(event)
        self.updated_at = event.timestamp
        return event

    def completed_phases(self) -> list[str]:
        """Phases whose latest completion has not been invalidated since."""
        done: list[str] = []
        for event in self.history:
            if event.outcome == Outcome.COMPLETED.value and event.phase_id:
                if event.phase_id not in done:
                    done.append(event.phase_id)
            elif event.outcome == Outcome.INVALIDATED.value and event.phase_id in done:
                done.remove(event.phase_id)
        return done

    def visited_phases(self) -> list[str]:
        seen: list[str] = []
        for event in self.history:
            if event.outcome == Outcome.ENTERED.value and event.phase_id not in seen:
                seen.append(event.phase_id)
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "intent": intent_to_dict(self.intent),
            "sequence": list(self.sequence),
            "current_index": self.current_index,
            "history": [e.to_dict() for e in self.history],
            "criteria_results": [r.to_dict() for r in self.criteria_results],
            "loop_back_count": self.loop_back_count,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "request_text": self.request_text,
            "error": self.error,
            "archived_at": self.archived_at,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> WorkflowInstance:
        return WorkflowInstance(
            instance_id=data["instance_id"],
            intent=intent_from_dict(data["intent"]),
            sequence=list(data["sequence"]),
            status=WorkflowStatus(data["status"]),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            current_index=int(data.get("current_index", 0)),
            history=[HistoryEvent.from_dict(e) for e in data.get("history", [])],
            criteria_results=[CriterionResult.from_dict(r) for r in data.get("criteria_results", [])],
            loop_back_count=int(data.get("loop_back_count", 0)),
            request_text=data.get("request_text", ""),
            error=data.get("error"),
            archived_at=data.get("archived_at"),
        )
