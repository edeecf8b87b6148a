"""
Skill Router — API Models

Request/response dataclasses for the API server.
Plain dataclasses with validate(); shared by the server and tests.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from router.types import CriterionStatus

_KINDS = ("full_pipeline", "partial_set", "repair")


@dataclass
class ClassifyRequest:
    """POST /v1/classify request body."""
    text: str

    def validate(self) -> list[str]:
        errors = []
        if not isinstance(self.text, str) or not self.text.strip():
            errors.append("text is required and must be a non-empty string")
        return errors


@dataclass
class WorkflowSubmission:
    """
    POST /v1/workflows request body.

    Either free text (classified server-side) or an explicit intent:
        {"intent": {"kind": "partial_set", "phase_ids": ["testing"]}}
    """
    text: str = ""
    intent: dict[str, Any] | None = None

    def validate(self) -> list[str]:
        errors = []
        if self.intent is None:
            if not isinstance(self.text, str) or not self.text.strip():
                errors.append("text or intent is required")
        elif not isinstance(self.intent, dict):
            errors.append("intent must be an object")
        elif self.intent.get("kind") not in _KINDS:
            errors.append(f"intent.kind must be one of {list(_KINDS)}")
        if not isinstance(self.text, str):
            errors.append("text must be a string")
        return errors


@dataclass
class ApprovalAction:
    """POST /v1/workflows/{id}/approve or /reject body."""
    actor: str = ""
    notes: str = ""

    def validate(self) -> list[str]:
        errors = []
        if not isinstance(self.actor, str):
            errors.append("actor must be a string")
        if not isinstance(self.notes, str):
            errors.append("notes must be a string")
        return errors


@dataclass
class CriterionSubmission:
    """POST /v1/workflows/{id}/criteria body."""
    criterion_id: str
    outcome: str
    justification: str = ""
    accept: bool = False
    phase_id: str | None = None

    def validate(self) -> list[str]:
        errors = []
        if not self.criterion_id or not isinstance(self.criterion_id, str):
            errors.append("criterion_id is required and must be a string")
        allowed = [s.value for s in CriterionStatus if s != CriterionStatus.UNCHECKED]
        if self.outcome not in allowed:
            errors.append(f"outcome must be one of {allowed}")
        if not isinstance(self.accept, bool):
            errors.append("accept must be a boolean")
        return errors


@dataclass
class AdvanceSignal:
    """POST /v1/workflows/{id}/advance body."""
    outcome: str
    condition: str | None = None
    detail: str = ""

    def validate(self) -> list[str]:
        errors = []
        if self.outcome not in ("complete", "fail"):
            errors.append("outcome must be 'complete' or 'fail'")
        if self.condition is not None and not isinstance(self.condition, str):
            errors.append("condition must be a string")
        return errors


@dataclass
class ErrorResponse:
    """Body of every non-2xx response raised by the router."""
    error: str
    message: str
    errors: list[str] = field(default_factory=list)
    snapshot: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.snapshot is None:
            data.pop("snapshot")
        return data
