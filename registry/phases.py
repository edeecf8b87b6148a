"""
Skill Router — Phase Registry

Immutable catalog of phase descriptors. Loaded once at process start
from structured configuration (YAML or a plain dict), validated, and
then shared read-only by the classifier, the budget manager and every
workflow instance.

Usage:
    from registry.phases import load_registry

    registry = load_registry("registry/phases.yaml")
    registry.lookup("security").loop_back_targets["reentrancy-protection"]
    registry.canonical_order()   # ("contracts", "testing", ...)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import yaml

from router.errors import InputError, NotFound

logger = logging.getLogger("skill_router.registry")

DEFAULT_REGISTRY_PATH = Path(__file__).parent / "phases.yaml"

# Loop-back label that matches any failure condition
CATCH_ALL = "*"


@dataclass(frozen=True)
class ExitCriterion:
    """One checklist item gating a phase's completion."""
    id: str
    description: str = ""


@dataclass(frozen=True)
class Phase:
    """Static descriptor for one pipeline stage."""
    id: str
    order: int
    title: str
    dependencies: frozenset[str] = frozenset()
    exit_criteria: tuple[ExitCriterion, ...] = ()
    loop_back_targets: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    estimated_cost: int = 1
    resource: str = ""

    @property
    def criterion_ids(self) -> tuple[str, ...]:
        return tuple(c.id for c in self.exit_criteria)

    def criterion(self, criterion_id: str) -> ExitCriterion:
        for c in self.exit_criteria:
            if c.id == criterion_id:
                return c
        raise NotFound(f"Phase {self.id} has no exit criterion '{criterion_id}'")

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Phase:
        if not data.get("id"):
            raise InputError(f"Phase descriptor without id: {data!r}")
        criteria = []
        for c in data.get("exit_criteria", []) or []:
            if isinstance(c, str):
                criteria.append(ExitCriterion(id=c))
            else:
                criteria.append(ExitCriterion(id=c["id"], description=c.get("description", "")))
        return Phase(
            id=data["id"],
            order=int(data["order"]),
            title=data.get("title", data["id"]),
            dependencies=frozenset(data.get("dependencies", []) or []),
            exit_criteria=tuple(criteria),
            loop_back_targets=MappingProxyType(dict(data.get("loop_back_targets", {}) or {})),
            estimated_cost=int(data.get("estimated_cost", 1)),
            resource=data.get("resource", ""),
        )


class SkillRegistry:
    """
    Read-only catalog of phases, keyed by id and sorted by order.

    Construction validates the whole catalog; a registry that exists
    is a registry that is internally consistent.
    """

    def __init__(self, phases: Iterable[Phase]):
        ordered = sorted(phases, key=lambda p: p.order)
        self._phases: dict[str, Phase] = {}
        for phase in ordered:
            if phase.id in self._phases:
                raise InputError(f"Duplicate phase id: {phase.id}")
            self._phases[phase.id] = phase
        self._order = tuple(p.id for p in ordered)
        self._validate()
        logger.debug("Registry loaded: %s", ", ".join(self._order))

    def _validate(self):
        orders = [p.order for p in self._phases.values()]
        if len(set(orders)) != len(orders):
            raise InputError(f"Phase orders must be unique, got {sorted(orders)}")

        for phase in self._phases.values():
            seen = set()
            for c in phase.exit_criteria:
                if c.id in seen:
                    raise InputError(f"Phase {phase.id}: duplicate criterion '{c.id}'")
                seen.add(c.id)

            for dep in phase.dependencies:
                if dep not in self._phases:
                    raise InputError(f"Phase {phase.id} depends on unknown phase '{dep}'")
                if self._phases[dep].order >= phase.order:
                    raise InputError(
                        f"Phase {phase.id} depends on '{dep}', which is not earlier "
                        f"in canonical order"
                    )

            for label, target in phase.loop_back_targets.items():
                if target not in self._phases:
                    raise InputError(
                        f"Phase {phase.id}: loop-back '{label}' targets unknown phase '{target}'"
                    )
                # Loop-backs never point forward
                if self._phases[target].order > phase.order:
                    raise InputError(
                        f"Phase {phase.id}: loop-back '{label}' targets later phase '{target}'"
                    )

    # ─── Queries ─────────────────────────────────────────────────────

    def lookup(self, phase_id: str) -> Phase:
        try:
            return self._phases[phase_id]
        except KeyError:
            raise NotFound(f"Unknown phase: {phase_id}") from None

    def canonical_order(self) -> tuple[str, ...]:
        return self._order

    def __contains__(self, phase_id: object) -> bool:
        return phase_id in self._phases

    def __iter__(self):
        return (self._phases[pid] for pid in self._order)

    def __len__(self) -> int:
        return len(self._order)

    def sort(self, phase_ids: Iterable[str]) -> list[str]:
        """Return the given ids in canonical order. Unknown ids raise NotFound."""
        ids = set(phase_ids)
        for pid in ids:
            self.lookup(pid)
        return [pid for pid in self._order if pid in ids]

    def slice(self, start: str, end: str) -> list[str]:
        """Canonical ids from start through end inclusive (empty if end < start)."""
        lo = self.lookup(start).order
        hi = self.lookup(end).order
        return [pid for pid in self._order if lo <= self._phases[pid].order <= hi]

    def to_dict(self) -> dict[str, Any]:
        return {
            "phases": [
                {
                    "id": p.id,
                    "order": p.order,
                    "title": p.title,
                    "dependencies": sorted(p.dependencies),
                    "exit_criteria": [
                        {"id": c.id, "description": c.description} for c in p.exit_criteria
                    ],
                    "loop_back_targets": dict(p.loop_back_targets),
                    "estimated_cost": p.estimated_cost,
                    "resource": p.resource,
                }
                for p in self
            ]
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> SkillRegistry:
        phases = data.get("phases")
        if not isinstance(phases, list) or not phases:
            raise InputError("Registry config needs a non-empty 'phases' list")
        return SkillRegistry(Phase.from_dict(p) for p in phases)


def load_registry(path: str | Path | None = None) -> SkillRegistry:
    """Load a registry from YAML. Defaults to the bundled catalog."""
    path = Path(path) if path else DEFAULT_REGISTRY_PATH
    if not path.exists():
        raise NotFound(f"Registry file not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return SkillRegistry.from_dict(data)
