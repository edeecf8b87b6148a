"""
Skill Router — Exit Criteria Evaluator

Tracks pass/fail/waive results for each phase's checklist and gates
phase completion. One evaluator per workflow instance, rebuilt from
the instance's persisted results.

Results are append-only. Each phase has an attempt counter; a
loop-back opens a new attempt for the affected phases so their
criteria read as unchecked again and must be re-proven. Earlier
attempts stay in the log and in the final report.
"""

from __future__ import annotations

import logging
import time
from typing import Iterable

from registry.phases import SkillRegistry
from router.errors import InputError, MissingJustification
from router.types import CriterionResult, CriterionStatus

logger = logging.getLogger("skill_router.criteria")


class ExitCriteriaEvaluator:
    """Checklist state for one workflow instance."""

    def __init__(
        self,
        registry: SkillRegistry,
        results: list[CriterionResult] | None = None,
        attempts: dict[str, int] | None = None,
    ):
        self.registry = registry
        # Shared with the owning WorkflowInstance so appends persist
        self.results: list[CriterionResult] = results if results is not None else []
        self._attempts: dict[str, int] = dict(attempts or {})
        for r in self.results:
            self._attempts[r.phase_id] = max(self._attempts.get(r.phase_id, 1), r.attempt)

    def attempt(self, phase_id: str) -> int:
        return self._attempts.get(phase_id, 1)

    # ─── Recording ───────────────────────────────────────────────────

    def record_result(
        self,
        phase_id: str,
        criterion_id: str,
        outcome: CriterionStatus | str,
        justification: str = "",
        accept: bool = False,
    ) -> CriterionResult:
        """
        Record one result for the phase's current attempt.

        A waiver always needs a justification. A failure may be
        accepted without remediation, but only with a justification.
        """
        phase = self.registry.lookup(phase_id)
        phase.criterion(criterion_id)

        try:
            status = CriterionStatus(outcome)
        except ValueError:
            raise InputError(f"Unknown criterion outcome: {outcome!r}") from None
        if status == CriterionStatus.UNCHECKED:
            raise InputError("Cannot record 'unchecked'; results only move forward")

        justification = (justification or "").strip()
        if status == CriterionStatus.WAIVED and not justification:
            raise MissingJustification(
                f"Waiving {phase_id}/{criterion_id} requires a justification"
            )
        if status == CriterionStatus.FAILED and accept and not justification:
            raise MissingJustification(
                f"Accepting failed {phase_id}/{criterion_id} requires a justification"
            )

        result = CriterionResult(
            phase_id=phase_id,
            criterion_id=criterion_id,
            status=status,
            attempt=self.attempt(phase_id),
            justification=justification,
            accepted=bool(accept) and status == CriterionStatus.FAILED,
            recorded_at=time.time(),
        )
        self.results.append(result)
        logger.debug(
            "Recorded %s/%s=%s (attempt %d)",
            phase_id, criterion_id, status.value, result.attempt,
        )
        return result

    # ─── Queries ─────────────────────────────────────────────────────

    def latest(self, phase_id: str) -> dict[str, CriterionResult]:
        """Latest result per criterion in the phase's current attempt."""
        current = self.attempt(phase_id)
        latest: dict[str, CriterionResult] = {}
        for r in self.results:
            if r.phase_id == phase_id and r.attempt == current:
                latest[r.criterion_id] = r
        return latest

    def current_status(self, phase_id: str) -> dict[str, str]:
        phase = self.registry.lookup(phase_id)
        latest = self.latest(phase_id)
        return {
            cid: latest[cid].status.value if cid in latest else CriterionStatus.UNCHECKED.value
            for cid in phase.criterion_ids
        }

    @staticmethod
    def _resolved(result: CriterionResult | None) -> bool:
        if result is None:
            return False
        if result.status == CriterionStatus.PASSED:
            return True
        if result.status == CriterionStatus.WAIVED:
            return bool(result.justification)
        if result.status == CriterionStatus.FAILED:
            return result.accepted and bool(result.justification)
        return False

    def is_phase_complete(self, phase_id: str) -> bool:
        phase = self.registry.lookup(phase_id)
        latest = self.latest(phase_id)
        return all(self._resolved(latest.get(cid)) for cid in phase.criterion_ids)

    def unresolved(self, phase_id: str) -> list[str]:
        """Failed and not accepted criteria, in checklist order."""
        phase = self.registry.lookup(phase_id)
        latest = self.latest(phase_id)
        out = []
        for cid in phase.criterion_ids:
            r = latest.get(cid)
            if r is not None and r.status == CriterionStatus.FAILED and not self._resolved(r):
                out.append(cid)
        return out

    def unchecked(self, phase_id: str) -> list[str]:
        phase = self.registry.lookup(phase_id)
        latest = self.latest(phase_id)
        return [cid for cid in phase.criterion_ids if cid not in latest]

    def exceptions(self) -> list[CriterionResult]:
        """Every failed or waived result across all attempts."""
        return [
            r for r in self.results
            if r.status in (CriterionStatus.FAILED, CriterionStatus.WAIVED)
        ]

    # ─── Loop-back Reset ─────────────────────────────────────────────

    def reset(self, phase_ids: Iterable[str]) -> None:
        """Open a new attempt for each phase; its criteria read as unchecked."""
        for pid in phase_ids:
            self.registry.lookup(pid)
            self._attempts[pid] = self.attempt(pid) + 1
            logger.debug("Reset criteria for %s (attempt %d)", pid, self._attempts[pid])

    def attempts(self) -> dict[str, int]:
        return dict(self._attempts)
