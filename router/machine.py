"""
Skill Router — Workflow State Machine

Owns per-request execution state and drives phase transitions:

  planning → awaiting_approval → executing(phase)
      executing(phase) → executing(next)            on completion
                       → looped_back(target)        on failure with a loop-back rule
                            → executing(target)
                       → completed                  when the sequence is exhausted
                       → aborted                    on unmatched failure, loop cap,
                                                    rejection, cancel, resource failure

Every public operation loads the instance from the store, applies
one signal, persists, and returns a snapshot. Nothing is held between
calls except the context slots in the budget manager, which `resume`
re-establishes after a restart.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import uuid
import warnings
from typing import Any, Callable

from engine.logging import StructuredLogger
from registry.phases import CATCH_ALL, Phase, SkillRegistry
from router.budget import ContextBudgetManager
from router.criteria import ExitCriteriaEvaluator
from router.errors import (
    DependencyAssumed,
    DependencyUnsatisfied,
    IncompletePhase,
    InputError,
    InvalidTransition,
    InvariantViolation,
    LoopLimitExceeded,
    NotFound,
    ResourceUnavailable,
)
from router.store import InMemoryInstanceStore, InstanceStore
from router.types import (
    CriterionStatus,
    FullPipeline,
    Intent,
    Outcome,
    PartialSet,
    Repair,
    WorkflowInstance,
    WorkflowStatus,
    describe_intent,
    intent_to_dict,
)

logger = logging.getLogger("skill_router.machine")

DEFAULT_MAX_LOOPS = 3
DEFAULT_REVALIDATE_THROUGH = "security"

# Allowed transitions: from_state → set of valid to_states
_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.PLANNING: {WorkflowStatus.AWAITING_APPROVAL, WorkflowStatus.ABORTED},
    WorkflowStatus.AWAITING_APPROVAL: {WorkflowStatus.EXECUTING, WorkflowStatus.ABORTED},
    WorkflowStatus.EXECUTING: {
        WorkflowStatus.EXECUTING,
        WorkflowStatus.LOOPED_BACK,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.ABORTED,
    },
    WorkflowStatus.LOOPED_BACK: {WorkflowStatus.EXECUTING, WorkflowStatus.ABORTED},
}

TransitionListener = Callable[[WorkflowInstance, "WorkflowStatus | None", WorkflowStatus, "str | None"], None]


class WorkflowStateMachine:
    """
    Drives workflow instances through their phase sequence.

    Operations:
        start(intent, request_text)            → snapshot (awaiting_approval)
        approve(id) / reject(id)               → snapshot
        record(id, criterion, outcome, ...)    → snapshot
        advance(id, "complete" | "fail", ...)  → snapshot
        cancel(id)                             → snapshot
        resume(id)                             → snapshot
        status(id) / report(id)                → read-only views
    """

    def __init__(
        self,
        registry: SkillRegistry,
        budget: ContextBudgetManager,
        store: InstanceStore | None = None,
        max_loops: int = DEFAULT_MAX_LOOPS,
        revalidate_through: str = DEFAULT_REVALIDATE_THROUGH,
        verbose: bool = False,
    ):
        self.registry = registry
        self.budget = budget
        self.store = store or InMemoryInstanceStore()
        self.max_loops = max_loops
        self.revalidate_through = revalidate_through
        self.verbose = verbose

        self._lock = threading.RLock()
        self._listeners: list[TransitionListener] = []
        self._traces: dict[str, StructuredLogger] = {}

    # ─── Listeners ───────────────────────────────────────────────────

    def add_listener(self, listener: TransitionListener):
        """Register a callable invoked on every status change."""
        self._listeners.append(listener)

    # ─── Planning ────────────────────────────────────────────────────

    def resolve_sequence(self, intent: Intent) -> tuple[list[str], list[tuple[str, str]]]:
        """
        Expand an intent into an ordered phase sequence.

        Returns (sequence, assumed) where assumed lists the
        (phase, dependency) pairs a PartialSet or Repair takes on faith.
        A FullPipeline must carry every dependency it needs.
        """
        reg = self.registry
        assumed: list[tuple[str, str]] = []

        if isinstance(intent, FullPipeline):
            for pid in intent.excluded:
                reg.lookup(pid)
            sequence = [pid for pid in reg.canonical_order() if pid not in intent.excluded]
        elif isinstance(intent, PartialSet):
            if not intent.phase_ids:
                raise InputError("PartialSet needs at least one phase")
            sequence = reg.sort(intent.phase_ids)
        elif isinstance(intent, Repair):
            origin = reg.lookup(intent.origin)
            if self.revalidate_through in reg and reg.lookup(self.revalidate_through).order >= origin.order:
                sequence = reg.slice(origin.id, self.revalidate_through)
            else:
                sequence = [origin.id]
        else:
            raise InputError(f"Not an intent: {intent!r}")

        if not sequence:
            raise InputError(f"{describe_intent(intent)} resolves to an empty sequence")

        for pid in sequence:
            for dep in sorted(reg.lookup(pid).dependencies):
                if dep in sequence:
                    continue
                if isinstance(intent, FullPipeline):
                    raise InputError(
                        f"{describe_intent(intent)}: phase '{pid}' depends on '{dep}', "
                        f"which is not part of the sequence"
                    )
                assumed.append((pid, dep))
        return sequence, assumed

    def start(self, intent: Intent, request_text: str = "") -> dict[str, Any]:
        """Create an instance, resolve its sequence, and wait for approval."""
        with self._lock:
            sequence, assumed = self.resolve_sequence(intent)
            inst = WorkflowInstance.create(intent, request_text=request_text)
            inst.sequence = sequence
            self._notify(inst, None, WorkflowStatus.PLANNING, None)

            inst.log(None, Outcome.PLANNED, " → ".join(sequence))
            trace = self._trace(inst)
            for pid, dep in assumed:
                msg = f"{pid}: dependency '{dep}' assumed complete ({type(intent).__name__})"
                inst.log(pid, Outcome.DEPENDENCY_ASSUMED, msg)
                trace.on_dependency_assumed(pid, dep)
                warnings.warn(msg, DependencyAssumed, stacklevel=2)

            self._transition(inst, WorkflowStatus.AWAITING_APPROVAL)
            self._save(inst)
            self.store.log_action(inst.instance_id, "start", {
                "intent": intent_to_dict(intent),
                "sequence": sequence,
                "request_text": request_text,
            })
            self._log(f"▶ PLANNED {inst.instance_id}: {describe_intent(intent)} → {sequence}")
            return self._snapshot(inst)

    def approve(self, instance_id: str, approver: str = "", notes: str = "") -> dict[str, Any]:
        """External approval signal: enter the first phase."""
        with self._lock:
            inst = self._get(instance_id)
            if inst.status != WorkflowStatus.AWAITING_APPROVAL:
                raise InvalidTransition(
                    f"Instance {instance_id} is {inst.status.value}, not awaiting approval"
                )
            inst.log(None, Outcome.APPROVED, f"{approver or 'system'}: {notes}".rstrip(": "))
            self.store.log_action(
                instance_id, "approve",
                {"approver": approver, "notes": notes},
                idempotency_key=f"approve:{instance_id}",
            )
            self._log(f"✓ APPROVED {instance_id} by '{approver or 'system'}'")
            self._enter(inst, inst.sequence[0])
            self._save(inst)
            return self._snapshot(inst)

    def reject(self, instance_id: str, rejector: str = "", reason: str = "") -> dict[str, Any]:
        """External rejection signal: abort before any phase runs."""
        with self._lock:
            inst = self._get(instance_id)
            if inst.status not in (WorkflowStatus.PLANNING, WorkflowStatus.AWAITING_APPROVAL):
                raise InvalidTransition(
                    f"Instance {instance_id} is {inst.status.value}, not awaiting approval"
                )
            inst.log(None, Outcome.REJECTED, f"{rejector or 'system'}: {reason}".rstrip(": "))
            self.store.log_action(instance_id, "reject", {"rejector": rejector, "reason": reason})
            self._abort(inst, f"Rejected by {rejector or 'system'}: {reason}".rstrip(": "))
            self._save(inst)
            return self._snapshot(inst)

    # ─── Execution ───────────────────────────────────────────────────

    def record(
        self,
        instance_id: str,
        criterion_id: str,
        outcome: CriterionStatus | str,
        justification: str = "",
        accept: bool = False,
        phase_id: str | None = None,
    ) -> dict[str, Any]:
        """Record one exit-criterion result for the active (or a visited) phase."""
        with self._lock:
            inst = self._get(instance_id)
            self._require_executing(inst)
            phase_id = phase_id or inst.current_phase
            if phase_id != inst.current_phase and phase_id not in inst.visited_phases():
                raise InputError(
                    f"Phase {phase_id} is neither active nor visited in {instance_id}"
                )
            ev = self._evaluator(inst)
            result = ev.record_result(phase_id, criterion_id, outcome, justification, accept)
            self._trace(inst).on_criterion_recorded(
                phase_id, criterion_id, result.status.value, result.justification,
            )
            inst.updated_at = result.recorded_at
            self.store.log_action(instance_id, "record", result.to_dict())
            self._save(inst)
            return self._snapshot(inst)

    def advance(
        self,
        instance_id: str,
        outcome: str,
        condition: str | None = None,
        detail: str = "",
    ) -> dict[str, Any]:
        """
        Apply a completion or failure signal for the active phase.

        outcome: "complete" or "fail"
        condition: optional failure-condition label for loop-back lookup
        """
        signal = _normalise_outcome(outcome)
        with self._lock:
            inst = self._get(instance_id)
            self._require_executing(inst)
            self._ensure_context(inst)
            self.store.log_action(instance_id, "advance", {
                "phase_id": inst.current_phase,
                "outcome": signal,
                "condition": condition,
                "detail": detail,
            })
            ev = self._evaluator(inst)
            if signal == "complete":
                self._complete_phase(inst, ev, detail)
            else:
                self._fail_phase(inst, ev, condition, detail)
            self._save(inst)
            return self._snapshot(inst)

    def cancel(self, instance_id: str, reason: str = "") -> dict[str, Any]:
        """Abort at any point. Idempotent on terminal instances."""
        with self._lock:
            inst = self._get(instance_id)
            if inst.is_terminal:
                return self._snapshot(inst)
            inst.log(inst.current_phase, Outcome.CANCELLED, reason)
            self.store.log_action(instance_id, "cancel", {"reason": reason})
            self._abort(inst, f"Cancelled: {reason}" if reason else "Cancelled")
            self._save(inst)
            self._log(f"■ CANCELLED {instance_id}")
            return self._snapshot(inst)

    def resume(self, instance_id: str) -> dict[str, Any]:
        """Re-establish the resident module of an executing instance."""
        with self._lock:
            inst = self._get(instance_id)
            if inst.status == WorkflowStatus.EXECUTING:
                self._ensure_context(inst)
            return self._snapshot(inst)

    # ─── Read-only Views ─────────────────────────────────────────────

    def status(self, instance_id: str) -> dict[str, Any]:
        with self._lock:
            return self._snapshot(self._get(instance_id))

    def report(self, instance_id: str) -> dict[str, Any]:
        """Final report. Every failed and waived result stays visible."""
        with self._lock:
            inst = self._get(instance_id)
            ev = self._evaluator(inst)
            return {
                "instance_id": inst.instance_id,
                "status": inst.status.value,
                "intent": describe_intent(inst.intent),
                "sequence": list(inst.sequence),
                "completed_phases": inst.completed_phases(),
                "loop_back_count": inst.loop_back_count,
                "error": inst.error,
                "phases": {
                    pid: {
                        "attempts": ev.attempt(pid),
                        "criteria": ev.current_status(pid),
                    }
                    for pid in inst.sequence
                },
                "exceptions": [r.to_dict() for r in ev.exceptions()],
                "warnings": [
                    e.to_dict() for e in inst.history
                    if e.outcome == Outcome.DEPENDENCY_ASSUMED.value
                ],
            }

    def list_instances(self, status: WorkflowStatus | None = None) -> list[dict[str, Any]]:
        return [
            {
                "instance_id": inst.instance_id,
                "intent": describe_intent(inst.intent),
                "status": inst.status.value,
                "current_phase": inst.current_phase,
                "loop_back_count": inst.loop_back_count,
                "created_at": inst.created_at,
            }
            for inst in self.store.list_instances(status=status)
        ]

    # ─── Transitions ─────────────────────────────────────────────────

    def _complete_phase(self, inst: WorkflowInstance, ev: ExitCriteriaEvaluator, detail: str):
        phase_id = inst.current_phase

        # A completion cannot paper over open failures
        if ev.unresolved(phase_id):
            self._fail_phase(inst, ev, None, detail or "completion signalled with unresolved failures")
            return

        if not ev.is_phase_complete(phase_id):
            unchecked = ev.unchecked(phase_id)
            msg = f"{phase_id}: unchecked criteria {unchecked}"
            inst.log(phase_id, Outcome.COMPLETION_REJECTED, msg)
            self._save(inst)
            raise IncompletePhase(msg)

        last = inst.current_index + 1 >= len(inst.sequence)
        if last:
            open_failures = self._open_failures(inst, ev)
            if open_failures:
                msg = f"Cannot complete {inst.instance_id}: unresolved failures {open_failures}"
                inst.log(phase_id, Outcome.COMPLETION_REJECTED, msg)
                self._save(inst)
                raise InvariantViolation(msg)

        inst.log(phase_id, Outcome.COMPLETED, detail)
        inst.current_index += 1
        self._log(f"  ✓ {inst.instance_id}: {phase_id} complete")

        if last:
            self._finish(inst)
        else:
            self._enter(inst, inst.sequence[inst.current_index])

    def _fail_phase(
        self,
        inst: WorkflowInstance,
        ev: ExitCriteriaEvaluator,
        condition: str | None,
        detail: str,
    ):
        phase_id = inst.current_phase
        phase = self.registry.lookup(phase_id)
        failed = ev.unresolved(phase_id)
        if not condition and not failed:
            raise InputError(
                f"Failure signal for {phase_id} names no condition and no criterion has failed"
            )

        summary = ", ".join(([condition] if condition else []) + failed)
        inst.log(phase_id, Outcome.FAILED, f"{summary}: {detail}" if detail else summary)

        target, label = _match_loop_back(phase, condition, failed)
        if target is None:
            verbatim = f"{phase_id} failed [{summary}]"
            if detail:
                verbatim += f": {detail}"
            self._abort(inst, verbatim)
            return

        inst.loop_back_count += 1
        if inst.loop_back_count > self.max_loops:
            msg = (
                f"{inst.instance_id}: loop-back #{inst.loop_back_count} from {phase_id} "
                f"to {target} exceeds cap of {self.max_loops}"
            )
            inst.log(phase_id, Outcome.LOOP_LIMIT_EXCEEDED, msg)
            self._abort(inst, msg)
            self._save(inst)
            raise LoopLimitExceeded(msg, snapshot=self._snapshot(inst))

        if self.registry.lookup(target).order > phase.order:
            raise InvariantViolation(f"Loop-back from {phase_id} to later phase {target}")

        if target not in inst.sequence:
            inst.sequence = self.registry.sort(set(inst.sequence) | {target})
            inst.log(target, Outcome.SEQUENCE_EXTENDED, " → ".join(inst.sequence))

        # Everything from the target through the failed phase needs re-validation
        affected = [
            pid for pid in self.registry.slice(target, phase_id)
            if pid in inst.sequence
        ]
        for pid in affected:
            inst.log(pid, Outcome.INVALIDATED, f"loop-back from {phase_id} ({label})")
        ev.reset(affected)

        inst.current_index = inst.sequence.index(target)
        inst.log(target, Outcome.LOOPED_BACK, f"from {phase_id} on {label}")
        self._transition(inst, WorkflowStatus.LOOPED_BACK, target)
        self._trace(inst).on_loop_back(phase_id, target, label, inst.loop_back_count)
        self._log(f"  ↺ {inst.instance_id}: {phase_id} → {target} ({label})")
        self._enter(inst, target)

    def _enter(self, inst: WorkflowInstance, phase_id: str):
        """Check dependencies, load guidance, and mark the phase executing."""
        phase = self.registry.lookup(phase_id)
        done = set(inst.completed_phases())
        missing = sorted(d for d in phase.dependencies if d not in done)
        if missing:
            if isinstance(inst.intent, (PartialSet, Repair)):
                logger.debug("%s: entering %s with assumed deps %s", inst.instance_id, phase_id, missing)
            else:
                msg = f"{phase_id} cannot start: dependencies {missing} not completed"
                inst.log(phase_id, DependencyUnsatisfied.__name__, msg)
                self._abort(inst, msg)
                self._save(inst)
                raise DependencyUnsatisfied(msg)

        previous = self.budget.resident(inst.instance_id)
        handle = self._load(inst, phase_id)

        attempt = self._attempts(inst).get(phase_id, 1)
        inst.log(phase_id, Outcome.ENTERED, f"attempt {attempt}")
        self._transition(inst, WorkflowStatus.EXECUTING, phase_id)
        self._trace(inst).on_phase_loaded(phase_id, handle.size, handle.digest, previous)
        self.budget.enforce_invariant(inst.instance_id)

    def _load(self, inst: WorkflowInstance, phase_id: str):
        try:
            return self.budget.load(inst.instance_id, phase_id)
        except ResourceUnavailable as e:
            inst.log(phase_id, Outcome.RESOURCE_UNAVAILABLE, str(e))
            self._abort(inst, f"ResourceUnavailable: {e}")
            self._save(inst)
            raise

    def _ensure_context(self, inst: WorkflowInstance):
        if self.budget.resident(inst.instance_id) != inst.current_phase:
            logger.info("%s: restoring context for %s", inst.instance_id, inst.current_phase)
            self._load(inst, inst.current_phase)

    def _finish(self, inst: WorkflowInstance):
        evicted = self.budget.unload(inst.instance_id)
        if evicted:
            self._trace(inst).on_phase_evicted(evicted)
        self._transition(inst, WorkflowStatus.COMPLETED)
        inst.archived_at = time.time()
        self._trace(inst).on_workflow_end("completed", len(inst.completed_phases()))
        self._traces.pop(inst.instance_id, None)
        self._log(f"✓ COMPLETED {inst.instance_id}")

    def _abort(self, inst: WorkflowInstance, reason: str):
        evicted = self.budget.unload(inst.instance_id)
        if evicted:
            self._trace(inst).on_phase_evicted(evicted)
        inst.error = reason
        inst.log(inst.current_phase, Outcome.ABORTED, reason)
        self._transition(inst, WorkflowStatus.ABORTED, inst.current_phase)
        inst.archived_at = time.time()
        self._trace(inst).on_workflow_end("aborted", len(inst.completed_phases()), reason)
        self._traces.pop(inst.instance_id, None)
        self._log(f"✗ ABORTED {inst.instance_id}: {reason}")

    def _transition(self, inst: WorkflowInstance, to: WorkflowStatus, phase_id: str | None = None):
        allowed = _TRANSITIONS.get(inst.status, set())
        if to not in allowed:
            raise InvariantViolation(
                f"Instance {inst.instance_id}: {inst.status.value} → {to.value} is not allowed"
            )
        previous = inst.status
        inst.status = to
        inst.updated_at = time.time()
        self._trace(inst).on_transition(previous.value, to.value, phase_id)
        self._notify(inst, previous, to, phase_id)

    def _notify(self, inst, previous, to, phase_id):
        for listener in self._listeners:
            listener(inst, previous, to, phase_id)

    # ─── Helpers ─────────────────────────────────────────────────────

    def _get(self, instance_id: str) -> WorkflowInstance:
        inst = self.store.get_instance(instance_id)
        if inst is None:
            raise NotFound(f"Instance not found: {instance_id}")
        return inst

    def _save(self, inst: WorkflowInstance):
        self.store.save_instance(inst)

    def _require_executing(self, inst: WorkflowInstance):
        if inst.status != WorkflowStatus.EXECUTING:
            raise InvalidTransition(
                f"Instance {inst.instance_id} is {inst.status.value}, not executing"
            )

    @staticmethod
    def _attempts(inst: WorkflowInstance) -> dict[str, int]:
        """Attempt number per phase: one plus the number of invalidations."""
        attempts: dict[str, int] = {}
        for e in inst.history:
            if e.outcome == Outcome.INVALIDATED.value and e.phase_id:
                attempts[e.phase_id] = attempts.get(e.phase_id, 1) + 1
        return attempts

    def _evaluator(self, inst: WorkflowInstance) -> ExitCriteriaEvaluator:
        return ExitCriteriaEvaluator(
            self.registry, inst.criteria_results, attempts=self._attempts(inst),
        )

    def _open_failures(self, inst: WorkflowInstance, ev: ExitCriteriaEvaluator) -> dict[str, list[str]]:
        out = {}
        for pid in inst.visited_phases():
            failed = ev.unresolved(pid)
            if failed:
                out[pid] = failed
        return out

    def _trace(self, inst: WorkflowInstance) -> StructuredLogger:
        trace = self._traces.get(inst.instance_id)
        if trace is None:
            trace = StructuredLogger(
                instance_id=inst.instance_id,
                intent=inst.intent.kind,
                trace_id=uuid.uuid5(uuid.NAMESPACE_URL, inst.instance_id).hex,
            )
            self._traces[inst.instance_id] = trace
        return trace

    def _snapshot(self, inst: WorkflowInstance) -> dict[str, Any]:
        ev = self._evaluator(inst)
        phase = inst.current_phase
        data = inst.to_dict()
        data.update({
            "intent_label": describe_intent(inst.intent),
            "current_phase": phase,
            "completed_phases": inst.completed_phases(),
            "criteria": ev.current_status(phase) if phase else {},
            "resident_module": self.budget.resident(inst.instance_id),
        })
        return data

    def _log(self, msg: str):
        if self.verbose:
            print(f"  [router] {msg}", file=sys.stderr, flush=True)


def _normalise_outcome(outcome: str) -> str:
    value = (outcome or "").strip().lower()
    if value in ("complete", "completed", "completion", "done", "pass", "passed"):
        return "complete"
    if value in ("fail", "failed", "failure"):
        return "fail"
    raise InputError(f"Unknown outcome {outcome!r}; expected 'complete' or 'fail'")


def _match_loop_back(
    phase: Phase,
    condition: str | None,
    failed: list[str],
) -> tuple[str | None, str]:
    """
    Find the loop-back target for a failure.

    Lookup order: explicit condition label, then each unresolved
    criterion id in checklist order, then the catch-all.
    """
    targets = phase.loop_back_targets
    if condition and condition in targets:
        return targets[condition], condition
    for cid in failed:
        if cid in targets:
            return targets[cid], cid
    label = condition or (failed[0] if failed else CATCH_ALL)
    if CATCH_ALL in targets:
        return targets[CATCH_ALL], label
    return None, label
