"""
Skill Router — Runtime Facade

Wires the registry, resource locator, budget manager, classifier,
instance store and state machine together from layered config. The
CLI and the HTTP API both talk to a Router; tests usually inject an
in-memory store and a dict locator.

Usage:
    from router.runtime import Router

    router = Router(project_root=".")
    snap = router.submit("audit my staking contract")
    router.approve(snap["instance_id"], approver="alice")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from engine.config_loader import ConfigLoader
from engine.resources import ResourceLocator, build_locator
from registry.phases import SkillRegistry, load_registry
from router.budget import DEFAULT_ROUTER_SUMMARY_CAP, ContextBudgetManager
from router.classifier import IntentClassifier
from router.errors import InputError
from router.machine import (
    DEFAULT_MAX_LOOPS,
    DEFAULT_REVALIDATE_THROUGH,
    TransitionListener,
    WorkflowStateMachine,
)
from router.store import InstanceStore, SQLiteInstanceStore
from router.types import Intent, WorkflowStatus, describe_intent, intent_to_dict

logger = logging.getLogger("skill_router.runtime")

# Package root: registry/, router/, engine/ live here
PACKAGE_ROOT = Path(__file__).resolve().parent.parent


class Router:
    """One process-wide entry point over the workflow state machine."""

    def __init__(
        self,
        config_path: str | Path | None = None,
        config: dict[str, Any] | None = None,
        project_root: str | Path | None = None,
        env: str = "dev",
        registry: SkillRegistry | None = None,
        locator: ResourceLocator | None = None,
        store: InstanceStore | None = None,
        verbose: bool = False,
    ):
        self.project_root = Path(project_root) if project_root else PACKAGE_ROOT

        # Load config
        if config is not None:
            self.config = config
        else:
            base_files = [str(config_path)] if config_path else None
            loader = ConfigLoader(env=env, project_root=self.project_root, base_files=base_files)
            self.config = loader.load()

        # Registry (loaded once per process)
        if registry is None:
            registry_path = self.config.get("registry_path") or None
            if registry_path and not Path(registry_path).is_absolute():
                registry_path = self.project_root / registry_path
            registry = load_registry(registry_path)
        self.registry = registry

        # Guidance payloads
        self.locator = locator or build_locator(self.config.get("resources", {}), root=self.project_root)

        # Context budget
        budget_cfg = self.config.get("budget", {}) or {}
        self.budget = ContextBudgetManager(
            registry=self.registry,
            locator=self.locator,
            router_summary_cap=int(budget_cfg.get("router_summary_cap_bytes", DEFAULT_ROUTER_SUMMARY_CAP)),
            max_module_units=budget_cfg.get("max_module_units"),
            shared_window=bool(budget_cfg.get("shared_window", False)),
        )
        if budget_cfg.get("router_summary"):
            self.budget.load_router_summary(budget_cfg["router_summary"])

        # Classifier
        classifier_cfg = self.config.get("classifier", {}) or {}
        self.classifier = IntentClassifier(
            self.registry, extra_rules=classifier_cfg.get("rules") or [],
        )

        # State store
        if store is None:
            store = SQLiteInstanceStore(self.config.get("db_path") or "router.db")
        self.store = store

        # State machine
        self.machine = WorkflowStateMachine(
            registry=self.registry,
            budget=self.budget,
            store=self.store,
            max_loops=int((self.config.get("loop_back") or {}).get("max_loops", DEFAULT_MAX_LOOPS)),
            revalidate_through=(self.config.get("repair") or {}).get(
                "revalidate_through", DEFAULT_REVALIDATE_THROUGH,
            ),
            verbose=verbose,
        )
        logger.info(
            "Router ready: %d phases, max_loops=%d, shared_window=%s",
            len(self.registry), self.machine.max_loops, self.budget.shared_window,
        )

    # ─── Classification ──────────────────────────────────────────────

    def classify(self, text: str) -> Intent:
        return self.classifier.classify(text)

    def explain(self, text: str) -> dict[str, Any]:
        """Classification result plus the rules that matched."""
        intent = self.classifier.classify(text)
        return {
            "intent": intent_to_dict(intent),
            "label": describe_intent(intent),
            "matches": [
                {"rule": rule.name, "length": length}
                for rule, length in self.classifier.matches(text)
            ],
        }

    def submit(self, text: str) -> dict[str, Any]:
        """Classify a request and start a workflow for it."""
        intent = self.classifier.classify(text)
        return self.machine.start(intent, request_text=text)

    # ─── Lifecycle (delegates to the machine) ────────────────────────

    def start(self, intent: Intent, request_text: str = "") -> dict[str, Any]:
        return self.machine.start(intent, request_text=request_text)

    def approve(self, instance_id: str, approver: str = "", notes: str = "") -> dict[str, Any]:
        return self.machine.approve(instance_id, approver=approver, notes=notes)

    def reject(self, instance_id: str, rejector: str = "", reason: str = "") -> dict[str, Any]:
        return self.machine.reject(instance_id, rejector=rejector, reason=reason)

    def record(self, instance_id: str, criterion_id: str, outcome: str,
               justification: str = "", accept: bool = False,
               phase_id: str | None = None) -> dict[str, Any]:
        return self.machine.record(
            instance_id, criterion_id, outcome,
            justification=justification, accept=accept, phase_id=phase_id,
        )

    def advance(self, instance_id: str, outcome: str, condition: str | None = None,
                detail: str = "") -> dict[str, Any]:
        return self.machine.advance(instance_id, outcome, condition=condition, detail=detail)

    def cancel(self, instance_id: str, reason: str = "") -> dict[str, Any]:
        return self.machine.cancel(instance_id, reason=reason)

    def resume(self, instance_id: str) -> dict[str, Any]:
        return self.machine.resume(instance_id)

    def status(self, instance_id: str) -> dict[str, Any]:
        return self.machine.status(instance_id)

    def report(self, instance_id: str) -> dict[str, Any]:
        return self.machine.report(instance_id)

    def list_instances(self, status: str | None = None) -> list[dict[str, Any]]:
        try:
            wanted = WorkflowStatus(status) if status else None
        except ValueError:
            raise InputError(f"Unknown status: {status!r}") from None
        return self.machine.list_instances(wanted)

    def add_listener(self, listener: TransitionListener):
        self.machine.add_listener(listener)

    # ─── Introspection ───────────────────────────────────────────────

    def phases(self) -> dict[str, Any]:
        return self.registry.to_dict()

    def ledger(self, instance_id: str | None = None) -> list[dict[str, Any]]:
        return self.store.get_ledger(instance_id)

    def stats(self) -> dict[str, Any]:
        return {
            **self.store.stats(),
            "budget": self.budget.snapshot(),
            "phases": list(self.registry.canonical_order()),
            "max_loops": self.machine.max_loops,
        }

    def close(self):
        self.store.close()
