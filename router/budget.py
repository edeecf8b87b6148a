"""
Skill Router — Context Budget Manager

Keeps at most one phase module resident per workflow instance, plus
the small router summary that is permanently resident for everyone.

  load(instance, phase)    fetch the payload, then evict + install
                           under a lock (load-then-evict, never two)
  unload(instance)         release the slot
  enforce_invariant(inst)  check: 0 or 1 modules resident

Two modes:
  per-instance (default)   every instance owns an independent slot
  shared window            one slot for the whole process, owned by
                           one instance at a time under a global lock

A fetch failure leaves the slot exactly as it was.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

from engine.resources import ResourceLocator
from registry.phases import SkillRegistry
from router.errors import BudgetViolation, RouterOverflow

logger = logging.getLogger("skill_router.budget")

DEFAULT_ROUTER_SUMMARY_CAP = 4096
SHARED_SLOT = "__shared__"


@dataclass(frozen=True)
class GuidanceHandle:
    """Opaque reference to a loaded phase payload."""
    phase_id: str
    resource: str
    content: bytes
    size: int
    digest: str

    def text(self, encoding: str = "utf-8") -> str:
        return self.content.decode(encoding, errors="replace")


@dataclass
class ContextSlot:
    """The per-instance (or shared) resident-module holder."""
    owner: str | None = None
    resident_module: str | None = None
    handle: GuidanceHandle | None = None
    loaded_at: float = 0.0


class ContextBudgetManager:
    """Enforces the single-resident-module invariant."""

    def __init__(
        self,
        registry: SkillRegistry,
        locator: ResourceLocator,
        router_summary_cap: int = DEFAULT_ROUTER_SUMMARY_CAP,
        max_module_units: int | None = None,
        shared_window: bool = False,
    ):
        self.registry = registry
        self.locator = locator
        self.router_summary_cap = router_summary_cap
        self.max_module_units = max_module_units
        self.shared_window = shared_window

        self._lock = threading.Lock()
        self._slots: dict[str, ContextSlot] = {}
        # Independent residency ledger, cross-checked by enforce_invariant
        self._resident: dict[str, set[str]] = {}
        self.router_summary: bytes = b""

    # ─── Router Summary ──────────────────────────────────────────────

    def validate_router_summary_size(self, data: bytes | str) -> int:
        size = len(data.encode("utf-8") if isinstance(data, str) else data)
        if size > self.router_summary_cap:
            raise RouterOverflow(
                f"Router summary is {size} bytes; cap is {self.router_summary_cap}. "
                f"Move phase policy into a phase module."
            )
        return size

    def load_router_summary(self, ref: str) -> bytes:
        data = self.locator.fetch(ref)
        self.validate_router_summary_size(data)
        self.router_summary = data
        logger.info("Router summary resident (%d bytes, cap %d)", len(data), self.router_summary_cap)
        return data

    # ─── Slots ───────────────────────────────────────────────────────

    def _slot_key(self, instance_id: str) -> str:
        return SHARED_SLOT if self.shared_window else instance_id

    def _slot(self, instance_id: str) -> ContextSlot:
        key = self._slot_key(instance_id)
        if key not in self._slots:
            self._slots[key] = ContextSlot()
        return self._slots[key]

    def load(self, instance_id: str, phase_id: str) -> GuidanceHandle:
        """
        Make phase_id the instance's resident module and return its handle.

        The payload is fetched before the slot is touched, so a
        ResourceUnavailable leaves the previous module resident.
        """
        phase = self.registry.lookup(phase_id)
        if self.max_module_units is not None and phase.estimated_cost > self.max_module_units:
            raise BudgetViolation(
                f"Phase {phase_id} costs {phase.estimated_cost} units; "
                f"module budget is {self.max_module_units}"
            )

        content = self.locator.fetch(phase.resource)
        handle = GuidanceHandle(
            phase_id=phase_id,
            resource=phase.resource,
            content=content,
            size=len(content),
            digest=hashlib.sha256(content).hexdigest()[:16],
        )

        with self._lock:
            slot = self._slot(instance_id)
            if self.shared_window and slot.owner not in (None, instance_id):
                raise BudgetViolation(
                    f"Shared context window is held by {slot.owner}; "
                    f"{instance_id} cannot load {phase_id}"
                )
            evicted = slot.resident_module
            slot.owner = instance_id
            slot.resident_module = phase_id
            slot.handle = handle
            slot.loaded_at = time.time()
            self._resident[instance_id] = {phase_id}

        logger.debug(
            "Loaded %s for %s (evicted %s, %d bytes)",
            phase_id, instance_id, evicted, handle.size,
        )
        return handle

    def unload(self, instance_id: str) -> str | None:
        """Release the instance's slot. Returns the evicted module id."""
        with self._lock:
            key = self._slot_key(instance_id)
            slot = self._slots.get(key)
            if slot is None or slot.owner not in (None, instance_id):
                self._resident.pop(instance_id, None)
                return None
            evicted = slot.resident_module
            if self.shared_window:
                self._slots[key] = ContextSlot()
            else:
                self._slots.pop(key, None)
            self._resident.pop(instance_id, None)
        if evicted:
            logger.debug("Unloaded %s for %s", evicted, instance_id)
        return evicted

    # ─── Queries ─────────────────────────────────────────────────────

    def resident(self, instance_id: str) -> str | None:
        with self._lock:
            slot = self._slots.get(self._slot_key(instance_id))
            if slot is None or slot.owner != instance_id:
                return None
            return slot.resident_module

    def handle(self, instance_id: str) -> GuidanceHandle | None:
        with self._lock:
            slot = self._slots.get(self._slot_key(instance_id))
            if slot is None or slot.owner != instance_id:
                return None
            return slot.handle

    def resident_count(self, instance_id: str) -> int:
        with self._lock:
            return len(self._resident.get(instance_id, ()))

    def enforce_invariant(self, instance_id: str) -> None:
        """Confirm 0 or 1 modules resident. Never corrects; raises."""
        with self._lock:
            modules = self._resident.get(instance_id, set())
            slot = self._slots.get(self._slot_key(instance_id))
            slot_module = slot.resident_module if slot and slot.owner == instance_id else None
            if len(modules) > 1:
                raise BudgetViolation(
                    f"{instance_id} has {len(modules)} modules resident: {sorted(modules)}"
                )
            if set(filter(None, [slot_module])) != modules:
                raise BudgetViolation(
                    f"{instance_id}: slot holds {slot_module!r} but ledger records {sorted(modules)}"
                )

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "shared_window": self.shared_window,
                "router_summary_bytes": len(self.router_summary),
                "router_summary_cap": self.router_summary_cap,
                "slots": {
                    key: {"owner": s.owner, "resident_module": s.resident_module}
                    for key, s in self._slots.items()
                },
            }
