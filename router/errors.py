"""
Skill Router — Error Taxonomy

Every failure the router can surface. Each class carries the CLI exit
code it maps to:

  0  success
  1  invalid input (and other command failures)
  2  instance or phase not found
  3  budget / invariant violation

DependencyAssumed is a warning, not an error: it marks the PartialSet
relaxation of the dependency rule and is recorded in history instead of
being raised.
"""

from __future__ import annotations


class RouterError(Exception):
    """Base class for all router errors."""
    exit_code = 1


# ─── Input ───────────────────────────────────────────────────────────

class InputError(RouterError):
    """Malformed request, intent, or signal."""
    exit_code = 1


class AmbiguousIntent(InputError):
    """The classifier found no confident match. The caller must resolve it."""


class IncompletePhase(InputError):
    """A completion signal arrived while criteria are still unchecked."""


class MissingJustification(InputError):
    """A waiver (or accepted failure) was recorded without a justification."""


class InvalidTransition(InputError):
    """A signal arrived for an instance in a state that cannot accept it."""


# ─── Lookup ──────────────────────────────────────────────────────────

class NotFound(RouterError):
    """Unknown phase, criterion, or instance."""
    exit_code = 2


# ─── Resources ───────────────────────────────────────────────────────

class ResourceUnavailable(RouterError):
    """A phase guidance payload could not be fetched or was malformed."""
    exit_code = 1


# ─── Invariants ──────────────────────────────────────────────────────

class InvariantViolation(RouterError):
    """A structural invariant was broken. Programmer error, never corrected."""
    exit_code = 3


class BudgetViolation(InvariantViolation):
    """The context slot invariant was broken."""


class RouterOverflow(BudgetViolation):
    """The permanently resident router summary exceeds its cap."""


class DependencyUnsatisfied(InvariantViolation):
    """A phase was about to execute before its dependencies completed."""


class LoopLimitExceeded(RouterError):
    """Loop-back count went over the configured cap. The instance is aborted."""
    exit_code = 3

    def __init__(self, message: str, snapshot: dict | None = None):
        super().__init__(message)
        self.snapshot = snapshot or {}


# ─── Warnings ────────────────────────────────────────────────────────

class DependencyAssumed(UserWarning):
    """A PartialSet phase runs without its dependencies completed in history."""
