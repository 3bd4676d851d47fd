"""Data models for provisioning steps and their outcomes."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..environment import EnvironmentFacts


class StepConfigError(RuntimeError):
    """Raised when the declared step graph is invalid."""


class DuplicateStepError(StepConfigError):
    """Raised when two steps share a name."""

    def __init__(self, name: str) -> None:
        """Record the duplicated step name."""
        super().__init__(f"Step '{name}' is already registered.")
        self.name = name


class UnknownDependencyError(StepConfigError):
    """Raised when a step depends on a name that was never registered."""

    def __init__(self, step: str, missing: Sequence[str]) -> None:
        """Record the step and the dependency names it could not resolve."""
        joined = ", ".join(missing)
        super().__init__(f"Step '{step}' depends on unknown step(s): {joined}.")
        self.step = step
        self.missing = tuple(missing)


class CyclicDependencyError(StepConfigError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, members: Sequence[str]) -> None:
        """Record every step participating in a cycle."""
        joined = ", ".join(members)
        super().__init__(f"Dependency cycle detected between steps: {joined}.")
        self.members = tuple(members)


class OutcomeKind(str, Enum):
    """Terminal result of a step."""

    INSTALLED = "installed"
    SKIPPED = "skipped"
    FAILED = "failed"
    FAILED_CRITICAL = "failed_critical"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` for either failure kind."""
        return self in (OutcomeKind.FAILED, OutcomeKind.FAILED_CRITICAL)


class StepState(str, Enum):
    """Lifecycle of a single step within one run."""

    PENDING = "pending"
    INSTALLED = "installed"
    SKIPPED = "skipped"
    FAILED = "failed"
    FAILED_CRITICAL = "failed_critical"

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` once the step can no longer change state."""
        return self is not StepState.PENDING

    @classmethod
    def from_outcome(cls, kind: OutcomeKind) -> StepState:
        """Map an outcome kind onto its terminal state."""
        return cls(kind.value)


REASON_ALREADY_PRESENT = "already present"
REASON_CANCELLED = "run cancelled"
REASON_DRY_RUN = "dry run"


@dataclass(slots=True, frozen=True)
class Outcome:
    """Result recorded for a step."""

    kind: OutcomeKind
    reason: str | None = None
    blocked_by: str | None = None
    duration_ms: int | None = None

    @classmethod
    def installed(cls, *, duration_ms: int | None = None) -> Outcome:
        """Build an ``installed`` outcome."""
        return cls(OutcomeKind.INSTALLED, duration_ms=duration_ms)

    @classmethod
    def skipped(cls, reason: str, *, blocked_by: str | None = None) -> Outcome:
        """Build a ``skipped`` outcome with *reason*."""
        return cls(OutcomeKind.SKIPPED, reason=reason, blocked_by=blocked_by)

    @classmethod
    def failed(
        cls,
        reason: str,
        *,
        critical: bool,
        duration_ms: int | None = None,
    ) -> Outcome:
        """Build a failure outcome classified by *critical*."""
        kind = OutcomeKind.FAILED_CRITICAL if critical else OutcomeKind.FAILED
        return cls(kind, reason=reason, duration_ms=duration_ms)

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the outcome is a failure of either kind."""
        return self.kind.is_failure

    @property
    def is_blocking(self) -> bool:
        """Return ``True`` when dependents must not run."""
        return self.kind is OutcomeKind.FAILED_CRITICAL or self.blocked_by is not None


SatisfiedCheck = Callable[["EnvironmentFacts"], bool]
ApplyAction = Callable[["EnvironmentFacts"], None]


@dataclass(slots=True, frozen=True)
class Step:
    """A declared provisioning unit.

    ``is_satisfied`` must be a fast, side-effect free check. ``apply`` performs
    the external action and signals failure by raising.
    """

    name: str
    is_satisfied: SatisfiedCheck
    apply: ApplyAction
    depends_on: tuple[str, ...] = ()
    critical: bool = False
    description: str = ""
    tags: frozenset[str] = field(default_factory=frozenset)
    resources: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Normalise collection fields and reject empty names."""
        if not self.name or not self.name.strip():
            raise StepConfigError("Step names must be non-empty strings.")
        object.__setattr__(self, "depends_on", tuple(dict.fromkeys(self.depends_on)))
        object.__setattr__(self, "tags", frozenset(self.tags))
        object.__setattr__(self, "resources", tuple(sorted(set(self.resources))))


__all__ = [
    "ApplyAction",
    "CyclicDependencyError",
    "DuplicateStepError",
    "Outcome",
    "OutcomeKind",
    "REASON_ALREADY_PRESENT",
    "REASON_CANCELLED",
    "REASON_DRY_RUN",
    "SatisfiedCheck",
    "Step",
    "StepConfigError",
    "StepState",
    "UnknownDependencyError",
]
