"""Provisioning engine: step registry, scheduler and result ledger."""

from __future__ import annotations

from .ledger import Ledger, LedgerEntry, LedgerError, LedgerSummary, RunStatus
from .models import (
    REASON_ALREADY_PRESENT,
    REASON_CANCELLED,
    REASON_DRY_RUN,
    CyclicDependencyError,
    DuplicateStepError,
    Outcome,
    OutcomeKind,
    Step,
    StepConfigError,
    StepState,
    UnknownDependencyError,
)
from .registry import ExecutionPlan, StepRegistry, topological_order
from .scheduler import Scheduler, SchedulerOptions, run

__all__ = [
    "CyclicDependencyError",
    "DuplicateStepError",
    "ExecutionPlan",
    "Ledger",
    "LedgerEntry",
    "LedgerError",
    "LedgerSummary",
    "Outcome",
    "OutcomeKind",
    "REASON_ALREADY_PRESENT",
    "REASON_CANCELLED",
    "REASON_DRY_RUN",
    "RunStatus",
    "Scheduler",
    "SchedulerOptions",
    "Step",
    "StepConfigError",
    "StepRegistry",
    "StepState",
    "UnknownDependencyError",
    "run",
    "topological_order",
]
