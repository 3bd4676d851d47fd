"""Ordered record of step outcomes for one provisioning run."""

from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..exit_codes import ExitCode
from .models import Outcome, OutcomeKind


class LedgerError(RuntimeError):
    """Raised when a step outcome is recorded twice."""


class RunStatus(str, Enum):
    """Overall status derived from the recorded outcomes."""

    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class LedgerEntry:
    """A single ``(step name, outcome)`` pair."""

    name: str
    outcome: Outcome


@dataclass(slots=True, frozen=True)
class LedgerSummary:
    """Counts per outcome kind plus the names of critical failures."""

    installed: int
    skipped: int
    failed: int
    critical_failures: tuple[str, ...]
    status: RunStatus

    @property
    def failed_total(self) -> int:
        """Return the count of failures of either kind."""
        return self.failed + len(self.critical_failures)

    def exit_code(self) -> int:
        """Translate the summary into a CLI exit code.

        A critical failure maps to :attr:`ExitCode.PROVIDER`; any other failure
        leaves the host partially provisioned and maps to :attr:`ExitCode.PARTIAL`.
        """
        if self.status is RunStatus.FAILED:
            return int(ExitCode.PROVIDER)
        if self.status is RunStatus.DEGRADED:
            return int(ExitCode.PARTIAL)
        return int(ExitCode.OK)


class Ledger:
    """Thread-safe, append-only accumulator of step outcomes."""

    def __init__(self) -> None:
        """Create an empty ledger."""
        self._entries: list[LedgerEntry] = []
        self._names: set[str] = set()
        self._lock = threading.Lock()

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._names

    @property
    def entries(self) -> tuple[LedgerEntry, ...]:
        """Return a snapshot of the entries in completion order."""
        with self._lock:
            return tuple(self._entries)

    def record(self, name: str, outcome: Outcome) -> LedgerEntry:
        """Append the outcome for *name*; each step may be recorded once."""
        entry = LedgerEntry(name=name, outcome=outcome)
        with self._lock:
            if name in self._names:
                raise LedgerError(f"Outcome for step '{name}' already recorded.")
            self._names.add(name)
            self._entries.append(entry)
        return entry

    def get(self, name: str) -> Outcome | None:
        """Return the outcome recorded for *name*, if any."""
        with self._lock:
            for entry in self._entries:
                if entry.name == name:
                    return entry.outcome
        return None

    def outcomes(self) -> dict[str, Outcome]:
        """Return a mapping of step name to outcome."""
        return {entry.name: entry.outcome for entry in self.entries}

    def summary(self) -> LedgerSummary:
        """Aggregate the recorded outcomes."""
        totals = {kind: 0 for kind in OutcomeKind}
        critical: list[str] = []
        for entry in self.entries:
            totals[entry.outcome.kind] += 1
            if entry.outcome.kind is OutcomeKind.FAILED_CRITICAL:
                critical.append(entry.name)
        if critical:
            status = RunStatus.FAILED
        elif totals[OutcomeKind.FAILED]:
            status = RunStatus.DEGRADED
        else:
            status = RunStatus.SUCCESS
        return LedgerSummary(
            installed=totals[OutcomeKind.INSTALLED],
            skipped=totals[OutcomeKind.SKIPPED],
            failed=totals[OutcomeKind.FAILED],
            critical_failures=tuple(critical),
            status=status,
        )

    def failures(self) -> list[LedgerEntry]:
        """Return every failure entry (both kinds) in completion order."""
        return [entry for entry in self.entries if entry.outcome.is_failure]

    def render(self) -> str:
        """Return a human-readable report of the run."""
        summary = self.summary()
        entries = self.entries
        lines = [
            f"Provisioning {summary.status.value}: "
            f"installed={summary.installed} skipped={summary.skipped} "
            f"failed={summary.failed} critical={len(summary.critical_failures)}",
        ]
        if not entries:
            lines.append("No steps were executed.")
            return "\n".join(lines)

        lines.append("")
        width = max(len(entry.name) for entry in entries)
        for entry in entries:
            outcome = entry.outcome
            label = _OUTCOME_LABELS[outcome.kind]
            line = f"  {label:<9} {entry.name:<{width}}"
            if outcome.reason:
                line = f"{line}  {outcome.reason}"
            lines.append(line.rstrip())

        noncritical = [
            entry for entry in entries if entry.outcome.kind is OutcomeKind.FAILED
        ]
        if noncritical:
            lines.append("")
            lines.append("Failures:")
            for entry in noncritical:
                lines.append(f"  - {entry.name}: {entry.outcome.reason or 'unknown error'}")

        critical = [
            entry for entry in entries if entry.outcome.kind is OutcomeKind.FAILED_CRITICAL
        ]
        if critical:
            lines.append("")
            lines.append("CRITICAL FAILURES:")
            for entry in critical:
                lines.append(f"  ! {entry.name}: {entry.outcome.reason or 'unknown error'}")
                blocked = [
                    other.name
                    for other in entries
                    if other.outcome.blocked_by == entry.name
                ]
                if blocked:
                    lines.append(f"    blocked: {', '.join(blocked)}")
        return "\n".join(lines)

    def to_payload(self) -> dict[str, Any]:
        """Convert the ledger into a JSON-serialisable mapping."""
        summary = self.summary()
        steps: list[dict[str, object]] = []
        for entry in self.entries:
            item: dict[str, object] = {
                "name": entry.name,
                "outcome": entry.outcome.kind.value,
            }
            if entry.outcome.reason is not None:
                item["reason"] = entry.outcome.reason
            if entry.outcome.blocked_by is not None:
                item["blocked_by"] = entry.outcome.blocked_by
            if entry.outcome.duration_ms is not None:
                item["duration_ms"] = entry.outcome.duration_ms
            steps.append(item)
        return {
            "summary": {
                "status": summary.status.value,
                "installed": summary.installed,
                "skipped": summary.skipped,
                "failed": summary.failed,
                "critical_failures": list(summary.critical_failures),
            },
            "steps": steps,
        }


_OUTCOME_LABELS: Mapping[OutcomeKind, str] = {
    OutcomeKind.INSTALLED: "installed",
    OutcomeKind.SKIPPED: "skipped",
    OutcomeKind.FAILED: "failed",
    OutcomeKind.FAILED_CRITICAL: "CRITICAL",
}


__all__ = ["Ledger", "LedgerEntry", "LedgerError", "LedgerSummary", "RunStatus"]
