"""Tests for the run ledger and its report."""
from __future__ import annotations

import pytest

from devsetup.engine import Ledger, LedgerError, Outcome, RunStatus
from devsetup.exit_codes import ExitCode


def _ledger() -> Ledger:
    ledger = Ledger()
    ledger.record("base-packages", Outcome.skipped("already present"))
    ledger.record("rust", Outcome.failed("curl not found", critical=False))
    ledger.record("zsh", Outcome.failed("apt-get failed (exit 100)", critical=True))
    ledger.record(
        "zshrc",
        Outcome.skipped("blocked by critical failure of 'zsh'", blocked_by="zsh"),
    )
    ledger.record("git-config", Outcome.installed(duration_ms=5))
    return ledger


def test_record_rejects_duplicates() -> None:
    """A step's outcome can only be recorded once."""
    ledger = Ledger()
    ledger.record("zsh", Outcome.installed())

    with pytest.raises(LedgerError):
        ledger.record("zsh", Outcome.skipped("already present"))


def test_entries_keep_completion_order() -> None:
    """Iteration follows the order outcomes were recorded."""
    ledger = _ledger()

    assert [entry.name for entry in ledger] == [
        "base-packages",
        "rust",
        "zsh",
        "zshrc",
        "git-config",
    ]
    assert "zsh" in ledger
    assert ledger.get("missing") is None
    assert [entry.name for entry in ledger.failures()] == ["rust", "zsh"]


def test_summary_counts_and_status() -> None:
    """Counts are split by kind and critical failures are named."""
    summary = _ledger().summary()

    assert summary.installed == 1
    assert summary.skipped == 2
    assert summary.failed == 1
    assert summary.critical_failures == ("zsh",)
    assert summary.failed_total == 2
    assert summary.status is RunStatus.FAILED
    assert summary.exit_code() == 4


def test_summary_degraded_without_critical_failures() -> None:
    """Only non-critical failures mean a degraded run."""
    ledger = Ledger()
    ledger.record("rust", Outcome.failed("boom", critical=False))
    ledger.record("zsh", Outcome.installed())

    summary = ledger.summary()

    assert summary.status is RunStatus.DEGRADED
    assert summary.exit_code() == int(ExitCode.PARTIAL)


def test_render_lists_failures_and_blocked_steps() -> None:
    """The report separates non-critical and critical failures."""
    report = _ledger().render()

    assert report.splitlines()[0] == (
        "Provisioning failed: installed=1 skipped=2 failed=1 critical=1"
    )
    assert "Failures:\n  - rust: curl not found" in report
    assert "CRITICAL FAILURES:\n  ! zsh: apt-get failed (exit 100)" in report
    assert "    blocked: zshrc" in report


def test_render_empty_ledger() -> None:
    """An empty ledger says so."""
    report = Ledger().render()

    assert report.startswith("Provisioning success:")
    assert "No steps were executed." in report


def test_to_payload_shape() -> None:
    """The payload carries a summary and one item per step."""
    payload = _ledger().to_payload()

    assert payload["summary"] == {
        "status": "failed",
        "installed": 1,
        "skipped": 2,
        "failed": 1,
        "critical_failures": ["zsh"],
    }
    assert payload["steps"][3] == {
        "name": "zshrc",
        "outcome": "skipped",
        "reason": "blocked by critical failure of 'zsh'",
        "blocked_by": "zsh",
    }
    assert payload["steps"][4] == {
        "name": "git-config",
        "outcome": "installed",
        "duration_ms": 5,
    }
