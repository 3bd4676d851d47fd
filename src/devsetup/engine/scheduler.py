"""Dependency-aware execution of provisioning steps."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..locking import WAIT_FOREVER
from .ledger import Ledger
from .models import (
    REASON_ALREADY_PRESENT,
    REASON_CANCELLED,
    REASON_DRY_RUN,
    Outcome,
    Step,
    StepState,
)
from .registry import ExecutionPlan

if TYPE_CHECKING:
    from ..environment import EnvironmentFacts
    from ..locking import LockManager

LOGGER = logging.getLogger(__name__)

OutcomeCallback = Callable[[str, Outcome], None]


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    if not message:
        return type(exc).__name__
    return message


@dataclass(slots=True, frozen=True)
class SchedulerOptions:
    """Runtime tunables for a provisioning run."""

    max_workers: int = 1
    dry_run: bool = False
    #: Seconds to wait for a resource lock. ``None`` waits until the holder is done.
    lock_timeout: float | None = None


class Scheduler:
    """Run an :class:`ExecutionPlan` and record every outcome in a :class:`Ledger`."""

    def __init__(
        self,
        *,
        options: SchedulerOptions | None = None,
        locks: LockManager | None = None,
        cancel_event: threading.Event | None = None,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        """Store collaborators; ``locks`` falls back to in-process locks."""
        self.options = options or SchedulerOptions()
        self.cancel_event = cancel_event or threading.Event()
        self._locks = locks
        self._on_outcome = on_outcome
        self._local_locks: dict[str, threading.Lock] = {}
        self._local_locks_guard = threading.Lock()
        self._states: dict[str, StepState] = {}
        self._states_guard = threading.Lock()

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once cancellation was requested."""
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Request cooperative cancellation; in-flight steps finish."""
        self.cancel_event.set()

    def state_of(self, name: str) -> StepState:
        """Return the lifecycle state of *name* in the current or last run."""
        with self._states_guard:
            return self._states.get(name, StepState.PENDING)

    def run(self, plan: ExecutionPlan, facts: EnvironmentFacts) -> Ledger:
        """Execute *plan* against *facts* and return the ledger."""
        with self._states_guard:
            self._states = {name: StepState.PENDING for name in plan.names}
        ledger = Ledger()
        LOGGER.debug(
            "Running %d step(s) with max_workers=%d dry_run=%s",
            len(plan),
            self.options.max_workers,
            self.options.dry_run,
        )
        if self.options.max_workers <= 1:
            self._run_sequential(plan, facts, ledger)
        else:
            self._run_parallel(plan, facts, ledger)
        return ledger

    # ------------------------------------------------------------------
    def _run_sequential(
        self,
        plan: ExecutionPlan,
        facts: EnvironmentFacts,
        ledger: Ledger,
    ) -> None:
        for step in plan:
            if self.cancelled:
                self._record(ledger, step, Outcome.skipped(REASON_CANCELLED))
                continue
            blocked = self._blocked_outcome(step, ledger)
            if blocked is not None:
                self._record(ledger, step, blocked)
                continue
            self._record(ledger, step, self._execute(step, facts))

    def _run_parallel(
        self,
        plan: ExecutionPlan,
        facts: EnvironmentFacts,
        ledger: Ledger,
    ) -> None:
        pending: list[Step] = list(plan)
        finished: set[str] = set()
        running: dict[concurrent.futures.Future[Outcome], Step] = {}
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.options.max_workers,
            thread_name_prefix="devsetup-step",
        ) as executor:
            while True:
                if self.cancelled:
                    for step in pending:
                        self._record(ledger, step, Outcome.skipped(REASON_CANCELLED))
                        finished.add(step.name)
                    pending = []

                waiting: list[Step] = []
                for step in pending:
                    # A step is only dispatched once every dependency is terminal
                    # and a worker is free; queued steps stay cancellable.
                    if len(running) >= self.options.max_workers or not all(
                        name in finished for name in step.depends_on
                    ):
                        waiting.append(step)
                        continue
                    blocked = self._blocked_outcome(step, ledger)
                    if blocked is not None:
                        self._record(ledger, step, blocked)
                        finished.add(step.name)
                        continue
                    running[executor.submit(self._execute, step, facts)] = step
                pending = waiting

                if not running:
                    break
                done, _ = concurrent.futures.wait(
                    running, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in done:
                    step = running.pop(future)
                    self._record(ledger, step, future.result())
                    finished.add(step.name)

        for step in pending:  # pragma: no cover - unreachable for a valid plan
            self._record(ledger, step, Outcome.skipped(REASON_CANCELLED))

    # ------------------------------------------------------------------
    def _blocked_outcome(self, step: Step, ledger: Ledger) -> Outcome | None:
        for dependency in step.depends_on:
            outcome = ledger.get(dependency)
            if outcome is None or not outcome.is_blocking:
                continue
            root = outcome.blocked_by or dependency
            reason = f"blocked by critical failure of '{root}'"
            if root != dependency:
                reason = f"{reason} (via '{dependency}')"
            return Outcome.skipped(reason, blocked_by=root)
        return None

    def _execute(self, step: Step, facts: EnvironmentFacts) -> Outcome:
        if self.cancelled:
            return Outcome.skipped(REASON_CANCELLED)
        start = time.perf_counter()
        try:
            satisfied = step.is_satisfied(facts)
        except Exception as exc:
            LOGGER.warning("Idempotency check for '%s' raised: %s", step.name, exc)
            return Outcome.failed(
                f"idempotency check failed: {_describe_error(exc)}",
                critical=step.critical,
                duration_ms=_duration_ms(start),
            )
        if satisfied:
            return Outcome.skipped(REASON_ALREADY_PRESENT)
        if self.options.dry_run:
            return Outcome.skipped(REASON_DRY_RUN)

        self._transition(step.name, None)
        try:
            with self._hold_resources(step.resources):
                step.apply(facts)
        except Exception as exc:
            LOGGER.debug("Step '%s' failed", step.name, exc_info=True)
            return Outcome.failed(
                _describe_error(exc),
                critical=step.critical,
                duration_ms=_duration_ms(start),
            )
        return Outcome.installed(duration_ms=_duration_ms(start))

    def _record(self, ledger: Ledger, step: Step, outcome: Outcome) -> None:
        ledger.record(step.name, outcome)
        self._transition(step.name, StepState.from_outcome(outcome.kind))
        LOGGER.info("%s: %s%s", step.name, outcome.kind.value, _reason_suffix(outcome))
        if self._on_outcome is not None:
            self._on_outcome(step.name, outcome)

    def _transition(self, name: str, state: StepState | None) -> None:
        with self._states_guard:
            current = self._states.get(name, StepState.PENDING)
            if current.is_terminal:
                raise RuntimeError(f"Step '{name}' already reached {current.value}.")
            if state is not None:
                self._states[name] = state

    @contextmanager
    def _hold_resources(self, names: Sequence[str]) -> Iterator[None]:
        if not names:
            yield
            return
        if self._locks is not None:
            timeout = self.options.lock_timeout
            if timeout is None:
                timeout = WAIT_FOREVER
            with self._locks.resources(names, timeout=timeout):
                yield
            return
        with ExitStack() as stack:
            for name in sorted(set(names)):
                lock = self._local_lock(name)
                lock.acquire()
                stack.callback(lock.release)
            yield

    def _local_lock(self, name: str) -> threading.Lock:
        with self._local_locks_guard:
            lock = self._local_locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._local_locks[name] = lock
            return lock


def _reason_suffix(outcome: Outcome) -> str:
    return f" ({outcome.reason})" if outcome.reason else ""


def run(
    plan: ExecutionPlan,
    facts: EnvironmentFacts,
    *,
    options: SchedulerOptions | None = None,
    locks: LockManager | None = None,
    cancel_event: threading.Event | None = None,
    on_outcome: OutcomeCallback | None = None,
) -> Ledger:
    """Execute *plan* with a throwaway :class:`Scheduler`."""
    scheduler = Scheduler(
        options=options,
        locks=locks,
        cancel_event=cancel_event,
        on_outcome=on_outcome,
    )
    return scheduler.run(plan, facts)


__all__ = ["OutcomeCallback", "Scheduler", "SchedulerOptions", "run"]
