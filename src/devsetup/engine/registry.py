"""Step registration and dependency ordering."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Iterator, Mapping, Sequence

from .models import (
    CyclicDependencyError,
    DuplicateStepError,
    Step,
    StepConfigError,
    UnknownDependencyError,
)


class ExecutionPlan:
    """Immutable, dependency-ordered set of steps ready for scheduling."""

    def __init__(self, steps: Sequence[Step]) -> None:
        """Store *steps*, which must already be topologically ordered."""
        self._steps: tuple[Step, ...] = tuple(steps)
        self._by_name: dict[str, Step] = {step.name: step for step in self._steps}
        dependents: dict[str, list[str]] = {step.name: [] for step in self._steps}
        for step in self._steps:
            for dependency in step.depends_on:
                dependents[dependency].append(step.name)
        self._dependents = {name: tuple(names) for name, names in dependents.items()}

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def steps(self) -> tuple[Step, ...]:
        """Return the steps in execution order."""
        return self._steps

    @property
    def names(self) -> tuple[str, ...]:
        """Return step names in execution order."""
        return tuple(step.name for step in self._steps)

    def get(self, name: str) -> Step:
        """Return the step called *name*."""
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"No step named '{name}' in plan") from None

    def dependents_of(self, name: str) -> tuple[str, ...]:
        """Return the steps that directly depend on *name*."""
        return self._dependents.get(name, ())

    def select(
        self,
        *,
        names: Iterable[str] | None = None,
        tags: Iterable[str] | None = None,
    ) -> ExecutionPlan:
        """Return a sub-plan with the chosen steps and everything they need.

        Steps are chosen by name or by tag (union of both). Dependencies are
        followed transitively so the sub-plan is always closed.
        """
        wanted_names = set(names or ())
        wanted_tags = set(tags or ())
        unknown = sorted(wanted_names - set(self._by_name))
        if unknown:
            raise KeyError(f"Unknown step(s): {', '.join(unknown)}")

        selected: set[str] = set()
        stack = [
            step.name
            for step in self._steps
            if step.name in wanted_names or (step.tags & wanted_tags)
        ]
        while stack:
            name = stack.pop()
            if name in selected:
                continue
            selected.add(name)
            stack.extend(self._by_name[name].depends_on)
        return ExecutionPlan([step for step in self._steps if step.name in selected])


class StepRegistry:
    """Mapping from step name to :class:`Step`, validated on :meth:`build`."""

    def __init__(self, steps: Iterable[Step] | None = None) -> None:
        """Create a registry, optionally pre-populated with *steps*."""
        self._steps: dict[str, Step] = {}
        for step in steps or ():
            self.register(step)

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    @property
    def steps(self) -> Mapping[str, Step]:
        """Return registered steps keyed by name, in registration order."""
        return dict(self._steps)

    def register(self, step: Step) -> None:
        """Add *step*; dependencies are resolved later by :meth:`build`."""
        if step.name in self._steps:
            raise DuplicateStepError(step.name)
        self._steps[step.name] = step

    def validate(self) -> None:
        """Raise :class:`UnknownDependencyError` for unresolved dependencies."""
        for step in self._steps.values():
            missing = [name for name in step.depends_on if name not in self._steps]
            if missing:
                raise UnknownDependencyError(step.name, missing)

    def build(self) -> ExecutionPlan:
        """Validate the graph and return it in dependency order."""
        self.validate()
        return ExecutionPlan(topological_order(list(self._steps.values())))


def topological_order(steps: Sequence[Step]) -> list[Step]:
    """Order *steps* so dependencies come first, ties by input position."""
    index = {step.name: position for position, step in enumerate(steps)}
    if len(index) != len(steps):
        raise StepConfigError("Step names must be unique.")
    indegree = {step.name: len(step.depends_on) for step in steps}
    dependents: dict[str, list[str]] = {step.name: [] for step in steps}
    for step in steps:
        for dependency in step.depends_on:
            dependents[dependency].append(step.name)

    ready = [index[name] for name, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[Step] = []
    while ready:
        step = steps[heapq.heappop(ready)]
        ordered.append(step)
        for dependent in dependents[step.name]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, index[dependent])

    if len(ordered) != len(steps):
        remaining = {name for name, degree in indegree.items() if degree > 0}
        raise CyclicDependencyError(_cycle_members(steps, remaining))
    return ordered


def _cycle_members(steps: Sequence[Step], remaining: set[str]) -> list[str]:
    # Steps left over after Kahn's pass sit on a cycle or downstream of one;
    # peel off the downstream ones until only cycle members remain.
    by_name = {step.name: step for step in steps}
    members = set(remaining)
    changed = True
    while changed:
        changed = False
        for name in list(members):
            feeds_member = any(
                name in by_name[other].depends_on for other in members if other != name
            )
            self_loop = name in by_name[name].depends_on
            if not feeds_member and not self_loop:
                members.discard(name)
                changed = True
    return [step.name for step in steps if step.name in members]


__all__ = ["ExecutionPlan", "StepRegistry", "topological_order"]
