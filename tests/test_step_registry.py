"""Tests for step registration and dependency ordering."""
from __future__ import annotations

import pytest

from devsetup.engine import (
    CyclicDependencyError,
    DuplicateStepError,
    StepConfigError,
    StepRegistry,
    UnknownDependencyError,
    topological_order,
)


def test_build_orders_dependencies_first(make_step) -> None:
    """Dependencies run before dependants regardless of registration order."""
    registry = StepRegistry(
        [
            make_step("zshrc", depends_on=["zsh", "starship"]),
            make_step("starship", depends_on=["rust"]),
            make_step("zsh"),
            make_step("rust"),
        ]
    )

    plan = registry.build()
    order = plan.names

    assert set(order) == {"zshrc", "starship", "zsh", "rust"}
    assert order.index("rust") < order.index("starship")
    assert order.index("starship") < order.index("zshrc")
    assert order.index("zsh") < order.index("zshrc")


def test_ties_follow_registration_order(make_step) -> None:
    """Independent steps keep the order in which they were registered."""
    registry = StepRegistry([make_step("c"), make_step("a"), make_step("b")])

    assert registry.build().names == ("c", "a", "b")


def test_duplicate_name_rejected(make_step) -> None:
    """Registering the same name twice raises."""
    registry = StepRegistry([make_step("zsh")])

    with pytest.raises(DuplicateStepError) as excinfo:
        registry.register(make_step("zsh"))

    assert excinfo.value.name == "zsh"


def test_forward_references_resolve_at_build(make_step) -> None:
    """A step may name a dependency that is registered later."""
    registry = StepRegistry()
    registry.register(make_step("fzf", depends_on=["fzf-repo"]))
    registry.register(make_step("fzf-repo"))

    assert registry.build().names == ("fzf-repo", "fzf")


def test_unknown_dependency_reported(make_step) -> None:
    """Missing dependencies are reported with the offending step."""
    registry = StepRegistry([make_step("zshrc", depends_on=["zsh", "omz"])])

    with pytest.raises(UnknownDependencyError) as excinfo:
        registry.build()

    assert excinfo.value.step == "zshrc"
    assert excinfo.value.missing == ("zsh", "omz")


def test_cycle_reports_members_only(make_step) -> None:
    """Only the steps on the cycle are named, not their dependants."""
    registry = StepRegistry(
        [
            make_step("a", depends_on=["b"]),
            make_step("b", depends_on=["a"]),
            make_step("c", depends_on=["a"]),
            make_step("d"),
        ]
    )

    with pytest.raises(CyclicDependencyError) as excinfo:
        registry.build()

    assert set(excinfo.value.members) == {"a", "b"}


def test_self_dependency_is_a_cycle(make_step) -> None:
    """A step depending on itself is a cycle of one."""
    registry = StepRegistry([make_step("loop", depends_on=["loop"])])

    with pytest.raises(CyclicDependencyError) as excinfo:
        registry.build()

    assert excinfo.value.members == ("loop",)


def test_empty_registry_builds_empty_plan() -> None:
    """An empty registry yields an empty plan."""
    plan = StepRegistry().build()

    assert len(plan) == 0
    assert plan.names == ()


def test_empty_step_name_rejected(make_step) -> None:
    """Steps must carry a name."""
    with pytest.raises(StepConfigError):
        make_step("  ")


def test_topological_order_rejects_duplicate_names(make_step) -> None:
    """The ordering helper refuses duplicate names."""
    with pytest.raises(StepConfigError):
        topological_order([make_step("a"), make_step("a")])


def test_select_pulls_in_transitive_dependencies(make_step) -> None:
    """Selecting a step keeps everything it needs, in plan order."""
    plan = StepRegistry(
        [
            make_step("rust"),
            make_step("starship", depends_on=["rust"]),
            make_step("theme", depends_on=["starship"], tags=["config"]),
            make_step("zsh"),
        ]
    ).build()

    subset = plan.select(names=["theme"])

    assert subset.names == ("rust", "starship", "theme")
    assert "zsh" not in subset


def test_select_by_tag(make_step) -> None:
    """Tags select every step carrying them."""
    plan = StepRegistry(
        [
            make_step("zsh", tags=["shell"]),
            make_step("zshrc", depends_on=["zsh"], tags=["config"]),
            make_step("gitconfig", tags=["config"]),
            make_step("go"),
        ]
    ).build()

    subset = plan.select(tags=["config"])

    assert subset.names == ("zsh", "zshrc", "gitconfig")


def test_select_unknown_name_raises(make_step) -> None:
    """Unknown names are rejected rather than silently ignored."""
    plan = StepRegistry([make_step("zsh")]).build()

    with pytest.raises(KeyError):
        plan.select(names=["fish"])


def test_dependents_of(make_step) -> None:
    """Direct dependants are indexed per step."""
    plan = StepRegistry(
        [
            make_step("zsh"),
            make_step("zshrc", depends_on=["zsh"]),
            make_step("default-shell", depends_on=["zsh"]),
        ]
    ).build()

    assert plan.dependents_of("zsh") == ("zshrc", "default-shell")
    assert plan.dependents_of("zshrc") == ()
    assert plan.get("zsh").name == "zsh"
    with pytest.raises(KeyError):
        plan.get("fish")
