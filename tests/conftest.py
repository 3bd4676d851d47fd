"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path

import pytest

from devsetup.actions import ActionContext
from devsetup.config import AppConfig, load_config
from devsetup.engine import Step
from devsetup.environment import (
    Architecture,
    EnvironmentFacts,
    OsFamily,
    PackageManager,
    Privilege,
    SandboxKind,
)
from devsetup.providers import (
    CommandError,
    CommandResult,
    CommandRunner,
    PackageManagerProvider,
)
from devsetup.templates import TemplateEngine


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def linux_facts() -> EnvironmentFacts:
    """Facts for a plain Debian-like x86_64 host with sudo."""
    return EnvironmentFacts(
        os_family=OsFamily.LINUX,
        package_manager=PackageManager.APT,
        architecture=Architecture.X86_64,
        sandbox_kind=SandboxKind.NATIVE,
        distro="debian",
        distro_name="Debian GNU/Linux",
        privilege=Privilege.SUDO,
    )


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted entirely under ``tmp_path``."""
    home = tmp_path / "home"
    home.mkdir()
    return load_config(
        config_file=tmp_path / "missing-config.yml",
        env={},
        overrides={
            "home": str(home),
            "state_dir": str(tmp_path / "state"),
            "backup_dir": str(tmp_path / "backups"),
            "templates_dir": str(tmp_path / "templates"),
            "git": {"name": "Ada Lovelace", "email": "ada@example.com"},
        },
    )


StepFactory = Callable[..., Step]


@pytest.fixture
def make_step() -> StepFactory:
    """Build steps whose predicate and action are recorded into ``calls``."""

    def factory(
        name: str,
        *,
        depends_on: Iterable[str] = (),
        critical: bool = False,
        satisfied: bool = False,
        fails: bool = False,
        calls: list[str] | None = None,
        tags: Iterable[str] = (),
        resources: Iterable[str] = (),
    ) -> Step:
        def is_satisfied(facts: EnvironmentFacts) -> bool:
            if calls is not None:
                calls.append(f"check:{name}")
            return satisfied

        def apply(facts: EnvironmentFacts) -> None:
            if calls is not None:
                calls.append(f"apply:{name}")
            if fails:
                raise RuntimeError(f"{name} exploded")

        return Step(
            name=name,
            is_satisfied=is_satisfied,
            apply=apply,
            depends_on=tuple(depends_on),
            critical=critical,
            tags=frozenset(tags),
            resources=tuple(resources),
        )

    return factory


class FakeRunner(CommandRunner):
    """Command runner that records invocations instead of spawning processes.

    ``available`` maps executable names to paths for :meth:`which`. Responses
    are matched by command prefix; unmatched commands succeed silently.
    """

    def __init__(self) -> None:
        super().__init__()
        self.available: dict[str, str] = {}
        self.calls: list[dict[str, object]] = []
        self._responses: list[tuple[tuple[str, ...], CommandResult | Exception]] = []

    def install(self, *names: str) -> None:
        for name in names:
            self.available[name] = f"/usr/bin/{name}"

    def respond(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        error: Exception | None = None,
    ) -> None:
        response: CommandResult | Exception
        if error is not None:
            response = error
        else:
            response = CommandResult(args=prefix, returncode=returncode, stdout=stdout)
        self._responses.insert(0, (tuple(prefix), response))

    def which(self, name: str) -> str | None:
        return self.available.get(name)

    def run(
        self,
        args: Sequence[str] | str,
        *,
        privileged: bool = False,
        shell: bool = False,
        check: bool = True,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> CommandResult:
        command = (args,) if isinstance(args, str) else tuple(args)
        self.calls.append(
            {
                "command": command,
                "privileged": privileged,
                "shell": shell,
                "env": dict(env) if env else None,
                "cwd": cwd,
            }
        )
        for prefix, response in self._responses:
            if command[: len(prefix)] == prefix:
                if isinstance(response, Exception):
                    raise response
                if check and not response.ok:
                    raise CommandError(
                        f"{' '.join(command)} failed (exit {response.returncode})",
                        returncode=response.returncode,
                    )
                return response
        return CommandResult(args=command, returncode=0)

    @property
    def commands(self) -> list[tuple[str, ...]]:
        return [call["command"] for call in self.calls]  # type: ignore[misc]


@pytest.fixture
def fake_runner() -> FakeRunner:
    """A recording command runner with nothing installed."""
    return FakeRunner()


@pytest.fixture
def action_context(app_config: AppConfig, fake_runner: FakeRunner) -> ActionContext:
    """Action context wired to the fake runner and built-in templates."""
    return ActionContext(
        config=app_config,
        runner=fake_runner,
        packages=PackageManagerProvider(PackageManager.APT, fake_runner),
        templates=TemplateEngine.with_overrides(None),
        variables={
            "home": str(app_config.home),
            "git": {"name": "Ada Lovelace", "email": "ada@example.com"},
        },
        backup_stamp="20240101-000000",
        login_shell=lambda: "/bin/bash",
        user=lambda: "ada",
    )
