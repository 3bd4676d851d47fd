"""Action factories turning catalog entries into step callables.

Each factory returns an :class:`Action`: a fast ``is_satisfied`` check and an
``apply`` callable that performs the change and raises on failure. Files that
an action overwrites are copied into ``<backup_dir>/<timestamp>/`` first.
"""
from __future__ import annotations

import getpass
import logging
import os
import shutil
import tempfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

from .engine.models import ApplyAction, SatisfiedCheck
from .providers.commands import CommandError, CommandRunner
from .providers.packages import PackageManagerError, PackageManagerProvider
from .templates import TemplateEngine, write_if_changed

if os.name == "posix":
    import pwd
else:  # pragma: no cover - Windows hosts
    pwd = None

if TYPE_CHECKING:
    from .config import AppConfig
    from .environment import EnvironmentFacts

LOGGER = logging.getLogger(__name__)

AUTOLAUNCH_TEMPLATE = "bash/zsh-autolaunch.j2"


class ActionError(RuntimeError):
    """Raised when an action cannot complete."""


class Action(NamedTuple):
    """The ``(is_satisfied, apply)`` pair backing a step."""

    is_satisfied: SatisfiedCheck
    apply: ApplyAction


def _timestamp() -> str:
    return datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")


def current_login_shell() -> str | None:
    """Return the login shell from the password database or ``$SHELL``."""
    if pwd is None:  # pragma: no cover - non-POSIX hosts
        return os.environ.get("SHELL")
    try:
        return pwd.getpwuid(os.getuid()).pw_shell or os.environ.get("SHELL")
    except KeyError:
        return os.environ.get("SHELL")


@dataclass(slots=True)
class ActionContext:
    """Collaborators and render variables shared by every action of a run."""

    config: AppConfig
    runner: CommandRunner
    packages: PackageManagerProvider
    templates: TemplateEngine
    variables: Mapping[str, object] = field(default_factory=dict)
    base_dir: Path = Path(".")
    backup_stamp: str = field(default_factory=_timestamp)
    login_shell: Callable[[], str | None] = current_login_shell
    user: Callable[[], str] = getpass.getuser

    @property
    def home(self) -> Path:
        """Return the home directory actions operate on."""
        return self.config.home

    @property
    def backup_root(self) -> Path:
        """Return the backup directory used for this run."""
        return self.config.backup_dir / self.backup_stamp

    def render(self, value: object) -> object:
        """Render every string inside *value* with the context variables."""
        if isinstance(value, str):
            if "{" not in value:
                return value
            return self.templates.render_text(value, self.variables)
        if isinstance(value, Mapping):
            return {key: self.render(item) for key, item in value.items()}
        if isinstance(value, list | tuple):
            return [self.render(item) for item in value]
        return value

    def render_str(self, value: str) -> str:
        """Render a single string."""
        return str(self.render(value))

    def resolve_path(self, raw: str) -> Path:
        """Render *raw* and anchor it under the catalog directory when relative."""
        path = Path(self.render_str(raw)).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    def backup(self, path: Path) -> Path | None:
        """Copy *path* into the run's backup directory; ``None`` if absent."""
        if not path.is_file():
            return None
        try:
            relative = path.relative_to(self.home)
        except ValueError:
            relative = Path(path.name)
        target = self.backup_root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, target)
        LOGGER.info("Backed up %s to %s", path, target)
        return target


def _write_bytes_atomic(destination: Path, data: bytes, mode: int | None) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(data)
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def package_action(
    ctx: ActionContext,
    *,
    packages: Sequence[str],
    binaries: Sequence[str] = (),
) -> Action:
    """Install *packages* unless every binary is already on ``PATH``."""
    probes = tuple(binaries) or tuple(packages)

    def is_satisfied(facts: EnvironmentFacts) -> bool:
        return bool(probes) and ctx.runner.has(*probes)

    def apply(facts: EnvironmentFacts) -> None:
        if not packages:
            raise PackageManagerError(
                f"No package list for package manager '{facts.package_manager.value}'."
            )
        ctx.packages.install(packages)

    return Action(is_satisfied, apply)


def command_action(
    ctx: ActionContext,
    *,
    script: str,
    binaries: Sequence[str] = (),
    creates: str | None = None,
    privileged: bool = False,
    env: Mapping[str, str] | None = None,
) -> Action:
    """Run a shell *script* unless its binaries or ``creates`` path exist."""

    def is_satisfied(facts: EnvironmentFacts) -> bool:
        if creates is not None and ctx.resolve_path(creates).exists():
            return True
        return bool(binaries) and ctx.runner.has(*binaries)

    def apply(facts: EnvironmentFacts) -> None:
        rendered_env = {key: ctx.render_str(value) for key, value in (env or {}).items()}
        ctx.runner.run(
            ctx.render_str(script),
            shell=True,
            privileged=privileged,
            env=rendered_env or None,
            cwd=ctx.home,
        )

    return Action(is_satisfied, apply)


def git_clone_action(
    ctx: ActionContext,
    *,
    repository: str,
    destination: str,
    depth: int | None = 1,
) -> Action:
    """Clone *repository* into *destination* unless it already exists."""

    def is_satisfied(facts: EnvironmentFacts) -> bool:
        return ctx.resolve_path(destination).exists()

    def apply(facts: EnvironmentFacts) -> None:
        target = ctx.resolve_path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        args = ["git", "clone"]
        if depth:
            args.extend(["--depth", str(depth)])
        args.extend([ctx.render_str(repository), str(target)])
        ctx.runner.run(args)

    return Action(is_satisfied, apply)


def template_action(
    ctx: ActionContext,
    *,
    template: str,
    destination: str,
    context: Mapping[str, object] | None = None,
    mode: int = 0o644,
) -> Action:
    """Render *template* into *destination*, backing up the previous file."""

    def _render_context(facts: EnvironmentFacts) -> dict[str, object]:
        values: dict[str, object] = dict(ctx.variables)
        values["package_manager"] = facts.package_manager.value
        rendered = ctx.render(dict(context or {}))
        if isinstance(rendered, Mapping):
            values.update(rendered)
        return values

    def is_satisfied(facts: EnvironmentFacts) -> bool:
        target = ctx.resolve_path(destination)
        if not target.is_file():
            return False
        rendered = ctx.templates.render_to_string(template, _render_context(facts))
        return target.read_text(encoding="utf-8") == rendered

    def apply(facts: EnvironmentFacts) -> None:
        target = ctx.resolve_path(destination)
        rendered = ctx.templates.render_to_string(template, _render_context(facts))
        ctx.backup(target)
        write_if_changed(target, rendered, mode=mode)

    return Action(is_satisfied, apply)


def file_copy_action(
    ctx: ActionContext,
    *,
    source: str,
    destination: str,
    mode: int | None = None,
) -> Action:
    """Copy a shipped file into place, backing up what it replaces."""

    def is_satisfied(facts: EnvironmentFacts) -> bool:
        src = ctx.resolve_path(source)
        target = ctx.resolve_path(destination)
        if not src.is_file() or not target.is_file():
            return False
        return src.read_bytes() == target.read_bytes()

    def apply(facts: EnvironmentFacts) -> None:
        src = ctx.resolve_path(source)
        if not src.is_file():
            raise ActionError(f"Source file {src} does not exist.")
        target = ctx.resolve_path(destination)
        ctx.backup(target)
        _write_bytes_atomic(target, src.read_bytes(), mode)

    return Action(is_satisfied, apply)


def default_shell_action(
    ctx: ActionContext,
    *,
    shell: str,
    fallback_rc: str,
) -> Action:
    """Make *shell* the login shell, or auto-launch it from *fallback_rc*."""
    marker = f"exec {shell}"

    def _fallback_present() -> bool:
        rc = ctx.resolve_path(fallback_rc)
        try:
            return marker in rc.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False

    def is_satisfied(facts: EnvironmentFacts) -> bool:
        current = ctx.login_shell()
        if current and Path(current).name == shell:
            return True
        return _fallback_present()

    def apply(facts: EnvironmentFacts) -> None:
        shell_path = ctx.runner.which(shell)
        if shell_path is None:
            raise ActionError(f"{shell} is not installed; cannot make it the default shell.")
        try:
            ctx.runner.run(["chsh", "-s", shell_path, ctx.user()], privileged=True)
            return
        except CommandError as exc:
            LOGGER.warning("chsh failed (%s); falling back to %s", exc, fallback_rc)

        rc = ctx.resolve_path(fallback_rc)
        snippet = ctx.templates.render_to_string(
            AUTOLAUNCH_TEMPLATE,
            {"shell": shell, "shell_path": shell_path, "marker": marker},
        )
        ctx.backup(rc)
        rc.parent.mkdir(parents=True, exist_ok=True)
        with rc.open("a", encoding="utf-8") as handle:
            handle.write(snippet)

    return Action(is_satisfied, apply)


def git_config_action(
    ctx: ActionContext,
    *,
    settings: Mapping[str, str],
) -> Action:
    """Apply global git settings; entries rendering to an empty value are ignored."""

    def _wanted() -> dict[str, str]:
        rendered = {key: ctx.render_str(str(value)) for key, value in settings.items()}
        return {key: value for key, value in rendered.items() if value.strip()}

    def is_satisfied(facts: EnvironmentFacts) -> bool:
        for key, value in _wanted().items():
            try:
                result = ctx.runner.run(["git", "config", "--global", "--get", key], check=False)
            except CommandError:
                return False
            if result.stdout.strip() != value:
                return False
        return True

    def apply(facts: EnvironmentFacts) -> None:
        wanted = _wanted()
        skipped = sorted(set(settings) - set(wanted))
        if skipped:
            LOGGER.info("No value configured for git setting(s): %s", ", ".join(skipped))
        for key, value in wanted.items():
            ctx.runner.run(["git", "config", "--global", key, value])

    return Action(is_satisfied, apply)


__all__ = [
    "AUTOLAUNCH_TEMPLATE",
    "Action",
    "ActionContext",
    "ActionError",
    "command_action",
    "current_login_shell",
    "default_shell_action",
    "file_copy_action",
    "git_clone_action",
    "git_config_action",
    "package_action",
    "template_action",
]
