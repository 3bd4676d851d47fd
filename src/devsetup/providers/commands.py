"""External command invocation for provisioning actions."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_DIAGNOSTIC_TAIL_LINES = 20


class CommandError(RuntimeError):
    """Raised when an external command cannot be run or exits non-zero."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        """Store the exit status alongside the message."""
        super().__init__(message)
        self.returncode = returncode


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Outcome of a completed command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.returncode == 0


def _tail(text: str, lines: int = _DIAGNOSTIC_TAIL_LINES) -> str:
    stripped = text.strip()
    if not stripped:
        return ""
    return "\n".join(stripped.splitlines()[-lines:])


@dataclass(slots=True)
class CommandRunner:
    """Run external commands with optional sudo escalation and dry-run support."""

    use_sudo: bool = False
    dry_run: bool = False
    sudo_bin: str = "sudo"
    shell_bin: str = "/bin/sh"

    def which(self, name: str) -> str | None:
        """Return the absolute path of *name* on ``PATH`` or ``None``."""
        return shutil.which(name)

    def has(self, *names: str) -> bool:
        """Return ``True`` when every executable in *names* is available."""
        return all(self.which(name) for name in names)

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
        """Run *args* and return its :class:`CommandResult`.

        With ``shell=True`` *args* is a script passed to ``/bin/sh -c``. When
        ``privileged`` is set and the runner was told to use sudo, the command
        is prefixed with ``sudo -n`` so a password prompt fails fast instead
        of hanging. Commands never read from the terminal.
        """
        if shell:
            script = args if isinstance(args, str) else " ".join(args)
            command = [self.shell_bin, "-c", script]
        else:
            if isinstance(args, str):
                raise TypeError("String commands require shell=True.")
            command = list(args)
        if not command:
            raise CommandError("No command given.")
        if privileged and self.use_sudo:
            command = [self.sudo_bin, "-n", *command]

        display = " ".join(command)
        if self.dry_run:
            LOGGER.debug("dry run: %s", display)
            return CommandResult(args=tuple(command), returncode=0)

        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)

        LOGGER.debug("Running %s", display)
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                check=False,
                env=merged_env,
                cwd=str(cwd) if cwd is not None else None,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"{command[0]} not found: {exc}") from exc
        except OSError as exc:
            raise CommandError(f"{command[0]} could not be started: {exc}") from exc

        result = CommandResult(
            args=tuple(command),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if check and not result.ok:
            message = _tail(result.stderr) or _tail(result.stdout) or "no output"
            raise CommandError(
                f"{display} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
            )
        return result


__all__ = ["CommandError", "CommandResult", "CommandRunner"]
