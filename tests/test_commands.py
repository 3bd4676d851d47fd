"""Tests for the external command runner."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from devsetup.providers.commands import CommandError, CommandRunner


class _Recorder:
    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.calls: list[dict[str, object]] = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    def __call__(self, command, **kwargs):
        self.calls.append({"command": command, **kwargs})
        return subprocess.CompletedProcess(command, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def recorder(monkeypatch: pytest.MonkeyPatch) -> _Recorder:
    fake = _Recorder(stdout="ok\n")
    monkeypatch.setattr("devsetup.providers.commands.subprocess.run", fake)
    return fake


def test_run_returns_result(recorder: _Recorder) -> None:
    """Successful commands return their output."""
    result = CommandRunner().run(["git", "--version"])

    assert result.ok
    assert result.stdout == "ok\n"
    assert recorder.calls[0]["command"] == ["git", "--version"]
    assert recorder.calls[0]["check"] is False
    assert recorder.calls[0]["env"] is None
    assert recorder.calls[0]["stdin"] is subprocess.DEVNULL


def test_privileged_commands_use_sudo(recorder: _Recorder) -> None:
    """Privileged commands use non-interactive sudo when configured."""
    CommandRunner(use_sudo=True).run(["apt-get", "update"], privileged=True)
    CommandRunner(use_sudo=True).run(["git", "pull"])
    CommandRunner(use_sudo=False).run(["apt-get", "update"], privileged=True)

    commands = [call["command"] for call in recorder.calls]
    assert commands == [
        ["sudo", "-n", "apt-get", "update"],
        ["git", "pull"],
        ["apt-get", "update"],
    ]


def test_shell_scripts_run_through_sh(recorder: _Recorder, tmp_path: Path) -> None:
    """Shell scripts are wrapped in ``sh -c`` and honour cwd and env."""
    CommandRunner().run(
        "curl -fsSL https://sh.rustup.rs | sh -s -- -y",
        shell=True,
        env={"RUSTUP_INIT_SKIP_PATH_CHECK": "yes"},
        cwd=tmp_path,
    )

    call = recorder.calls[0]
    assert call["command"] == ["/bin/sh", "-c", "curl -fsSL https://sh.rustup.rs | sh -s -- -y"]
    assert call["cwd"] == str(tmp_path)
    assert call["env"]["RUSTUP_INIT_SKIP_PATH_CHECK"] == "yes"
    assert "PATH" in call["env"]


def test_string_without_shell_rejected() -> None:
    """Plain strings are only accepted as shell scripts."""
    with pytest.raises(TypeError):
        CommandRunner().run("ls -la")


def test_empty_command_rejected() -> None:
    """An empty argument list is an error."""
    with pytest.raises(CommandError):
        CommandRunner().run([])


def test_non_zero_exit_raises_with_stderr_tail(monkeypatch: pytest.MonkeyPatch) -> None:
    """Failures surface the exit status and the end of stderr."""
    fake = _Recorder(returncode=100, stderr="E: Unable to locate package zsh\n")
    monkeypatch.setattr("devsetup.providers.commands.subprocess.run", fake)

    with pytest.raises(CommandError) as excinfo:
        CommandRunner().run(["apt-get", "install", "-y", "zsh"])

    assert excinfo.value.returncode == 100
    assert "exit 100" in str(excinfo.value)
    assert "Unable to locate package zsh" in str(excinfo.value)


def test_non_zero_exit_without_check(monkeypatch: pytest.MonkeyPatch) -> None:
    """``check=False`` hands back the failing result."""
    fake = _Recorder(returncode=1)
    monkeypatch.setattr("devsetup.providers.commands.subprocess.run", fake)

    result = CommandRunner().run(["git", "config", "--get", "user.name"], check=False)

    assert not result.ok
    assert result.returncode == 1


def test_missing_executable_raises_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing binary becomes a :class:`CommandError`."""

    def missing(command, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", command[0])

    monkeypatch.setattr("devsetup.providers.commands.subprocess.run", missing)

    with pytest.raises(CommandError, match="chsh not found"):
        CommandRunner().run(["chsh", "-s", "/usr/bin/zsh", "ada"])


def test_dry_run_does_not_execute(recorder: _Recorder) -> None:
    """Dry runs report success without spawning anything."""
    result = CommandRunner(dry_run=True, use_sudo=True).run(["apt-get", "update"], privileged=True)

    assert result.ok
    assert result.args == ("sudo", "-n", "apt-get", "update")
    assert recorder.calls == []


def test_has_requires_every_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    """``has`` is true only when all binaries resolve."""
    monkeypatch.setattr(
        "devsetup.providers.commands.shutil.which",
        lambda name: "/usr/bin/git" if name == "git" else None,
    )
    runner = CommandRunner()

    assert runner.has("git")
    assert not runner.has("git", "zsh")
    assert runner.which("zsh") is None


def test_sudo_password_prompt_fails_instead_of_waiting(monkeypatch: pytest.MonkeyPatch) -> None:
    """A sudo that wants a password fails with its message rather than blocking on input."""
    seen: dict[str, object] = {}

    def fake_run(command, **kwargs):
        seen.update(kwargs, command=command)
        return subprocess.CompletedProcess(
            command, 1, "", "sudo: a password is required\n"
        )

    monkeypatch.setattr("devsetup.providers.commands.subprocess.run", fake_run)

    with pytest.raises(CommandError, match="a password is required") as excinfo:
        CommandRunner(use_sudo=True).run(["apt-get", "install", "-y", "zsh"], privileged=True)

    assert excinfo.value.returncode == 1
    assert seen["command"][:2] == ["sudo", "-n"]
    assert seen["stdin"] is subprocess.DEVNULL
