"""Tests for package manager dispatch."""
from __future__ import annotations

from collections.abc import Sequence

import pytest

from devsetup.environment import PackageManager
from devsetup.providers import (
    CommandError,
    CommandResult,
    CommandRunner,
    PackageManagerError,
    PackageManagerProvider,
)


class FakeRunner(CommandRunner):
    """Runner returning scripted exit codes per command name."""

    def __init__(self, codes: dict[str, int] | None = None) -> None:
        super().__init__(use_sudo=True)
        self.codes = codes or {}
        self.calls: list[tuple[tuple[str, ...], bool]] = []

    def run(
        self,
        args: Sequence[str] | str,
        *,
        privileged: bool = False,
        check: bool = True,
        **kwargs,
    ):
        command = tuple(args)
        self.calls.append((command, privileged))
        code = self.codes.get(" ".join(command[:2]), 0)
        if check and code != 0:
            raise CommandError(f"{' '.join(command)} failed (exit {code})", returncode=code)
        return CommandResult(args=command, returncode=code, stderr="boom" if code else "")


def test_install_refreshes_once_then_installs() -> None:
    """The index is refreshed before the first install only."""
    runner = FakeRunner()
    provider = PackageManagerProvider(PackageManager.APT, runner)

    provider.install(["zsh", "git", "zsh"])
    provider.install(["curl"])

    assert runner.calls == [
        (("apt-get", "update", "-y"), True),
        (("apt-get", "install", "-y", "zsh", "git"), True),
        (("apt-get", "install", "-y", "curl"), True),
    ]


def test_install_nothing_is_a_noop() -> None:
    """Empty package lists do not touch the package manager."""
    runner = FakeRunner()
    provider = PackageManagerProvider(PackageManager.PACMAN, runner)

    assert provider.install([]) is None
    assert runner.calls == []


def test_dnf_check_update_exit_100_is_success() -> None:
    """``dnf check-update`` exits 100 when updates exist."""
    runner = FakeRunner({"dnf check-update": 100})
    provider = PackageManagerProvider(PackageManager.DNF, runner)

    provider.install(["zsh"])

    assert runner.calls[-1] == (("dnf", "install", "-y", "zsh"), True)


def test_refresh_failure_raises() -> None:
    """Unexpected refresh exit codes are reported."""
    runner = FakeRunner({"apt-get update": 100})
    provider = PackageManagerProvider(PackageManager.APT, runner)

    with pytest.raises(PackageManagerError, match="exit 100"):
        provider.refresh()


def test_install_failure_wraps_command_error() -> None:
    """Install failures name the packages and the manager."""
    runner = FakeRunner({"apk add": 1})
    provider = PackageManagerProvider(PackageManager.APK, runner)

    with pytest.raises(PackageManagerError, match="Installing zsh with apk failed"):
        provider.install(["zsh"])


def test_unsupported_manager() -> None:
    """Hosts without a package manager cannot install packages."""
    provider = PackageManagerProvider(PackageManager.NONE, FakeRunner())

    assert not provider.available
    with pytest.raises(PackageManagerError):
        provider.install(["zsh"])


@pytest.mark.parametrize(
    ("manager", "expected"),
    [
        (PackageManager.YUM, ("yum", "install", "-y", "zsh")),
        (PackageManager.PACMAN, ("pacman", "-S", "--noconfirm", "--needed", "zsh")),
        (PackageManager.ZYPPER, ("zypper", "install", "-y", "zsh")),
    ],
)
def test_install_commands_per_manager(manager: PackageManager, expected: tuple[str, ...]) -> None:
    """Each manager uses its own install command."""
    runner = FakeRunner()
    PackageManagerProvider(manager, runner).install(["zsh"])

    assert runner.calls[-1] == (expected, True)
