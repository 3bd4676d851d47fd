"""System package manager dispatch."""
from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from ..environment import PackageManager
from .commands import CommandError, CommandResult, CommandRunner

PACKAGE_DB_RESOURCE = "package-db"


class PackageManagerError(RuntimeError):
    """Raised when packages cannot be installed on this host."""


@dataclass(slots=True, frozen=True)
class ManagerCommands:
    """Command templates for one package manager."""

    install: tuple[str, ...]
    refresh: tuple[str, ...]
    refresh_ok_codes: frozenset[int] = frozenset({0})


MANAGER_COMMANDS: Mapping[PackageManager, ManagerCommands] = {
    PackageManager.APT: ManagerCommands(
        install=("apt-get", "install", "-y"),
        refresh=("apt-get", "update", "-y"),
    ),
    # check-update exits 100 when updates are available.
    PackageManager.DNF: ManagerCommands(
        install=("dnf", "install", "-y"),
        refresh=("dnf", "check-update"),
        refresh_ok_codes=frozenset({0, 100}),
    ),
    PackageManager.YUM: ManagerCommands(
        install=("yum", "install", "-y"),
        refresh=("yum", "check-update"),
        refresh_ok_codes=frozenset({0, 100}),
    ),
    PackageManager.PACMAN: ManagerCommands(
        install=("pacman", "-S", "--noconfirm", "--needed"),
        refresh=("pacman", "-Sy"),
    ),
    PackageManager.APK: ManagerCommands(
        install=("apk", "add"),
        refresh=("apk", "update"),
    ),
    PackageManager.ZYPPER: ManagerCommands(
        install=("zypper", "install", "-y"),
        refresh=("zypper", "refresh"),
    ),
}


@dataclass(slots=True)
class PackageManagerProvider:
    """Install packages through the detected system package manager."""

    manager: PackageManager
    runner: CommandRunner
    _refreshed: bool = field(default=False, init=False, repr=False)
    _refresh_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def available(self) -> bool:
        """Return ``True`` when a supported package manager was detected."""
        return self.manager in MANAGER_COMMANDS

    def commands(self) -> ManagerCommands:
        """Return the command templates for the detected manager."""
        try:
            return MANAGER_COMMANDS[self.manager]
        except KeyError:
            raise PackageManagerError(
                "No supported package manager detected; install packages manually."
            ) from None

    def refresh(self) -> CommandResult:
        """Refresh the package index."""
        commands = self.commands()
        try:
            result = self.runner.run(commands.refresh, privileged=True, check=False)
        except CommandError as exc:
            raise PackageManagerError(str(exc)) from exc
        if result.returncode not in commands.refresh_ok_codes:
            detail = result.stderr.strip() or result.stdout.strip() or "no output"
            raise PackageManagerError(
                f"Refreshing {self.manager.value} package index failed "
                f"(exit {result.returncode}): {detail}"
            )
        return result

    def ensure_refreshed(self) -> None:
        """Refresh the package index once per provider instance."""
        with self._refresh_lock:
            if self._refreshed:
                return
            self.refresh()
            self._refreshed = True

    def install(self, packages: Iterable[str]) -> CommandResult | None:
        """Install *packages*; returns ``None`` when nothing was requested."""
        names = [name for name in dict.fromkeys(packages) if name]
        if not names:
            return None
        commands = self.commands()
        self.ensure_refreshed()
        try:
            return self.runner.run([*commands.install, *names], privileged=True)
        except CommandError as exc:
            raise PackageManagerError(
                f"Installing {', '.join(names)} with {self.manager.value} failed: {exc}"
            ) from exc


__all__ = [
    "MANAGER_COMMANDS",
    "ManagerCommands",
    "PACKAGE_DB_RESOURCE",
    "PackageManagerError",
    "PackageManagerProvider",
]
