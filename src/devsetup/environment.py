"""Host environment probe.

The probe inspects a handful of read-only host signals and condenses them into
an immutable :class:`EnvironmentFacts` value. It never raises: any signal that
cannot be resolved falls back to a sentinel (``unknown``/``none``/``other``)
and, where useful, a warning string the caller can surface.
"""
from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OS_RELEASE_PATH = Path("/etc/os-release")
PROC_VERSION_PATH = Path("/proc/version")
_SUDO_CHECK_TIMEOUT = 10


class OsFamily(str, Enum):
    """Operating system family of the host."""

    LINUX = "linux"
    WINDOWS_COMPAT = "windows_compat"
    UNKNOWN = "unknown"


class PackageManager(str, Enum):
    """System package manager available on the host."""

    APT = "apt"
    DNF = "dnf"
    YUM = "yum"
    PACMAN = "pacman"
    APK = "apk"
    ZYPPER = "zypper"
    NONE = "none"


class Architecture(str, Enum):
    """Normalised CPU architecture."""

    X86_64 = "x86_64"
    AARCH64 = "aarch64"
    OTHER = "other"


class SandboxKind(str, Enum):
    """How the Linux userland is hosted."""

    NATIVE = "native"
    VM_SUBSYSTEM = "vm_subsystem"
    COMPAT_LAYER = "compat_layer"


class Privilege(str, Enum):
    """How privileged commands can be executed."""

    ROOT = "root"
    SUDO = "sudo"
    NONE = "none"


PACKAGE_MANAGER_PRIORITY: tuple[tuple[str, PackageManager], ...] = (
    ("apt-get", PackageManager.APT),
    ("dnf", PackageManager.DNF),
    ("yum", PackageManager.YUM),
    ("pacman", PackageManager.PACMAN),
    ("apk", PackageManager.APK),
    ("zypper", PackageManager.ZYPPER),
)

_COMPAT_OSTYPES = ("msys", "cygwin", "win32")
_VM_MARKERS = ("microsoft", "wsl")
_ARCH_ALIASES: Mapping[str, Architecture] = {
    "x86_64": Architecture.X86_64,
    "amd64": Architecture.X86_64,
    "aarch64": Architecture.AARCH64,
    "arm64": Architecture.AARCH64,
}


@dataclass(slots=True, frozen=True)
class EnvironmentFacts:
    """Immutable description of the host, computed once per run."""

    os_family: OsFamily = OsFamily.UNKNOWN
    package_manager: PackageManager = PackageManager.NONE
    architecture: Architecture = Architecture.OTHER
    sandbox_kind: SandboxKind = SandboxKind.NATIVE
    distro: str = "unknown"
    distro_name: str = "unknown"
    privilege: Privilege = Privilege.NONE
    warnings: tuple[str, ...] = ()

    @property
    def needs_sudo(self) -> bool:
        """Return ``True`` when privileged commands must be prefixed with sudo."""
        return self.privilege is Privilege.SUDO

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable view of the facts."""
        return {
            "os_family": self.os_family.value,
            "package_manager": self.package_manager.value,
            "architecture": self.architecture.value,
            "sandbox_kind": self.sandbox_kind.value,
            "distro": self.distro,
            "distro_name": self.distro_name,
            "privilege": self.privilege.value,
            "warnings": list(self.warnings),
        }


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def _default_euid() -> int | None:
    geteuid = getattr(os, "geteuid", None)
    return geteuid() if geteuid is not None else None


def _sudo_without_password() -> bool:
    try:
        completed = subprocess.run(  # noqa: S603, S607
            ["sudo", "-n", "true"],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            check=False,
            timeout=_SUDO_CHECK_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return completed.returncode == 0


@dataclass(slots=True)
class HostSignals:
    """Raw host inputs consulted by :func:`probe`.

    Every field has a default reading the live host; tests substitute their own.
    """

    read_proc_version: Callable[[], str | None] = field(
        default=lambda: _read_text(PROC_VERSION_PATH)
    )
    ostype: str | None = field(default_factory=lambda: os.environ.get("OSTYPE"))
    machine: str = field(default_factory=platform.machine)
    os_release_path: Path = OS_RELEASE_PATH
    which: Callable[[str], str | None] = shutil.which
    euid: int | None = field(default_factory=_default_euid)
    sudo_ready: Callable[[], bool] = _sudo_without_password


def normalize_architecture(machine: str | None) -> Architecture:
    """Map a raw machine string onto :class:`Architecture`."""
    if not machine:
        return Architecture.OTHER
    return _ARCH_ALIASES.get(machine.strip().lower(), Architecture.OTHER)


def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``os-release`` style ``KEY=value`` lines."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        values[key.strip()] = value
    return values


def _is_compat_layer(ostype: str | None) -> bool:
    if not ostype:
        return False
    lowered = ostype.lower()
    return any(lowered.startswith(marker) for marker in _COMPAT_OSTYPES)


def _detect_privilege(signals: HostSignals, warnings: list[str]) -> Privilege:
    if signals.euid == 0:
        return Privilege.ROOT
    if not signals.which("sudo"):
        return Privilege.NONE
    if signals.sudo_ready():
        return Privilege.SUDO
    warnings.append(
        "sudo requires a password; privileged steps will fail. "
        "Run 'sudo -v' first or configure passwordless sudo."
    )
    return Privilege.NONE


def probe(signals: HostSignals | None = None) -> EnvironmentFacts:
    """Inspect the host and return its :class:`EnvironmentFacts`."""
    signals = signals or HostSignals()
    warnings: list[str] = []

    sandbox = SandboxKind.NATIVE
    try:
        kernel = signals.read_proc_version() or ""
    except OSError:
        kernel = ""
    if any(marker in kernel.lower() for marker in _VM_MARKERS):
        sandbox = SandboxKind.VM_SUBSYSTEM

    if _is_compat_layer(signals.ostype):
        LOGGER.debug("Compatibility layer detected (OSTYPE=%s)", signals.ostype)
        return EnvironmentFacts(
            os_family=OsFamily.WINDOWS_COMPAT,
            package_manager=PackageManager.NONE,
            sandbox_kind=SandboxKind.COMPAT_LAYER,
            privilege=Privilege.NONE,
        )

    architecture = normalize_architecture(signals.machine)

    distro = "unknown"
    distro_name = "unknown"
    os_family = OsFamily.UNKNOWN
    release_text = _read_text(signals.os_release_path)
    if release_text is None:
        warnings.append(
            f"Could not read {signals.os_release_path}; distribution is unknown."
        )
    else:
        os_family = OsFamily.LINUX
        release = parse_os_release(release_text)
        distro = release.get("ID") or "unknown"
        distro_name = release.get("NAME") or distro

    package_manager = PackageManager.NONE
    for executable, manager in PACKAGE_MANAGER_PRIORITY:
        try:
            found = signals.which(executable)
        except OSError:
            found = None
        if found:
            package_manager = manager
            break
    if package_manager is PackageManager.NONE:
        warnings.append("No supported package manager found.")
    if os_family is OsFamily.UNKNOWN and package_manager is not PackageManager.NONE:
        os_family = OsFamily.LINUX

    privilege = _detect_privilege(signals, warnings)
    facts = EnvironmentFacts(
        os_family=os_family,
        package_manager=package_manager,
        architecture=architecture,
        sandbox_kind=sandbox,
        distro=distro,
        distro_name=distro_name,
        privilege=privilege,
        warnings=tuple(warnings),
    )
    LOGGER.debug("Probed environment: %s", facts.to_dict())
    return facts


__all__ = [
    "Architecture",
    "EnvironmentFacts",
    "HostSignals",
    "OS_RELEASE_PATH",
    "OsFamily",
    "PACKAGE_MANAGER_PRIORITY",
    "PackageManager",
    "Privilege",
    "SandboxKind",
    "normalize_architecture",
    "parse_os_release",
    "probe",
]
