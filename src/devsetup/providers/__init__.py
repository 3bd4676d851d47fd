"""Provider interfaces for devsetup."""
from __future__ import annotations

from .commands import CommandError, CommandResult, CommandRunner
from .packages import (
    MANAGER_COMMANDS,
    PACKAGE_DB_RESOURCE,
    ManagerCommands,
    PackageManagerError,
    PackageManagerProvider,
)

__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "MANAGER_COMMANDS",
    "ManagerCommands",
    "PACKAGE_DB_RESOURCE",
    "PackageManagerError",
    "PackageManagerProvider",
]
