"""Helpers for the devsetup state directory.

The state directory (``~/.local/state/devsetup`` by default) stores YAML
artifacts, currently ``history.yml`` with the most recent provisioning runs.
Files are written atomically so an interrupted run never leaves a truncated
document behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

HISTORY_FILE = "history.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML state files."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the state directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named state file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a state file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse state file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given state file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o600)
        finally:
            tmp_path.unlink(missing_ok=True)

    # History helpers -------------------------------------------------
    def read_history(self) -> list[dict[str, Any]]:
        """Return recorded runs, oldest first."""
        value = self.read(HISTORY_FILE, default={"runs": []})
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"{HISTORY_FILE} must contain a mapping.")
        runs = value.get("runs", [])
        if not isinstance(runs, list):
            raise StateRegistryError(f"{HISTORY_FILE} 'runs' must be a list.")
        return [dict(entry) for entry in runs if isinstance(entry, Mapping)]

    def append_history(
        self,
        payload: Mapping[str, object],
        *,
        limit: int = 20,
        timestamp: datetime | None = None,
    ) -> dict[str, Any]:
        """Record a run payload, keeping only the newest *limit* entries."""
        entry: dict[str, Any] = {
            "timestamp": (timestamp or datetime.now(tz=UTC)).isoformat(timespec="seconds"),
        }
        entry.update(deepcopy(dict(payload)))
        runs = self.read_history()
        runs.append(entry)
        if limit > 0:
            runs = runs[-limit:]
        else:
            runs = []
        self.write(HISTORY_FILE, {"runs": runs})
        return entry


__all__ = ["HISTORY_FILE", "StateRegistry", "StateRegistryError"]
