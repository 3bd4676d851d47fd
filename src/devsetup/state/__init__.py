"""State management helpers for devsetup."""
from __future__ import annotations

from .registry import HISTORY_FILE, StateRegistry, StateRegistryError

__all__ = ["HISTORY_FILE", "StateRegistry", "StateRegistryError"]
