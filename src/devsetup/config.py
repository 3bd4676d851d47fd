"""Layered configuration for devsetup.

Sources, lowest precedence first:

1. Built-in :data:`DEFAULTS`.
2. The YAML config file, ``~/.config/devsetup/config.yml`` unless
   ``--config-file`` or ``DEVSETUP_CONFIG_FILE`` point elsewhere.
3. ``DEVSETUP_*`` environment variables. A double underscore spells a nested
   key::

       export DEVSETUP_MAX_WORKERS=4
       export DEVSETUP_RUN__DRY_RUN=true

4. Programmatic overrides (CLI flags).

Environment values pass through ``yaml.safe_load`` so ``true`` and ``4``
arrive as a boolean and an integer. The merged result is validated once and
frozen into :class:`AppConfig`.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

ENV_PREFIX = "DEVSETUP_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
DEFAULT_CONFIG_FILE = "~/.config/devsetup/config.yml"
SHELLS = ("bash", "fish", "zsh")
#: Optional catalog steps enabled unless ``features`` is overridden.
DEFAULT_FEATURES = ("extra-tools", "neovim", "nerd-fonts", "utility-scripts")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RunConfig:
    """Defaults applied to ``devsetup run``."""

    dry_run: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"dry_run": self.dry_run}


@dataclass(frozen=True)
class GitConfig:
    """Identity written by the git configuration step."""

    name: str | None = None
    email: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "email": self.email}


@dataclass(frozen=True)
class ShellConfig:
    """Login shell preferences."""

    target: str = "zsh"
    set_default: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"target": self.target, "set_default": self.set_default}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for devsetup."""

    config_file: Path
    home: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    backup_dir: Path
    templates_dir: Path
    catalog_file: Path | None
    lock_timeout: float
    max_workers: int
    history_limit: int
    features: frozenset[str]
    run: RunConfig
    git: GitConfig
    shell: ShellConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        paths = ("config_file", "home", "state_dir", "logs_dir", "runtime_dir")
        data: dict[str, object] = {name: str(getattr(self, name)) for name in paths}
        data.update(
            {
                "backup_dir": str(self.backup_dir),
                "templates_dir": str(self.templates_dir),
                "catalog_file": str(self.catalog_file) if self.catalog_file else None,
                "lock_timeout": self.lock_timeout,
                "max_workers": self.max_workers,
                "history_limit": self.history_limit,
                "features": sorted(self.features),
                "run": self.run.to_dict(),
                "git": self.git.to_dict(),
                "shell": self.shell.to_dict(),
            }
        )
        return data


DEFAULTS: dict[str, object] = {
    "home": "~",
    "state_dir": "~/.local/state/devsetup",
    "logs_dir": None,  # <state_dir>/logs
    "runtime_dir": None,  # <state_dir>/run
    "backup_dir": "~/.config-backups",
    "templates_dir": "~/.config/devsetup/templates",
    "catalog_file": None,
    "lock_timeout": 30.0,
    "max_workers": 1,
    "history_limit": 20,
    "features": list(DEFAULT_FEATURES),
    "run": {"dry_run": False},
    "git": {"name": None, "email": None},
    "shell": {"target": "zsh", "set_default": True},
}

SECTIONS: dict[str, frozenset[str]] = {
    name: frozenset(value) for name, value in DEFAULTS.items() if isinstance(value, dict)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Merge every configuration source into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    path = _config_path(config_file, environ)

    merged = copy.deepcopy(DEFAULTS)
    for layer in (_read_file(path), _environment_layer(environ), overrides or {}):
        _merge(merged, layer)

    _reject_unknown_keys(merged)
    return _materialise(path, merged)


def _config_path(explicit: str | os.PathLike[str] | None, environ: Mapping[str, str]) -> Path:
    raw = explicit or environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE
    return Path(raw).expanduser()


def _read_file(path: Path) -> Mapping[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return data


def _environment_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX) or name == CONFIG_ENV_VAR:
            continue
        keys = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if not keys:
            continue
        node = layer
        for key in keys[:-1]:
            child = node.setdefault(key, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{name} conflicts with the scalar value set for '{key}'.")
            node = child
        node[keys[-1]] = _parse_scalar(raw)
    return layer


def _parse_scalar(raw: str) -> object:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def _merge(base: dict[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge(current, value)
        else:
            base[key] = copy.deepcopy(value)


def _reject_unknown_keys(values: Mapping[str, object]) -> None:
    unknown = sorted(str(key) for key in values if key not in DEFAULTS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}.")
    for section, allowed in SECTIONS.items():
        mapping = _as_mapping(values.get(section), section)
        extra = sorted(str(key) for key in mapping if key not in allowed)
        if extra:
            raise ConfigError(f"Unknown {section} configuration keys: {', '.join(extra)}.")


def _as_mapping(value: object, label: str) -> Mapping[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return value


class _Reader:
    """Typed accessors over one level of the merged configuration."""

    def __init__(self, values: Mapping[str, object], prefix: str = "") -> None:
        self._values = values
        self._prefix = prefix

    def section(self, key: str) -> _Reader:
        return _Reader(_as_mapping(self._values.get(key), key), prefix=f"{key}.")

    def _label(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def optional_path(self, key: str) -> Path | None:
        value = self._values.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if isinstance(value, str | os.PathLike):
            return Path(value).expanduser()
        raise ConfigError(
            f"Expected {self._label(key)} to be a path or null. Got {type(value).__name__}."
        )

    def path(self, key: str) -> Path:
        value = self.optional_path(key)
        if value is None:
            raise ConfigError(f"{self._label(key)} must be set to a filesystem path.")
        return value

    def integer(self, key: str, *, minimum: int) -> int:
        label = self._label(key)
        value = self._values.get(key)
        if isinstance(value, str):
            try:
                value = int(value, 0)
            except ValueError as exc:
                raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"Expected {label} to be an integer. Got {value!r}.")
        if value < minimum:
            raise ConfigError(f"{label} must be at least {minimum}. Got {value}.")
        return value

    def positive_number(self, key: str) -> float:
        label = self._label(key)
        value = self._values.get(key)
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError as exc:
                raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
        if value <= 0:
            raise ConfigError(f"{label} must be greater than zero. Got {value}.")
        return float(value)

    def flag(self, key: str, *, default: bool) -> bool:
        value = self._values.get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            raise ConfigError(f"Expected {self._label(key)} to be a boolean. Got {value!r}.")
        return value

    def text(self, key: str) -> str | None:
        value = self._values.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ConfigError(
                f"Expected {self._label(key)} to be a string or null. Got {type(value).__name__}."
            )
        return value.strip() or None

    def names(self, key: str) -> frozenset[str]:
        label = self._label(key)
        value = self._values.get(key)
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",")]
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ConfigError(f"Expected {label} to be a list of names. Got {value!r}.")
        return frozenset(item for item in value if item)

    def choice(self, key: str, choices: Sequence[str], *, default: str) -> str:
        value = self._values.get(key)
        if value is None:
            return default
        if value not in choices:
            raise ConfigError(
                f"Unsupported {self._label(key)} {value!r}. Allowed: {', '.join(choices)}."
            )
        return str(value)


def _materialise(config_file: Path, values: Mapping[str, object]) -> AppConfig:
    top = _Reader(values)
    state_dir = top.path("state_dir")
    run = top.section("run")
    git = top.section("git")
    shell = top.section("shell")
    return AppConfig(
        config_file=config_file,
        home=top.path("home"),
        state_dir=state_dir,
        logs_dir=top.optional_path("logs_dir") or state_dir / "logs",
        runtime_dir=top.optional_path("runtime_dir") or state_dir / "run",
        backup_dir=top.path("backup_dir"),
        templates_dir=top.path("templates_dir"),
        catalog_file=top.optional_path("catalog_file"),
        lock_timeout=top.positive_number("lock_timeout"),
        max_workers=top.integer("max_workers", minimum=1),
        history_limit=top.integer("history_limit", minimum=0),
        features=top.names("features"),
        run=RunConfig(dry_run=run.flag("dry_run", default=False)),
        git=GitConfig(name=git.text("name"), email=git.text("email")),
        shell=ShellConfig(
            target=shell.choice("target", SHELLS, default="zsh"),
            set_default=shell.flag("set_default", default=True),
        ),
    )


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULTS",
    "DEFAULT_FEATURES",
    "GitConfig",
    "RunConfig",
    "ShellConfig",
    "load_config",
]
