"""YAML step catalog: loading, validation and registry construction."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from .actions import (
    Action,
    ActionContext,
    command_action,
    default_shell_action,
    file_copy_action,
    git_clone_action,
    git_config_action,
    package_action,
    template_action,
)
from .engine.models import Step
from .engine.registry import StepRegistry
from .environment import Architecture, EnvironmentFacts, OsFamily, PackageManager, SandboxKind
from .providers.packages import PACKAGE_DB_RESOURCE

LOGGER = logging.getLogger(__name__)

BUILTIN_CATALOG = Path(__file__).resolve().parent / "resources" / "catalog.yml"
CATALOG_VERSION = 1

COMMON_FIELDS = frozenset(
    {
        "name",
        "kind",
        "description",
        "depends_on",
        "critical",
        "tags",
        "resources",
        "when",
        "feature",
    }
)

KIND_FIELDS: Mapping[str, frozenset[str]] = {
    "package": frozenset({"packages", "binaries"}),
    "command": frozenset({"script", "binaries", "creates", "privileged", "env"}),
    "git_clone": frozenset({"repository", "destination", "depth"}),
    "template": frozenset({"template", "destination", "context", "mode"}),
    "default_shell": frozenset({"shell", "fallback_rc"}),
    "file_copy": frozenset({"source", "destination", "mode"}),
    "git_config": frozenset({"settings"}),
}

REQUIRED_FIELDS: Mapping[str, frozenset[str]] = {
    "package": frozenset({"packages"}),
    "command": frozenset({"script"}),
    "git_clone": frozenset({"repository", "destination"}),
    "template": frozenset({"template", "destination"}),
    "default_shell": frozenset(),
    "file_copy": frozenset({"source", "destination"}),
    "git_config": frozenset({"settings"}),
}

WHEN_KEYS: Mapping[str, frozenset[str]] = {
    "os_family": frozenset(item.value for item in OsFamily),
    "sandbox_kind": frozenset(item.value for item in SandboxKind),
    "package_manager": frozenset(item.value for item in PackageManager),
    "architecture": frozenset(item.value for item in Architecture),
}


class CatalogError(RuntimeError):
    """Raised when the step catalog is malformed."""


@dataclass(slots=True, frozen=True)
class StepSpec:
    """A validated catalog entry, not yet bound to actions."""

    name: str
    kind: str
    description: str = ""
    depends_on: tuple[str, ...] = ()
    critical: bool = False
    tags: frozenset[str] = frozenset()
    resources: tuple[str, ...] = ()
    when: Mapping[str, frozenset[str]] = field(default_factory=dict)
    feature: str | None = None
    options: Mapping[str, Any] = field(default_factory=dict)

    def matches(self, facts: EnvironmentFacts) -> bool:
        """Return ``True`` when the ``when`` conditions accept *facts*."""
        observed = {
            "os_family": facts.os_family.value,
            "sandbox_kind": facts.sandbox_kind.value,
            "package_manager": facts.package_manager.value,
            "architecture": facts.architecture.value,
        }
        return all(observed[key] in allowed for key, allowed in self.when.items())


@dataclass(slots=True, frozen=True)
class Catalog:
    """Parsed catalog: shared render variables plus ordered step specs."""

    path: Path
    steps: tuple[StepSpec, ...]
    variables: Mapping[str, Any] = field(default_factory=dict)

    @property
    def base_dir(self) -> Path:
        """Return the directory relative ``source`` paths resolve against."""
        return self.path.parent

    @property
    def names(self) -> tuple[str, ...]:
        """Return step names in catalog order."""
        return tuple(spec.name for spec in self.steps)


def _expect_str_list(value: object, *, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise CatalogError(f"{where} must be a list of strings.")
    return tuple(value)


def _parse_when(value: object, *, where: str) -> dict[str, frozenset[str]]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise CatalogError(f"{where}.when must be a mapping.")
    parsed: dict[str, frozenset[str]] = {}
    for key, raw in value.items():
        if key not in WHEN_KEYS:
            allowed = ", ".join(sorted(WHEN_KEYS))
            raise CatalogError(f"{where}.when has unknown key '{key}' (expected {allowed}).")
        values = frozenset(_expect_str_list(raw, where=f"{where}.when.{key}"))
        unknown = sorted(values - WHEN_KEYS[key])
        if unknown:
            raise CatalogError(f"{where}.when.{key} has unknown value(s): {', '.join(unknown)}.")
        parsed[key] = values
    return parsed


def _check_packages(value: object, *, where: str) -> None:
    if isinstance(value, list):
        _expect_str_list(value, where=f"{where}.packages")
        return
    if not isinstance(value, Mapping):
        raise CatalogError(f"{where}.packages must be a list or a mapping of manager to list.")
    allowed = {item.value for item in PackageManager} | {"default"}
    for key, packages in value.items():
        if key not in allowed:
            raise CatalogError(f"{where}.packages has unknown package manager '{key}'.")
        _expect_str_list(packages, where=f"{where}.packages.{key}")


def parse_step(raw: object, *, index: int) -> StepSpec:
    """Validate one catalog entry."""
    where = f"steps[{index}]"
    if not isinstance(raw, Mapping):
        raise CatalogError(f"{where} must be a mapping.")
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise CatalogError(f"{where}.name must be a non-empty string.")
    where = f"step '{name}'"
    kind = raw.get("kind")
    if not isinstance(kind, str) or kind not in KIND_FIELDS:
        allowed = ", ".join(sorted(KIND_FIELDS))
        raise CatalogError(f"{where} has unknown kind '{kind}' (expected one of: {allowed}).")

    unknown = sorted(set(raw) - COMMON_FIELDS - KIND_FIELDS[kind])
    if unknown:
        raise CatalogError(f"{where} has unknown field(s): {', '.join(unknown)}.")
    missing = sorted(REQUIRED_FIELDS[kind] - set(raw))
    if missing:
        raise CatalogError(f"{where} is missing required field(s): {', '.join(missing)}.")

    critical = raw.get("critical", False)
    if not isinstance(critical, bool):
        raise CatalogError(f"{where}.critical must be a boolean.")
    description = raw.get("description", "")
    if not isinstance(description, str):
        raise CatalogError(f"{where}.description must be a string.")
    feature = raw.get("feature")
    if feature is not None and (not isinstance(feature, str) or not feature.strip()):
        raise CatalogError(f"{where}.feature must be a non-empty string.")

    options = {key: raw[key] for key in KIND_FIELDS[kind] if key in raw}
    if kind == "package":
        _check_packages(options["packages"], where=where)
    if kind == "command" and not (options.get("binaries") or options.get("creates")):
        raise CatalogError(f"{where} needs 'binaries' or 'creates' to detect prior installs.")
    if "binaries" in options:
        options["binaries"] = _expect_str_list(options["binaries"], where=f"{where}.binaries")
    for key in ("context", "env", "settings"):
        if key in options and not isinstance(options[key], Mapping):
            raise CatalogError(f"{where}.{key} must be a mapping.")

    resources = _expect_str_list(raw.get("resources"), where=f"{where}.resources")
    if kind == "package":
        resources = (*resources, PACKAGE_DB_RESOURCE)

    return StepSpec(
        name=name,
        kind=kind,
        description=description,
        depends_on=_expect_str_list(raw.get("depends_on"), where=f"{where}.depends_on"),
        critical=critical,
        tags=frozenset(_expect_str_list(raw.get("tags"), where=f"{where}.tags")),
        resources=tuple(sorted(set(resources))),
        when=_parse_when(raw.get("when"), where=where),
        feature=feature,
        options=options,
    )


def load_catalog(path: Path | None = None) -> Catalog:
    """Load and validate the catalog at *path* (the built-in one by default)."""
    catalog_path = (path or BUILTIN_CATALOG).expanduser()
    try:
        text = catalog_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CatalogError(f"Unable to read catalog {catalog_path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CatalogError(f"Failed to parse catalog {catalog_path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise CatalogError(f"Catalog {catalog_path} must contain a mapping.")

    version = data.get("version", CATALOG_VERSION)
    if version != CATALOG_VERSION:
        raise CatalogError(f"Unsupported catalog version {version!r}.")
    unknown = sorted(set(data) - {"version", "variables", "steps"})
    if unknown:
        raise CatalogError(f"Catalog has unknown top-level key(s): {', '.join(unknown)}.")

    variables = data.get("variables") or {}
    if not isinstance(variables, Mapping):
        raise CatalogError("Catalog 'variables' must be a mapping.")
    raw_steps = data.get("steps") or []
    if not isinstance(raw_steps, list):
        raise CatalogError("Catalog 'steps' must be a list.")

    steps = tuple(parse_step(raw, index=index) for index, raw in enumerate(raw_steps))
    return Catalog(path=catalog_path, steps=steps, variables=dict(variables))


def render_variables(
    catalog: Catalog,
    facts: EnvironmentFacts,
    context: ActionContext,
) -> dict[str, Any]:
    """Return the names available to string fields of *catalog*."""
    config = context.config
    variables: dict[str, Any] = dict(catalog.variables)
    variables.update(
        {
            "home": str(config.home),
            "facts": facts.to_dict(),
            "git": {"name": config.git.name or "", "email": config.git.email or ""},
            "shell": config.shell.to_dict(),
            "backup_dir": str(config.backup_dir),
            "features": sorted(config.features),
        }
    )
    return variables


def _resolve_packages(spec: StepSpec, facts: EnvironmentFacts) -> list[str]:
    packages = spec.options["packages"]
    if isinstance(packages, list):
        return list(packages)
    chosen = packages.get(facts.package_manager.value)
    if chosen is None:
        chosen = packages.get("default") or []
    return list(chosen)


def build_action(spec: StepSpec, facts: EnvironmentFacts, context: ActionContext) -> Action:
    """Bind *spec* to its action factory."""
    options = spec.options
    if spec.kind == "package":
        return package_action(
            context,
            packages=_resolve_packages(spec, facts),
            binaries=options.get("binaries", ()),
        )
    if spec.kind == "command":
        return command_action(
            context,
            script=str(options["script"]),
            binaries=options.get("binaries", ()),
            creates=options.get("creates"),
            privileged=bool(options.get("privileged", False)),
            env=options.get("env"),
        )
    if spec.kind == "git_clone":
        return git_clone_action(
            context,
            repository=str(options["repository"]),
            destination=str(options["destination"]),
            depth=options.get("depth", 1),
        )
    if spec.kind == "template":
        return template_action(
            context,
            template=str(options["template"]),
            destination=str(options["destination"]),
            context=options.get("context"),
            mode=int(options.get("mode", 0o644)),
        )
    if spec.kind == "file_copy":
        mode = options.get("mode")
        return file_copy_action(
            context,
            source=str(options["source"]),
            destination=str(options["destination"]),
            mode=int(mode) if mode is not None else None,
        )
    if spec.kind == "default_shell":
        return default_shell_action(
            context,
            shell=str(options.get("shell") or context.config.shell.target),
            fallback_rc=str(options.get("fallback_rc", "~/.bashrc")),
        )
    if spec.kind == "git_config":
        return git_config_action(context, settings=options["settings"])
    raise CatalogError(f"Step '{spec.name}' has unknown kind '{spec.kind}'.")


def _excluded(spec: StepSpec, facts: EnvironmentFacts, context: ActionContext) -> str | None:
    if not spec.matches(facts):
        return "not applicable to this host"
    if spec.kind == "default_shell" and not context.config.shell.set_default:
        return "disabled by shell.set_default"
    if spec.feature is not None and spec.feature not in context.config.features:
        return f"feature '{spec.feature}' is not enabled"
    return None


def build_registry(
    catalog: Catalog,
    facts: EnvironmentFacts,
    context: ActionContext,
) -> StepRegistry:
    """Bind applicable catalog steps to actions and register them.

    Steps excluded for this host or behind a disabled ``feature`` are dropped,
    and their names are removed from the ``depends_on`` lists of the remaining
    steps.
    """
    context = replace(
        context,
        variables=render_variables(catalog, facts, context),
        base_dir=catalog.base_dir,
    )
    offered = {spec.feature for spec in catalog.steps if spec.feature}
    for name in sorted(context.config.features - offered):
        LOGGER.info("Feature '%s' is enabled but no catalog step provides it.", name)
    dropped: set[str] = set()
    for spec in catalog.steps:
        reason = _excluded(spec, facts, context)
        if reason is not None:
            LOGGER.debug("Dropping step '%s': %s", spec.name, reason)
            dropped.add(spec.name)

    registry = StepRegistry()
    for spec in catalog.steps:
        if spec.name in dropped:
            continue
        action = build_action(spec, facts, context)
        registry.register(
            Step(
                name=spec.name,
                is_satisfied=action.is_satisfied,
                apply=action.apply,
                depends_on=tuple(name for name in spec.depends_on if name not in dropped),
                critical=spec.critical,
                description=spec.description,
                tags=spec.tags,
                resources=spec.resources,
            )
        )
    return registry


__all__ = [
    "BUILTIN_CATALOG",
    "Catalog",
    "CatalogError",
    "StepSpec",
    "build_action",
    "build_registry",
    "load_catalog",
    "parse_step",
    "render_variables",
]
