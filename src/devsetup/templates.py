"""Jinja2 template rendering for generated configuration files."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError as JinjaTemplateError,
)

BUILTIN_TEMPLATE_PACKAGE = "devsetup"
BUILTIN_TEMPLATE_DIR = "resources/templates"


class TemplateError(RuntimeError):
    """Raised when a template cannot be loaded or rendered."""


class TemplateEngine:
    """Render built-in templates, optionally shadowed by an override directory."""

    def __init__(self, loader: BaseLoader) -> None:
        """Create an engine around a Jinja2 *loader*."""
        self._environment = Environment(
            loader=loader,
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine where *override_dir* takes precedence over built-ins."""
        loaders: list[BaseLoader] = []
        if override_dir is not None:
            override = Path(override_dir).expanduser()
            if override.is_dir():
                loaders.append(FileSystemLoader(str(override)))
        loaders.append(PackageLoader(BUILTIN_TEMPLATE_PACKAGE, BUILTIN_TEMPLATE_DIR))
        return cls(ChoiceLoader(loaders))

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self._environment.get_template(name)
            return template.render(**context)
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template '{name}': {exc}") from exc

    def render_text(self, source: str, context: Mapping[str, object]) -> str:
        """Render an inline template string with *context*."""
        try:
            return self._environment.from_string(source).render(**context)
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render '{source}': {exc}") from exc

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when content changed."""
        content = self.render_to_string(name, context)
        return write_if_changed(destination, content, mode=mode)


def write_if_changed(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Atomically write *content* to *destination* unless it is already there."""
    try:
        if destination.read_text(encoding="utf-8") == content:
            os.chmod(destination, mode)
            return False
    except FileNotFoundError:
        pass

    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["TemplateEngine", "TemplateError", "write_if_changed"]
