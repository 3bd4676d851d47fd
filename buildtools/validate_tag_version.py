#!/usr/bin/env python3
"""Check that a release tag agrees with the package version.

CI runs this before publishing so a ``v<version>`` tag can only be pushed
when ``__version__`` in ``src/devsetup/__init__.py`` says the same thing.
"""
from __future__ import annotations

import argparse
import ast
import pathlib
import sys

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
INIT_PATH = PROJECT_ROOT / "src" / "devsetup" / "__init__.py"

TAG_PREFIXES = {"release": "v", "dev": "v", "docs": "docs-v"}


class TagValidationError(RuntimeError):
    """Raised when a tag does not match the expected scheme."""


def load_package_version(init_path: pathlib.Path = INIT_PATH) -> str:
    """Read ``__version__`` from the package source without importing it."""
    module = ast.parse(init_path.read_text(encoding="utf-8"), filename=str(init_path))
    for node in module.body:
        if not isinstance(node, ast.Assign):
            continue
        names = {getattr(target, "id", None) for target in node.targets}
        if "__version__" not in names:
            continue
        if isinstance(node.value, ast.Constant) and isinstance(node.value.value, str):
            return node.value.value
        break
    raise TagValidationError(f"Unable to determine __version__ from {init_path.name}")


def expected_version_from_tag(tag: str, kind: str) -> str:
    """Return the version encoded in *tag* for the given tag *kind*."""
    prefix = TAG_PREFIXES.get(kind)
    if prefix is None:
        raise TagValidationError(f"Unknown tag kind '{kind}'.")
    dev = tag.endswith("-dev")
    if not tag.startswith(prefix) or (kind == "dev") != dev:
        suffix = "-dev" if kind == "dev" else ""
        raise TagValidationError(
            f"{kind.capitalize()} tags must be formatted as {prefix}<version>{suffix}; "
            f"received '{tag}'."
        )
    version = tag[len(prefix) :]
    return version[: -len("-dev")] if dev else version


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Return parsed CLI arguments for tag validation."""
    parser = argparse.ArgumentParser(description="Validate tag name against package version.")
    parser.add_argument("--kind", required=True, choices=sorted(TAG_PREFIXES))
    parser.add_argument("--tag", required=True, help="Git tag name to validate.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entry point; returns a shell exit status."""
    args = parse_args(argv)
    try:
        expected = expected_version_from_tag(args.tag, args.kind)
        actual = load_package_version()
    except TagValidationError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1

    if actual != expected:
        sys.stderr.write(
            f"Tag version '{expected}' does not match package version '{actual}'.\n"
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
