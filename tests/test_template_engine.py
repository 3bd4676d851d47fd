"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from devsetup.templates import TemplateEngine, TemplateError, write_if_changed

ZSHRC_CONTEXT = {
    "backup_dir": "/home/ada/.config-backups",
    "package_manager": "pacman",
    "history_size": 50000,
    "plugins_dir": "/home/ada/.zsh",
    "plugins": ["zsh-autosuggestions", "zsh-syntax-highlighting"],
}


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with the package-manager specific aliases."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("zsh/zshrc.j2", ZSHRC_CONTEXT)

    assert "alias update='sudo pacman -Syu'" in output
    assert "apt-get" not in output
    assert "HISTSIZE=50000" in output
    assert (
        "source /home/ada/.zsh/zsh-autosuggestions/zsh-autosuggestions.zsh" in output
    )


def test_missing_variables_raise() -> None:
    """Undefined variables are errors rather than empty strings."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError, match="starship"):
        engine.render_to_string("starship/starship.toml.j2", {"palette": "dracula"})


def test_unknown_template_raises() -> None:
    """Missing templates are reported as :class:`TemplateError`."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError):
        engine.render_to_string("fish/config.fish.j2", {})


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow the built-in ones."""
    override = tmp_path / "templates" / "starship"
    override.mkdir(parents=True)
    (override / "starship.toml.j2").write_text("palette = '{{ palette }}'\n", encoding="utf-8")

    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    assert engine.render_to_string("starship/starship.toml.j2", {"palette": "nord"}) == (
        "palette = 'nord'\n"
    )
    assert "HISTSIZE" in engine.render_to_string("zsh/zshrc.j2", ZSHRC_CONTEXT)


def test_missing_override_directory_is_ignored(tmp_path: Path) -> None:
    """A non-existent override directory falls back to the built-ins."""
    engine = TemplateEngine.with_overrides(tmp_path / "absent")

    output = engine.render_to_string(
        "bash/zsh-autolaunch.j2",
        {"shell": "zsh", "shell_path": "/usr/bin/zsh", "marker": "exec zsh"},
    )

    assert "exec zsh" in output


def test_render_text_inline() -> None:
    """Inline strings render with the same environment."""
    engine = TemplateEngine.with_overrides(None)

    assert engine.render_text("{{ home }}/.cargo/bin", {"home": "/home/ada"}) == (
        "/home/ada/.cargo/bin"
    )
    with pytest.raises(TemplateError):
        engine.render_text("{{ missing }}", {})


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / ".config" / "starship.toml"

    changed = engine.render_to_path(
        "starship/starship.toml.j2",
        destination,
        {"palette": "dracula", "command_timeout": 1000},
        mode=0o600,
    )

    assert changed is True
    assert destination.exists()
    assert oct(destination.stat().st_mode & 0o777) == "0o600"
    assert "command_timeout = 1000" in destination.read_text(encoding="utf-8")


def test_write_if_changed_reports_unchanged(tmp_path: Path) -> None:
    """Identical content is not rewritten."""
    destination = tmp_path / "file.txt"

    assert write_if_changed(destination, "hello\n") is True
    assert write_if_changed(destination, "hello\n") is False
    assert write_if_changed(destination, "bye\n") is True
    assert destination.read_text(encoding="utf-8") == "bye\n"
