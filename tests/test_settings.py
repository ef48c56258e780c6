"""Tests for brain_installer.settings module."""

from pathlib import Path

import pytest

from brain_installer.exceptions import ConfigError
from brain_installer.settings import (
    Settings,
    build_run_config,
    discover_content_root,
    env_flag,
    find_project_root,
    resolve_cache_root,
    templates_dir,
)


class TestSettings:
    """Tests for installer.toml loading."""

    def test_missing_file_defaults(self, tmp_path: Path):
        settings = Settings.load(tmp_path / "installer.toml")
        assert settings.content_root is None
        assert settings.non_interactive is False

    def test_load_values(self, tmp_path: Path):
        path = tmp_path / "installer.toml"
        path.write_text(
            'content_root = "~/src/brain"\ncache_dir = "/tmp/c"\nnon_interactive = true\n',
            encoding="utf-8",
        )
        settings = Settings.load(path)
        assert settings.content_root == "~/src/brain"
        assert settings.cache_dir == "/tmp/c"
        assert settings.non_interactive is True

    def test_invalid_toml(self, tmp_path: Path):
        path = tmp_path / "installer.toml"
        path.write_text("content_root = \n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Failed to parse"):
            Settings.load(path)

    def test_wrong_type(self, tmp_path: Path):
        path = tmp_path / "installer.toml"
        path.write_text("non_interactive = \"yes\"\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="non_interactive"):
            Settings.load(path)

    def test_environment_overrides(self):
        """BRAIN_* variables beat the file."""
        settings = Settings(content_root="/file", cache_dir="/file-cache").with_env(
            {
                "BRAIN_CONTENT_ROOT": "/env",
                "BRAIN_CACHE_DIR": "/env-cache",
                "BRAIN_NON_INTERACTIVE": "1",
            }
        )
        assert settings.content_root == "/env"
        assert settings.cache_dir == "/env-cache"
        assert settings.non_interactive is True

    def test_non_interactive_can_be_turned_off(self):
        settings = Settings(non_interactive=True).with_env({"BRAIN_NON_INTERACTIVE": "0"})
        assert settings.non_interactive is False

    @pytest.mark.parametrize("value,expected", [("1", True), ("Yes", True), ("0", False), (None, False)])
    def test_env_flag(self, value, expected):
        assert env_flag(value) is expected


class TestDiscovery:
    """Tests for locating content and cache."""

    def test_override_wins(self, resolution_ctx, tmp_path: Path):
        settings = Settings(content_root="~/brain")
        assert discover_content_root(settings, resolution_ctx) == resolution_ctx.home / "brain"

    def test_project_root_from_cwd(self, resolution_ctx):
        """The nearest ancestor with brain.config.json is the content root."""
        (resolution_ctx.cwd / "brain.config.json").write_text("{}", encoding="utf-8")
        nested = resolution_ctx.cwd / "a" / "b"
        nested.mkdir(parents=True)
        assert find_project_root(nested) == resolution_ctx.cwd.resolve()
        assert discover_content_root(Settings(), resolution_ctx) == resolution_ctx.cwd.resolve()

    def test_falls_back_to_data_dir(self, resolution_ctx):
        assert discover_content_root(Settings(), resolution_ctx) == resolution_ctx.app_data_dir

    def test_templates_subdir(self, tmp_path: Path):
        assert templates_dir(tmp_path) == tmp_path
        (tmp_path / "templates").mkdir()
        assert templates_dir(tmp_path) == tmp_path / "templates"

    def test_cache_root(self, resolution_ctx):
        assert resolve_cache_root(Settings(), resolution_ctx) == resolution_ctx.app_cache_dir
        assert resolve_cache_root(Settings(cache_dir="~/c"), resolution_ctx) == resolution_ctx.home / "c"


class TestBuildRunConfig:
    """Tests for assembling a run."""

    def test_project_configuration(self, resolution_ctx, write_files):
        project = write_files(
            resolution_ctx.cwd,
            {
                "brain.config.json": '{"targets": {"cursor": {"prefix": false}}}',
                "templates/agents/x.md": "---\nname: x\n---\nBODY",
            },
        )
        run = build_run_config(resolution_ctx)
        assert run.content_root == project.resolve()
        assert run.env.content_root == project.resolve() / "templates"
        assert run.env.source.exists("agents/x.md")
        assert run.env.overlay.prefix_for("cursor") is False
        assert [t.name for t in run.tools] == ["claude-code", "cursor"]
        assert run.env.cache_root == resolution_ctx.app_cache_dir

    def test_project_tools_file(self, resolution_ctx, write_files):
        write_files(
            resolution_ctx.cwd,
            {
                "brain.config.json": "{}",
                "tools.yaml": (
                    "tools:\n  only:\n    display_name: Only\n    config_dir: /x\n"
                    "    scopes: {global: /x}\n    default_scope: global\n"
                ),
            },
        )
        assert [t.name for t in build_run_config(resolution_ctx).tools] == ["only"]
