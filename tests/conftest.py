"""Test configuration and fixtures."""

from pathlib import Path
from typing import Any

import pytest

from brain_installer.handler import InstallEnvironment, ToolHandler
from brain_installer.overlay import Overlay
from brain_installer.paths import ResolutionContext
from brain_installer.registry import clear_registry, get_registry_snapshot, restore_registry_snapshot
from brain_installer.source import FilesystemSource
from brain_installer.tool_config import ToolConfig

SCENARIO_AGENT = "---\nname: x\nmodel: fast\nextra: drop\n---\nBODY"
SCENARIO_HOOKS = '{"brain": {"script": "s"}}\n'


@pytest.fixture
def write_files():
    """Write a mapping of relative path to text or bytes under a root."""
    def _write(root: Path, files: dict[str, str | bytes]) -> Path:
        for relative, content in files.items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")
        return root
    return _write


@pytest.fixture
def tree_state():
    """Capture every file (with bytes) and directory under some roots."""
    def _state(*roots: Path) -> dict[str, Any]:
        state: dict[str, Any] = {}
        for root in roots:
            if not root.exists():
                continue
            for path in sorted(root.rglob("*")):
                if path.is_dir():
                    state[str(path)] = "<dir>"
                else:
                    state[str(path)] = path.read_bytes()
        return state
    return _state


@pytest.fixture
def resolution_ctx(tmp_path: Path) -> ResolutionContext:
    """A resolution context rooted entirely inside tmp_path."""
    work = tmp_path / "work"
    work.mkdir()
    return ResolutionContext(
        home=tmp_path / "home",
        xdg_config=tmp_path / "xdg" / "config",
        xdg_cache=tmp_path / "xdg" / "cache",
        xdg_data=tmp_path / "xdg" / "data",
        cwd=work,
        env={"BRAIN_TEST": "1"},
    )


@pytest.fixture
def content_root(tmp_path: Path, write_files) -> Path:
    """Canonical content with one agent and a hook descriptor."""
    return write_files(
        tmp_path / "content",
        {
            "agents/x.md": SCENARIO_AGENT,
            "hooks/hooks.json": SCENARIO_HOOKS,
        },
    )


@pytest.fixture
def make_env(resolution_ctx: ResolutionContext, tmp_path: Path):
    """Build an InstallEnvironment over a content directory."""
    def _make(root: Path, overlay: Overlay | None = None) -> InstallEnvironment:
        return InstallEnvironment(
            ctx=resolution_ctx,
            source=FilesystemSource(root),
            overlay=overlay or Overlay(),
            cache_root=tmp_path / "cache",
            content_root=root,
        )
    return _make


@pytest.fixture
def env(make_env, content_root: Path) -> InstallEnvironment:
    return make_env(content_root)


@pytest.fixture
def marketplace_tool(tmp_path: Path) -> ToolConfig:
    """Tool `a`: marketplace placement with direct hooks and MCP."""
    (tmp_path / "T" / "a").mkdir(parents=True)
    (tmp_path / "T" / "a-plugins").mkdir(parents=True)
    return ToolConfig.from_dict(
        "a",
        {
            "display_name": "Tool A",
            "config_dir": str(tmp_path / "T" / "a"),
            "scopes": {"plugin": str(tmp_path / "T" / "a-plugins" / "brain")},
            "default_scope": "plugin",
            "agents": {"frontmatter": ["name", "model"]},
            "hooks": {"strategy": "direct", "target": "hooks.json"},
            "mcp": {"strategy": "direct", "target": "mcp.json"},
            "manifest": {"type": "marketplace"},
            "placement": "marketplace",
            "marketplace": {"registry": "known_marketplaces.json"},
            "detection": {
                "brain_installed": {
                    "type": "json_key",
                    "file": "known_marketplaces.json",
                    "key": "brain",
                }
            },
        },
    )


@pytest.fixture
def merge_tool(tmp_path: Path) -> ToolConfig:
    """Tool `b`: copy_and_merge placement merging hooks into a host file."""
    (tmp_path / "U" / "b").mkdir(parents=True)
    (tmp_path / "U" / "b" / "hooks.json").write_text('{"user": 1}', encoding="utf-8")
    return ToolConfig.from_dict(
        "b",
        {
            "display_name": "Tool B",
            "config_dir": str(tmp_path / "U" / "b"),
            "scopes": {"global": str(tmp_path / "U" / "b")},
            "default_scope": "global",
            "prefix": True,
            "agents": {"frontmatter": ["name", "model"]},
            "hooks": {"strategy": "merge", "target": "hooks.json"},
            "manifest": {"type": "file_list"},
            "placement": "copy_and_merge",
            "detection": {"brain_installed": {"type": "prefix_scan", "dirs": ["agents"]}},
        },
    )


@pytest.fixture
def install():
    """Plan and run an install for one tool; returns the finished plan."""
    def _install(tool: ToolConfig, environment: InstallEnvironment, scope: str | None = None):
        plan = ToolHandler(tool).plan_install(environment, scope)
        plan.pipeline().execute()
        return plan
    return _install


@pytest.fixture
def uninstall():
    """Plan and run an uninstall for one tool."""
    def _uninstall(tool: ToolConfig, environment: InstallEnvironment, scope: str | None = None):
        plan = ToolHandler(tool).plan_uninstall(environment, scope)
        plan.pipeline().execute()
        return plan
    return _uninstall


@pytest.fixture
def isolated_registry():
    """Clean registry before and after each test."""
    snapshot = get_registry_snapshot()
    clear_registry()
    yield
    restore_registry_snapshot(snapshot)
