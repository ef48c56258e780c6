"""Tests for brain_installer.engine module."""

import json
from pathlib import Path

import pytest

from brain_installer.constants import BRAIN_PREFIX
from brain_installer.engine import (
    FileKind,
    GeneratedFile,
    TransformEngine,
    check_collisions,
    maybe_prefix,
)
from brain_installer.exceptions import CollisionError, ComposeError
from brain_installer.frontmatter import parse_frontmatter
from brain_installer.overlay import Overlay
from brain_installer.source import EmbeddedSource, FilesystemSource
from brain_installer.tool_config import ToolConfig


def _tool(**overrides) -> ToolConfig:
    data = {
        "display_name": "Tool",
        "config_dir": "/cfg",
        "scopes": {"global": "/cfg"},
        "default_scope": "global",
    }
    data.update(overrides)
    return ToolConfig.from_dict("t", data)


def _by_path(files):
    return {f.path: f for f in files}


class TestAgents:
    """Tests for the agents phase."""

    def test_frontmatter_filtered(self, marketplace_tool, content_root: Path):
        """Only the tool's keys survive, in its order; the body is verbatim."""
        files = _by_path(TransformEngine(marketplace_tool, FilesystemSource(content_root)).generate())
        agent = files["agents/x.md"]
        assert agent.content_bytes == b"---\nname: x\nmodel: fast\n---\nBODY"
        assert agent.kind == FileKind.RENDERED
        assert agent.source_refs == ("agents/x.md",)

    def test_overlay_null_skips(self, marketplace_tool, content_root: Path):
        """An explicit null drops the agent for that tool."""
        overlay = Overlay.from_dict({"agents": {"x": {"a": None}}})
        files = TransformEngine(marketplace_tool, FilesystemSource(content_root), overlay).generate()
        assert "agents/x.md" not in _by_path(files)

    def test_overlay_fields_merged(self, marketplace_tool, content_root: Path):
        """Overlay values replace canonical ones."""
        overlay = Overlay.from_dict({"agents": {"x": {"a": {"model": "slow"}}}})
        files = _by_path(
            TransformEngine(marketplace_tool, FilesystemSource(content_root), overlay).generate()
        )
        assert files["agents/x.md"].content_bytes == b"---\nname: x\nmodel: slow\n---\nBODY"

    def test_collision(self, marketplace_tool, content_root: Path, write_files):
        """Two agents emitting the same name fail with both sources named."""
        write_files(content_root, {"agents/x-2.md": "---\nname: x-2\n---\nOTHER"})
        overlay = Overlay.from_dict({"agents": {"x-2": {"a": {"name": "x"}}}})
        engine = TransformEngine(marketplace_tool, FilesystemSource(content_root), overlay)
        with pytest.raises(CollisionError) as exc_info:
            engine.generate()
        assert "agents/x.md" in str(exc_info.value)
        assert "agents/x-2.md" in str(exc_info.value)
        assert exc_info.value.tool == "a"

    def test_prefixed_name(self, merge_tool, content_root: Path):
        """Prefixing renames both the file and the name field."""
        files = _by_path(TransformEngine(merge_tool, FilesystemSource(content_root)).generate())
        agent = files[f"agents/{BRAIN_PREFIX}x.md"]
        mapping, body = parse_frontmatter(agent.content_bytes)
        assert mapping == {"name": f"{BRAIN_PREFIX}x", "model": "fast"}
        assert body == b"BODY"

    def test_composed_agent(self, tmp_path: Path, write_files):
        """A directory with _order.yaml is composed for the tool's variant."""
        root = write_files(
            tmp_path / "c",
            {
                "agents/planner/_order.yaml": "sections: [body]\nvariants:\n  t:\n    frontmatter: fm.yaml\n",
                "agents/planner/sections/body.md": "Plan things.\n",
                "agents/planner/t/fm.yaml": "name: planner\ndescription: Plans\n",
            },
        )
        tool = _tool(agents={"frontmatter": ["name", "description"]})
        files = _by_path(TransformEngine(tool, FilesystemSource(root)).generate())
        assert files["agents/planner.md"].content_bytes == (
            b"---\nname: planner\ndescription: Plans\n---\nPlan things.\n"
        )


class TestOtherPhases:
    """Tests for skills, commands, rules and shared configs."""

    def test_skills_copied_with_prefix(self, tmp_path: Path, write_files):
        """Skill trees are copied verbatim under a prefixed directory."""
        root = write_files(
            tmp_path / "c",
            {"skills/review/SKILL.md": "s", "skills/review/node_modules/x.js": "junk"},
        )
        files = _by_path(TransformEngine(_tool(prefix=True, skills={}), FilesystemSource(root)).generate())
        assert list(files) == [f"skills/{BRAIN_PREFIX}review/SKILL.md"]
        assert files[f"skills/{BRAIN_PREFIX}review/SKILL.md"].kind == FileKind.VERBATIM

    def test_axis_prefix_override(self, tmp_path: Path, write_files):
        """A per-axis prefix flag beats the tool flag."""
        root = write_files(tmp_path / "c", {"commands/deploy.md": "go"})
        tool = _tool(prefix=True, commands={"prefix": False})
        assert [f.path for f in TransformEngine(tool, FilesystemSource(root)).generate()] == [
            "commands/deploy.md"
        ]

    def test_overlay_skips_command(self, tmp_path: Path, write_files):
        root = write_files(tmp_path / "c", {"commands/deploy.md": "go"})
        overlay = Overlay.from_dict({"commands": {"deploy": {"t": None}}})
        assert TransformEngine(_tool(commands={}), FilesystemSource(root), overlay).generate() == []

    def test_rules_extension_and_extra_frontmatter(self, tmp_path: Path, write_files):
        """Protocols become rules with the tool's extension and extra keys."""
        root = write_files(tmp_path / "c", {"protocols/style.md": "---\ndescription: D\n---\nbody\n"})
        tool = _tool(rules={"extension": ".mdc", "extra_frontmatter": {"alwaysApply": True}})
        files = _by_path(TransformEngine(tool, FilesystemSource(root)).generate())
        assert files["rules/style.mdc"].content_bytes == (
            b"---\ndescription: D\nalwaysApply: true\n---\nbody\n"
        )

    def test_rule_routing(self, tmp_path: Path, write_files):
        """Routing sends a rule to another directory."""
        root = write_files(tmp_path / "c", {"protocols/style.md": "body\n"})
        tool = _tool(rules={"routing": {"style": "docs/rules"}})
        assert [f.path for f in TransformEngine(tool, FilesystemSource(root)).generate()] == [
            "docs/rules/style.md"
        ]

    def test_merge_payload(self, merge_tool, content_root: Path):
        """Merge strategy emits the descriptor as a payload with its top-level keys."""
        files = _by_path(TransformEngine(merge_tool, FilesystemSource(content_root)).generate())
        payload = files["hooks.json"]
        assert payload.is_merge_payload
        assert payload.payload() == {"brain": {"script": "s"}}
        assert payload.source_refs == ("/brain",)

    def test_direct_hooks_verbatim(self, marketplace_tool, content_root: Path):
        files = _by_path(TransformEngine(marketplace_tool, FilesystemSource(content_root)).generate())
        assert files["hooks.json"].content_bytes == (content_root / "hooks/hooks.json").read_bytes()
        assert files["hooks.json"].kind == FileKind.VERBATIM

    def test_hook_scripts_copied(self, merge_tool, content_root: Path, write_files):
        write_files(content_root, {"hooks/scripts/start.sh": "#!/bin/sh\n"})
        files = _by_path(TransformEngine(merge_tool, FilesystemSource(content_root)).generate())
        assert files["hooks/scripts/start.sh"].content_bytes == b"#!/bin/sh\n"

    def test_mcp_relative_paths_resolved(self, marketplace_tool, content_root: Path, write_files):
        """'./' arguments point into the content root."""
        write_files(
            content_root,
            {"mcp.json": json.dumps({"mcpServers": {"s": {"command": "node", "args": ["./srv.js", "-v"]}}})},
        )
        engine = TransformEngine(marketplace_tool, FilesystemSource(content_root), content_root=content_root)
        mcp = json.loads(_by_path(engine.generate())["mcp.json"].content_bytes)
        assert mcp["mcpServers"]["s"]["args"] == [str(content_root / "srv.js"), "-v"]
        assert mcp["mcpServers"]["s"]["command"] == "node"

    def test_invalid_descriptor(self, merge_tool, content_root: Path, write_files):
        write_files(content_root, {"hooks/hooks.json": "{broken"})
        with pytest.raises(ComposeError, match="not valid JSON"):
            TransformEngine(merge_tool, FilesystemSource(content_root)).generate()

    def test_plugin_manifests(self, marketplace_tool, content_root: Path):
        """Marketplace tools get plugin.json and marketplace.json."""
        overlay = Overlay.from_dict({"version": "3.0.0"})
        files = _by_path(
            TransformEngine(marketplace_tool, FilesystemSource(content_root), overlay).generate()
        )
        plugin = json.loads(files[".claude-plugin/plugin.json"].content_bytes)
        marketplace = json.loads(files[".claude-plugin/marketplace.json"].content_bytes)
        assert plugin["name"] == "brain" and plugin["version"] == "3.0.0"
        assert marketplace["plugins"][0]["source"] == "./"

    def test_absent_sections_skip_phases(self, content_root: Path):
        """A tool with no content sections generates nothing."""
        assert TransformEngine(_tool(), FilesystemSource(content_root)).generate() == []


class TestDeterminism:
    """Tests for output stability."""

    def test_sorted_and_repeatable(self, marketplace_tool, content_root: Path):
        engine = TransformEngine(marketplace_tool, FilesystemSource(content_root))
        first = engine.generate()
        assert [f.path for f in first] == sorted(f.path for f in first)
        assert engine.generate() == first

    def test_sources_agree(self, merge_tool, content_root: Path):
        """Filesystem and embedded snapshots of the same tree give the same files."""
        fs = TransformEngine(merge_tool, FilesystemSource(content_root)).generate()
        embedded = TransformEngine(merge_tool, EmbeddedSource.from_directory(content_root)).generate()
        assert fs == embedded


class TestHelpers:
    """Tests for module-level helpers."""

    def test_maybe_prefix_idempotent(self):
        once = maybe_prefix("x", True)
        assert once == f"{BRAIN_PREFIX}x"
        assert maybe_prefix(once, True) == once
        assert maybe_prefix("x", False) == "x"

    def test_case_insensitive_collision(self):
        files = [
            GeneratedFile("agents/X.md", b"", FileKind.RENDERED, ("a",)),
            GeneratedFile("agents/x.md", b"", FileKind.RENDERED, ("b",)),
        ]
        with pytest.raises(CollisionError):
            check_collisions(files)
