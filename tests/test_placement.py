"""Tests for install and uninstall plans."""

import dataclasses
import json
from pathlib import Path

import pytest

from brain_installer.constants import BRAIN_PREFIX
from brain_installer.exceptions import DetectionError, InstallIOError, MergeConflictError
from brain_installer.fsutil import sha256_bytes
from brain_installer.handler import ToolHandler
from brain_installer.jsonmerge import has_path
from brain_installer.manifest import EntryKind, load_manifest, manifest_path
from brain_installer.pipeline import Pipeline
from brain_installer.tool_config import ContentAxis, SharedConfigSpec, Strategy, ToolConfig


def _raise_oserror():
    raise OSError("injected failure")


def _run_failing_at(tool: ToolConfig, env, index: int) -> None:
    plan = ToolHandler(tool).plan_install(env)
    steps = plan.steps()
    steps[index] = dataclasses.replace(steps[index], do=_raise_oserror, condition=None)
    with pytest.raises(InstallIOError) as exc_info:
        Pipeline(steps).execute()
    assert exc_info.value.step == steps[index].name


class TestMarketplaceInstall:
    """Installing tool `a` (marketplace placement)."""

    def test_files_registry_and_manifest(self, tmp_path: Path, marketplace_tool, content_root, env, install):
        root = tmp_path / "T" / "a-plugins" / "brain"
        plan = install(marketplace_tool, env)

        assert (root / "agents" / "x.md").read_bytes() == b"---\nname: x\nmodel: fast\n---\nBODY"
        hooks = content_root / "hooks" / "hooks.json"
        assert (root / "hooks.json").read_bytes() == hooks.read_bytes()
        assert (root / ".claude-plugin" / "plugin.json").is_file()

        registry = json.loads((tmp_path / "T" / "a" / "known_marketplaces.json").read_text())
        assert registry["brain"]["installLocation"] == str(root)
        assert registry["brain"]["source"] == {"source": "directory", "path": str(root)}

        manifest = load_manifest(manifest_path(tmp_path / "cache", "a"))
        assert manifest == plan.manifest
        assert manifest.scope == "plugin"
        assert str(root / "agents" / "x.md") in {e.path for e in manifest.files}

    def test_manifest_is_sound(self, tmp_path: Path, marketplace_tool, env, install):
        """Every recorded file exists with the recorded hash; merge keys exist."""
        manifest = install(marketplace_tool, env).manifest
        for entry in manifest.files:
            assert sha256_bytes(Path(entry.path).read_bytes()) == entry.hash
        for entry in manifest.merges:
            document = json.loads(Path(entry.path).read_text(encoding="utf-8"))
            assert all(has_path(document, key) for key in entry.keys)
        for directory in manifest.directories:
            assert Path(directory).is_dir()

    def test_invalid_registry_rolls_back(self, tmp_path: Path, marketplace_tool, env, tree_state):
        """A corrupt registry fails registration and leaves the tree as it was."""
        registry = tmp_path / "T" / "a" / "known_marketplaces.json"
        registry.write_text("{not json", encoding="utf-8")
        before = tree_state(tmp_path / "T", tmp_path / "cache")

        plan = ToolHandler(marketplace_tool).plan_install(env)
        with pytest.raises(MergeConflictError) as exc_info:
            plan.pipeline().execute()

        assert exc_info.value.step == "Marketplace registration"
        assert tree_state(tmp_path / "T", tmp_path / "cache") == before

    def test_existing_registry_entries_kept(self, tmp_path: Path, marketplace_tool, env, install, uninstall):
        registry = tmp_path / "T" / "a" / "known_marketplaces.json"
        original = '{\n    "other": {"installLocation": "/x"}\n}\n'
        registry.write_text(original, encoding="utf-8")

        install(marketplace_tool, env)
        document = json.loads(registry.read_text())
        assert set(document) == {"other", "brain"}

        uninstall(marketplace_tool, env)
        assert registry.read_text(encoding="utf-8") == original


class TestMergeInstall:
    """Installing tool `b` (copy_and_merge placement)."""

    def test_merge_keeps_user_keys(self, tmp_path: Path, merge_tool, env, install):
        install(merge_tool, env)
        hooks = json.loads((tmp_path / "U" / "b" / "hooks.json").read_text())
        assert hooks == {"user": 1, "brain": {"script": "s"}}
        assert (tmp_path / "U" / "b" / "agents" / f"{BRAIN_PREFIX}x.md").is_file()

    def test_merge_recorded_with_keys(self, tmp_path: Path, merge_tool, env, install):
        manifest = install(merge_tool, env).manifest
        (merge,) = manifest.merges
        assert merge.kind == EntryKind.MERGE
        assert merge.keys == ("/brain",)
        assert merge.created is False
        assert merge.hash == sha256_bytes(b'{"user": 1}')

    def test_conflicting_user_key(self, tmp_path: Path, merge_tool, env, tree_state):
        """A user-owned key with a different value refuses the merge."""
        (tmp_path / "U" / "b" / "hooks.json").write_text('{"brain": 5}', encoding="utf-8")
        before = tree_state(tmp_path / "U")
        with pytest.raises(MergeConflictError):
            ToolHandler(merge_tool).plan_install(env).pipeline().execute()
        assert tree_state(tmp_path / "U") == before

    def test_host_file_created(self, tmp_path: Path, merge_tool, env, install, uninstall):
        """A host file the installer created is deleted on uninstall."""
        (tmp_path / "U" / "b" / "hooks.json").unlink()
        manifest = install(merge_tool, env).manifest
        assert manifest.merges[0].created is True
        uninstall(merge_tool, env)
        assert not (tmp_path / "U" / "b" / "hooks.json").exists()


class TestUninstall:
    """Uninstall restores the pre-install state."""

    def test_exact_restore_marketplace(self, tmp_path: Path, marketplace_tool, env, install, uninstall, tree_state):
        before = tree_state(tmp_path / "T")
        install(marketplace_tool, env)
        uninstall(marketplace_tool, env)
        assert tree_state(tmp_path / "T") == before
        assert not manifest_path(tmp_path / "cache", "a").exists()

    def test_exact_restore_merge(self, tmp_path: Path, merge_tool, env, install, uninstall, tree_state):
        """The host file comes back byte for byte."""
        before = tree_state(tmp_path / "U")
        install(merge_tool, env)
        uninstall(merge_tool, env)
        assert tree_state(tmp_path / "U") == before
        assert (tmp_path / "U" / "b" / "hooks.json").read_bytes() == b'{"user": 1}'

    def test_user_edits_survive(self, tmp_path: Path, merge_tool, env, install, uninstall):
        """Keys added by the user after install are kept."""
        install(merge_tool, env)
        host = tmp_path / "U" / "b" / "hooks.json"
        document = json.loads(host.read_text())
        document["later"] = True
        host.write_text(json.dumps(document), encoding="utf-8")

        uninstall(merge_tool, env)
        assert json.loads(host.read_text()) == {"user": 1, "later": True}

    def test_prefix_fallback_without_manifest(self, tmp_path: Path, merge_tool, env, install, uninstall):
        """With the manifest gone, prefixed files are still found."""
        install(merge_tool, env)
        manifest_path(tmp_path / "cache", "b").unlink()

        uninstall(merge_tool, env)
        assert not (tmp_path / "U" / "b" / "agents" / f"{BRAIN_PREFIX}x.md").exists()
        # merge keys cannot be identified without the manifest
        assert "brain" in json.loads((tmp_path / "U" / "b" / "hooks.json").read_text())

    def test_nothing_installed(self, merge_tool, env, uninstall):
        with pytest.raises(DetectionError, match="Nothing installed"):
            uninstall(merge_tool, env)


class TestIdempotence:
    """Installing twice is the same as installing once."""

    @pytest.mark.parametrize("tool_fixture", ["marketplace_tool", "merge_tool"])
    def test_second_install_changes_nothing(self, request, tmp_path: Path, env, install, tree_state, tool_fixture):
        tool = request.getfixturevalue(tool_fixture)
        install(tool, env)
        after_first = tree_state(tmp_path / "T", tmp_path / "U", tmp_path / "cache")

        plan = ToolHandler(tool).plan_install(env)
        report = plan.pipeline().execute()

        assert tree_state(tmp_path / "T", tmp_path / "U", tmp_path / "cache") == after_first
        assert "Write manifest" in report.skipped

    def test_stale_files_removed_on_reinstall(self, tmp_path: Path, merge_tool, content_root: Path, make_env, install):
        """Files dropped from the content disappear on the next install."""
        install(merge_tool, make_env(content_root))
        (content_root / "agents" / "x.md").unlink()
        install(merge_tool, make_env(content_root))
        assert not (tmp_path / "U" / "b" / "agents").exists()


class TestPreconditions:
    """Checks made before anything is written."""

    def test_missing_config_dir(self, tmp_path: Path, env):
        tool = ToolConfig.from_dict(
            "c",
            {
                "display_name": "Tool C",
                "config_dir": str(tmp_path / "nowhere"),
                "scopes": {"global": str(tmp_path / "V")},
                "default_scope": "global",
                "agents": {"frontmatter": ["name"]},
            },
        )
        plan = ToolHandler(tool).plan_install(env)
        with pytest.raises(DetectionError) as exc_info:
            plan.pipeline().execute()
        assert exc_info.value.step == "Preconditions"
        assert not (tmp_path / "V").exists()


class TestRollback:
    """A failure at any step leaves no trace."""

    @pytest.mark.parametrize("index", range(7))
    def test_fresh_install_marketplace(self, index, tmp_path: Path, marketplace_tool, env, tree_state):
        before = tree_state(tmp_path / "T", tmp_path / "cache")
        _run_failing_at(marketplace_tool, env, index)
        assert tree_state(tmp_path / "T", tmp_path / "cache") == before

    @pytest.mark.parametrize("index", range(6))
    def test_fresh_install_merge(self, index, tmp_path: Path, merge_tool, env, tree_state):
        before = tree_state(tmp_path / "U", tmp_path / "cache")
        _run_failing_at(merge_tool, env, index)
        assert tree_state(tmp_path / "U", tmp_path / "cache") == before

    @pytest.mark.parametrize("index", range(7))
    def test_reinstall_marketplace(self, index, tmp_path: Path, marketplace_tool, env, install, tree_state):
        install(marketplace_tool, env)
        before = tree_state(tmp_path / "T", tmp_path / "cache")
        _run_failing_at(marketplace_tool, env, index)
        assert tree_state(tmp_path / "T", tmp_path / "cache") == before

    @pytest.mark.parametrize("index", range(6))
    def test_reinstall_merge(self, index, tmp_path: Path, merge_tool, env, install, tree_state):
        install(merge_tool, env)
        before = tree_state(tmp_path / "U", tmp_path / "cache")
        _run_failing_at(merge_tool, env, index)
        assert tree_state(tmp_path / "U", tmp_path / "cache") == before

    def test_write_fails_after_first_file(self, tmp_path: Path, merge_tool, content_root, write_files, make_env, tree_state):
        """Files the failing step already wrote are removed too."""
        write_files(content_root, {"skills/s/SKILL.md": "skill\n"})
        tool = dataclasses.replace(merge_tool, skills=ContentAxis())
        (tmp_path / "U" / "b" / "skills").write_text("in the way", encoding="utf-8")
        before = tree_state(tmp_path / "U", tmp_path / "cache")

        plan = ToolHandler(tool).plan_install(make_env(content_root))
        with pytest.raises(InstallIOError) as exc_info:
            plan.pipeline().execute()

        assert exc_info.value.step == "Write files"
        assert tree_state(tmp_path / "U", tmp_path / "cache") == before

    def test_merge_fails_after_first_host_file(self, tmp_path: Path, merge_tool, content_root, write_files, make_env, tree_state):
        """An earlier merge in the failing step is reverted with its backup."""
        write_files(content_root, {"mcp.json": '{"mcpServers": {"brain": {"command": "b"}}}\n'})
        tool = dataclasses.replace(merge_tool, mcp=SharedConfigSpec(Strategy.MERGE, "mcp.json"))
        (tmp_path / "U" / "b" / "mcp.json").mkdir()
        before = tree_state(tmp_path / "U", tmp_path / "cache")

        plan = ToolHandler(tool).plan_install(make_env(content_root))
        with pytest.raises(InstallIOError) as exc_info:
            plan.pipeline().execute()

        assert exc_info.value.step == "Apply merge payloads"
        assert tree_state(tmp_path / "U", tmp_path / "cache") == before
