"""Tests for packaging metadata the installer depends on at runtime."""

from pathlib import Path

import pytest
import tomlkit

import brain_installer
from brain_installer import __version__
from brain_installer.manifest import load_manifest, manifest_path

PACKAGE_DIR = Path(brain_installer.__file__).parent


@pytest.fixture(scope="module")
def pyproject() -> dict:
    with open(PACKAGE_DIR.parent / "pyproject.toml") as f:
        return tomlkit.load(f)


class TestPackaging:
    """pyproject.toml, the package and what installs record must agree."""

    def test_manifest_records_project_version(self, tmp_path: Path, pyproject, merge_tool, env, install):
        """Manifests are stamped with the released version, so upgrades can be told apart."""
        install(merge_tool, env)
        manifest = load_manifest(manifest_path(tmp_path / "cache", "b"))
        assert manifest.engine_version == pyproject["project"]["version"] == __version__

    def test_bundled_tool_table_is_package_data(self, pyproject):
        """The default tools.yaml ships with the wheel."""
        patterns = pyproject["tool"]["setuptools"]["package-data"]["brain_installer"]
        shipped = {p.relative_to(PACKAGE_DIR).as_posix() for p in PACKAGE_DIR.glob("data/*")}
        assert "data/tools.yaml" in shipped
        assert any(Path("data/tools.yaml").match(pattern) for pattern in patterns)

    def test_console_script_target(self, pyproject):
        assert pyproject["project"]["scripts"]["brain-installer"] == "brain_installer.cli.main:app"
