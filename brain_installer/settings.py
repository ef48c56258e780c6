"""User settings and run environment assembly.

Settings come from ``$XDG_CONFIG_HOME/brain/installer.toml``; the
``BRAIN_*`` environment variables override whatever the file says.
"""

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

import tomli

from brain_installer.constants import (
    BRAIN_CONFIG_FILENAME,
    ENV_CACHE_DIR,
    ENV_CONTENT_ROOT,
    ENV_NON_INTERACTIVE,
    SETTINGS_FILENAME,
    TEMPLATES_SUBDIR,
)
from brain_installer.exceptions import ConfigError
from brain_installer.handler import InstallEnvironment
from brain_installer.overlay import Overlay
from brain_installer.paths import ResolutionContext, resolve_template
from brain_installer.source import FilesystemSource
from brain_installer.tool_config import (
    ToolConfig,
    find_tools_file,
    load_default_tools,
    load_tools_file,
)

logger = logging.getLogger(__name__)

TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUE_VALUES


@dataclass(frozen=True)
class Settings:
    """Configuration from installer.toml.

    Example:
        content_root = "~/src/brain"
        cache_dir = "~/.cache/brain"
        non_interactive = false
    """

    path: Path | None = None
    content_root: str | None = None
    cache_dir: str | None = None
    non_interactive: bool = False

    @classmethod
    def load(cls, path: Path) -> "Settings":
        """Load settings from installer.toml.

        A missing file yields the defaults.

        Raises:
            ConfigError: If the file cannot be parsed or has wrong types
        """
        if not path.exists():
            return cls(path=path)

        try:
            with open(path, "rb") as f:
                data = tomli.load(f)
        except tomli.TOMLDecodeError as e:
            raise ConfigError(f"Failed to parse {path}: {e}") from e

        return cls._from_dict(path, data)

    @classmethod
    def _from_dict(cls, path: Path, data: dict[str, Any]) -> "Settings":
        for key in ("content_root", "cache_dir"):
            if key in data and not isinstance(data[key], str):
                raise ConfigError(f"{path}: '{key}' must be a string")
        non_interactive = data.get("non_interactive", False)
        if not isinstance(non_interactive, bool):
            raise ConfigError(f"{path}: 'non_interactive' must be true or false")
        return cls(
            path=path,
            content_root=data.get("content_root"),
            cache_dir=data.get("cache_dir"),
            non_interactive=non_interactive,
        )

    def with_env(self, env: Mapping[str, str]) -> "Settings":
        """Apply BRAIN_CONTENT_ROOT, BRAIN_CACHE_DIR and BRAIN_NON_INTERACTIVE."""
        settings = self
        if env.get(ENV_CONTENT_ROOT):
            settings = replace(settings, content_root=env[ENV_CONTENT_ROOT])
        if env.get(ENV_CACHE_DIR):
            settings = replace(settings, cache_dir=env[ENV_CACHE_DIR])
        if ENV_NON_INTERACTIVE in env:
            settings = replace(settings, non_interactive=env_flag(env[ENV_NON_INTERACTIVE]))
        return settings

    @classmethod
    def from_environment(cls, ctx: ResolutionContext) -> "Settings":
        return cls.load(ctx.app_config_dir / SETTINGS_FILENAME).with_env(ctx.env)


def find_project_root(start: Path) -> Path | None:
    """Walk up from start to the first directory holding brain.config.json."""
    current = start.resolve()
    while True:
        if (current / BRAIN_CONFIG_FILENAME).is_file():
            return current
        if current.parent == current:
            return None
        current = current.parent


def discover_content_root(settings: Settings, ctx: ResolutionContext) -> Path:
    """Locate the canonical content project.

    Order: environment/settings override, the nearest ancestor of the
    working directory containing brain.config.json, then the XDG data dir.
    """
    if settings.content_root:
        return resolve_template(settings.content_root, ctx)
    project_root = find_project_root(ctx.cwd)
    if project_root is not None:
        return project_root
    return ctx.app_data_dir


def templates_dir(content_root: Path) -> Path:
    """Directory the template source reads from."""
    candidate = content_root / TEMPLATES_SUBDIR
    return candidate if candidate.is_dir() else content_root


def resolve_cache_root(settings: Settings, ctx: ResolutionContext) -> Path:
    if settings.cache_dir:
        return resolve_template(settings.cache_dir, ctx)
    return ctx.app_cache_dir


def load_tools(content_root: Path) -> list[ToolConfig]:
    """Load the project's tools.yaml, or the bundled one when it has none."""
    path = find_tools_file(content_root)
    if path is None:
        logger.debug("no tools.yaml in %s, using bundled configuration", content_root)
        return load_default_tools()
    return load_tools_file(path)


@dataclass(frozen=True)
class RunConfig:
    """Everything the CLI needs for one invocation."""

    settings: Settings
    content_root: Path
    env: InstallEnvironment
    tools: list[ToolConfig]

    @property
    def non_interactive(self) -> bool:
        return self.settings.non_interactive


def build_run_config(ctx: ResolutionContext | None = None) -> RunConfig:
    """Assemble settings, content source, overlay and tool configuration.

    Raises:
        ConfigError: If any configuration layer is invalid
    """
    ctx = ctx or ResolutionContext.from_environment()
    settings = Settings.from_environment(ctx)
    content_root = discover_content_root(settings, ctx)
    source_root = templates_dir(content_root)
    logger.debug("content root %s, reading templates from %s", content_root, source_root)
    env = InstallEnvironment(
        ctx=ctx,
        source=FilesystemSource(source_root),
        overlay=Overlay.load(content_root / BRAIN_CONFIG_FILENAME),
        cache_root=resolve_cache_root(settings, ctx),
        content_root=source_root,
    )
    return RunConfig(
        settings=settings,
        content_root=content_root,
        env=env,
        tools=load_tools(content_root),
    )
