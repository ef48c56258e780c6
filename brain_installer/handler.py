"""Generic per-tool handler.

There is no handler class per host tool: a single ToolHandler is
parameterised by a ToolConfig value, so adding a tool is a data change in
tools.yaml.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from brain_installer.constants import BRAIN_PREFIX
from brain_installer.engine import TransformEngine
from brain_installer.exceptions import BrainInstallerError, MergeConflictError
from brain_installer.fsutil import scan_prefixed
from brain_installer.jsonmerge import has_path, loads_object, to_pointer
from brain_installer.manifest import InstallManifest, load_manifest, manifest_path
from brain_installer.overlay import Overlay
from brain_installer.paths import ResolutionContext, ensure_within, resolve_template, scoped_path
from brain_installer.placement import InstallPlan, PlacementContext, UninstallPlan
from brain_installer.source import TemplateSource
from brain_installer.tool_config import DetectionType, PlacementType, ToolConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallEnvironment:
    """Inputs shared by every tool in one run."""

    ctx: ResolutionContext
    source: TemplateSource
    overlay: Overlay
    cache_root: Path
    content_root: Path | None = None


@dataclass(frozen=True)
class ToolStatus:
    """What `status` reports for one tool."""

    name: str
    display_name: str
    tool_installed: bool
    plugin_installed: bool | None
    manifest_path: Path
    manifest: InstallManifest | None = None
    scope_root: Path | None = None
    error: str | None = None


class ToolHandler:
    """Plans installs, uninstalls and status checks for one tool."""

    def __init__(self, tool: ToolConfig):
        self.tool = tool

    def __repr__(self) -> str:
        return f"ToolHandler({self.tool.name!r})"

    def prefix_enabled(self, env: InstallEnvironment) -> bool:
        override = env.overlay.prefix_for(self.tool.name)
        return self.tool.prefix if override is None else override

    def placement_context(
        self,
        env: InstallEnvironment,
        scope: str | None = None,
        log: logging.Logger | None = None,
    ) -> PlacementContext:
        scope = scope or self.tool.default_scope
        return PlacementContext(
            tool=self.tool,
            scope=scope,
            scope_root=self.tool.resolve_scope_root(env.ctx, scope),
            config_dir=self.tool.resolve_config_dir(env.ctx),
            cache_root=env.cache_root,
            prefix=self.prefix_enabled(env),
            log=log or logger,
        )

    def plan_install(
        self,
        env: InstallEnvironment,
        scope: str | None = None,
        log: logging.Logger | None = None,
    ) -> InstallPlan:
        """Generate files and build the install plan.

        Nothing touches the filesystem here; every plan-time error
        (configuration, path escape, collision, compose) is raised before
        any step exists.
        """
        ctx = self.placement_context(env, scope, log)
        files = TransformEngine(
            self.tool,
            env.source,
            overlay=env.overlay,
            content_root=env.content_root,
            log=ctx.log,
        ).generate()
        try:
            for generated in files:
                scoped_path(ctx.scope_root, generated.path)
            if self.tool.placement == PlacementType.MARKETPLACE:
                ensure_within(ctx.config_dir, self.tool.marketplace.registry)
        except BrainInstallerError as e:
            e.tool = e.tool or self.tool.name
            raise
        ctx.log.info(
            "%s: %d generated file(s) for scope '%s' at %s",
            self.tool.name,
            len(files),
            ctx.scope,
            ctx.scope_root,
        )
        return InstallPlan(ctx, files)

    def plan_uninstall(
        self,
        env: InstallEnvironment,
        scope: str | None = None,
        log: logging.Logger | None = None,
    ) -> UninstallPlan:
        return UninstallPlan(self.placement_context(env, scope, log))

    def detect_plugin(self, env: InstallEnvironment, ctx: PlacementContext) -> bool | None:
        """Answer "is our plugin installed?" using the tool's detection check.

        Returns None when the tool declares no check.
        """
        check = self.tool.detection
        if check is None:
            return None
        if check.type == DetectionType.JSON_KEY:
            if check.file.startswith(("~", "/", "$", "{")):
                path = resolve_template(check.file, env.ctx.with_scope(ctx.scope, ctx.config_dir))
            else:
                path = ensure_within(ctx.config_dir, check.file)
            if not path.is_file():
                return False
            try:
                document = loads_object(path.read_bytes(), str(path))
            except MergeConflictError as e:
                logger.debug("detection file unreadable: %s", e)
                return False
            return has_path(document, to_pointer(check.key))
        return any(
            scan_prefixed(ensure_within(ctx.scope_root, directory), BRAIN_PREFIX)
            for directory in check.dirs
        )

    def status(self, env: InstallEnvironment) -> ToolStatus:
        """Collect status without raising for per-tool problems."""
        manifest_file = manifest_path(env.cache_root, self.tool.name)
        try:
            ctx = self.placement_context(env)
            return ToolStatus(
                name=self.tool.name,
                display_name=self.tool.display_name,
                tool_installed=ctx.config_dir.is_dir(),
                plugin_installed=self.detect_plugin(env, ctx),
                manifest_path=ctx.manifest_file,
                manifest=load_manifest(ctx.manifest_file),
                scope_root=ctx.scope_root,
            )
        except BrainInstallerError as e:
            return ToolStatus(
                name=self.tool.name,
                display_name=self.tool.display_name,
                tool_installed=False,
                plugin_installed=None,
                manifest_path=manifest_file,
                error=str(e),
            )
