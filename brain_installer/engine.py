"""Transform engine: canonical content -> generated files for one tool.

The engine runs its phases in a fixed order (agents, skills, commands,
rules, host-shared configs, plugin manifests). A phase whose tool-config
section is absent is skipped. The result is either the complete set of
files or an exception; nothing is written to disk here.
"""

import json
import logging
import posixpath
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from brain_installer import __version__
from brain_installer.compose import compose, is_composable
from brain_installer.constants import (
    AGENTS_SUBDIR,
    BRAIN_PREFIX,
    COMMANDS_SUBDIR,
    HOOK_SCRIPTS_SUBDIR,
    HOOKS_FILENAME,
    HOOKS_SUBDIR,
    INSTRUCTIONS_SUBDIR,
    LEGACY_MCP_PATH,
    MCP_FILENAME,
    PLUGIN_MANIFEST_DIR,
    PROTOCOLS_SUBDIR,
    RULES_SUBDIR,
    SKILLS_SUBDIR,
)
from brain_installer.exceptions import BrainInstallerError, CollisionError, ComposeError
from brain_installer.frontmatter import parse_frontmatter, render_document
from brain_installer.jsonmerge import dumps, format_pointer
from brain_installer.overlay import Overlay
from brain_installer.source import TemplateSource, clean_relative, is_file, join, walk_files
from brain_installer.tool_config import ManifestType, SharedConfigSpec, Strategy, ToolConfig

logger = logging.getLogger(__name__)


class FileKind(str, Enum):
    """What the pipeline does with a generated file."""

    VERBATIM = "verbatim"
    RENDERED = "rendered"
    MERGE_PAYLOAD = "merge_payload"
    MANIFEST_ENTRY = "manifest_entry"


@dataclass(frozen=True)
class GeneratedFile:
    """One output of the engine, relative to the tool's scope root.

    For merge payloads ``content_bytes`` is the JSON subtree to merge into
    the host file at ``path`` and ``source_refs`` lists the key pointers it
    introduces. For every other kind ``source_refs`` names the canonical
    files that contributed.
    """

    path: str
    content_bytes: bytes
    kind: FileKind
    source_refs: tuple[str, ...] = ()

    @property
    def is_merge_payload(self) -> bool:
        return self.kind == FileKind.MERGE_PAYLOAD

    def payload(self) -> dict[str, Any]:
        return json.loads(self.content_bytes.decode("utf-8"))


def maybe_prefix(name: str, enabled: bool) -> str:
    """Add the identifying prefix once; applying it twice is a no-op."""
    if not enabled or name.startswith(BRAIN_PREFIX):
        return name
    return BRAIN_PREFIX + name


def check_collisions(files: list[GeneratedFile]) -> None:
    """Fail if two generated files claim the same destination.

    Destinations differing only by case collide too, since macOS and
    Windows filesystems are case-insensitive.

    Raises:
        CollisionError: On the first duplicate destination
    """
    seen: dict[str, GeneratedFile] = {}
    for generated in files:
        key = generated.path.casefold()
        if key in seen:
            first = seen[key]
            raise CollisionError(
                f"'{generated.path}' is generated from both "
                f"{', '.join(first.source_refs) or first.path} and "
                f"{', '.join(generated.source_refs) or generated.path}"
            )
        seen[key] = generated


def _merge_fields(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class TransformEngine:
    """Generate the complete desired on-disk state for one tool.

    Args:
        tool: The tool's configuration
        source: Canonical content
        overlay: Per-entity customisations from brain.config.json
        content_root: Directory backing a filesystem source, used to resolve
            relative MCP server paths
        log: Logger for progress messages (defaults to the module logger)
    """

    def __init__(
        self,
        tool: ToolConfig,
        source: TemplateSource,
        overlay: Overlay | None = None,
        content_root: Path | None = None,
        log: logging.Logger | None = None,
    ):
        self.tool = tool
        self.source = source
        self.overlay = overlay or Overlay()
        self.content_root = content_root
        self.log = log or logger

    @property
    def prefix_enabled(self) -> bool:
        override = self.overlay.prefix_for(self.tool.name)
        return self.tool.prefix if override is None else override

    def _axis_prefix(self, axis) -> bool:
        if axis is not None and axis.prefix is not None:
            return axis.prefix
        return self.prefix_enabled

    def generate(self) -> list[GeneratedFile]:
        """Run every phase and return the files sorted by destination.

        Raises:
            CollisionError: If two files share a destination
            ComposeError: If a composable document cannot be built
            PathEscapeError: If a destination is not a clean relative path
        """
        phases: list[tuple[str, Callable[[], list[GeneratedFile]]]] = [
            ("agents", self._agents),
            ("skills", self._skills),
            ("commands", self._commands),
            ("rules", self._rules),
            ("shared configs", self._shared_configs),
            ("plugin manifests", self._plugin_manifests),
        ]
        files: list[GeneratedFile] = []
        try:
            for label, phase in phases:
                produced = phase()
                if produced:
                    self.log.debug("%s: %d file(s) from %s", self.tool.name, len(produced), label)
                files.extend(produced)
            for generated in files:
                clean_relative(generated.path)
            check_collisions(files)
        except BrainInstallerError as e:
            if e.tool is None:
                e.tool = self.tool.name
            raise
        return sorted(files, key=lambda f: f.path)

    # --- Phase 1: agents ---

    def _agents(self) -> list[GeneratedFile]:
        agents = self.tool.agents
        if agents is None or not self.source.exists(AGENTS_SUBDIR):
            return []

        files = []
        for entry in self.source.list_dir(AGENTS_SUBDIR):
            rel = join(AGENTS_SUBDIR, entry.name)
            if entry.is_dir:
                if not is_composable(self.source, rel):
                    continue
                canonical_name = entry.name
                document = compose(self.source, rel, self.tool.variant)
                fields, body, refs = dict(document.frontmatter), document.body, document.source_refs
            elif entry.name.endswith(".md"):
                canonical_name = entry.name[: -len(".md")]
                fields, body = parse_frontmatter(self.source.read_file(rel))
                refs = (rel,)
            else:
                continue

            if self.overlay.skips_agent(canonical_name, self.tool.name):
                self.log.debug("Skipping agent '%s' for %s", canonical_name, self.tool.name)
                continue

            extra = self.overlay.agent_fields(canonical_name, self.tool.name)
            fields = _merge_fields(fields, extra)
            emitted_name = maybe_prefix(str(extra.get("name") or canonical_name), self.prefix_enabled)
            if "name" in agents.frontmatter:
                fields["name"] = emitted_name

            files.append(
                GeneratedFile(
                    path=f"{AGENTS_SUBDIR}/{emitted_name}.md",
                    content_bytes=render_document(fields, agents.frontmatter, body),
                    kind=FileKind.RENDERED,
                    source_refs=refs,
                )
            )
        return files

    # --- Phase 2: skills ---

    def _skills(self) -> list[GeneratedFile]:
        axis = self.tool.skills
        if axis is None or not axis.copy or not self.source.exists(SKILLS_SUBDIR):
            return []

        prefix = self._axis_prefix(axis)
        files = []
        for entry in self.source.list_dir(SKILLS_SUBDIR):
            if not entry.is_dir:
                continue
            skill_root = join(SKILLS_SUBDIR, entry.name)
            target_root = f"{SKILLS_SUBDIR}/{maybe_prefix(entry.name, prefix)}"
            for rel in walk_files(self.source, skill_root):
                files.append(
                    GeneratedFile(
                        path=f"{target_root}/{posixpath.relpath(rel, skill_root)}",
                        content_bytes=self.source.read_file(rel),
                        kind=FileKind.VERBATIM,
                        source_refs=(rel,),
                    )
                )
        return files

    # --- Phase 3: commands ---

    def _commands(self) -> list[GeneratedFile]:
        axis = self.tool.commands
        if axis is None or not axis.copy or not self.source.exists(COMMANDS_SUBDIR):
            return []

        prefix = self._axis_prefix(axis)
        files = []
        for entry in self.source.list_dir(COMMANDS_SUBDIR):
            rel = join(COMMANDS_SUBDIR, entry.name)
            if entry.is_dir:
                if not is_composable(self.source, rel):
                    continue
                name = entry.name
                if self.overlay.skips_command(name, self.tool.name):
                    continue
                document = compose(self.source, rel, self.tool.variant)
                content = render_document(
                    document.frontmatter, list(document.frontmatter), document.body
                )
                kind, refs = FileKind.RENDERED, document.source_refs
            elif entry.name.endswith(".md"):
                name = entry.name[: -len(".md")]
                if self.overlay.skips_command(name, self.tool.name):
                    continue
                content, kind, refs = self.source.read_file(rel), FileKind.VERBATIM, (rel,)
            else:
                continue
            files.append(
                GeneratedFile(
                    path=f"{COMMANDS_SUBDIR}/{maybe_prefix(name, prefix)}.md",
                    content_bytes=content,
                    kind=kind,
                    source_refs=refs,
                )
            )
        return files

    # --- Phase 4: rules ---

    def _rule_path(self, name: str) -> str:
        rules = self.tool.rules
        filename = f"{maybe_prefix(name, self.prefix_enabled)}{rules.extension}"
        directory = rules.routing.get(name) or rules.routing.get(filename) or RULES_SUBDIR
        return posixpath.join(directory.strip("/"), filename)

    def _render_rule(self, fields: dict[str, Any], body: bytes) -> bytes:
        merged = _merge_fields(fields, self.tool.rules.extra_frontmatter)
        return render_document(merged, list(merged), body)

    def _rules(self) -> list[GeneratedFile]:
        rules = self.tool.rules
        if rules is None:
            return []

        files = []
        if self.source.exists(PROTOCOLS_SUBDIR):
            for entry in self.source.list_dir(PROTOCOLS_SUBDIR):
                rel = join(PROTOCOLS_SUBDIR, entry.name)
                if entry.is_dir:
                    if not is_composable(self.source, rel):
                        continue
                    document = compose(self.source, rel, self.tool.variant)
                    fields, body, refs = document.frontmatter, document.body, document.source_refs
                    name = entry.name
                elif entry.name.endswith(".md"):
                    fields, body = parse_frontmatter(self.source.read_file(rel))
                    refs = (rel,)
                    name = entry.name[: -len(".md")]
                else:
                    continue
                files.append(
                    GeneratedFile(
                        path=self._rule_path(name),
                        content_bytes=self._render_rule(fields, body),
                        kind=FileKind.RENDERED,
                        source_refs=refs,
                    )
                )

        if rules.instructions_path and is_composable(self.source, INSTRUCTIONS_SUBDIR):
            document = compose(self.source, INSTRUCTIONS_SUBDIR, self.tool.variant)
            files.append(
                GeneratedFile(
                    path=clean_relative(rules.instructions_path),
                    content_bytes=render_document(
                        document.frontmatter, list(document.frontmatter), document.body
                    ),
                    kind=FileKind.RENDERED,
                    source_refs=document.source_refs,
                )
            )
        return files

    # --- Phase 5: hooks and MCP ---

    def _shared_configs(self) -> list[GeneratedFile]:
        files = []
        hooks = self.tool.hooks
        if hooks is not None and hooks.strategy != Strategy.NONE:
            if self.source.exists(HOOK_SCRIPTS_SUBDIR):
                for rel in walk_files(self.source, HOOK_SCRIPTS_SUBDIR):
                    files.append(
                        GeneratedFile(
                            path=rel,
                            content_bytes=self.source.read_file(rel),
                            kind=FileKind.VERBATIM,
                            source_refs=(rel,),
                        )
                    )
            descriptor = self._first_existing(
                self.overlay.hook_source(self.tool.name),
                f"{HOOKS_SUBDIR}/{self.tool.name}.json",
                f"{HOOKS_SUBDIR}/{HOOKS_FILENAME}",
            )
            if descriptor:
                files.append(self._shared_file(hooks, descriptor, self.source.read_file(descriptor)))
            else:
                self.log.debug("No hook descriptor for %s", self.tool.name)

        mcp = self.tool.mcp
        if mcp is not None and mcp.strategy != Strategy.NONE:
            descriptor = self._first_existing(MCP_FILENAME, LEGACY_MCP_PATH)
            if descriptor:
                raw = self.source.read_file(descriptor)
                resolved = self._resolve_mcp_paths(self._load_descriptor(descriptor, raw))
                if resolved is not None:
                    raw = dumps(resolved)
                files.append(self._shared_file(mcp, descriptor, raw))
            else:
                self.log.debug("No MCP descriptor for %s", self.tool.name)
        return files

    def _first_existing(self, *candidates: str | None) -> str | None:
        for candidate in candidates:
            if candidate and is_file(self.source, candidate):
                return candidate
        return None

    def _load_descriptor(self, rel: str, raw: bytes) -> dict[str, Any]:
        try:
            document = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ComposeError(f"{rel} is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise ComposeError(f"{rel} must contain a JSON object")
        return document

    def _shared_file(self, spec: SharedConfigSpec, rel: str, raw: bytes) -> GeneratedFile:
        if spec.strategy == Strategy.DIRECT:
            return GeneratedFile(
                path=clean_relative(spec.target),
                content_bytes=raw,
                kind=FileKind.VERBATIM,
                source_refs=(rel,),
            )
        payload = self._load_descriptor(rel, raw)
        return GeneratedFile(
            path=clean_relative(spec.target),
            content_bytes=dumps(payload),
            kind=FileKind.MERGE_PAYLOAD,
            source_refs=tuple(format_pointer([key]) for key in payload),
        )

    def _resolve_mcp_paths(self, document: dict[str, Any]) -> dict[str, Any] | None:
        """Resolve './' arguments against the content root.

        Returns None when nothing changed so the descriptor is copied as is.
        """
        if self.content_root is None:
            return None
        servers = document.get("mcpServers")
        if not isinstance(servers, dict):
            return None

        root = self.content_root
        changed = False

        def _resolve(value: Any) -> Any:
            nonlocal changed
            if isinstance(value, str) and value.startswith("./"):
                changed = True
                return str(root / value[2:])
            return value

        resolved = json.loads(json.dumps(document))
        for server in resolved["mcpServers"].values():
            if not isinstance(server, dict):
                continue
            if isinstance(server.get("args"), list):
                server["args"] = [_resolve(arg) for arg in server["args"]]
            for key in ("command", "cwd"):
                if key in server:
                    server[key] = _resolve(server[key])
        return resolved if changed else None

    # --- Plugin manifests ---

    def _plugin_manifests(self) -> list[GeneratedFile]:
        if self.tool.manifest_type != ManifestType.MARKETPLACE:
            return []

        name = self.tool.marketplace.name
        version = self.overlay.version or __version__
        description = f"{name} plugin for {self.tool.display_name}"
        plugin = {"name": name, "version": version, "description": description}
        marketplace = {
            "name": name,
            "owner": {"name": name},
            "plugins": [{"name": name, "source": "./", "description": description, "version": version}],
        }
        return [
            GeneratedFile(
                path=f"{PLUGIN_MANIFEST_DIR}/plugin.json",
                content_bytes=dumps(plugin),
                kind=FileKind.MANIFEST_ENTRY,
            ),
            GeneratedFile(
                path=f"{PLUGIN_MANIFEST_DIR}/marketplace.json",
                content_bytes=dumps(marketplace),
                kind=FileKind.MANIFEST_ENTRY,
            ),
        ]
