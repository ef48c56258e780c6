"""Per-entity overlays from brain.config.json.

Shape::

    {
      "agents":   {"<agent>":   {"<tool>": null | {...frontmatter...}}},
      "commands": {"<command>": {"<tool>": null}},
      "hooks":    {"<tool>": {"source": "hooks/claude.json"}},
      "targets":  {"<tool>": {"prefix": true}}
    }

A null value means "this tool does not ship this entity". A missing value
means "ship it with the common frontmatter only".
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from brain_installer.exceptions import ConfigError

# Agent-level keys that are not tool slugs
_RESERVED_AGENT_KEYS = frozenset({"source", "description"})


@dataclass(frozen=True)
class Overlay:
    """Parsed brain.config.json customisations."""

    agents: dict[str, dict[str, dict[str, Any] | None]] = field(default_factory=dict)
    commands: dict[str, dict[str, dict[str, Any] | None]] = field(default_factory=dict)
    hooks: dict[str, dict[str, Any]] = field(default_factory=dict)
    targets: dict[str, dict[str, Any]] = field(default_factory=dict)
    version: str | None = None

    @classmethod
    def load(cls, path: Path) -> "Overlay":
        """Load an overlay file; a missing file yields an empty overlay.

        Raises:
            ConfigError: If the file is not valid JSON or has the wrong shape
        """
        if not path.is_file():
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Failed to parse {path}: {e}") from e
        return cls.from_dict(data, str(path))

    @classmethod
    def from_dict(cls, data: Any, where: str = "brain.config.json") -> "Overlay":
        if not isinstance(data, dict):
            raise ConfigError(f"{where}: expected a JSON object")
        return cls(
            agents=_entity_map(data.get("agents"), "agents", where),
            commands=_entity_map(data.get("commands"), "commands", where),
            hooks=_tool_map(data.get("hooks"), "hooks", where),
            targets=_tool_map(data.get("targets"), "targets", where),
            version=str(data["version"]) if data.get("version") else None,
        )

    def skips_agent(self, agent: str, tool: str) -> bool:
        """True when the agent's overlay for this tool is explicit null."""
        entry = self.agents.get(agent, {})
        return tool in entry and entry[tool] is None

    def agent_fields(self, agent: str, tool: str) -> dict[str, Any]:
        """Frontmatter values to merge into the agent for this tool."""
        return dict(self.agents.get(agent, {}).get(tool) or {})

    def skips_command(self, command: str, tool: str) -> bool:
        entry = self.commands.get(command, {})
        return tool in entry and entry[tool] is None

    def hook_source(self, tool: str) -> str | None:
        source = self.hooks.get(tool, {}).get("source")
        return str(source) if source else None

    def prefix_for(self, tool: str) -> bool | None:
        value = self.targets.get(tool, {}).get("prefix")
        return None if value is None else bool(value)


def _tool_map(raw: Any, section: str, where: str) -> dict[str, dict[str, Any]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: '{section}' must be an object")
    result = {}
    for tool, value in raw.items():
        if value is None:
            continue
        if not isinstance(value, dict):
            raise ConfigError(f"{where}: '{section}.{tool}' must be an object")
        result[str(tool)] = value
    return result


def _entity_map(raw: Any, section: str, where: str) -> dict[str, dict[str, dict[str, Any] | None]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: '{section}' must be an object")
    result: dict[str, dict[str, dict[str, Any] | None]] = {}
    for entity, per_tool in raw.items():
        if not isinstance(per_tool, dict):
            raise ConfigError(f"{where}: '{section}.{entity}' must be an object")
        tools: dict[str, dict[str, Any] | None] = {}
        for tool, value in per_tool.items():
            if tool in _RESERVED_AGENT_KEYS:
                continue
            if value is not None and not isinstance(value, dict):
                raise ConfigError(
                    f"{where}: '{section}.{entity}.{tool}' must be null or an object"
                )
            tools[str(tool)] = value
        result[str(entity)] = tools
    return result
