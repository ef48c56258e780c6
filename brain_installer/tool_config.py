"""Tool configuration loaded from tools.yaml.

Each host tool is described by one stanza under ``tools:``. Adding a tool
is a data change: the stanza is parsed into a ToolConfig and handled by the
generic ToolHandler.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from brain_installer.constants import (
    DEFAULT_MARKETPLACE_NAME,
    DEFAULT_MARKETPLACE_REGISTRY,
    LEGACY_TOOLS_FILENAME,
    TOOLS_FILENAME,
)
from brain_installer.exceptions import ConfigError
from brain_installer.paths import ResolutionContext, resolve_template, validate_identifier

_SLUG_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise ConfigError(f"Duplicate key '{key}' (line {key_node.start_mark.line + 1})")
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class Strategy(str, Enum):
    """How a host-shared config (hooks, MCP) is placed."""

    DIRECT = "direct"
    MERGE = "merge"
    NONE = "none"


class PlacementType(str, Enum):
    """How generated content reaches the host tool."""

    MARKETPLACE = "marketplace"
    COPY_AND_MERGE = "copy_and_merge"


class ManifestType(str, Enum):
    """Which plugin manifest the engine emits."""

    MARKETPLACE = "marketplace"
    FILE_LIST = "file_list"


class DetectionType(str, Enum):
    """How to tell whether our plugin is already installed."""

    JSON_KEY = "json_key"
    PREFIX_SCAN = "prefix_scan"


@dataclass(frozen=True)
class AgentsConfig:
    frontmatter: tuple[str, ...]


@dataclass(frozen=True)
class RulesConfig:
    extension: str = ".md"
    extra_frontmatter: dict[str, Any] = field(default_factory=dict)
    variant: str | None = None
    routing: dict[str, str] = field(default_factory=dict)
    instructions_path: str | None = None


@dataclass(frozen=True)
class ContentAxis:
    """Flags for the skills and commands axes."""

    prefix: bool | None = None
    copy: bool = True


@dataclass(frozen=True)
class SharedConfigSpec:
    strategy: Strategy
    target: str | None = None


@dataclass(frozen=True)
class DetectionCheck:
    type: DetectionType
    file: str | None = None
    key: str | None = None
    dirs: tuple[str, ...] = ()


@dataclass(frozen=True)
class MarketplaceConfig:
    name: str = DEFAULT_MARKETPLACE_NAME
    registry: str = DEFAULT_MARKETPLACE_REGISTRY


@dataclass(frozen=True)
class ToolConfig:
    """Declarative description of one host tool."""

    name: str
    display_name: str
    config_dir: str
    scopes: dict[str, str]
    default_scope: str
    prefix: bool = False
    agents: AgentsConfig | None = None
    rules: RulesConfig | None = None
    skills: ContentAxis | None = None
    commands: ContentAxis | None = None
    hooks: SharedConfigSpec | None = None
    mcp: SharedConfigSpec | None = None
    manifest_type: ManifestType = ManifestType.FILE_LIST
    placement: PlacementType = PlacementType.COPY_AND_MERGE
    detection: DetectionCheck | None = None
    marketplace: MarketplaceConfig = field(default_factory=MarketplaceConfig)
    disabled: bool = False

    @property
    def variant(self) -> str:
        """Compose variant used for this tool's documents."""
        if self.rules and self.rules.variant:
            return self.rules.variant
        return self.name

    def resolve_config_dir(self, ctx: ResolutionContext) -> Path:
        try:
            return resolve_template(self.config_dir, ctx)
        except ConfigError as e:
            raise ConfigError(f"Tool '{self.name}' config_dir: {e}", tool=self.name) from e

    def resolve_scope_root(self, ctx: ResolutionContext, scope: str | None = None) -> Path:
        """Resolve the absolute root directory of a scope.

        Args:
            ctx: Resolution context
            scope: Scope name, defaults to default_scope

        Raises:
            ConfigError: If the scope is unknown or the template is invalid
        """
        scope = scope or self.default_scope
        if scope not in self.scopes:
            raise ConfigError(
                f"Tool '{self.name}' has no scope '{scope}' "
                f"(available: {', '.join(sorted(self.scopes))})",
                tool=self.name,
            )
        config_dir = self.resolve_config_dir(ctx)
        try:
            return resolve_template(self.scopes[scope], ctx.with_scope(scope, config_dir))
        except ConfigError as e:
            raise ConfigError(f"Tool '{self.name}' scope '{scope}': {e}", tool=self.name) from e

    @classmethod
    def from_dict(cls, key: str, data: Any) -> "ToolConfig":
        """Create a ToolConfig from a tools.yaml stanza.

        Every problem in the stanza is collected and reported together.

        Raises:
            ConfigError: If the stanza is invalid
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Tool '{key}': stanza must be a mapping", tool=key)

        errors: list[str] = []
        name = data.get("name", key)
        if not name:
            errors.append("name is required")
        elif name != key:
            errors.append(f"name '{name}' does not match its key '{key}'")
        elif not _SLUG_PATTERN.match(str(name)):
            errors.append(f"name '{name}' must be kebab-case")

        display_name = data.get("display_name")
        if not display_name:
            errors.append("display_name is required")

        config_dir = data.get("config_dir")
        if not config_dir or not isinstance(config_dir, str):
            errors.append("config_dir is required")

        scopes = data.get("scopes") or {}
        if not isinstance(scopes, dict) or not scopes:
            errors.append("at least one scope is required")
            scopes = {}
        for scope_name, template in scopes.items():
            try:
                validate_identifier(str(scope_name), "scopes")
            except ConfigError as e:
                errors.append(str(e))
            if not isinstance(template, str) or not template.strip():
                errors.append(f"scope '{scope_name}' needs a path template")

        default_scope = data.get("default_scope")
        if scopes and default_scope not in scopes:
            errors.append(f"default_scope '{default_scope}' is not one of the scopes")

        agents = None
        if "agents" in data:
            keys = (data.get("agents") or {}).get("frontmatter")
            if not isinstance(keys, list) or not keys:
                errors.append("agents.frontmatter must be a non-empty list")
            else:
                agents = AgentsConfig(frontmatter=tuple(str(k) for k in keys))

        rules = None
        if "rules" in data:
            rules = _parse_rules(data.get("rules") or {}, errors)

        skills = _parse_axis(data, "skills", errors)
        commands = _parse_axis(data, "commands", errors)
        hooks = _parse_shared(data, "hooks", errors)
        mcp = _parse_shared(data, "mcp", errors)

        manifest_type = _parse_enum(
            ManifestType, (data.get("manifest") or {}).get("type", "file_list"), "manifest.type", errors
        )
        placement = _parse_enum(
            PlacementType, data.get("placement", "copy_and_merge"), "placement", errors
        )
        detection = _parse_detection(data.get("detection") or {}, errors)

        raw_marketplace = data.get("marketplace") or {}
        marketplace = MarketplaceConfig(
            name=raw_marketplace.get("name", DEFAULT_MARKETPLACE_NAME),
            registry=raw_marketplace.get("registry", DEFAULT_MARKETPLACE_REGISTRY),
        )
        try:
            validate_identifier(marketplace.name, "marketplace.name")
        except ConfigError as e:
            errors.append(str(e))

        if errors:
            details = "\n".join(f"  - {error}" for error in errors)
            raise ConfigError(f"Invalid configuration for tool '{key}':\n{details}", tool=key)

        return cls(
            name=name,
            display_name=display_name,
            config_dir=config_dir,
            scopes={str(k): v for k, v in scopes.items()},
            default_scope=default_scope,
            prefix=bool(data.get("prefix", False)),
            agents=agents,
            rules=rules,
            skills=skills,
            commands=commands,
            hooks=hooks,
            mcp=mcp,
            manifest_type=manifest_type,
            placement=placement,
            detection=detection,
            marketplace=marketplace,
            disabled=bool(data.get("disabled", False)),
        )


def _parse_enum(enum_cls, value: Any, field_name: str, errors: list[str]):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        errors.append(f"{field_name} '{value}' is invalid (expected one of: {allowed})")
        return None


def _parse_rules(raw: Any, errors: list[str]) -> RulesConfig | None:
    if not isinstance(raw, dict):
        errors.append("rules must be a mapping")
        return None
    extension = raw.get("extension", ".md")
    if not isinstance(extension, str) or not extension.startswith("."):
        errors.append(f"rules.extension '{extension}' must start with '.'")
    extra = raw.get("extra_frontmatter") or {}
    if not isinstance(extra, dict):
        errors.append("rules.extra_frontmatter must be a mapping")
        extra = {}
    routing = raw.get("routing") or {}
    if not isinstance(routing, dict):
        errors.append("rules.routing must be a mapping")
        routing = {}
    variant = raw.get("variant")
    if variant is not None:
        try:
            validate_identifier(str(variant), "rules.variant")
        except ConfigError as e:
            errors.append(str(e))
    return RulesConfig(
        extension=extension,
        extra_frontmatter=dict(extra),
        variant=variant,
        routing={str(k): str(v) for k, v in routing.items()},
        instructions_path=raw.get("instructions_path"),
    )


def _parse_axis(data: dict, key: str, errors: list[str]) -> ContentAxis | None:
    if key not in data:
        return None
    raw = data.get(key) or {}
    if not isinstance(raw, dict):
        errors.append(f"{key} must be a mapping")
        return None
    prefix = raw.get("prefix")
    return ContentAxis(
        prefix=None if prefix is None else bool(prefix),
        copy=bool(raw.get("copy", True)),
    )


def _parse_shared(data: dict, key: str, errors: list[str]) -> SharedConfigSpec | None:
    if key not in data:
        return None
    raw = data.get(key) or {}
    if not isinstance(raw, dict):
        errors.append(f"{key} must be a mapping")
        return None
    strategy = _parse_enum(Strategy, raw.get("strategy", "none"), f"{key}.strategy", errors)
    target = raw.get("target")
    if strategy in (Strategy.DIRECT, Strategy.MERGE) and not target:
        errors.append(f"{key}.target is required for strategy '{strategy.value}'")
    return SharedConfigSpec(strategy=strategy, target=target)


def _parse_detection(raw: Any, errors: list[str]) -> DetectionCheck | None:
    if not isinstance(raw, dict):
        errors.append("detection must be a mapping")
        return None
    check = raw.get("brain_installed")
    if not check:
        return None
    if not isinstance(check, dict):
        errors.append("detection.brain_installed must be a mapping")
        return None
    detection_type = _parse_enum(
        DetectionType, check.get("type"), "detection.brain_installed.type", errors
    )
    if detection_type == DetectionType.JSON_KEY and not (check.get("file") and check.get("key")):
        errors.append("detection.brain_installed json_key needs 'file' and 'key'")
    dirs = check.get("dirs") or []
    if detection_type == DetectionType.PREFIX_SCAN and not dirs:
        errors.append("detection.brain_installed prefix_scan needs 'dirs'")
    return DetectionCheck(
        type=detection_type,
        file=check.get("file"),
        key=check.get("key"),
        dirs=tuple(str(d) for d in dirs),
    )


def parse_tools(text: str, where: str = TOOLS_FILENAME) -> list[ToolConfig]:
    """Parse tools.yaml content into ToolConfig objects (disabled included).

    Raises:
        ConfigError: If the YAML is malformed or any stanza is invalid
    """
    try:
        raw = yaml.load(text, Loader=_UniqueKeyLoader)
    except ConfigError as e:
        raise ConfigError(f"{where}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {where}: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("tools"), dict):
        raise ConfigError(f"{where}: expected a top-level 'tools' mapping")
    if not raw["tools"]:
        raise ConfigError(f"{where}: no tools defined")

    tools: list[ToolConfig] = []
    problems: list[str] = []
    for key, stanza in raw["tools"].items():
        try:
            tools.append(ToolConfig.from_dict(str(key), stanza))
        except ConfigError as e:
            problems.append(str(e))
    if problems:
        raise ConfigError("\n".join(problems))
    return tools


def load_tools_file(path: Path) -> list[ToolConfig]:
    """Load and parse a tools.yaml file."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigError(f"Tool configuration not found: {path}") from e
    return parse_tools(text, str(path))


def find_tools_file(project_root: Path) -> Path | None:
    """Find tools.yaml (or the legacy tools.config.yaml) in a project root."""
    for name in (TOOLS_FILENAME, LEGACY_TOOLS_FILENAME):
        candidate = project_root / name
        if candidate.is_file():
            return candidate
    return None


def load_default_tools() -> list[ToolConfig]:
    """Load the tools.yaml bundled with the package."""
    text = resources.files("brain_installer").joinpath("data").joinpath(TOOLS_FILENAME).read_text(
        encoding="utf-8"
    )
    return parse_tools(text, f"<bundled {TOOLS_FILENAME}>")
