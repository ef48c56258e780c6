"""Centralized constants for the brain installer."""

# Identifying prefix for emitted content (brain emoji + dash)
BRAIN_PREFIX = "\U0001F9E0-"

# Canonical content layout
AGENTS_SUBDIR = "agents"
SKILLS_SUBDIR = "skills"
COMMANDS_SUBDIR = "commands"
PROTOCOLS_SUBDIR = "protocols"
RULES_SUBDIR = "rules"
HOOKS_SUBDIR = "hooks"
HOOK_SCRIPTS_SUBDIR = "hooks/scripts"
INSTRUCTIONS_SUBDIR = "instructions"
TEMPLATES_SUBDIR = "templates"
MCP_FILENAME = "mcp.json"
LEGACY_MCP_PATH = "configs/mcp.json"
HOOKS_FILENAME = "hooks.json"

# Compose layer
ORDER_FILENAME = "_order.yaml"
VARIABLES_FILENAME = "_variables.yaml"
SECTIONS_SUBDIR = "sections"
VARIANT_INSERT = "VARIANT_INSERT"

# Project configuration files
BRAIN_CONFIG_FILENAME = "brain.config.json"
TOOLS_FILENAME = "tools.yaml"
LEGACY_TOOLS_FILENAME = "tools.config.yaml"
SETTINGS_FILENAME = "installer.toml"

# Application directory under the XDG roots
APP_DIR_NAME = "brain"

# Plugin manifests written for marketplace-type tools
PLUGIN_MANIFEST_DIR = ".claude-plugin"
DEFAULT_MARKETPLACE_NAME = "brain"
DEFAULT_MARKETPLACE_REGISTRY = "plugins/known_marketplaces.json"

# Entries never copied from canonical skill trees
SKIPPED_NAMES = frozenset({"node_modules", ".git", ".DS_Store"})

# Environment overrides
ENV_CONTENT_ROOT = "BRAIN_CONTENT_ROOT"
ENV_CACHE_DIR = "BRAIN_CACHE_DIR"
ENV_NON_INTERACTIVE = "BRAIN_NON_INTERACTIVE"
