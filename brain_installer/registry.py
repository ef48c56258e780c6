"""Registry of tool handlers.

Seeded once at startup from tools.yaml and read-only afterwards. Every
enabled stanza becomes one generic ToolHandler.

Thread-safe: All registry operations are protected by a lock.
"""

import threading
from typing import Iterable

from brain_installer.exceptions import ConfigError
from brain_installer.handler import ToolHandler
from brain_installer.tool_config import ToolConfig

# Module-level registry with lock for thread safety
_registry_lock = threading.Lock()
_handlers: dict[str, ToolHandler] = {}


def register_tool(tool: ToolConfig) -> ToolHandler:
    """Register a tool configuration.

    Args:
        tool: The tool configuration

    Returns:
        The handler created for the tool

    Raises:
        ConfigError: If a tool with the same slug is already registered
    """
    handler = ToolHandler(tool)
    with _registry_lock:
        if tool.name in _handlers:
            raise ConfigError(f"Duplicate tool slug '{tool.name}'", tool=tool.name)
        _handlers[tool.name] = handler
    return handler


def register_tools(tools: Iterable[ToolConfig]) -> list[str]:
    """Register every tool that is not marked disabled.

    Returns:
        Slugs registered, in input order
    """
    registered = []
    for tool in tools:
        if tool.disabled:
            continue
        register_tool(tool)
        registered.append(tool.name)
    return registered


def get_handler(name: str) -> ToolHandler | None:
    """Get a handler by tool slug.

    Returns:
        The ToolHandler or None if not registered
    """
    with _registry_lock:
        return _handlers.get(name)


def get_all_handlers() -> dict[str, ToolHandler]:
    """Get all registered handlers, in registration order."""
    with _registry_lock:
        return _handlers.copy()


def registered_tools() -> list[str]:
    with _registry_lock:
        return list(_handlers)


# --- Test utilities for registry isolation ---


def clear_registry() -> None:
    """Remove every registered handler."""
    with _registry_lock:
        _handlers.clear()


def get_registry_snapshot() -> dict[str, ToolHandler]:
    """Get a snapshot of the current registry state."""
    with _registry_lock:
        return _handlers.copy()


def restore_registry_snapshot(snapshot: dict[str, ToolHandler]) -> None:
    """Restore registry state from a snapshot.

    Args:
        snapshot: Value returned by get_registry_snapshot()
    """
    with _registry_lock:
        _handlers.clear()
        _handlers.update(snapshot)
