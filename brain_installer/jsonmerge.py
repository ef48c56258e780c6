"""JSON primitives for host-shared configuration files.

Merging uses RFC 7396 (JSON Merge Patch) rather than RFC 6902 (JSON Patch):
what the installer adds to a host file (a hooks block, an MCP server entry)
is itself a partial document, not an edit script. Merge Patch semantics:

- objects merge recursively
- scalars overwrite
- explicit nulls delete
- arrays overwrite as whole values

Keys are addressed with RFC 6901 JSON Pointers (``/mcpServers/brain``). The
pointers of every key a merge introduces are recorded in the install
manifest so uninstall can delete exactly those keys and nothing else.
"""

import copy
import json
import re
from dataclasses import dataclass
from typing import Any, Iterable

from brain_installer.exceptions import MergeConflictError

_MISSING = object()


@dataclass(frozen=True)
class JsonStyle:
    """Formatting detected in an existing file, reused when rewriting it."""

    indent: int | str = 2
    trailing_newline: bool = True


def parse_pointer(pointer: str) -> list[str]:
    """Split a JSON Pointer into unescaped reference tokens."""
    if pointer == "":
        return []
    if not pointer.startswith("/"):
        raise ValueError(f"Invalid JSON Pointer '{pointer}': must start with '/'")
    return [token.replace("~1", "/").replace("~0", "~") for token in pointer[1:].split("/")]


def format_pointer(tokens: Iterable[str]) -> str:
    """Build a JSON Pointer from reference tokens."""
    return "".join("/" + str(t).replace("~", "~0").replace("/", "~1") for t in tokens)


def to_pointer(path: str) -> str:
    """Accept either a JSON Pointer or a dotted path (``mcpServers.brain``)."""
    if path.startswith("/") or path == "":
        return path
    return format_pointer(path.split("."))


def get_path(document: Any, pointer: str, default: Any = None) -> Any:
    """Look up a value by JSON Pointer, returning ``default`` when absent."""
    current = document
    for token in parse_pointer(pointer):
        if isinstance(current, dict) and token in current:
            current = current[token]
        elif isinstance(current, list) and re.fullmatch(r"0|[1-9][0-9]*", token) and int(token) < len(current):
            current = current[int(token)]
        else:
            return default
    return current


def has_path(document: Any, pointer: str) -> bool:
    return get_path(document, pointer, _MISSING) is not _MISSING


def set_path(document: dict, pointer: str, value: Any) -> None:
    """Set a value by JSON Pointer, creating intermediate objects.

    Only object members are addressable; the rest of the document is left
    untouched, including key order.
    """
    tokens = parse_pointer(pointer)
    if not tokens:
        raise ValueError("Cannot replace the document root")
    current = document
    for token in tokens[:-1]:
        child = current.get(token)
        if not isinstance(child, dict):
            child = {}
            current[token] = child
        current = child
    current[tokens[-1]] = value


def delete_path(document: dict, pointer: str) -> bool:
    """Delete a key by JSON Pointer. Returns False if it was not present."""
    tokens = parse_pointer(pointer)
    if not tokens:
        raise ValueError("Cannot delete the document root")
    current = document
    for token in tokens[:-1]:
        current = current.get(token) if isinstance(current, dict) else None
        if not isinstance(current, dict):
            return False
    if tokens[-1] not in current:
        return False
    del current[tokens[-1]]
    return True


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7396 merge patch, returning a new document."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def plan_merge(target: dict, patch: dict, where: str = "") -> list[str]:
    """Compute the key pointers a merge patch would introduce.

    A key is introduced when it is absent from ``target``; nested objects
    present on both sides are descended into. A key present in ``target``
    with an equal value is left alone. A key present with a different value
    belongs to someone else, and the merge is refused.

    Returns:
        Sorted pointers of the keys the merge adds

    Raises:
        MergeConflictError: If the patch would overwrite or delete a key it
            does not own
    """
    added: list[str] = []

    def _walk(current: Any, incoming: dict, tokens: list[str]) -> None:
        for key, value in incoming.items():
            path = tokens + [key]
            if not isinstance(current, dict) or key not in current:
                if value is not None:
                    added.append(format_pointer(path))
                continue
            existing = current[key]
            if isinstance(existing, dict) and isinstance(value, dict):
                _walk(existing, value, path)
            elif existing != value:
                raise MergeConflictError(
                    f"{where}: key '{format_pointer(path)}' already exists with a different value"
                )

    _walk(target, patch, [])
    return sorted(added)


def detect_style(text: str) -> JsonStyle:
    """Guess the indentation and trailing newline of a JSON text."""
    match = re.search(r"^[\[{][ \t]*\r?\n([ \t]+)\S", text, re.MULTILINE)
    indent: int | str = 2
    if match:
        whitespace = match.group(1)
        indent = whitespace if "\t" in whitespace else len(whitespace)
    return JsonStyle(indent=indent, trailing_newline=text.endswith("\n"))


def dumps(document: Any, style: JsonStyle | None = None) -> bytes:
    """Serialize a JSON document deterministically."""
    style = style or JsonStyle()
    text = json.dumps(document, indent=style.indent, ensure_ascii=False)
    if style.trailing_newline:
        text += "\n"
    return text.encode("utf-8")


def loads_object(data: bytes, where: str) -> dict:
    """Parse a host JSON file that must hold an object.

    Empty content is treated as an empty object.

    Raises:
        MergeConflictError: If the content is not a JSON object
    """
    if not data.strip():
        return {}
    try:
        document = json.loads(data.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MergeConflictError(f"{where} is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise MergeConflictError(f"{where} does not contain a JSON object")
    return document
