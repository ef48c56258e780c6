"""YAML frontmatter parsing and emission."""

import re
from typing import Any, Iterable, Mapping

import yaml

from brain_installer.exceptions import ComposeError

_OPENING = re.compile(rb"\A---[ \t]*\r?\n")
_CLOSING = re.compile(rb"^---[ \t]*(?:\r?\n|\Z)", re.MULTILINE)


def parse_frontmatter(data: bytes) -> tuple[dict[str, Any], bytes]:
    """Split a document into its frontmatter map and body.

    A document has frontmatter only when it starts with a ``---`` line and a
    later ``---`` line closes the block. Without one, the map is empty and
    the body is the whole input.

    Args:
        data: Raw document bytes

    Returns:
        Tuple of (frontmatter map, body bytes)

    Raises:
        ComposeError: If the block is not valid YAML or not a mapping
    """
    opening = _OPENING.match(data)
    if not opening:
        return {}, data

    closing = _CLOSING.search(data, opening.end())
    if not closing:
        return {}, data

    block = data[opening.end():closing.start()]
    try:
        parsed = yaml.safe_load(block.decode("utf-8")) if block.strip() else {}
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise ComposeError(f"Invalid frontmatter: {e}") from e

    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise ComposeError("Frontmatter must be a YAML mapping")
    return parsed, data[closing.end():]


def _dump_value(key: str, value: Any) -> str:
    return yaml.safe_dump(
        {key: value},
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=1_000_000,
    )


def emit_frontmatter(mapping: Mapping[str, Any], key_order: Iterable[str]) -> bytes:
    """Emit a frontmatter block containing only the keys in ``key_order``.

    Keys appear in ``key_order`` order. Keys missing from the mapping, or
    mapped to None, are left out. When nothing is left, no block is emitted.
    """
    lines = [
        _dump_value(key, mapping[key])
        for key in key_order
        if key in mapping and mapping[key] is not None
    ]
    if not lines:
        return b""
    return ("---\n" + "".join(lines) + "---\n").encode("utf-8")


def render_document(
    mapping: Mapping[str, Any], key_order: Iterable[str], body: bytes
) -> bytes:
    """Emit frontmatter followed by the body, unchanged."""
    return emit_frontmatter(mapping, key_order) + body
