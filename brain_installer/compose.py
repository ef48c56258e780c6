"""Composable documents assembled from ordered fragments.

A composable document is a directory holding an ``_order.yaml``::

    name: session-protocol        # optional, defaults to the directory name
    sections: [00, 01, 02, VARIANT_INSERT, 03]
    variants:
      cursor:
        variables: _variables.yaml  # optional, this is the default
        frontmatter: _frontmatter.yaml
        overrides: {01: 01-short}   # section -> file in the variant dir
        inserts: [a, b]             # optional, see below

Shared fragments live in ``sections/<name>.md`` (or ``<name>.md`` beside
``_order.yaml``). A variant directory ``<variant>/`` overrides a fragment by
holding a file of the same name. Fragments spliced in at ``VARIANT_INSERT``
come from the variant's ``inserts`` list (also spelled
``inserts_at_VARIANT_INSERT``), or when it has none, from every
other ``*.md`` file in the variant directory in name order.

After concatenation every ``{key}`` present in the variables map is
replaced by its value. ``{{key}}`` is kept as a literal ``{key}``. Any other
``{identifier}`` is an error.
"""

import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml

from brain_installer.constants import (
    ORDER_FILENAME,
    SECTIONS_SUBDIR,
    VARIABLES_FILENAME,
    VARIANT_INSERT,
)
from brain_installer.exceptions import ComposeError
from brain_installer.source import TemplateSource, is_file, join

_PLACEHOLDER = re.compile(r"\{(\{)?([A-Za-z_][A-Za-z0-9_-]*)\}(\})?")

# accepted spellings of a variant's insert list
INSERTS_KEYS = ("inserts", f"inserts_at_{VARIANT_INSERT}")


@dataclass(frozen=True)
class VariantSpec:
    """Per-variant composition settings from _order.yaml."""

    variables: str = VARIABLES_FILENAME
    frontmatter: str | None = None
    overrides: dict[str, str] = field(default_factory=dict)
    inserts: tuple[str, ...] | None = None


@dataclass(frozen=True)
class OrderSpec:
    """Parsed _order.yaml."""

    name: str | None
    sections: tuple[str, ...]
    variants: dict[str, VariantSpec]

    @classmethod
    def parse(cls, data: bytes, where: str) -> "OrderSpec":
        """Parse _order.yaml bytes.

        Scalars are read as strings so fragment names such as ``01`` keep
        their leading zeros.

        Raises:
            ComposeError: If the file is malformed
        """
        raw = _load_strings(data, where)
        if not isinstance(raw, dict):
            raise ComposeError(f"{where}: expected a mapping")

        sections = raw.get("sections")
        if not isinstance(sections, list) or not all(isinstance(s, str) for s in sections):
            raise ComposeError(f"{where}: 'sections' must be a list of fragment names")

        variants: dict[str, VariantSpec] = {}
        raw_variants = raw.get("variants") or {}
        if not isinstance(raw_variants, dict):
            raise ComposeError(f"{where}: 'variants' must be a mapping")
        for variant, settings in raw_variants.items():
            settings = settings or {}
            if not isinstance(settings, dict):
                raise ComposeError(f"{where}: variant '{variant}' must be a mapping")
            overrides = settings.get("overrides") or {}
            if not isinstance(overrides, dict):
                raise ComposeError(f"{where}: '{variant}.overrides' must be a mapping")
            present = [key for key in INSERTS_KEYS if key in settings]
            if len(present) > 1:
                raise ComposeError(
                    f"{where}: variant '{variant}' sets both {' and '.join(present)}"
                )
            inserts = settings.get(present[0]) if present else None
            if inserts is not None and not isinstance(inserts, list):
                raise ComposeError(f"{where}: '{variant}.{present[0]}' must be a list")
            unknown = sorted(set(overrides) - set(sections))
            if unknown:
                raise ComposeError(
                    f"{where}: variant '{variant}' overrides unknown sections: {', '.join(unknown)}"
                )
            variants[variant] = VariantSpec(
                variables=settings.get("variables") or VARIABLES_FILENAME,
                frontmatter=settings.get("frontmatter"),
                overrides=dict(overrides),
                inserts=tuple(inserts) if inserts is not None else None,
            )

        return cls(name=raw.get("name"), sections=tuple(sections), variants=variants)


@dataclass(frozen=True)
class ComposedDocument:
    """A document assembled from fragments, ready to render."""

    name: str
    frontmatter: dict[str, Any]
    body: bytes
    source_refs: tuple[str, ...]


def _load_strings(data: bytes, where: str) -> Any:
    try:
        return yaml.load(data.decode("utf-8"), Loader=yaml.BaseLoader)
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise ComposeError(f"{where}: invalid YAML: {e}") from e


def is_composable(source: TemplateSource, relative: str) -> bool:
    """True if the directory holds an _order.yaml."""
    return source.exists(join(relative, ORDER_FILENAME))


def substitute_variables(text: str, variables: Mapping[str, str], where: str) -> str:
    """Replace ``{key}`` placeholders with values from ``variables``.

    Raises:
        ComposeError: If a placeholder names an unknown variable
    """
    unknown: set[str] = set()

    def _replace(match: re.Match) -> str:
        escaped_open, name, escaped_close = match.groups()
        if escaped_open and escaped_close:
            return "{" + name + "}"
        if name not in variables:
            unknown.add(name)
            return match.group(0)
        value = str(variables[name])
        return ("{" if escaped_open else "") + value + ("}" if escaped_close else "")

    result = _PLACEHOLDER.sub(_replace, text)
    if unknown:
        raise ComposeError(f"{where}: unknown template variables: {', '.join(sorted(unknown))}")
    return result


def _load_variables(source: TemplateSource, path: str) -> dict[str, str]:
    if not is_file(source, path):
        return {}
    raw = _load_strings(source.read_file(path), path)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ComposeError(f"{path}: variables must be a mapping")
    return {str(k): str(v) for k, v in raw.items()}


def _load_frontmatter(source: TemplateSource, path: str) -> dict[str, Any]:
    if not is_file(source, path):
        raise ComposeError(f"Frontmatter file not found: {path}")
    try:
        raw = yaml.safe_load(source.read_file(path).decode("utf-8"))
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise ComposeError(f"{path}: invalid YAML: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ComposeError(f"{path}: frontmatter must be a mapping")
    return raw


def _discover_inserts(
    source: TemplateSource, variant_dir: str, order: OrderSpec, spec: VariantSpec
) -> tuple[str, ...]:
    if not source.exists(variant_dir):
        return ()
    claimed = set(order.sections) | set(spec.overrides.values())
    inserts = []
    for entry in source.list_dir(variant_dir):
        if entry.is_dir or not entry.name.endswith(".md") or entry.name.startswith("_"):
            continue
        stem = entry.name[: -len(".md")]
        if stem not in claimed:
            inserts.append(stem)
    return tuple(inserts)


def compose(
    source: TemplateSource,
    relative: str,
    variant: str,
    extra_variables: Mapping[str, str] | None = None,
) -> ComposedDocument:
    """Assemble a composable document for one variant.

    Args:
        source: Canonical content
        relative: Directory holding _order.yaml
        variant: Variant name, usually the tool slug
        extra_variables: Values added on top of the variant's variables

    Returns:
        The composed document; the body ends with a single newline

    Raises:
        ComposeError: On a missing fragment, a missing override target, an
            unknown template variable or malformed YAML
    """
    order_path = join(relative, ORDER_FILENAME)
    order = OrderSpec.parse(source.read_file(order_path), order_path)
    spec = order.variants.get(variant, VariantSpec())
    variant_dir = join(relative, variant)

    def _read(path: str) -> str:
        try:
            return source.read_file(path).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ComposeError(f"{path}: fragment is not UTF-8") from e

    def _resolve_section(name: str) -> str:
        override = spec.overrides.get(name)
        if override is not None:
            path = join(variant_dir, f"{override}.md")
            if not is_file(source, path):
                raise ComposeError(f"{order_path}: missing override target '{path}'")
            return path
        for candidate in (
            join(variant_dir, f"{name}.md"),
            join(relative, SECTIONS_SUBDIR, f"{name}.md"),
            join(relative, f"{name}.md"),
        ):
            if is_file(source, candidate):
                return candidate
        raise ComposeError(f"{order_path}: fragment '{name}' not found")

    inserts = spec.inserts
    if inserts is None:
        inserts = _discover_inserts(source, variant_dir, order, spec)

    fragment_paths: list[str] = []
    for entry in order.sections:
        if entry == VARIANT_INSERT:
            for insert in inserts:
                path = join(variant_dir, f"{insert}.md")
                if not is_file(source, path):
                    raise ComposeError(f"{order_path}: insert '{path}' not found")
                fragment_paths.append(path)
            continue
        fragment_paths.append(_resolve_section(entry))

    text = "\n\n".join(_read(path).rstrip("\n") for path in fragment_paths) + "\n"

    variables = _load_variables(source, join(variant_dir, spec.variables))
    if extra_variables:
        variables.update(extra_variables)
    text = substitute_variables(text, variables, order_path)

    frontmatter: dict[str, Any] = {}
    if spec.frontmatter:
        frontmatter = _load_frontmatter(source, join(variant_dir, spec.frontmatter))

    name = order.name or posixpath.basename(relative)
    return ComposedDocument(
        name=name,
        frontmatter=frontmatter,
        body=text.encode("utf-8"),
        source_refs=tuple([order_path, *fragment_paths]),
    )
