"""Path resolution for tool configuration templates.

Templates in tools.yaml may contain:

- a leading ``~`` for the home directory
- ``${VAR}`` / ``$VAR`` environment references
- ``{scope}``, ``{config_dir}``, ``{home}``, ``{cwd}``, ``{xdg_config}``,
  ``{xdg_cache}`` and ``{xdg_data}`` placeholders

Every resolved path is absolute and normalized. Destinations computed from
generated content are checked against their scope root with
:func:`ensure_within` before anything is written.
"""

import os
import re
from dataclasses import dataclass, field, replace
from itertools import combinations
from pathlib import Path
from typing import Mapping

from brain_installer.constants import APP_DIR_NAME
from brain_installer.exceptions import ConfigError, PathEscapeError

_ENV_PATTERN = re.compile(r"\$\{([^}]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")
_PLACEHOLDER_PATTERN = re.compile(r"\{([^{}]*)\}")


@dataclass(frozen=True)
class ResolutionContext:
    """Everything a path template may refer to."""

    home: Path
    xdg_config: Path
    xdg_cache: Path
    xdg_data: Path
    cwd: Path
    env: Mapping[str, str] = field(default_factory=dict)
    scope: str | None = None
    config_dir: Path | None = None

    @classmethod
    def from_environment(
        cls,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> "ResolutionContext":
        """Build a context from process environment variables.

        XDG variables fall back to the freedesktop defaults under the
        home directory.
        """
        env = dict(os.environ if env is None else env)
        home = Path(env.get("HOME") or Path.home())

        def _xdg(name: str, default: Path) -> Path:
            value = env.get(name)
            return Path(value) if value else default

        return cls(
            home=home,
            xdg_config=_xdg("XDG_CONFIG_HOME", home / ".config"),
            xdg_cache=_xdg("XDG_CACHE_HOME", home / ".cache"),
            xdg_data=_xdg("XDG_DATA_HOME", home / ".local" / "share"),
            cwd=cwd or Path.cwd(),
            env=env,
        )

    def with_scope(self, scope: str, config_dir: Path | None = None) -> "ResolutionContext":
        """Return a copy bound to a scope name and resolved config dir."""
        return replace(self, scope=scope, config_dir=config_dir)

    @property
    def app_config_dir(self) -> Path:
        return self.xdg_config / APP_DIR_NAME

    @property
    def app_cache_dir(self) -> Path:
        return self.xdg_cache / APP_DIR_NAME

    @property
    def app_data_dir(self) -> Path:
        return self.xdg_data / APP_DIR_NAME


def resolve_template(template: str, ctx: ResolutionContext) -> Path:
    """Resolve a path template into an absolute, normalized path.

    Args:
        template: Template string from tool configuration
        ctx: Values available for substitution

    Returns:
        Absolute normalized path

    Raises:
        ConfigError: If the template is empty, references an unknown
            placeholder or an undefined environment variable
    """
    if not isinstance(template, str) or not template.strip():
        raise ConfigError("Path template is empty")

    value = template.strip()
    if value == "~" or value.startswith("~/"):
        value = str(ctx.home) + value[1:]

    def _env(match: re.Match) -> str:
        name = match.group(1) if match.group(1) is not None else match.group(2)
        if not name or name not in ctx.env:
            raise ConfigError(
                f"Unknown placeholder '${{{name}}}' in path template '{template}'"
            )
        return ctx.env[name]

    value = _ENV_PATTERN.sub(_env, value)

    placeholders = {
        "home": str(ctx.home),
        "cwd": str(ctx.cwd),
        "xdg_config": str(ctx.xdg_config),
        "xdg_cache": str(ctx.xdg_cache),
        "xdg_data": str(ctx.xdg_data),
    }
    if ctx.scope is not None:
        placeholders["scope"] = ctx.scope
    if ctx.config_dir is not None:
        placeholders["config_dir"] = str(ctx.config_dir)

    def _placeholder(match: re.Match) -> str:
        name = match.group(1)
        if name not in placeholders:
            raise ConfigError(
                f"Unknown placeholder '{{{name}}}' in path template '{template}'"
            )
        return placeholders[name]

    value = _PLACEHOLDER_PATTERN.sub(_placeholder, value)

    if not value.strip():
        raise ConfigError(f"Path template '{template}' is empty after substitution")

    path = Path(value)
    if not path.is_absolute():
        path = ctx.cwd / path
    return Path(os.path.normpath(path))


def validate_identifier(value: str, field_name: str) -> str:
    """Check that an identifier field can be used as a single path component.

    Raises:
        ConfigError: If the value is empty, '.'/'..', or contains a separator
    """
    if not isinstance(value, str) or not value:
        raise ConfigError(f"'{field_name}' must be a non-empty string")
    separators = {"/", "\\", os.sep}
    if os.altsep:
        separators.add(os.altsep)
    if value in (".", "..") or any(sep in value for sep in separators):
        raise ConfigError(
            f"'{field_name}' value '{value}' must not contain path separators"
        )
    return value


def _is_within(root: Path, candidate: Path) -> bool:
    return candidate == root or root in candidate.parents


def ensure_within(root: Path, candidate: Path | str) -> Path:
    """Assert that a candidate path lies at or under a scope root.

    A relative candidate is joined onto the root first. The check is applied
    both lexically and after resolving symlinks, so neither ``..`` segments
    nor a symlinked parent can lead outside the root.

    Args:
        root: Declared scope root (absolute)
        candidate: Destination path, absolute or relative to root

    Returns:
        The absolute normalized candidate path

    Raises:
        PathEscapeError: If the candidate escapes the root
    """
    root = Path(os.path.normpath(root))
    raw = Path(candidate)
    target = Path(os.path.normpath(raw if raw.is_absolute() else root / raw))

    if not _is_within(root, target):
        raise PathEscapeError(f"Path '{candidate}' escapes scope root '{root}'")

    real_root = Path(os.path.realpath(root))
    real_target = Path(os.path.realpath(target))
    if not _is_within(real_root, real_target):
        raise PathEscapeError(
            f"Path '{candidate}' resolves to '{real_target}' outside scope root '{real_root}'"
        )
    return target


def scoped_path(root: Path, relative: str) -> Path:
    """Join a generated relative path onto a scope root.

    Absolute paths are rejected outright; everything else goes through
    :func:`ensure_within`.
    """
    if not relative or Path(relative).is_absolute() or relative.startswith(("/", "\\")):
        raise PathEscapeError(f"Generated path '{relative}' must be relative to the scope root")
    return ensure_within(root, relative)


def assert_disjoint(roots: Mapping[str, Path]) -> None:
    """Verify that no two tools share or nest scope roots.

    Args:
        roots: Mapping of tool slug to resolved scope root

    Raises:
        ConfigError: If any pair of roots is equal or nested
    """
    normalized = {name: Path(os.path.normpath(path)) for name, path in roots.items()}
    for (name_a, root_a), (name_b, root_b) in combinations(sorted(normalized.items()), 2):
        if _is_within(root_a, root_b) or _is_within(root_b, root_a):
            raise ConfigError(
                f"Scope roots of '{name_a}' ({root_a}) and '{name_b}' ({root_b}) overlap"
            )
