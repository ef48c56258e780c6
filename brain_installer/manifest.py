"""Install manifests: the record of exactly what the installer placed.

One JSON file per tool under the cache root (``manifest-<tool>.json``).
The manifest is the authority on ownership: uninstall and reinstall remove
only what it lists.
"""

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from brain_installer.exceptions import ConfigError
from brain_installer.fsutil import atomic_write, make_dirs
from brain_installer.jsonmerge import dumps


class EntryKind(str, Enum):
    FILE = "file"
    SYMLINK = "symlink"
    MERGE = "merge"


@dataclass(frozen=True)
class ManifestEntry:
    """One placed artefact.

    For ``file`` entries ``hash`` is the SHA-256 of the bytes written. For
    ``merge`` entries ``keys`` lists the JSON Pointers introduced into the
    host file, ``hash`` is the SHA-256 of the host file before the merge
    and ``created`` is set when the installer created the host file.
    """

    kind: EntryKind
    path: str
    hash: str | None = None
    keys: tuple[str, ...] = ()
    created: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind.value, "path": self.path}
        if self.hash:
            result["hash"] = self.hash
        if self.kind == EntryKind.MERGE:
            result["keys"] = list(self.keys)
            if self.created:
                result["created"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestEntry":
        return cls(
            kind=EntryKind(data["kind"]),
            path=data["path"],
            hash=data.get("hash"),
            keys=tuple(data.get("keys", ())),
            created=bool(data.get("created", False)),
        )


@dataclass(frozen=True)
class InstallManifest:
    tool: str
    scope: str
    scope_root: str
    installed_at: str
    engine_version: str
    entries: tuple[ManifestEntry, ...] = ()
    directories: tuple[str, ...] = ()

    @property
    def files(self) -> list[ManifestEntry]:
        return [e for e in self.entries if e.kind in (EntryKind.FILE, EntryKind.SYMLINK)]

    @property
    def merges(self) -> list[ManifestEntry]:
        return [e for e in self.entries if e.kind == EntryKind.MERGE]

    def same_content(self, other: "InstallManifest | None") -> bool:
        """Equal in everything but the install timestamp."""
        if other is None:
            return False
        return replace(self, installed_at=other.installed_at) == other

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "scope": self.scope,
            "scope_root": self.scope_root,
            "installed_at": self.installed_at,
            "engine_version": self.engine_version,
            "entries": [entry.to_dict() for entry in self.entries],
            "directories": list(self.directories),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InstallManifest":
        return cls(
            tool=data["tool"],
            scope=data["scope"],
            scope_root=data.get("scope_root", ""),
            installed_at=data["installed_at"],
            engine_version=data.get("engine_version", ""),
            entries=tuple(ManifestEntry.from_dict(e) for e in data.get("entries", [])),
            directories=tuple(data.get("directories", [])),
        )


def manifest_path(cache_root: Path, tool: str) -> Path:
    return cache_root / f"manifest-{tool}.json"


def load_manifest(path: Path) -> InstallManifest | None:
    """Load a manifest; None if the file does not exist.

    Raises:
        ConfigError: If the file exists but cannot be parsed
    """
    if not path.is_file():
        return None
    try:
        return InstallManifest.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise ConfigError(
            f"Manifest {path} is corrupt ({e}); delete it to fall back to prefix-based cleanup"
        ) from e


def save_manifest(
    path: Path, manifest: InstallManifest, created: list[Path] | None = None
) -> list[Path]:
    """Write a manifest atomically.

    Returns:
        Directories created to hold it; also appended to ``created``
    """
    made = make_dirs(path.parent, created)
    atomic_write(path, dumps(manifest.to_dict()))
    return made


@dataclass
class ManifestBuilder:
    """Collects entries while an install pipeline runs."""

    entries: dict[tuple[str, EntryKind], ManifestEntry] = field(default_factory=dict)
    directories: set[str] = field(default_factory=set)

    def add(self, entry: ManifestEntry) -> None:
        self.entries[(entry.path, entry.kind)] = entry

    def add_directories(self, directories: list[Path]) -> None:
        self.directories.update(str(d) for d in directories)

    def build(
        self, tool: str, scope: str, scope_root: Path, installed_at: str, engine_version: str
    ) -> InstallManifest:
        return InstallManifest(
            tool=tool,
            scope=scope,
            scope_root=str(scope_root),
            installed_at=installed_at,
            engine_version=engine_version,
            entries=tuple(self.entries[key] for key in sorted(self.entries)),
            directories=tuple(sorted(self.directories)),
        )
