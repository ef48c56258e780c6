"""Read-only views over canonical content.

Two variants share one interface:

- FilesystemSource reads a content directory on disk (development).
- EmbeddedSource reads from an in-memory mapping of path to bytes, typically
  loaded from a tarball shipped with a release.

All listings are sorted by name so every consumer sees a deterministic order.
"""

import io
import os
import posixpath
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol, runtime_checkable

from brain_installer.constants import SKIPPED_NAMES
from brain_installer.exceptions import PathEscapeError


@dataclass(frozen=True)
class DirEntry:
    """A single directory listing entry."""

    name: str
    is_dir: bool
    is_symlink: bool = False


@runtime_checkable
class TemplateSource(Protocol):
    """Protocol for canonical content sources.

    Paths are POSIX-style and relative to the content root.
    """

    def list_dir(self, relative: str) -> list[DirEntry]:
        """List a directory, sorted by name. Raises FileNotFoundError if missing."""
        ...

    def read_file(self, relative: str) -> bytes:
        """Read a file. Raises FileNotFoundError if missing."""
        ...

    def exists(self, relative: str) -> bool:
        """Check whether a file or directory exists."""
        ...


def clean_relative(relative: str) -> str:
    """Normalize a content-relative path; '' means the content root."""
    value = relative.replace("\\", "/")
    if value.startswith("/"):
        raise PathEscapeError(f"Content path '{relative}' must be relative")
    value = posixpath.normpath(value) if value else ""
    if value == ".":
        return ""
    if value == ".." or value.startswith("../"):
        raise PathEscapeError(f"Content path '{relative}' escapes the content root")
    return value


def join(*parts: str) -> str:
    """Join content-relative path segments."""
    return clean_relative(posixpath.join(*[p for p in parts if p]))


class FilesystemSource:
    """Template source rooted at a directory on disk."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"FilesystemSource({str(self.root)!r})"

    def _path(self, relative: str) -> Path:
        cleaned = clean_relative(relative)
        return self.root / cleaned if cleaned else self.root

    def list_dir(self, relative: str) -> list[DirEntry]:
        path = self._path(relative)
        if not path.is_dir():
            raise FileNotFoundError(f"Content directory not found: {relative or '.'}")
        entries = []
        with os.scandir(path) as it:
            for entry in it:
                entries.append(
                    DirEntry(
                        name=entry.name,
                        is_dir=entry.is_dir(),
                        is_symlink=entry.is_symlink(),
                    )
                )
        return sorted(entries, key=lambda e: e.name)

    def read_file(self, relative: str) -> bytes:
        path = self._path(relative)
        if not path.is_file():
            raise FileNotFoundError(f"Content file not found: {relative}")
        return path.read_bytes()

    def exists(self, relative: str) -> bool:
        return self._path(relative).exists()


class EmbeddedSource:
    """Template source backed by an in-memory mapping of path to bytes."""

    def __init__(self, files: Mapping[str, bytes]):
        self._files: dict[str, bytes] = {}
        self._dirs: set[str] = {""}
        for name, data in files.items():
            cleaned = clean_relative(name)
            if not cleaned:
                continue
            self._files[cleaned] = bytes(data)
            parent = posixpath.dirname(cleaned)
            while parent:
                self._dirs.add(parent)
                parent = posixpath.dirname(parent)

    def __repr__(self) -> str:
        return f"EmbeddedSource({len(self._files)} files)"

    @classmethod
    def from_tarball(cls, data: bytes, strip_prefix: str | None = None) -> "EmbeddedSource":
        """Build a source from tarball bytes (any compression tarfile detects).

        Symbolic links inside the archive are followed once: a link to a
        regular file member is materialised with that file's bytes, a link
        to another link is ignored.

        Args:
            data: Raw archive bytes
            strip_prefix: Leading directory to strip from member names
        """
        regular: dict[str, bytes] = {}
        links: dict[str, str] = {}
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            for member in tar.getmembers():
                name = posixpath.normpath(member.name.lstrip("/"))
                if strip_prefix:
                    prefix = strip_prefix.strip("/") + "/"
                    if not name.startswith(prefix):
                        continue
                    name = name[len(prefix):]
                if name.startswith("..") or not name or name == ".":
                    continue
                if member.isfile():
                    extracted = tar.extractfile(member)
                    if extracted is not None:
                        regular[name] = extracted.read()
                elif member.issym():
                    target = posixpath.normpath(
                        posixpath.join(posixpath.dirname(name), member.linkname)
                    )
                    links[name] = target
        for name, target in links.items():
            if target in regular:
                regular[name] = regular[target]
        return cls(regular)

    @classmethod
    def from_directory(cls, root: Path | str) -> "EmbeddedSource":
        """Snapshot a directory tree into memory."""
        fs = FilesystemSource(root)
        return cls({rel: fs.read_file(rel) for rel in walk_files(fs)})

    def list_dir(self, relative: str) -> list[DirEntry]:
        cleaned = clean_relative(relative)
        if cleaned not in self._dirs:
            raise FileNotFoundError(f"Content directory not found: {relative or '.'}")
        prefix = f"{cleaned}/" if cleaned else ""
        names: dict[str, bool] = {}
        for path in list(self._files) + list(self._dirs):
            if not path or not path.startswith(prefix):
                continue
            rest = path[len(prefix):]
            if not rest:
                continue
            head, _, tail = rest.partition("/")
            is_dir = bool(tail) or path in self._dirs
            names[head] = names.get(head, False) or is_dir
        return [DirEntry(name=n, is_dir=d) for n, d in sorted(names.items())]

    def read_file(self, relative: str) -> bytes:
        cleaned = clean_relative(relative)
        if cleaned not in self._files:
            raise FileNotFoundError(f"Content file not found: {relative}")
        return self._files[cleaned]

    def exists(self, relative: str) -> bool:
        cleaned = clean_relative(relative)
        return cleaned in self._files or cleaned in self._dirs


def is_file(source: TemplateSource, relative: str) -> bool:
    """Check that a path exists and is not a directory."""
    if not source.exists(relative):
        return False
    parent, _, name = clean_relative(relative).rpartition("/")
    for entry in source.list_dir(parent):
        if entry.name == name:
            return not entry.is_dir
    return False


def walk_files(source: TemplateSource, relative: str = "") -> list[str]:
    """Recursively list every file below a directory, sorted, skipping junk.

    Symlinked directories are descended into once; a symlinked directory
    reached through another symlink is not followed.

    Returns:
        Content-relative file paths
    """
    results: list[str] = []

    def _walk(rel: str, via_link: bool) -> None:
        for entry in source.list_dir(rel):
            if entry.name in SKIPPED_NAMES:
                continue
            child = join(rel, entry.name)
            if entry.is_dir:
                if entry.is_symlink and via_link:
                    continue
                _walk(child, via_link or entry.is_symlink)
            else:
                results.append(child)

    _walk(clean_relative(relative), False)
    return results
