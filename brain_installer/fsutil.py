"""Atomic file writes and filesystem snapshots.

Every write goes to a temp file in the destination's own directory and is
renamed into place, so the rename never crosses filesystems and readers see
either the old or the new bytes.
"""

import hashlib
import os
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def atomic_write(path: Path, data: bytes) -> None:
    """Write bytes via temp-file-in-same-directory + rename.

    The parent directory must already exist. An existing destination keeps
    its permission bits.
    """
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        mode = None

    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as temp_file:
            temp_path = Path(temp_file.name)
            temp_file.write(data)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    finally:
        if temp_path is not None and temp_path.exists():
            temp_path.unlink(missing_ok=True)


def make_dirs(path: Path, created: list[Path] | None = None) -> list[Path]:
    """Create a directory and its missing parents.

    Args:
        path: Directory to create
        created: Appended to as each directory is made, so a caller still
            knows what exists when a later ``mkdir`` fails

    Returns:
        The directories that were created, outermost first
    """
    missing: list[Path] = []
    current = path
    while not current.exists():
        missing.append(current)
        if current.parent == current:
            break
        current = current.parent
    made: list[Path] = []
    for directory in reversed(missing):
        directory.mkdir(exist_ok=True)
        made.append(directory)
        if created is not None:
            created.append(directory)
    return made


def remove_empty_dirs(directories: Iterable[Path]) -> list[Path]:
    """Remove directories that are empty, deepest first.

    Returns:
        The directories actually removed
    """
    removed = []
    for directory in sorted(set(directories), key=lambda p: len(p.parts), reverse=True):
        try:
            directory.rmdir()
        except FileNotFoundError:
            continue
        except OSError:
            # not empty
            continue
        removed.append(directory)
    return removed


def scan_prefixed(directory: Path, prefix: str) -> list[Path]:
    """List entries of a directory whose names start with ``prefix``."""
    if not prefix or not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.name.startswith(prefix))


@dataclass(frozen=True)
class FileSnapshot:
    """The exact state of one path, restorable later.

    ``data`` is None when the path did not exist; ``link_target`` is set
    when the path was a symlink. ``mode`` holds a regular file's permission
    bits.
    """

    path: Path
    data: bytes | None
    link_target: str | None = None
    mode: int | None = None

    @classmethod
    def capture(cls, path: Path) -> "FileSnapshot":
        if path.is_symlink():
            return cls(path=path, data=None, link_target=os.readlink(path))
        if path.is_file():
            return cls(
                path=path, data=path.read_bytes(), mode=stat.S_IMODE(path.stat().st_mode)
            )
        return cls(path=path, data=None)

    @property
    def existed(self) -> bool:
        return self.data is not None or self.link_target is not None

    def restore(self) -> None:
        """Put the path back exactly as captured."""
        if self.link_target is not None:
            if self.path.is_symlink() or self.path.exists():
                self.path.unlink()
            make_dirs(self.path.parent)
            os.symlink(self.link_target, self.path)
        elif self.data is not None:
            make_dirs(self.path.parent)
            atomic_write(self.path, self.data)
            if self.mode is not None:
                os.chmod(self.path, self.mode)
        elif self.path.is_symlink() or self.path.is_file():
            self.path.unlink()
