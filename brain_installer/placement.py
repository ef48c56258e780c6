"""Install and uninstall plans for one tool.

An install plan turns the engine's generated files into on-disk state:

1. Preconditions
2. Backup existing manifest
3. Clean previous install
4. Write verbatim and rendered files
5. Apply merge payloads
6. Marketplace registration (marketplace placement only)
7. Write new manifest

The uninstall plan runs the same ideas in reverse from the stored
manifest, falling back to a prefix scan of the content directories when
the manifest is missing.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from brain_installer import __version__
from brain_installer.constants import (
    AGENTS_SUBDIR,
    BRAIN_PREFIX,
    COMMANDS_SUBDIR,
    RULES_SUBDIR,
    SKILLS_SUBDIR,
)
from brain_installer.engine import FileKind, GeneratedFile
from brain_installer.exceptions import (
    DetectionError,
    InstallIOError,
    MergeConflictError,
    PathEscapeError,
)
from brain_installer.fsutil import (
    FileSnapshot,
    atomic_write,
    make_dirs,
    remove_empty_dirs,
    scan_prefixed,
    sha256_bytes,
)
from brain_installer.jsonmerge import (
    JsonStyle,
    delete_path,
    detect_style,
    dumps,
    format_pointer,
    get_path,
    loads_object,
    merge_patch,
    plan_merge,
    set_path,
)
from brain_installer.manifest import (
    EntryKind,
    InstallManifest,
    ManifestBuilder,
    ManifestEntry,
    load_manifest,
    manifest_path,
    save_manifest,
)
from brain_installer.paths import ensure_within, scoped_path
from brain_installer.pipeline import Pipeline, Step
from brain_installer.tool_config import PlacementType, ToolConfig

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class PlacementContext:
    """Resolved locations for one tool's install or uninstall."""

    tool: ToolConfig
    scope: str
    scope_root: Path
    config_dir: Path
    cache_root: Path
    prefix: bool
    log: logging.Logger = logger
    clock: Callable[[], str] = utc_now

    @property
    def manifest_file(self) -> Path:
        return manifest_path(self.cache_root, self.tool.name)

    @property
    def backup_dir(self) -> Path:
        return self.cache_root / "backups" / self.tool.name

    @property
    def registry_file(self) -> Path:
        return ensure_within(self.config_dir, self.tool.marketplace.registry)

    def owned_path(self, path: str | Path, scope_root: Path | None = None) -> Path:
        """Check that a recorded path lies under the scope root or config dir.

        Raises:
            PathEscapeError: If it lies under neither
        """
        roots = [scope_root or self.scope_root, self.config_dir]
        for root in roots:
            try:
                return ensure_within(root, Path(path))
            except PathEscapeError:
                continue
        raise PathEscapeError(
            f"Recorded path '{path}' is outside the scope root and config dir",
            tool=self.tool.name,
        )

    def backup_file(self, digest: str) -> Path:
        return self.backup_dir / f"{digest}.json"


def check_scope_writable(scope_root: Path) -> None:
    """Verify the nearest existing ancestor of the scope root is writable."""
    current = scope_root
    while not current.exists() and current.parent != current:
        current = current.parent
    if not os.access(current, os.W_OK):
        raise InstallIOError(f"Scope root '{scope_root}' is not writable ({current})")


class JsonEdit:
    """One edit of a host JSON file that can be reverted byte-exactly."""

    def __init__(self, path: Path):
        self.path = path
        self.before = FileSnapshot.capture(path)
        data = self.before.data or b""
        self.original = loads_object(data, str(path))
        self.style = detect_style(data.decode("utf-8")) if self.before.existed else JsonStyle()
        self.created_dirs: list[Path] = []

    @property
    def existed(self) -> bool:
        return self.before.existed

    def write(self, document: dict) -> None:
        make_dirs(self.path.parent, self.created_dirs)
        atomic_write(self.path, dumps(document, self.style))

    def remove_keys(self, keys: tuple[str, ...]) -> None:
        """Delete keys again; restore the original bytes when nothing else changed."""
        if not self.path.exists():
            self.revert()
            return
        current = loads_object(self.path.read_bytes(), str(self.path))
        for key in keys:
            delete_path(current, key)
        if current == self.original:
            self.revert()
        else:
            atomic_write(self.path, dumps(current, self.style))

    def revert(self) -> None:
        self.before.restore()
        remove_empty_dirs(self.created_dirs)


class Cleaner:
    """Removes what a previous install placed, keeping enough to undo it.

    With a manifest, exactly the recorded files and merge keys are removed.
    Without one, the prefix is used to recognise our files.
    """

    def __init__(
        self,
        ctx: PlacementContext,
        manifest: InstallManifest | None,
        kinds: tuple[EntryKind, ...] = (EntryKind.FILE, EntryKind.SYMLINK, EntryKind.MERGE),
    ):
        self.ctx = ctx
        self.manifest = manifest
        self.kinds = kinds
        self._snapshots: list[FileSnapshot] = []
        self._removed_dirs: list[Path] = []

    @property
    def _scope_root(self) -> Path:
        if self.manifest and self.manifest.scope_root:
            return Path(self.manifest.scope_root)
        return self.ctx.scope_root

    def _entries(self) -> list[ManifestEntry]:
        if self.manifest is None:
            return []
        return [e for e in self.manifest.entries if e.kind in self.kinds]

    def _prefixed_targets(self) -> list[Path]:
        if not self.ctx.prefix:
            return []
        root = self.ctx.scope_root
        dirs = {AGENTS_SUBDIR, COMMANDS_SUBDIR, RULES_SUBDIR, SKILLS_SUBDIR}
        if self.ctx.tool.rules:
            dirs.update(d.strip("/") for d in self.ctx.tool.rules.routing.values())
        if self.ctx.tool.detection:
            dirs.update(self.ctx.tool.detection.dirs)
        targets: list[Path] = []
        for name in sorted(dirs):
            targets.extend(scan_prefixed(ensure_within(root, name), BRAIN_PREFIX))
        return targets

    def _stale_registration(self) -> bool:
        if self.ctx.tool.placement != PlacementType.MARKETPLACE:
            return False
        registry = self.ctx.registry_file
        if not registry.is_file():
            return False
        try:
            document = loads_object(registry.read_bytes(), str(registry))
        except MergeConflictError as e:
            # left for the registration step to report
            self.ctx.log.debug("cannot inspect %s: %s", registry, e)
            return False
        entry = get_path(document, format_pointer([self.ctx.tool.marketplace.name]))
        return isinstance(entry, dict) and entry.get("installLocation") == str(self.ctx.scope_root)

    def has_work(self) -> bool:
        if self.manifest is not None:
            return bool(self._entries()) or (
                EntryKind.FILE in self.kinds and bool(self.manifest.directories)
            )
        if EntryKind.FILE not in self.kinds:
            return False
        return bool(self._prefixed_targets()) or self._stale_registration()

    def clean(self) -> None:
        if self.manifest is None:
            if EntryKind.FILE in self.kinds:
                self._clean_by_prefix()
            return

        for entry in self._entries():
            path = self.ctx.owned_path(entry.path, self._scope_root)
            if entry.kind == EntryKind.MERGE:
                self._remove_merge(path, entry)
            else:
                self._remove_file(path, entry)
        if EntryKind.FILE in self.kinds:
            dirs = [self.ctx.owned_path(d, self._scope_root) for d in self.manifest.directories]
            self._removed_dirs.extend(remove_empty_dirs(dirs))

    def restore(self) -> None:
        for directory in sorted(self._removed_dirs, key=lambda p: len(p.parts)):
            make_dirs(directory)
        for snapshot in reversed(self._snapshots):
            snapshot.restore()

    def _remove_file(self, path: Path, entry: ManifestEntry) -> None:
        if not (path.exists() or path.is_symlink()):
            self.ctx.log.debug("already gone: %s", path)
            return
        snapshot = FileSnapshot.capture(path)
        if entry.hash and snapshot.data is not None and sha256_bytes(snapshot.data) != entry.hash:
            self.ctx.log.warning("%s was modified after install; removing it anyway", path)
        self._snapshots.append(snapshot)
        path.unlink()

    def _remove_merge(self, path: Path, entry: ManifestEntry) -> None:
        if not path.exists():
            self.ctx.log.debug("host file already gone: %s", path)
            return
        snapshot = FileSnapshot.capture(path)
        document = loads_object(snapshot.data or b"", str(path))
        text = (snapshot.data or b"").decode("utf-8")
        for key in entry.keys:
            delete_path(document, key)
        self._snapshots.append(snapshot)

        if entry.created and not document:
            path.unlink()
            return

        backup = self.ctx.backup_file(entry.hash) if entry.hash else None
        if backup is not None and backup.is_file():
            original = backup.read_bytes()
            if loads_object(original, str(backup)) == document:
                atomic_write(path, original)
                return
        atomic_write(path, dumps(document, detect_style(text)))

    def _clean_by_prefix(self) -> None:
        for target in self._prefixed_targets():
            if target.is_dir() and not target.is_symlink():
                for child in sorted(target.rglob("*")):
                    if child.is_dir() and not child.is_symlink():
                        self._removed_dirs.append(child)
                    else:
                        self._snapshots.append(FileSnapshot.capture(child))
                self._removed_dirs.append(target)
                shutil.rmtree(target)
            else:
                self._snapshots.append(FileSnapshot.capture(target))
                target.unlink()
            self.ctx.log.info("removed by prefix: %s", target)

        if self._stale_registration():
            registry = self.ctx.registry_file
            snapshot = FileSnapshot.capture(registry)
            document = loads_object(snapshot.data or b"", str(registry))
            delete_path(document, format_pointer([self.ctx.tool.marketplace.name]))
            self._snapshots.append(snapshot)
            atomic_write(registry, dumps(document, detect_style((snapshot.data or b"").decode("utf-8"))))


@dataclass
class InstallPlan:
    """The seven-step install plan for one tool."""

    ctx: PlacementContext
    files: list[GeneratedFile]
    previous: InstallManifest | None = None
    manifest: InstallManifest | None = None
    _manifest_snapshot: FileSnapshot | None = None
    _cleaner: Cleaner | None = None
    _builder: ManifestBuilder = field(default_factory=ManifestBuilder)
    _written: list[FileSnapshot] = field(default_factory=list)
    _write_dirs: list[Path] = field(default_factory=list)
    _merges: list[tuple[JsonEdit, tuple[str, ...]]] = field(default_factory=list)
    _backups: list[FileSnapshot] = field(default_factory=list)
    _backup_dirs: list[Path] = field(default_factory=list)
    _registration: JsonEdit | None = None
    _manifest_dirs: list[Path] = field(default_factory=list)

    def steps(self) -> list[Step]:
        steps = [
            Step("Preconditions", self._preconditions),
            Step("Backup existing manifest", self._backup_manifest, self._restore_manifest),
            Step(
                "Clean previous install",
                self._clean_previous,
                self._restore_previous,
                condition=self._nothing_to_clean,
            ),
            Step("Write files", self._write_files, self._unwrite_files),
            Step("Apply merge payloads", self._apply_merges, self._unapply_merges),
        ]
        if self.ctx.tool.placement == PlacementType.MARKETPLACE:
            steps.append(Step("Marketplace registration", self._register, self._deregister))
        steps.append(
            Step(
                "Write manifest",
                self._write_manifest,
                self._delete_manifest,
                condition=self._manifest_unchanged,
            )
        )
        return steps

    def pipeline(self) -> Pipeline:
        return Pipeline(self.steps(), log=self.ctx.log)

    # --- 1 ---

    def _preconditions(self) -> None:
        if not self.ctx.config_dir.is_dir():
            raise DetectionError(
                f"{self.ctx.tool.display_name} is not installed ({self.ctx.config_dir} not found)",
                tool=self.ctx.tool.name,
            )
        check_scope_writable(self.ctx.scope_root)
        for generated in self.files:
            scoped_path(self.ctx.scope_root, generated.path)

    # --- 2 ---

    def _backup_manifest(self) -> None:
        self._manifest_snapshot = FileSnapshot.capture(self.ctx.manifest_file)
        self.previous = load_manifest(self.ctx.manifest_file)
        self._cleaner = Cleaner(self.ctx, self.previous)

    def _restore_manifest(self) -> None:
        if self._manifest_snapshot is not None:
            self._manifest_snapshot.restore()

    # --- 3 ---

    def _nothing_to_clean(self) -> bool:
        return not self._cleaner.has_work()

    def _clean_previous(self) -> None:
        self._cleaner.clean()

    def _restore_previous(self) -> None:
        self._cleaner.restore()

    def _owned_dirs(self, directories: list[Path]) -> list[Path]:
        """Directories under the scope root or config dir; others are not recorded."""
        owned = []
        for directory in directories:
            try:
                owned.append(self.ctx.owned_path(directory))
            except PathEscapeError:
                continue
        return owned

    # --- 4 ---

    def _write_files(self) -> None:
        previously_owned = set()
        if self.previous is not None:
            previously_owned = {e.path for e in self.previous.files}

        for generated in self.files:
            if generated.kind == FileKind.MERGE_PAYLOAD:
                continue
            target = scoped_path(self.ctx.scope_root, generated.path)
            make_dirs(target.parent, self._write_dirs)
            # re-checked after directories exist, so symlinked parents are caught
            scoped_path(self.ctx.scope_root, generated.path)
            snapshot = FileSnapshot.capture(target)
            if snapshot.existed and str(target) not in previously_owned:
                self.ctx.log.warning("overwriting existing file %s", target)
            self._written.append(snapshot)
            atomic_write(target, generated.content_bytes)
            self._builder.add(
                ManifestEntry(
                    kind=EntryKind.FILE,
                    path=str(target),
                    hash=sha256_bytes(generated.content_bytes),
                )
            )
        self._builder.add_directories(self._owned_dirs(self._write_dirs))

    def _unwrite_files(self) -> None:
        for snapshot in reversed(self._written):
            snapshot.restore()
        remove_empty_dirs(self._write_dirs)

    # --- 5 ---

    def _save_backup(self, edit: JsonEdit) -> str | None:
        if not edit.existed:
            return None
        digest = sha256_bytes(edit.before.data)
        backup = self.ctx.backup_file(digest)
        if not backup.exists():
            self._backups.append(FileSnapshot.capture(backup))
            make_dirs(backup.parent, self._backup_dirs)
            atomic_write(backup, edit.before.data)
        return digest

    def _apply_merges(self) -> None:
        for generated in self.files:
            if generated.kind != FileKind.MERGE_PAYLOAD:
                continue
            target = scoped_path(self.ctx.scope_root, generated.path)
            edit = JsonEdit(target)
            payload = generated.payload()
            keys = tuple(plan_merge(edit.original, payload, str(target)))
            if not keys:
                self.ctx.log.info("%s already holds every merged key", target)
                continue
            try:
                edit.write(merge_patch(edit.original, payload))
            except OSError:
                edit.revert()
                raise
            self._merges.append((edit, keys))
            self._builder.add_directories(self._owned_dirs(edit.created_dirs))
            self._builder.add(
                ManifestEntry(
                    kind=EntryKind.MERGE,
                    path=str(target),
                    hash=self._save_backup(edit),
                    keys=keys,
                    created=not edit.existed,
                )
            )

    def _unapply_merges(self) -> None:
        for edit, keys in reversed(self._merges):
            edit.remove_keys(keys)
        for snapshot in reversed(self._backups):
            snapshot.restore()
        remove_empty_dirs(self._backup_dirs)

    # --- 6 ---

    def _register(self) -> None:
        registry = self.ctx.registry_file
        edit = JsonEdit(registry)
        pointer = format_pointer([self.ctx.tool.marketplace.name])
        root = str(self.ctx.scope_root)
        document = loads_object(edit.before.data or b"", str(registry))
        if get_path(document, pointer) is not None:
            self.ctx.log.warning("replacing existing marketplace entry '%s' in %s", pointer, registry)
        set_path(
            document,
            pointer,
            {"source": {"source": "directory", "path": root}, "installLocation": root},
        )
        self._registration = edit
        edit.write(document)
        self._builder.add_directories(self._owned_dirs(edit.created_dirs))
        self._builder.add(
            ManifestEntry(
                kind=EntryKind.MERGE,
                path=str(registry),
                hash=self._save_backup(edit),
                keys=(pointer,),
                created=not edit.existed,
            )
        )

    def _deregister(self) -> None:
        if self._registration is not None:
            self._registration.revert()

    # --- 7 ---

    def _build_manifest(self) -> InstallManifest:
        if self.manifest is None:
            self.manifest = self._builder.build(
                tool=self.ctx.tool.name,
                scope=self.ctx.scope,
                scope_root=self.ctx.scope_root,
                installed_at=self.ctx.clock(),
                engine_version=__version__,
            )
        return self.manifest

    def _manifest_unchanged(self) -> bool:
        manifest = self._build_manifest()
        if manifest.same_content(self.previous) and self.ctx.manifest_file.is_file():
            self.manifest = self.previous
            return True
        return False

    def _write_manifest(self) -> None:
        save_manifest(self.ctx.manifest_file, self._build_manifest(), self._manifest_dirs)

    def _delete_manifest(self) -> None:
        self.ctx.manifest_file.unlink(missing_ok=True)
        remove_empty_dirs(self._manifest_dirs)


@dataclass
class UninstallPlan:
    """Reverse of the install plan, driven by the stored manifest."""

    ctx: PlacementContext
    manifest: InstallManifest | None = None
    _manifest_snapshot: FileSnapshot | None = None
    _deleted: list[FileSnapshot] = field(default_factory=list)

    def steps(self) -> list[Step]:
        return [
            Step("Preconditions", self._preconditions),
            Step("Backup existing manifest", self._backup_manifest, self._restore_manifest),
            self._removal_step("Marketplace deregistration", (EntryKind.MERGE,), registry=True),
            self._removal_step("Remove merged keys", (EntryKind.MERGE,), registry=False),
            self._removal_step("Remove files", (EntryKind.FILE, EntryKind.SYMLINK)),
            Step("Delete manifest", self._delete_manifest, self._undelete_manifest),
        ]

    def pipeline(self) -> Pipeline:
        return Pipeline(self.steps(), log=self.ctx.log)

    def _preconditions(self) -> None:
        manifest = load_manifest(self.ctx.manifest_file)
        if manifest is None and not Cleaner(self.ctx, None).has_work():
            raise DetectionError(
                f"Nothing installed for {self.ctx.tool.display_name}", tool=self.ctx.tool.name
            )

    def _backup_manifest(self) -> None:
        self._manifest_snapshot = FileSnapshot.capture(self.ctx.manifest_file)
        self.manifest = load_manifest(self.ctx.manifest_file)

    def _restore_manifest(self) -> None:
        if self._manifest_snapshot is not None:
            self._manifest_snapshot.restore()

    def _subset(self, kinds: tuple[EntryKind, ...], registry: bool | None) -> InstallManifest:
        registry_path = None
        if self.ctx.tool.placement == PlacementType.MARKETPLACE:
            registry_path = str(self.ctx.registry_file)
        entries = []
        for entry in self.manifest.entries:
            if entry.kind not in kinds:
                continue
            if registry is not None and (entry.path == registry_path) != registry:
                continue
            entries.append(entry)
        return replace(
            self.manifest,
            entries=tuple(entries),
            directories=self.manifest.directories if EntryKind.FILE in kinds else (),
        )

    def _removal_step(
        self, name: str, kinds: tuple[EntryKind, ...], registry: bool | None = None
    ) -> Step:
        cleaners: list[Cleaner] = []

        def _do() -> None:
            if self.manifest is None:
                # without a manifest only the prefix scan can find our content
                if EntryKind.FILE not in kinds:
                    return
                cleaner = Cleaner(self.ctx, None, kinds)
            else:
                cleaner = Cleaner(self.ctx, self._subset(kinds, registry), kinds)
            cleaners.append(cleaner)
            cleaner.clean()

        def _undo() -> None:
            for cleaner in reversed(cleaners):
                cleaner.restore()

        return Step(name, _do, _undo)

    def _delete_manifest(self) -> None:
        targets = [self.ctx.manifest_file]
        if self.manifest is not None:
            targets.extend(self.ctx.backup_file(e.hash) for e in self.manifest.merges if e.hash)
        for target in targets:
            if target.is_file():
                self._deleted.append(FileSnapshot.capture(target))
                target.unlink()

    def _undelete_manifest(self) -> None:
        for snapshot in reversed(self._deleted):
            snapshot.restore()
