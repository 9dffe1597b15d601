"""Pre-update snapshots and their exact restoration."""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from updater.datetime_service import now_utc
from updater.exceptions import SnapshotError, StateValidationError
from updater.filesystem.atomic import atomic_write_bytes, atomic_write_text, fsync_dir, fsync_file

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

SNAPSHOT_INDEX = "snapshot.json"
_FILES_DIR = "files"


@dataclass(frozen=True)
class SnapshotEntry:
    """Pre-update state of one path."""

    path: str
    existed: bool
    mode: int | None = None
    mtime_ns: int | None = None
    blob: str | None = None
    # Directories, shallowest first, that did not exist before the update.
    created_dirs: tuple[str, ...] = ()


@dataclass(frozen=True)
class BackupSnapshot:
    """Point-in-time copy of every path a transaction may touch."""

    transaction_id: str
    project_root: Path
    holding_dir: Path
    created_at: str
    entries: tuple[SnapshotEntry, ...] = ()

    @property
    def paths(self) -> list[str]:
        """Captured paths, in capture order."""
        return [entry.path for entry in self.entries]

    def to_json(self) -> str:
        """Serialize the snapshot index."""
        data: dict[str, Any] = {
            "transaction_id": self.transaction_id,
            "project_root": str(self.project_root),
            "created_at": self.created_at,
            "entries": [asdict(entry) for entry in self.entries],
        }
        return json.dumps(data, indent=2) + "\n"

    @classmethod
    def from_json(cls, holding_dir: Path, raw: str) -> BackupSnapshot:
        """Rebuild a snapshot from its persisted index."""
        data = json.loads(raw)
        entries = tuple(
            SnapshotEntry(
                path=item["path"],
                existed=item["existed"],
                mode=item.get("mode"),
                mtime_ns=item.get("mtime_ns"),
                blob=item.get("blob"),
                created_dirs=tuple(item.get("created_dirs", ())),
            )
            for item in data["entries"]
        )
        return cls(
            transaction_id=data["transaction_id"],
            project_root=Path(data["project_root"]),
            holding_dir=holding_dir,
            created_at=data["created_at"],
            entries=entries,
        )


@dataclass
class RestoreReport:
    """Result of replaying a snapshot."""

    restored: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """True when every captured path is back to its prior state."""
        return not self.failed


def _missing_parent_dirs(project_root: Path, rel_path: str) -> tuple[str, ...]:
    """Ancestors of ``rel_path`` that do not exist yet, shallowest first."""
    missing: list[str] = []
    for parent in PurePosixPath(rel_path).parents:
        if parent.as_posix() in ("", "."):
            break
        if (project_root / parent.as_posix()).exists():
            break
        missing.append(parent.as_posix())
    return tuple(reversed(missing))


def _capture(project_root: Path, files_dir: Path, index: int, rel_path: str) -> SnapshotEntry:
    full_path = project_root / rel_path
    if not full_path.exists() and not full_path.is_symlink():
        return SnapshotEntry(
            path=rel_path,
            existed=False,
            created_dirs=_missing_parent_dirs(project_root, rel_path),
        )
    if full_path.is_symlink() or not full_path.is_file():
        raise SnapshotError("Not a regular file", path=rel_path)
    st = full_path.stat()
    blob_name = f"{index:06d}"
    shutil.copyfile(full_path, files_dir / blob_name)
    fsync_file(files_dir / blob_name)
    return SnapshotEntry(
        path=rel_path,
        existed=True,
        mode=stat.S_IMODE(st.st_mode),
        mtime_ns=st.st_mtime_ns,
        blob=f"{_FILES_DIR}/{blob_name}",
    )


def snapshot(project_root: Path, paths: Iterable[str], holding_root: Path) -> BackupSnapshot:
    """Copy the current bytes and metadata of every path into a new holding directory.

    All-or-nothing: if any path cannot be captured the partial holding
    directory is removed and SnapshotError is raised. The index file is
    written last, so a holding directory without one never needs restoring.
    """
    transaction_id = uuid.uuid4().hex
    holding_dir = holding_root / transaction_id
    files_dir = holding_dir / _FILES_DIR
    created_at = now_utc().isoformat()

    try:
        files_dir.mkdir(parents=True)
        entries = tuple(
            _capture(project_root, files_dir, index, rel_path)
            for index, rel_path in enumerate(sorted(set(paths)))
        )
        fsync_dir(files_dir)
        result = BackupSnapshot(
            transaction_id=transaction_id,
            project_root=project_root,
            holding_dir=holding_dir,
            created_at=created_at,
            entries=entries,
        )
        atomic_write_text(holding_dir / SNAPSHOT_INDEX, result.to_json())
    except SnapshotError:
        shutil.rmtree(holding_dir, ignore_errors=True)
        raise
    except OSError as exc:
        shutil.rmtree(holding_dir, ignore_errors=True)
        failed_path = exc.filename if isinstance(exc.filename, str) else None
        raise SnapshotError(f"Cannot capture snapshot: {exc}", path=failed_path) from exc

    logger.info(
        "Captured snapshot %s (%d paths, %d existing)",
        transaction_id,
        len(entries),
        sum(1 for entry in entries if entry.existed),
    )
    return result


def _restore_entry(snap: BackupSnapshot, entry: SnapshotEntry, report: RestoreReport) -> None:
    target = snap.project_root / entry.path
    if entry.existed:
        if entry.blob is None:
            raise OSError(f"snapshot entry for {entry.path} has no stored bytes")
        data = (snap.holding_dir / entry.blob).read_bytes()
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        atomic_write_bytes(target, data, mode=entry.mode)
        if entry.mtime_ns is not None:
            os.utime(target, ns=(entry.mtime_ns, entry.mtime_ns))
        if target.read_bytes() != data:
            raise OSError(f"restored bytes of {entry.path} do not match the snapshot")
        report.restored.append(entry.path)
        return

    if target.exists() or target.is_symlink():
        target.unlink()
        report.removed.append(entry.path)
    for rel_dir in reversed(entry.created_dirs):
        directory = snap.project_root / rel_dir
        if directory.is_dir() and not any(directory.iterdir()):
            directory.rmdir()


def restore(snap: BackupSnapshot) -> RestoreReport:
    """Put every captured path back to its exact prior bytes.

    Paths that did not exist are removed along with directories the
    transaction created. Failures are collected per path rather than raised,
    so every path gets its restoration attempt.
    """
    report = RestoreReport()
    for entry in snap.entries:
        try:
            _restore_entry(snap, entry, report)
        except OSError as exc:
            logger.error("Failed to restore %s: %s", entry.path, exc)
            report.failed[entry.path] = str(exc)
    if report.ok:
        logger.info(
            "Restored snapshot %s (%d rewritten, %d removed)",
            snap.transaction_id,
            len(report.restored),
            len(report.removed),
        )
    else:
        logger.error(
            "Snapshot %s restored with %d failure(s)", snap.transaction_id, len(report.failed)
        )
    return report


def discard(snap: BackupSnapshot) -> None:
    """Release the holding directory. Safe to call more than once.

    The index goes first so a half-removed directory is never seen as pending.
    """
    (snap.holding_dir / SNAPSHOT_INDEX).unlink(missing_ok=True)
    if snap.holding_dir.exists():
        shutil.rmtree(snap.holding_dir)
        logger.debug("Discarded snapshot %s", snap.transaction_id)


def load_pending(holding_root: Path) -> list[BackupSnapshot]:
    """Find completed snapshots left behind by an interrupted update.

    Read-only. Holding directories without an index never reached the apply
    phase and are ignored here; ``remove_incomplete`` deletes them. An index
    that cannot be read or parsed raises StateValidationError.
    """
    if not holding_root.is_dir():
        return []
    pending: list[BackupSnapshot] = []
    for holding_dir in sorted(holding_root.iterdir()):
        index = holding_dir / SNAPSHOT_INDEX
        if not holding_dir.is_dir() or not index.is_file():
            continue
        try:
            pending.append(BackupSnapshot.from_json(holding_dir, index.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StateValidationError(
                f"Pending snapshot index is unreadable: {exc}", path=str(index)
            ) from exc
    return pending


def remove_incomplete(holding_root: Path) -> list[Path]:
    """Delete holding directories that never got an index; return them."""
    if not holding_root.is_dir():
        return []
    removed: list[Path] = []
    for holding_dir in sorted(holding_root.iterdir()):
        if holding_dir.is_dir() and not (holding_dir / SNAPSHOT_INDEX).is_file():
            logger.warning("Removing incomplete snapshot directory %s", holding_dir)
            shutil.rmtree(holding_dir)
            removed.append(holding_dir)
    return removed
