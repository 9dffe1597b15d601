"""Conflict detection: classify tracked and new paths and build the change plan."""

from __future__ import annotations

import fnmatch
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING

from updater.exceptions import ClassificationError
from updater.filesystem.hashing import fingerprint_file
from updater.models.plan import ChangePlan, Disposition, PathState, PlanAction, PlanEntry
from updater.schemas.manifest import FileKind

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from pathlib import Path

    from updater.schemas.manifest import FileRecord, ManifestDocument

logger = logging.getLogger(__name__)


def classify(state: PathState, record: FileRecord | None) -> Disposition:
    """Classify a path from its local and upstream fingerprints and manifest record.

    The local side is compared against the record's upstream baseline, not
    against the last on-disk fingerprint: a file customized in an earlier run
    stays customized. User-created records have no upstream baseline, so
    their local content always counts as diverged. A path without a record is
    never ``UNCHANGED``.
    """
    if record is None:
        if state.local is None and state.upstream is not None:
            return Disposition.NEW_UPSTREAM
        if state.local is not None and state.upstream is None:
            return Disposition.NEW_LOCAL
        if state.local is None and state.upstream is None:
            raise ValueError(f"Path {state.path} exists nowhere and has no record")
        # Unknown history: treat existing content as customized.
        return Disposition.USER_MODIFIED

    if state.upstream is None:
        return Disposition.DELETED_UPSTREAM

    baseline = record.upstream_fingerprint if record.kind == FileKind.OFFICIAL_TEMPLATE else None
    local_changed = baseline is None or state.local != baseline
    upstream_changed = baseline is None or state.upstream != baseline

    if not local_changed and not upstream_changed:
        return Disposition.UNCHANGED
    if local_changed and not upstream_changed:
        return Disposition.USER_MODIFIED
    if not local_changed and upstream_changed:
        return Disposition.UPSTREAM_MODIFIED
    if state.local == state.upstream:
        # Both sides arrived at the same content; taking upstream loses nothing.
        # User-created files keep their owner.
        return Disposition.UPSTREAM_MODIFIED if baseline is not None else Disposition.USER_MODIFIED
    return Disposition.BOTH_MODIFIED


def matches_command_pattern(path: str, command_patterns: Iterable[str]) -> bool:
    """Check whether a path lives where agent command files live."""
    return any(fnmatch.fnmatchcase(path, pattern) for pattern in command_patterns)


def is_custom_command(
    path: str,
    record: FileRecord | None,
    disposition: Disposition,
    command_patterns: Iterable[str],
) -> bool:
    """A user-created command file: recorded as such, or new locally in a command directory."""
    if record is not None:
        return record.is_custom_command
    return disposition == Disposition.NEW_LOCAL and matches_command_pattern(path, command_patterns)


def decide_action(
    disposition: Disposition,
    state: PathState,
    record: FileRecord | None,
    *,
    force: bool,
    custom_command: bool,
    merge_base_available: bool,
) -> tuple[PlanAction, bool, str]:
    """Map a disposition to a plan action.

    Returns ``(action, flagged, reason)``. Custom commands are always skipped,
    force or not.
    """
    if custom_command:
        return PlanAction.SKIP, False, "custom command"

    if disposition in (
        Disposition.UNCHANGED,
        Disposition.UPSTREAM_MODIFIED,
        Disposition.NEW_UPSTREAM,
    ):
        return PlanAction.COPY_FROM_UPSTREAM, False, ""

    if disposition == Disposition.USER_MODIFIED:
        if force:
            return PlanAction.COPY_FROM_UPSTREAM, False, "overwritten by force"
        if state.local is None:
            return PlanAction.SKIP, False, "deleted locally"
        return PlanAction.SKIP, False, "customized locally"

    if disposition == Disposition.BOTH_MODIFIED:
        if state.local is None:
            return PlanAction.FLAG_CONFLICT, True, "deleted locally, changed upstream"
        if not merge_base_available:
            return PlanAction.FLAG_CONFLICT, True, "no merge base available"
        return PlanAction.MERGE, False, ""

    if disposition == Disposition.DELETED_UPSTREAM:
        if state.local is None:
            return PlanAction.SKIP, False, "already absent"
        if record is None or record.kind == FileKind.USER_CUSTOM:
            return PlanAction.SKIP, False, "user file"
        if state.local == record.upstream_fingerprint:
            return PlanAction.REMOVE, False, ""
        return PlanAction.SKIP, True, "removed upstream but customized locally"

    # NEW_LOCAL
    return PlanAction.SKIP, False, "user file"


def read_fingerprint(root: Path, rel_path: str) -> str | None:
    """Fingerprint ``root/rel_path``; None when the file is absent.

    Raises ClassificationError for anything that exists but cannot be hashed.
    """
    full_path = root / rel_path
    if not full_path.exists() and not full_path.is_symlink():
        return None
    if not full_path.is_file():
        raise ClassificationError("Not a regular file", path=rel_path)
    try:
        return fingerprint_file(full_path)
    except OSError as exc:
        raise ClassificationError(f"Cannot read file: {exc}", path=rel_path) from exc


def _path_state(project_root: Path, release_root: Path, rel_path: str) -> PathState:
    return PathState(
        path=rel_path,
        local=read_fingerprint(project_root, rel_path),
        upstream=read_fingerprint(release_root, rel_path),
    )


def collect_path_states(
    project_root: Path,
    release_root: Path,
    paths: Iterable[str],
    *,
    max_workers: int,
) -> dict[str, PathState]:
    """Fingerprint every candidate path on both sides using a bounded worker pool.

    Paths are independent and only read, so they are hashed concurrently. The
    first failure is raised after the pool drains.
    """
    states: dict[str, PathState] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_map = {
            executor.submit(_path_state, project_root, release_root, rel_path): rel_path
            for rel_path in paths
        }
        for future in as_completed(future_map):
            state = future.result()
            states[state.path] = state
    return states


def build_change_plan(
    states: dict[str, PathState],
    manifest: ManifestDocument | None,
    *,
    release_version: str,
    force: bool,
    command_patterns: Iterable[str],
    merge_base_available: Callable[[PathState, FileRecord | None], bool],
) -> ChangePlan:
    """Classify every path and map it to an action, in path order.

    ``merge_base_available`` is consulted only for paths both sides changed.
    Paths that exist nowhere (gone locally and upstream) produce no entry.
    """
    patterns = tuple(command_patterns)
    records = manifest.records if manifest is not None else {}
    entries: list[PlanEntry] = []

    for path in sorted(states):
        state = states[path]
        record = records.get(path)
        if state.local is None and state.upstream is None:
            logger.debug("Dropping %s: absent locally and upstream", path)
            continue

        disposition = classify(state, record)
        custom_command = is_custom_command(path, record, disposition, patterns)
        base_ok = disposition == Disposition.BOTH_MODIFIED and merge_base_available(state, record)
        action, flagged, reason = decide_action(
            disposition,
            state,
            record,
            force=force,
            custom_command=custom_command,
            merge_base_available=base_ok,
        )
        logger.debug("Planned %s: %s -> %s %s", path, disposition, action, reason)
        entries.append(
            PlanEntry(
                path=path,
                disposition=disposition,
                action=action,
                flagged=flagged,
                reason=reason,
                local_fingerprint=state.local,
                upstream_fingerprint=state.upstream,
            )
        )

    return ChangePlan(release_version=release_version, force=force, entries=tuple(entries))
