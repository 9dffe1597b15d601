"""Update orchestration: plan, confirm, snapshot, apply, commit, roll back."""

from __future__ import annotations

import logging
import stat
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from updater.datetime_service import now_utc
from updater.exceptions import (
    ApplyError,
    ClassificationError,
    CommitError,
    MergeError,
    RollbackError,
    SnapshotError,
    StateValidationError,
    UpdateError,
)
from updater.filesystem.atomic import atomic_write_bytes
from updater.filesystem.blob_store import BlobStore
from updater.filesystem.hashing import fingerprint, fingerprint_file
from updater.filesystem.manifest import empty_manifest, load_manifest, save_manifest
from updater.filesystem.tree import list_directory_files, parent_dir, resolve_safe_path, scan_tree
from updater.models.plan import ChangePlan, Disposition, PlanAction
from updater.models.update import (
    TERMINAL_STATES,
    TRANSITIONS,
    VERSION_FILE,
    Confirmation,
    EntryOutcome,
    ExitCode,
    UpdateState,
)
from updater.schemas.manifest import FileCategory, FileKind, FileRecord, ManifestDocument
from updater.schemas.report import ReportEntry, UpdateReport
from updater.services import backup_service
from updater.services.conflict_service import (
    build_change_plan,
    collect_path_states,
    matches_command_pattern,
)
from updater.services.lock_service import ProjectLock, break_stale_lock
from updater.services.merge_service import MergeService, is_mergeable

if TYPE_CHECKING:
    from pathlib import Path

    from updater.config import Settings
    from updater.models.plan import PathState, PlanEntry
    from updater.models.update import Confirmer, Release
    from updater.services.backup_service import BackupSnapshot

logger = logging.getLogger(__name__)

# Outcomes whose effect on disk a rollback undoes.
_WRITE_OUTCOMES = frozenset({EntryOutcome.WRITTEN, EntryOutcome.MERGED, EntryOutcome.REMOVED})


def auto_approve(plan: ChangePlan, force: bool) -> Confirmation:
    """Confirmer for unattended runs."""
    return Confirmation.APPROVED


@dataclass
class _Transaction:
    """Mutable bookkeeping for a single run; never shared between runs."""

    release_version: str | None = None
    check_only: bool = False
    force: bool = False
    state: UpdateState = UpdateState.IDLE
    transitions: list[UpdateState] = field(default_factory=lambda: [UpdateState.IDLE])
    plan: ChangePlan | None = None
    previous_version: str | None = None
    outcomes: dict[str, tuple[EntryOutcome, str]] = field(default_factory=dict)
    extra_entries: list[ReportEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def transition(self, new_state: UpdateState) -> None:
        allowed = TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise RuntimeError(f"Illegal update state transition {self.state} -> {new_state}")
        logger.info("Update state: %s -> %s", self.state, new_state)
        self.state = new_state
        self.transitions.append(new_state)

    def set_outcome(self, path: str, outcome: EntryOutcome, detail: str = "") -> None:
        self.outcomes[path] = (outcome, detail)

    def report(
        self,
        status: ExitCode,
        *,
        error: UpdateError | None = None,
        unrestored: list[str] | None = None,
    ) -> UpdateReport:
        entries = list(self.extra_entries)
        if self.plan is not None:
            for plan_entry in self.plan.entries:
                outcome, detail = self.outcomes.get(plan_entry.path, (EntryOutcome.PLANNED, ""))
                entries.append(
                    ReportEntry(
                        path=plan_entry.path,
                        disposition=plan_entry.disposition,
                        action=plan_entry.action,
                        outcome=outcome,
                        flagged=plan_entry.flagged,
                        detail=detail or plan_entry.reason,
                    )
                )
        return UpdateReport(
            status=status,
            state=self.state,
            release_version=self.release_version,
            previous_version=self.previous_version,
            check_only=self.check_only,
            force=self.force,
            entries=entries,
            transitions=list(self.transitions),
            error=str(error) if error is not None else None,
            failed_path=error.path if error is not None else None,
            failed_phase=error.phase if error is not None else None,
            unrestored_paths=unrestored or [],
            warnings=list(self.warnings),
        )


class UpdateOrchestrator:
    """Drives one update transaction through its states.

    Collaborators are injected; the orchestrator holds no per-run state, so a
    single instance can serve several projects one after another.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        merge_service: MergeService | None = None,
        confirmer: Confirmer = auto_approve,
    ) -> None:
        self.settings = settings
        self.merge_service = merge_service or MergeService(
            git_executable=settings.git_executable,
            timeout_seconds=settings.merge_timeout_seconds,
        )
        self.confirmer = confirmer

    # -- public entry points -------------------------------------------------

    def run(
        self,
        project_root: Path,
        release: Release,
        *,
        check_only: bool = False,
        force: bool = False,
    ) -> UpdateReport:
        """Update ``project_root`` to ``release`` and report the outcome.

        Never raises UpdateError: every failure ends in a terminal state with
        its exit code on the returned report.
        """
        txn = _Transaction(release_version=release.version, check_only=check_only, force=force)
        lock = ProjectLock(self.settings.lock_file(project_root))
        existing_dirs = self._existing_state_dirs(project_root)
        try:
            report = self._run_locked(txn, lock, project_root, release)
        finally:
            if lock.acquired:
                lock.release()
                self._prune_state_dirs(project_root, existing_dirs)
        if report.state not in TERMINAL_STATES:
            raise RuntimeError(f"Update stopped in non-terminal state {report.state}")
        logger.info(
            "Update finished in state %s (exit %d, %d entries)",
            report.state,
            report.status,
            len(report.entries),
        )
        return report

    def recover(self, project_root: Path) -> UpdateReport:
        """Restore and discard snapshots left by an interrupted update."""
        txn = _Transaction()
        lock_path = self.settings.lock_file(project_root)
        existing_dirs = self._existing_state_dirs(project_root)
        break_stale_lock(lock_path)
        lock = ProjectLock(lock_path)
        try:
            lock.acquire()
        except StateValidationError as exc:
            logger.error("Recovery refused: %s", exc)
            return txn.report(ExitCode.INVALID_STATE, error=exc)

        try:
            backup_root = self.settings.backup_root(project_root)
            backup_service.remove_incomplete(backup_root)
            try:
                pending = backup_service.load_pending(backup_root)
            except StateValidationError as exc:
                logger.error("Recovery refused: %s", exc)
                return txn.report(ExitCode.INVALID_STATE, error=exc)
            if not pending:
                logger.info("Nothing to recover in %s", project_root)
                return txn.report(ExitCode.SUCCESS)

            txn.transition(UpdateState.ROLLING_BACK)
            unrestored: list[str] = []
            # Newest first, so the oldest snapshot's content wins.
            for snap in sorted(pending, key=lambda item: item.created_at, reverse=True):
                result = backup_service.restore(snap)
                for path in snap.paths:
                    failure = result.failed.get(path)
                    txn.extra_entries.append(
                        ReportEntry(
                            path=path,
                            outcome=EntryOutcome.FAILED if failure else EntryOutcome.ROLLED_BACK,
                            detail=failure or f"restored from snapshot {snap.transaction_id}",
                        )
                    )
                if result.ok:
                    self._discard(txn, snap)
                else:
                    unrestored.extend(sorted(result.failed))

            if unrestored:
                txn.transition(UpdateState.ROLLBACK_FAILED)
                error = RollbackError("Could not restore every path", failed_paths=unrestored)
                return txn.report(ExitCode.ROLLBACK_FAILED, error=error, unrestored=unrestored)
            txn.transition(UpdateState.ROLLED_BACK)
            return txn.report(ExitCode.SUCCESS)
        finally:
            lock.release()
            self._prune_state_dirs(project_root, existing_dirs)

    def plan(
        self,
        project_root: Path,
        release: Release,
        manifest: ManifestDocument | None,
        *,
        force: bool,
    ) -> ChangePlan:
        """Build the change plan. Reads only; raises ClassificationError."""
        blob_store = BlobStore(self.settings.blob_root(project_root))
        candidates = self._candidate_paths(project_root, release, manifest)
        for rel_path in candidates:
            try:
                resolve_safe_path(project_root, rel_path)
            except ValueError as exc:
                raise ClassificationError(str(exc), path=rel_path) from exc

        states = collect_path_states(
            project_root,
            release.root,
            candidates,
            max_workers=self.settings.max_workers,
        )

        def merge_base_available(state: PathState, record: FileRecord | None) -> bool:
            return self._can_merge(project_root, release, blob_store, state, record)

        plan = build_change_plan(
            states,
            manifest,
            release_version=release.version,
            force=force,
            command_patterns=self.settings.command_patterns,
            merge_base_available=merge_base_available,
        )
        logger.info(
            "Planned %d paths for release %s (%d mutating, %d flagged)",
            len(plan.entries),
            release.version,
            len(plan.mutating_paths),
            len(plan.flagged_entries),
        )
        return plan

    # -- phases ----------------------------------------------------------------

    def _run_locked(
        self,
        txn: _Transaction,
        lock: ProjectLock,
        project_root: Path,
        release: Release,
    ) -> UpdateReport:
        txn.transition(UpdateState.PLANNING)
        try:
            self._validate_inputs(project_root, release)
            lock.acquire()
            self._ensure_no_pending(project_root)
            manifest = load_manifest(self.settings.manifest_file(project_root))
        except StateValidationError as exc:
            logger.error("Update refused: %s", exc)
            txn.transition(UpdateState.ABORTED)
            return txn.report(ExitCode.INVALID_STATE, error=exc)
        if manifest is not None:
            txn.previous_version = manifest.installed_version

        try:
            txn.plan = self.plan(project_root, release, manifest, force=txn.force)
        except ClassificationError as exc:
            logger.error("Planning failed: %s", exc)
            txn.transition(UpdateState.ABORTED)
            return txn.report(ExitCode.PLAN_FAILED, error=exc)

        if txn.check_only:
            txn.transition(UpdateState.PLANNED)
            return txn.report(ExitCode.SUCCESS)

        txn.transition(UpdateState.AWAITING_CONFIRMATION)
        answer = self.confirmer(txn.plan, txn.force)
        if answer == Confirmation.CANCELLED:
            logger.info("Update cancelled before any change")
            txn.transition(UpdateState.CANCELLED)
            return txn.report(ExitCode.CANCELLED)
        if answer == Confirmation.APPROVED_WITH_FORCE and not txn.force:
            txn.force = True
            txn.transition(UpdateState.PLANNING)
            try:
                txn.plan = self.plan(project_root, release, manifest, force=True)
            except ClassificationError as exc:
                logger.error("Planning failed: %s", exc)
                txn.transition(UpdateState.ABORTED)
                return txn.report(ExitCode.PLAN_FAILED, error=exc)
            txn.transition(UpdateState.AWAITING_CONFIRMATION)

        plan = txn.plan
        blob_store = BlobStore(self.settings.blob_root(project_root))
        baselines = self._baseline_fingerprints(plan, manifest)

        txn.transition(UpdateState.SNAPSHOTTING)
        new_blobs = sorted(
            {
                blob_store.blob_path(fp).relative_to(project_root).as_posix()
                for fp in baselines.values()
                if not blob_store.has(fp)
            }
        )
        try:
            snap = backup_service.snapshot(
                project_root,
                [*plan.mutating_paths, *new_blobs, self.settings.manifest_path.as_posix()],
                self.settings.backup_root(project_root),
            )
        except SnapshotError as exc:
            logger.error("Snapshot failed, nothing was changed: %s", exc)
            txn.transition(UpdateState.ABORTED)
            return txn.report(ExitCode.ERROR, error=exc)

        txn.transition(UpdateState.APPLYING)
        failure: UpdateError | None = self._apply(txn, project_root, release, manifest, blob_store)
        if failure is None:
            txn.transition(UpdateState.COMMITTING)
            failure = self._commit(txn, project_root, release, manifest, blob_store, baselines)
        if failure is not None:
            return self._roll_back(txn, snap, failure)

        self._discard(txn, snap)
        txn.transition(UpdateState.DONE)
        return txn.report(ExitCode.SUCCESS)

    def _apply(
        self,
        txn: _Transaction,
        project_root: Path,
        release: Release,
        manifest: ManifestDocument | None,
        blob_store: BlobStore,
    ) -> ApplyError | None:
        """Execute plan entries in path order; stop at the first failure."""
        assert txn.plan is not None
        records = manifest.records if manifest is not None else {}
        failure: ApplyError | None = None
        for entry in txn.plan.entries:
            if failure is not None:
                txn.set_outcome(entry.path, EntryOutcome.NOT_RUN)
                continue
            if entry.action == PlanAction.SKIP:
                txn.set_outcome(entry.path, EntryOutcome.SKIPPED)
                continue
            try:
                outcome, detail = self._apply_entry(
                    project_root, release, entry, records.get(entry.path), blob_store
                )
            except (OSError, ValueError, MergeError) as exc:
                logger.error("Applying %s failed: %s", entry.path, exc)
                txn.set_outcome(entry.path, EntryOutcome.FAILED, str(exc))
                failure = ApplyError(f"{entry.action} failed: {exc}", path=entry.path)
            except Exception as exc:
                logger.exception("Unexpected error applying %s", entry.path)
                txn.set_outcome(entry.path, EntryOutcome.FAILED, str(exc))
                failure = ApplyError(f"unexpected error: {exc}", path=entry.path)
            else:
                logger.debug("Applied %s: %s", entry.path, outcome)
                txn.set_outcome(entry.path, outcome, detail)
        return failure

    def _apply_entry(
        self,
        project_root: Path,
        release: Release,
        entry: PlanEntry,
        record: FileRecord | None,
        blob_store: BlobStore,
    ) -> tuple[EntryOutcome, str]:
        target = resolve_safe_path(project_root, entry.path)

        if entry.action == PlanAction.FLAG_CONFLICT:
            return EntryOutcome.CONFLICT, entry.reason

        if entry.action == PlanAction.REMOVE:
            target.unlink()
            return EntryOutcome.REMOVED, ""

        source = resolve_safe_path(release.root, entry.path)
        upstream = source.read_bytes()

        if entry.action == PlanAction.COPY_FROM_UPSTREAM:
            # Same content up to line endings and trailing whitespace: leave it be.
            if target.is_file() and fingerprint(target.read_bytes()) == fingerprint(upstream):
                return EntryOutcome.UNCHANGED, ""
            mode = stat.S_IMODE((target if target.is_file() else source).stat().st_mode)
            atomic_write_bytes(target, upstream, mode=mode)
            return EntryOutcome.WRITTEN, entry.reason

        # PlanAction.MERGE
        if record is None or record.upstream_fingerprint is None:
            raise MergeError("No merge base recorded", path=entry.path)
        base = blob_store.get(record.upstream_fingerprint)
        if base is None:
            raise MergeError("Merge base blob disappeared", path=entry.path)
        local = target.read_bytes()
        result = self.merge_service.merge(base, local, upstream)
        if result.merged != local:
            atomic_write_bytes(target, result.merged, mode=stat.S_IMODE(target.stat().st_mode))
        if result.has_conflict:
            return EntryOutcome.CONFLICT, f"{result.conflict_count} conflict(s) marked in file"
        return EntryOutcome.MERGED, ""

    def _commit(
        self,
        txn: _Transaction,
        project_root: Path,
        release: Release,
        manifest: ManifestDocument | None,
        blob_store: BlobStore,
        baselines: dict[str, str],
    ) -> CommitError | None:
        """Store new merge bases, then replace the manifest."""
        assert txn.plan is not None
        current = None
        try:
            for current, fp in sorted(baselines.items()):
                if blob_store.has(fp):
                    continue
                content = resolve_safe_path(release.root, current).read_bytes()
                if fingerprint(content) != fp:
                    raise CommitError("Release file changed during the update", path=current)
                blob_store.put(content)
            current = None
            document = self._build_manifest(project_root, release, txn.plan, manifest)
            save_manifest(self.settings.manifest_file(project_root), document)
        except CommitError as exc:
            logger.error("Commit failed: %s", exc)
            return exc
        except Exception as exc:
            logger.exception("Commit failed")
            return CommitError(str(exc), path=current)
        return None

    def _roll_back(
        self,
        txn: _Transaction,
        snap: BackupSnapshot,
        failure: UpdateError,
    ) -> UpdateReport:
        txn.transition(UpdateState.ROLLING_BACK)
        result = backup_service.restore(snap)
        assert txn.plan is not None
        for entry in txn.plan.entries:
            outcome, detail = txn.outcomes.get(entry.path, (EntryOutcome.NOT_RUN, ""))
            merged_with_conflict = (
                outcome == EntryOutcome.CONFLICT and entry.action == PlanAction.MERGE
            )
            if outcome in _WRITE_OUTCOMES or merged_with_conflict:
                txn.set_outcome(entry.path, EntryOutcome.ROLLED_BACK, detail)

        if not result.ok:
            unrestored = sorted(result.failed)
            for path in unrestored:
                txn.set_outcome(path, EntryOutcome.FAILED, result.failed[path])
            logger.critical(
                "Rollback failed for %d path(s); snapshot kept at %s",
                len(unrestored),
                snap.holding_dir,
            )
            txn.warnings.append(f"Snapshot kept at {snap.holding_dir}; run with --recover")
            txn.transition(UpdateState.ROLLBACK_FAILED)
            return txn.report(ExitCode.ROLLBACK_FAILED, error=failure, unrestored=unrestored)

        self._discard(txn, snap)
        txn.transition(UpdateState.ROLLED_BACK)
        return txn.report(ExitCode.ROLLED_BACK, error=failure)

    # -- helpers ---------------------------------------------------------------

    def _validate_inputs(self, project_root: Path, release: Release) -> None:
        if not project_root.is_dir():
            raise StateValidationError("Project directory does not exist", path=str(project_root))
        if not release.root.is_dir():
            raise StateValidationError("Release directory does not exist", path=str(release.root))
        if release.root.resolve() == project_root.resolve():
            raise StateValidationError(
                "Release directory must differ from the project", path=str(release.root)
            )

    def _ensure_no_pending(self, project_root: Path) -> None:
        pending = backup_service.load_pending(self.settings.backup_root(project_root))
        if pending:
            raise StateValidationError(
                "An interrupted update left a snapshot behind; run with --recover first",
                path=str(pending[0].holding_dir),
            )

    def _candidate_paths(
        self,
        project_root: Path,
        release: Release,
        manifest: ManifestDocument | None,
    ) -> list[str]:
        """Upstream files, recorded files, and local files beside either."""
        excludes = self.settings.scan_excludes()
        upstream = scan_tree(release.root, exclude=[*excludes, VERSION_FILE])
        recorded = list(manifest.records) if manifest is not None else []
        candidates = set(upstream) | set(recorded)
        directories = {parent_dir(path) for path in candidates} - {""}
        for rel_dir in sorted(directories):
            candidates.update(list_directory_files(project_root, rel_dir, exclude=excludes))
        return sorted(candidates)

    def _can_merge(
        self,
        project_root: Path,
        release: Release,
        blob_store: BlobStore,
        state: PathState,
        record: FileRecord | None,
    ) -> bool:
        """A merge needs a stored base and text content on all three sides."""
        if record is None or record.kind != FileKind.OFFICIAL_TEMPLATE:
            return False
        if record.upstream_fingerprint is None or state.local is None or state.upstream is None:
            return False
        base = blob_store.get(record.upstream_fingerprint)
        if base is None:
            logger.warning("No merge base stored for %s", state.path)
            return False
        try:
            local = (project_root / state.path).read_bytes()
            upstream = (release.root / state.path).read_bytes()
        except OSError as exc:
            raise ClassificationError(f"Cannot read file: {exc}", path=state.path) from exc
        return all(is_mergeable(content) for content in (base, local, upstream))

    def _baseline_fingerprints(
        self,
        plan: ChangePlan,
        manifest: ManifestDocument | None,
    ) -> dict[str, str]:
        """Paths whose record will use this release's content as merge base."""
        records = manifest.records if manifest is not None else {}
        baselines: dict[str, str] = {}
        for entry in plan.entries:
            record = records.get(entry.path)
            if entry.upstream_fingerprint is None:
                continue
            if record is not None and record.kind == FileKind.USER_CUSTOM:
                continue
            if entry.action in (PlanAction.COPY_FROM_UPSTREAM, PlanAction.MERGE):
                baselines[entry.path] = entry.upstream_fingerprint
            elif record is None:
                if entry.disposition == Disposition.USER_MODIFIED and entry.local_fingerprint:
                    baselines[entry.path] = entry.upstream_fingerprint
            elif record.upstream_fingerprint == entry.upstream_fingerprint:
                baselines[entry.path] = entry.upstream_fingerprint
        return baselines

    def _category(self, path: str) -> FileCategory:
        if matches_command_pattern(path, self.settings.command_patterns):
            return FileCategory.COMMAND
        return FileCategory.TEMPLATE

    def _build_manifest(
        self,
        project_root: Path,
        release: Release,
        plan: ChangePlan,
        manifest: ManifestDocument | None,
    ) -> ManifestDocument:
        """Derive the post-update manifest from the plan and the files now on disk."""
        previous = manifest or empty_manifest()
        now = now_utc()
        records: dict[str, FileRecord] = {}

        for entry in plan.entries:
            if entry.action == PlanAction.REMOVE:
                continue
            record = previous.records.get(entry.path)
            local_path = project_root / entry.path
            if not local_path.is_file():
                # Deleted locally and left alone: the deletion stays a customization.
                if record is not None and entry.upstream_fingerprint is not None:
                    records[entry.path] = record
                continue
            current = fingerprint_file(local_path)

            if record is not None and record.kind == FileKind.USER_CUSTOM:
                records[entry.path] = record.model_copy(
                    update={"fingerprint": current, "last_seen_at": now}
                )
            elif entry.action in (PlanAction.COPY_FROM_UPSTREAM, PlanAction.MERGE):
                records[entry.path] = FileRecord(
                    path=entry.path,
                    fingerprint=current,
                    upstream_fingerprint=entry.upstream_fingerprint,
                    source_version=release.version,
                    kind=FileKind.OFFICIAL_TEMPLATE,
                    category=self._category(entry.path),
                    last_seen_at=now,
                )
            elif record is not None:
                records[entry.path] = record.model_copy(
                    update={
                        "fingerprint": current,
                        "category": self._category(entry.path),
                        "last_seen_at": now,
                    }
                )
            elif entry.upstream_fingerprint is None:
                records[entry.path] = FileRecord(
                    path=entry.path,
                    fingerprint=current,
                    kind=FileKind.USER_CUSTOM,
                    category=self._category(entry.path),
                    last_seen_at=now,
                )
            else:
                # First sight of a customized template: adopt this release as its base.
                records[entry.path] = FileRecord(
                    path=entry.path,
                    fingerprint=current,
                    upstream_fingerprint=entry.upstream_fingerprint,
                    source_version=release.version,
                    kind=FileKind.OFFICIAL_TEMPLATE,
                    category=self._category(entry.path),
                    last_seen_at=now,
                )

        return ManifestDocument(installed_version=release.version, records=records)

    def _discard(self, txn: _Transaction, snap: BackupSnapshot) -> None:
        try:
            backup_service.discard(snap)
        except OSError as exc:
            logger.error("Could not remove snapshot %s: %s", snap.holding_dir, exc)
            txn.warnings.append(f"Could not remove snapshot {snap.holding_dir}: {exc}")

    def _state_dirs(self, project_root: Path) -> list[Path]:
        """Engine-owned directories, deepest first."""
        state_root = self.settings.state_root(project_root)
        dirs = {
            self.settings.backup_root(project_root),
            self.settings.blob_root(project_root),
            self.settings.manifest_file(project_root).parent,
        }
        for directory in (state_root, *state_root.parents):
            if directory == project_root or not directory.is_relative_to(project_root):
                break
            dirs.add(directory)
        return sorted(dirs, key=lambda path: len(path.parts), reverse=True)

    def _existing_state_dirs(self, project_root: Path) -> set[Path]:
        return {directory for directory in self._state_dirs(project_root) if directory.is_dir()}

    def _prune_state_dirs(self, project_root: Path, existing: set[Path]) -> None:
        """Remove engine directories this run created and left empty."""
        for directory in self._state_dirs(project_root):
            if directory in existing or directory == project_root:
                continue
            if directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()
