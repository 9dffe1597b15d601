"""Tests for the update transaction: planning through commit and rollback."""

from __future__ import annotations

import stat
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from tests.conftest import list_dirs, read_tree, tree_metadata, write_files
from updater.exceptions import SnapshotError
from updater.filesystem.atomic import atomic_write_bytes as real_write
from updater.filesystem.hashing import fingerprint
from updater.filesystem.manifest import load_manifest
from updater.models.plan import Disposition, PlanAction
from updater.models.update import Confirmation, EntryOutcome, ExitCode, UpdateState
from updater.schemas.manifest import FileCategory, FileKind
from updater.services import backup_service
from updater.services.merge_service import MergeService
from updater.services.update_service import UpdateOrchestrator

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from updater.config import Settings
    from updater.models.plan import ChangePlan
    from updater.models.update import Release
    from updater.schemas.manifest import ManifestDocument
    from updater.schemas.report import UpdateReport

    MakeRelease = Callable[[str, dict[str, str | bytes]], Release]

PLAN_CMD = ".claude/commands/speckit.plan.md"
SPEC_TPL = ".specify/templates/spec-template.md"
SCRIPT = ".specify/scripts/bash/common.sh"

V1_FILES: dict[str, str | bytes] = {
    PLAN_CMD: "# Plan\n\nStep one\n",
    SPEC_TPL: "# Spec\nA\nB\nC\nD\nE\n",
    SCRIPT: "#!/bin/sh\necho v1\n",
}

FIVE_V1: dict[str, str | bytes] = {f"templates/t{i}.md": f"t{i} version 1\n" for i in range(1, 6)}
FIVE_V2: dict[str, str | bytes] = {f"templates/t{i}.md": f"t{i} version 2\n" for i in range(1, 6)}


def _install(settings: Settings, project: Path, release: Release) -> UpdateReport:
    report = UpdateOrchestrator(settings).run(project, release)
    assert report.status == ExitCode.SUCCESS, report.error
    return report


def _manifest(settings: Settings, project: Path) -> ManifestDocument:
    document = load_manifest(settings.manifest_file(project))
    assert document is not None
    return document


def _failing_writes(fail_at: int) -> Callable[..., None]:
    """Replacement for atomic_write_bytes that fails on its ``fail_at``-th call."""
    calls = 0

    def write(path: Path, data: bytes, *, mode: int | None = None) -> None:
        nonlocal calls
        calls += 1
        if calls == fail_at:
            raise OSError("injected write failure")
        real_write(path, data, mode=mode)

    return write


def _answer(confirmation: Confirmation) -> Callable[[ChangePlan, bool], Confirmation]:
    def confirm(_plan: ChangePlan, _force: bool) -> Confirmation:
        return confirmation

    return confirm


class TestScenarios:
    def test_fresh_install_copies_new_upstream(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        release = make_release("1.0.0", {PLAN_CMD: "X\n"})
        report = UpdateOrchestrator(settings).run(project_dir, release)

        assert report.status == ExitCode.SUCCESS
        assert report.state == UpdateState.DONE
        assert [(e.path, e.disposition, e.action) for e in report.entries] == [
            (PLAN_CMD, Disposition.NEW_UPSTREAM, PlanAction.COPY_FROM_UPSTREAM)
        ]
        assert (project_dir / PLAN_CMD).read_bytes() == b"X\n"

        manifest = _manifest(settings, project_dir)
        assert manifest.installed_version == "1.0.0"
        record = manifest.records[PLAN_CMD]
        assert record.fingerprint == fingerprint(b"X\n")
        assert record.upstream_fingerprint == fingerprint(b"X\n")
        assert record.kind == FileKind.OFFICIAL_TEMPLATE
        assert record.category == FileCategory.COMMAND
        assert record.source_version == "1.0.0"

    def test_upstream_modified_is_copied(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", {"foo.md": "F0\n"}))
        report = UpdateOrchestrator(settings).run(
            project_dir, make_release("2.0.0", {"foo.md": "F1\n"})
        )

        entry = report.entry("foo.md")
        assert entry is not None
        assert entry.disposition == Disposition.UPSTREAM_MODIFIED
        assert entry.action == PlanAction.COPY_FROM_UPSTREAM
        assert entry.outcome == EntryOutcome.WRITTEN
        assert report.previous_version == "1.0.0"
        assert _manifest(settings, project_dir).records["foo.md"].fingerprint == fingerprint(
            b"F1\n"
        )

    def test_both_modified_disjoint_hunks_merge_cleanly(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        (project_dir / SPEC_TPL).write_text("# Spec\nA local\nB\nC\nD\nE\n", encoding="utf-8")
        release = make_release("2.0.0", {**V1_FILES, SPEC_TPL: "# Spec\nA\nB\nC\nD\nE up\n"})

        report = UpdateOrchestrator(settings).run(project_dir, release)

        assert report.status == ExitCode.SUCCESS
        entry = report.entry(SPEC_TPL)
        assert entry is not None
        assert entry.disposition == Disposition.BOTH_MODIFIED
        assert entry.action == PlanAction.MERGE
        assert entry.outcome == EntryOutcome.MERGED
        merged = (project_dir / SPEC_TPL).read_text(encoding="utf-8")
        assert merged == "# Spec\nA local\nB\nC\nD\nE up\n"

        record = _manifest(settings, project_dir).records[SPEC_TPL]
        assert record.fingerprint == fingerprint(merged.encode())
        assert record.upstream_fingerprint == fingerprint(b"# Spec\nA\nB\nC\nD\nE up\n")
        assert record.source_version == "2.0.0"

    def test_both_modified_same_hunk_commits_with_markers(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        (project_dir / SPEC_TPL).write_text("# Spec\nA\nB\nC mine\nD\nE\n", encoding="utf-8")
        release = make_release("2.0.0", {**V1_FILES, SPEC_TPL: "# Spec\nA\nB\nC theirs\nD\nE\n"})

        report = UpdateOrchestrator(settings).run(project_dir, release)

        assert report.status == ExitCode.SUCCESS
        assert report.state == UpdateState.DONE
        entry = report.entry(SPEC_TPL)
        assert entry is not None
        assert entry.outcome == EntryOutcome.CONFLICT
        assert [item.path for item in report.conflicts] == [SPEC_TPL]
        content = (project_dir / SPEC_TPL).read_text(encoding="utf-8")
        assert "<<<<<<< local" in content
        assert ">>>>>>> upstream" in content
        assert _manifest(settings, project_dir).installed_version == "2.0.0"

    @pytest.mark.parametrize("fail_at", [1, 2, 3, 4, 5])
    def test_apply_failure_restores_everything(
        self,
        settings: Settings,
        project_dir: Path,
        make_release: MakeRelease,
        fail_at: int,
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", FIVE_V1))
        before = tree_metadata(project_dir)
        dirs_before = list_dirs(project_dir)
        release = make_release("2.0.0", FIVE_V2)

        with patch(
            "updater.services.update_service.atomic_write_bytes",
            side_effect=_failing_writes(fail_at),
        ):
            report = UpdateOrchestrator(settings).run(project_dir, release)

        assert report.status == ExitCode.ROLLED_BACK
        assert report.state == UpdateState.ROLLED_BACK
        assert report.failed_path == f"templates/t{fail_at}.md"
        assert report.failed_phase == "applying"
        assert tree_metadata(project_dir) == before
        assert list_dirs(project_dir) == dirs_before

        outcomes = [entry.outcome for entry in report.entries]
        assert outcomes[: fail_at - 1] == [EntryOutcome.ROLLED_BACK] * (fail_at - 1)
        assert outcomes[fail_at - 1] == EntryOutcome.FAILED
        assert outcomes[fail_at:] == [EntryOutcome.NOT_RUN] * (5 - fail_at)


class TestIdempotence:
    def test_second_run_is_noop(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        release = make_release("1.0.0", V1_FILES)
        _install(settings, project_dir, release)
        files_after_first = {
            path: data
            for path, data in read_tree(project_dir).items()
            if path != settings.manifest_path.as_posix()
        }

        report = UpdateOrchestrator(settings).run(project_dir, release)

        assert report.status == ExitCode.SUCCESS
        assert all(
            entry.disposition == Disposition.UNCHANGED or entry.action == PlanAction.SKIP
            for entry in report.entries
        )
        assert {entry.outcome for entry in report.entries} == {EntryOutcome.UNCHANGED}
        files_after_second = {
            path: data
            for path, data in read_tree(project_dir).items()
            if path != settings.manifest_path.as_posix()
        }
        assert files_after_second == files_after_first

    def test_customization_stays_skipped_across_runs(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        (project_dir / PLAN_CMD).write_text("# My plan\n", encoding="utf-8")
        release = make_release("1.0.1", V1_FILES)

        for _ in range(2):
            report = UpdateOrchestrator(settings).run(project_dir, release)
            entry = report.entry(PLAN_CMD)
            assert entry is not None
            assert entry.disposition == Disposition.USER_MODIFIED
            assert entry.action == PlanAction.SKIP
        assert (project_dir / PLAN_CMD).read_text(encoding="utf-8") == "# My plan\n"

    def test_line_ending_only_difference_left_alone(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        crlf = b"#!/bin/sh\r\necho v1\r\n"
        (project_dir / SCRIPT).write_bytes(crlf)

        report = UpdateOrchestrator(settings).run(project_dir, make_release("1.0.1", V1_FILES))

        entry = report.entry(SCRIPT)
        assert entry is not None
        assert entry.disposition == Disposition.UNCHANGED
        assert entry.outcome == EntryOutcome.UNCHANGED
        assert (project_dir / SCRIPT).read_bytes() == crlf


class TestPolicies:
    def test_custom_command_never_touched(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        mine = ".claude/commands/mine.md"
        write_files(project_dir, {mine: "my command\n"})
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))

        record = _manifest(settings, project_dir).records[mine]
        assert record.kind == FileKind.USER_CUSTOM
        assert record.category == FileCategory.COMMAND
        assert record.upstream_fingerprint is None

        # Upstream later ships a file at the same path; force must not overwrite it.
        release = make_release("2.0.0", {**V1_FILES, mine: "official\n"})
        report = UpdateOrchestrator(settings).run(project_dir, release, force=True)

        entry = report.entry(mine)
        assert entry is not None
        assert entry.action == PlanAction.SKIP
        assert entry.detail == "custom command"
        assert (project_dir / mine).read_text(encoding="utf-8") == "my command\n"
        assert _manifest(settings, project_dir).records[mine].kind == FileKind.USER_CUSTOM

    def test_force_overwrites_customized_template(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        (project_dir / PLAN_CMD).write_text("# Mine\n", encoding="utf-8")

        report = UpdateOrchestrator(settings).run(
            project_dir, make_release("1.0.1", V1_FILES), force=True
        )

        entry = report.entry(PLAN_CMD)
        assert entry is not None
        assert entry.outcome == EntryOutcome.WRITTEN
        assert (project_dir / PLAN_CMD).read_text(encoding="utf-8") == "# Plan\n\nStep one\n"

    def test_approve_with_force_replans(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        (project_dir / PLAN_CMD).write_text("# Mine\n", encoding="utf-8")
        orchestrator = UpdateOrchestrator(
            settings, confirmer=_answer(Confirmation.APPROVED_WITH_FORCE)
        )

        report = orchestrator.run(project_dir, make_release("1.0.1", V1_FILES))

        assert report.force
        assert report.transitions.count(UpdateState.PLANNING) == 2
        assert (project_dir / PLAN_CMD).read_text(encoding="utf-8") == "# Plan\n\nStep one\n"

    def test_first_run_adopts_existing_customization(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        write_files(project_dir, {SPEC_TPL: "# Spec\nA mine\nB\nC\nD\nE\n"})
        report = UpdateOrchestrator(settings).run(project_dir, make_release("1.0.0", V1_FILES))

        entry = report.entry(SPEC_TPL)
        assert entry is not None
        assert entry.disposition == Disposition.USER_MODIFIED
        assert entry.outcome == EntryOutcome.SKIPPED
        record = _manifest(settings, project_dir).records[SPEC_TPL]
        assert record.kind == FileKind.OFFICIAL_TEMPLATE
        assert record.upstream_fingerprint == fingerprint(b"# Spec\nA\nB\nC\nD\nE\n")

        # The adopted baseline makes a later three-way merge possible.
        release = make_release("2.0.0", {**V1_FILES, SPEC_TPL: "# Spec\nA\nB\nC\nD\nE up\n"})
        report = UpdateOrchestrator(settings).run(project_dir, release)
        merged = report.entry(SPEC_TPL)
        assert merged is not None
        assert merged.outcome == EntryOutcome.MERGED
        assert (project_dir / SPEC_TPL).read_text(encoding="utf-8") == (
            "# Spec\nA mine\nB\nC\nD\nE up\n"
        )

    def test_missing_merge_base_fails_closed(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        for blob in settings.blob_root(project_dir).rglob("*"):
            if blob.is_file():
                blob.unlink()
        (project_dir / SPEC_TPL).write_text("# Spec\nA local\nB\nC\nD\nE\n", encoding="utf-8")
        release = make_release("2.0.0", {**V1_FILES, SPEC_TPL: "# Spec\nA\nB\nC\nD\nE up\n"})

        report = UpdateOrchestrator(settings).run(project_dir, release)

        entry = report.entry(SPEC_TPL)
        assert entry is not None
        assert entry.action == PlanAction.FLAG_CONFLICT
        assert entry.flagged
        assert entry.outcome == EntryOutcome.CONFLICT
        assert report.status == ExitCode.SUCCESS
        assert (project_dir / SPEC_TPL).read_text(encoding="utf-8") == (
            "# Spec\nA local\nB\nC\nD\nE\n"
        )

    def test_binary_both_modified_flagged(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", {"logo.png": b"\x89PNG\x00v1"}))
        (project_dir / "logo.png").write_bytes(b"\x89PNG\x00mine")
        report = UpdateOrchestrator(settings).run(
            project_dir, make_release("2.0.0", {"logo.png": b"\x89PNG\x00v2"})
        )
        entry = report.entry("logo.png")
        assert entry is not None
        assert entry.action == PlanAction.FLAG_CONFLICT
        assert (project_dir / "logo.png").read_bytes() == b"\x89PNG\x00mine"

    def test_deleted_upstream(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(
            settings,
            project_dir,
            make_release("1.0.0", {"old.md": "old\n", "edited.md": "orig\n", "keep.md": "k\n"}),
        )
        (project_dir / "edited.md").write_text("changed\n", encoding="utf-8")

        report = UpdateOrchestrator(settings).run(
            project_dir, make_release("2.0.0", {"keep.md": "k\n"})
        )

        removed = report.entry("old.md")
        kept = report.entry("edited.md")
        assert removed is not None
        assert kept is not None
        assert removed.outcome == EntryOutcome.REMOVED
        assert not (project_dir / "old.md").exists()
        assert kept.action == PlanAction.SKIP
        assert kept.flagged
        records = _manifest(settings, project_dir).records
        assert "old.md" not in records
        assert "edited.md" in records

    def test_local_deletion_is_respected(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        (project_dir / PLAN_CMD).unlink()
        previous = _manifest(settings, project_dir).records[PLAN_CMD]

        report = UpdateOrchestrator(settings).run(project_dir, make_release("1.0.1", V1_FILES))

        entry = report.entry(PLAN_CMD)
        assert entry is not None
        assert entry.action == PlanAction.SKIP
        assert not (project_dir / PLAN_CMD).exists()
        assert _manifest(settings, project_dir).records[PLAN_CMD] == previous

    def test_new_file_takes_release_mode(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        release = make_release("1.0.0", V1_FILES)
        (release.root / SCRIPT).chmod(0o755)
        _install(settings, project_dir, release)
        assert stat.S_IMODE((project_dir / SCRIPT).stat().st_mode) == 0o755

    def test_version_file_not_tracked(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        assert "VERSION" not in _manifest(settings, project_dir).records
        assert not (project_dir / "VERSION").exists()


class TestTransactionStates:
    def test_success_transitions(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        report = _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        assert report.transitions == [
            UpdateState.IDLE,
            UpdateState.PLANNING,
            UpdateState.AWAITING_CONFIRMATION,
            UpdateState.SNAPSHOTTING,
            UpdateState.APPLYING,
            UpdateState.COMMITTING,
            UpdateState.DONE,
        ]

    def test_state_dir_left_without_backups(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        assert not settings.backup_root(project_dir).exists()
        assert not settings.lock_file(project_dir).exists()

    def test_check_only_changes_nothing(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        report = UpdateOrchestrator(settings).run(
            project_dir, make_release("1.0.0", V1_FILES), check_only=True
        )
        assert report.status == ExitCode.SUCCESS
        assert report.state == UpdateState.PLANNED
        assert {entry.outcome for entry in report.entries} == {EntryOutcome.PLANNED}
        assert list(project_dir.iterdir()) == []

    def test_cancel_changes_nothing(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        orchestrator = UpdateOrchestrator(settings, confirmer=_answer(Confirmation.CANCELLED))
        report = orchestrator.run(project_dir, make_release("1.0.0", V1_FILES))
        assert report.status == ExitCode.CANCELLED
        assert report.state == UpdateState.CANCELLED
        assert list(project_dir.iterdir()) == []

    def test_lock_held_fails_fast(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        lock_file = settings.lock_file(project_dir)
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text('{"pid": 1}\n', encoding="utf-8")

        report = UpdateOrchestrator(settings).run(project_dir, make_release("1.0.0", V1_FILES))

        assert report.status == ExitCode.INVALID_STATE
        assert report.state == UpdateState.ABORTED
        assert report.failed_phase == "validation"
        assert not (project_dir / PLAN_CMD).exists()
        assert lock_file.exists()

    def test_invalid_manifest(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        manifest_file = settings.manifest_file(project_dir)
        write_files(project_dir, {settings.manifest_path.as_posix(): "{broken"})

        report = UpdateOrchestrator(settings).run(project_dir, make_release("1.0.0", V1_FILES))

        assert report.status == ExitCode.INVALID_STATE
        assert manifest_file.read_text(encoding="utf-8") == "{broken"
        assert not settings.lock_file(project_dir).exists()

    def test_missing_project_dir(
        self, settings: Settings, tmp_path: Path, make_release: MakeRelease
    ) -> None:
        report = UpdateOrchestrator(settings).run(
            tmp_path / "nowhere", make_release("1.0.0", V1_FILES)
        )
        assert report.status == ExitCode.INVALID_STATE
        assert not (tmp_path / "nowhere").exists()

    def test_unreadable_candidate_fails_planning(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        (project_dir / PLAN_CMD).mkdir(parents=True)
        report = UpdateOrchestrator(settings).run(project_dir, make_release("1.0.0", V1_FILES))
        assert report.status == ExitCode.PLAN_FAILED
        assert report.failed_path == PLAN_CMD
        assert report.failed_phase == "planning"

    def test_snapshot_failure_aborts_without_changes(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        with patch(
            "updater.services.backup_service.snapshot",
            side_effect=SnapshotError("Cannot capture snapshot: denied", path=PLAN_CMD),
        ):
            report = UpdateOrchestrator(settings).run(
                project_dir, make_release("1.0.0", V1_FILES)
            )
        assert report.status == ExitCode.ERROR
        assert report.state == UpdateState.ABORTED
        assert UpdateState.ROLLING_BACK not in report.transitions
        assert list(project_dir.iterdir()) == []

    def test_commit_failure_rolls_back(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", FIVE_V1))
        before = tree_metadata(project_dir)

        with patch(
            "updater.services.update_service.save_manifest",
            side_effect=OSError("no space left on device"),
        ):
            report = UpdateOrchestrator(settings).run(
                project_dir, make_release("2.0.0", FIVE_V2)
            )

        assert report.status == ExitCode.ROLLED_BACK
        assert report.failed_phase == "committing"
        assert tree_metadata(project_dir) == before

    def test_first_install_rollback_leaves_project_empty(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        with patch(
            "updater.services.update_service.save_manifest",
            side_effect=OSError("no space left on device"),
        ):
            report = UpdateOrchestrator(settings).run(
                project_dir, make_release("1.0.0", V1_FILES)
            )
        assert report.status == ExitCode.ROLLED_BACK
        assert list(project_dir.iterdir()) == []

    def test_unexpected_error_during_apply_rolls_back(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", FIVE_V1))
        before = tree_metadata(project_dir)
        with patch(
            "updater.services.update_service.atomic_write_bytes",
            side_effect=RuntimeError("boom"),
        ):
            report = UpdateOrchestrator(settings).run(
                project_dir, make_release("2.0.0", FIVE_V2)
            )
        assert report.status == ExitCode.ROLLED_BACK
        assert tree_metadata(project_dir) == before

    def test_merge_tool_failure_rolls_back(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", V1_FILES))
        (project_dir / SPEC_TPL).write_text("# Spec\nA local\nB\nC\nD\nE\n", encoding="utf-8")
        before = tree_metadata(project_dir)
        release = make_release("2.0.0", {**V1_FILES, SPEC_TPL: "# Spec\nA\nB\nC\nD\nE up\n"})
        orchestrator = UpdateOrchestrator(
            settings, merge_service=MergeService(git_executable="no-such-git-binary")
        )

        report = orchestrator.run(project_dir, release)

        assert report.status == ExitCode.ROLLED_BACK
        assert report.failed_path == SPEC_TPL
        assert tree_metadata(project_dir) == before


class TestRollbackFailureAndRecovery:
    def test_failed_restore_is_fatal_then_recoverable(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", FIVE_V1))
        before = tree_metadata(project_dir)

        with (
            patch(
                "updater.services.update_service.atomic_write_bytes",
                side_effect=_failing_writes(3),
            ),
            patch(
                "updater.services.backup_service.atomic_write_bytes",
                side_effect=OSError("read-only file system"),
            ),
        ):
            report = UpdateOrchestrator(settings).run(
                project_dir, make_release("2.0.0", FIVE_V2)
            )

        assert report.status == ExitCode.ROLLBACK_FAILED
        assert report.state == UpdateState.ROLLBACK_FAILED
        assert report.unrestored_paths
        assert len(backup_service.load_pending(settings.backup_root(project_dir))) == 1

        blocked = UpdateOrchestrator(settings).run(project_dir, make_release("2.0.0", FIVE_V2))
        assert blocked.status == ExitCode.INVALID_STATE

        recovered = UpdateOrchestrator(settings).recover(project_dir)
        assert recovered.status == ExitCode.SUCCESS
        assert recovered.state == UpdateState.ROLLED_BACK
        assert tree_metadata(project_dir) == before
        assert backup_service.load_pending(settings.backup_root(project_dir)) == []

    def test_crash_after_commit_recovers_manifest_with_files(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        _install(settings, project_dir, make_release("1.0.0", FIVE_V1))
        before = tree_metadata(project_dir)
        release = make_release("2.0.0", FIVE_V2)

        # The process dies after the new manifest is in place but before the
        # snapshot is released.
        with (
            patch(
                "updater.services.backup_service.discard",
                side_effect=KeyboardInterrupt,
            ),
            pytest.raises(KeyboardInterrupt),
        ):
            UpdateOrchestrator(settings).run(project_dir, release)
        assert _manifest(settings, project_dir).installed_version == "2.0.0"

        recovered = UpdateOrchestrator(settings).recover(project_dir)

        assert recovered.status == ExitCode.SUCCESS
        assert recovered.entry(settings.manifest_path.as_posix()) is not None
        assert tree_metadata(project_dir) == before
        assert _manifest(settings, project_dir).installed_version == "1.0.0"

        rerun = UpdateOrchestrator(settings).run(project_dir, release, check_only=True)
        assert {entry.disposition for entry in rerun.entries} == {Disposition.UPSTREAM_MODIFIED}

    def test_crash_after_first_install_commit_removes_manifest(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        with (
            patch(
                "updater.services.backup_service.discard",
                side_effect=KeyboardInterrupt,
            ),
            pytest.raises(KeyboardInterrupt),
        ):
            UpdateOrchestrator(settings).run(project_dir, make_release("1.0.0", V1_FILES))

        assert UpdateOrchestrator(settings).recover(project_dir).status == ExitCode.SUCCESS
        assert not settings.manifest_file(project_dir).exists()
        assert tree_metadata(project_dir) == {}

    def test_corrupt_pending_index_is_invalid_state(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        index = settings.backup_root(project_dir) / "deadbeef" / backup_service.SNAPSHOT_INDEX
        index.parent.mkdir(parents=True)
        index.write_text("{not json", encoding="utf-8")

        report = UpdateOrchestrator(settings).run(project_dir, make_release("1.0.0", V1_FILES))
        assert report.status == ExitCode.INVALID_STATE
        assert report.state == UpdateState.ABORTED
        assert report.failed_phase == "validation"
        assert not (project_dir / PLAN_CMD).exists()

        recovered = UpdateOrchestrator(settings).recover(project_dir)
        assert recovered.status == ExitCode.INVALID_STATE
        assert index.read_text(encoding="utf-8") == "{not json"

    def test_planning_leaves_incomplete_snapshot_for_recovery(
        self, settings: Settings, project_dir: Path, make_release: MakeRelease
    ) -> None:
        incomplete = settings.backup_root(project_dir) / "cafebabe" / "files"
        incomplete.mkdir(parents=True)

        report = UpdateOrchestrator(settings).run(
            project_dir, make_release("1.0.0", V1_FILES), check_only=True
        )
        assert report.status == ExitCode.SUCCESS
        assert incomplete.is_dir()

        assert UpdateOrchestrator(settings).recover(project_dir).status == ExitCode.SUCCESS
        assert not incomplete.parent.exists()

    def test_recover_with_nothing_pending(self, settings: Settings, project_dir: Path) -> None:
        report = UpdateOrchestrator(settings).recover(project_dir)
        assert report.status == ExitCode.SUCCESS
        assert report.state == UpdateState.IDLE
        assert list(project_dir.iterdir()) == []

    def test_recover_clears_stale_lock(self, settings: Settings, project_dir: Path) -> None:
        lock_file = settings.lock_file(project_dir)
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text('{"pid": 999999999}\n', encoding="utf-8")
        with patch("updater.services.lock_service._pid_alive", return_value=False):
            report = UpdateOrchestrator(settings).recover(project_dir)
        assert report.status == ExitCode.SUCCESS
        assert not lock_file.exists()
