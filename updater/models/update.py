"""Update transaction states, outcomes and collaborator contracts."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum, StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from updater.models.plan import ChangePlan

VERSION_FILE = "VERSION"


class UpdateState(StrEnum):
    """States of the update transaction."""

    IDLE = "idle"
    PLANNING = "planning"
    PLANNED = "planned"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CANCELLED = "cancelled"
    SNAPSHOTTING = "snapshotting"
    ABORTED = "aborted"
    APPLYING = "applying"
    COMMITTING = "committing"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


TERMINAL_STATES = frozenset(
    {
        UpdateState.PLANNED,
        UpdateState.CANCELLED,
        UpdateState.ABORTED,
        UpdateState.DONE,
        UpdateState.ROLLED_BACK,
        UpdateState.ROLLBACK_FAILED,
    }
)

# Allowed state transitions; anything else is a programming error.
TRANSITIONS: dict[UpdateState, frozenset[UpdateState]] = {
    # Recovery goes straight from idle to restoring a pending snapshot.
    UpdateState.IDLE: frozenset({UpdateState.PLANNING, UpdateState.ROLLING_BACK}),
    UpdateState.PLANNING: frozenset(
        {UpdateState.PLANNED, UpdateState.AWAITING_CONFIRMATION, UpdateState.ABORTED}
    ),
    UpdateState.AWAITING_CONFIRMATION: frozenset(
        {UpdateState.CANCELLED, UpdateState.SNAPSHOTTING, UpdateState.PLANNING}
    ),
    UpdateState.SNAPSHOTTING: frozenset({UpdateState.APPLYING, UpdateState.ABORTED}),
    UpdateState.APPLYING: frozenset({UpdateState.COMMITTING, UpdateState.ROLLING_BACK}),
    UpdateState.COMMITTING: frozenset({UpdateState.DONE, UpdateState.ROLLING_BACK}),
    UpdateState.ROLLING_BACK: frozenset({UpdateState.ROLLED_BACK, UpdateState.ROLLBACK_FAILED}),
}


class ExitCode(IntEnum):
    """Process exit status reported for each terminal outcome."""

    SUCCESS = 0
    ERROR = 1
    USAGE = 2
    PLAN_FAILED = 3
    INVALID_STATE = 4
    CANCELLED = 5
    ROLLED_BACK = 6
    ROLLBACK_FAILED = 7


class Confirmation(StrEnum):
    """Answer from the confirmation collaborator."""

    APPROVED = "approved"
    CANCELLED = "cancelled"
    APPROVED_WITH_FORCE = "approved_with_force"


class EntryOutcome(StrEnum):
    """What happened to a plan entry."""

    PLANNED = "planned"
    NOT_RUN = "not_run"
    WRITTEN = "written"
    UNCHANGED = "unchanged"
    MERGED = "merged"
    CONFLICT = "conflict"
    REMOVED = "removed"
    SKIPPED = "skipped"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class Confirmer(Protocol):
    """Confirmation UI contract: approve, cancel or approve with force."""

    def __call__(self, plan: ChangePlan, force: bool) -> Confirmation: ...


@dataclass(frozen=True)
class Release:
    """A materialized upstream release: a version and a local file tree."""

    version: str
    root: Path

    @classmethod
    def from_directory(cls, root: Path, version: str | None = None) -> Release:
        """Build a release from a directory, reading ``VERSION`` when no version is given."""
        if version is None:
            version_file = root / VERSION_FILE
            if not version_file.is_file():
                raise ValueError(
                    f"Release version not given and {VERSION_FILE} not found in {root}"
                )
            version = version_file.read_text(encoding="utf-8").strip()
        if not version:
            raise ValueError("Release version must not be empty")
        return cls(version=version, root=root)
