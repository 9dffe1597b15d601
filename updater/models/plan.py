"""Change classification and plan types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class Disposition(StrEnum):
    """Change status of a path relative to its manifest baseline and the release."""

    UNCHANGED = "unchanged"
    USER_MODIFIED = "user_modified"
    UPSTREAM_MODIFIED = "upstream_modified"
    BOTH_MODIFIED = "both_modified"
    NEW_UPSTREAM = "new_upstream"
    NEW_LOCAL = "new_local"
    DELETED_UPSTREAM = "deleted_upstream"


class PlanAction(StrEnum):
    """What the apply phase does with a path."""

    COPY_FROM_UPSTREAM = "copy_from_upstream"
    MERGE = "merge"
    SKIP = "skip"
    FLAG_CONFLICT = "flag_conflict"
    REMOVE = "remove"


@dataclass(frozen=True)
class PathState:
    """Fingerprints observed for one path during planning.

    ``None`` means the file is absent on that side.
    """

    path: str
    local: str | None
    upstream: str | None


@dataclass(frozen=True)
class PlanEntry:
    """A single action in the change plan."""

    path: str
    disposition: Disposition
    action: PlanAction
    flagged: bool = False
    reason: str = ""
    local_fingerprint: str | None = None
    upstream_fingerprint: str | None = None

    @property
    def mutates(self) -> bool:
        """Whether applying this entry may change the file on disk."""
        return self.action in (PlanAction.COPY_FROM_UPSTREAM, PlanAction.MERGE, PlanAction.REMOVE)


@dataclass(frozen=True)
class ChangePlan:
    """Ordered, immutable set of per-path actions for one release."""

    release_version: str
    force: bool
    entries: tuple[PlanEntry, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        paths = [entry.path for entry in self.entries]
        if paths != sorted(paths):
            raise ValueError("Plan entries must be sorted by path")
        if len(set(paths)) != len(paths):
            raise ValueError("Plan entries must have unique paths")

    def entry(self, path: str) -> PlanEntry | None:
        """Look up the entry for a path."""
        for item in self.entries:
            if item.path == path:
                return item
        return None

    @property
    def mutating_paths(self) -> list[str]:
        """Paths whose action is anything other than ``skip``."""
        return [entry.path for entry in self.entries if entry.action != PlanAction.SKIP]

    @property
    def is_noop(self) -> bool:
        """True when every entry is skipped or an unchanged copy."""
        return all(
            entry.action == PlanAction.SKIP or entry.disposition == Disposition.UNCHANGED
            for entry in self.entries
        )

    @property
    def flagged_entries(self) -> list[PlanEntry]:
        """Entries already known to need manual resolution."""
        return [
            entry
            for entry in self.entries
            if entry.flagged or entry.action == PlanAction.FLAG_CONFLICT
        ]
