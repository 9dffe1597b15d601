"""Structured result of an update run."""

from __future__ import annotations

from pydantic import BaseModel, Field

from updater.models.plan import Disposition, PlanAction
from updater.models.update import EntryOutcome, ExitCode, UpdateState


class ReportEntry(BaseModel):
    """What happened to one path."""

    path: str
    disposition: Disposition | None = None
    action: PlanAction | None = None
    outcome: EntryOutcome
    flagged: bool = False
    detail: str = ""


class UpdateReport(BaseModel):
    """Terminal status and per-path outcomes of an update transaction."""

    status: ExitCode
    state: UpdateState
    release_version: str | None = None
    previous_version: str | None = None
    check_only: bool = False
    force: bool = False
    entries: list[ReportEntry] = Field(default_factory=list)
    transitions: list[UpdateState] = Field(default_factory=list)
    error: str | None = None
    failed_path: str | None = None
    failed_phase: str | None = None
    unrestored_paths: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def conflicts(self) -> list[ReportEntry]:
        """Entries left for manual resolution."""
        return [
            entry
            for entry in self.entries
            if entry.flagged or entry.outcome == EntryOutcome.CONFLICT
        ]

    def entry(self, path: str) -> ReportEntry | None:
        """Look up the report entry for a path."""
        for item in self.entries:
            if item.path == path:
                return item
        return None
