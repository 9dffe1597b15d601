"""In-process domain types for the update engine."""

from updater.models.plan import ChangePlan, Disposition, PathState, PlanAction, PlanEntry
from updater.models.update import (
    TERMINAL_STATES,
    TRANSITIONS,
    Confirmation,
    Confirmer,
    EntryOutcome,
    ExitCode,
    Release,
    UpdateState,
)

__all__ = [
    "TERMINAL_STATES",
    "TRANSITIONS",
    "ChangePlan",
    "Confirmation",
    "Confirmer",
    "Disposition",
    "EntryOutcome",
    "ExitCode",
    "PathState",
    "PlanAction",
    "PlanEntry",
    "Release",
    "UpdateState",
]
