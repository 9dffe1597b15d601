"""Update engine exception types.

Convention:
- Every error raised by the engine derives from ``UpdateError`` and carries the
  project-relative ``path`` it concerns (when there is one) and the ``phase``
  in which it happened. The orchestrator turns these into a report and an exit
  code; it never lets them escape ``run()``.
- Errors raised before any file is written (``StateValidationError``,
  ``ClassificationError``, ``SnapshotError``) abort the run with nothing to
  undo.
- ``ApplyError`` and ``CommitError`` mean files may already have changed, so
  the orchestrator restores the snapshot before reporting.
- ``RollbackError`` means restoration itself failed; the project may be
  inconsistent and the snapshot is kept on disk for recovery.
- ``ValueError`` is still used for plain argument validation (bad relative
  paths, empty versions) at the edges.
"""

from __future__ import annotations


class UpdateError(Exception):
    """Base class for update engine failures."""

    phase = "update"

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path:
            return f"{self.phase}: {self.path}: {self.message}"
        return f"{self.phase}: {self.message}"


class StateValidationError(UpdateError):
    """The project is not in a state an update can start from."""

    phase = "validation"


class LockHeldError(StateValidationError):
    """Another update holds the project lock."""


class ManifestError(StateValidationError):
    """The manifest file exists but cannot be read or validated."""


class ClassificationError(UpdateError):
    """A candidate file could not be read or fingerprinted during planning."""

    phase = "planning"


class SnapshotError(UpdateError):
    """A path slated for mutation could not be captured before applying."""

    phase = "snapshotting"


class MergeError(UpdateError):
    """The merge tool failed (as opposed to reporting conflicts)."""

    phase = "applying"


class ApplyError(UpdateError):
    """A write or delete failed while applying the plan."""

    phase = "applying"


class CommitError(UpdateError):
    """The new manifest or merge-base blobs could not be written."""

    phase = "committing"


class RollbackError(UpdateError):
    """Restoring the pre-update snapshot failed."""

    phase = "rolling_back"

    def __init__(self, message: str, *, failed_paths: list[str]) -> None:
        super().__init__(message, path=failed_paths[0] if failed_paths else None)
        self.failed_paths = failed_paths
