"""Three-way text merge via ``git merge-file``."""

from __future__ import annotations

import logging
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

from updater.exceptions import MergeError

logger = logging.getLogger(__name__)

_UTF8_BOM = b"\xef\xbb\xbf"

LOCAL_LABEL = "local"
BASE_LABEL = "base"
UPSTREAM_LABEL = "upstream"


@dataclass(frozen=True)
class MergeResult:
    """Outcome of a three-way merge."""

    merged: bytes
    has_conflict: bool
    conflict_count: int = 0


def is_mergeable(content: bytes) -> bool:
    """Binary content (containing NUL bytes) cannot be merged line by line."""
    return b"\x00" not in content


def _normalize_for_merge(content: bytes) -> bytes:
    if content.startswith(_UTF8_BOM):
        content = content[len(_UTF8_BOM) :]
    return content.replace(b"\r\n", b"\n")


def _restore_local_style(merged: bytes, local: bytes) -> bytes:
    """Re-apply the local file's CRLF line endings and BOM to merged output."""
    if b"\r\n" in local:
        merged = merged.replace(b"\r\n", b"\n").replace(b"\n", b"\r\n")
    if local.startswith(_UTF8_BOM):
        merged = _UTF8_BOM + merged
    return merged


class MergeService:
    """Runs line-based three-way merges with git's merge machinery."""

    def __init__(self, git_executable: str = "git", timeout_seconds: float = 30.0) -> None:
        self.git_executable = git_executable
        self.timeout_seconds = timeout_seconds

    def merge(self, base: bytes, local: bytes, upstream: bytes) -> MergeResult:
        """Merge ``local`` and ``upstream`` edits made against ``base``.

        Hunks changed on one side only are taken from that side, identical
        hunks are taken once, and divergent hunks are written with
        ``<<<<<<< local`` / ``=======`` / ``>>>>>>> upstream`` markers.

        Raises MergeError when git is missing, times out, or fails outright.
        """
        base_n = _normalize_for_merge(base)
        local_n = _normalize_for_merge(local)
        upstream_n = _normalize_for_merge(upstream)

        if local_n == upstream_n or base_n == local_n:
            return MergeResult(merged=_restore_local_style(upstream_n, local), has_conflict=False)
        if base_n == upstream_n:
            return MergeResult(merged=local, has_conflict=False)

        merged, conflict_count = self._merge_file(base_n, local_n, upstream_n)
        return MergeResult(
            merged=_restore_local_style(merged, local),
            has_conflict=conflict_count > 0,
            conflict_count=conflict_count,
        )

    def _merge_file(self, base: bytes, local: bytes, upstream: bytes) -> tuple[bytes, int]:
        """Run ``git merge-file -p`` on temp copies and return (output, conflicts)."""
        # System temp dir: merge scratch files must never land in the project.
        with tempfile.TemporaryDirectory(prefix="template-merge-") as tmp:
            tmp_dir = Path(tmp)
            local_path = tmp_dir / "local"
            base_path = tmp_dir / "base"
            upstream_path = tmp_dir / "upstream"
            local_path.write_bytes(local)
            base_path.write_bytes(base)
            upstream_path.write_bytes(upstream)

            cmd = [
                self.git_executable,
                "merge-file",
                "-p",
                "-L",
                LOCAL_LABEL,
                "-L",
                BASE_LABEL,
                "-L",
                UPSTREAM_LABEL,
                str(local_path),
                str(base_path),
                str(upstream_path),
            ]
            try:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    check=False,
                    timeout=self.timeout_seconds,
                )
            except FileNotFoundError as exc:
                raise MergeError(f"git executable not found: {self.git_executable}") from exc
            except subprocess.TimeoutExpired as exc:
                raise MergeError(f"git merge-file timed out after {self.timeout_seconds}s") from exc

        # Exit status is the number of conflicts; >= 128 or negative means an error.
        if result.returncode < 0 or result.returncode >= 128:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            logger.error("git merge-file failed (exit %d): %s", result.returncode, stderr)
            raise MergeError(f"git merge-file failed (exit {result.returncode}): {stderr}")
        if result.returncode > 0:
            logger.info("git merge-file reported %d conflict(s)", result.returncode)
        return result.stdout, result.returncode
