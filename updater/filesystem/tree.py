"""Directory tree scanning and project-relative path handling."""

from __future__ import annotations

import fnmatch
import os
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable


def validate_relative_path(rel_path: str) -> str:
    """Reject absolute paths and parent-directory segments.

    Returns the path in normalized POSIX form.
    """
    if not rel_path or "\\" in rel_path:
        raise ValueError(f"Invalid relative path: {rel_path!r}")
    pure = PurePosixPath(rel_path)
    if pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"Path traversal detected: {rel_path}")
    return pure.as_posix()


def resolve_safe_path(root: Path, rel_path: str) -> Path:
    """Resolve a project-relative path, refusing anything that escapes ``root``."""
    validate_relative_path(rel_path)
    full_path = (root / rel_path).resolve()
    if not full_path.is_relative_to(root.resolve()):
        raise ValueError(f"Path traversal detected: {rel_path}")
    return root / rel_path


def is_excluded(rel_path: str, patterns: Iterable[str]) -> bool:
    """Check whether a relative path matches any glob.

    ``*`` also matches ``/``, so ``.git/*`` covers the whole ``.git`` tree.
    """
    return any(fnmatch.fnmatchcase(rel_path, pattern) for pattern in patterns)


def scan_tree(root: Path, exclude: Iterable[str] = ()) -> list[str]:
    """Recursively list regular files below ``root`` as sorted relative POSIX paths."""
    patterns = tuple(exclude)
    paths: list[str] = []
    for dirpath, dirs, files in os.walk(root):
        dirs.sort()
        for filename in files:
            full = Path(dirpath) / filename
            if full.is_symlink() or not full.is_file():
                continue
            rel = full.relative_to(root).as_posix()
            if is_excluded(rel, patterns):
                continue
            paths.append(rel)
    return sorted(paths)


def list_directory_files(root: Path, rel_dir: str, exclude: Iterable[str] = ()) -> list[str]:
    """List regular files directly inside ``rel_dir`` (non-recursive)."""
    directory = root / rel_dir
    if not directory.is_dir():
        return []
    patterns = tuple(exclude)
    result: list[str] = []
    for entry in sorted(directory.iterdir()):
        if entry.is_symlink() or not entry.is_file():
            continue
        rel = entry.relative_to(root).as_posix()
        if not is_excluded(rel, patterns):
            result.append(rel)
    return result


def parent_dir(rel_path: str) -> str:
    """Return the parent directory of a relative POSIX path ('' for top level)."""
    parent = PurePosixPath(rel_path).parent.as_posix()
    return "" if parent == "." else parent
