"""Shared test fixtures for the template update engine."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import pytest

from updater.config import Settings
from updater.models.update import VERSION_FILE, Release

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = logging.getLogger(__name__)


def write_files(root: Path, files: dict[str, str | bytes]) -> None:
    """Write a mapping of relative paths to content below ``root``."""
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8") if isinstance(content, str) else content
        path.write_bytes(data)


def read_tree(root: Path) -> dict[str, bytes]:
    """Every regular file below ``root`` (internal state included) with its bytes."""
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def tree_metadata(root: Path) -> dict[str, tuple[bytes, int, int]]:
    """Bytes, permission bits and mtime of every file, for byte-exact comparisons."""
    result: dict[str, tuple[bytes, int, int]] = {}
    for path in sorted(root.rglob("*")):
        if path.is_file():
            st = path.stat()
            result[path.relative_to(root).as_posix()] = (
                path.read_bytes(),
                st.st_mode & 0o7777,
                st.st_mtime_ns,
            )
    return result


def list_dirs(root: Path) -> list[str]:
    """Every directory below ``root``."""
    return sorted(path.relative_to(root).as_posix() for path in root.rglob("*") if path.is_dir())


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any ``.env`` file in the working directory."""
    return Settings(_env_file=None)  # type: ignore[call-arg]


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """An empty project directory."""
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def make_release(tmp_path: Path) -> Callable[[str, dict[str, str | bytes]], Release]:
    """Factory for unpacked release directories with a ``VERSION`` file."""

    def _make(version: str, files: dict[str, str | bytes]) -> Release:
        root = tmp_path / f"release-{version}"
        write_files(root, files)
        (root / VERSION_FILE).write_text(f"{version}\n", encoding="utf-8")
        return Release.from_directory(root)

    return _make
