"""Engine configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_COMMAND_PATTERNS = [
    "*/commands/*",
    "*/command/*",
    "*/prompts/*",
    "*/workflows/*",
]

DEFAULT_EXCLUDE_PATTERNS = [
    ".git/*",
    "*/.git/*",
    "__pycache__/*",
    "*/__pycache__/*",
    "*.pyc",
    ".DS_Store",
    "*/.DS_Store",
]


class Settings(BaseSettings):
    """Template update engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="TEMPLATE_UPDATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False

    # Project-relative locations
    manifest_path: Path = Path(".specify/update-manifest.json")
    state_dir: Path = Path(".specify/.update")

    # Planning
    max_workers: int = Field(default=8, ge=1, le=64)
    command_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_COMMAND_PATTERNS))
    exclude_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))

    # Merge
    git_executable: str = "git"
    merge_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("manifest_path", "state_dir")
    @classmethod
    def _require_relative(cls, value: Path) -> Path:
        if value.is_absolute() or ".." in value.parts:
            raise ValueError(f"must be a project-relative path, got {value}")
        return value

    def manifest_file(self, project_root: Path) -> Path:
        """Absolute location of the manifest for a project."""
        return project_root / self.manifest_path

    def state_root(self, project_root: Path) -> Path:
        """Absolute location of the engine's state directory."""
        return project_root / self.state_dir

    def blob_root(self, project_root: Path) -> Path:
        """Directory holding merge-base blobs."""
        return self.state_root(project_root) / "blobs"

    def backup_root(self, project_root: Path) -> Path:
        """Directory holding in-flight transaction snapshots."""
        return self.state_root(project_root) / "backups"

    def lock_file(self, project_root: Path) -> Path:
        """The project's exclusive update lock."""
        return self.state_root(project_root) / "lock"

    def internal_patterns(self) -> list[str]:
        """Globs for the engine's own files, which are never classified."""
        return [self.manifest_path.as_posix(), f"{self.state_dir.as_posix()}/*"]

    def scan_excludes(self) -> list[str]:
        """All globs excluded from local and release scans."""
        return [*self.exclude_patterns, *self.internal_patterns()]
