"""On-disk manifest schema."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator, model_validator

from updater.datetime_service import parse_timestamp
from updater.filesystem.hashing import is_fingerprint
from updater.filesystem.tree import validate_relative_path

MANIFEST_SCHEMA_VERSION = 1


class FileKind(StrEnum):
    """Who authored a tracked file."""

    OFFICIAL_TEMPLATE = "official_template"
    USER_CUSTOM = "user_custom"


class FileCategory(StrEnum):
    """What role a tracked file plays in the project."""

    COMMAND = "command"
    TEMPLATE = "template"


class FileRecord(BaseModel):
    """Manifest entry for one tracked path."""

    path: str
    fingerprint: str
    upstream_fingerprint: str | None = None
    source_version: str | None = None
    kind: FileKind = FileKind.OFFICIAL_TEMPLATE
    category: FileCategory = FileCategory.TEMPLATE
    last_seen_at: datetime

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        return validate_relative_path(value)

    @field_validator("fingerprint", "upstream_fingerprint")
    @classmethod
    def _check_fingerprint(cls, value: str | None) -> str | None:
        if value is not None and not is_fingerprint(value):
            raise ValueError(f"Malformed fingerprint: {value!r}")
        return value

    @field_validator("last_seen_at", mode="before")
    @classmethod
    def _parse_last_seen(cls, value: object) -> object:
        if isinstance(value, str | datetime):
            try:
                return parse_timestamp(value)
            except ValueError as exc:
                raise ValueError(f"Unparseable timestamp: {value!r}") from exc
        return value

    @model_validator(mode="after")
    def _check_kind_fields(self) -> FileRecord:
        if self.kind == FileKind.OFFICIAL_TEMPLATE and self.upstream_fingerprint is None:
            raise ValueError(f"Official template record {self.path} has no upstream fingerprint")
        if self.kind == FileKind.USER_CUSTOM and self.upstream_fingerprint is not None:
            raise ValueError(f"User record {self.path} must not carry an upstream fingerprint")
        return self

    @property
    def is_custom_command(self) -> bool:
        """User-created command files are never touched by an update."""
        return self.kind == FileKind.USER_CUSTOM and self.category == FileCategory.COMMAND


class ManifestDocument(BaseModel):
    """The persisted ledger of tracked files."""

    schema_version: int = Field(default=MANIFEST_SCHEMA_VERSION, ge=1)
    installed_version: str | None = None
    records: dict[str, FileRecord] = Field(default_factory=dict)

    @field_validator("schema_version")
    @classmethod
    def _check_schema_version(cls, value: int) -> int:
        if value > MANIFEST_SCHEMA_VERSION:
            raise ValueError(
                f"Manifest schema version {value} is newer than supported "
                f"version {MANIFEST_SCHEMA_VERSION}"
            )
        return value

    @model_validator(mode="after")
    def _check_record_keys(self) -> ManifestDocument:
        for key, record in self.records.items():
            if key != record.path:
                raise ValueError(f"Manifest key {key!r} does not match record path {record.path!r}")
        return self
