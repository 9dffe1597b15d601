"""Manifest reader/writer."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from updater.exceptions import ManifestError
from updater.filesystem.atomic import atomic_write_text
from updater.schemas.manifest import ManifestDocument

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


def load_manifest(manifest_path: Path) -> ManifestDocument | None:
    """Load the manifest, or return None when the project has none yet.

    Raises ManifestError when the file exists but is unreadable, is not JSON,
    or does not match the schema.
    """
    if not manifest_path.exists():
        return None
    try:
        raw = manifest_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ManifestError(f"Cannot read manifest: {exc}", path=str(manifest_path)) from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Manifest is not valid JSON: {exc}", path=str(manifest_path)) from exc
    try:
        document = ManifestDocument.model_validate(data)
    except ValidationError as exc:
        raise ManifestError(
            f"Manifest failed validation: {exc.error_count()} error(s): {exc}",
            path=str(manifest_path),
        ) from exc
    logger.debug(
        "Loaded manifest %s: version=%s records=%d",
        manifest_path,
        document.installed_version,
        len(document.records),
    )
    return document


def empty_manifest() -> ManifestDocument:
    """Synthesize the manifest used when a project has never been updated."""
    return ManifestDocument()


def dump_manifest(document: ManifestDocument) -> str:
    """Serialize a manifest with records in path order."""
    data = document.model_dump(mode="json")
    data["records"] = {key: data["records"][key] for key in sorted(data["records"])}
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def save_manifest(manifest_path: Path, document: ManifestDocument) -> None:
    """Replace the manifest file atomically (write temp, then rename)."""
    atomic_write_text(manifest_path, dump_manifest(document))
    logger.info(
        "Wrote manifest %s (%d records, version %s)",
        manifest_path,
        len(document.records),
        document.installed_version,
    )
