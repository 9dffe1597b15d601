"""Content-addressed store of upstream-authored file versions.

Each blob is the raw bytes of a release file, keyed by its normalized
fingerprint. The store supplies the common ancestor for three-way merges;
when a blob is missing the merge cannot happen and the caller must fail
closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from updater.filesystem.atomic import atomic_write_bytes
from updater.filesystem.hashing import FINGERPRINT_PREFIX, fingerprint, is_fingerprint

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlobStore:
    """Blobs under ``root/<aa>/<hex>``."""

    root: Path

    def blob_path(self, fp: str) -> Path:
        """Return where the blob for a fingerprint lives."""
        if not is_fingerprint(fp):
            raise ValueError(f"Malformed fingerprint: {fp!r}")
        digest = fp.removeprefix(FINGERPRINT_PREFIX)
        return self.root / digest[:2] / digest

    def has(self, fp: str) -> bool:
        """Check whether a blob is stored."""
        return self.blob_path(fp).is_file()

    def get(self, fp: str) -> bytes | None:
        """Return blob bytes, or None if missing or no longer matching its key."""
        path = self.blob_path(fp)
        if not path.is_file():
            return None
        content = path.read_bytes()
        if fingerprint(content) != fp:
            logger.warning("Blob %s does not match its fingerprint; ignoring it", path)
            return None
        return content

    def put(self, content: bytes) -> str:
        """Store content and return its fingerprint. Existing blobs are kept as-is."""
        fp = fingerprint(content)
        path = self.blob_path(fp)
        if not path.is_file():
            atomic_write_bytes(path, content)
            logger.debug("Stored blob %s", fp)
        return fp
