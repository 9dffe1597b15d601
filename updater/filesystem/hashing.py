"""Normalized content fingerprints for template files."""

from __future__ import annotations

import hashlib
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

FINGERPRINT_PREFIX = "sha256:"

_UTF8_BOM = b"\xef\xbb\xbf"
_TRAILING_WS_RE = re.compile(rb"[ \t]+$", re.MULTILINE)
_FINGERPRINT_RE = re.compile(r"^sha256:[0-9a-f]{64}$")


def normalize_content(content: bytes) -> bytes:
    """Return content with BOM, CRLF line endings and trailing blanks removed.

    The steps run in a fixed order: BOM first, then CRLF -> LF, then trailing
    spaces and tabs on every line. Stripping whitespace before the CRLF
    conversion would leave the ``\\r`` in place and break the equivalence.
    """
    if content.startswith(_UTF8_BOM):
        content = content[len(_UTF8_BOM) :]
    content = content.replace(b"\r\n", b"\n")
    return _TRAILING_WS_RE.sub(b"", content)


def fingerprint(content: bytes) -> str:
    """Compute the normalized fingerprint of file content."""
    digest = hashlib.sha256(normalize_content(content)).hexdigest()
    return f"{FINGERPRINT_PREFIX}{digest}"


def fingerprint_file(path: Path) -> str:
    """Read a file and compute its normalized fingerprint."""
    return fingerprint(path.read_bytes())


def is_fingerprint(value: str) -> bool:
    """Check that a string has the ``sha256:<64 hex>`` shape."""
    return bool(_FINGERPRINT_RE.match(value))
