"""
L4 Execution — digest computation and comparison.
"""

from __future__ import annotations

import hashlib
import hmac
from pathlib import Path

from keg.core.errors import DigestMismatchError
from keg.core.models.manifest import Digest

_CHUNK = 64 * 1024


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    return hashlib.new(algorithm, data).hexdigest()


def file_digest(path: Path, algorithm: str = "sha256") -> str:
    """Hex digest of a file, read in chunks."""
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def digests_match(actual: str, expected: str) -> bool:
    """Case-insensitive, constant-time hex comparison."""
    return hmac.compare_digest(actual.strip().lower(), expected.strip().lower())


def verify_bytes(data: bytes, digest: Digest, *, url: str = "") -> str:
    """Check ``data`` against ``digest``; return the computed hex.

    Raises:
        DigestMismatchError: If the digests differ.
    """
    actual = compute_digest(data, digest.algorithm)
    if not digests_match(actual, digest.value):
        raise DigestMismatchError(url, digest.algorithm, digest.value, actual)
    return actual
