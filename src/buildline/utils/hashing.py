"""SHA-256 helpers for installer downloads and collected artifacts."""

from __future__ import annotations

import hashlib
import os
import re
from pathlib import Path

PathLike = str | os.PathLike[str]

_DIGEST_PATTERN = re.compile(r"[0-9a-f]{64}")
_CHUNK_BYTES = 1 << 20

__all__ = [
    "normalize_checksum",
    "sha256_bytes",
    "sha256_file",
]


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: PathLike, *, chunk_size: int = _CHUNK_BYTES) -> str:
    """Hex digest of a file, streamed in ``chunk_size`` blocks."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    digest = hashlib.sha256()
    with Path(path).open("rb") as stream:
        for block in iter(lambda: stream.read(chunk_size), b""):
            digest.update(block)
    return digest.hexdigest()


def normalize_checksum(value: object, *, field_name: str = "checksum") -> str:
    """Canonical lower-case digest; a leading ``sha256:`` tag is accepted and dropped."""

    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    candidate = value.strip().lower().removeprefix("sha256:")
    if _DIGEST_PATTERN.fullmatch(candidate) is None:
        raise ValueError(f"{field_name} must be a 64-character SHA-256 hex digest")
    return candidate
