"""Hashing helpers for checksums and deterministic serialization."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

_CHUNK = 4 * 1024 * 1024


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Return the SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as fd:
        for block in iter(lambda: fd.read(_CHUNK), b""):
            digest.update(block)
    return digest.hexdigest()


def checksum_line(sha256: str, file_name: str) -> bytes:
    """Contents of a ``.sha256`` sidecar, in ``sha256sum`` format."""
    return f"{sha256}  {file_name}\n".encode("utf-8")
