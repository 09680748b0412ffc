"""Content fingerprints for exact-duplicate detection."""
from __future__ import annotations

import hashlib
from pathlib import Path

from lorastudio.errors import IoFailure, NotFound

CHUNK_SIZE = 1 << 20


def fingerprint(path: Path, chunk_size: int = CHUNK_SIZE) -> str:
    """SHA-256 over the file bytes, streamed in ``chunk_size`` pieces.

    Only content counts: name, timestamps and location never change the digest.
    """
    h = hashlib.sha256()
    try:
        with Path(path).open("rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                h.update(chunk)
    except FileNotFoundError as exc:
        raise NotFound(f"Image not found: {path}") from exc
    except OSError as exc:
        raise IoFailure(f"Cannot read {path}: {exc.strerror or exc}") from exc
    return h.hexdigest()
