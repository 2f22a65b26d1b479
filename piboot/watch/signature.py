"""Content signatures for watched files."""
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, Optional, Tuple

# One (path, sha256) pair per watched file; the digest is None when absent.
Signature = Tuple[Tuple[str, Optional[str]], ...]

_CHUNK = 65536


def file_digest(path: Path) -> Optional[str]:
    try:
        with path.open("rb") as handle:
            digest = hashlib.sha256()
            for chunk in iter(lambda: handle.read(_CHUNK), b""):
                digest.update(chunk)
    except FileNotFoundError:
        return None
    return digest.hexdigest()


def compute_signature(paths: Iterable[Path]) -> Signature:
    return tuple((str(path), file_digest(path)) for path in paths)
