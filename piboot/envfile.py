"""Reading and single-key updates of ``KEY=VALUE`` environment files.

Keys are matched literally: a line belongs to ``KEY`` when it starts with
``KEY=``. No quoting or interpolation is interpreted.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Dict, List

from . import constants
from .errors import FilesystemError


def read_env(path: Path) -> Dict[str, str]:
    """Return the key/value pairs of an env file in file order.

    Duplicate keys keep their first position with the last value.
    """
    if not path.exists():
        return {}
    values: Dict[str, str] = {}
    for line in _read_lines(path):
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, _, value = line.rstrip("\r\n").partition("=")
        values[key.strip()] = value
    return values


def update_env_key(
    path: Path,
    key: str,
    value: str,
    mode: int = constants.ENV_FILE_MODE,
) -> None:
    """Set ``key`` to ``value``, replacing in place or appending.

    Later duplicates of the key are removed so the key is unique afterwards.
    """
    prefix = f"{key}="
    lines = _read_lines(path) if path.exists() else []
    updated: List[str] = []
    replaced = False
    for line in lines:
        if line.startswith(prefix):
            if replaced:
                continue
            updated.append(f"{prefix}{value}\n")
            replaced = True
        else:
            updated.append(line if line.endswith("\n") else line + "\n")
    if not replaced:
        updated.append(f"{prefix}{value}\n")
    write_atomic(path, "".join(updated).encode(), mode)


def write_atomic(path: Path, content: bytes, mode: int) -> None:
    """Write ``content`` to ``path`` via a temp file and rename."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as exc:
        raise FilesystemError(f"Cannot write {path}: {exc}", path=path) from exc


def _read_lines(path: Path) -> List[str]:
    try:
        return path.read_text().splitlines(keepends=True)
    except OSError as exc:
        raise FilesystemError(f"Cannot read {path}: {exc}", path=path) from exc
