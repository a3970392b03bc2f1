"""
recurgent — filesystem utilities

Purpose
- Atomic writes for environment readiness markers and guarded deletion of
  stale environment directories.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Deletion refuses paths outside the given root.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "safe_delete",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def safe_delete(path: PathLike, root: PathLike) -> None:
    """Delete ``path`` (file or directory tree) only if it lies inside ``root``."""

    resolved_root = Path(root).resolve(strict=True)
    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return
    candidate = target.parent.resolve(strict=True) / target.name
    try:
        candidate.relative_to(resolved_root)
    except ValueError as exc:
        raise ValueError(f"refusing to delete path outside root: {target!s}") from exc
    if candidate == resolved_root:
        raise ValueError(f"refusing to delete the root itself: {target!s}")

    if target.is_symlink() or target.is_file():
        target.unlink()
        return
    shutil.rmtree(target)
