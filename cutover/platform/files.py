"""Filesystem helpers.

Both writers follow the same pattern: build the new entry under a temporary
name in the destination directory, then ``os.replace`` it over the canonical
name. ``rename(2)`` within one directory is atomic, so a concurrent reader sees
either the old entry or the new one, never a partial write or a missing path.
"""

from __future__ import annotations

import os
import tempfile
import uuid
from pathlib import Path

__all__ = ["atomic_write_text", "atomic_symlink", "read_link"]


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write text to path atomically using temp file + replace."""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)

    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


def atomic_symlink(link: Path, target: str) -> None:
    """Point ``link`` at ``target``, replacing any existing link atomically.

    Args:
        link: Canonical link path (e.g. ``<root>/current``).
        target: Link target, usually relative to ``link.parent``.
    """
    link.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = link.parent / f".{link.name}.{uuid.uuid4().hex}.tmp"

    try:
        os.symlink(target, tmp_path)
        os.replace(tmp_path, link)
    finally:
        if tmp_path.is_symlink():
            tmp_path.unlink(missing_ok=True)


def read_link(link: Path) -> str | None:
    """Return the raw target of a symlink, or None if it is not one."""
    try:
        return os.readlink(link)
    except OSError:
        return None
