"""Exclusive per-environment lock.

Uses ``fcntl.flock`` on a lock file. flock locks belong to the open file
description, so two opens of the same file conflict even inside one process,
and the kernel drops the lock if the holder dies.
"""

from __future__ import annotations

import fcntl
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from cutover.core.result import Err, Ok, Result

__all__ = ["FileLock", "LockBusy"]


@dataclass(frozen=True, slots=True)
class LockBusy:
    """The lock is held by someone else."""

    path: Path
    holder: str | None


class FileLock:
    """Non-blocking exclusive lock on ``path``.

    Usage:
        lock = FileLock(root / ".cutover" / "deploy.lock")
        match lock.acquire():
            case Err(busy):
                ...
            case Ok(_):
                try:
                    ...
                finally:
                    lock.release()
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._handle: IO[str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self, *, owner: str = "") -> Result[None, LockBusy]:
        if self._handle is not None:
            return Ok(None)

        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self._path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.seek(0)
            holder = handle.read().strip() or None
            handle.close()
            return Err(LockBusy(path=self._path, holder=holder))

        handle.seek(0)
        handle.truncate()
        stamp = datetime.now(UTC).isoformat(timespec="seconds")
        handle.write(f"pid={os.getpid()} since={stamp} {owner}".strip())
        handle.flush()
        self._handle = handle
        return Ok(None)

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            handle.seek(0)
            handle.truncate()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
