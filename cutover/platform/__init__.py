"""Host-level helpers: atomic file operations, subprocesses, locking."""

from .files import atomic_symlink, atomic_write_text, read_link
from .lock import FileLock, LockBusy
from .process import ProcessError, run

__all__ = [
    "FileLock",
    "LockBusy",
    "ProcessError",
    "atomic_symlink",
    "atomic_write_text",
    "read_link",
    "run",
]
