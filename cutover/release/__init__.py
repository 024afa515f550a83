"""Release records, their errors and the on-disk store."""

from .model import Block, Promotion, Release, ReleaseStatus, Stage
from .store import ReleaseStore

__all__ = [
    "Block",
    "Promotion",
    "Release",
    "ReleaseStatus",
    "ReleaseStore",
    "Stage",
]
