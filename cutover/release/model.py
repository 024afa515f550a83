from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum

from cutover.core.structured import StrDict, get_bool, get_int, get_str


class ReleaseStatus(StrEnum):
    PENDING = "pending"
    PREPARED = "prepared"
    ACTIVE = "active"
    RETIRED = "retired"
    FAILED = "failed"


class Stage(StrEnum):
    """Preparation stages, in the only order they may complete."""

    FETCHED = "fetched"
    DEPENDENCIES_INSTALLED = "dependencies_installed"
    MIGRATED = "migrated"
    CACHE_WARMED = "cache_warmed"
    READY = "ready"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)


def next_stage(stage: Stage | None) -> Stage | None:
    """Return the stage that must complete after ``stage`` (None when done)."""
    if stage is None:
        return STAGE_ORDER[0]
    idx = STAGE_ORDER.index(stage)
    if idx + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[idx + 1]


@dataclass(frozen=True, slots=True)
class Release:
    """One deployable artifact instance living in ``releases/<id>``."""

    id: str
    seq: int
    created_at: str
    artifact: str
    checksum: str | None = None
    status: ReleaseStatus = ReleaseStatus.PENDING
    stage: Stage | None = None
    prechecked: bool = False
    error: str | None = None

    def with_status(self, status: ReleaseStatus, *, error: str | None = None) -> Release:
        return replace(self, status=status, error=error if error is not None else self.error)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "seq": self.seq,
            "created_at": self.created_at,
            "artifact": self.artifact,
            "checksum": self.checksum,
            "status": str(self.status),
            "stage": str(self.stage) if self.stage is not None else None,
            "prechecked": self.prechecked,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: StrDict) -> Release:
        """Rebuild a record from the registry.

        Raises:
            ValueError: On a malformed record.
        """
        release_id = get_str(data, "id")
        seq = get_int(data, "seq")
        if release_id is None or seq is None:
            raise ValueError(f"release record without id/seq: {data!r}")
        stage = get_str(data, "stage")
        return cls(
            id=release_id,
            seq=seq,
            created_at=get_str(data, "created_at") or "",
            artifact=get_str(data, "artifact") or "",
            checksum=get_str(data, "checksum"),
            status=ReleaseStatus(get_str(data, "status") or "pending"),
            stage=Stage(stage) if stage else None,
            prechecked=bool(get_bool(data, "prechecked")),
            error=get_str(data, "error"),
        )


@dataclass(frozen=True, slots=True)
class Promotion:
    """Outcome of a pointer change."""

    current: str
    previous: str | None


@dataclass(frozen=True, slots=True)
class Block:
    """Left behind by a failed migration; deploys are refused until cleared."""

    release_id: str
    step: str
    message: str
    since: str

    def to_dict(self) -> dict[str, object]:
        return {
            "release_id": self.release_id,
            "step": self.step,
            "message": self.message,
            "since": self.since,
        }

    @classmethod
    def from_dict(cls, data: StrDict) -> Block:
        return cls(
            release_id=get_str(data, "release_id") or "?",
            step=get_str(data, "step") or "migrate",
            message=get_str(data, "message") or "",
            since=get_str(data, "since") or "",
        )
