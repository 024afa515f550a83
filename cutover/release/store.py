"""Durable bookkeeping of releases and the current pointer.

On-disk layout of an environment root:

    <root>/
      current -> releases/<id>      the pointer, swapped with rename(2)
      releases/<id>/                one workspace per release
      shared/                       state shared by every release
      .cutover/releases.json        registry of release records
      .cutover/deploy.lock          environment lock (see DeployService)

The symlink decides which release serves traffic. The registry records the
status of each release and is rewritten atomically after every change.
"""

from __future__ import annotations

import json
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path

import structlog

from cutover.core.config import DEFAULT_KEEP
from cutover.core.result import Err, Ok, Result
from cutover.core.structured import as_str_dict, get_int, get_table
from cutover.platform.files import atomic_symlink, atomic_write_text, read_link
from cutover.release.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    StateError,
    StoreError,
)
from cutover.release.model import (
    Block,
    Promotion,
    Release,
    ReleaseStatus,
    Stage,
    next_stage,
)

__all__ = ["ReleaseStore", "RELEASE_ID_FORMAT"]

logger = structlog.get_logger(__name__)

RELEASE_ID_FORMAT = "%Y%m%d%H%M%S"
REGISTRY_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _Registry:
    next_seq: int = 1
    releases: dict[str, Release] = field(default_factory=dict)
    block: Block | None = None

    def ordered(self) -> list[Release]:
        return sorted(self.releases.values(), key=lambda r: r.seq)


class ReleaseStore:
    """Releases, the ``current`` pointer and the retention policy of one root.

    Mutations are serialised by an in-process lock; cross-process exclusion is
    the caller's job (DeployService holds the environment file lock).
    """

    def __init__(
        self,
        root: Path,
        *,
        keep: int = DEFAULT_KEEP,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if keep < 1:
            raise ValueError(f"keep must be >= 1 (got {keep})")
        self._root = root
        self._keep = keep
        self._clock = clock
        self._mutex = threading.RLock()

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    @property
    def root(self) -> Path:
        return self._root

    @property
    def keep(self) -> int:
        return self._keep

    @property
    def releases_dir(self) -> Path:
        return self._root / "releases"

    @property
    def shared_dir(self) -> Path:
        return self._root / "shared"

    @property
    def current_link(self) -> Path:
        return self._root / "current"

    @property
    def state_dir(self) -> Path:
        return self._root / ".cutover"

    @property
    def registry_path(self) -> Path:
        return self.state_dir / "releases.json"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "deploy.lock"

    def workspace(self, release_id: str) -> Path:
        return self.releases_dir / release_id

    # -------------------------------------------------------------------------
    # Registry I/O
    # -------------------------------------------------------------------------

    def _load(self) -> Result[_Registry, StateError]:
        path = self.registry_path
        if not path.exists():
            return Ok(_Registry())

        try:
            data = as_str_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            return Err(StateError(f"cannot read registry {path}: {e}", step="registry"))
        if data is None:
            return Err(StateError(f"registry {path} is not a JSON object", step="registry"))

        reg = _Registry(next_seq=get_int(data, "next_seq") or 1)
        raw_releases = data.get("releases")
        if not isinstance(raw_releases, list):
            return Err(StateError(f"registry {path} has no releases list", step="registry"))
        try:
            for item in raw_releases:
                record = as_str_dict(item)
                if record is None:
                    raise ValueError(f"release entry is not an object: {item!r}")
                release = Release.from_dict(record)
                reg.releases[release.id] = release
        except ValueError as e:
            return Err(StateError(f"corrupt registry {path}: {e}", step="registry"))

        block = get_table(data, "block")
        if block is not None:
            reg.block = Block.from_dict(block)
        return Ok(reg)

    def _save(self, reg: _Registry) -> Result[None, StateError]:
        payload = {
            "version": REGISTRY_VERSION,
            "next_seq": reg.next_seq,
            "block": reg.block.to_dict() if reg.block else None,
            "releases": [r.to_dict() for r in reg.ordered()],
        }
        try:
            atomic_write_text(self.registry_path, json.dumps(payload, indent=2) + "\n")
        except OSError as e:
            return Err(StateError(f"cannot write registry: {e}", step="registry"))
        return Ok(None)

    def _update(
        self,
        release_id: str,
        change: Callable[[Release], Result[Release, StoreError]],
    ) -> Result[Release, StoreError]:
        with self._mutex:
            loaded = self._load()
            if isinstance(loaded, Err):
                return loaded
            reg = loaded.value
            current = reg.releases.get(release_id)
            if current is None:
                return Err(NotFoundError(f"unknown release: {release_id}", release_id=release_id))
            changed = change(current)
            if isinstance(changed, Err):
                return changed
            reg.releases[release_id] = changed.value
            saved = self._save(reg)
            if isinstance(saved, Err):
                return saved
            return Ok(changed.value)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def new_id(self) -> str:
        return self._clock().strftime(RELEASE_ID_FORMAT)

    def active_id(self) -> str | None:
        """Release the ``current`` pointer names, read from the symlink."""
        target = read_link(self.current_link)
        if target is None:
            return None
        return Path(target).name

    def get(self, release_id: str) -> Result[Release, NotFoundError | StateError]:
        loaded = self._load()
        if isinstance(loaded, Err):
            return loaded
        release = loaded.value.releases.get(release_id)
        if release is None:
            return Err(
                NotFoundError(
                    f"unknown release: {release_id}",
                    release_id=release_id,
                    hint="It may have been pruned; run `cutover status`",
                )
            )
        return Ok(release)

    def releases(self) -> Result[list[Release], StateError]:
        """All known releases, oldest first."""
        loaded = self._load()
        if isinstance(loaded, Err):
            return loaded
        return Ok(loaded.value.ordered())

    def active(self) -> Result[Release | None, StateError]:
        active_id = self.active_id()
        if active_id is None:
            return Ok(None)
        loaded = self._load()
        if isinstance(loaded, Err):
            return loaded
        return Ok(loaded.value.releases.get(active_id))

    def blocked(self) -> Result[Block | None, StateError]:
        loaded = self._load()
        if isinstance(loaded, Err):
            return loaded
        return Ok(loaded.value.block)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def create(
        self,
        artifact: str,
        *,
        checksum: str | None = None,
        release_id: str | None = None,
    ) -> Result[Release, ConflictError | StateError]:
        """Allocate a new ``pending`` release and its empty workspace.

        Never overwrites: an id already in the registry or on disk is a
        ConflictError and the caller must pick another id.
        """
        release_id = release_id or self.new_id()
        with self._mutex:
            loaded = self._load()
            if isinstance(loaded, Err):
                return loaded
            reg = loaded.value

            if release_id in reg.releases:
                return Err(ConflictError(f"release id already used: {release_id}", release_id=release_id))

            workspace = self.workspace(release_id)
            try:
                self.releases_dir.mkdir(parents=True, exist_ok=True)
                workspace.mkdir()
            except FileExistsError:
                return Err(
                    ConflictError(f"release directory already exists: {workspace}", release_id=release_id)
                )
            except OSError as e:
                return Err(StateError(f"cannot create {workspace}: {e}", release_id=release_id))

            release = Release(
                id=release_id,
                seq=reg.next_seq,
                created_at=self._clock().isoformat(timespec="seconds"),
                artifact=artifact,
                checksum=checksum,
            )
            reg.next_seq += 1
            reg.releases[release_id] = release
            saved = self._save(reg)
            if isinstance(saved, Err):
                return saved

        logger.info("release_created", release=release_id, artifact=artifact)
        return Ok(release)

    def mark_stage(
        self,
        release_id: str,
        stage: Stage,
        *,
        checksum: str | None = None,
    ) -> Result[Release, StoreError]:
        """Record that ``stage`` completed. Stages cannot be skipped or repeated.

        ``checksum`` records the artifact digest once it is known (after fetch).
        """

        def change(r: Release) -> Result[Release, StoreError]:
            if r.status is not ReleaseStatus.PENDING:
                return Err(
                    InvalidTransition(
                        f"release {r.id} is {r.status}, cannot advance to {stage}",
                        release_id=r.id,
                        step=str(stage),
                    )
                )
            expected = next_stage(r.stage)
            if stage is not expected:
                return Err(
                    InvalidTransition(
                        f"release {r.id}: expected stage {expected}, got {stage}",
                        release_id=r.id,
                        step=str(stage),
                    )
                )
            return Ok(replace(r, stage=stage, checksum=checksum or r.checksum))

        return self._update(release_id, change)

    def mark_prepared(self, release_id: str) -> Result[Release, StoreError]:
        def change(r: Release) -> Result[Release, StoreError]:
            if r.status is not ReleaseStatus.PENDING or r.stage is not Stage.READY:
                return Err(
                    InvalidTransition(
                        f"release {r.id} is not ready (status {r.status}, stage {r.stage})",
                        release_id=r.id,
                    )
                )
            return Ok(r.with_status(ReleaseStatus.PREPARED))

        return self._update(release_id, change)

    def mark_prechecked(self, release_id: str) -> Result[Release, StoreError]:
        def change(r: Release) -> Result[Release, StoreError]:
            if r.status is not ReleaseStatus.PREPARED:
                return Err(
                    InvalidTransition(f"release {r.id} is {r.status}, not prepared", release_id=r.id)
                )
            return Ok(replace(r, prechecked=True))

        return self._update(release_id, change)

    def mark_failed(self, release_id: str, error: str) -> Result[Release, StoreError]:
        """Fail a release that is not serving traffic."""

        def change(r: Release) -> Result[Release, StoreError]:
            if r.status is ReleaseStatus.ACTIVE or self.active_id() == r.id:
                return Err(
                    InvalidTransition(f"release {r.id} is active; roll back instead", release_id=r.id)
                )
            return Ok(r.with_status(ReleaseStatus.FAILED, error=error))

        result = self._update(release_id, change)
        if isinstance(result, Ok):
            logger.warning("release_failed", release=release_id, error=error)
        return result

    # -------------------------------------------------------------------------
    # Pointer changes
    # -------------------------------------------------------------------------

    def _swap(
        self,
        reg: _Registry,
        target: Release,
        *,
        demote: ReleaseStatus,
        reason: str | None = None,
    ) -> Result[Promotion, StoreError]:
        previous = self.active_id()
        try:
            atomic_symlink(self.current_link, f"{self.releases_dir.name}/{target.id}")
        except OSError as e:
            return Err(StateError(f"cannot repoint current: {e}", release_id=target.id, step="promote"))

        if previous is not None and previous in reg.releases and previous != target.id:
            reg.releases[previous] = reg.releases[previous].with_status(demote, error=reason)
        # Registry may lag behind a crash; only the pointer is authoritative for "active"
        for other in reg.releases.values():
            if other.status is ReleaseStatus.ACTIVE and other.id not in (target.id, previous):
                reg.releases[other.id] = other.with_status(ReleaseStatus.RETIRED)
        reg.releases[target.id] = replace(target, status=ReleaseStatus.ACTIVE)

        saved = self._save(reg)
        if isinstance(saved, Err):
            return Err(replace(saved.error, release_id=target.id, active=target.id))
        return Ok(Promotion(current=target.id, previous=previous))

    def promote(self, release_id: str) -> Result[Promotion, StoreError]:
        """Make a prepared, pre-checked release the one serving traffic."""
        with self._mutex:
            loaded = self._load()
            if isinstance(loaded, Err):
                return loaded
            reg = loaded.value
            release = reg.releases.get(release_id)
            if release is None:
                return Err(NotFoundError(f"unknown release: {release_id}", release_id=release_id))
            if release.status is not ReleaseStatus.PREPARED:
                return Err(
                    InvalidTransition(
                        f"release {release_id} is {release.status}, only prepared releases can be promoted",
                        release_id=release_id,
                        step="promote",
                    )
                )
            if not release.prechecked:
                return Err(
                    InvalidTransition(
                        f"release {release_id} has not passed its pre-check",
                        release_id=release_id,
                        step="promote",
                    )
                )
            if not self.workspace(release_id).is_dir():
                return Err(NotFoundError(f"workspace of {release_id} is missing", release_id=release_id))

            result = self._swap(reg, release, demote=ReleaseStatus.RETIRED)

        if isinstance(result, Ok):
            logger.info("release_promoted", release=release_id, previous=result.value.previous)
        return result

    def rollback(
        self,
        to_release_id: str | None = None,
        *,
        demote: ReleaseStatus = ReleaseStatus.RETIRED,
        reason: str | None = None,
    ) -> Result[Promotion, StoreError]:
        """Repoint ``current`` to a retired release.

        Args:
            to_release_id: Target release; defaults to the newest retired one.
            demote: Status given to the release being replaced (``failed`` for
                automatic rollbacks, ``retired`` otherwise).
            reason: Error message stored on the replaced release.
        """
        if demote not in (ReleaseStatus.RETIRED, ReleaseStatus.FAILED):
            raise ValueError(f"cannot demote to {demote}")

        with self._mutex:
            loaded = self._load()
            if isinstance(loaded, Err):
                return loaded
            reg = loaded.value
            active_id = self.active_id()

            if to_release_id is None:
                candidates = [
                    r
                    for r in reversed(reg.ordered())
                    if r.status is ReleaseStatus.RETIRED
                    and r.id != active_id
                    and self.workspace(r.id).is_dir()
                ]
                if not candidates:
                    return Err(
                        NotFoundError("no retired release to roll back to", active=active_id, step="rollback")
                    )
                target = candidates[0]
            else:
                found = reg.releases.get(to_release_id)
                if found is None or not self.workspace(to_release_id).is_dir():
                    return Err(
                        NotFoundError(
                            f"release {to_release_id} not found (purged?)",
                            release_id=to_release_id,
                            step="rollback",
                            active=active_id,
                        )
                    )
                target = found

            if target.id == active_id:
                return Err(
                    InvalidTransition(
                        f"release {target.id} is already active",
                        release_id=target.id,
                        step="rollback",
                        active=active_id,
                    )
                )
            if target.status is not ReleaseStatus.RETIRED:
                return Err(
                    InvalidTransition(
                        f"release {target.id} is {target.status}, only retired releases can be restored",
                        release_id=target.id,
                        step="rollback",
                        active=active_id,
                    )
                )

            result = self._swap(reg, target, demote=demote, reason=reason)

        if isinstance(result, Ok):
            logger.warning(
                "release_rolled_back",
                release=result.value.current,
                replaced=result.value.previous,
                replaced_status=str(demote),
            )
        return result

    def clear_pointer(self, *, reason: str) -> Result[str | None, StoreError]:
        """Remove ``current`` and fail the release it named.

        Used when the very first release fails after cutover and there is no
        earlier release to restore. Returns the id that was cleared.
        """
        with self._mutex:
            loaded = self._load()
            if isinstance(loaded, Err):
                return loaded
            reg = loaded.value
            active_id = self.active_id()
            try:
                self.current_link.unlink(missing_ok=True)
            except OSError as e:
                return Err(StateError(f"cannot remove current: {e}", step="rollback", active=active_id))
            if active_id is not None and active_id in reg.releases:
                reg.releases[active_id] = reg.releases[active_id].with_status(
                    ReleaseStatus.FAILED, error=reason
                )
            saved = self._save(reg)
            if isinstance(saved, Err):
                return saved

        logger.warning("current_cleared", release=active_id, reason=reason)
        return Ok(active_id)

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def prune(self) -> Result[list[str], StateError]:
        """Delete retired releases beyond ``keep`` (oldest first) and failed ones.

        The active release is never touched. A release whose workspace cannot
        be deleted is logged and kept in the registry so the next prune retries
        it; the rest of the prune continues.
        """
        with self._mutex:
            loaded = self._load()
            if isinstance(loaded, Err):
                return loaded
            reg = loaded.value
            active_id = self.active_id()

            retired = [
                r
                for r in reversed(reg.ordered())
                if r.status is ReleaseStatus.RETIRED and r.id != active_id
            ]
            failed = [r for r in reg.ordered() if r.status is ReleaseStatus.FAILED and r.id != active_id]
            doomed = sorted(retired[self._keep :] + failed, key=lambda r: r.seq)

            removed: list[str] = []
            for release in doomed:
                workspace = self.workspace(release.id)
                try:
                    if workspace.exists():
                        shutil.rmtree(workspace)
                except OSError as e:
                    logger.error("prune_failed", release=release.id, path=str(workspace), error=str(e))
                    continue
                del reg.releases[release.id]
                removed.append(release.id)

            if removed:
                saved = self._save(reg)
                if isinstance(saved, Err):
                    return saved

        if removed:
            logger.info("releases_pruned", removed=removed, keep=self._keep)
        return Ok(removed)

    # -------------------------------------------------------------------------
    # Migration block
    # -------------------------------------------------------------------------

    def block(self, release_id: str, *, step: str, message: str) -> Result[Block, StateError]:
        with self._mutex:
            loaded = self._load()
            if isinstance(loaded, Err):
                return loaded
            reg = loaded.value
            reg.block = Block(
                release_id=release_id,
                step=step,
                message=message,
                since=self._clock().isoformat(timespec="seconds"),
            )
            saved = self._save(reg)
            if isinstance(saved, Err):
                return saved
        logger.error("environment_blocked", release=release_id, step=step, error=message)
        return Ok(reg.block)

    def unblock(self) -> Result[Block | None, StateError]:
        """Clear the migration block; returns the block that was cleared."""
        with self._mutex:
            loaded = self._load()
            if isinstance(loaded, Err):
                return loaded
            reg = loaded.value
            previous = reg.block
            if previous is None:
                return Ok(None)
            reg.block = None
            saved = self._save(reg)
            if isinstance(saved, Err):
                return saved
        logger.info("environment_unblocked", release=previous.release_id)
        return Ok(previous)
