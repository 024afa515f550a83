"""Deployment service - the end-to-end flow for one environment.

    lock -> blocked? -> create -> prepare -> pre-check -> promote
         -> reload -> post-check -> (rollback + reload on failure) -> prune

Every operation that changes state holds the environment lock for its whole
duration. A second caller is rejected, never queued.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from cutover.core.config import EnvironmentConfig
from cutover.core.result import Err, Ok, Result
from cutover.platform.http import HttpClient, RealHttpClient
from cutover.platform.lock import FileLock
from cutover.release.errors import (
    Cancelled,
    ConflictError,
    DeployError,
    DeploymentFailed,
    DeploymentInProgressError,
    MigrationError,
    StateError,
    TransportError,
)
from cutover.release.model import Block, Promotion, Release, ReleaseStatus
from cutover.release.store import ReleaseStore
from cutover.services.artifacts import ArtifactFetcher, sha256_file
from cutover.services.channel import Channel, channel_for
from cutover.services.health import HealthGate, ProbeReport
from cutover.services.sequencer import DeploymentSequencer
from cutover.services.supervisor import Supervisor

__all__ = ["DeployReport", "DeployService", "RollbackReport", "StatusReport"]

logger = structlog.get_logger(__name__)

MAX_CREATE_ATTEMPTS = 5


@dataclass(frozen=True, slots=True)
class DeployReport:
    release: Release
    previous: str | None
    probe: ProbeReport
    reloads: int = 0
    pruned: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RollbackReport:
    promotion: Promotion
    reloads: int = 0


def _no_releases() -> list[Release]:
    return []


@dataclass(frozen=True, slots=True)
class StatusReport:
    """Snapshot of an environment for ``cutover status``."""

    env: str
    root: Path
    keep: int
    active: str | None
    releases: list[Release] = field(default_factory=_no_releases)
    block: Block | None = None
    maintenance: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "env": self.env,
            "root": str(self.root),
            "keep": self.keep,
            "active": self.active,
            "block": self.block.to_dict() if self.block else None,
            "maintenance": self.maintenance,
            "releases": [r.to_dict() for r in self.releases],
        }


def artifact_digest(ref: str) -> str | None:
    """SHA-256 of a local archive, known before anything is copied."""
    path = Path(ref).expanduser()
    if not path.is_file():
        return None
    try:
        return sha256_file(path)
    except OSError as e:
        logger.warning("digest_failed", artifact=ref, error=str(e))
        return None


class DeployService:
    """Deploy, roll back and prune releases of one environment.

    Usage:
        service = DeployService(env=config.environment("production").unwrap())
        match service.deploy("build/app.tar.gz"):
            case Ok(report):
                ...
            case Err(error):
                ...
    """

    def __init__(
        self,
        *,
        env: EnvironmentConfig,
        store: ReleaseStore | None = None,
        channel: Channel | None = None,
        http: HttpClient | None = None,
        fetcher: ArtifactFetcher | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._env = env
        self._store = store or ReleaseStore(env.root, keep=env.keep)
        self._channel = channel or channel_for(env.channel)
        http = http or RealHttpClient()
        self._sequencer = DeploymentSequencer(
            store=self._store,
            env=env,
            channel=self._channel,
            fetcher=fetcher or ArtifactFetcher(http=http, strip_components=env.strip_components),
        )
        self._gate = HealthGate(
            store=self._store,
            env=env,
            channel=self._channel,
            http=http,
            sleep=sleep,
            clock=clock,
        )
        self._supervisor = Supervisor(env=env, channel=self._channel)
        self._lock = FileLock(self._store.lock_path)

    @property
    def env(self) -> EnvironmentConfig:
        return self._env

    @property
    def store(self) -> ReleaseStore:
        return self._store

    @property
    def gate(self) -> HealthGate:
        return self._gate

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    def _acquire(self, action: str) -> Result[None, DeploymentInProgressError]:
        acquired = self._lock.acquire(owner=f"{action} env={self._env.name}")
        if isinstance(acquired, Err):
            holder = acquired.error.holder or "unknown holder"
            logger.warning("lock_busy", env=self._env.name, action=action, holder=holder)
            return Err(
                DeploymentInProgressError(
                    f"another operation is running on {self._env.name} ({holder})",
                    step=action,
                    active=self._store.active_id(),
                    hint="Wait for it to finish, then retry",
                )
            )
        return Ok(None)

    # -------------------------------------------------------------------------
    # Deploy
    # -------------------------------------------------------------------------

    def deploy(
        self,
        artifact: str,
        *,
        sha256: str | None = None,
        cancel: threading.Event | None = None,
    ) -> Result[DeployReport, DeployError]:
        """Prepare ``artifact`` as a new release and cut over to it.

        On Err, ``error.active`` names the release serving traffic afterwards.
        """
        acquired = self._acquire("deploy")
        if isinstance(acquired, Err):
            return acquired
        try:
            return self._deploy(artifact, sha256=sha256, cancel=cancel)
        finally:
            self._lock.release()

    def _deploy(
        self,
        artifact: str,
        *,
        sha256: str | None,
        cancel: threading.Event | None,
    ) -> Result[DeployReport, DeployError]:
        blocked = self._store.blocked()
        if isinstance(blocked, Err):
            return blocked
        if blocked.value is not None:
            block = blocked.value
            return Err(
                MigrationError(
                    f"environment blocked since {block.since}: {block.message}",
                    release_id=block.release_id,
                    step=block.step,
                    active=self._store.active_id(),
                    hint="Inspect the database, then run `cutover unblock`",
                )
            )

        created = self._create(artifact, checksum=artifact_digest(artifact))
        if isinstance(created, Err):
            return created
        release = created.value
        log = logger.bind(release=release.id, env=self._env.name)
        log.info("deploy_started", artifact=artifact)

        prepared = self._sequencer.prepare(release, expected_sha256=sha256, cancel=cancel)
        if isinstance(prepared, Err):
            return prepared
        release = prepared.value

        checked = self._gate.pre_check(release)
        if isinstance(checked, Err):
            self._mark_failed(release, checked.error.message)
            return checked
        marked = self._store.mark_prechecked(release.id)
        if isinstance(marked, Err):
            self._mark_failed(release, marked.error.message)
            return marked
        release = marked.value

        if cancel is not None and cancel.is_set():
            message = f"deployment of {release.id} cancelled before cutover"
            self._mark_failed(release, message)
            return Err(
                Cancelled(message, release_id=release.id, step="promote", active=self._store.active_id())
            )

        promoted = self._store.promote(release.id)
        if isinstance(promoted, Err):
            if self._store.active_id() != release.id:
                self._mark_failed(release, promoted.error.message)
            return promoted
        promotion = promoted.value

        # The new release now serves traffic; a failed reload or post-check,
        # raised or returned, is undone through _recover.
        step = "reload"
        try:
            reloaded = self._supervisor.reload(reason=f"promote {release.id}")
            if isinstance(reloaded, Err):
                return self._recover(release, promotion, step=step, reason=str(reloaded.error))
            step = "postcheck"
            probe = self._gate.post_check(release, cancel=cancel)
        except Exception as e:  # noqa: BLE001
            log.exception("post_promotion_crashed", step=step)
            return self._recover(release, promotion, step=step, reason=f"unexpected error: {e!r}")

        if not probe.passed:
            return self._recover(
                release, promotion, step="postcheck", reason=probe.describe(), hint=probe.maintenance_error
            )
        if probe.skipped:
            log.warning("deploy_unverified", reason=probe.describe())
        if probe.maintenance_error:
            log.warning("deploy_maintenance_flag", error=probe.maintenance_error)

        pruned = self._prune_after_deploy(release) if self._env.prune_after_deploy else []

        current = self._store.get(release.id)
        if isinstance(current, Ok):
            release = current.value
        log.info("deploy_succeeded", previous=promotion.previous)
        return Ok(
            DeployReport(
                release=release,
                previous=promotion.previous,
                probe=probe,
                reloads=reloaded.value,
                pruned=tuple(pruned),
            )
        )

    def _create(self, artifact: str, *, checksum: str | None) -> Result[Release, DeployError]:
        """Create the release record, suffixing the id when it already exists."""
        base = self._store.new_id()
        last: ConflictError | None = None
        for attempt in range(MAX_CREATE_ATTEMPTS):
            release_id = base if attempt == 0 else f"{base}.{attempt}"
            created = self._store.create(artifact, checksum=checksum, release_id=release_id)
            match created:
                case Ok(release):
                    return Ok(release)
                case Err(ConflictError() as conflict):
                    logger.debug("release_id_taken", release=release_id)
                    last = conflict
                case Err(error):
                    return Err(error)
        assert last is not None
        return Err(last)

    def _prune_after_deploy(self, release: Release) -> list[str]:
        """Prune once the new release is healthy; failures here never undo the deploy."""
        try:
            result = self._store.prune()
        except Exception:  # noqa: BLE001
            logger.exception("prune_after_deploy_crashed", release=release.id)
            return []
        if isinstance(result, Err):
            logger.error("prune_after_deploy_failed", release=release.id, error=result.error.message)
            return []
        return result.value

    def _mark_failed(self, release: Release, message: str) -> None:
        marked = self._store.mark_failed(release.id, message)
        if isinstance(marked, Err):
            logger.error("release_not_marked_failed", release=release.id, error=marked.error.message)

    def _recover(
        self,
        release: Release,
        promotion: Promotion,
        *,
        step: str,
        reason: str,
        hint: str | None = None,
    ) -> Err[DeployError]:
        """Undo a promotion whose release failed after cutover."""
        logger.error("post_promotion_failure", release=release.id, step=step, reason=reason)

        if promotion.previous is not None:
            restored = self._store.rollback(promotion.previous, demote=ReleaseStatus.FAILED, reason=reason)
            undo_error = restored.error.message if isinstance(restored, Err) else None
        else:
            cleared = self._store.clear_pointer(reason=reason)
            undo_error = cleared.error.message if isinstance(cleared, Err) else None

        active = self._store.active_id()
        if undo_error is not None:
            return Err(
                TransportError(
                    f"{release.id} failed after cutover ({reason}) and could not be undone: {undo_error}",
                    release_id=release.id,
                    step="rollback",
                    active=active,
                    hint="Run `cutover status` and restore a release with `cutover rollback <id>`",
                )
            )

        hints: list[str] = [hint] if hint else []
        if active is not None:
            reloaded = self._supervisor.reload(reason=f"rollback to {active}")
            if isinstance(reloaded, Err):
                hints.append(f"reload after rollback failed ({reloaded.error}); reload the services by hand")
        if self._gate.maintenance.is_set():
            hints.append("the maintenance flag is still set; run `cutover maintenance off` once the site is healthy")

        restored_msg = f"restored {active}" if active is not None else "no earlier release, current removed"
        return Err(
            DeploymentFailed(
                f"{release.id} failed after cutover ({reason}); {restored_msg}",
                release_id=release.id,
                step=step,
                active=active,
                hint="; ".join(hints) or None,
            )
        )

    # -------------------------------------------------------------------------
    # Operator actions
    # -------------------------------------------------------------------------

    def rollback(self, release_id: str | None = None) -> Result[RollbackReport, DeployError]:
        """Point ``current`` back at ``release_id`` (default: newest retired)."""
        acquired = self._acquire("rollback")
        if isinstance(acquired, Err):
            return acquired
        try:
            rolled = self._store.rollback(release_id)
            if isinstance(rolled, Err):
                return rolled
            promotion = rolled.value
            reloaded = self._supervisor.reload(reason=f"rollback to {promotion.current}")
            if isinstance(reloaded, Err):
                return Err(
                    TransportError(
                        f"rolled back to {promotion.current} but {reloaded.error}",
                        release_id=promotion.current,
                        step="reload",
                        active=promotion.current,
                        hint="Reload the services by hand",
                    )
                )
            return Ok(RollbackReport(promotion=promotion, reloads=reloaded.value))
        finally:
            self._lock.release()

    def prune(self) -> Result[list[str], DeployError]:
        acquired = self._acquire("prune")
        if isinstance(acquired, Err):
            return acquired
        try:
            pruned = self._store.prune()
            if isinstance(pruned, Err):
                return pruned
            return Ok(pruned.value)
        finally:
            self._lock.release()

    def unblock(self) -> Result[Block | None, DeployError]:
        acquired = self._acquire("unblock")
        if isinstance(acquired, Err):
            return acquired
        try:
            cleared = self._store.unblock()
            if isinstance(cleared, Err):
                return cleared
            return Ok(cleared.value)
        finally:
            self._lock.release()

    def maintenance(self, *, on: bool) -> Result[bool, StateError]:
        """Raise or clear the maintenance flag; returns whether it changed."""
        flag = self._gate.maintenance
        try:
            if on:
                was_set = flag.is_set()
                flag.set(reason="operator", release_id=self._store.active_id())
                return Ok(not was_set)
            return Ok(flag.clear())
        except OSError as e:
            return Err(StateError(f"cannot update {flag.path}: {e}", step="maintenance"))

    def status(self) -> Result[StatusReport, StateError]:
        releases = self._store.releases()
        if isinstance(releases, Err):
            return releases
        blocked = self._store.blocked()
        if isinstance(blocked, Err):
            return blocked
        return Ok(
            StatusReport(
                env=self._env.name,
                root=self._env.root,
                keep=self._store.keep,
                active=self._store.active_id(),
                releases=releases.value,
                block=blocked.value,
                maintenance=self._gate.maintenance.read(),
            )
        )
