"""Preparation pipeline for a pending release.

Stages complete strictly in order and the pipeline stops at the first
failure:

    fetch -> FETCHED
    install -> DEPENDENCIES_INSTALLED
    migrate -> MIGRATED
    warm -> CACHE_WARMED
    (done) -> READY, release becomes ``prepared``

Each step has its own result type and its own error type. A failed release is
marked ``failed`` and the pointer is never touched here.
"""

from __future__ import annotations

import os
import shlex
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path

import structlog

from cutover.core.config import EnvironmentConfig
from cutover.core.result import Err, Ok, Result
from cutover.release.errors import (
    Cancelled,
    DependencyError,
    DeployFailure,
    MigrationError,
    PreparationError,
    StepError,
    TransferError,
    TransportError,
)
from cutover.release.model import Release, Stage
from cutover.release.store import ReleaseStore
from cutover.services.artifacts import ArtifactFetcher
from cutover.services.channel import Channel, ChannelError

__all__ = [
    "CacheWarmed",
    "DependenciesInstalled",
    "DeploymentSequencer",
    "Fetched",
    "Migrated",
    "step_env",
]

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Fetched:
    files_count: int
    checksum: str
    attempts: int


@dataclass(frozen=True, slots=True)
class DependenciesInstalled:
    output: str


@dataclass(frozen=True, slots=True)
class Migrated:
    output: str


@dataclass(frozen=True, slots=True)
class CacheWarmed:
    output: str


def step_env(env: EnvironmentConfig, store: ReleaseStore, release: Release) -> dict[str, str]:
    """Variables exported to every step command."""
    return {
        "CUTOVER_ENV": env.name,
        "CUTOVER_RELEASE": release.id,
        "CUTOVER_RELEASE_DIR": str(store.workspace(release.id)),
        "CUTOVER_SHARED_DIR": str(store.shared_dir),
        "CUTOVER_CURRENT": store.active_id() or "",
    }


class DeploymentSequencer:
    """Run fetch, install, migrate and warm for one release.

    Only the fetch step is retried: every attempt targets a freshly emptied
    workspace, so a partial transfer never leaks into the next attempt.
    """

    def __init__(
        self,
        *,
        store: ReleaseStore,
        env: EnvironmentConfig,
        channel: Channel,
        fetcher: ArtifactFetcher | None = None,
    ) -> None:
        self._store = store
        self._env = env
        self._channel = channel
        self._fetcher = fetcher or ArtifactFetcher(strip_components=env.strip_components)

    def prepare(
        self,
        release: Release,
        *,
        expected_sha256: str | None = None,
        cancel: threading.Event | None = None,
    ) -> Result[Release, StepError]:
        """Drive ``release`` from ``pending`` to ``prepared``.

        Returns:
            Ok with the prepared release, or Err with the first step error
            (the release is then ``failed``).
        """
        log = logger.bind(release=release.id, env=self._env.name)
        steps: tuple[tuple[Stage, Callable[[Release], Result[object, StepError]]], ...] = (
            (Stage.FETCHED, lambda r: self.fetch(r, expected_sha256=expected_sha256)),
            (Stage.DEPENDENCIES_INSTALLED, self.install),
            (Stage.MIGRATED, self.migrate),
            (Stage.CACHE_WARMED, self.warm),
        )

        for stage, step in steps:
            if cancel is not None and cancel.is_set():
                return self._fail(
                    release,
                    Cancelled(
                        f"deployment of {release.id} cancelled before {stage}",
                        release_id=release.id,
                        step=str(stage),
                    ),
                )

            log.info("step_started", stage=str(stage))
            outcome = step(release)
            if isinstance(outcome, Err):
                return self._fail(release, outcome.error)

            checksum = outcome.value.checksum if isinstance(outcome.value, Fetched) else None
            marked = self._store.mark_stage(release.id, stage, checksum=checksum)
            if isinstance(marked, Err):
                return self._fail(release, _bookkeeping_error(marked.error, release, str(stage)))
            release = marked.value
            log.info("step_completed", stage=str(stage))

        ready = self._store.mark_stage(release.id, Stage.READY)
        if isinstance(ready, Err):
            return self._fail(release, _bookkeeping_error(ready.error, release, "ready"))
        prepared = self._store.mark_prepared(release.id)
        if isinstance(prepared, Err):
            return self._fail(release, _bookkeeping_error(prepared.error, release, "ready"))

        log.info("release_prepared")
        return Ok(prepared.value)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def fetch(self, release: Release, *, expected_sha256: str | None = None) -> Result[Fetched, StepError]:
        workspace = self._store.workspace(release.id)
        attempts = self._env.fetch_attempts
        last_message = ""

        for attempt in range(1, attempts + 1):
            fetched = self._fetcher.fetch(
                release.artifact,
                workspace,
                timeout=self._env.timeouts.fetch,
                expected_sha256=expected_sha256,
            )
            if isinstance(fetched, Ok):
                linked = self.link_shared(workspace)
                if isinstance(linked, Err):
                    return Err(replace(linked.error, release_id=release.id))
                visible = self.check_remote_workspace(release)
                if isinstance(visible, Err):
                    return visible
                return Ok(Fetched(fetched.value.files_count, fetched.value.checksum, attempt))

            last_message = str(fetched.error)
            logger.warning("fetch_attempt_failed", release=release.id, attempt=attempt, error=last_message)
            if not fetched.error.retryable:
                break

        return Err(
            TransferError(
                f"fetch failed: {last_message}",
                release_id=release.id,
                step="fetch",
                hint="Check the artifact reference and re-run the deployment",
            )
        )

    def check_remote_workspace(self, release: Release) -> Result[None, StepError]:
        """Make sure the ssh host sees the workspace fetched on this machine.

        Files are written locally while step commands run remotely, so both
        hosts must share the environment root at the same path.
        """
        if self._env.channel.kind != "ssh":
            return Ok(None)
        workspace = self._store.workspace(release.id)
        ran = self._channel.run(
            f"test -d {shlex.quote(str(workspace))}",
            cwd=self._store.root,
            timeout=self._env.timeouts.fetch,
        )
        if isinstance(ran, Ok):
            return Ok(None)
        error = self._classify(ran.error, release, "fetch", PreparationError)
        return Err(
            _with_hint(
                error,
                f"{self._channel.name} must see {self._store.root} at the same path (shared filesystem)",
            )
        )

    def link_shared(self, workspace: Path) -> Result[None, TransferError]:
        """Replace shared paths in ``workspace`` by links into the shared area.

        A missing shared directory is seeded from the release (or created
        empty); a missing shared file is seeded from the release (or created
        empty).
        """
        shared_root = self._store.shared_dir
        try:
            for rel in self._env.shared.dirs:
                self._link_one(workspace, shared_root, rel, is_dir=True)
            for rel in self._env.shared.files:
                self._link_one(workspace, shared_root, rel, is_dir=False)
        except (OSError, ValueError) as e:
            return Err(TransferError(f"cannot link shared state: {e}", step="fetch"))
        return Ok(None)

    def _link_one(self, workspace: Path, shared_root: Path, rel: str, *, is_dir: bool) -> None:
        rel_path = Path(rel.strip("/"))
        if rel_path.is_absolute() or ".." in rel_path.parts or not rel_path.parts:
            raise ValueError(f"shared path must be relative to the release: {rel}")

        shared = shared_root / rel_path
        local = workspace / rel_path

        if not shared.exists():
            shared.parent.mkdir(parents=True, exist_ok=True)
            if is_dir:
                if local.is_dir() and not local.is_symlink():
                    shutil.copytree(local, shared, symlinks=True)
                else:
                    shared.mkdir(parents=True, exist_ok=True)
            elif local.is_file() and not local.is_symlink():
                shutil.copy2(local, shared)
            else:
                shared.touch()

        if local.is_symlink() or local.is_file():
            local.unlink()
        elif local.is_dir():
            shutil.rmtree(local)

        local.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(os.path.relpath(shared, local.parent), local)

    def install(self, release: Release) -> Result[DependenciesInstalled, StepError]:
        ran = self._run(release, "install", self._env.steps.install, self._env.timeouts.install)
        if isinstance(ran, Err):
            return Err(self._classify(ran.error, release, "install", DependencyError))
        return Ok(DependenciesInstalled(ran.value))

    def migrate(self, release: Release) -> Result[Migrated, StepError]:
        """Apply migrations. Never retried: a failure leaves the data store in
        an unknown state and blocks the environment until an operator clears it.
        """
        ran = self._run(release, "migrate", self._env.steps.migrate, self._env.timeouts.migrate)
        if isinstance(ran, Ok):
            return Ok(Migrated(ran.value))

        error = self._classify(ran.error, release, "migrate", MigrationError)
        error = _with_hint(error, "Inspect the database, then run `cutover unblock` before deploying again")
        blocked = self._store.block(release.id, step="migrate", message=error.message)
        if isinstance(blocked, Err):
            logger.error("block_not_recorded", release=release.id, error=blocked.error.message)
        return Err(error)

    def warm(self, release: Release) -> Result[CacheWarmed, StepError]:
        ran = self._run(release, "warm", self._env.steps.warm, self._env.timeouts.warm)
        if isinstance(ran, Err):
            return Err(self._classify(ran.error, release, "warm", PreparationError))
        return Ok(CacheWarmed(ran.value))

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _run(
        self,
        release: Release,
        step: str,
        command: str | None,
        timeout: float,
    ) -> Result[str, ChannelError]:
        if command is None:
            logger.debug("step_skipped", release=release.id, step=step)
            return Ok("")
        return self._channel.run(
            command,
            cwd=self._store.workspace(release.id),
            timeout=timeout,
            env=step_env(self._env, self._store, release),
        )

    def _classify[F: DeployFailure](
        self,
        error: ChannelError,
        release: Release,
        step: str,
        kind: type[F],
    ) -> F | TransportError:
        active = self._store.active_id()
        if error.transport:
            return TransportError(
                f"{step}: {error}",
                release_id=release.id,
                step=step,
                active=active,
                hint=f"Channel {self._channel.name} failed; run `cutover status` before retrying",
            )
        return kind(f"{step}: {error}", release_id=release.id, step=step, active=active)

    def _fail(self, release: Release, error: StepError) -> Err[StepError]:
        marked = self._store.mark_failed(release.id, error.message)
        if isinstance(marked, Err):
            logger.error("release_not_marked_failed", release=release.id, error=marked.error.message)
        if error.active is None:
            error = _with_active(error, self._store.active_id())
        return Err(error)


def _bookkeeping_error(error: DeployFailure, release: Release, step: str) -> TransportError:
    """A registry read/write failed mid-pipeline: state is indeterminate."""
    return TransportError(
        f"cannot record {step} for {release.id}: {error.message}",
        release_id=release.id,
        step=step,
        hint="Run `cutover status` before retrying",
    )


def _with_hint[F: DeployFailure](error: F, hint: str) -> F:
    return replace(error, hint=error.hint or hint)


def _with_active[F: DeployFailure](error: F, active: str | None) -> F:
    return replace(error, active=active)
