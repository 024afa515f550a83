"""Health gate around the cutover.

- ``pre_check`` runs a self-test command inside the prepared workspace before
  any traffic reaches it. A timeout counts as a failure.
- ``post_check`` polls the liveness URL after promotion and passes once enough
  consecutive probes succeed within the window.

While the first probes run, the gate can raise the maintenance flag so the
web server answers "temporarily unavailable". The flag is cleared on success
and left in place on failure.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import structlog

from cutover.core.config import EnvironmentConfig
from cutover.core.result import Err, Ok, Result
from cutover.core.structured import as_str_dict
from cutover.platform.files import atomic_write_text
from cutover.platform.http import HttpClient, RealHttpClient
from cutover.release.errors import PreparationError, TransportError
from cutover.release.model import Release
from cutover.release.store import ReleaseStore
from cutover.services.channel import Channel
from cutover.services.sequencer import step_env

__all__ = ["HealthGate", "MaintenanceFlag", "ProbeReport"]

logger = structlog.get_logger(__name__)


class MaintenanceFlag:
    """JSON marker file the web server tests to serve a maintenance page."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def is_set(self) -> bool:
        return self._path.exists()

    def read(self) -> dict[str, object] | None:
        try:
            return as_str_dict(json.loads(self._path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            return None

    def set(self, *, reason: str, release_id: str | None = None) -> None:
        payload = {
            "reason": reason,
            "release": release_id,
            "since": datetime.now(UTC).isoformat(timespec="seconds"),
        }
        atomic_write_text(self._path, json.dumps(payload) + "\n")
        logger.info("maintenance_on", path=str(self._path), reason=reason, release=release_id)

    def clear(self) -> bool:
        """Remove the flag; returns whether it was set."""
        if not self._path.exists():
            return False
        self._path.unlink(missing_ok=True)
        logger.info("maintenance_off", path=str(self._path))
        return True


@dataclass(frozen=True, slots=True)
class ProbeReport:
    """Outcome of a post-promotion check.

    Attributes:
        passed: Enough consecutive probes succeeded within the window
        probes: Number of probes sent
        streak: Consecutive successes at the end of the check
        elapsed: Seconds spent polling
        last_error: Last probe failure, if any
        skipped: No liveness URL configured
        cancelled: The check was interrupted by a cancellation request
        maintenance_error: The maintenance flag could not be raised or cleared
    """

    passed: bool
    probes: int = 0
    streak: int = 0
    elapsed: float = 0.0
    last_error: str | None = None
    skipped: bool = False
    cancelled: bool = False
    maintenance_error: str | None = None

    def describe(self) -> str:
        if self.skipped:
            return "no liveness URL configured, post-check skipped"
        if self.cancelled:
            return f"cancelled after {self.probes} probe(s)"
        if self.passed:
            return f"{self.streak} consecutive successful probe(s) in {self.elapsed:.1f}s"
        detail = f": {self.last_error}" if self.last_error else ""
        return f"unhealthy after {self.probes} probe(s) in {self.elapsed:.1f}s{detail}"


class HealthGate:
    """Pre- and post-cutover checks for one environment."""

    def __init__(
        self,
        *,
        store: ReleaseStore,
        env: EnvironmentConfig,
        channel: Channel,
        http: HttpClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._env = env
        self._channel = channel
        self._http = http or RealHttpClient()
        self._sleep = sleep
        self._clock = clock
        self.maintenance = MaintenanceFlag(env.maintenance_flag_path)

    def pre_check(self, release: Release) -> Result[None, PreparationError | TransportError]:
        """Self-test the prepared workspace before it receives traffic."""
        workspace = self._store.workspace(release.id)
        if not workspace.is_dir():
            return Err(
                PreparationError(f"workspace of {release.id} is missing", release_id=release.id, step="precheck")
            )

        command = self._env.steps.precheck
        if command is None:
            logger.debug("precheck_skipped", release=release.id)
            return Ok(None)

        ran = self._channel.run(
            command,
            cwd=workspace,
            timeout=self._env.timeouts.precheck,
            env=step_env(self._env, self._store, release),
        )
        if isinstance(ran, Ok):
            logger.info("precheck_passed", release=release.id)
            return Ok(None)

        error = ran.error
        active = self._store.active_id()
        if error.transport:
            return Err(
                TransportError(
                    f"precheck: {error}",
                    release_id=release.id,
                    step="precheck",
                    active=active,
                    hint="Run `cutover status` before retrying",
                )
            )
        logger.warning("precheck_failed", release=release.id, error=str(error), timed_out=error.timed_out)
        return Err(PreparationError(f"precheck: {error}", release_id=release.id, step="precheck", active=active))

    def post_check(
        self,
        release: Release,
        window: float | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> ProbeReport:
        """Poll the liveness URL for up to ``window`` seconds.

        Passes once ``health.successes`` consecutive probes succeed. Any failed
        probe resets the streak.
        """
        health = self._env.health
        url = health.url
        if url is None:
            logger.warning("postcheck_skipped", release=release.id, reason="no health.url")
            return ProbeReport(passed=True, skipped=True)

        window = health.window if window is None else window
        log = logger.bind(release=release.id, url=url)
        flag_error: str | None = None
        if health.maintenance:
            try:
                self.maintenance.set(reason="post-deploy health check", release_id=release.id)
            except OSError as e:
                # Probing goes on without the maintenance page
                flag_error = f"cannot raise maintenance flag {self.maintenance.path}: {e}"
                log.error("maintenance_set_failed", path=str(self.maintenance.path), error=str(e))

        start = self._clock()
        deadline = start + window
        probes = 0
        streak = 0
        last_error: str | None = None

        while True:
            if cancel is not None and cancel.is_set():
                log.warning("postcheck_cancelled", probes=probes)
                return ProbeReport(
                    passed=False,
                    probes=probes,
                    streak=streak,
                    elapsed=self._clock() - start,
                    last_error=last_error,
                    cancelled=True,
                    maintenance_error=flag_error,
                )

            probes += 1
            answer = self._http.get_status(url, timeout=health.timeout)
            if isinstance(answer, Ok):
                streak += 1
                log.debug("probe_ok", status=answer.value, streak=streak)
            else:
                streak = 0
                last_error = str(answer.error)
                log.debug("probe_failed", error=last_error)

            if streak >= health.successes:
                if health.maintenance:
                    try:
                        self.maintenance.clear()
                    except OSError as e:
                        flag_error = f"cannot clear maintenance flag {self.maintenance.path}: {e}"
                        log.error("maintenance_clear_failed", path=str(self.maintenance.path), error=str(e))
                elapsed = self._clock() - start
                log.info("postcheck_passed", probes=probes, elapsed=round(elapsed, 2))
                return ProbeReport(
                    passed=True,
                    probes=probes,
                    streak=streak,
                    elapsed=elapsed,
                    maintenance_error=flag_error,
                )

            if self._clock() + health.interval > deadline:
                break
            self._sleep(health.interval)

        elapsed = self._clock() - start
        log.error("postcheck_failed", probes=probes, streak=streak, error=last_error)
        return ProbeReport(
            passed=False,
            probes=probes,
            streak=streak,
            elapsed=elapsed,
            last_error=last_error,
            maintenance_error=flag_error,
        )
