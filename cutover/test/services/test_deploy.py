"""End-to-end tests for cutover.services.deploy with mocked channel and probes."""

from __future__ import annotations

import io
import tarfile
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from cutover.core.config import EnvironmentConfig
from cutover.core.result import Err, Ok, Result
from cutover.output.errors import deploy_error_exit_code
from cutover.platform.http import MockHttpClient
from cutover.platform.lock import FileLock
from cutover.release.errors import (
    Cancelled,
    DeployError,
    DeploymentFailed,
    DeploymentInProgressError,
    MigrationError,
    NotFoundError,
    PreparationError,
    TransferError,
)
from cutover.release.model import ReleaseStatus
from cutover.release.store import ReleaseStore
from cutover.services.artifacts import sha256_file
from cutover.services.channel import ChannelError, MockChannel
from cutover.services.deploy import DeployReport, DeployService, artifact_digest

URL = "http://127.0.0.1/healthz"


def _ticking_clock() -> Callable[[], datetime]:
    start = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)
    ticks = iter(range(1_000_000))
    return lambda: start + timedelta(seconds=next(ticks))


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class Harness:
    def __init__(
        self,
        env: EnvironmentConfig,
        *,
        channel: MockChannel | None = None,
        store: ReleaseStore | None = None,
    ) -> None:
        self.env = env
        self.http = MockHttpClient()
        self.channel = channel or MockChannel()
        self.store = store or ReleaseStore(env.root, keep=env.keep, clock=_ticking_clock())
        clock = FakeClock()
        self.service = DeployService(
            env=env,
            store=self.store,
            channel=self.channel,
            http=self.http,
            sleep=clock.sleep,
            clock=clock,
        )

    def healthy(self, *answers: int) -> None:
        self.http.queue_status(URL, *(answers or (200,)))

    def status(self, release_id: str) -> ReleaseStatus:
        got = self.store.get(release_id)
        assert isinstance(got, Ok)
        return got.value.status


def _deployed(result: Result[DeployReport, DeployError]) -> str:
    assert isinstance(result, Ok), result
    return result.value.release.id


class TestDeploy:
    def test_first_deploy(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy()

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Ok)
        report = result.value
        assert report.previous is None
        assert report.release.status is ReleaseStatus.ACTIVE
        assert report.probe.passed
        assert report.reloads == 1
        assert h.store.active_id() == report.release.id
        assert (env.root / "current" / "public" / "index.php").exists()
        assert h.channel.commands == [
            "composer install",
            "bin/console migrate",
            "bin/console cache:warmup",
            "bin/console about",
            "systemctl reload php-fpm",
        ]
        assert not h.service.gate.maintenance.is_set()

    def test_second_deploy_retires_first(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy()
        first = _deployed(h.service.deploy(str(artifact)))

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Ok)
        assert result.value.previous == first
        assert h.status(first) is ReleaseStatus.RETIRED
        assert h.store.active_id() == result.value.release.id

    def test_failed_post_check_restores_previous(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy(200, 200, 200, 503)
        first = _deployed(h.service.deploy(str(artifact)))
        h.channel.calls.clear()

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Err)
        error = result.error
        assert isinstance(error, DeploymentFailed)
        assert deploy_error_exit_code(error) == 2
        assert error.active == first
        assert error.step == "postcheck"
        assert h.store.active_id() == first
        assert h.status(first) is ReleaseStatus.ACTIVE
        assert error.release_id is not None
        assert h.status(error.release_id) is ReleaseStatus.FAILED
        # Reloaded after the promotion and again after the rollback
        assert h.channel.commands.count("systemctl reload php-fpm") == 2
        # Maintenance flag stays up for an operator to inspect
        assert h.service.gate.maintenance.is_set()
        assert error.hint is not None
        assert "cutover maintenance off" in error.hint

    def test_failed_first_release_clears_pointer(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy(503)

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Err)
        assert isinstance(result.error, DeploymentFailed)
        assert result.error.active is None
        assert h.store.active_id() is None
        assert not (env.root / "current").is_symlink()
        assert result.error.release_id is not None
        assert h.status(result.error.release_id) is ReleaseStatus.FAILED

    def test_reload_failure_rolls_back(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy()
        first = _deployed(h.service.deploy(str(artifact)))
        h.channel.fail("systemctl", ChannelError(command="systemctl reload php-fpm", message="exit 1"))

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Err)
        assert isinstance(result.error, DeploymentFailed)
        assert result.error.step == "reload"
        assert h.store.active_id() == first
        assert result.error.hint is not None
        assert "reload after rollback failed" in result.error.hint

    def test_unwritable_flag_after_cutover(self, env: EnvironmentConfig, artifact: Path) -> None:
        blocked = replace(env, health=replace(env.health, maintenance_flag="blocker/maintenance.flag"))
        h = Harness(blocked)
        h.healthy()
        first = _deployed(h.service.deploy(str(artifact)))
        (env.root / "blocker").rmdir()
        (env.root / "blocker").write_text("not a directory", encoding="utf-8")

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Ok)
        assert result.value.previous == first
        assert h.store.active_id() == result.value.release.id
        assert result.value.probe.maintenance_error is not None

    def test_unwritable_flag_and_unhealthy_rolls_back(self, env: EnvironmentConfig, artifact: Path) -> None:
        blocked = replace(env, health=replace(env.health, maintenance_flag="blocker/maintenance.flag"))
        h = Harness(blocked)
        h.healthy(200, 200, 200, 503)
        first = _deployed(h.service.deploy(str(artifact)))
        (env.root / "blocker").rmdir()
        (env.root / "blocker").write_text("not a directory", encoding="utf-8")

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Err)
        assert isinstance(result.error, DeploymentFailed)
        assert h.store.active_id() == first
        assert result.error.hint is not None
        assert "cannot raise maintenance flag" in result.error.hint

    def test_exception_after_cutover_rolls_back(
        self, env: EnvironmentConfig, artifact: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        h = Harness(env)
        h.healthy()
        first = _deployed(h.service.deploy(str(artifact)))
        h.channel.calls.clear()

        def explode(*_args: object, **_kwargs: object) -> None:
            raise ValueError("sleep length must be non-negative")

        monkeypatch.setattr(h.service.gate, "post_check", explode)

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Err)
        error = result.error
        assert isinstance(error, DeploymentFailed)
        assert deploy_error_exit_code(error) == 2
        assert error.step == "postcheck"
        assert "sleep length must be non-negative" in error.message
        assert h.store.active_id() == first
        assert error.release_id is not None
        assert h.status(error.release_id) is ReleaseStatus.FAILED
        assert h.channel.commands.count("systemctl reload php-fpm") == 2

    def test_prune_crash_keeps_healthy_release(
        self, env: EnvironmentConfig, artifact: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        h = Harness(env)
        h.healthy()

        def explode() -> None:
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(h.store, "prune", explode)

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Ok)
        assert result.value.pruned == ()
        assert h.store.active_id() == result.value.release.id

    def test_strip_components_from_config(self, env: EnvironmentConfig, tmp_path: Path) -> None:
        archive = tmp_path / "app-1.0.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            payload = b"<?php echo 'ok';"
            info = tarfile.TarInfo("app-1.0/public/index.php")
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))
        h = Harness(replace(env, strip_components=1))
        h.healthy()

        result = h.service.deploy(str(archive))

        assert isinstance(result, Ok)
        assert (env.root / "current" / "public" / "index.php").exists()
        assert result.value.release.checksum == sha256_file(archive)

    def test_unverified_without_url(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(replace(env, health=replace(env.health, url=None)))

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Ok)
        assert result.value.probe.skipped
        assert h.http.calls == []

    def test_precheck_failure_keeps_previous(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy()
        first = _deployed(h.service.deploy(str(artifact)))
        h.channel.fail("about")

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Err)
        assert isinstance(result.error, PreparationError)
        assert deploy_error_exit_code(result.error) == 1
        assert h.store.active_id() == first
        assert result.error.release_id is not None
        assert h.status(result.error.release_id) is ReleaseStatus.FAILED

    def test_checksum_mismatch(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)

        result = h.service.deploy(str(artifact), sha256="0" * 64)

        assert isinstance(result, Err)
        assert isinstance(result.error, TransferError)
        assert h.channel.commands == []

    def test_migration_failure_blocks_until_unblocked(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy()
        first = _deployed(h.service.deploy(str(artifact)))
        h.channel.fail("migrate")

        failed = h.service.deploy(str(artifact))
        assert isinstance(failed, Err)
        assert isinstance(failed.error, MigrationError)
        assert h.store.active_id() == first

        h.channel.responses.clear()
        releases_before = h.store.releases()
        refused = h.service.deploy(str(artifact))
        assert isinstance(refused, Err)
        assert isinstance(refused.error, MigrationError)
        assert refused.error.hint is not None
        assert "cutover unblock" in refused.error.hint
        assert h.store.releases() == releases_before

        cleared = h.service.unblock()
        assert isinstance(cleared, Ok)
        assert cleared.value is not None

        assert isinstance(h.service.deploy(str(artifact)), Ok)

    def test_rejects_concurrent_deploy(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        other = FileLock(h.store.lock_path)
        assert isinstance(other.acquire(owner="deploy env=production"), Ok)
        try:
            result = h.service.deploy(str(artifact))
        finally:
            other.release()

        assert isinstance(result, Err)
        assert isinstance(result.error, DeploymentInProgressError)
        assert deploy_error_exit_code(result.error) == 1
        assert h.store.releases() == Ok([])

    def test_cancel_after_precheck(self, env: EnvironmentConfig, artifact: Path) -> None:
        cancel = threading.Event()

        class CancellingChannel(MockChannel):
            def run(
                self,
                command: str,
                *,
                cwd: Path,
                timeout: float,
                env: dict[str, str] | None = None,
            ) -> Result[str, ChannelError]:
                if "about" in command:
                    cancel.set()
                return super().run(command, cwd=cwd, timeout=timeout, env=env)

        h = Harness(env, channel=CancellingChannel())
        h.healthy()
        first = _deployed(h.service.deploy(str(artifact)))
        cancel.clear()

        result = h.service.deploy(str(artifact), cancel=cancel)

        assert isinstance(result, Err)
        assert isinstance(result.error, Cancelled)
        assert result.error.step == "promote"
        assert h.store.active_id() == first

    def test_release_id_conflict_gets_suffix(self, env: EnvironmentConfig, artifact: Path) -> None:
        fixed = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)
        store = ReleaseStore(env.root, keep=env.keep, clock=lambda: fixed)
        store.workspace("20240501120000").mkdir(parents=True)
        h = Harness(env, store=store)
        h.healthy()

        result = h.service.deploy(str(artifact))

        assert isinstance(result, Ok)
        assert result.value.release.id == "20240501120000.1"

    def test_keep_two_after_five_deploys(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy()
        ids = [_deployed(h.service.deploy(str(artifact))) for _ in range(5)]

        listed = h.store.releases()
        assert isinstance(listed, Ok)
        statuses = {r.id: r.status for r in listed.value}
        assert statuses == {
            ids[2]: ReleaseStatus.RETIRED,
            ids[3]: ReleaseStatus.RETIRED,
            ids[4]: ReleaseStatus.ACTIVE,
        }

    def test_no_prune_when_disabled(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(replace(env, prune_after_deploy=False))
        h.healthy()
        for _ in range(4):
            _deployed(h.service.deploy(str(artifact)))

        listed = h.store.releases()
        assert isinstance(listed, Ok)
        assert len(listed.value) == 4


class TestOperatorActions:
    def test_rollback_round_trip(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy()
        a = _deployed(h.service.deploy(str(artifact)))
        b = _deployed(h.service.deploy(str(artifact)))
        h.channel.calls.clear()

        back = h.service.rollback()
        assert isinstance(back, Ok)
        assert back.value.promotion.current == a
        assert back.value.reloads == 1
        assert h.channel.commands == ["systemctl reload php-fpm"]

        forth = h.service.rollback(b)
        assert isinstance(forth, Ok)
        assert h.store.active_id() == b

    def test_rollback_unknown_release(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy()
        _deployed(h.service.deploy(str(artifact)))

        result = h.service.rollback("19990101000000")

        assert isinstance(result, Err)
        assert isinstance(result.error, NotFoundError)
        assert deploy_error_exit_code(result.error) == 4

    def test_prune_is_idempotent(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(replace(env, prune_after_deploy=False))
        h.healthy()
        for _ in range(4):
            _deployed(h.service.deploy(str(artifact)))

        first = h.service.prune()
        second = h.service.prune()

        assert isinstance(first, Ok)
        assert len(first.value) == 1
        assert second == Ok([])

    def test_maintenance_on_off(self, env: EnvironmentConfig) -> None:
        h = Harness(env)

        assert h.service.maintenance(on=True) == Ok(True)
        assert h.service.maintenance(on=True) == Ok(False)
        assert env.maintenance_flag_path.exists()
        assert h.service.maintenance(on=False) == Ok(True)
        assert h.service.maintenance(on=False) == Ok(False)

    def test_status(self, env: EnvironmentConfig, artifact: Path) -> None:
        h = Harness(env)
        h.healthy()
        rid = _deployed(h.service.deploy(str(artifact)))

        result = h.service.status()

        assert isinstance(result, Ok)
        report = result.value
        assert report.active == rid
        assert [r.id for r in report.releases] == [rid]
        data = report.to_dict()
        assert data["env"] == "production"
        assert data["block"] is None
        assert data["maintenance"] is None


def test_artifact_digest(tmp_path: Path, artifact: Path) -> None:
    archive = tmp_path / "app.tar.gz"
    archive.write_bytes(b"data")

    assert artifact_digest(str(archive)) == sha256_file(archive)
    assert artifact_digest(str(artifact)) is None
    assert artifact_digest("https://ci.example/app.tar.gz") is None
