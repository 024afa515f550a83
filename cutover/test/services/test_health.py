"""Tests for cutover.services.health module."""

from __future__ import annotations

import json
import threading
from dataclasses import replace
from pathlib import Path

import pytest

from cutover.core.config import EnvironmentConfig
from cutover.core.result import Err, Ok
from cutover.platform.http import MockHttpClient
from cutover.release.errors import PreparationError, TransportError
from cutover.release.model import Release
from cutover.release.store import ReleaseStore
from cutover.services.channel import ChannelError, MockChannel
from cutover.services.health import HealthGate, MaintenanceFlag

URL = "http://127.0.0.1/healthz"


class FakeClock:
    """Monotonic clock that only moves when the gate sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _gate(
    env: EnvironmentConfig,
    *,
    http: MockHttpClient | None = None,
    channel: MockChannel | None = None,
    clock: FakeClock | None = None,
) -> tuple[HealthGate, ReleaseStore, FakeClock]:
    store = ReleaseStore(env.root)
    clock = clock or FakeClock()
    gate = HealthGate(
        store=store,
        env=env,
        channel=channel or MockChannel(),
        http=http or MockHttpClient(),
        sleep=clock.sleep,
        clock=clock,
    )
    return gate, store, clock


def _release(store: ReleaseStore) -> Release:
    created = store.create("build", release_id="r1")
    assert isinstance(created, Ok)
    return created.value


class TestPostCheck:
    def test_passes_after_consecutive_successes(self, env: EnvironmentConfig) -> None:
        http = MockHttpClient()
        http.queue_status(URL, 200)
        gate, store, clock = _gate(env, http=http)

        report = gate.post_check(_release(store))

        assert report.passed
        assert report.probes == 3
        assert report.streak == 3
        assert clock.sleeps == [1.0, 1.0]

    def test_failure_resets_streak(self, env: EnvironmentConfig) -> None:
        http = MockHttpClient()
        http.queue_status(URL, 200, 200, 503, 200, 200, 200)
        gate, store, _ = _gate(env, http=http)

        report = gate.post_check(_release(store))

        assert report.passed
        assert report.probes == 6

    def test_fails_when_window_elapses(self, env: EnvironmentConfig) -> None:
        http = MockHttpClient()
        http.queue_status(URL, 502)
        gate, store, clock = _gate(env, http=http)

        report = gate.post_check(_release(store))

        assert not report.passed
        assert report.probes == 11
        assert clock.now <= env.health.window
        assert report.last_error is not None
        assert "502" in report.last_error
        assert "502" in report.describe()

    def test_window_override(self, env: EnvironmentConfig) -> None:
        gate, store, _ = _gate(env)

        report = gate.post_check(_release(store), window=2)

        assert not report.passed
        assert report.probes == 3

    def test_unreachable_counts_as_failure(self, env: EnvironmentConfig) -> None:
        gate, store, _ = _gate(env, http=MockHttpClient())

        report = gate.post_check(_release(store), window=0)

        assert not report.passed
        assert report.probes == 1

    def test_skipped_without_url(self, env: EnvironmentConfig) -> None:
        no_url = replace(env, health=replace(env.health, url=None))
        http = MockHttpClient()
        gate, store, _ = _gate(no_url, http=http)

        report = gate.post_check(_release(store))

        assert report.passed
        assert report.skipped
        assert http.calls == []
        assert not gate.maintenance.is_set()

    def test_cancelled(self, env: EnvironmentConfig) -> None:
        gate, store, _ = _gate(env)
        cancel = threading.Event()
        cancel.set()

        report = gate.post_check(_release(store), cancel=cancel)

        assert not report.passed
        assert report.cancelled
        assert report.probes == 0


class TestMaintenance:
    def test_flag_cleared_after_success(self, env: EnvironmentConfig) -> None:
        http = MockHttpClient()
        seen: list[bool] = []
        gate, store, _ = _gate(env, http=http)
        http.queue_status(URL, 200)

        original = http.get_status

        def spy(url: str, *, timeout: float) -> object:
            seen.append(gate.maintenance.is_set())
            return original(url, timeout=timeout)

        http.get_status = spy  # type: ignore[method-assign]

        report = gate.post_check(_release(store))

        assert report.passed
        assert seen[0] is True
        assert not gate.maintenance.is_set()

    def test_flag_left_set_on_failure(self, env: EnvironmentConfig) -> None:
        gate, store, _ = _gate(env)

        report = gate.post_check(_release(store), window=1)

        assert not report.passed
        assert gate.maintenance.is_set()
        payload = gate.maintenance.read()
        assert payload is not None
        assert payload["release"] == "r1"

    def test_unwritable_flag_does_not_stop_probing(self, env: EnvironmentConfig) -> None:
        blocked = replace(env, health=replace(env.health, maintenance_flag="blocker/maintenance.flag"))
        http = MockHttpClient()
        http.queue_status(URL, 200)
        gate, store, _ = _gate(blocked, http=http)
        release = _release(store)
        (env.root / "blocker").write_text("not a directory", encoding="utf-8")

        report = gate.post_check(release)

        assert report.passed
        assert report.probes == 3
        assert report.maintenance_error is not None
        assert "cannot raise maintenance flag" in report.maintenance_error

    def test_clear_failure_is_reported(self, env: EnvironmentConfig, monkeypatch: pytest.MonkeyPatch) -> None:
        http = MockHttpClient()
        http.queue_status(URL, 200)
        gate, store, _ = _gate(env, http=http)

        def refuse(self: MaintenanceFlag) -> bool:
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(MaintenanceFlag, "clear", refuse)

        report = gate.post_check(_release(store))

        assert report.passed
        assert report.maintenance_error is not None
        assert "cannot clear maintenance flag" in report.maintenance_error
        assert gate.maintenance.is_set()

    def test_disabled(self, env: EnvironmentConfig) -> None:
        quiet = replace(env, health=replace(env.health, maintenance=False))
        gate, store, _ = _gate(quiet)

        gate.post_check(_release(store), window=1)

        assert not gate.maintenance.is_set()

    def test_flag_file(self, tmp_path: Path) -> None:
        flag = MaintenanceFlag(tmp_path / "maintenance.flag")
        assert flag.read() is None
        assert flag.clear() is False

        flag.set(reason="operator", release_id="r7")

        assert json.loads(flag.path.read_text(encoding="utf-8"))["reason"] == "operator"
        assert flag.clear() is True
        assert not flag.is_set()


class TestPreCheck:
    def test_runs_precheck_in_workspace(self, env: EnvironmentConfig) -> None:
        channel = MockChannel()
        gate, store, _ = _gate(env, channel=channel)
        release = _release(store)

        assert gate.pre_check(release) == Ok(None)
        assert channel.commands == ["bin/console about"]
        assert channel.calls[0].cwd == store.workspace("r1")
        assert channel.calls[0].timeout == env.timeouts.precheck

    def test_failure_blocks_promotion(self, env: EnvironmentConfig) -> None:
        channel = MockChannel()
        channel.fail("about", ChannelError(command="bin/console about", message="timed out", timed_out=True))
        gate, store, _ = _gate(env, channel=channel)

        result = gate.pre_check(_release(store))

        assert isinstance(result, Err)
        assert isinstance(result.error, PreparationError)
        assert result.error.step == "precheck"

    def test_transport_failure(self, env: EnvironmentConfig) -> None:
        channel = MockChannel()
        channel.fail("about", ChannelError(command="bin/console about", message="ssh", transport=True))
        gate, store, _ = _gate(env, channel=channel)

        result = gate.pre_check(_release(store))

        assert isinstance(result, Err)
        assert isinstance(result.error, TransportError)

    def test_no_command(self, env: EnvironmentConfig) -> None:
        bare = replace(env, steps=replace(env.steps, precheck=None))
        channel = MockChannel()
        gate, store, _ = _gate(bare, channel=channel)

        assert gate.pre_check(_release(store)) == Ok(None)
        assert channel.commands == []

    @pytest.mark.parametrize("precheck", ["bin/console about", None])
    def test_missing_workspace(self, env: EnvironmentConfig, precheck: str | None) -> None:
        gate, store, _ = _gate(replace(env, steps=replace(env.steps, precheck=precheck)))
        release = _release(store)
        store.workspace("r1").rmdir()

        result = gate.pre_check(release)

        assert isinstance(result, Err)
        assert isinstance(result.error, PreparationError)
