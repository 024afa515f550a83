"""Tests for cutover.core.config module."""

from __future__ import annotations

from pathlib import Path

import pytest

from cutover.core.config import (
    CONFIG_ENV_VAR,
    DEFAULT_KEEP,
    Config,
    EnvironmentConfig,
    default_config_path,
    load_config,
)
from cutover.core.result import Err, Ok

FULL_CONFIG = """
[environments.production]
root = "/srv/app"
keep = 5
fetch_attempts = 2
prune_after_deploy = false

[environments.production.shared]
dirs = ["var/log", "public/uploads"]
files = ".env.local"

[environments.production.steps]
install = "composer install --no-dev"
migrate = "php bin/console doctrine:migrations:migrate -n"
warm = "php bin/console cache:warmup"
precheck = "php bin/console about"
reload = ["sudo systemctl reload php-fpm", "sudo nginx -s reload"]

[environments.production.health]
url = "http://127.0.0.1/healthz"
window = 30
interval = 1
successes = 2
maintenance = false

[environments.production.timeouts]
install = 120

[environments.production.channel]
kind = "ssh"
host = "deploy@web1"
port = 2222

[environments.staging]
root = "staging"
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "cutover.toml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_full_environment(self, tmp_path: Path) -> None:
        result = load_config(_write(tmp_path, FULL_CONFIG))

        assert isinstance(result, Ok)
        prod = result.value.environments["production"]
        assert prod.root == Path("/srv/app")
        assert prod.keep == 5
        assert prod.fetch_attempts == 2
        assert prod.prune_after_deploy is False
        assert prod.shared.dirs == ("var/log", "public/uploads")
        assert prod.shared.files == (".env.local",)
        assert prod.steps.reload == ("sudo systemctl reload php-fpm", "sudo nginx -s reload")
        assert prod.health.url == "http://127.0.0.1/healthz"
        assert prod.health.window == 30.0
        assert prod.health.successes == 2
        assert prod.health.maintenance is False
        assert prod.timeouts.install == 120.0
        assert prod.channel.kind == "ssh"
        assert prod.channel.host == "deploy@web1"
        assert prod.channel.port == 2222

    def test_defaults(self, tmp_path: Path) -> None:
        result = load_config(_write(tmp_path, FULL_CONFIG))

        assert isinstance(result, Ok)
        staging = result.value.environments["staging"]
        assert staging.keep == DEFAULT_KEEP
        assert staging.prune_after_deploy is True
        assert staging.health.url is None
        assert staging.health.maintenance is True
        assert staging.steps.migrate is None
        assert staging.channel.kind == "local"

    def test_relative_root_resolves_against_config_dir(self, tmp_path: Path) -> None:
        result = load_config(_write(tmp_path, FULL_CONFIG))

        assert isinstance(result, Ok)
        assert result.value.environments["staging"].root == tmp_path.resolve() / "staging"

    def test_missing_file(self, tmp_path: Path) -> None:
        result = load_config(tmp_path / "nope.toml")

        assert isinstance(result, Err)
        assert "not found" in result.error.message
        assert result.error.hint is not None

    def test_zero_is_rejected_not_defaulted(self, tmp_path: Path) -> None:
        body = '[environments.x]\nroot = "/a"\n[environments.x.health]\nsuccesses = 0\n'

        result = load_config(_write(tmp_path, body))

        assert isinstance(result, Err)
        assert "successes must be >= 1 (got 0)" in result.error.message

    def test_negative_interval_names_the_table(self, tmp_path: Path) -> None:
        body = '[environments.x]\nroot = "/a"\n[environments.x.health]\ninterval = -1\n'

        result = load_config(_write(tmp_path, body))

        assert isinstance(result, Err)
        assert "'x.health': interval must be > 0 (got -1)" in result.error.message

    def test_strip_components(self, tmp_path: Path) -> None:
        result = load_config(_write(tmp_path, '[environments.x]\nroot = "/a"\nstrip_components = 1\n'))

        assert isinstance(result, Ok)
        assert result.value.environments["x"].strip_components == 1

    def test_invalid_toml(self, tmp_path: Path) -> None:
        result = load_config(_write(tmp_path, "[environments\n"))

        assert isinstance(result, Err)
        assert "Invalid TOML" in result.error.message

    @pytest.mark.parametrize(
        "body",
        [
            '[environments.x]\nkeep = 2\n',
            '[environments.x]\nroot = "/a"\nkeep = 0\n',
            '[environments.x]\nroot = "/a"\n[environments.x.channel]\nkind = "ftp"\n',
            '[environments.x]\nroot = "/a"\n[environments.x.channel]\nkind = "ssh"\n',
            '[environments.x]\nroot = "/a"\nfetch_attempts = 0\n',
            '[environments.x]\nroot = "/a"\nstrip_components = -1\n',
            '[environments.x]\nroot = "/a"\n[environments.x.health]\nsuccesses = 0\n',
            '[environments.x]\nroot = "/a"\n[environments.x.health]\nwindow = 0\n',
            '[environments.x]\nroot = "/a"\n[environments.x.health]\ninterval = -1\n',
            '[environments.x]\nroot = "/a"\n[environments.x.health]\ntimeout = -0.5\n',
            '[environments.x]\nroot = "/a"\n[environments.x.health]\ninterval = "2s"\n',
            '[environments.x]\nroot = "/a"\n[environments.x.timeouts]\nmigrate = 0\n',
            '[environments.x]\nroot = "/a"\n[environments.x.channel]\nkind = "ssh"\nhost = "h"\nport = 70000\n',
        ],
    )
    def test_invalid_structure(self, tmp_path: Path, body: str) -> None:
        result = load_config(_write(tmp_path, body))

        assert isinstance(result, Err)
        assert "Invalid config structure" in result.error.message


class TestEnvironmentSelection:
    def _config(self, *names: str) -> Config:
        return Config(
            environments={n: EnvironmentConfig(name=n, root=Path(f"/srv/{n}")) for n in names}
        )

    def test_single_environment_is_default(self) -> None:
        result = self._config("production").environment(None)

        assert isinstance(result, Ok)
        assert result.value.name == "production"

    def test_several_environments_need_a_name(self) -> None:
        result = self._config("production", "staging").environment(None)

        assert isinstance(result, Err)
        assert result.error.hint is not None
        assert "production, staging" in result.error.hint

    def test_unknown_name(self) -> None:
        result = self._config("production").environment("qa")

        assert isinstance(result, Err)
        assert "qa" in result.error.message

    def test_no_environments(self) -> None:
        assert isinstance(Config().environment(None), Err)

    def test_maintenance_flag_path(self) -> None:
        env = EnvironmentConfig(name="p", root=Path("/srv/p"))
        assert env.maintenance_flag_path == Path("/srv/p/maintenance.flag")


def test_default_config_path_honours_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "other.toml"))
    assert default_config_path() == tmp_path / "other.toml"

    monkeypatch.delenv(CONFIG_ENV_VAR)
    monkeypatch.chdir(tmp_path)
    assert default_config_path() == Path.cwd() / "cutover.toml"
