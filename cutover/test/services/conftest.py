from __future__ import annotations

from pathlib import Path

import pytest

from cutover.core.config import EnvironmentConfig, HealthConfig, SharedConfig, StepsConfig


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    """A small application build directory."""
    build = tmp_path / "build"
    (build / "public").mkdir(parents=True)
    (build / "public" / "index.php").write_text("<?php echo 'ok';", encoding="utf-8")
    (build / "var" / "log").mkdir(parents=True)
    (build / "var" / "log" / "seed.log").write_text("seed", encoding="utf-8")
    (build / ".env.local").write_text("APP_ENV=prod\n", encoding="utf-8")
    return build


@pytest.fixture
def env(tmp_path: Path) -> EnvironmentConfig:
    return EnvironmentConfig(
        name="production",
        root=tmp_path / "app",
        keep=2,
        shared=SharedConfig(dirs=("var/log",), files=(".env.local",)),
        steps=StepsConfig(
            install="composer install",
            migrate="bin/console migrate",
            warm="bin/console cache:warmup",
            precheck="bin/console about",
            reload=("systemctl reload php-fpm",),
        ),
        health=HealthConfig(url="http://127.0.0.1/healthz", window=10, interval=1, successes=3),
    )
