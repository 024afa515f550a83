"""Typed configuration loading and access.

A config file describes one or more deployment environments:

    [environments.production]
    root = "/var/www/app"
    keep = 3

    [environments.production.shared]
    dirs = ["var/log", "public/uploads"]
    files = [".env.local"]

    [environments.production.steps]
    install = "composer install --no-dev --optimize-autoloader"
    migrate = "php bin/console doctrine:migrations:migrate --no-interaction"
    warm = "php bin/console cache:warmup"
    precheck = "php bin/console about"
    reload = ["sudo systemctl reload php8.2-fpm", "sudo nginx -s reload"]

    [environments.production.health]
    url = "http://127.0.0.1/healthz"

Each environment has its own root, so environments never share state.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from .result import Err, Ok, Result
from .structured import (
    StrDict,
    as_str_dict,
    get_bool,
    get_float,
    get_int,
    get_str,
    get_str_list,
    get_table,
)

__all__ = [
    "ChannelConfig",
    "Config",
    "ConfigError",
    "EnvironmentConfig",
    "HealthConfig",
    "SharedConfig",
    "StepsConfig",
    "TimeoutsConfig",
    "default_config_path",
    "load_config",
    # Defaults
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_KEEP",
    "DEFAULT_FETCH_ATTEMPTS",
]

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------

DEFAULT_CONFIG_NAME = "cutover.toml"
CONFIG_ENV_VAR = "CUTOVER_CONFIG"

DEFAULT_KEEP = 3
DEFAULT_FETCH_ATTEMPTS = 3

# Seconds
DEFAULT_FETCH_TIMEOUT = 300.0
DEFAULT_INSTALL_TIMEOUT = 900.0
DEFAULT_MIGRATE_TIMEOUT = 600.0
DEFAULT_WARM_TIMEOUT = 300.0
DEFAULT_PRECHECK_TIMEOUT = 30.0
DEFAULT_RELOAD_TIMEOUT = 60.0

DEFAULT_HEALTH_WINDOW = 60.0
DEFAULT_HEALTH_INTERVAL = 2.0
DEFAULT_HEALTH_SUCCESSES = 3
DEFAULT_PROBE_TIMEOUT = 5.0

ChannelKind = Literal["local", "ssh"]


@dataclass(frozen=True, slots=True)
class ConfigError:
    """Error when config cannot be loaded or parsed."""

    message: str
    path: Path | None = None
    hint: str | None = None


@dataclass(frozen=True, slots=True)
class SharedConfig:
    """Paths (relative to a release) that are links into the shared area."""

    dirs: tuple[str, ...] = ()
    files: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class StepsConfig:
    """Shell commands for each preparation step. None means "nothing to do"."""

    install: str | None = None
    migrate: str | None = None
    warm: str | None = None
    precheck: str | None = None
    reload: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class HealthConfig:
    url: str | None = None
    window: float = DEFAULT_HEALTH_WINDOW
    interval: float = DEFAULT_HEALTH_INTERVAL
    successes: int = DEFAULT_HEALTH_SUCCESSES
    timeout: float = DEFAULT_PROBE_TIMEOUT
    maintenance: bool = True
    maintenance_flag: str = "maintenance.flag"


@dataclass(frozen=True, slots=True)
class TimeoutsConfig:
    fetch: float = DEFAULT_FETCH_TIMEOUT
    install: float = DEFAULT_INSTALL_TIMEOUT
    migrate: float = DEFAULT_MIGRATE_TIMEOUT
    warm: float = DEFAULT_WARM_TIMEOUT
    precheck: float = DEFAULT_PRECHECK_TIMEOUT
    reload: float = DEFAULT_RELOAD_TIMEOUT


@dataclass(frozen=True, slots=True)
class ChannelConfig:
    """How step commands reach the application host."""

    kind: ChannelKind = "local"
    host: str | None = None
    port: int | None = None
    identity: str | None = None
    connect_timeout: float = 10.0


@dataclass(frozen=True, slots=True)
class EnvironmentConfig:
    """One deployment target (e.g. staging, production)."""

    name: str
    root: Path
    keep: int = DEFAULT_KEEP
    fetch_attempts: int = DEFAULT_FETCH_ATTEMPTS
    # Leading path components dropped from archive members
    strip_components: int = 0
    prune_after_deploy: bool = True
    shared: SharedConfig = field(default_factory=SharedConfig)
    steps: StepsConfig = field(default_factory=StepsConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)

    @property
    def maintenance_flag_path(self) -> Path:
        return self.root / self.health.maintenance_flag

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, object], *, base_dir: Path) -> EnvironmentConfig:
        """Create an environment from its TOML table.

        Raises:
            ValueError: On missing or out-of-range values.
        """
        root_str = get_str(data, "root")
        if root_str is None:
            raise ValueError(f"environment '{name}' has no root")
        root = Path(root_str).expanduser()
        if not root.is_absolute():
            root = base_dir / root

        keep = _count(data, "keep", DEFAULT_KEEP, where=name)
        fetch_attempts = _count(data, "fetch_attempts", DEFAULT_FETCH_ATTEMPTS, where=name)
        strip_components = _count(data, "strip_components", 0, where=name, minimum=0)

        prune = get_bool(data, "prune_after_deploy")

        shared: StrDict = get_table(data, "shared") or {}
        steps: StrDict = get_table(data, "steps") or {}
        health: StrDict = get_table(data, "health") or {}
        timeouts: StrDict = get_table(data, "timeouts") or {}
        channel: StrDict = get_table(data, "channel") or {}

        health_where = f"{name}.health"
        health_cfg = HealthConfig(
            url=get_str(health, "url"),
            window=_seconds(health, "window", DEFAULT_HEALTH_WINDOW, where=health_where),
            interval=_seconds(health, "interval", DEFAULT_HEALTH_INTERVAL, where=health_where),
            successes=_count(health, "successes", DEFAULT_HEALTH_SUCCESSES, where=health_where),
            timeout=_seconds(health, "timeout", DEFAULT_PROBE_TIMEOUT, where=health_where),
            maintenance=_bool_or(get_bool(health, "maintenance"), True),
            maintenance_flag=get_str(health, "maintenance_flag") or "maintenance.flag",
        )

        kind = get_str(channel, "kind") or "local"
        if kind not in ("local", "ssh"):
            raise ValueError(f"environment '{name}': unknown channel kind '{kind}'")
        port = get_int(channel, "port")
        if port is not None and not 0 < port < 65536:
            raise ValueError(f"environment '{name}': channel.port out of range (got {port})")
        channel_cfg = ChannelConfig(
            kind="ssh" if kind == "ssh" else "local",
            host=get_str(channel, "host"),
            port=port,
            identity=get_str(channel, "identity"),
            connect_timeout=_seconds(channel, "connect_timeout", 10.0, where=f"{name}.channel"),
        )
        if channel_cfg.kind == "ssh" and channel_cfg.host is None:
            raise ValueError(f"environment '{name}': ssh channel requires a host")

        timeouts_where = f"{name}.timeouts"
        return cls(
            name=name,
            root=root,
            keep=keep,
            fetch_attempts=fetch_attempts,
            strip_components=strip_components,
            prune_after_deploy=_bool_or(prune, True),
            shared=SharedConfig(
                dirs=get_str_list(shared, "dirs") or (),
                files=get_str_list(shared, "files") or (),
            ),
            steps=StepsConfig(
                install=get_str(steps, "install"),
                migrate=get_str(steps, "migrate"),
                warm=get_str(steps, "warm"),
                precheck=get_str(steps, "precheck"),
                reload=get_str_list(steps, "reload") or (),
            ),
            health=health_cfg,
            timeouts=TimeoutsConfig(
                fetch=_seconds(timeouts, "fetch", DEFAULT_FETCH_TIMEOUT, where=timeouts_where),
                install=_seconds(timeouts, "install", DEFAULT_INSTALL_TIMEOUT, where=timeouts_where),
                migrate=_seconds(timeouts, "migrate", DEFAULT_MIGRATE_TIMEOUT, where=timeouts_where),
                warm=_seconds(timeouts, "warm", DEFAULT_WARM_TIMEOUT, where=timeouts_where),
                precheck=_seconds(timeouts, "precheck", DEFAULT_PRECHECK_TIMEOUT, where=timeouts_where),
                reload=_seconds(timeouts, "reload", DEFAULT_RELOAD_TIMEOUT, where=timeouts_where),
            ),
            channel=channel_cfg,
        )


def _bool_or(value: bool | None, default: bool) -> bool:
    return default if value is None else value


def _count(table: Mapping[str, object], key: str, default: int, *, where: str, minimum: int = 1) -> int:
    """Integer setting; absent means ``default``, present must be >= ``minimum``."""
    if key not in table:
        return default
    value = get_int(table, key)
    if value is None:
        raise ValueError(f"'{where}': {key} must be an integer")
    if value < minimum:
        raise ValueError(f"'{where}': {key} must be >= {minimum} (got {value})")
    return value


def _seconds(table: Mapping[str, object], key: str, default: float, *, where: str) -> float:
    """Duration setting; absent means ``default``, present must be > 0."""
    if key not in table:
        return default
    value = get_float(table, key)
    if value is None:
        raise ValueError(f"'{where}': {key} must be a number of seconds")
    if value <= 0:
        raise ValueError(f"'{where}': {key} must be > 0 (got {value:g})")
    return value


@dataclass(frozen=True, slots=True)
class Config:
    """All environments declared in one config file."""

    environments: dict[str, EnvironmentConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, base_dir: Path) -> Config:
        envs: StrDict = get_table(data, "environments") or {}
        parsed: dict[str, EnvironmentConfig] = {}
        for name, table_obj in envs.items():
            table = as_str_dict(table_obj)
            if table is None:
                raise ValueError(f"environments.{name} must be a table")
            parsed[name] = EnvironmentConfig.from_dict(name, table, base_dir=base_dir)
        return cls(environments=parsed)

    def environment(self, name: str | None) -> Result[EnvironmentConfig, ConfigError]:
        """Select an environment by name.

        Without a name, the only declared environment is selected.
        """
        if not self.environments:
            return Err(ConfigError("no environments declared", hint="Add an [environments.<name>] table"))

        if name is None:
            if len(self.environments) == 1:
                return Ok(next(iter(self.environments.values())))
            names = ", ".join(sorted(self.environments))
            return Err(ConfigError("several environments declared", hint=f"Pass --env ({names})"))

        env = self.environments.get(name)
        if env is None:
            names = ", ".join(sorted(self.environments))
            return Err(ConfigError(f"unknown environment: {name}", hint=f"Available: {names}"))
        return Ok(env)


def default_config_path() -> Path:
    """Config path from $CUTOVER_CONFIG, else ./cutover.toml."""
    env_value = os.environ.get(CONFIG_ENV_VAR)
    if env_value:
        return Path(env_value).expanduser()
    return Path.cwd() / DEFAULT_CONFIG_NAME


def _parse_toml(path: Path) -> Result[StrDict, ConfigError]:
    """Parse a TOML file, handling read and parse errors."""
    import tomllib

    try:
        content = path.read_bytes()
        data_obj: object = tomllib.loads(content.decode("utf-8"))
        data = as_str_dict(data_obj)
        if data is None:
            return Err(ConfigError("Config root must be a TOML table", path=path))
        return Ok(data)
    except FileNotFoundError:
        return Err(
            ConfigError(
                f"Config file not found: {path}",
                path=path,
                hint=f"Create {DEFAULT_CONFIG_NAME} or pass --config",
            )
        )
    except PermissionError:
        return Err(ConfigError(f"Permission denied reading: {path}", path=path))
    except tomllib.TOMLDecodeError as e:
        return Err(ConfigError(f"Invalid TOML syntax: {e}", path=path))
    except UnicodeDecodeError as e:
        return Err(ConfigError(f"Error reading config: {e}", path=path))


def load_config(path: Path) -> Result[Config, ConfigError]:
    """Load and parse configuration from a TOML file.

    Relative environment roots are resolved against the config file's
    directory.

    Returns:
        Ok(Config) on success, Err(ConfigError) on failure
    """
    result = _parse_toml(path)
    if isinstance(result, Err):
        return result

    try:
        config = Config.from_dict(result.value, base_dir=path.parent.resolve())
        return Ok(config)
    except (KeyError, TypeError, ValueError) as e:
        return Err(ConfigError(f"Invalid config structure: {e}", path=path))
