from __future__ import annotations

import os
from dataclasses import dataclass

import typer

from cutover.core.config import EnvironmentConfig, default_config_path, load_config
from cutover.core.errors import ErrorCode
from cutover.core.result import Err
from cutover.output.console import ConsoleProtocol, RichConsole
from cutover.output.errors import print_config_error
from cutover.services.deploy import DeployService

# Environment selected with --env (the callback stores it here)
ENVIRONMENT_ENV_VAR = "CUTOVER_ENVIRONMENT"


@dataclass(frozen=True, slots=True)
class CLIContext:
    env: EnvironmentConfig
    service: DeployService
    console: ConsoleProtocol


def build_context() -> CLIContext:
    console = RichConsole()

    config_result = load_config(default_config_path())
    if isinstance(config_result, Err):
        print_config_error(config_result.error, console)
        raise typer.Exit(code=int(ErrorCode.USER_ERROR))

    env_result = config_result.value.environment(os.environ.get(ENVIRONMENT_ENV_VAR) or None)
    if isinstance(env_result, Err):
        print_config_error(env_result.error, console)
        raise typer.Exit(code=int(ErrorCode.USER_ERROR))

    env = env_result.value
    return CLIContext(env=env, service=DeployService(env=env), console=console)
