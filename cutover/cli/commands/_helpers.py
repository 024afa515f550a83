"""Shared helpers for CLI commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

import typer

from cutover.core.result import Err, Result
from cutover.output.errors import deploy_error_exit_code, print_deploy_error
from cutover.release.errors import DeployFailure

if TYPE_CHECKING:
    from cutover.cli.context import CLIContext


def exit_on_error[T, E: DeployFailure](result: Result[T, E], ctx: CLIContext) -> T:
    """Return the value of an Ok result, or report the error and exit.

    This helper reduces boilerplate for the common pattern:
        match result:
            case Err(e):
                print_deploy_error(e, ctx.console)
                raise typer.Exit(code=deploy_error_exit_code(e))
            case Ok(value):
                ...
    """
    if isinstance(result, Err):
        error = result.error
        print_deploy_error(error, ctx.console)  # pyright: ignore[reportArgumentType]
        raise typer.Exit(code=deploy_error_exit_code(error))  # pyright: ignore[reportArgumentType]
    return result.value
