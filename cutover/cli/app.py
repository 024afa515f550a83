from __future__ import annotations

import os
from pathlib import Path

import typer

from cutover import __version__
from cutover.cli.commands.deploy import deploy
from cutover.cli.commands.maintenance import maintenance, prune, unblock
from cutover.cli.commands.rollback import rollback
from cutover.cli.commands.status import status
from cutover.cli.context import ENVIRONMENT_ENV_VAR
from cutover.core.config import CONFIG_ENV_VAR
from cutover.core.errors import ErrorCode
from cutover.core.logging import configure_logging


app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# Commands
app.command()(deploy)
app.command()(rollback)
app.command()(status)
app.command()(prune)
app.command()(maintenance)
app.command()(unblock)


@app.callback(invoke_without_command=True)
def _main(  # pyright: ignore[reportUnusedFunction]
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    config: Path | None = typer.Option(
        None,
        "--config",
        help=f"Config file (default: ${CONFIG_ENV_VAR} or ./cutover.toml)",
        show_default=False,
    ),
    env: str | None = typer.Option(
        None,
        "--env",
        help="Environment to operate on (required when several are declared)",
        show_default=False,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug events."),
    log_json: bool = typer.Option(False, "--log-json", help="Log JSON lines on stderr."),
) -> None:
    if version:
        typer.echo(__version__)
        raise typer.Exit(code=0)
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=0)

    configure_logging(verbose=verbose, json=log_json)

    if config is not None:
        path = config.expanduser()
        if not path.is_file():
            typer.echo(f"error: --config '{path}' is not a file", err=True)
            raise typer.Exit(code=int(ErrorCode.USER_ERROR))
        os.environ[CONFIG_ENV_VAR] = str(path.resolve())

    if env is not None:
        os.environ[ENVIRONMENT_ENV_VAR] = env


def main() -> None:
    app()
