"""Rollback command - point current back at an earlier release."""

from __future__ import annotations

import typer

from cutover.cli.commands._helpers import exit_on_error
from cutover.cli.context import build_context
from cutover.output.console import Style


def rollback(
    release_id: str | None = typer.Argument(
        None, help="Release to restore (default: the newest retired one)", show_default=False
    ),
) -> None:
    """Restore a retired release."""
    ctx = build_context()
    report = exit_on_error(ctx.service.rollback(release_id), ctx)

    ctx.console.success(f"{report.promotion.current} is active on {ctx.env.name}")
    if report.promotion.previous:
        ctx.console.print(f"replaced: {report.promotion.previous}", Style.DIM)
