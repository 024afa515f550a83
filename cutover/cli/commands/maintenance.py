"""Maintenance-related commands: prune, maintenance flag, unblock."""

from __future__ import annotations

from enum import StrEnum

import typer

from cutover.cli.commands._helpers import exit_on_error
from cutover.cli.context import build_context
from cutover.output.console import Style


class Switch(StrEnum):
    on = "on"
    off = "off"


def prune() -> None:
    """Delete retired releases beyond the retention count and failed ones."""
    ctx = build_context()
    removed = exit_on_error(ctx.service.prune(), ctx)

    if not removed:
        ctx.console.print("Nothing to prune", Style.DIM)
        return
    for release_id in removed:
        ctx.console.print(f"  {release_id}", Style.DIM)
    ctx.console.success(f"Removed {len(removed)} release(s)")


def maintenance(
    state: Switch = typer.Argument(..., help="on|off"),
) -> None:
    """Raise or clear the maintenance flag."""
    ctx = build_context()
    changed = exit_on_error(ctx.service.maintenance(on=state is Switch.on), ctx)

    path = ctx.env.maintenance_flag_path
    if not changed:
        ctx.console.print(f"maintenance already {state} ({path})", Style.DIM)
        return
    ctx.console.success(f"maintenance {state} ({path})")


def unblock() -> None:
    """Allow deploys again after a failed migration."""
    ctx = build_context()
    cleared = exit_on_error(ctx.service.unblock(), ctx)

    if cleared is None:
        ctx.console.print("environment is not blocked", Style.DIM)
        return
    ctx.console.success(f"unblocked (failed {cleared.step} of {cleared.release_id} since {cleared.since})")
