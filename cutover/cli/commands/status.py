"""Status command - releases, pointer and flags of an environment."""

from __future__ import annotations

import json

import typer

from cutover.cli.commands._helpers import exit_on_error
from cutover.cli.context import build_context
from cutover.output.console import Style
from cutover.release.model import Release


def _row(release: Release, active: str | None) -> list[str]:
    marker = "*" if release.id == active else ""
    return [
        marker,
        release.id,
        str(release.status),
        str(release.stage) if release.stage else "-",
        release.created_at,
        (release.checksum or "-")[:12],
        release.error or "",
    ]


def status(
    json_output: bool = typer.Option(False, "--json", help="Print machine-readable JSON"),
) -> None:
    """Show releases and the active pointer."""
    ctx = build_context()
    report = exit_on_error(ctx.service.status(), ctx)

    if json_output:
        ctx.console.raw(json.dumps(report.to_dict(), indent=2))
        return

    ctx.console.header(f"{report.env} ({report.root})")
    ctx.console.print(f"active: {report.active or 'none'}", Style.BOLD)

    if report.releases:
        rows = [_row(r, report.active) for r in reversed(report.releases)]
        ctx.console.table(
            f"releases (keep {report.keep})",
            ["", "id", "status", "stage", "created", "checksum", "error"],
            rows,
        )
    else:
        ctx.console.print("no releases yet", Style.DIM)

    if report.block is not None:
        ctx.console.error(
            f"deploys blocked by failed {report.block.step} of {report.block.release_id} "
            f"since {report.block.since}: {report.block.message}"
        )
        ctx.console.print("hint: run `cutover unblock` once the database is sound", Style.DIM)
    if report.maintenance is not None:
        ctx.console.warning(f"maintenance flag is set ({ctx.env.maintenance_flag_path})")
