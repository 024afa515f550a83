"""Deploy command - prepare an artifact and cut over to it."""

from __future__ import annotations

import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from types import FrameType

import typer

from cutover.cli.commands._helpers import exit_on_error
from cutover.cli.context import build_context
from cutover.output.console import ConsoleProtocol, Style


@contextmanager
def cancel_on_signals(cancel: threading.Event, console: ConsoleProtocol) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request for the running deploy.

    The current step finishes; the deploy stops at the next checkpoint and the
    previous release keeps serving.
    """

    def handler(signum: int, _frame: FrameType | None) -> None:
        if not cancel.is_set():
            console.warning(f"{signal.Signals(signum).name} received, stopping at the next step")
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def deploy(
    artifact: str = typer.Argument(..., help="Directory, .tar.gz/.tar.xz/.zip archive or http(s) URL"),
    sha256: str | None = typer.Option(
        None, "--sha256", help="Expected SHA-256 of the artifact", show_default=False
    ),
) -> None:
    """Deploy a new release with automatic rollback on failure."""
    ctx = build_context()
    cancel = threading.Event()

    ctx.console.header(f"Deploying to {ctx.env.name}")
    with cancel_on_signals(cancel, ctx.console):
        result = ctx.service.deploy(artifact, sha256=sha256, cancel=cancel)
    report = exit_on_error(result, ctx)

    ctx.console.success(f"{report.release.id} is active on {ctx.env.name}")
    if report.previous:
        ctx.console.print(f"previous: {report.previous}", Style.DIM)
    if report.probe.skipped:
        ctx.console.warning(report.probe.describe())
    else:
        ctx.console.print(f"health: {report.probe.describe()}", Style.DIM)
    if report.probe.maintenance_error:
        ctx.console.warning(report.probe.maintenance_error)
    if report.pruned:
        ctx.console.print(f"pruned: {', '.join(report.pruned)}", Style.DIM)
