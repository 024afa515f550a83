"""Subprocess execution with Result-based error handling.

Every command cutover runs (step commands, ssh, reload hooks) goes through
:func:`run`, which always carries a timeout and returns a structured error
instead of raising.

Usage:
    result = run(["sh", "-c", "composer install"], cwd=workspace, timeout=900)
    match result:
        case Ok(stdout):
            ...
        case Err(error) if error.timed_out:
            ...
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from cutover.core.result import Err, Ok, Result

__all__ = ["ProcessError", "run", "TIMEOUT_RETURNCODE", "LAUNCH_RETURNCODE"]

# Sentinel return codes for failures where the process never exited normally
TIMEOUT_RETURNCODE = -1
LAUNCH_RETURNCODE = -2


@dataclass(frozen=True, slots=True)
class ProcessError:
    """Error from a failed subprocess execution.

    Attributes:
        command: The command that was executed.
        returncode: Exit code, or one of the sentinel codes above.
        stdout: Standard output (may be empty).
        stderr: Standard error (contains error details).
    """

    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def timed_out(self) -> bool:
        return self.returncode == TIMEOUT_RETURNCODE

    @property
    def not_launched(self) -> bool:
        """True when the executable could not be started at all."""
        return self.returncode == LAUNCH_RETURNCODE

    def tail(self, lines: int = 5) -> str:
        """Last lines of stderr (or stdout), for error messages."""
        text = (self.stderr or self.stdout).strip()
        return "\n".join(text.splitlines()[-lines:])

    def __str__(self) -> str:
        cmd_str = " ".join(self.command[:3])
        if len(self.command) > 3:
            cmd_str += " ..."
        if self.timed_out:
            return f"{cmd_str} timed out"
        return f"{cmd_str} failed (exit {self.returncode})"


def _text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def run(
    cmd: list[str],
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    *,
    timeout: float,
) -> Result[str, ProcessError]:
    """Execute a command and return stdout or error.

    Args:
        cmd: Command and arguments to execute.
        cwd: Working directory (None keeps the current one).
        env: Environment variables (uses current env if None).
        timeout: Maximum seconds to wait. Exceeding it kills the process and
            counts as a failure.

    Returns:
        Ok(stdout) on success, Err(ProcessError) on failure.
    """
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        return Err(
            ProcessError(
                command=tuple(cmd),
                returncode=TIMEOUT_RETURNCODE,
                stdout=_text(e.stdout),
                stderr=f"Command timed out after {timeout}s",
            )
        )
    except OSError as e:
        return Err(
            ProcessError(
                command=tuple(cmd),
                returncode=LAUNCH_RETURNCODE,
                stdout="",
                stderr=str(e),
            )
        )

    if proc.returncode != 0:
        return Err(
            ProcessError(
                command=tuple(cmd),
                returncode=proc.returncode,
                stdout=proc.stdout,
                stderr=proc.stderr,
            )
        )

    return Ok(proc.stdout)
