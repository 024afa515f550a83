"""Command channels: where step commands run.

This module provides:
- Channel: Protocol for running a shell command in a release directory
- LocalChannel: ``sh -c`` on this host
- SshChannel: the same command on a remote host through ``ssh``
- MockChannel: scripted responses for tests

A ChannelError distinguishes a failing command from a broken channel
(``transport=True``): ssh exiting 255, or the launcher not starting at all.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from cutover.core.config import ChannelConfig
from cutover.core.result import Err, Ok, Result
from cutover.platform.process import ProcessError, run

__all__ = [
    "Channel",
    "ChannelError",
    "LocalChannel",
    "MockChannel",
    "SshChannel",
    "channel_for",
]

SSH_CONNECTION_FAILED = 255


@dataclass(frozen=True, slots=True)
class ChannelError:
    """A command did not succeed.

    Attributes:
        command: The shell command that was requested
        message: Human-readable summary
        output: Tail of the command's stderr/stdout
        transport: The channel itself failed, not the command
        timed_out: The command exceeded its timeout
    """

    command: str
    message: str
    output: str = ""
    transport: bool = False
    timed_out: bool = False

    def __str__(self) -> str:
        if self.output:
            return f"{self.message}: {self.output}"
        return self.message


@runtime_checkable
class Channel(Protocol):
    """Protocol for running step commands."""

    @property
    def name(self) -> str: ...

    def run(
        self,
        command: str,
        *,
        cwd: Path,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> Result[str, ChannelError]:
        """Run ``command`` through a shell in ``cwd``.

        Returns:
            Ok with stdout, or Err with ChannelError
        """
        ...


def _from_process_error(command: str, error: ProcessError, *, transport: bool) -> ChannelError:
    if error.timed_out:
        return ChannelError(command=command, message=f"timed out: {command}", timed_out=True)
    if transport:
        return ChannelError(
            command=command,
            message=f"channel failure running: {command}",
            output=error.tail(),
            transport=True,
        )
    return ChannelError(
        command=command,
        message=f"`{command}` exited with {error.returncode}",
        output=error.tail(),
    )


class LocalChannel:
    """Run commands with ``sh -c`` on this host."""

    name = "local"

    def run(
        self,
        command: str,
        *,
        cwd: Path,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> Result[str, ChannelError]:
        full_env = {**os.environ, **(env or {})}
        result = run(["sh", "-c", command], cwd=cwd, env=full_env, timeout=timeout)
        if isinstance(result, Err):
            return Err(_from_process_error(command, result.error, transport=result.error.not_launched))
        return Ok(result.value)


class SshChannel:
    """Run commands on a remote host that sees the same release paths.

    ssh exits with 255 when the connection itself fails; any other non-zero
    code belongs to the remote command.
    """

    def __init__(
        self,
        host: str,
        *,
        port: int | None = None,
        identity: str | None = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._identity = identity
        self._connect_timeout = connect_timeout

    @property
    def name(self) -> str:
        return f"ssh:{self._host}"

    def argv(self, command: str, *, cwd: Path, env: dict[str, str] | None = None) -> list[str]:
        assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in sorted((env or {}).items()))
        remote = f"cd {shlex.quote(str(cwd))} && "
        if assignments:
            remote += f"env {assignments} "
        remote += f"sh -c {shlex.quote(command)}"

        argv = [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={max(1, int(self._connect_timeout))}",
        ]
        if self._port is not None:
            argv += ["-p", str(self._port)]
        if self._identity is not None:
            argv += ["-i", self._identity]
        argv += [self._host, remote]
        return argv

    def run(
        self,
        command: str,
        *,
        cwd: Path,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> Result[str, ChannelError]:
        result = run(self.argv(command, cwd=cwd, env=env), timeout=timeout)
        if isinstance(result, Err):
            error = result.error
            transport = error.not_launched or error.returncode == SSH_CONNECTION_FAILED
            return Err(_from_process_error(command, error, transport=transport))
        return Ok(result.value)


def channel_for(config: ChannelConfig) -> Channel:
    if config.kind == "ssh":
        assert config.host is not None
        return SshChannel(
            config.host,
            port=config.port,
            identity=config.identity,
            connect_timeout=config.connect_timeout,
        )
    return LocalChannel()


@dataclass(frozen=True, slots=True)
class ChannelCall:
    command: str
    cwd: Path
    timeout: float
    env: dict[str, str]


def _empty_calls() -> list[ChannelCall]:
    return []


def _empty_responses() -> dict[str, str | ChannelError]:
    return {}


@dataclass
class MockChannel:
    """Channel returning scripted responses.

    Responses are matched by substring of the command; unmatched commands
    succeed with empty output.

    Usage:
        channel = MockChannel()
        channel.fail("migrate", ChannelError(command="migrate", message="boom"))
        channel.run("php bin/console migrate", cwd=path, timeout=5)  # -> Err
    """

    calls: list[ChannelCall] = field(default_factory=_empty_calls)
    responses: dict[str, str | ChannelError] = field(default_factory=_empty_responses)
    name: str = "mock"

    def succeed(self, pattern: str, output: str = "") -> None:
        self.responses[pattern] = output

    def fail(self, pattern: str, error: ChannelError | None = None) -> None:
        self.responses[pattern] = error or ChannelError(command=pattern, message=f"`{pattern}` failed")

    def run(
        self,
        command: str,
        *,
        cwd: Path,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> Result[str, ChannelError]:
        self.calls.append(ChannelCall(command=command, cwd=cwd, timeout=timeout, env=dict(env or {})))
        for pattern, response in self.responses.items():
            if pattern in command:
                if isinstance(response, ChannelError):
                    return Err(response)
                return Ok(response)
        return Ok("")

    @property
    def commands(self) -> list[str]:
        return [c.command for c in self.calls]
