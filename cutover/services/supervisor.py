"""Process reloads after the pointer moves.

PHP-FPM and friends cache resolved paths, so after every promotion or rollback
the configured ``reload`` commands run in order, from the environment root.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from cutover.core.config import EnvironmentConfig
from cutover.core.result import Err, Ok, Result
from cutover.services.channel import Channel, ChannelError

__all__ = ["ReloadError", "Supervisor"]

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ReloadError:
    command: str
    error: ChannelError

    @property
    def transport(self) -> bool:
        return self.error.transport

    def __str__(self) -> str:
        return f"reload failed: {self.error}"


class Supervisor:
    def __init__(self, *, env: EnvironmentConfig, channel: Channel) -> None:
        self._env = env
        self._channel = channel

    @property
    def commands(self) -> tuple[str, ...]:
        return self._env.steps.reload

    def reload(self, *, reason: str) -> Result[int, ReloadError]:
        """Run every reload command; stop at the first failure.

        Returns:
            Ok with the number of commands run, or Err with the failing one
        """
        for command in self.commands:
            ran = self._channel.run(
                command,
                cwd=self._env.root,
                timeout=self._env.timeouts.reload,
                env={"CUTOVER_ENV": self._env.name},
            )
            if isinstance(ran, Err):
                logger.error("reload_failed", command=command, reason=reason, error=str(ran.error))
                return Err(ReloadError(command=command, error=ran.error))
            logger.info("reloaded", command=command, reason=reason)
        return Ok(len(self.commands))
