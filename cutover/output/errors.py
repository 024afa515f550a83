"""Error presentation utilities.

Centralized error formatting and exit code mapping for consistent UX.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from cutover.core.config import ConfigError
from cutover.core.errors import ErrorCode
from cutover.output.console import Style
from cutover.release.errors import (
    Cancelled,
    ConflictError,
    DependencyError,
    DeployError,
    DeploymentFailed,
    DeploymentInProgressError,
    InvalidTransition,
    MigrationError,
    NotFoundError,
    PreparationError,
    StateError,
    TransferError,
    TransportError,
)

if TYPE_CHECKING:
    from cutover.output.console import ConsoleProtocol

__all__ = ["deploy_error_exit_code", "print_config_error", "print_deploy_error"]


def print_deploy_error(error: DeployError, console: ConsoleProtocol) -> None:
    """Print a deployment error: what failed, where, and what serves traffic now."""
    where = f"[{error.step}] " if error.step else ""
    match error:
        case DeploymentFailed():
            console.error(f"{where}{error.message}")
            console.print("automatic rollback performed", Style.WARNING)
        case TransportError() | StateError():
            console.error(f"{where}{error.message}")
            console.print("state may be inconsistent; run `cutover status`", Style.WARNING)
        case DeploymentInProgressError() | Cancelled():
            console.warning(error.message)
        case _:
            console.error(f"{where}{error.message}")

    if error.release_id and error.release_id not in error.message:
        console.print(f"release: {error.release_id}", Style.DIM)
    if not isinstance(error, NotFoundError | InvalidTransition | ConflictError):
        console.print(f"active: {error.active or 'none'}", Style.DIM)
    if error.hint:
        console.print(f"hint: {error.hint}", Style.DIM)


def print_config_error(error: ConfigError, console: ConsoleProtocol) -> None:
    if error.path is not None and str(error.path) not in error.message:
        console.error(f"{error.message} ({error.path})")
    else:
        console.error(error.message)
    if error.hint:
        console.print(f"hint: {error.hint}", Style.DIM)


def deploy_error_exit_code(error: DeployError | ConfigError) -> int:
    """Get exit code for a deployment error."""
    match error:
        case TransferError() | DependencyError() | MigrationError() | PreparationError():
            return int(ErrorCode.PREPARATION_FAILED)
        case DeploymentInProgressError() | Cancelled():
            return int(ErrorCode.PREPARATION_FAILED)
        case DeploymentFailed():
            return int(ErrorCode.ROLLED_BACK)
        case TransportError() | StateError() | ConflictError():
            return int(ErrorCode.INFRA_ERROR)
        case NotFoundError() | InvalidTransition() | ConfigError():
            return int(ErrorCode.USER_ERROR)
    # Fallback for exhaustiveness
    return int(ErrorCode.INFRA_ERROR)
