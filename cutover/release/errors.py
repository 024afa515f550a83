"""Error payloads for release and deployment operations.

All of them share the same fields so the CLI can report any terminal state
the same way: which release, which step, what happened, and which release is
serving traffic afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class DeployFailure:
    message: str
    release_id: str | None = None
    step: str | None = None
    hint: str | None = None
    # Release serving traffic once the failure has been handled
    active: str | None = None


@dataclass(frozen=True, slots=True)
class TransferError(DeployFailure):
    pass


@dataclass(frozen=True, slots=True)
class DependencyError(DeployFailure):
    pass


@dataclass(frozen=True, slots=True)
class MigrationError(DeployFailure):
    pass


@dataclass(frozen=True, slots=True)
class PreparationError(DeployFailure):
    pass


@dataclass(frozen=True, slots=True)
class ConflictError(DeployFailure):
    pass


@dataclass(frozen=True, slots=True)
class NotFoundError(DeployFailure):
    pass


@dataclass(frozen=True, slots=True)
class InvalidTransition(DeployFailure):
    pass


@dataclass(frozen=True, slots=True)
class StateError(DeployFailure):
    """The registry or the pointer could not be read or written."""


@dataclass(frozen=True, slots=True)
class DeploymentInProgressError(DeployFailure):
    pass


@dataclass(frozen=True, slots=True)
class Cancelled(DeployFailure):
    pass


@dataclass(frozen=True, slots=True)
class TransportError(DeployFailure):
    pass


@dataclass(frozen=True, slots=True)
class DeploymentFailed(DeployFailure):
    """The promoted release failed after cutover and was rolled back."""


StepError = TransferError | DependencyError | MigrationError | PreparationError | TransportError | Cancelled

StoreError = ConflictError | NotFoundError | InvalidTransition | StateError

DeployError = (
    StepError
    | StoreError
    | DeploymentInProgressError
    | DeploymentFailed
)
