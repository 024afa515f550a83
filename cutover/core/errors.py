"""Exit codes for the cutover CLI.

The values are part of the contract with the CI job that invokes cutover and
must remain stable:
- 0: release active and healthy
- 1: preparation failed, the previous release is still active
- 2: promoted release failed its health check, automatic rollback performed
- 3: transport or infrastructure failure, state indeterminate (run `status`)
- 4: usage or configuration error
"""

from enum import IntEnum

__all__ = ["ErrorCode"]


class ErrorCode(IntEnum):
    """Process exit codes."""

    OK = 0
    PREPARATION_FAILED = 1
    ROLLED_BACK = 2
    INFRA_ERROR = 3
    USER_ERROR = 4
