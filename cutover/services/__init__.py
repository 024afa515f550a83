"""Deployment services.

Services coordinate the release store (release/) with the outside world:
artifacts, command channels, health probes and process reloads.
"""

from cutover.services.deploy import DeployReport, DeployService, RollbackReport, StatusReport
from cutover.services.health import HealthGate, MaintenanceFlag, ProbeReport
from cutover.services.sequencer import DeploymentSequencer
from cutover.services.supervisor import Supervisor

__all__ = [
    # Reports
    "DeployReport",
    "ProbeReport",
    "RollbackReport",
    "StatusReport",
    # Services
    "DeployService",
    "DeploymentSequencer",
    "HealthGate",
    "MaintenanceFlag",
    "Supervisor",
]
