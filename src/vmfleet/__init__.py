"""vmfleet — ephemeral Multipass build agents, one task per VM."""

from vmfleet.agent import AgentLifecycle, AgentRecord, ConnectionState
from vmfleet.backend.client import MultipassClient
from vmfleet.config import FleetConfig
from vmfleet.controller import FleetController, PlannedAgent, ProvisionRequest
from vmfleet.launcher import BootstrapLauncher
from vmfleet.template import AgentTemplate

__all__ = [
    "AgentLifecycle",
    "AgentRecord",
    "AgentTemplate",
    "BootstrapLauncher",
    "ConnectionState",
    "FleetConfig",
    "FleetController",
    "MultipassClient",
    "PlannedAgent",
    "ProvisionRequest",
]
