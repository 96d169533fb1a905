"""
Sandbox supervision for the openclaw gateway.

This package keeps a single gateway instance configured and running inside
an ephemeral container:

- restores durable state from the R2 mount when the backup is newer
- reconciles clawdbot.json with the container environment
- detects which CLI shape the installed openclaw binary supports
- launches the gateway on cold boot or lazily from an inbound webhook

Usage:
    from gateway import GatewaySupervisor, load_settings

    supervisor = GatewaySupervisor(load_settings())
    outcome = await supervisor.ensure_running()
"""

from gateway.settings import SandboxSettings, load_settings
from gateway.supervisor import GatewaySupervisor, SupervisorOutcome, SupervisorState

__all__ = [
    "GatewaySupervisor",
    "SandboxSettings",
    "SupervisorOutcome",
    "SupervisorState",
    "load_settings",
]
