"""Drivers for the external agent process behind an orchestration."""

from remote_orchestrator.drivers.acp_driver import AcpDriver, AgentAuthenticationError
from remote_orchestrator.drivers.base import AgentDriver, terminate_process_tree
from remote_orchestrator.drivers.cli_driver import CliDriver
from remote_orchestrator.drivers.registry import (
    create_driver,
    get_available_drivers,
    get_driver_config,
    is_driver_available,
    resolve_driver_name,
)

__all__ = [
    "AcpDriver",
    "AgentAuthenticationError",
    "AgentDriver",
    "CliDriver",
    "create_driver",
    "get_available_drivers",
    "get_driver_config",
    "is_driver_available",
    "resolve_driver_name",
    "terminate_process_tree",
]
