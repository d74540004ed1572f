"""Driver lookup and availability checking."""

from __future__ import annotations

import shutil

from remote_orchestrator.config import DRIVERS, DriverConfig, OrchestratorConfig
from remote_orchestrator.drivers.acp_driver import AcpDriver
from remote_orchestrator.drivers.base import AgentDriver
from remote_orchestrator.drivers.cli_driver import CliDriver
from remote_orchestrator.errors import InvalidArgumentError

_DRIVER_CLASSES: dict[str, type[AgentDriver]] = {
    "claude-cli": CliDriver,
    "claude-code-acp": AcpDriver,
}

# Map common short names to driver IDs for user override resolution.
_DRIVER_ALIASES: dict[str, str] = {
    "claude": "claude-cli",
    "cli": "claude-cli",
    "claude-cli": "claude-cli",
    "acp": "claude-code-acp",
    "claude-code-acp": "claude-code-acp",
}


def get_available_drivers() -> list[DriverConfig]:
    """Return drivers whose commands are found on PATH."""
    return [d for d in DRIVERS if shutil.which(d.command) is not None]


def get_driver_config(driver_id: str) -> DriverConfig | None:
    """Look up a driver by ID."""
    return next((d for d in DRIVERS if d.id == driver_id), None)


def is_driver_available(driver_id: str) -> bool:
    driver = get_driver_config(driver_id)
    return driver is not None and shutil.which(driver.command) is not None


def resolve_driver_name(name: str) -> str | None:
    """Resolve a short driver name to a canonical driver ID.

    Returns None if the name doesn't match any known driver.
    """
    return _DRIVER_ALIASES.get(name.lower().strip())


def create_driver(config: OrchestratorConfig, workspace: str) -> AgentDriver:
    """Instantiate the configured driver for one process run in ``workspace``."""
    driver_id = resolve_driver_name(config.driver) or config.driver
    driver_config = get_driver_config(driver_id)
    if driver_config is None or driver_id not in _DRIVER_CLASSES:
        raise InvalidArgumentError(f"Unknown driver: {config.driver}")
    return _DRIVER_CLASSES[driver_id](
        driver_config,
        workspace,
        max_turns=config.max_turns,
        kill_timeout=config.kill_timeout,
        system_prompt=config.system_prompt,
        subagents=config.subagents,
    )
