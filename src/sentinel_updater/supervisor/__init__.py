"""
Service supervisors for the SentinelGo updater.

Exports:
- ServiceSupervisor: Abstract base class for supervisors
- SystemdSupervisor, LaunchdSupervisor, WindowsServiceSupervisor
- create_supervisor: Factory selecting the supervisor for the host
"""

from __future__ import annotations

from sentinel_updater.errors import UnavailableError
from sentinel_updater.paths import current_platform
from sentinel_updater.supervisor.base import CommandResult, ServiceSupervisor, run_command
from sentinel_updater.supervisor.launchd import LaunchdSupervisor
from sentinel_updater.supervisor.systemd import SystemdSupervisor
from sentinel_updater.supervisor.windows import WindowsServiceSupervisor

__all__ = [
    "CommandResult",
    "LaunchdSupervisor",
    "ServiceSupervisor",
    "SystemdSupervisor",
    "WindowsServiceSupervisor",
    "create_supervisor",
    "run_command",
]

_SUPERVISORS: dict[str, type[ServiceSupervisor]] = {
    "linux": SystemdSupervisor,
    "darwin": LaunchdSupervisor,
    "windows": WindowsServiceSupervisor,
}


def create_supervisor(system: str | None = None) -> ServiceSupervisor:
    """
    Create the supervisor for a platform.

    Args:
        system: Platform name; defaults to the host platform.

    Raises:
        UnavailableError: If the platform has no supported service manager.
    """
    system = (system or current_platform()).lower()
    supervisor_cls = _SUPERVISORS.get(system)
    if supervisor_cls is None:
        raise UnavailableError(
            f"Unsupported platform: {system}",
            details={"supported": sorted(_SUPERVISORS)},
        )
    return supervisor_cls()
