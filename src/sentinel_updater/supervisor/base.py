"""
Service supervisor abstraction.

A supervisor maps the six operations the updater needs onto the host's
native service manager. Stop and uninstall are idempotent: a service that
is not registered counts as already stopped and already removed.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

from sentinel_updater.errors import UnavailableError
from sentinel_updater.logging import get_logger

logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a service manager command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined output, stderr first when both are present."""
        return (self.stderr or self.stdout).strip()


async def run_command(
    program: str,
    *args: str,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> CommandResult:
    """
    Run a service manager command.

    Args:
        program: Executable to run (e.g., "systemctl").
        *args: Arguments to pass.
        timeout: Command timeout in seconds.

    Returns:
        CommandResult with decoded output.

    Raises:
        UnavailableError: If the program is missing or times out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            program,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise UnavailableError(
            f"{program} not available",
            details={"program": program},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise UnavailableError(
            f"{program} command timed out after {timeout}s",
            details={"program": program, "args": list(args)},
        ) from exc

    return CommandResult(
        returncode=proc.returncode or 0,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )


class ServiceSupervisor(ABC):
    """
    Abstract base class for OS service supervisors.

    Concrete implementations:
    - SystemdSupervisor: Linux (systemctl + unit files)
    - LaunchdSupervisor: macOS (launchctl + plists)
    - WindowsServiceSupervisor: Windows (sc.exe)
    """

    platform_name: str = ""

    @abstractmethod
    async def stop(self, name: str) -> None:
        """
        Stop the service.

        A service that is not registered is treated as stopped.

        Raises:
            ServiceOperationError: If the stop command fails.
        """

    @abstractmethod
    async def uninstall(self, name: str) -> None:
        """
        Remove the service registration.

        A service that is not registered is treated as removed.

        Raises:
            ServiceOperationError: If removal fails.
        """

    @abstractmethod
    async def install(self, name: str, binary_path: str) -> None:
        """
        Register the service to run ``binary_path``.

        Raises:
            ServiceOperationError: If registration fails.
        """

    @abstractmethod
    async def start(self, name: str) -> None:
        """
        Start the service.

        Raises:
            ServiceNotFoundError: If the service is not registered.
            ServiceOperationError: If the start command fails.
        """

    @abstractmethod
    async def is_running(self, name: str) -> bool:
        """Check whether the service is currently running."""

    @abstractmethod
    async def get_service_binary_path(self, name: str) -> str:
        """
        Return the executable path registered for the service.

        Raises:
            ServiceNotFoundError: If no registration exists.
            ServiceOperationError: If the registration cannot be parsed.
        """

    def recovery_commands(self, name: str) -> list[str]:
        """Return the manual commands an operator runs to reinstall and start the service."""
        return [
            f"reinstall the {name} service with the platform service manager",
            f"start the {name} service",
        ]
