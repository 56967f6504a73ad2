"""
Windows Service Control Manager supervisor (sc.exe).
"""

from __future__ import annotations

import os

from sentinel_updater.errors import ServiceNotFoundError, ServiceOperationError, UpdaterError
from sentinel_updater.logging import get_logger
from sentinel_updater.supervisor.base import CommandResult, ServiceSupervisor, run_command

logger = get_logger(__name__)

# ERROR_SERVICE_DOES_NOT_EXIST
_ERROR_SERVICE_DOES_NOT_EXIST = "1060"

SYSTEM_ENVIRONMENT_KEY = (
    "HKLM\\SYSTEM\\CurrentControlSet\\Control\\Session Manager\\Environment"
)


def extract_image_path(image_path: str) -> str:
    """
    Extract the executable from a service ImagePath.

    Handles:
    - "C:\\Program Files\\SentinelGo\\sentinel.exe" arg1
    - C:\\SentinelGo\\sentinel.exe arg1
    - \\\\server\\share\\sentinel.exe arg1 (UNC, may contain spaces)

    Returns:
        The executable path, or "" if empty.
    """
    value = image_path.strip()
    if not value:
        return ""

    if value.startswith('"'):
        end = value.find('"', 1)
        if end > 1:
            return value[1:end]
        return value[1:]

    if value.startswith("\\\\"):
        exe_index = value.lower().find(".exe")
        if exe_index > 0:
            rest = value[exe_index + 4 :]
            if not rest or rest[0] == " ":
                return value[: exe_index + 4]

    parts = value.split()
    return parts[0] if parts else value


def parse_qc_output(output: str) -> str | None:
    """Return the executable from `sc.exe qc` output, if present."""
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("BINARY_PATH_NAME"):
            _, sep, value = line.partition(":")
            if sep:
                path = extract_image_path(value)
                if path:
                    return path
    return None


def parse_query_running(output: str) -> bool:
    """Check the STATE line of `sc.exe query` output for RUNNING."""
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("STATE"):
            return "RUNNING" in line
    return False


def _is_not_found(result: CommandResult) -> bool:
    output = f"{result.stdout}\n{result.stderr}".lower()
    return (
        _ERROR_SERVICE_DOES_NOT_EXIST in output
        or "does not exist" in output
        or result.returncode == int(_ERROR_SERVICE_DOES_NOT_EXIST)
    )


class WindowsServiceSupervisor(ServiceSupervisor):
    """Manages the agent through the Service Control Manager."""

    platform_name = "windows"

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    async def _sc(self, *args: str) -> CommandResult:
        return await run_command("sc.exe", *args, timeout=self._timeout)

    async def stop(self, name: str) -> None:
        logger.info(f"Stopping service: {name}")
        result = await self._sc("stop", name)

        if result.ok:
            return
        if _is_not_found(result):
            logger.info(f"Service {name} not registered, nothing to stop")
            return

        raise ServiceOperationError(
            f"Failed to stop service {name}: {result.output}",
            details={"service": name, "returncode": result.returncode},
        )

    async def uninstall(self, name: str) -> None:
        logger.info(f"Uninstalling service: {name}")
        result = await self._sc("delete", name)

        if result.ok:
            return
        if _is_not_found(result):
            logger.info(f"Service {name} not registered, nothing to uninstall")
            return

        raise ServiceOperationError(
            f"Failed to delete service {name}: {result.output}",
            details={"service": name, "returncode": result.returncode},
        )

    async def install(self, name: str, binary_path: str) -> None:
        logger.info(f"Installing service: {name}", extra={"binary_path": binary_path})

        result = await self._sc(
            "create",
            name,
            "binPath=",
            f'"{binary_path}"',
            "start=",
            "auto",
            "DisplayName=",
            "SentinelGo Agent",
        )
        if not result.ok:
            raise ServiceOperationError(
                f"Failed to create service {name}: {result.output}",
                details={"service": name, "returncode": result.returncode},
            )

        # The service process needs the system PATH to find the toolchain
        system_path = await self._get_system_path()
        if system_path:
            await self._set_service_path(name, system_path)

        failure_result = await self._sc(
            "failure",
            name,
            "reset=",
            "86400",
            "actions=",
            "restart/60000/restart/60000/restart/60000",
        )
        if not failure_result.ok:
            logger.warning(
                "Failed to configure service failure actions",
                extra={"service": name, "output": failure_result.output},
            )

    async def start(self, name: str) -> None:
        logger.info(f"Starting service: {name}")
        result = await self._sc("start", name)

        if result.ok:
            return
        if _is_not_found(result):
            raise ServiceNotFoundError(name)

        raise ServiceOperationError(
            f"Failed to start service {name}: {result.output}",
            details={"service": name, "returncode": result.returncode},
        )

    async def is_running(self, name: str) -> bool:
        result = await self._sc("query", name)
        if not result.ok:
            return False
        return parse_query_running(result.stdout)

    async def get_service_binary_path(self, name: str) -> str:
        result = await self._sc("qc", name)
        if not result.ok:
            if _is_not_found(result):
                raise ServiceNotFoundError(name)
            raise ServiceOperationError(
                f"Failed to query service {name}: {result.output}",
                details={"service": name, "returncode": result.returncode},
            )

        path = parse_qc_output(result.stdout)
        if not path:
            raise ServiceOperationError(
                f"BINARY_PATH_NAME not found for service {name}",
                details={"service": name},
            )
        return path

    def recovery_commands(self, name: str) -> list[str]:
        return [
            f'sc.exe create {name} binPath= "<binary path>" start= auto',
            f"sc.exe start {name}",
        ]

    async def _set_service_path(self, name: str, system_path: str) -> None:
        try:
            result = await run_command(
                "reg.exe",
                "add",
                f"HKLM\\SYSTEM\\CurrentControlSet\\Services\\{name}",
                "/v",
                "Environment",
                "/t",
                "REG_MULTI_SZ",
                "/d",
                f"PATH={system_path}",
                "/f",
                timeout=self._timeout,
            )
        except UpdaterError as e:
            logger.warning(
                "Failed to set service environment PATH",
                extra={"service": name, "error": e.message},
            )
            return

        if not result.ok:
            logger.warning(
                "Failed to set service environment PATH",
                extra={"service": name, "output": result.output},
            )

    async def _get_system_path(self) -> str:
        """Read the machine PATH from the registry, falling back to the process PATH."""
        try:
            result = await run_command(
                "reg.exe",
                "query",
                SYSTEM_ENVIRONMENT_KEY,
                "/v",
                "Path",
                timeout=self._timeout,
            )
        except UpdaterError as e:
            logger.debug("Registry PATH query failed", extra={"error": str(e)})
            return os.environ.get("PATH", "")

        if result.ok:
            for line in result.stdout.splitlines():
                line = line.strip()
                if line.startswith("Path") and "REG_" in line:
                    parts = line.split()
                    if len(parts) >= 3:
                        return " ".join(parts[2:])

        return os.environ.get("PATH", "")
