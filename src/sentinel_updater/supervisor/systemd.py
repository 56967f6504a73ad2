"""
Systemd service supervisor for Linux.

Services are managed with systemctl; registration is a unit file written
to /etc/systemd/system. The registered binary is read back from the
unit's ExecStart directive.
"""

from __future__ import annotations

from pathlib import Path

from sentinel_updater.errors import ServiceNotFoundError, ServiceOperationError
from sentinel_updater.logging import get_logger
from sentinel_updater.supervisor.base import CommandResult, ServiceSupervisor, run_command

logger = get_logger(__name__)

DEFAULT_UNIT_DIR = Path("/etc/systemd/system")
UNIT_SEARCH_DIRS = (
    Path("/etc/systemd/system"),
    Path("/lib/systemd/system"),
    Path("/usr/lib/systemd/system"),
)

# systemctl exit status for an unknown unit
_EXIT_UNIT_NOT_FOUND = 5
_NOT_FOUND_MARKERS = ("not loaded", "not found", "does not exist", "could not be found")

UNIT_TEMPLATE = """[Unit]
Description=SentinelGo Agent
After=network.target

[Service]
Type=simple
ExecStart={binary_path}
Restart=always
RestartSec=10

[Install]
WantedBy=multi-user.target
"""


def render_unit_file(binary_path: str) -> str:
    """Render the unit file registered for the agent."""
    return UNIT_TEMPLATE.format(binary_path=binary_path)


def extract_exec_start_path(exec_start: str) -> str:
    """
    Extract the executable from an ExecStart value.

    Handles systemd command prefixes (``-@:+!``), double or single quoted
    paths, and trailing arguments.

    Returns:
        The executable path, or "" if none is present.
    """
    value = exec_start.lstrip("-@:+!").strip()
    if not value:
        return ""

    for quote in ('"', "'"):
        if value.startswith(quote):
            end = value.find(quote, 1)
            if end > 1:
                return value[1:end]

    parts = value.split()
    return parts[0] if parts else ""


def parse_unit_file(content: str) -> str | None:
    """Return the executable from the first usable ExecStart line, if any."""
    for line in content.splitlines():
        line = line.strip()
        if not line.startswith("ExecStart="):
            continue
        path = extract_exec_start_path(line[len("ExecStart=") :])
        if path:
            return path
    return None


def _is_not_found(result: CommandResult) -> bool:
    if result.returncode == _EXIT_UNIT_NOT_FOUND:
        return True
    output = result.output.lower()
    return any(marker in output for marker in _NOT_FOUND_MARKERS)


class SystemdSupervisor(ServiceSupervisor):
    """
    Manages the agent through systemd.

    Attributes:
        unit_dir: Directory unit files are written to.
        search_dirs: Directories searched when reading a registration.
    """

    platform_name = "linux"

    def __init__(
        self,
        unit_dir: Path | str | None = None,
        search_dirs: tuple[Path, ...] | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.unit_dir = Path(unit_dir) if unit_dir else DEFAULT_UNIT_DIR
        self.search_dirs = search_dirs or UNIT_SEARCH_DIRS
        self._timeout = timeout

    def unit_path(self, name: str) -> Path:
        """Return the unit file path for ``name``."""
        return self.unit_dir / f"{name}.service"

    async def _systemctl(self, *args: str) -> CommandResult:
        return await run_command("systemctl", *args, timeout=self._timeout)

    async def stop(self, name: str) -> None:
        logger.info(f"Stopping service: {name}")
        result = await self._systemctl("stop", name)

        if result.ok:
            logger.info(f"Service {name} stopped")
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
        result = await self._systemctl("disable", name)

        if not result.ok and not _is_not_found(result):
            raise ServiceOperationError(
                f"Failed to disable service {name}: {result.output}",
                details={"service": name, "returncode": result.returncode},
            )

        unit_file = self.unit_path(name)
        try:
            unit_file.unlink(missing_ok=True)
        except OSError as e:
            raise ServiceOperationError(
                f"Failed to remove unit file {unit_file}: {e}",
                details={"service": name, "unit_file": str(unit_file)},
            ) from e

        await self._daemon_reload()
        logger.info(f"Service {name} uninstalled")

    async def install(self, name: str, binary_path: str) -> None:
        unit_file = self.unit_path(name)
        logger.info(
            f"Installing service: {name}",
            extra={"unit_file": str(unit_file), "binary_path": binary_path},
        )

        try:
            unit_file.parent.mkdir(parents=True, exist_ok=True)
            unit_file.write_text(render_unit_file(binary_path))
            unit_file.chmod(0o644)
        except OSError as e:
            raise ServiceOperationError(
                f"Failed to write unit file {unit_file}: {e}",
                details={"service": name, "unit_file": str(unit_file)},
            ) from e

        await self._daemon_reload()

        result = await self._systemctl("enable", name)
        if not result.ok:
            raise ServiceOperationError(
                f"Failed to enable service {name}: {result.output}",
                details={"service": name, "returncode": result.returncode},
            )

        logger.info(f"Service {name} installed")

    async def start(self, name: str) -> None:
        logger.info(f"Starting service: {name}")
        result = await self._systemctl("start", name)

        if result.ok:
            logger.info(f"Service {name} started")
            return
        if _is_not_found(result):
            raise ServiceNotFoundError(name)

        raise ServiceOperationError(
            f"Failed to start service {name}: {result.output}",
            details={"service": name, "returncode": result.returncode},
        )

    async def is_running(self, name: str) -> bool:
        result = await self._systemctl("is-active", name)
        return result.ok and result.stdout.strip() == "active"

    async def get_service_binary_path(self, name: str) -> str:
        errors: list[str] = []

        for directory in self.search_dirs:
            unit_file = directory / f"{name}.service"
            try:
                content = unit_file.read_text()
            except FileNotFoundError:
                continue
            except OSError as e:
                errors.append(f"{unit_file}: {e}")
                continue

            path = parse_unit_file(content)
            if path:
                return path
            errors.append(f"{unit_file}: ExecStart directive not found")

        if errors:
            raise ServiceOperationError(
                "Failed to parse systemd unit file",
                details={"service": name, "errors": errors},
            )
        raise ServiceNotFoundError(
            name,
            details={"searched": [str(d / f"{name}.service") for d in self.search_dirs]},
        )

    def recovery_commands(self, name: str) -> list[str]:
        return [
            f"sudo systemctl daemon-reload && sudo systemctl enable {name}",
            f"sudo systemctl start {name}",
        ]

    async def _daemon_reload(self) -> None:
        result = await self._systemctl("daemon-reload")
        if not result.ok:
            raise ServiceOperationError(
                f"Failed to reload systemd daemon: {result.output}",
                details={"returncode": result.returncode},
            )
