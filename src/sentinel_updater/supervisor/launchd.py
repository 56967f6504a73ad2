"""
Launchd service supervisor for macOS.

Registration is a LaunchDaemon plist; the registered binary is the first
element of ProgramArguments (or the legacy Program key).
"""

from __future__ import annotations

import plistlib
import re
from pathlib import Path
from typing import Any

from sentinel_updater.errors import ServiceNotFoundError, ServiceOperationError
from sentinel_updater.logging import get_logger
from sentinel_updater.supervisor.base import CommandResult, ServiceSupervisor, run_command

logger = get_logger(__name__)

DEFAULT_PLIST_DIR = Path("/Library/LaunchDaemons")

_PID_PATTERN = re.compile(r'"PID"\s*=\s*(\d+)')
_NOT_FOUND_MARKERS = ("could not find", "no such process", "not found")


def build_plist(name: str, binary_path: str) -> dict[str, Any]:
    """Build the LaunchDaemon definition for the agent."""
    return {
        "Label": name,
        "ProgramArguments": [binary_path],
        "RunAtLoad": True,
        "KeepAlive": True,
        "StandardOutPath": f"/var/log/{name}.log",
        "StandardErrorPath": f"/var/log/{name}.err",
    }


def parse_plist_binary(data: bytes) -> str:
    """
    Extract the executable from plist bytes.

    Raises:
        ValueError: If the plist is malformed or names no program.
    """
    try:
        content = plistlib.loads(data)
    except (plistlib.InvalidFileException, ValueError) as e:
        raise ValueError(f"malformed plist: {e}") from e

    if not isinstance(content, dict):
        raise ValueError("plist root is not a dictionary")

    arguments = content.get("ProgramArguments")
    if arguments is None:
        program = content.get("Program")
        if isinstance(program, str) and program:
            return program
        raise ValueError("ProgramArguments not found")

    if not isinstance(arguments, list):
        raise ValueError("ProgramArguments is not an array")
    if not arguments:
        raise ValueError("ProgramArguments array is empty")
    if not isinstance(arguments[0], str) or not arguments[0]:
        raise ValueError("first element of ProgramArguments is not a path")

    return arguments[0]


def _is_not_found(result: CommandResult) -> bool:
    output = result.output.lower()
    return any(marker in output for marker in _NOT_FOUND_MARKERS)


class LaunchdSupervisor(ServiceSupervisor):
    """Manages the agent through launchd."""

    platform_name = "darwin"

    def __init__(
        self,
        plist_dir: Path | str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.plist_dir = Path(plist_dir) if plist_dir else DEFAULT_PLIST_DIR
        self._timeout = timeout

    def plist_path(self, name: str) -> Path:
        return self.plist_dir / f"{name}.plist"

    def candidate_plists(self, name: str) -> list[Path]:
        """Plists that may hold an existing registration, in lookup order."""
        candidates = [
            self.plist_path(name),
            Path(f"/Library/LaunchDaemons/com.{name}.plist"),
            Path(f"/Library/LaunchAgents/com.{name}.plist"),
            Path(f"/System/Library/LaunchDaemons/com.{name}.plist"),
            Path(f"/System/Library/LaunchAgents/com.{name}.plist"),
        ]
        try:
            candidates.append(Path.home() / "Library" / "LaunchAgents" / f"com.{name}.plist")
        except RuntimeError:
            pass
        return candidates

    async def _launchctl(self, *args: str) -> CommandResult:
        return await run_command("launchctl", *args, timeout=self._timeout)

    async def stop(self, name: str) -> None:
        logger.info(f"Stopping service: {name}")
        result = await self._launchctl("stop", name)

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
        plist_file = self.plist_path(name)
        logger.info(f"Uninstalling service: {name}", extra={"plist": str(plist_file)})

        if plist_file.exists():
            result = await self._launchctl("unload", str(plist_file))
            if not result.ok:
                # Not loaded is fine; the plist is removed either way
                logger.warning(
                    f"Failed to unload service {name}",
                    extra={"output": result.output},
                )

        try:
            plist_file.unlink(missing_ok=True)
        except OSError as e:
            raise ServiceOperationError(
                f"Failed to remove plist file {plist_file}: {e}",
                details={"service": name, "plist": str(plist_file)},
            ) from e

    async def install(self, name: str, binary_path: str) -> None:
        plist_file = self.plist_path(name)
        logger.info(
            f"Installing service: {name}",
            extra={"plist": str(plist_file), "binary_path": binary_path},
        )

        try:
            plist_file.parent.mkdir(parents=True, exist_ok=True)
            with open(plist_file, "wb") as f:
                plistlib.dump(build_plist(name, binary_path), f)
            plist_file.chmod(0o644)
        except OSError as e:
            raise ServiceOperationError(
                f"Failed to write plist file {plist_file}: {e}",
                details={"service": name, "plist": str(plist_file)},
            ) from e

        result = await self._launchctl("load", str(plist_file))
        if not result.ok:
            raise ServiceOperationError(
                f"Failed to load service {name}: {result.output}",
                details={"service": name, "returncode": result.returncode},
            )

    async def start(self, name: str) -> None:
        logger.info(f"Starting service: {name}")
        result = await self._launchctl("start", name)

        if result.ok:
            return
        if _is_not_found(result):
            raise ServiceNotFoundError(name)

        raise ServiceOperationError(
            f"Failed to start service {name}: {result.output}",
            details={"service": name, "returncode": result.returncode},
        )

    async def is_running(self, name: str) -> bool:
        result = await self._launchctl("list", name)
        if not result.ok:
            return False

        match = _PID_PATTERN.search(result.stdout)
        return bool(match) and int(match.group(1)) > 0

    async def get_service_binary_path(self, name: str) -> str:
        errors: list[str] = []
        candidates = self.candidate_plists(name)

        for plist_file in candidates:
            try:
                data = plist_file.read_bytes()
            except FileNotFoundError:
                continue
            except OSError as e:
                errors.append(f"{plist_file}: {e}")
                continue

            try:
                return parse_plist_binary(data)
            except ValueError as e:
                errors.append(f"{plist_file}: {e}")

        if errors:
            raise ServiceOperationError(
                "Failed to parse launchd plist",
                details={"service": name, "errors": errors},
            )
        raise ServiceNotFoundError(
            name,
            details={"searched": [str(p) for p in candidates]},
        )

    def recovery_commands(self, name: str) -> list[str]:
        plist_file = self.plist_path(name)
        return [
            f"sudo launchctl load {plist_file}",
            f"sudo launchctl start {name}",
        ]
