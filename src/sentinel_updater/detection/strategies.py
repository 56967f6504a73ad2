"""
Binary location strategies, tried by the resolver in priority order.

1. service_config: the executable registered with the service manager
2. running_process: the executable of a running agent process
3. path_search: the agent binary in a PATH directory
4. common_paths: the platform's conventional installation paths

A strategy returns a candidate path or raises LookupError with the reason
it found nothing. The resolver validates every candidate.
"""

from __future__ import annotations

import ntpath
import os
import posixpath
import stat
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

import psutil

from sentinel_updater.detection.validation import validate_binary_path
from sentinel_updater.paths import (
    AGENT_BINARY_NAME,
    AGENT_SERVICE_NAME,
    binary_file_name,
    get_common_paths,
    is_windows,
    path_list_separator,
)

if TYPE_CHECKING:
    from sentinel_updater.supervisor.base import ServiceSupervisor


class DetectionStrategy(ABC):
    """
    A single way of locating the agent binary.

    Attributes:
        name: Machine-readable method name reported in diagnostics.
        description: Human-readable description.
    """

    name: str = ""
    description: str = ""

    @abstractmethod
    async def locate(self) -> str:
        """
        Return a candidate path.

        Raises:
            LookupError: If the strategy found nothing.
        """


class ServiceConfigStrategy(DetectionStrategy):
    """Reads the path the service manager will actually execute."""

    name = "service_config"
    description = "System service configuration"

    def __init__(
        self,
        supervisor: ServiceSupervisor,
        service_name: str = AGENT_SERVICE_NAME,
    ) -> None:
        self._supervisor = supervisor
        self._service_name = service_name

    async def locate(self) -> str:
        return await self._supervisor.get_service_binary_path(self._service_name)


class RunningProcessStrategy(DetectionStrategy):
    """Finds a running process whose executable is the agent binary."""

    name = "running_process"
    description = "Running process detection"

    def __init__(
        self,
        binary_name: str = AGENT_BINARY_NAME,
        system: str | None = None,
        process_iter: Callable[..., Iterable[Any]] | None = None,
    ) -> None:
        self._file_name = binary_file_name(system, binary_name)
        self._windows = is_windows(system)
        self._process_iter = process_iter or psutil.process_iter

    def _matches(self, exe: str) -> bool:
        base = ntpath.basename(exe) if self._windows else posixpath.basename(exe)
        if self._windows:
            return base.lower() == self._file_name.lower()
        return base == self._file_name

    async def locate(self) -> str:
        # Inaccessible attributes come back as None
        for proc in self._process_iter(["pid", "name", "exe"]):
            exe = proc.info.get("exe")
            if exe and self._matches(exe):
                return exe

        raise LookupError(f"process {self._file_name} not found among running processes")


class PathSearchStrategy(DetectionStrategy):
    """Searches each directory of PATH for the binary."""

    name = "path_search"
    description = "PATH environment variable"

    def __init__(
        self,
        binary_name: str = AGENT_BINARY_NAME,
        system: str | None = None,
        path_env: str | None = None,
    ) -> None:
        self._system = system
        self._file_name = binary_file_name(system, binary_name)
        self._path_env = path_env

    def directories(self) -> list[str]:
        """Return the non-empty PATH directories in search order."""
        path_env = self._path_env if self._path_env is not None else os.environ.get("PATH", "")
        return [d for d in path_env.split(path_list_separator(self._system)) if d]

    async def locate(self) -> str:
        directories = self.directories()
        if not directories:
            raise LookupError("PATH environment variable is empty or not set")

        join = ntpath.join if is_windows(self._system) else posixpath.join
        for directory in directories:
            candidate = join(directory, self._file_name)
            if os.path.isfile(candidate):
                return candidate

        raise LookupError(
            f"binary '{self._file_name}' not found in PATH "
            f"(searched {len(directories)} directories)"
        )


class CommonPathsStrategy(DetectionStrategy):
    """Probes the platform's conventional installation paths."""

    name = "common_paths"
    description = "Common installation directories"

    def __init__(
        self,
        binary_name: str = AGENT_BINARY_NAME,
        system: str | None = None,
        extra_paths: list[str] | None = None,
        paths: list[str] | None = None,
    ) -> None:
        self._system = system
        base = paths if paths is not None else get_common_paths(system, binary_name)
        self.paths = [*base, *(extra_paths or [])]

    async def locate(self) -> str:
        access_errors: list[str] = []

        for path in self.paths:
            try:
                st = os.stat(path)
            except PermissionError:
                access_errors.append(f"{path} (permission denied)")
                continue
            except OSError:
                continue

            if stat.S_ISDIR(st.st_mode):
                continue
            if validate_binary_path(path, self._system) is None:
                return path

        message = f"binary not found in {len(self.paths)} common installation paths"
        if access_errors:
            message += f" (permission denied for: {', '.join(access_errors)})"
        raise LookupError(message)


def default_strategies(
    supervisor: ServiceSupervisor,
    *,
    service_name: str = AGENT_SERVICE_NAME,
    binary_name: str = AGENT_BINARY_NAME,
    system: str | None = None,
    extra_paths: list[str] | None = None,
) -> list[DetectionStrategy]:
    """Build the standard strategy chain in priority order."""
    return [
        ServiceConfigStrategy(supervisor, service_name),
        RunningProcessStrategy(binary_name, system),
        PathSearchStrategy(binary_name, system),
        CommonPathsStrategy(binary_name, system, extra_paths=extra_paths),
    ]
