"""
Latest-version sources for the managed module.

Two backends are available:
- GoListVersionSource: asks the Go toolchain (`go list -m -json <module>@latest`)
- GoProxyVersionSource: queries a module proxy over HTTP (`<proxy>/<module>/@latest`)

Both raise VersionSourceError on failure, which the orchestrator treats as
transient.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import httpx

from sentinel_updater.errors import VersionSourceError
from sentinel_updater.logging import get_logger

if TYPE_CHECKING:
    from sentinel_updater.config import AppConfig

logger = get_logger(__name__)


class VersionSource(ABC):
    """Returns the latest published version of a module."""

    @abstractmethod
    async def get_latest(self, module: str) -> str:
        """
        Return the latest version identifier (e.g., "v1.6.121").

        Raises:
            VersionSourceError: If the version cannot be determined.
        """


def _parse_version_document(data: object, module: str) -> str:
    if not isinstance(data, dict):
        raise VersionSourceError(
            "Unexpected version document",
            details={"module": module},
        )
    version = data.get("Version")
    if not isinstance(version, str) or not version:
        raise VersionSourceError(
            "Version field missing from version document",
            details={"module": module},
        )
    return version


class GoListVersionSource(VersionSource):
    """Resolves the latest version with the Go toolchain."""

    def __init__(self, go_binary: str = "go", timeout: float = 60.0) -> None:
        self._go_binary = go_binary
        self._timeout = timeout

    async def get_latest(self, module: str) -> str:
        target = f"{module}@latest"
        logger.debug("Querying latest version", extra={"module": module})

        try:
            proc = await asyncio.create_subprocess_exec(
                self._go_binary,
                "list",
                "-m",
                "-json",
                target,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise VersionSourceError(
                f"{self._go_binary} not available",
                details={"hint": "Install the Go toolchain or use the proxy version source"},
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout
            )
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise VersionSourceError(
                f"go list timed out after {self._timeout}s",
                details={"module": module},
            ) from e

        if proc.returncode != 0:
            raise VersionSourceError(
                "Failed to get latest version",
                details={
                    "module": module,
                    "returncode": proc.returncode,
                    "stderr": stderr.decode(errors="replace").strip() if stderr else "",
                },
            )

        try:
            data = json.loads(stdout.decode(errors="replace"))
        except json.JSONDecodeError as e:
            raise VersionSourceError(
                f"Failed to parse go list output: {e}",
                details={"module": module},
            ) from e

        return _parse_version_document(data, module)


def escape_module_path(module: str) -> str:
    """
    Escape a module path for the proxy protocol.

    Upper-case letters become ``!`` followed by the lower-case letter.
    """
    return "".join(f"!{c.lower()}" if c.isupper() else c for c in module)


class GoProxyVersionSource(VersionSource):
    """Resolves the latest version from a Go module proxy."""

    def __init__(
        self,
        proxy_url: str = "https://proxy.golang.org",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._proxy_url = proxy_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def latest_url(self, module: str) -> str:
        return f"{self._proxy_url}/{escape_module_path(module)}/@latest"

    async def get_latest(self, module: str) -> str:
        url = self.latest_url(module)
        logger.debug("Querying module proxy", extra={"url": url})

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise VersionSourceError(
                f"Failed to query module proxy: {e}",
                details={"url": url},
            ) from e
        except ValueError as e:
            raise VersionSourceError(
                f"Invalid module proxy response: {e}",
                details={"url": url},
            ) from e

        return _parse_version_document(data, module)


def create_version_source(config: AppConfig) -> VersionSource:
    """Build the version source selected by configuration."""
    if config.updater.version_source == "proxy":
        return GoProxyVersionSource(proxy_url=config.updater.proxy_url)
    return GoListVersionSource(go_binary=config.build.go_binary)
