"""
Pytest configuration for the SentinelGo updater tests.

Fakes for the orchestrator's collaborators are exposed through fixtures.
"""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from sentinel_updater.backup import BackupManager
from sentinel_updater.detection import BinaryResolver, DetectionStrategy, PathCache
from sentinel_updater.errors import ServiceNotFoundError
from sentinel_updater.logging import ROOT_LOGGER_NAME
from sentinel_updater.orchestrator import UpdateOrchestrator
from sentinel_updater.retry import RetryPolicy
from sentinel_updater.sources import VersionSource
from sentinel_updater.supervisor.base import ServiceSupervisor
from sentinel_updater.toolchain import BuildToolchain

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

_OLD_BINARY = b"#!/bin/sh\necho v1.0.0\n"
_NEW_BINARY = b"#!/bin/sh\necho v1.1.0\n"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


def _write_executable(path: Path, content: bytes = _OLD_BINARY) -> Path:
    """Write ``content`` to ``path`` with mode 0755."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    os.chmod(path, stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP | stat.S_IROTH | stat.S_IXOTH)
    return path


# =============================================================================
# Fakes
# =============================================================================


class FakeSupervisor(ServiceSupervisor):
    """In-memory supervisor recording every call."""

    def __init__(self, binary_path: str | None = None) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.installed: dict[str, str] = {}
        self.running: dict[str, bool] = {}
        self.failures: dict[str, Exception] = {}
        # Raised on the next call only
        self.fail_once: dict[str, Exception] = {}
        self.binary_path = binary_path
        # Per-call running answers; falls back to self.running when exhausted
        self.running_answers: list[bool] = []

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]
        if operation in self.fail_once:
            raise self.fail_once.pop(operation)

    async def stop(self, name: str) -> None:
        self.calls.append(("stop", name))
        self._maybe_fail("stop")
        self.running[name] = False

    async def uninstall(self, name: str) -> None:
        self.calls.append(("uninstall", name))
        self._maybe_fail("uninstall")
        self.installed.pop(name, None)

    async def install(self, name: str, binary_path: str) -> None:
        self.calls.append(("install", name, binary_path))
        self._maybe_fail("install")
        self.installed[name] = binary_path

    async def start(self, name: str) -> None:
        self.calls.append(("start", name))
        self._maybe_fail("start")
        self.running[name] = True

    async def is_running(self, name: str) -> bool:
        self.calls.append(("is_running", name))
        self._maybe_fail("is_running")
        if self.running_answers:
            return self.running_answers.pop(0)
        return self.running.get(name, False)

    async def get_service_binary_path(self, name: str) -> str:
        if self.binary_path is None:
            raise ServiceNotFoundError(name)
        return self.binary_path

    def recovery_commands(self, name: str) -> list[str]:
        return [f"fake-install {name}", f"fake-start {name}"]

    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]


class FakeVersionSource(VersionSource):
    def __init__(self, latest: str = "v1.1.0", error: Exception | None = None) -> None:
        self.latest = latest
        self.error = error
        self.calls = 0

    async def get_latest(self, module: str) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.latest


class FakeToolchain(BuildToolchain):
    """Writes the v1.1.0 build into a build directory, or raises ``error``."""

    def __init__(self, build_dir: Path, error: Exception | None = None) -> None:
        self.build_dir = build_dir
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def compile(self, module: str, version: str) -> Path:
        self.calls.append((module, version))
        if self.error is not None:
            raise self.error
        return _write_executable(self.build_dir / "sentinel", _NEW_BINARY)


class FixedPathStrategy(DetectionStrategy):
    """Returns a fixed path and counts invocations."""

    description = "Fixed test path"

    def __init__(self, path: str | None, name: str = "fixed") -> None:
        self.name = name
        self.path = path
        self.calls = 0

    async def locate(self) -> str:
        self.calls += 1
        if self.path is None:
            raise LookupError("no path configured")
        return self.path


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_package_logger() -> Iterator[None]:
    """Undo setup_logging so caplog sees package records."""
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def old_binary() -> bytes:
    """Contents of the installed v1.0.0 binary."""
    return _OLD_BINARY


@pytest.fixture
def new_binary() -> bytes:
    """Contents of the freshly compiled v1.1.0 binary."""
    return _NEW_BINARY


@pytest.fixture
def write_executable() -> Callable[..., Path]:
    """Factory writing an executable file: ``write_executable(path, content)``."""
    return _write_executable


@pytest.fixture
def make_supervisor() -> Callable[..., FakeSupervisor]:
    """Factory for standalone fake supervisors: ``make_supervisor(binary_path)``."""
    return FakeSupervisor


@pytest.fixture
def make_strategy() -> Callable[..., FixedPathStrategy]:
    """Factory for fixed-path strategies: ``make_strategy(path, name="fixed")``."""
    return FixedPathStrategy


@pytest.fixture
def binary_path(tmp_path: Path) -> Path:
    """An installed agent binary running v1.0.0."""
    return _write_executable(tmp_path / "bin" / "sentinel")


@pytest.fixture
def supervisor(binary_path: Path) -> FakeSupervisor:
    fake = FakeSupervisor(binary_path=str(binary_path))
    fake.installed["sentinelgo"] = str(binary_path)
    fake.running["sentinelgo"] = True
    return fake


@pytest.fixture
def strategy(binary_path: Path) -> FixedPathStrategy:
    return FixedPathStrategy(str(binary_path))


@pytest.fixture
def resolver(strategy: FixedPathStrategy) -> BinaryResolver:
    return BinaryResolver(
        PathCache(),
        [strategy],
        override_loader=lambda: None,
        system="linux",
    )


@pytest.fixture
def toolchain(tmp_path: Path) -> FakeToolchain:
    return FakeToolchain(tmp_path / "gopath" / "bin")


@pytest.fixture
def version_source() -> FakeVersionSource:
    return FakeVersionSource()


@pytest.fixture
def orchestrator(
    resolver: BinaryResolver,
    supervisor: FakeSupervisor,
    version_source: FakeVersionSource,
    toolchain: FakeToolchain,
) -> UpdateOrchestrator:
    """Orchestrator wired with fakes; installed version is v1.0.0."""
    return UpdateOrchestrator(
        resolver,
        supervisor,
        version_source,
        toolchain,
        BackupManager(),
        verify_policy=RetryPolicy(max_attempts=3, delay_seconds=2.0, sleep=AsyncMock()),
        version_reader=AsyncMock(return_value="v1.0.0"),
        prepare_environment=lambda: None,
        system="linux",
    )

