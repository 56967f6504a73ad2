"""
Tests for binary detection building blocks.

This test module validates:
- The read/write lock and path cache
- Candidate path validation
- Each detection strategy in isolation
"""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from sentinel_updater.detection import (
    CommonPathsStrategy,
    PathCache,
    PathSearchStrategy,
    ReadWriteLock,
    RunningProcessStrategy,
    ServiceConfigStrategy,
    default_strategies,
    is_valid_binary_path,
    validate_binary_path,
)
from sentinel_updater.errors import ServiceNotFoundError

# =============================================================================
# Cache
# =============================================================================


class TestReadWriteLock:
    """Tests for ReadWriteLock."""

    def test_concurrent_readers(self) -> None:
        """Test that readers do not exclude each other."""
        lock = ReadWriteLock()

        with lock.read(), lock.read():
            pass

    def test_writer_excludes_readers(self) -> None:
        """Test that a reader waits for an active writer."""
        lock = ReadWriteLock()
        events: list[str] = []
        writer_holding = threading.Event()

        def writer() -> None:
            with lock.write():
                writer_holding.set()
                time.sleep(0.05)
                events.append("write")

        def reader() -> None:
            writer_holding.wait()
            with lock.read():
                events.append("read")

        threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert events == ["write", "read"]


class TestPathCache:
    """Tests for PathCache."""

    def test_starts_invalid(self) -> None:
        cache = PathCache()

        assert cache.get() is None
        assert cache.is_valid is False

    def test_set_and_invalidate(self) -> None:
        cache = PathCache()

        entry = cache.set("/usr/local/bin/sentinel", "common_paths")

        assert cache.get() == entry
        assert entry.method == "common_paths"
        assert cache.is_valid

        cache.invalidate()
        assert cache.get() is None


# =============================================================================
# Validation
# =============================================================================


class TestValidateBinaryPath:
    """Tests for validate_binary_path."""

    def test_valid(self, binary_path: Path) -> None:
        assert validate_binary_path(str(binary_path), "linux") is None
        assert is_valid_binary_path(str(binary_path), "linux")

    def test_empty(self) -> None:
        assert validate_binary_path("", "linux") == "path is empty"

    def test_missing(self, tmp_path: Path) -> None:
        assert validate_binary_path(str(tmp_path / "absent"), "linux") == "file does not exist"

    def test_directory(self, tmp_path: Path) -> None:
        assert validate_binary_path(str(tmp_path), "linux") == "path is a directory, not a file"

    def test_not_executable(self, tmp_path: Path) -> None:
        path = tmp_path / "sentinel"
        path.write_bytes(b"x")
        os.chmod(path, 0o644)

        assert "not executable" in validate_binary_path(str(path), "linux")

    def test_windows_skips_mode_check(self, tmp_path: Path) -> None:
        path = tmp_path / "sentinel.exe"
        path.write_bytes(b"x")
        os.chmod(path, 0o644)

        assert validate_binary_path(str(path), "windows") is None


# =============================================================================
# Strategies
# =============================================================================


class TestServiceConfigStrategy:
    """Tests for ServiceConfigStrategy."""

    @pytest.mark.asyncio
    async def test_returns_registered_path(self, make_supervisor: Callable[..., Any]) -> None:
        strategy = ServiceConfigStrategy(make_supervisor("/opt/sentinel/sentinel"), "sentinelgo")

        assert await strategy.locate() == "/opt/sentinel/sentinel"

    @pytest.mark.asyncio
    async def test_unregistered_service(self, make_supervisor: Callable[..., Any]) -> None:
        strategy = ServiceConfigStrategy(make_supervisor(None), "sentinelgo")

        with pytest.raises(ServiceNotFoundError):
            await strategy.locate()


def _proc(exe: str | None) -> SimpleNamespace:
    return SimpleNamespace(info={"pid": 1, "name": "x", "exe": exe})


class TestRunningProcessStrategy:
    """Tests for RunningProcessStrategy."""

    @pytest.mark.asyncio
    async def test_matches_executable_name(self) -> None:
        """Test that processes are matched on the executable base name."""
        procs = [_proc(None), _proc("/usr/bin/sentinel-updater"), _proc("/opt/x/sentinel")]
        strategy = RunningProcessStrategy("sentinel", "linux", process_iter=lambda attrs: procs)

        assert await strategy.locate() == "/opt/x/sentinel"

    @pytest.mark.asyncio
    async def test_windows_case_insensitive(self) -> None:
        procs = [_proc("C:\\SentinelGo\\Sentinel.EXE")]
        strategy = RunningProcessStrategy("sentinel", "windows", process_iter=lambda attrs: procs)

        assert await strategy.locate() == "C:\\SentinelGo\\Sentinel.EXE"

    @pytest.mark.asyncio
    async def test_not_running(self) -> None:
        strategy = RunningProcessStrategy("sentinel", "linux", process_iter=lambda attrs: [])

        with pytest.raises(LookupError, match="not found among running processes"):
            await strategy.locate()


class TestPathSearchStrategy:
    """Tests for PathSearchStrategy."""

    @pytest.mark.asyncio
    async def test_finds_in_path(
        self, tmp_path: Path, write_executable: Callable[..., Path]
    ) -> None:
        """Test that PATH directories are searched in order."""
        first = tmp_path / "first"
        first.mkdir()
        binary = write_executable(tmp_path / "second" / "sentinel")
        path_env = f"{first}::{binary.parent}"

        strategy = PathSearchStrategy("sentinel", "linux", path_env=path_env)

        assert strategy.directories() == [str(first), str(binary.parent)]
        assert await strategy.locate() == str(binary)

    @pytest.mark.asyncio
    async def test_empty_path(self) -> None:
        strategy = PathSearchStrategy("sentinel", "linux", path_env="")

        with pytest.raises(LookupError, match="empty"):
            await strategy.locate()

    @pytest.mark.asyncio
    async def test_not_in_path(self, tmp_path: Path) -> None:
        strategy = PathSearchStrategy("sentinel", "linux", path_env=str(tmp_path))

        with pytest.raises(LookupError, match="searched 1 directories"):
            await strategy.locate()


class TestCommonPathsStrategy:
    """Tests for CommonPathsStrategy."""

    @pytest.mark.asyncio
    async def test_first_valid_path_wins(
        self, tmp_path: Path, write_executable: Callable[..., Path]
    ) -> None:
        """Test that directories and non-executables are skipped."""
        directory = tmp_path / "dir"
        directory.mkdir()
        plain = tmp_path / "plain"
        plain.write_bytes(b"x")
        os.chmod(plain, 0o644)
        binary = write_executable(tmp_path / "sentinel")

        strategy = CommonPathsStrategy(
            "sentinel",
            "linux",
            paths=[str(tmp_path / "absent"), str(directory), str(plain), str(binary)],
        )

        assert await strategy.locate() == str(binary)

    @pytest.mark.asyncio
    async def test_extra_paths_appended(
        self, tmp_path: Path, write_executable: Callable[..., Path]
    ) -> None:
        binary = write_executable(tmp_path / "custom" / "sentinel")

        strategy = CommonPathsStrategy(
            "sentinel", "linux", extra_paths=[str(binary)], paths=[str(tmp_path / "absent")]
        )

        assert strategy.paths[-1] == str(binary)
        assert await strategy.locate() == str(binary)

    @pytest.mark.asyncio
    async def test_nothing_found(self, tmp_path: Path) -> None:
        strategy = CommonPathsStrategy("sentinel", "linux", paths=[str(tmp_path / "absent")])

        with pytest.raises(LookupError, match="1 common installation paths"):
            await strategy.locate()


class TestDefaultStrategies:
    """Tests for default_strategies."""

    def test_priority_order(self, make_supervisor: Callable[..., Any]) -> None:
        strategies = default_strategies(make_supervisor(), system="linux")

        assert [s.name for s in strategies] == [
            "service_config",
            "running_process",
            "path_search",
            "common_paths",
        ]
