"""
Tests for the Go build toolchain and process environment preparation.
"""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from sentinel_updater import toolchain
from sentinel_updater.errors import CompileError, CompileTimeoutError, FailedPreconditionError
from sentinel_updater.toolchain import (
    GoToolchain,
    find_gcc_on_windows,
    find_home_directory,
    prepare_process_environment,
)

MODULE = "github.com/BrainStation-23/SentinelGo"

FAKE_GO = """#!/bin/sh
case "$1" in
  env)
    echo /usr/local/go
    ;;
  install)
    mkdir -p "$GOPATH/bin"
    echo "$2" > "$GOPATH/target"
    echo "CGO_ENABLED=$CGO_ENABLED" > "$GOPATH/build-env"
    printf '#!/bin/sh\\necho v1.1.0\\n' > "$GOPATH/bin/sentinel"
    echo "go: downloading $2"
    ;;
esac
"""


@pytest.fixture
def gopath(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "gopath"
    monkeypatch.setenv("GOPATH", str(path))
    monkeypatch.setenv("GOROOT", "")
    return path


def _go(tmp_path: Path, script: str = FAKE_GO) -> str:
    go = tmp_path / "fake-go"
    go.write_text(script)
    go.chmod(0o755)
    return str(go)


# =============================================================================
# Environment
# =============================================================================


class TestFindHomeDirectory:
    """Tests for find_home_directory."""

    def test_home_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", "/home/sentinel")

        assert find_home_directory("linux") == "/home/sentinel"

    def test_falls_back_to_path_home(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", "")
        fake_path = MagicMock()
        fake_path.home.return_value = "/root"
        monkeypatch.setattr(toolchain, "Path", fake_path)

        assert find_home_directory("linux") == "/root"

    def test_falls_back_to_passwd(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", "")
        fake_path = MagicMock()
        fake_path.home.side_effect = RuntimeError("no home")
        monkeypatch.setattr(toolchain, "Path", fake_path)
        monkeypatch.setattr(toolchain, "_home_from_passwd", lambda: "/var/lib/sentinel")

        assert find_home_directory("linux") == "/var/lib/sentinel"

    def test_all_methods_fail(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", "")
        fake_path = MagicMock()
        fake_path.home.side_effect = RuntimeError("no home")
        monkeypatch.setattr(toolchain, "Path", fake_path)
        monkeypatch.setattr(toolchain, "_home_from_passwd", lambda: None)

        with pytest.raises(FailedPreconditionError, match="home directory"):
            find_home_directory("linux")


class TestPrepareProcessEnvironment:
    """Tests for prepare_process_environment."""

    def test_sets_gopath(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("GOPATH", "")

        values = prepare_process_environment("linux")

        assert values == {"HOME": str(tmp_path), "GOPATH": os.path.join(str(tmp_path), "go")}
        assert os.environ["GOPATH"] == os.path.join(str(tmp_path), "go")

    def test_keeps_existing_gopath(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("GOPATH", "/opt/go")

        assert prepare_process_environment("linux")["GOPATH"] == "/opt/go"


class TestFindGcc:
    """Tests for GCC discovery on Windows hosts."""

    def test_gcc_on_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(toolchain.shutil, "which", lambda name: "/usr/bin/gcc")

        assert find_gcc_on_windows() == "/usr/bin"

    def test_common_directory(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(toolchain.shutil, "which", lambda name: None)
        mingw = tmp_path / "mingw64" / "bin"
        mingw.mkdir(parents=True)
        (mingw / "gcc.exe").write_bytes(b"")

        assert find_gcc_on_windows((str(tmp_path / "missing"), str(mingw))) == str(mingw)

    def test_not_found(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(toolchain.shutil, "which", lambda name: None)

        assert find_gcc_on_windows((str(tmp_path),)) is None


# =============================================================================
# Compilation
# =============================================================================


class TestBuildEnvironment:
    """Tests for GoToolchain.build_environment."""

    @pytest.mark.asyncio
    async def test_detects_goroot(self, tmp_path: Path, gopath: Path) -> None:
        env = await GoToolchain(go_binary=_go(tmp_path), system="linux").build_environment()

        assert env["CGO_ENABLED"] == "1"
        assert env["GOPATH"] == str(gopath)
        assert env["GOROOT"] == "/usr/local/go"

    @pytest.mark.asyncio
    async def test_cgo_disabled(self, tmp_path: Path, gopath: Path) -> None:
        go = GoToolchain(go_binary=_go(tmp_path), cgo_enabled=False, system="linux")

        env = await go.build_environment()

        assert env["CGO_ENABLED"] == "0"

    @pytest.mark.asyncio
    async def test_windows_prepends_gcc(
        self, gopath: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("GOROOT", "C:\\Go")
        monkeypatch.setenv("PATH", "C:\\Windows")
        monkeypatch.setattr(toolchain, "find_gcc_on_windows", lambda: "C:\\MinGW\\bin")
        go = GoToolchain(system="windows")

        env = await go.build_environment()

        assert env["PATH"] == "C:\\MinGW\\bin;C:\\Windows"
        assert go.output_path(env).name == "sentinel.exe"

    @pytest.mark.asyncio
    async def test_goroot_detection_failure(self, tmp_path: Path, gopath: Path) -> None:
        go = GoToolchain(go_binary=str(tmp_path / "missing-go"), system="linux")

        env = await go.build_environment()

        assert not env.get("GOROOT")


class TestCompile:
    """Tests for GoToolchain.compile."""

    @pytest.mark.asyncio
    async def test_compile(self, tmp_path: Path, gopath: Path) -> None:
        go = GoToolchain(go_binary=_go(tmp_path), system="linux")

        built = await go.compile(MODULE, "v1.1.0")

        assert built == gopath / "bin" / "sentinel"
        assert built.is_file()
        assert (gopath / "target").read_text().strip() == f"{MODULE}/cmd/sentinel@v1.1.0"
        assert (gopath / "build-env").read_text().strip() == "CGO_ENABLED=1"

    @pytest.mark.asyncio
    async def test_compile_failure(self, tmp_path: Path, gopath: Path) -> None:
        script = "#!/bin/sh\nif [ \"$1\" = install ]; then echo 'cgo: gcc not found'; exit 2; fi\n"
        go = GoToolchain(go_binary=_go(tmp_path, script), system="linux")

        with pytest.raises(CompileError) as exc_info:
            await go.compile(MODULE, "v1.1.0")

        assert exc_info.value.details["returncode"] == 2
        assert exc_info.value.details["output"] == "cgo: gcc not found"

    @pytest.mark.asyncio
    async def test_compile_timeout(self, tmp_path: Path, gopath: Path) -> None:
        script = "#!/bin/sh\nif [ \"$1\" = install ]; then exec sleep 5; fi\n"
        go = GoToolchain(go_binary=_go(tmp_path, script), timeout=0.2, system="linux")

        with pytest.raises(CompileTimeoutError):
            await go.compile(MODULE, "v1.1.0")

    @pytest.mark.asyncio
    async def test_missing_output(self, tmp_path: Path, gopath: Path) -> None:
        """Test that a zero exit without a binary is a compile failure."""
        go = GoToolchain(go_binary=_go(tmp_path, "#!/bin/sh\nexit 0\n"), system="linux")

        with pytest.raises(CompileError, match="not found at expected location"):
            await go.compile(MODULE, "v1.1.0")

    @pytest.mark.asyncio
    async def test_missing_go(self, tmp_path: Path, gopath: Path) -> None:
        go = GoToolchain(go_binary=str(tmp_path / "missing-go"), system="linux")

        with pytest.raises(CompileError, match="Failed to execute"):
            await go.compile(MODULE, "v1.1.0")
