"""
Build toolchain for producing a new agent executable.

GoToolchain compiles the agent with `go install <module>/cmd/<binary>@<version>`
into $GOPATH/bin. CGO is enabled (the agent embeds SQLite), so on Windows a
GCC installation is located and prepended to PATH.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

from sentinel_updater.errors import CompileError, CompileTimeoutError, FailedPreconditionError
from sentinel_updater.logging import get_logger
from sentinel_updater.paths import (
    AGENT_BINARY_NAME,
    binary_file_name,
    current_platform,
    is_windows,
    path_list_separator,
)

logger = get_logger(__name__)

DEFAULT_COMPILE_TIMEOUT = 600.0

WINDOWS_GCC_DIRS = (
    "C:\\MinGW\\bin",
    "C:\\MinGW64\\bin",
    "C:\\TDM-GCC-64\\bin",
    "C:\\msys64\\mingw64\\bin",
    "C:\\msys64\\ucrt64\\bin",
    "C:\\Program Files\\mingw-w64\\bin",
    "C:\\Program Files (x86)\\mingw-w64\\bin",
)


class BuildToolchain(ABC):
    """Produces an executable for a module version."""

    @abstractmethod
    async def compile(self, module: str, version: str) -> Path:
        """
        Build the agent at ``version``.

        Returns:
            Path to the built executable.

        Raises:
            CompileError: If the build fails.
            CompileTimeoutError: If the build exceeds its time budget.
        """


def _home_from_passwd() -> str | None:
    # pwd is POSIX-only
    import pwd

    try:
        return pwd.getpwuid(os.getuid()).pw_dir or None
    except KeyError:
        return None


def find_home_directory(system: str | None = None) -> str:
    """
    Determine the home directory for the updater process.

    Tries $HOME, then Path.home(), then the password database entry for
    the current uid.

    Raises:
        FailedPreconditionError: If every method fails.
    """
    home = os.environ.get("HOME")
    if home:
        return home

    try:
        home = str(Path.home())
    except RuntimeError:
        home = ""
    if home:
        return home

    if not is_windows(system):
        home = _home_from_passwd() or ""
        if home:
            return home

    raise FailedPreconditionError(
        "Unable to determine home directory: all detection strategies failed",
    )


def prepare_process_environment(system: str | None = None) -> dict[str, str]:
    """
    Ensure HOME and GOPATH are set for child processes.

    Services often start with a minimal environment; the Go toolchain
    needs both variables.

    Returns:
        The values now in effect.

    Raises:
        FailedPreconditionError: If no home directory can be determined.
    """
    home = find_home_directory(system)

    if not os.environ.get("HOME"):
        os.environ["HOME"] = home
        logger.info("Set HOME environment variable", extra={"home": home})

    if not os.environ.get("GOPATH"):
        gopath = os.path.join(home, "go")
        os.environ["GOPATH"] = gopath
        logger.info("Set GOPATH environment variable", extra={"gopath": gopath})

    return {"HOME": os.environ["HOME"], "GOPATH": os.environ["GOPATH"]}


def find_gcc_on_windows(search_dirs: tuple[str, ...] = WINDOWS_GCC_DIRS) -> str | None:
    """Return the directory containing gcc, or None if not found."""
    gcc = shutil.which("gcc")
    if gcc:
        return os.path.dirname(gcc)

    for directory in search_dirs:
        if os.path.isfile(os.path.join(directory, "gcc.exe")):
            return directory

    return None


class GoToolchain(BuildToolchain):
    """
    Compiles the agent with `go install`.

    Attributes:
        go_binary: Go command.
        timeout: Compile time budget in seconds.
    """

    def __init__(
        self,
        go_binary: str = "go",
        binary_name: str = AGENT_BINARY_NAME,
        timeout: float = DEFAULT_COMPILE_TIMEOUT,
        cgo_enabled: bool = True,
        system: str | None = None,
    ) -> None:
        self.go_binary = go_binary
        self.binary_name = binary_name
        self.timeout = timeout
        self.cgo_enabled = cgo_enabled
        self._system = system or current_platform()

    async def _detect_goroot(self) -> str | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.go_binary,
                "env",
                "GOROOT",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=30.0)
        except (OSError, TimeoutError) as e:
            logger.warning("Failed to detect GOROOT", extra={"error": str(e)})
            return None

        if proc.returncode != 0:
            return None
        return stdout.decode(errors="replace").strip() or None

    async def build_environment(self) -> dict[str, str]:
        """Build the child environment for `go install`."""
        env = dict(os.environ)

        gopath = env.get("GOPATH") or os.path.join(find_home_directory(self._system), "go")
        goroot = env.get("GOROOT") or await self._detect_goroot()

        env["CGO_ENABLED"] = "1" if self.cgo_enabled else "0"
        env["GOPATH"] = gopath
        if goroot:
            env["GOROOT"] = goroot
        env["GOCACHE"] = env.get("GOCACHE") or os.path.join(gopath, "cache")
        env["GOMODCACHE"] = env.get("GOMODCACHE") or os.path.join(gopath, "pkg", "mod")

        if is_windows(self._system) and self.cgo_enabled:
            gcc_dir = find_gcc_on_windows()
            if gcc_dir:
                env["PATH"] = f"{gcc_dir}{path_list_separator(self._system)}{env.get('PATH', '')}"
                logger.info("Added GCC to PATH", extra={"gcc_dir": gcc_dir})
            else:
                logger.warning("GCC not found, CGO compilation may fail")

        logger.info(
            "Build environment configured",
            extra={
                "cgo_enabled": env["CGO_ENABLED"],
                "gopath": env["GOPATH"],
                "goroot": env.get("GOROOT"),
                "gocache": env["GOCACHE"],
                "gomodcache": env["GOMODCACHE"],
            },
        )
        return env

    def output_path(self, env: dict[str, str]) -> Path:
        """Return where `go install` places the binary."""
        return Path(env["GOPATH"]) / "bin" / binary_file_name(self._system, self.binary_name)

    async def compile(self, module: str, version: str) -> Path:
        env = await self.build_environment()
        target = f"{module}/cmd/{self.binary_name}@{version}"

        logger.info(f"Executing: {self.go_binary} install {target}")

        try:
            proc = await asyncio.create_subprocess_exec(
                self.go_binary,
                "install",
                target,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except OSError as e:
            raise CompileError(
                f"Failed to execute {self.go_binary}: {e}",
                details={"target": target},
            ) from e

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise CompileTimeoutError(
                f"Compilation timed out after {self.timeout}s",
                details={"target": target, "timeout_seconds": self.timeout},
            ) from e

        output = stdout.decode(errors="replace").strip() if stdout else ""
        if output:
            logger.info("Compilation output", extra={"output": output})

        if proc.returncode != 0:
            raise CompileError(
                f"Compilation failed with status {proc.returncode}",
                details={"target": target, "returncode": proc.returncode, "output": output},
            )

        built = self.output_path(env)
        if not built.is_file():
            raise CompileError(
                f"Compiled binary not found at expected location: {built}",
                details={"target": target, "expected_path": str(built)},
            )

        logger.info("Compilation successful", extra={"binary_path": str(built)})
        return built
