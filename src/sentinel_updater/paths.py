"""
Platform-specific filesystem layout for the SentinelGo agent and updater.

Linux/macOS keep updater state in /var/lib/sentinelgo; Windows uses
%ProgramData%\\SentinelGo. Binary locations follow the conventional
installation directories for each platform.
"""

from __future__ import annotations

import ntpath
import os
import platform
import posixpath
from pathlib import Path

AGENT_BINARY_NAME = "sentinel"
AGENT_SERVICE_NAME = "sentinelgo"
AGENT_MODULE = "github.com/BrainStation-23/SentinelGo"

OVERRIDE_FILE_NAME = "updater-config.json"
BACKUP_SUFFIX = ".backup"
LEGACY_BACKUP_SUFFIX = ".old"


def current_platform() -> str:
    """Return the host platform as ``linux``, ``darwin``, ``windows`` or other."""
    return platform.system().lower()


def is_windows(system: str | None = None) -> bool:
    """Check whether ``system`` (default: host) is Windows."""
    return (system or current_platform()) == "windows"


def binary_file_name(system: str | None = None, name: str = AGENT_BINARY_NAME) -> str:
    """Return the agent executable file name for the platform."""
    return f"{name}.exe" if is_windows(system) else name


def path_list_separator(system: str | None = None) -> str:
    """Return the PATH separator for the platform."""
    return ";" if is_windows(system) else ":"


def _join(system: str | None, *parts: str) -> str:
    # Paths are built for the target platform, not the host
    if is_windows(system):
        return ntpath.join(*parts)
    return posixpath.join(*parts)


def get_data_directory(system: str | None = None) -> Path:
    """
    Return the platform-specific updater data directory.

    Args:
        system: Platform name; defaults to the host platform.

    Returns:
        Path to the data directory.
    """
    if is_windows(system):
        program_data = os.environ.get("ProgramData") or "C:\\ProgramData"
        return Path(_join(system, program_data, "SentinelGo"))
    return Path("/var/lib/sentinelgo")


def get_override_file_path(system: str | None = None) -> Path:
    """Return the location of the optional JSON binary-path override file."""
    return get_data_directory(system) / OVERRIDE_FILE_NAME


def get_database_path(system: str | None = None) -> Path:
    """Return the agent database path (preserved across updates)."""
    return get_data_directory(system) / "sentinel.db"


def get_updater_log_path(system: str | None = None) -> Path:
    """Return the updater log file path."""
    return get_data_directory(system) / "updater.log"


def get_agent_log_path(system: str | None = None) -> Path:
    """Return the agent log file path."""
    return get_data_directory(system) / "agent.log"


def get_common_paths(
    system: str | None = None,
    binary_name: str = AGENT_BINARY_NAME,
) -> list[str]:
    """
    Return the conventional installation paths searched for the agent binary.

    Args:
        system: Platform name; defaults to the host platform.
        binary_name: Base name of the agent executable.

    Returns:
        Ordered list of candidate absolute paths.
    """
    system = system or current_platform()
    name = binary_file_name(system, binary_name)
    home = os.environ.get("HOME", "")

    if system == "linux":
        return [
            f"/usr/local/bin/{name}",
            f"/usr/bin/{name}",
            f"/opt/sentinelgo/{name}",
            _join(system, home, "go/bin", name),
            _join(system, home, ".local/bin", name),
        ]
    if system == "darwin":
        return [
            f"/usr/local/bin/{name}",
            f"/usr/bin/{name}",
            f"/opt/sentinelgo/{name}",
            _join(system, home, "go/bin", name),
            f"/Applications/SentinelGo/{name}",
        ]
    if system == "windows":
        return [
            _join(system, os.environ.get("ProgramFiles", ""), "SentinelGo", name),
            _join(system, os.environ.get("ProgramFiles(x86)", ""), "SentinelGo", name),
            _join(system, os.environ.get("USERPROFILE", ""), "go", "bin", name),
            f"C:\\SentinelGo\\{name}",
        ]
    return [
        f"/usr/local/bin/{name}",
        f"/usr/bin/{name}",
    ]


def backup_path_for(binary_path: str | Path) -> Path:
    """Return the backup location for a binary (``<binary>.backup``)."""
    return Path(f"{binary_path}{BACKUP_SUFFIX}")


def legacy_backup_path_for(binary_path: str | Path) -> Path:
    """Return the legacy backup marker for a binary (``<binary>.old``)."""
    return Path(f"{binary_path}{LEGACY_BACKUP_SUFFIX}")


def ensure_data_directory(system: str | None = None) -> Path:
    """Create the data directory (0755) if it does not exist."""
    data_dir = get_data_directory(system)
    data_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
    return data_dir
