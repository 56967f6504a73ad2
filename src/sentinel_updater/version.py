"""
Version handling for the managed agent.

This module implements:
- Extraction of the version token from `<binary> --version` output
- Numeric (major, minor, patch) comparison of version strings
- Querying the installed binary for its version
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from sentinel_updater.errors import VersionCheckError
from sentinel_updater.logging import get_logger

logger = get_logger(__name__)

VERSION_ARGUMENT = "--version"

# A token such as "v1.6.116"; anything after the first digit is kept as-is
_VERSION_TOKEN_PATTERN = re.compile(r"^v\d")
_LEADING_INT_PATTERN = re.compile(r"^\d+")


def extract_version_token(output: str) -> str:
    """
    Extract the version token from version-report output.

    The first whitespace-separated token starting with ``v`` followed by a
    digit wins. If there is none, the whole trimmed output is returned.

    Args:
        output: Raw standard output of the binary.

    Returns:
        The version token (e.g., "v1.6.116").

    Example:
        >>> extract_version_token("sentinel version v1.6.116 (linux/amd64)")
        'v1.6.116'
    """
    for token in output.split():
        if _VERSION_TOKEN_PATTERN.match(token):
            return token

    trimmed = output.strip()
    logger.warning(
        "No version token found in output, using raw output",
        extra={"output": trimmed},
    )
    return trimmed


def parse_version(version: str) -> tuple[int, int, int]:
    """
    Parse a version string into a zero-padded (major, minor, patch) tuple.

    A leading ``v`` is stripped. Missing segments are zero. Each segment
    contributes its leading digits only, so ``"3-rc1"`` parses as 3 and a
    segment without digits parses as 0.

    Args:
        version: Version string (e.g., "v1.6.116", "1.2").

    Returns:
        Tuple of three integers.
    """
    parts = version.strip().removeprefix("v").split(".")
    numbers = [0, 0, 0]

    for index, part in enumerate(parts[:3]):
        match = _LEADING_INT_PATTERN.match(part)
        if match:
            numbers[index] = int(match.group(0))

    return numbers[0], numbers[1], numbers[2]


def is_newer_version(current: str, latest: str) -> bool:
    """
    Check whether ``latest`` is strictly newer than ``current``.

    Identical strings short-circuit to False; otherwise the parsed triples
    are compared left to right.

    Args:
        current: Installed version.
        latest: Latest published version.

    Returns:
        True if an update is due.
    """
    if current == latest:
        return False

    return parse_version(latest) > parse_version(current)


async def get_installed_version(
    binary_path: Path | str,
    *,
    timeout: float = 15.0,
) -> str:
    """
    Ask the installed binary for its version.

    Args:
        binary_path: Absolute path to the managed binary.
        timeout: Seconds to wait for the process.

    Returns:
        The extracted version token.

    Raises:
        VersionCheckError: If the binary cannot be run, times out, exits
            non-zero, or prints nothing.
    """
    binary = str(binary_path)

    try:
        proc = await asyncio.create_subprocess_exec(
            binary,
            VERSION_ARGUMENT,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise VersionCheckError(
            f"Failed to execute {binary} {VERSION_ARGUMENT}",
            details={"binary_path": binary, "error": str(e)},
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise VersionCheckError(
            f"Version command timed out after {timeout}s",
            details={"binary_path": binary},
        ) from e

    if proc.returncode != 0:
        raise VersionCheckError(
            f"Version command exited with status {proc.returncode}",
            details={
                "binary_path": binary,
                "returncode": proc.returncode,
                "stderr": stderr.decode(errors="replace").strip() if stderr else "",
            },
        )

    output = stdout.decode(errors="replace") if stdout else ""
    if not output.strip():
        raise VersionCheckError(
            "Version command produced no output",
            details={"binary_path": binary},
        )

    return extract_version_token(output)
