"""
Atomic file operations for installing and restoring the agent binary.

The service manager must never observe a half-written executable, so every
write goes through the same pattern:
1. Write the bytes to a temp file in the destination directory
2. fsync and chmod the temp file
3. Atomically rename it over the destination (os.replace)

Either the new file is fully in place or the old bytes remain.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path

from sentinel_updater.errors import FailedPreconditionError, InternalError
from sentinel_updater.logging import get_logger
from sentinel_updater.paths import is_windows

logger = get_logger(__name__)

BINARY_MODE = 0o755
_COPY_CHUNK_SIZE = 1024 * 1024


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Raises:
        FailedPreconditionError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def atomic_copy_file(source: Path, destination: Path, *, mode: int = BINARY_MODE) -> int:
    """
    Copy ``source`` over ``destination`` atomically.

    Args:
        source: File to copy from.
        destination: File to replace.
        mode: Permission bits applied before the rename.

    Returns:
        Number of bytes written.

    Raises:
        FailedPreconditionError: If the source does not exist.
        InternalError: If the copy or rename fails.
    """
    if not source.is_file():
        raise FailedPreconditionError(
            f"Source file does not exist: {source}",
            details={"source": str(source)},
        )

    ensure_directory(destination.parent)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.",
        suffix=".tmp",
        dir=destination.parent,
    )
    temp_path = Path(temp_name)

    try:
        with open(source, "rb") as src, os.fdopen(fd, "wb") as dst:
            shutil.copyfileobj(src, dst, _COPY_CHUNK_SIZE)
            dst.flush()
            os.fsync(dst.fileno())

        os.chmod(temp_path, mode)
        size = temp_path.stat().st_size

        # Atomic rename
        os.replace(temp_path, destination)

    except OSError as e:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            logger.warning(
                "Failed to remove temporary file",
                extra={"path": str(temp_path)},
            )
        raise InternalError(
            f"Failed to copy {source} to {destination}: {e}",
            details={
                "source": str(source),
                "destination": str(destination),
                "error": str(e),
            },
        ) from e

    logger.debug(
        "Atomic copy completed",
        extra={"source": str(source), "destination": str(destination), "bytes": size},
    )
    return size


def set_binary_ownership(path: Path) -> None:
    """
    Make ``path`` executable and, when running as root, owned by root.

    Ownership failures are logged, not raised.
    """
    if is_windows():
        return

    try:
        os.chmod(path, BINARY_MODE)
    except OSError as e:
        logger.warning(
            "Failed to set executable permissions",
            extra={"path": str(path), "error": str(e)},
        )

    if os.geteuid() == 0:
        try:
            os.chown(path, 0, 0)
        except OSError as e:
            logger.warning(
                "Failed to set ownership to root",
                extra={"path": str(path), "error": str(e)},
            )


def is_executable(path: Path) -> bool:
    """Check that ``path`` is a regular file with an execute bit (always True on Windows for files)."""
    try:
        st = path.stat()
    except OSError:
        return False

    if not path.is_file():
        return False
    if is_windows():
        return True
    return bool(st.st_mode & 0o111)
