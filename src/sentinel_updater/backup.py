"""
Pre-update backup of the managed binary.

The backup always lives at ``<binary>.backup`` next to the binary, and a
restore always writes back to the path the backup was taken from. The
path is never re-resolved between snapshot and restore.
"""

from __future__ import annotations

import shutil
from datetime import UTC, datetime
from pathlib import Path

from sentinel_updater.errors import BackupError, BackupMissingError, UpdaterError
from sentinel_updater.logging import get_logger
from sentinel_updater.models import BackupRecord, UpdateContext
from sentinel_updater.operations import BINARY_MODE, atomic_copy_file, set_binary_ownership

logger = get_logger(__name__)


class BackupManager:
    """
    Creates, restores and discards binary backups.

    Example:
        >>> manager = BackupManager()
        >>> record = manager.snapshot(context)
        >>> manager.restore(record)
    """

    def snapshot(self, context: UpdateContext) -> BackupRecord:
        """
        Copy the current binary to ``context.backup_path``.

        Args:
            context: The current update attempt.

        Returns:
            A BackupRecord whose original_path is ``context.binary_path``.

        Raises:
            BackupError: If the binary is missing or the copy fails.
        """
        source = context.binary_path
        destination = context.backup_path

        logger.info(
            "Creating backup",
            extra={
                "binary_path": str(source),
                "backup_path": str(destination),
                "version": context.current_version,
            },
        )

        if not source.is_file():
            raise BackupError(
                f"Binary not found at {source}",
                details={"binary_path": str(source)},
            )

        try:
            shutil.copyfile(source, destination)
            destination.chmod(BINARY_MODE)
        except OSError as e:
            raise BackupError(
                f"Failed to create backup: {e}",
                details={
                    "binary_path": str(source),
                    "backup_path": str(destination),
                    "error": str(e),
                },
            ) from e

        try:
            size = destination.stat().st_size
        except OSError as e:
            raise BackupError(
                "Backup file verification failed",
                details={"backup_path": str(destination), "error": str(e)},
            ) from e

        record = BackupRecord(
            version=context.current_version,
            backup_path=destination,
            original_path=source,
            created_at=datetime.now(UTC),
            size_bytes=size,
        )

        logger.info(
            "Backup created",
            extra={"backup_path": str(destination), "size_bytes": size},
        )
        return record

    def exists(self, record: BackupRecord) -> bool:
        """Check whether the backup file is still on disk."""
        return record.backup_path.is_file()

    def restore(self, record: BackupRecord) -> None:
        """
        Restore the backup bytes to ``record.original_path``.

        Raises:
            BackupMissingError: If the backup file is gone.
            BackupError: If the restore fails.
        """
        if not self.exists(record):
            raise BackupMissingError(
                f"Backup file not found at {record.backup_path}",
                details={"backup_path": str(record.backup_path)},
            )

        try:
            atomic_copy_file(record.backup_path, record.original_path)
        except UpdaterError as e:
            raise BackupError(
                f"Failed to restore binary: {e.message}",
                details={
                    "backup_path": str(record.backup_path),
                    "binary_path": str(record.original_path),
                    **e.details,
                },
            ) from e

        set_binary_ownership(record.original_path)

        logger.info(
            "Binary restored from backup",
            extra={
                "backup_path": str(record.backup_path),
                "binary_path": str(record.original_path),
                "version": record.version,
            },
        )

    def discard(self, record: BackupRecord) -> bool:
        """
        Delete the backup after a successful update.

        Returns:
            True if deleted, False if it was already gone.

        Raises:
            BackupError: If the file exists but cannot be deleted.
        """
        path: Path = record.backup_path
        if not path.exists():
            logger.warning(
                "Backup file not found, may have been already deleted",
                extra={"backup_path": str(path)},
            )
            return False

        try:
            path.unlink()
        except OSError as e:
            raise BackupError(
                f"Failed to delete backup file: {e}",
                details={"backup_path": str(path), "error": str(e)},
            ) from e

        logger.info("Backup file deleted", extra={"backup_path": str(path)})
        return True
