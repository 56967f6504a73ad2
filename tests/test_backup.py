"""
Tests for the backup manager.

This test module validates:
- Snapshot next to the binary
- Restore to the exact original path
- Discard after success
"""

from __future__ import annotations

import stat
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from sentinel_updater.backup import BackupManager
from sentinel_updater.errors import BackupError, BackupMissingError
from sentinel_updater.models import UpdateContext
from sentinel_updater.paths import backup_path_for


def _context(binary_path: Path) -> UpdateContext:
    return UpdateContext(
        binary_path=binary_path,
        binary_dir=binary_path.parent,
        backup_path=backup_path_for(binary_path),
        current_version="v1.0.0",
        target_version="v1.1.0",
        started_at=datetime.now(UTC),
        detection_method="fixed",
    )


@pytest.fixture
def manager() -> BackupManager:
    return BackupManager()


class TestSnapshot:
    """Tests for BackupManager.snapshot."""

    def test_creates_backup(
        self, manager: BackupManager, binary_path: Path, old_binary: bytes
    ) -> None:
        """Test that the backup is an executable copy next to the binary."""
        record = manager.snapshot(_context(binary_path))

        assert record.backup_path == binary_path.with_name("sentinel.backup")
        assert record.backup_path.read_bytes() == old_binary
        assert stat.S_IMODE(record.backup_path.stat().st_mode) == 0o755
        assert record.original_path == binary_path
        assert record.version == "v1.0.0"
        assert record.size_bytes == len(old_binary)

    def test_overwrites_stale_backup(
        self, manager: BackupManager, binary_path: Path, old_binary: bytes
    ) -> None:
        backup_path_for(binary_path).write_bytes(b"stale")

        record = manager.snapshot(_context(binary_path))

        assert record.backup_path.read_bytes() == old_binary

    def test_missing_binary(self, manager: BackupManager, tmp_path: Path) -> None:
        with pytest.raises(BackupError, match="not found"):
            manager.snapshot(_context(tmp_path / "sentinel"))

    def test_copy_failure(self, manager: BackupManager, binary_path: Path) -> None:
        with (
            patch("sentinel_updater.backup.shutil.copyfile", side_effect=OSError("ENOSPC")),
            pytest.raises(BackupError, match="ENOSPC"),
        ):
            manager.snapshot(_context(binary_path))


class TestRestore:
    """Tests for BackupManager.restore."""

    def test_restores_byte_identical(
        self, manager: BackupManager, binary_path: Path, old_binary: bytes, new_binary: bytes
    ) -> None:
        """Test that the original bytes return to the original path."""
        record = manager.snapshot(_context(binary_path))
        binary_path.write_bytes(new_binary)

        manager.restore(record)

        assert binary_path.read_bytes() == old_binary
        assert stat.S_IMODE(binary_path.stat().st_mode) == 0o755
        assert record.backup_path.exists()

    def test_restores_deleted_binary(
        self, manager: BackupManager, binary_path: Path, old_binary: bytes
    ) -> None:
        record = manager.snapshot(_context(binary_path))
        binary_path.unlink()

        manager.restore(record)

        assert binary_path.read_bytes() == old_binary

    def test_missing_backup(self, manager: BackupManager, binary_path: Path) -> None:
        record = manager.snapshot(_context(binary_path))
        record.backup_path.unlink()

        assert manager.exists(record) is False
        with pytest.raises(BackupMissingError):
            manager.restore(record)

    def test_restore_failure(self, manager: BackupManager, binary_path: Path) -> None:
        record = manager.snapshot(_context(binary_path))

        with (
            patch("sentinel_updater.operations.os.replace", side_effect=OSError("EBUSY")),
            pytest.raises(BackupError, match="Failed to restore"),
        ):
            manager.restore(record)


class TestDiscard:
    """Tests for BackupManager.discard."""

    def test_deletes_backup(self, manager: BackupManager, binary_path: Path) -> None:
        record = manager.snapshot(_context(binary_path))

        assert manager.discard(record) is True
        assert not record.backup_path.exists()

    def test_already_gone(self, manager: BackupManager, binary_path: Path) -> None:
        record = manager.snapshot(_context(binary_path))
        record.backup_path.unlink()

        assert manager.discard(record) is False

    def test_unlink_failure(self, manager: BackupManager, binary_path: Path) -> None:
        record = manager.snapshot(_context(binary_path))

        with (
            patch.object(Path, "unlink", side_effect=PermissionError("EACCES")),
            pytest.raises(BackupError),
        ):
            manager.discard(record)
