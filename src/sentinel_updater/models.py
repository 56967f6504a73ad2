"""
Data types shared by the orchestrator, backup manager and scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


class UpdatePhase(str, Enum):
    """
    Phases of one update attempt.

    Forward path:
        idle → check_version → build_context → backup → stop_service →
        uninstall_service → cleanup → compile → install → reinstall_service →
        start_service → verify → done → idle

    Any failure from stop_service through verify enters rollback, which ends
    in rolled_back or critical.
    """

    IDLE = "idle"
    CHECK_VERSION = "check_version"
    BUILD_CONTEXT = "build_context"
    BACKUP = "backup"
    STOP_SERVICE = "stop_service"
    UNINSTALL_SERVICE = "uninstall_service"
    CLEANUP = "cleanup"
    COMPILE = "compile"
    INSTALL = "install"
    REINSTALL_SERVICE = "reinstall_service"
    START_SERVICE = "start_service"
    VERIFY = "verify"
    DONE = "done"
    ROLLBACK = "rollback"
    ROLLED_BACK = "rolled_back"
    CRITICAL = "critical"


# Phases whose failure requires restoring the backup
ROLLBACK_PHASES = frozenset(
    {
        UpdatePhase.STOP_SERVICE,
        UpdatePhase.UNINSTALL_SERVICE,
        UpdatePhase.CLEANUP,
        UpdatePhase.COMPILE,
        UpdatePhase.INSTALL,
        UpdatePhase.REINSTALL_SERVICE,
        UpdatePhase.START_SERVICE,
        UpdatePhase.VERIFY,
    }
)


class UpdateOutcome(str, Enum):
    """Terminal outcome of one scheduler tick."""

    NO_UPDATE = "no_update"
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"
    CRITICAL = "critical"
    CHECK_FAILED = "check_failed"


@dataclass(frozen=True)
class UpdateContext:
    """
    Immutable facts about one update attempt, captured before any mutation.

    Attributes:
        binary_path: Resolved path of the managed binary.
        binary_dir: Directory containing the binary.
        backup_path: Where the pre-update bytes are copied.
        current_version: Installed version at the start of the attempt.
        target_version: Version being installed.
        started_at: When the attempt started (UTC).
        detection_method: Resolver strategy that found the binary.
    """

    binary_path: Path
    binary_dir: Path
    backup_path: Path
    current_version: str
    target_version: str
    started_at: datetime
    detection_method: str


@dataclass(frozen=True)
class BackupRecord:
    """
    A snapshot of the binary taken before mutation.

    ``original_path`` is the path the bytes were copied from and the only
    path a restore ever writes to.
    """

    version: str
    backup_path: Path
    original_path: Path
    created_at: datetime
    size_bytes: int


@dataclass
class UpdateResult:
    """
    Result of a check-and-update tick.

    Attributes:
        outcome: Terminal outcome.
        current_version: Installed version, if known.
        target_version: Latest version, if known.
        failed_phase: Phase that failed, if any.
        message: Human-readable summary.
        backup_path: Backup left on disk, if any.
        finished_at: When the tick finished (UTC).
    """

    outcome: UpdateOutcome
    current_version: str | None = None
    target_version: str | None = None
    failed_phase: UpdatePhase | None = None
    message: str = ""
    backup_path: Path | None = None
    finished_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def succeeded(self) -> bool:
        """Check whether the tick ended without a failure."""
        return self.outcome in (UpdateOutcome.NO_UPDATE, UpdateOutcome.SUCCEEDED)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "outcome": self.outcome.value,
            "current_version": self.current_version,
            "target_version": self.target_version,
            "failed_phase": self.failed_phase.value if self.failed_phase else None,
            "message": self.message,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "finished_at": self.finished_at.isoformat(),
        }
