"""
Error types for the SentinelGo updater.

This module defines the UpdaterError base class and the domain-specific
subclasses raised by the resolver, backup manager, service supervisors,
version sources, build toolchain and orchestrator.

Every error carries an error code, a human-readable message and optional
structured details so it can be logged as a single JSON record.
"""

from __future__ import annotations

from typing import Any


class UpdaterError(Exception):
    """
    Base exception class for updater errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "unavailable", "failed_precondition", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, versions).

    Example:
        >>> raise UpdaterError(
        ...     error_code="unavailable",
        ...     message="systemctl not available",
        ...     details={"hint": "This system may not use systemd"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdaterError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpdaterError):
    """Error raised when an operation receives invalid input."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class UnavailableError(UpdaterError):
    """
    Error raised when a required tool or service is unavailable.

    Used when systemctl/launchctl/sc.exe or the Go toolchain cannot be
    executed at all.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(UpdaterError):
    """
    Error raised when a precondition for the operation is not met.

    Used for illegal state transitions, a concurrent update attempt, or a
    missing binary.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class InternalError(UpdaterError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


# =============================================================================
# Binary detection
# =============================================================================


class BinaryDetectionError(UpdaterError):
    """
    Raised when every binary location strategy failed.

    Attributes:
        errors: One DetectionError per attempted strategy.
        report: Full operator-facing diagnostic report.
    """

    def __init__(
        self,
        message: str,
        errors: list[Any] | None = None,
        report: str = "",
    ) -> None:
        self.errors = list(errors or [])
        self.report = report
        super().__init__(
            error_code="not_found",
            message=message,
            details={
                "methods": [getattr(e, "method", str(e)) for e in self.errors],
            },
        )


# =============================================================================
# Backup
# =============================================================================


class BackupError(FailedPreconditionError):
    """Raised when the pre-update backup cannot be created or restored."""


class BackupMissingError(BackupError):
    """Raised when the backup file disappeared before rollback."""


# =============================================================================
# Service supervisor
# =============================================================================


class ServiceNotFoundError(UpdaterError):
    """Raised when the named service is not registered with the OS."""

    def __init__(self, service_name: str, details: dict[str, Any] | None = None) -> None:
        self.service_name = service_name
        super().__init__(
            error_code="not_found",
            message=f"Service {service_name} is not registered",
            details={"service": service_name, **(details or {})},
        )


class ServiceOperationError(UpdaterError):
    """Raised when a service manager command fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="internal", message=message, details=details)


# =============================================================================
# Versions and toolchain
# =============================================================================


class VersionSourceError(UnavailableError):
    """Raised when the latest published version cannot be determined."""


class VersionCheckError(UpdaterError):
    """Raised when the installed binary does not report its version."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class CompileError(UpdaterError):
    """Raised when the build toolchain fails to produce a binary."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="internal", message=message, details=details)


class CompileTimeoutError(CompileError):
    """Raised when the build toolchain exceeds its time budget."""


# =============================================================================
# Orchestration
# =============================================================================


class PhaseError(UpdaterError):
    """
    Tagged failure raised by a single update phase.

    The orchestrator inspects ``phase`` to decide between abort, rollback
    and critical termination.

    Attributes:
        phase: The UpdatePhase that failed.
    """

    def __init__(
        self,
        phase: Any,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.phase = phase
        phase_name = getattr(phase, "value", str(phase))
        super().__init__(
            error_code="phase_failed",
            message=message,
            details={"phase": phase_name, **(details or {})},
        )


class InvalidTransitionError(InvalidArgumentError):
    """Raised when the orchestrator is asked to make an illegal transition."""
