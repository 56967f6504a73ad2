"""
Update orchestrator for the managed agent.

This module implements the UpdateOrchestrator class that runs one version
check and, when an update is due, a transactional upgrade with rollback.

Phases:
- check_version: compare the installed version with the latest one
- build_context: resolve the binary before anything is touched
- backup: copy the binary to <binary>.backup
- stop_service / uninstall_service: idempotent, a missing service is fine
- cleanup: best-effort removal of the old binary and legacy artifacts
- compile: build the target version
- install: atomically place the new binary at the original path
- reinstall_service / start_service / verify: bring the service back

A failure from stop_service through verify triggers rollback, which
restores the backup to the exact path it was taken from. A failed
rollback is critical and logs the manual recovery steps.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sentinel_updater.backup import BackupManager
from sentinel_updater.detection.resolver import BinaryResolver
from sentinel_updater.errors import (
    BinaryDetectionError,
    FailedPreconditionError,
    InternalError,
    InvalidTransitionError,
    PhaseError,
    ServiceNotFoundError,
    UpdaterError,
)
from sentinel_updater.logging import get_logger
from sentinel_updater.models import (
    ROLLBACK_PHASES,
    BackupRecord,
    UpdateContext,
    UpdateOutcome,
    UpdatePhase,
    UpdateResult,
)
from sentinel_updater.operations import atomic_copy_file, is_executable, set_binary_ownership
from sentinel_updater.paths import (
    AGENT_MODULE,
    AGENT_SERVICE_NAME,
    backup_path_for,
    current_platform,
    get_agent_log_path,
    get_database_path,
    get_updater_log_path,
    is_windows,
    legacy_backup_path_for,
)
from sentinel_updater.retry import RetryPolicy
from sentinel_updater.sources import VersionSource
from sentinel_updater.supervisor.base import ServiceSupervisor
from sentinel_updater.toolchain import BuildToolchain, prepare_process_environment
from sentinel_updater.version import get_installed_version, is_newer_version

logger = get_logger(__name__)


VersionReader = Callable[[str], Awaitable[str]]
ProgressCallback = Callable[[UpdatePhase], None]

# Valid phase transitions
_VALID_TRANSITIONS: dict[UpdatePhase, set[UpdatePhase]] = {
    UpdatePhase.IDLE: {UpdatePhase.CHECK_VERSION, UpdatePhase.BUILD_CONTEXT},
    UpdatePhase.CHECK_VERSION: {UpdatePhase.BUILD_CONTEXT, UpdatePhase.IDLE},
    UpdatePhase.BUILD_CONTEXT: {UpdatePhase.BACKUP, UpdatePhase.IDLE},
    UpdatePhase.BACKUP: {UpdatePhase.STOP_SERVICE, UpdatePhase.IDLE},
    UpdatePhase.STOP_SERVICE: {UpdatePhase.UNINSTALL_SERVICE, UpdatePhase.ROLLBACK},
    UpdatePhase.UNINSTALL_SERVICE: {UpdatePhase.CLEANUP, UpdatePhase.ROLLBACK},
    UpdatePhase.CLEANUP: {UpdatePhase.COMPILE, UpdatePhase.ROLLBACK},
    UpdatePhase.COMPILE: {UpdatePhase.INSTALL, UpdatePhase.ROLLBACK},
    UpdatePhase.INSTALL: {UpdatePhase.REINSTALL_SERVICE, UpdatePhase.ROLLBACK},
    UpdatePhase.REINSTALL_SERVICE: {UpdatePhase.START_SERVICE, UpdatePhase.ROLLBACK},
    UpdatePhase.START_SERVICE: {UpdatePhase.VERIFY, UpdatePhase.ROLLBACK},
    UpdatePhase.VERIFY: {UpdatePhase.DONE, UpdatePhase.ROLLBACK},
    UpdatePhase.DONE: {UpdatePhase.IDLE},
    UpdatePhase.ROLLBACK: {UpdatePhase.ROLLED_BACK, UpdatePhase.CRITICAL},
    UpdatePhase.ROLLED_BACK: {UpdatePhase.IDLE},
    UpdatePhase.CRITICAL: {UpdatePhase.IDLE},
}

_FORWARD_PHASES = (
    UpdatePhase.STOP_SERVICE,
    UpdatePhase.UNINSTALL_SERVICE,
    UpdatePhase.CLEANUP,
    UpdatePhase.COMPILE,
    UpdatePhase.INSTALL,
    UpdatePhase.REINSTALL_SERVICE,
    UpdatePhase.START_SERVICE,
    UpdatePhase.VERIFY,
)


class UpdateOrchestrator:
    """
    Drives one upgrade attempt at a time through the update phases.

    All collaborators are passed in; nothing is looked up globally. The
    resolver's cache is shared with whoever else holds the resolver.

    Example:
        >>> orchestrator = UpdateOrchestrator(resolver, supervisor, source, toolchain)
        >>> result = await orchestrator.check_and_update()
        >>> result.outcome
        <UpdateOutcome.NO_UPDATE: 'no_update'>
    """

    def __init__(
        self,
        resolver: BinaryResolver,
        supervisor: ServiceSupervisor,
        version_source: VersionSource,
        toolchain: BuildToolchain,
        backup_manager: BackupManager | None = None,
        *,
        service_name: str = AGENT_SERVICE_NAME,
        module: str = AGENT_MODULE,
        verify_policy: RetryPolicy | None = None,
        version_reader: VersionReader | None = None,
        version_timeout: float = 15.0,
        prepare_environment: Callable[[], Any] | None = None,
        system: str | None = None,
    ) -> None:
        """
        Initialize the UpdateOrchestrator.

        Args:
            resolver: Binary location resolver.
            supervisor: Service supervisor for the host.
            version_source: Source of the latest published version.
            toolchain: Build toolchain producing the new executable.
            backup_manager: Backup manager (default: BackupManager()).
            service_name: Agent service name.
            module: Agent module identifier.
            verify_policy: Retry policy for post-start verification.
            version_reader: Async callable returning the installed version
                for a binary path.
            version_timeout: Timeout for the default version reader.
            prepare_environment: Called before an attempt to set HOME and
                GOPATH for the toolchain.
            system: Platform name; defaults to the host platform.
        """
        self._resolver = resolver
        self._supervisor = supervisor
        self._version_source = version_source
        self._toolchain = toolchain
        self._backup = backup_manager or BackupManager()
        self._service_name = service_name
        self._module = module
        self._verify_policy = verify_policy or RetryPolicy(max_attempts=3, delay_seconds=2.0)
        self._version_timeout = version_timeout
        self._version_reader = version_reader or self._read_installed_version
        self._system = system or current_platform()
        self._prepare_environment = prepare_environment or (
            lambda: prepare_process_environment(self._system)
        )

        self._phase = UpdatePhase.IDLE
        self._lock = asyncio.Lock()
        self._context: UpdateContext | None = None
        self._built_binary: Path | None = None
        self._last_result: UpdateResult | None = None
        self._progress_callbacks: list[ProgressCallback] = []

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def phase(self) -> UpdatePhase:
        """Get the current phase."""
        return self._phase

    @property
    def is_busy(self) -> bool:
        """Check whether an attempt is in progress."""
        return self._lock.locked()

    @property
    def last_result(self) -> UpdateResult | None:
        return self._last_result

    def add_progress_callback(self, callback: ProgressCallback) -> None:
        """Add a callback to be notified of phase changes."""
        self._progress_callbacks.append(callback)

    def _notify_progress(self) -> None:
        for callback in self._progress_callbacks:
            try:
                callback(self._phase)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _transition_to(self, new_phase: UpdatePhase) -> None:
        """
        Transition to a new phase.

        Raises:
            InvalidTransitionError: If the transition is not valid.
        """
        current = self._phase
        valid = _VALID_TRANSITIONS.get(current, set())

        if new_phase not in valid:
            raise InvalidTransitionError(
                f"Invalid phase transition from {current.value} to {new_phase.value}",
                details={
                    "current_phase": current.value,
                    "target_phase": new_phase.value,
                    "valid_transitions": sorted(p.value for p in valid),
                },
            )

        logger.info(
            f"Phase transition: {current.value} -> {new_phase.value}",
            extra={
                "old_phase": current.value,
                "new_phase": new_phase.value,
                "target_version": self._context.target_version if self._context else None,
            },
        )

        self._phase = new_phase
        self._notify_progress()

    def reset(self) -> None:
        """Force the orchestrator back to idle after an unexpected error."""
        if self._phase != UpdatePhase.IDLE:
            logger.warning(
                "Resetting orchestrator to idle",
                extra={"phase": self._phase.value},
            )
        self._phase = UpdatePhase.IDLE
        self._context = None
        self._built_binary = None
        self._notify_progress()

    def get_status(self) -> dict[str, Any]:
        """Return the current phase, the active attempt and the last result."""
        context = self._context
        return {
            "phase": self._phase.value,
            "busy": self.is_busy,
            "binary_path": str(context.binary_path) if context else None,
            "current_version": context.current_version if context else None,
            "target_version": context.target_version if context else None,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }

    def _finish(self, result: UpdateResult) -> UpdateResult:
        self._last_result = result
        self._context = None
        self._built_binary = None
        if self._phase != UpdatePhase.IDLE:
            self._transition_to(UpdatePhase.IDLE)
        return result

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def check_and_update(self) -> UpdateResult:
        """
        Run one scheduler tick: check the version and update when due.

        Returns:
            The tick's UpdateResult.

        Raises:
            FailedPreconditionError: If an attempt is already running.
        """
        self._ensure_not_busy()

        async with self._lock:
            try:
                self._transition_to(UpdatePhase.CHECK_VERSION)

                try:
                    current, latest = await self._check_version()
                except UpdaterError as e:
                    logger.error(
                        "Version check failed, will retry on next tick",
                        extra={"error": e.message, "error_code": e.error_code},
                    )
                    return self._finish(
                        UpdateResult(
                            outcome=UpdateOutcome.CHECK_FAILED,
                            failed_phase=UpdatePhase.CHECK_VERSION,
                            message=e.message,
                        )
                    )

                logger.info(
                    "Version check complete",
                    extra={"current_version": current, "latest_version": latest},
                )

                if not is_newer_version(current, latest):
                    logger.info("No update needed", extra={"current_version": current})
                    return self._finish(
                        UpdateResult(
                            outcome=UpdateOutcome.NO_UPDATE,
                            current_version=current,
                            target_version=latest,
                            message="Installed version is up to date",
                        )
                    )

                logger.info(f"New version available: {current} -> {latest}")
                return await self._run_attempt(current, latest)
            except BaseException:
                self.reset()
                raise

    async def perform_update(self, current_version: str, target_version: str) -> UpdateResult:
        """
        Run an update attempt to ``target_version`` without a version check.

        Raises:
            FailedPreconditionError: If an attempt is already running.
        """
        self._ensure_not_busy()

        async with self._lock:
            try:
                return await self._run_attempt(current_version, target_version)
            except BaseException:
                self.reset()
                raise

    def _ensure_not_busy(self) -> None:
        if self._lock.locked():
            raise FailedPreconditionError(
                "An update attempt is already in progress",
                details={"phase": self._phase.value},
            )

    # -------------------------------------------------------------------------
    # Version check
    # -------------------------------------------------------------------------

    async def _read_installed_version(self, binary_path: str) -> str:
        return await get_installed_version(binary_path, timeout=self._version_timeout)

    async def _check_version(self) -> tuple[str, str]:
        resolved = await self._resolver.resolve()

        if not Path(resolved.path).exists():
            self._resolver.invalidate()
            raise FailedPreconditionError(
                f"Binary disappeared at {resolved.path}",
                details={"binary_path": resolved.path},
            )

        try:
            current = await self._version_reader(resolved.path)
        except UpdaterError:
            # The path may be stale
            self._resolver.invalidate()
            raise

        latest = await self._version_source.get_latest(self._module)
        return current, latest

    # -------------------------------------------------------------------------
    # Update attempt
    # -------------------------------------------------------------------------

    async def _run_attempt(self, current_version: str, target_version: str) -> UpdateResult:
        logger.info(
            "Starting update attempt",
            extra={"current_version": current_version, "target_version": target_version},
        )

        self._transition_to(UpdatePhase.BUILD_CONTEXT)
        try:
            context = await self._build_context(current_version, target_version)
        except UpdaterError as e:
            logger.error(
                "Update aborted before any changes",
                extra={"phase": UpdatePhase.BUILD_CONTEXT.value, "error": e.message},
            )
            return self._finish(
                UpdateResult(
                    outcome=UpdateOutcome.ABORTED,
                    current_version=current_version,
                    target_version=target_version,
                    failed_phase=UpdatePhase.BUILD_CONTEXT,
                    message=e.message,
                )
            )
        self._context = context

        self._transition_to(UpdatePhase.BACKUP)
        try:
            record = self._backup.snapshot(context)
        except UpdaterError as e:
            logger.error(
                "Update aborted: backup failed",
                extra={"phase": UpdatePhase.BACKUP.value, "error": e.message},
            )
            return self._finish(
                UpdateResult(
                    outcome=UpdateOutcome.ABORTED,
                    current_version=current_version,
                    target_version=target_version,
                    failed_phase=UpdatePhase.BACKUP,
                    message=e.message,
                )
            )

        handlers: dict[UpdatePhase, Callable[[UpdateContext], Awaitable[None]]] = {
            UpdatePhase.STOP_SERVICE: self._stop_service,
            UpdatePhase.UNINSTALL_SERVICE: self._uninstall_service,
            UpdatePhase.CLEANUP: self._cleanup,
            UpdatePhase.COMPILE: self._compile,
            UpdatePhase.INSTALL: self._install,
            UpdatePhase.REINSTALL_SERVICE: self._reinstall_service,
            UpdatePhase.START_SERVICE: self._start_service,
            UpdatePhase.VERIFY: self._verify,
        }

        try:
            for phase in _FORWARD_PHASES:
                self._transition_to(phase)
                await self._run_phase(phase, handlers[phase], context)
        except PhaseError as e:
            if e.phase not in ROLLBACK_PHASES:
                raise
            logger.error(
                f"Update failed during {e.phase.value}, rolling back",
                extra={"phase": e.phase.value, "error": e.message},
            )
            return self._finish(await self._rollback(context, record, e))

        self._transition_to(UpdatePhase.DONE)
        try:
            self._backup.discard(record)
        except UpdaterError as e:
            logger.warning(
                "Failed to delete backup after successful update",
                extra={"backup_path": str(record.backup_path), "error": e.message},
            )

        logger.info(
            f"Update completed successfully to version {target_version}",
            extra={
                "binary_path": str(context.binary_path),
                "previous_version": current_version,
                "target_version": target_version,
            },
        )
        return self._finish(
            UpdateResult(
                outcome=UpdateOutcome.SUCCEEDED,
                current_version=current_version,
                target_version=target_version,
                message=f"Updated to {target_version}",
            )
        )

    async def _run_phase(
        self,
        phase: UpdatePhase,
        handler: Callable[[UpdateContext], Awaitable[None]],
        context: UpdateContext,
    ) -> None:
        try:
            await handler(context)
        except PhaseError:
            raise
        except Exception as e:
            message = e.message if isinstance(e, UpdaterError) else str(e)
            raise PhaseError(
                phase,
                message,
                details={"cause": type(e).__name__},
            ) from e

    async def _build_context(self, current_version: str, target_version: str) -> UpdateContext:
        try:
            self._prepare_environment()
        except UpdaterError:
            raise
        except Exception as e:
            raise FailedPreconditionError(
                f"Failed to prepare environment: {e}",
            ) from e

        resolved = await self._resolver.resolve()
        binary_path = Path(resolved.path)

        context = UpdateContext(
            binary_path=binary_path,
            binary_dir=binary_path.parent,
            backup_path=backup_path_for(binary_path),
            current_version=current_version,
            target_version=target_version,
            started_at=datetime.now(UTC),
            detection_method=resolved.method,
        )
        logger.info(
            "Update context built",
            extra={
                "binary_path": str(context.binary_path),
                "backup_path": str(context.backup_path),
                "detection_method": context.detection_method,
            },
        )
        return context

    async def _stop_service(self, context: UpdateContext) -> None:
        try:
            await self._supervisor.stop(self._service_name)
        except ServiceNotFoundError:
            logger.info(f"Service {self._service_name} not registered, treating as stopped")

    async def _uninstall_service(self, context: UpdateContext) -> None:
        try:
            await self._supervisor.uninstall(self._service_name)
        except ServiceNotFoundError:
            logger.info(f"Service {self._service_name} not registered, treating as uninstalled")

    async def _cleanup(self, context: UpdateContext) -> None:
        """Best-effort removal of the old binary; never fails the attempt."""
        targets = (
            ("binary", context.binary_path),
            ("legacy backup", legacy_backup_path_for(context.binary_path)),
        )
        for label, path in targets:
            try:
                path.unlink()
                logger.info(f"Deleted {label}", extra={"path": str(path)})
            except FileNotFoundError:
                logger.debug(f"No {label} to delete", extra={"path": str(path)})
            except OSError as e:
                logger.warning(
                    f"Failed to delete {label}",
                    extra={"path": str(path), "error": str(e)},
                )

        if context.backup_path.exists():
            logger.info(
                "Preserving backup file for potential rollback",
                extra={"backup_path": str(context.backup_path)},
            )
        else:
            logger.warning(
                "Backup file not found, rollback will not be possible",
                extra={"backup_path": str(context.backup_path)},
            )

        for label, path in (
            ("Database", get_database_path(self._system)),
            ("Updater log", get_updater_log_path(self._system)),
            ("Agent log", get_agent_log_path(self._system)),
        ):
            if path.exists():
                logger.info(f"{label} preserved", extra={"path": str(path)})

    async def _compile(self, context: UpdateContext) -> None:
        self._built_binary = await self._toolchain.compile(
            self._module, context.target_version
        )

    async def _install(self, context: UpdateContext) -> None:
        built = self._built_binary
        if built is None:
            raise InternalError("No compiled binary available to install")

        size = atomic_copy_file(built, context.binary_path)
        set_binary_ownership(context.binary_path)

        if not is_executable(context.binary_path):
            raise InternalError(
                f"Installed binary is not executable: {context.binary_path}",
                details={"binary_path": str(context.binary_path)},
            )

        # The binary just changed
        self._resolver.invalidate()
        logger.info(
            "Binary installed",
            extra={"binary_path": str(context.binary_path), "bytes": size},
        )

    async def _reinstall_service(self, context: UpdateContext) -> None:
        try:
            resolved = await self._resolver.resolve()
            binary_path = resolved.path
        except BinaryDetectionError:
            logger.warning(
                "Could not re-resolve binary after install, using original path",
                extra={"binary_path": str(context.binary_path)},
            )
            binary_path = str(context.binary_path)
        else:
            if binary_path != str(context.binary_path):
                logger.warning(
                    "Re-resolved binary differs from the installed path",
                    extra={
                        "resolved_path": binary_path,
                        "installed_path": str(context.binary_path),
                        "method": resolved.method,
                    },
                )

        await self._supervisor.install(self._service_name, binary_path)

    async def _start_service(self, context: UpdateContext) -> None:
        await self._supervisor.start(self._service_name)

    async def _verify(self, context: UpdateContext) -> None:
        if not await self._verify_running():
            raise InternalError(
                f"Service {self._service_name} is not running after start",
                details={"max_attempts": self._verify_policy.max_attempts},
            )

    async def _verify_running(self) -> bool:
        return await self._verify_policy.run(
            lambda: self._supervisor.is_running(self._service_name),
            description=f"Service {self._service_name} running check",
        )

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def _rollback(
        self,
        context: UpdateContext,
        record: BackupRecord,
        cause: PhaseError,
    ) -> UpdateResult:
        self._transition_to(UpdatePhase.ROLLBACK)

        logger.info(
            "Starting rollback",
            extra={
                "version": record.version,
                "backup_path": str(record.backup_path),
                "binary_path": str(record.original_path),
            },
        )

        def result(outcome: UpdateOutcome, message: str) -> UpdateResult:
            return UpdateResult(
                outcome=outcome,
                current_version=context.current_version,
                target_version=context.target_version,
                failed_phase=cause.phase,
                message=message,
                backup_path=record.backup_path,
            )

        if not self._backup.exists(record):
            self._critical(
                context,
                record,
                f"Backup file not found at {record.backup_path}",
                backup_missing=True,
            )
            return result(
                UpdateOutcome.CRITICAL,
                f"Backup missing at {record.backup_path}, manual recovery required",
            )

        steps: tuple[tuple[str, Callable[[], Awaitable[None]]], ...] = (
            ("restore binary", lambda: self._restore_backup(record)),
            # Same path as the backup source, never re-resolved
            (
                "reinstall service",
                lambda: self._supervisor.install(self._service_name, str(record.original_path)),
            ),
            ("start service", lambda: self._supervisor.start(self._service_name)),
            ("verify service", self._verify_after_rollback),
        )

        for step_name, step in steps:
            try:
                await step()
            except Exception as e:
                message = e.message if isinstance(e, UpdaterError) else str(e)
                self._critical(context, record, f"Rollback failed to {step_name}: {message}")
                return result(
                    UpdateOutcome.CRITICAL,
                    f"Rollback failed to {step_name}: {message}",
                )
            logger.info(f"Rollback step complete: {step_name}")

        self._transition_to(UpdatePhase.ROLLED_BACK)
        logger.info(
            f"Rollback completed successfully to version {record.version}",
            extra={"binary_path": str(record.original_path)},
        )
        logger.info(
            "Backup file preserved for manual inspection; delete it after verifying system health",
            extra={
                "backup_path": str(record.backup_path),
                "command": f"{'del' if is_windows(self._system) else 'rm'} {record.backup_path}",
            },
        )
        return result(
            UpdateOutcome.ROLLED_BACK,
            f"Update to {context.target_version} failed during {cause.phase.value}: "
            f"{cause.message}; rolled back to {record.version}",
        )

    async def _restore_backup(self, record: BackupRecord) -> None:
        self._backup.restore(record)
        self._resolver.invalidate()

    async def _verify_after_rollback(self) -> None:
        if not await self._verify_running():
            raise InternalError(f"Service {self._service_name} not running after rollback")

    def _recovery_instructions(self, record: BackupRecord, *, backup_missing: bool) -> list[str]:
        if backup_missing:
            return [
                "The system cannot be restored automatically without the backup file",
                f"Reinstall the agent binary manually at {record.original_path}",
                "Check whether a backup exists at an alternate location",
                *self._supervisor.recovery_commands(self._service_name),
            ]

        copy = "copy" if is_windows(self._system) else "cp"
        reinstall, start = self._supervisor.recovery_commands(self._service_name)
        return [
            f"Restore the binary: {copy} {record.backup_path} {record.original_path}",
            f"Reinstall the service: {reinstall}",
            f"Start the service: {start}",
            f"Backup file preserved at: {record.backup_path}",
        ]

    def _critical(
        self,
        context: UpdateContext,
        record: BackupRecord,
        message: str,
        *,
        backup_missing: bool = False,
    ) -> None:
        self._transition_to(UpdatePhase.CRITICAL)
        instructions = self._recovery_instructions(record, backup_missing=backup_missing)

        logger.critical(
            f"{message} - manual recovery required",
            extra={
                "binary_path": str(record.original_path),
                "backup_path": str(record.backup_path),
                "current_version": context.current_version,
                "target_version": context.target_version,
                "recovery_instructions": instructions,
            },
        )
        for index, line in enumerate(instructions, start=1):
            logger.critical(f"RECOVERY STEP {index}: {line}")
