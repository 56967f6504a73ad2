"""
Binary location resolver.

Resolution order:
1. Cached path (validated on every hit)
2. Manual override from the updater-config.json file
3. Detection strategies (service config, running process, PATH, common paths)

A winning path is cached. When every strategy fails, a full diagnostic
report is logged and carried on the raised BinaryDetectionError. A
resolution failure is never fatal; callers retry on the next tick.
"""

from __future__ import annotations

import platform
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sentinel_updater.config import BinaryPathOverride, load_binary_path_override
from sentinel_updater.detection.cache import PathCache
from sentinel_updater.detection.strategies import (
    CommonPathsStrategy,
    DetectionStrategy,
    PathSearchStrategy,
)
from sentinel_updater.detection.validation import validate_binary_path
from sentinel_updater.errors import BinaryDetectionError
from sentinel_updater.logging import get_logger
from sentinel_updater.paths import (
    AGENT_BINARY_NAME,
    AGENT_MODULE,
    AGENT_SERVICE_NAME,
    binary_file_name,
    current_platform,
    get_common_paths,
    get_override_file_path,
    path_list_separator,
)

logger = get_logger(__name__)

MANUAL_METHOD = "manual_configuration"

# PATH directories listed in the report before truncating
_REPORT_PATH_LIMIT = 10
_RULE = "=" * 80
_SUBRULE = "-" * 80


@dataclass(frozen=True)
class DetectionError:
    """
    Diagnostic for one failed resolution strategy.

    Attributes:
        method: Strategy name (e.g., "service_config").
        description: Human-readable strategy description.
        reason: Why the strategy failed.
        path_found: Path that was found but failed validation, if any.
        attempted: Whether the strategy actually ran.
    """

    method: str
    description: str
    reason: str
    path_found: str | None = None
    attempted: bool = True


@dataclass(frozen=True)
class ResolvedBinary:
    """A validated binary path and the method that found it."""

    path: str
    method: str


OverrideLoader = Callable[[], BinaryPathOverride | None]


class BinaryResolver:
    """
    Finds and validates the managed binary.

    Example:
        >>> resolver = BinaryResolver(PathCache(), default_strategies(supervisor))
        >>> resolved = await resolver.resolve()
        >>> resolved.path
        '/usr/local/bin/sentinel'
    """

    def __init__(
        self,
        cache: PathCache,
        strategies: list[DetectionStrategy],
        *,
        override_loader: OverrideLoader | None = None,
        system: str | None = None,
        service_name: str = AGENT_SERVICE_NAME,
        binary_name: str = AGENT_BINARY_NAME,
        module: str = AGENT_MODULE,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            cache: Shared path cache.
            strategies: Strategies in priority order.
            override_loader: Returns the manual override, or None.
            system: Platform name; defaults to the host platform.
            service_name: Agent service name (used in the report).
            binary_name: Agent binary base name (used in the report).
            module: Agent module identifier (used in the report).
        """
        self._cache = cache
        self._strategies = list(strategies)
        self._override_loader = override_loader or load_binary_path_override
        self._system = system or current_platform()
        self._service_name = service_name
        self._binary_name = binary_name
        self._module = module

    @property
    def cache(self) -> PathCache:
        return self._cache

    @property
    def cached_path(self) -> str | None:
        entry = self._cache.get()
        return entry.path if entry else None

    def validate(self, path: str) -> str | None:
        """Return why ``path`` is not a usable binary, or None if it is."""
        return validate_binary_path(path, self._system)

    def invalidate(self) -> None:
        """Drop the cached path so the next resolve re-runs detection."""
        logger.info("Invalidating cached binary path", extra={"path": self.cached_path})
        self._cache.invalidate()

    async def refresh(self) -> ResolvedBinary:
        """Invalidate the cache and resolve again."""
        self.invalidate()
        return await self.resolve()

    async def resolve(self) -> ResolvedBinary:
        """
        Return the validated binary path.

        Raises:
            BinaryDetectionError: If every method failed.
        """
        entry = self._cache.get()
        if entry is not None:
            reason = self.validate(entry.path)
            if reason is None:
                logger.debug("Using cached binary path", extra={"path": entry.path})
                return ResolvedBinary(path=entry.path, method=entry.method)

            logger.warning(
                "Cached binary path is no longer valid, invalidating cache",
                extra={"path": entry.path, "reason": reason},
            )
            self._cache.invalidate()

        errors: list[DetectionError] = []

        override = self._override_loader()
        if override is not None:
            reason = self.validate(override.binary_path)
            if reason is None:
                logger.info(
                    "Using manually configured binary path",
                    extra={"path": override.binary_path},
                )
                self._cache.set(override.binary_path, MANUAL_METHOD)
                return ResolvedBinary(path=override.binary_path, method=MANUAL_METHOD)

            logger.warning(
                "Configured binary path invalid",
                extra={"path": override.binary_path, "reason": reason},
            )
            errors.append(
                DetectionError(
                    method=MANUAL_METHOD,
                    description="Manual configuration file",
                    reason=f"path validation failed: {reason}",
                    path_found=override.binary_path,
                )
            )

            if not override.enable_auto_detection:
                raise self._failure(errors)
            logger.info("Falling back to auto-detection")

        logger.info("Starting binary path detection", extra={"platform": self._system})

        for strategy in self._strategies:
            logger.debug(
                f"Attempting detection method: {strategy.name}",
                extra={"method": strategy.name},
            )

            try:
                path = await strategy.locate()
            except Exception as e:
                errors.append(
                    DetectionError(
                        method=strategy.name,
                        description=strategy.description,
                        reason=str(e),
                    )
                )
                logger.info(
                    f"Detection method {strategy.name} failed",
                    extra={"method": strategy.name, "reason": str(e)},
                )
                continue

            reason = self.validate(path)
            if reason is not None:
                errors.append(
                    DetectionError(
                        method=strategy.name,
                        description=strategy.description,
                        reason=f"path validation failed: {reason}",
                        path_found=path,
                    )
                )
                logger.warning(
                    f"Detection method {strategy.name} returned invalid path",
                    extra={"method": strategy.name, "path": path, "reason": reason},
                )
                continue

            logger.info(
                f"Binary detected using {strategy.name}",
                extra={"method": strategy.name, "path": path},
            )
            self._cache.set(path, strategy.name)
            return ResolvedBinary(path=path, method=strategy.name)

        raise self._failure(errors)

    def _failure(self, errors: list[DetectionError]) -> BinaryDetectionError:
        report = self.build_report(errors)
        logger.error(report)
        return BinaryDetectionError(
            f"Failed to detect {self._binary_name} binary path after trying "
            f"{len(errors)} methods",
            errors=errors,
            report=report,
        )

    def _report_common_paths(self) -> list[str]:
        for strategy in self._strategies:
            if isinstance(strategy, CommonPathsStrategy):
                return strategy.paths
        return get_common_paths(self._system, self._binary_name)

    def _report_path_dirs(self) -> list[str]:
        for strategy in self._strategies:
            if isinstance(strategy, PathSearchStrategy):
                return strategy.directories()
        return PathSearchStrategy(self._binary_name, self._system).directories()

    def _troubleshooting(self) -> list[str]:
        name = self._service_name
        exe = binary_file_name(self._system, self._binary_name)

        if self._system == "windows":
            return [
                "For Windows systems:",
                "",
                f"1. Verify the {self._binary_name} binary is installed:",
                f"   > where {exe}",
                f'   > dir "C:\\Program Files\\SentinelGo\\{exe}"',
                f'   > dir "%USERPROFILE%\\go\\bin\\{exe}"',
                "",
                f"2. Check if the {name} service is configured:",
                f"   > sc query {name}",
                f"   > sc qc {name}",
                "",
                "3. Check if the binary is in your PATH:",
                "   > echo %PATH%",
                "",
            ]

        if self._system == "darwin":
            service_lines = [
                f"   $ launchctl list | grep {self._binary_name}",
                f"   $ cat /Library/LaunchDaemons/com.{name}.plist",
            ]
        else:
            service_lines = [
                f"   $ systemctl status {name}",
                f"   $ cat /etc/systemd/system/{name}.service",
            ]

        return [
            f"For {'macOS' if self._system == 'darwin' else 'Linux'} systems:",
            "",
            f"1. Verify the {self._binary_name} binary is installed:",
            f"   $ which {exe}",
            f"   $ ls -la /usr/local/bin/{exe}",
            f"   $ ls -la ~/go/bin/{exe}",
            "",
            f"2. Check if the {name} service is configured:",
            *service_lines,
            "",
            "3. Verify the binary has execute permissions:",
            f"   $ chmod +x /path/to/{exe}",
            "",
            "4. Check if the binary is in your PATH:",
            "   $ echo $PATH",
            "",
        ]

    def build_report(self, errors: list[DetectionError]) -> str:
        """
        Build the operator-facing report for a total detection failure.

        Lists every attempted method with its reason, platform-specific
        troubleshooting commands, the override file, and every location
        searched.
        """
        lines = [
            "",
            _RULE,
            f"{self._binary_name.upper()} BINARY PATH DETECTION FAILED",
            _RULE,
            "",
            f"Platform: {self._system} ({platform.machine() or 'unknown'})",
            f"Timestamp: {datetime.now(UTC).isoformat()}",
            "",
            f"All detection methods failed to locate the {self._binary_name} binary.",
            "",
            "ATTEMPTED DETECTION METHODS:",
            _SUBRULE,
        ]

        for index, error in enumerate(errors, start=1):
            lines.append("")
            lines.append(f"{index}. {error.description} ({error.method})")
            lines.append("   Status: FAILED")
            if error.path_found:
                lines.append(f"   Path Found: {error.path_found}")
            lines.append(f"   Error: {error.reason}")

        lines += ["", "TROUBLESHOOTING STEPS:", _SUBRULE, ""]
        lines += self._troubleshooting()
        lines += [
            "5. Manual configuration option:",
            "   Create a configuration file to manually specify the binary path:",
            f"   File: {get_override_file_path(self._system)}",
            "   Content:",
            "   {",
            f'     "binaryPath": "/full/path/to/{self._binary_name}",',
            '     "enableAutoDetection": true',
            "   }",
            "",
            f"6. Reinstall the {self._binary_name} binary:",
            "   If the binary is missing, reinstall it using:",
            f"   $ go install {self._module}/cmd/{self._binary_name}@latest",
            "",
            "SEARCHED LOCATIONS:",
            _SUBRULE,
            "",
            "Common installation directories checked:",
        ]
        lines += [f"  - {path}" for path in self._report_common_paths()]
        lines.append("")

        directories = self._report_path_dirs()
        if directories:
            lines.append(
                f"PATH environment variable directories "
                f"(separator '{path_list_separator(self._system)}'):"
            )
            lines += [f"  - {d}" for d in directories[:_REPORT_PATH_LIMIT]]
            if len(directories) > _REPORT_PATH_LIMIT:
                lines.append(
                    f"  ... and {len(directories) - _REPORT_PATH_LIMIT} more directories"
                )
            lines.append("")

        lines += [
            "NEXT STEPS:",
            _SUBRULE,
            "",
            "The updater will continue running and retry detection on the next update check.",
            "Please resolve the issue using the troubleshooting steps above.",
            "",
            _RULE,
        ]
        return "\n".join(lines)
