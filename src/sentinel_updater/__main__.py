"""
Command-line entry point for the SentinelGo updater.

Usage:
    sentinel-updater [run|check|detect] [--config PATH] [--log-level LEVEL]
"""

from __future__ import annotations

import asyncio
import functools
import signal
import sys
from dataclasses import dataclass

from sentinel_updater import __version__
from sentinel_updater.backup import BackupManager
from sentinel_updater.config import (
    AppConfig,
    build_arg_parser,
    load_binary_path_override,
    load_config,
)
from sentinel_updater.detection import BinaryResolver, PathCache, default_strategies
from sentinel_updater.errors import BinaryDetectionError, UpdaterError
from sentinel_updater.logging import get_logger, setup_logging
from sentinel_updater.orchestrator import UpdateOrchestrator
from sentinel_updater.paths import ensure_data_directory
from sentinel_updater.retry import RetryPolicy
from sentinel_updater.scheduler import UpdateScheduler
from sentinel_updater.sources import create_version_source
from sentinel_updater.supervisor import ServiceSupervisor, create_supervisor
from sentinel_updater.toolchain import GoToolchain

logger = get_logger(__name__)


@dataclass
class Components:
    """Wired collaborators for one updater process."""

    config: AppConfig
    supervisor: ServiceSupervisor
    resolver: BinaryResolver
    orchestrator: UpdateOrchestrator


def build_components(
    config: AppConfig,
    supervisor: ServiceSupervisor | None = None,
) -> Components:
    """
    Wire the updater from configuration.

    The resolver (and its cache) is shared by the version check and the
    update attempt.
    """
    supervisor = supervisor or create_supervisor()

    resolver = BinaryResolver(
        PathCache(),
        default_strategies(
            supervisor,
            service_name=config.updater.service_name,
            binary_name=config.updater.binary_name,
            extra_paths=config.detection.extra_search_paths,
        ),
        override_loader=functools.partial(
            load_binary_path_override, config.detection.override_file
        ),
        service_name=config.updater.service_name,
        binary_name=config.updater.binary_name,
        module=config.updater.module,
    )

    toolchain = GoToolchain(
        go_binary=config.build.go_binary,
        binary_name=config.updater.binary_name,
        timeout=config.build.compile_timeout_seconds,
        cgo_enabled=config.build.cgo_enabled,
    )

    orchestrator = UpdateOrchestrator(
        resolver,
        supervisor,
        create_version_source(config),
        toolchain,
        BackupManager(),
        service_name=config.updater.service_name,
        module=config.updater.module,
        verify_policy=RetryPolicy(
            max_attempts=config.verification.max_attempts,
            delay_seconds=config.verification.delay_seconds,
        ),
        version_timeout=config.updater.version_command_timeout_seconds,
    )

    return Components(
        config=config,
        supervisor=supervisor,
        resolver=resolver,
        orchestrator=orchestrator,
    )


async def run_service(components: Components) -> None:
    """Run the scheduler until SIGTERM or SIGINT."""
    scheduler = UpdateScheduler(
        components.orchestrator,
        interval_seconds=components.config.updater.check_interval_seconds,
    )
    stop_requested = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        stop_requested.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except (ValueError, NotImplementedError):
            # Not supported by the Windows event loop
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(signal_handler))

    logger.info(
        f"SentinelGo updater {__version__} starting",
        extra={
            "service_name": components.config.updater.service_name,
            "module": components.config.updater.module,
            "interval_seconds": components.config.updater.check_interval_seconds,
        },
    )

    try:
        ensure_data_directory()
    except OSError as e:
        logger.warning("Failed to create data directory", extra={"error": str(e)})

    await scheduler.start()
    await stop_requested.wait()
    await scheduler.stop()


async def run_check(components: Components) -> int:
    """Run a single tick and return a process exit code."""
    result = await components.orchestrator.check_and_update()
    print(result.message or result.outcome.value)
    return 0 if result.succeeded else 1


async def run_detect(components: Components) -> int:
    """Resolve the binary and print where it was found."""
    try:
        resolved = await components.resolver.resolve()
    except BinaryDetectionError as e:
        print(e.report or e.message, file=sys.stderr)
        return 1

    print(f"{resolved.path} ({resolved.method})")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, configure logging and run the selected command."""
    args, _ = build_arg_parser().parse_known_args(argv)

    if args.version:
        print(f"sentinel-updater {__version__}")
        return 0

    config = load_config(cli_args=argv if argv is not None else sys.argv[1:])
    setup_logging(config.logging)

    try:
        components = build_components(config)
        if args.command == "check":
            return asyncio.run(run_check(components))
        if args.command == "detect":
            return asyncio.run(run_detect(components))
        asyncio.run(run_service(components))
    except UpdaterError as e:
        logger.error(f"Updater failed: {e.message}", extra={"error_code": e.error_code})
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")

    return 0


if __name__ == "__main__":
    sys.exit(main())
