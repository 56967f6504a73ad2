"""
Configuration management for the SentinelGo updater.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/sentinel-updater/config.yml or --config path)
3. Environment variables (SENTINEL_UPDATER_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

Separately, the binary-path override file (updater-config.json in the data
directory) is read by load_binary_path_override() and consulted by the
resolver before auto-detection runs.
"""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sentinel_updater.logging import get_logger
from sentinel_updater.paths import (
    AGENT_BINARY_NAME,
    AGENT_MODULE,
    AGENT_SERVICE_NAME,
    get_override_file_path,
    get_updater_log_path,
)

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/sentinel-updater/config.yml")
DEFAULT_ENV_PREFIX = "SENTINEL_UPDATER_"

# =============================================================================
# Updater Configuration
# =============================================================================


class UpdaterConfig(BaseModel):
    """Managed agent and scheduling settings.

    Attributes:
        module: Module identifier of the managed agent.
        service_name: OS service name of the managed agent.
        binary_name: Base name of the managed executable.
        check_interval_seconds: Seconds between version checks.
        version_source: Latest-version lookup backend ('go_list' or 'proxy').
        proxy_url: Module proxy base URL for the 'proxy' source.
        version_command_timeout_seconds: Timeout for `<binary> --version`.
    """

    module: str = Field(
        default=AGENT_MODULE,
        description="Module identifier of the managed agent",
    )
    service_name: str = Field(
        default=AGENT_SERVICE_NAME,
        description="OS service name of the managed agent",
    )
    binary_name: str = Field(
        default=AGENT_BINARY_NAME,
        description="Base name of the managed executable",
    )
    check_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between version checks",
    )
    version_source: str = Field(
        default="go_list",
        description="Latest-version lookup backend: 'go_list' or 'proxy'",
    )
    proxy_url: str = Field(
        default="https://proxy.golang.org",
        description="Module proxy base URL used by the 'proxy' version source",
    )
    version_command_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Timeout for invoking the managed binary with --version",
    )

    @field_validator("version_source")
    @classmethod
    def validate_version_source(cls, v: str) -> str:
        """Validate the version source backend."""
        valid_sources = {"go_list", "proxy"}
        v_lower = v.lower()
        if v_lower not in valid_sources:
            raise ValueError(
                f"Invalid version source: {v}. Must be one of: {', '.join(sorted(valid_sources))}"
            )
        return v_lower


# =============================================================================
# Detection Configuration
# =============================================================================


class DetectionConfig(BaseModel):
    """Binary location resolver settings.

    Attributes:
        override_file: Path to the JSON binary-path override file.
        extra_search_paths: Additional candidate paths searched after the
            platform's conventional directories.
    """

    override_file: str = Field(
        default_factory=lambda: str(get_override_file_path()),
        description="JSON file with a manual binaryPath override",
    )
    extra_search_paths: list[str] = Field(
        default_factory=list,
        description="Additional candidate binary paths",
    )


# =============================================================================
# Verification Configuration
# =============================================================================


class VerificationConfig(BaseModel):
    """Service verification retry policy.

    Attributes:
        max_attempts: How many times IsRunning is polled.
        delay_seconds: Delay between polls.
    """

    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum IsRunning polls after start",
    )
    delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Delay in seconds between IsRunning polls",
    )


# =============================================================================
# Build Configuration
# =============================================================================


class BuildConfig(BaseModel):
    """Build toolchain settings.

    Attributes:
        go_binary: Go command used for compilation and version queries.
        compile_timeout_seconds: Upper bound for a single compile.
        cgo_enabled: Whether to build with CGO (needed for SQLite).
    """

    go_binary: str = Field(
        default="go",
        description="Go command",
    )
    compile_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Timeout for `go install` in seconds",
    )
    cgo_enabled: bool = Field(
        default=True,
        description="Build with CGO_ENABLED=1",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Whether records are emitted as JSON.
        log_path: Optional rotated log file path.
        max_bytes: Max log file size before rotation.
        backup_count: Number of rotated files to keep.
    """

    level: str = Field(
        default="info",
        description="Log level",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON log records",
    )
    log_path: str | None = Field(
        default_factory=lambda: str(get_updater_log_path()),
        description="Rotated log file path (empty to disable)",
    )
    max_bytes: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Maximum log file size in bytes",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of rotated log files to keep",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        updater: Managed agent and scheduling settings.
        detection: Binary resolver settings.
        verification: Service verification retry policy.
        build: Build toolchain settings.
        logging: Logging configuration.
    """

    updater: UpdaterConfig = Field(
        default_factory=UpdaterConfig,
        description="Managed agent and scheduling settings",
    )
    detection: DetectionConfig = Field(
        default_factory=DetectionConfig,
        description="Binary resolver settings",
    )
    verification: VerificationConfig = Field(
        default_factory=VerificationConfig,
        description="Service verification retry policy",
    )
    build: BuildConfig = Field(
        default_factory=BuildConfig,
        description="Build toolchain settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Binary Path Override File
# =============================================================================


class BinaryPathOverride(BaseModel):
    """
    Manual binary-path override read from updater-config.json.

    The file uses the camelCase keys operators already know:
    ``{"binaryPath": "/opt/sentinel/sentinel", "enableAutoDetection": true}``.
    """

    model_config = ConfigDict(populate_by_name=True)

    binary_path: str = Field(
        default="",
        alias="binaryPath",
        description="Absolute path to the managed binary",
    )
    enable_auto_detection: bool = Field(
        default=True,
        alias="enableAutoDetection",
        description="Fall back to auto-detection when binaryPath is invalid",
    )


def load_binary_path_override(path: Path | str | None = None) -> BinaryPathOverride | None:
    """
    Read the optional binary-path override file.

    A missing or unreadable file is not an error; the resolver simply runs
    auto-detection.

    Args:
        path: Override file location; defaults to the data directory file.

    Returns:
        The parsed override, or None if absent, invalid, or without a path.
    """
    override_path = Path(path) if path else get_override_file_path()

    try:
        raw = override_path.read_bytes()
    except OSError:
        return None

    # json.loads detects UTF-8/16/32 from the bytes; undecodable content
    # raises UnicodeDecodeError, which is a ValueError
    try:
        override = BinaryPathOverride.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        logger.warning(
            "Failed to parse updater override file",
            extra={"path": str(override_path), "error": str(e)},
        )
        return None

    if not override.binary_path:
        return None

    return override


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Example: SENTINEL_UPDATER_UPDATER__CHECK_INTERVAL_SECONDS=60

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the command-line parser shared by config loading and the CLI."""
    parser = argparse.ArgumentParser(
        prog="sentinel-updater",
        description="SentinelGo Updater Service",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "check", "detect"],
        help="run: scheduler loop; check: single tick; detect: resolve the agent binary",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Override the version check interval in seconds",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="store_true",
        help="Show version information and exit",
    )

    return parser


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments into a config overlay.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parsed, _ = build_arg_parser().parse_known_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.interval is not None:
        result["updater"] = {"check_interval_seconds": parsed.interval}

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Later sources override earlier ones: defaults, YAML, environment, CLI.

    Args:
        config_path: Path to YAML configuration file. If None, uses default
            path or CLI --config argument.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
