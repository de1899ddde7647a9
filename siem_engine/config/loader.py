"""
Configuration loader for YAML-based engine configuration.

This module loads and validates configuration from YAML files. All
configuration is validated using Pydantic models so that configuration
errors surface at startup rather than mid-cycle.

Configuration files expected:
    - config/detection.yaml: Detection window and single-signal rules
    - config/correlation.yaml: Correlation rules
    - config/escalation.yaml: Escalation tiers, service schedule, logging

A missing file falls back to that section's defaults; an empty or invalid
file is an error.

Environment variables override:
    - REDIS_URL: Redis connection URL
    - LOG_LEVEL: Application log level
    - SIEM_STORAGE_BACKEND: Repository backend (memory, redis)

Example:
    >>> from siem_engine.config.loader import load_config
    >>> config = load_config("config")
    >>> config.detection.brute_force.attempts
    5
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from siem_engine.config.models import (
    AppConfig,
    CorrelationConfig,
    DetectionConfig,
    EscalationConfig,
    LogLevel,
    RedisConnectionConfig,
    ServiceConfig,
    StorageBackend,
)

logger = structlog.get_logger(__name__)


class ConfigLoadError(Exception):
    """
    Raised when configuration loading fails.

    Attributes:
        message: Error message describing what went wrong.
        file_path: Path to the file that caused the error, if applicable.
        cause: Original exception that caused the error, if any.
    """

    def __init__(
        self,
        message: str,
        file_path: Optional[Path] = None,
        cause: Optional[Exception] = None,
    ):
        self.message = message
        self.file_path = file_path
        self.cause = cause
        super().__init__(message)


class ConfigLoader:
    """
    Loads and validates engine configuration from YAML files.

    Expects the following directory structure:
        config/
        ├── detection.yaml    - Detection rules and thresholds
        ├── correlation.yaml  - Correlation rules and windows
        └── escalation.yaml   - Escalation tiers and service settings

    Example:
        >>> loader = ConfigLoader("config")
        >>> config = loader.load()
        >>> config.correlation.attack_chain.window_seconds
        3600
    """

    def __init__(self, config_dir: Path | str = "config"):
        """
        Initialize config loader.

        Args:
            config_dir: Path to configuration directory (default: 'config').

        Raises:
            ConfigLoadError: If config directory does not exist.
        """
        self.config_dir = Path(config_dir)
        if not self.config_dir.exists():
            raise ConfigLoadError(
                f"Configuration directory not found: {self.config_dir}",
                file_path=self.config_dir,
            )
        if not self.config_dir.is_dir():
            raise ConfigLoadError(
                f"Configuration path is not a directory: {self.config_dir}",
                file_path=self.config_dir,
            )

    def _load_yaml(self, filename: str) -> Optional[Dict[str, Any]]:
        """
        Load a YAML file from the config directory.

        Args:
            filename: Name of YAML file (e.g., 'detection.yaml').

        Returns:
            Parsed mapping, or None if the file does not exist.

        Raises:
            ConfigLoadError: If the file is empty, not a mapping, or invalid YAML.
        """
        file_path = self.config_dir / filename
        if not file_path.exists():
            logger.info("config_file_missing_using_defaults", file=str(file_path))
            return None

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigLoadError(
                f"Invalid YAML syntax in {file_path}: {e}",
                file_path=file_path,
                cause=e,
            ) from e
        except OSError as e:
            raise ConfigLoadError(
                f"Error reading {file_path}: {e}",
                file_path=file_path,
                cause=e,
            ) from e

        if data is None:
            raise ConfigLoadError(
                f"Configuration file is empty: {file_path}",
                file_path=file_path,
            )
        if not isinstance(data, dict):
            raise ConfigLoadError(
                f"Configuration file must contain a mapping: {file_path}",
                file_path=file_path,
            )
        return data

    def _load_detection(self) -> DetectionConfig:
        """Load detection.yaml."""
        data = self._load_yaml("detection.yaml")
        if data is None:
            return DetectionConfig()
        try:
            return DetectionConfig.model_validate(data.get("detection", data))
        except ValidationError as e:
            raise ConfigLoadError(
                f"Invalid detection configuration: {e}",
                file_path=self.config_dir / "detection.yaml",
                cause=e,
            ) from e

    def _load_correlation(self) -> CorrelationConfig:
        """Load correlation.yaml."""
        data = self._load_yaml("correlation.yaml")
        if data is None:
            return CorrelationConfig()
        try:
            return CorrelationConfig.model_validate(data.get("correlation", data))
        except ValidationError as e:
            raise ConfigLoadError(
                f"Invalid correlation configuration: {e}",
                file_path=self.config_dir / "correlation.yaml",
                cause=e,
            ) from e

    def _load_escalation(
        self,
    ) -> tuple[EscalationConfig, ServiceConfig, RedisConnectionConfig]:
        """
        Load escalation.yaml.

        The file carries up to three top-level sections: 'escalation' (tiers
        and immediate channels), 'service' (schedule, storage, logging) and
        'redis' (connection and key settings).
        """
        data = self._load_yaml("escalation.yaml")
        if data is None:
            return (
                EscalationConfig(),
                self._apply_service_env(ServiceConfig()),
                self._apply_redis_env(RedisConnectionConfig()),
            )
        try:
            escalation = EscalationConfig.model_validate(data.get("escalation", {}))
            service = ServiceConfig.model_validate(data.get("service", {}))
            redis = RedisConnectionConfig.model_validate(data.get("redis", {}))
        except ValidationError as e:
            raise ConfigLoadError(
                f"Invalid escalation configuration: {e}",
                file_path=self.config_dir / "escalation.yaml",
                cause=e,
            ) from e
        return escalation, self._apply_service_env(service), self._apply_redis_env(redis)

    def _apply_service_env(self, service: ServiceConfig) -> ServiceConfig:
        """Apply SIEM_STORAGE_BACKEND."""
        backend = os.getenv("SIEM_STORAGE_BACKEND")
        if not backend:
            return service
        try:
            return service.model_copy(
                update={"storage_backend": StorageBackend(backend.lower())}
            )
        except ValueError as e:
            raise ConfigLoadError(
                f"Invalid SIEM_STORAGE_BACKEND: {backend}",
                cause=e,
            ) from e

    def _apply_redis_env(self, redis: RedisConnectionConfig) -> RedisConnectionConfig:
        """
        Apply REDIS_URL.

        Returns:
            RedisConnectionConfig: Redis connection settings.
        """
        redis_url = os.getenv("REDIS_URL")
        if not redis_url:
            return redis
        return redis.model_copy(update={"url": redis_url})

    def _get_log_level(self, default: LogLevel) -> LogLevel:
        """
        Get log level from environment.

        Returns:
            LogLevel: LOG_LEVEL if set and valid, else the configured default.
        """
        level_str = os.getenv("LOG_LEVEL")
        if not level_str:
            return default
        try:
            return LogLevel(level_str.upper())
        except ValueError:
            logger.warning("invalid_log_level_env", value=level_str, fallback=default.value)
            return default

    def load(self) -> AppConfig:
        """
        Load and validate all configuration files.

        Returns:
            AppConfig: Validated engine configuration.

        Raises:
            ConfigLoadError: If any configuration is invalid.

        Example:
            >>> loader = ConfigLoader("config")
            >>> config = loader.load()
        """
        try:
            detection = self._load_detection()
            correlation = self._load_correlation()
            escalation, service, redis = self._load_escalation()
            log_level = self._get_log_level(service.logging.level)

            return AppConfig(
                detection=detection,
                correlation=correlation,
                escalation=escalation,
                service=service,
                redis=redis,
                log_level=log_level,
            )

        except ConfigLoadError:
            raise
        except ValidationError as e:
            raise ConfigLoadError(
                f"Configuration validation failed: {e}",
                cause=e,
            ) from e


def load_config(config_dir: Path | str = "config") -> AppConfig:
    """
    Convenience function to load engine configuration.

    Args:
        config_dir: Path to configuration directory (default: 'config').

    Returns:
        AppConfig: Validated engine configuration.

    Raises:
        ConfigLoadError: If configuration loading fails.
    """
    loader = ConfigLoader(config_dir)
    return loader.load()
