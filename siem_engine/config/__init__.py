"""
Configuration management for the detection engine.

This module handles loading and validating configuration from YAML files.
Configuration is read once at process start and is not hot-reloaded; rule
enablement can still be flipped at runtime on the engines themselves.

Configuration is loaded from YAML files in the config/ directory:
    - detection.yaml: Detection window, rule enablement and thresholds
    - correlation.yaml: Correlation rule windows and thresholds
    - escalation.yaml: Escalation tiers, cycle schedule, storage, logging

Environment variables can override:
    - REDIS_URL: Redis connection URL
    - LOG_LEVEL: Application log level
    - SIEM_STORAGE_BACKEND: Repository backend (memory, redis)

Example:
    >>> from siem_engine.config import load_config, AppConfig
    >>> config = load_config()
    >>> config.detection.anomaly.stddev_multiplier
    3.0

Modules:
    loader: Configuration file loading utilities
    models: Pydantic models for configuration validation
"""

from siem_engine.config.loader import ConfigLoadError, ConfigLoader, load_config
from siem_engine.config.models import (
    # Enums
    LogFormat,
    LogLevel,
    StorageBackend,
    # Detection
    AnomalySettings,
    BruteForceSettings,
    DetectionConfig,
    ExfiltrationSettings,
    InjectionSettings,
    PrivilegeEscalationSettings,
    RuleSettings,
    # Correlation
    AttackChainSettings,
    CoordinatedAttackSettings,
    CorrelationConfig,
    DataBreachSettings,
    LateralMovementSettings,
    # Escalation and service
    EscalationConfig,
    EscalationTier,
    LoggingConfig,
    RedisConnectionConfig,
    ScheduleConfig,
    ServiceConfig,
    # Root
    AppConfig,
)

__all__ = [
    "ConfigLoadError",
    "ConfigLoader",
    "load_config",
    "LogFormat",
    "LogLevel",
    "StorageBackend",
    "AnomalySettings",
    "BruteForceSettings",
    "DetectionConfig",
    "ExfiltrationSettings",
    "InjectionSettings",
    "PrivilegeEscalationSettings",
    "RuleSettings",
    "AttackChainSettings",
    "CoordinatedAttackSettings",
    "CorrelationConfig",
    "DataBreachSettings",
    "LateralMovementSettings",
    "EscalationConfig",
    "EscalationTier",
    "LoggingConfig",
    "RedisConnectionConfig",
    "ScheduleConfig",
    "ServiceConfig",
    "AppConfig",
]
