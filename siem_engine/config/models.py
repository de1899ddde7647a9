"""
Pydantic models for engine configuration.

This module defines all configuration models that are validated when loading
YAML configuration files. Every field has a default, so AppConfig() is a
valid configuration for embedding the engines without any files.

Scoring constants (base confidence, per-unit step, caps) are configuration
rather than code so they can be recalibrated without a release.

Configuration files:
    - config/detection.yaml: Detection window and single-signal rules
    - config/correlation.yaml: Cross-signal correlation rules
    - config/escalation.yaml: Escalation tiers, cycle cadence, storage, logging

Example:
    >>> from siem_engine.config.models import AppConfig
    >>> config = AppConfig()
    >>> config.detection.brute_force.attempts
    5
"""

from datetime import timedelta
from enum import Enum
from typing import List

from pydantic import BaseModel, Field, field_validator, model_validator

from siem_engine.models.alerts import AlertSeverity


MB = 1024 * 1024


# =============================================================================
# ENUMS
# =============================================================================


class LogFormat(str, Enum):
    """Logging format options."""

    JSON = "json"
    TEXT = "text"


class LogLevel(str, Enum):
    """Logging level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageBackend(str, Enum):
    """Repository backend used by the service runner."""

    MEMORY = "memory"
    REDIS = "redis"


# =============================================================================
# RULE CONFIGURATION
# =============================================================================


class RuleSettings(BaseModel):
    """Settings shared by every rule."""

    model_config = {"frozen": True, "extra": "forbid"}

    enabled: bool = Field(
        default=True,
        description="Whether this rule is evaluated",
    )
    window_seconds: int = Field(
        default=300,
        description="Rule time window in seconds",
        ge=1,
    )

    @property
    def window(self) -> timedelta:
        """Rule window as a timedelta."""
        return timedelta(seconds=self.window_seconds)


class BruteForceSettings(RuleSettings):
    """Failed-authentication burst rule."""

    attempts: int = Field(
        default=5,
        description="Failed attempts per source IP before alerting",
        ge=1,
    )
    failure_indicators: List[str] = Field(
        default_factory=lambda: ["failed"],
        description="Lower-case substrings that mark a failed login",
        min_length=1,
    )
    base_confidence: float = Field(default=60, ge=0, le=100)
    confidence_step: float = Field(default=5, ge=0)
    max_confidence: float = Field(default=95, ge=0, le=100)

    @field_validator("failure_indicators")
    @classmethod
    def lower_indicators(cls, v: List[str]) -> List[str]:
        """Match indicators case-insensitively."""
        return [s.lower() for s in v if s.strip()]


class InjectionSettings(RuleSettings):
    """SQL injection signature rule."""

    confidence: float = Field(default=85, ge=0, le=100)


class AnomalySettings(RuleSettings):
    """Per-IP request volume anomaly rule."""

    stddev_multiplier: float = Field(
        default=3.0,
        description="Standard deviations above the mean (k)",
        ge=0,
    )
    min_requests: int = Field(
        default=50,
        description="Absolute floor a count must exceed",
        ge=0,
    )
    base_confidence: float = Field(default=50, ge=0, le=100)
    excess_weight: float = Field(
        default=40,
        description="Confidence added per 100% excess over the threshold",
        ge=0,
    )
    max_confidence: float = Field(default=90, ge=0, le=100)


class PrivilegeEscalationSettings(RuleSettings):
    """Elevated-access signature rule."""

    confidence: float = Field(default=75, ge=0, le=100)


class ExfiltrationSettings(RuleSettings):
    """Outbound data volume rule."""

    threshold_bytes: int = Field(
        default=100 * MB,
        description="Cumulative bytes per source IP before alerting",
        ge=1,
    )
    confidence: float = Field(default=70, ge=0, le=100)


class DetectionConfig(BaseModel):
    """Complete detection configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    window_seconds: int = Field(
        default=300,
        description="Default batch window for a detection cycle",
        ge=1,
    )
    max_tracked_keys: int = Field(
        default=10_000,
        description="Bound on per-IP state kept between cycles",
        ge=1,
    )
    brute_force: BruteForceSettings = Field(default_factory=BruteForceSettings)
    sql_injection: InjectionSettings = Field(default_factory=InjectionSettings)
    anomaly: AnomalySettings = Field(default_factory=AnomalySettings)
    privilege_escalation: PrivilegeEscalationSettings = Field(
        default_factory=PrivilegeEscalationSettings
    )
    data_exfiltration: ExfiltrationSettings = Field(default_factory=ExfiltrationSettings)

    @property
    def window(self) -> timedelta:
        """Batch window as a timedelta."""
        return timedelta(seconds=self.window_seconds)


# =============================================================================
# CORRELATION CONFIGURATION
# =============================================================================


class AttackChainSettings(RuleSettings):
    """Kill-chain stage progression rule."""

    window_seconds: int = Field(default=3600, ge=1)
    min_stages: int = Field(default=3, ge=1, le=5)
    base_confidence: float = Field(default=60, ge=0, le=100)
    confidence_step: float = Field(default=10, ge=0)
    max_confidence: float = Field(default=95, ge=0, le=100)


class CoordinatedAttackSettings(RuleSettings):
    """Same-type alerts from many IPs in one bucket."""

    window_seconds: int = Field(default=1800, ge=1)
    bucket_seconds: int = Field(default=300, ge=1)
    min_ips: int = Field(default=3, ge=2)
    base_confidence: float = Field(default=50, ge=0, le=100)
    confidence_step: float = Field(default=10, ge=0)
    max_confidence: float = Field(default=90, ge=0, le=100)


class LateralMovementSettings(RuleSettings):
    """One user/IP pair touching many systems."""

    window_seconds: int = Field(default=7200, ge=1)
    min_systems: int = Field(default=3, ge=2)
    base_confidence: float = Field(default=40, ge=0, le=100)
    confidence_step: float = Field(default=15, ge=0)
    max_confidence: float = Field(default=85, ge=0, le=100)


class DataBreachSettings(RuleSettings):
    """Data movement volume or frequency per source IP."""

    window_seconds: int = Field(default=3600, ge=1)
    keywords: List[str] = Field(
        default_factory=lambda: ["database", "file", "download", "export", "backup"],
        min_length=1,
    )
    volume_bytes: int = Field(default=50 * MB, ge=1)
    min_events: int = Field(default=5, ge=1)
    confidence_both: float = Field(default=80, ge=0, le=100)
    confidence_either: float = Field(default=60, ge=0, le=100)


class CorrelationConfig(BaseModel):
    """Complete correlation configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    attack_chain: AttackChainSettings = Field(default_factory=AttackChainSettings)
    coordinated_attack: CoordinatedAttackSettings = Field(
        default_factory=CoordinatedAttackSettings
    )
    lateral_movement: LateralMovementSettings = Field(
        default_factory=LateralMovementSettings
    )
    data_breach: DataBreachSettings = Field(default_factory=DataBreachSettings)


# =============================================================================
# ESCALATION CONFIGURATION
# =============================================================================


class EscalationTier(BaseModel):
    """Escalation rule for one severity."""

    model_config = {"frozen": True, "extra": "forbid"}

    severity: AlertSeverity = Field(..., description="Severity this tier applies to")
    after_seconds: int = Field(
        ...,
        description="Age after which an active alert escalates",
        ge=0,
    )
    channels: List[str] = Field(
        ...,
        description="Channels notified on escalation",
        min_length=1,
    )

    @property
    def after(self) -> timedelta:
        """Escalation age as a timedelta."""
        return timedelta(seconds=self.after_seconds)


def default_escalation_tiers() -> List[EscalationTier]:
    return [
        EscalationTier(
            severity=AlertSeverity.CRITICAL,
            after_seconds=300,
            channels=["email", "webhook", "dashboard"],
        ),
        EscalationTier(
            severity=AlertSeverity.HIGH,
            after_seconds=900,
            channels=["email", "dashboard"],
        ),
        EscalationTier(
            severity=AlertSeverity.MEDIUM,
            after_seconds=1800,
            channels=["dashboard"],
        ),
    ]


class EscalationConfig(BaseModel):
    """Escalation tiers and immediate notification channels."""

    model_config = {"frozen": True, "extra": "forbid"}

    tiers: List[EscalationTier] = Field(default_factory=default_escalation_tiers)
    immediate_channels: List[str] = Field(
        default_factory=lambda: ["dashboard"],
        description="Channels notified when a high/critical alert materializes",
        min_length=1,
    )
    max_tracked_keys: int = Field(
        default=10_000,
        description="Bound on per-key locks kept by the materializer",
        ge=1,
    )

    @model_validator(mode="after")
    def validate_tiers(self) -> "EscalationConfig":
        """Reject duplicate severities."""
        seen = set()
        for tier in self.tiers:
            if tier.severity in seen:
                raise ValueError(f"Duplicate escalation tier for {tier.severity.value}")
            seen.add(tier.severity)
        return self


# =============================================================================
# SERVICE CONFIGURATION
# =============================================================================


class ScheduleConfig(BaseModel):
    """Cadence of the three cycles."""

    model_config = {"frozen": True, "extra": "forbid"}

    detection_interval_seconds: int = Field(default=30, ge=1)
    correlation_interval_seconds: int = Field(default=120, ge=1)
    escalation_interval_seconds: int = Field(default=300, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    format: LogFormat = Field(
        default=LogFormat.JSON,
        description="Log output format",
    )
    level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Default log level",
    )


class RedisConnectionConfig(BaseModel):
    """Redis connection configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL",
    )
    db: int = Field(default=0, ge=0)
    max_connections: int = Field(default=10, ge=1)
    socket_timeout: int = Field(default=5, ge=1)
    key_prefix: str = Field(
        default="siem",
        description="Prefix for every key written by the engine",
        min_length=1,
    )
    notification_queue: str = Field(
        default="notifications:queue",
        description="List key (after prefix) receiving notification intents",
    )
    create_guard_ttl_seconds: int = Field(
        default=300,
        description="Lifetime of the per-dedup-key guard set when an alert is created",
        ge=1,
    )


class ServiceConfig(BaseModel):
    """Hosting service settings."""

    model_config = {"frozen": True, "extra": "forbid"}

    storage_backend: StorageBackend = Field(default=StorageBackend.MEMORY)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# ROOT CONFIGURATION
# =============================================================================


class AppConfig(BaseModel):
    """
    Root engine configuration.

    Example:
        >>> config = AppConfig()
        >>> [t.severity.value for t in config.escalation.tiers]
        ['critical', 'high', 'medium']
    """

    model_config = {"frozen": True, "extra": "forbid"}

    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    correlation: CorrelationConfig = Field(default_factory=CorrelationConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    redis: RedisConnectionConfig = Field(default_factory=RedisConnectionConfig)
    log_level: LogLevel = Field(default=LogLevel.INFO)

    @model_validator(mode="after")
    def validate_config(self) -> "AppConfig":
        """Validate cross-section constraints."""
        coordinated = self.correlation.coordinated_attack
        if coordinated.bucket_seconds > coordinated.window_seconds:
            raise ValueError(
                "coordinated_attack.bucket_seconds must not exceed window_seconds"
            )
        return self
