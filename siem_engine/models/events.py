"""
Log event data models.

This module defines the normalized LogEvent consumed by the detection and
correlation engines. Events are produced by ingestion (outside this
package) and are immutable here; only the repository flips the processed
flag.

Models:
    LogLevel: Event log level (debug, info, warn, error, critical)
    EventCategory: Event category (security, system, application, network, database)
    LogEvent: Normalized unit of observed activity
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Log level of a normalized event."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


class EventCategory(str, Enum):
    """
    Category of a normalized event.

    Attributes:
        SECURITY: Authentication, authorization and firewall activity.
        SYSTEM: Host and operating system activity.
        APPLICATION: Web and application server activity.
        NETWORK: Network device activity.
        DATABASE: Database server activity.
    """

    SECURITY = "security"
    SYSTEM = "system"
    APPLICATION = "application"
    NETWORK = "network"
    DATABASE = "database"


class LogEvent(BaseModel):
    """
    Normalized log event.

    Attributes:
        id: Unique event identifier.
        timestamp: When the event was observed (timezone-aware UTC).
        level: Log level.
        source: Originating system (host, service or device name).
        message: Raw message text.
        category: Event category.
        severity: Severity from 1 (lowest) to 10 (highest).
        source_ip: Source IP address, if known.
        details: Structured key/value details (user, size, ...).
        tags: Free-form tags attached at ingestion.
        processed: Whether the detection engine has consumed this event.

    Example:
        >>> event = LogEvent(
        ...     timestamp=datetime.now(timezone.utc),
        ...     level=LogLevel.WARN,
        ...     source="sshd",
        ...     message="Failed password for admin from 203.0.113.10",
        ...     category=EventCategory.SECURITY,
        ...     severity=6,
        ...     source_ip="203.0.113.10",
        ... )
    """

    model_config = {"frozen": True, "extra": "forbid"}

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique event identifier",
    )
    timestamp: datetime = Field(
        ...,
        description="When the event was observed",
    )
    level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Log level",
    )
    source: str = Field(
        ...,
        description="Originating system",
        min_length=1,
    )
    message: str = Field(
        ...,
        description="Raw message text",
    )
    category: EventCategory = Field(
        ...,
        description="Event category",
    )
    severity: int = Field(
        default=1,
        description="Severity from 1 to 10",
        ge=1,
        le=10,
    )
    source_ip: Optional[str] = Field(
        default=None,
        description="Source IP address",
    )
    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Structured details",
    )
    tags: List[str] = Field(
        default_factory=list,
        description="Free-form tags",
    )
    processed: bool = Field(
        default=False,
        description="Whether detection has consumed this event",
    )

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("source_ip", mode="before")
    @classmethod
    def blank_ip_to_none(cls, v: Any) -> Optional[str]:
        """Normalize empty IP strings to None."""
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def user(self) -> Optional[str]:
        """User name from details, if present."""
        user = self.details.get("user")
        return str(user) if user else None

    @property
    def transfer_size(self) -> int:
        """Transferred bytes from details.size (0 when missing or invalid)."""
        raw = self.details.get("size")
        if raw is None or isinstance(raw, bool):
            return 0
        try:
            return max(0, int(raw))
        except (TypeError, ValueError):
            return 0

    @property
    def threat_level(self) -> str:
        """Coarse threat level derived from category and severity."""
        if self.category == EventCategory.SECURITY and self.severity >= 8:
            return "critical"
        if self.severity >= 7:
            return "high"
        if self.severity >= 5:
            return "medium"
        return "low"

    def mark_processed(self) -> "LogEvent":
        """
        Return a copy flagged as processed.

        Returns:
            LogEvent: Copy with processed=True.
        """
        return self.model_copy(update={"processed": True})
