"""
Result models returned by the engine cycles.

Models:
    CycleResult: Outcome of one detection or correlation cycle
    EscalationResult: Outcome of one escalation/cleanup cycle
    AlertSummary: Alert counts over a period
"""

from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, Field


class CycleResult(BaseModel):
    """
    Outcome of one detection or correlation cycle.

    Attributes:
        cycle: Cycle name ("detection" or "correlation").
        started_at: Cycle reference time.
        skipped: True if the cycle was skipped because one was running.
        events_fetched: Events read from the repository.
        alerts_fetched: Alerts read from the repository (correlation only).
        candidates: Candidates produced by all rules.
        alert_ids: Distinct alerts created or merged into.
        dropped: Candidates dropped after a repeated write conflict.
        events_marked: Events newly marked processed (detection only).
        rule_errors: Names of rules that raised during evaluation.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    cycle: str = Field(..., description="Cycle name")
    started_at: datetime = Field(..., description="Cycle reference time")
    skipped: bool = Field(default=False)
    events_fetched: int = Field(default=0, ge=0)
    alerts_fetched: int = Field(default=0, ge=0)
    candidates: int = Field(default=0, ge=0)
    alert_ids: List[str] = Field(default_factory=list)
    dropped: int = Field(default=0, ge=0)
    events_marked: int = Field(default=0, ge=0)
    rule_errors: List[str] = Field(default_factory=list)

    @property
    def alerts_touched(self) -> int:
        """Number of distinct alerts created or merged into."""
        return len(self.alert_ids)


class EscalationResult(BaseModel):
    """Outcome of one escalation/cleanup cycle."""

    model_config = {"frozen": True, "extra": "forbid"}

    started_at: datetime = Field(..., description="Cycle reference time")
    skipped: bool = Field(default=False)
    escalated: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Alert ids escalated, keyed by tier severity",
    )
    failed: List[str] = Field(
        default_factory=list,
        description="Alert ids whose escalation could not be enqueued or recorded",
    )
    swept_keys: int = Field(default=0, ge=0, description="Bounded-map entries swept")

    @property
    def escalated_count(self) -> int:
        """Total alerts escalated across tiers."""
        return sum(len(ids) for ids in self.escalated.values())


class AlertSummary(BaseModel):
    """
    Alert counts over a period.

    Attributes:
        since: Inclusive period start.
        until: Inclusive period end.
        total: Alerts created in the period.
        by_severity: Count per severity.
        by_type: Count per alert type.
        by_status: Count per status.
        resolved: Alerts in the period that are resolved or false positives.
        resolution_rate: resolved / total as a percentage (0 when total is 0).
    """

    model_config = {"frozen": True, "extra": "forbid"}

    since: datetime
    until: datetime
    total: int = Field(default=0, ge=0)
    by_severity: Dict[str, int] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_status: Dict[str, int] = Field(default_factory=dict)
    resolved: int = Field(default=0, ge=0)
    resolution_rate: float = Field(default=0.0, ge=0, le=100)
    top_source_ips: List[str] = Field(
        default_factory=list,
        description="Source IPs with the most alerts, most frequent first",
    )
