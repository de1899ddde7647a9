"""Tests for the DetectionEngine cycle."""

from datetime import timedelta

import pytest

from siem_engine.config.models import DetectionConfig
from siem_engine.detection.engine import DetectionEngine, create_detection_engine
from siem_engine.detection.materializer import AlertMaterializer
from siem_engine.detection.rules import DetectionRule
from siem_engine.interfaces.repository import AlertFilter, EventFilter, RepositoryError
from siem_engine.models.alerts import AlertType
from siem_engine.models.events import EventCategory
from siem_engine.storage.memory import InMemoryEventRepository

from .conftest import T0, failed_logins, make_event


class ExplodingRule(DetectionRule):
    """Rule that always raises."""

    name = "exploding"

    def evaluate(self, events, now):
        raise RuntimeError("rule bug")


class FailingRepository(InMemoryEventRepository):
    """Repository that can fail reads or writes on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_fetch = False
        self.fail_create = False

    async def query_events(self, since, event_filter=None):
        if self.fail_fetch:
            raise RepositoryError("connection reset")
        return await super().query_events(since, event_filter)

    async def create_alert(self, alert, dedup_since=None):
        if self.fail_create:
            raise RepositoryError("disk full")
        return await super().create_alert(alert, dedup_since)


class TestDetectionCycle:
    """End-to-end detection cycles over the in-memory repository."""

    @pytest.mark.asyncio
    async def test_brute_force_end_to_end(self, detection_engine, repository, dispatcher):
        """Six failed logins become one high alert, notified once"""
        await repository.add_events(failed_logins(6))

        result = await detection_engine.run_detection_cycle(now=T0 + timedelta(minutes=1))

        assert result.events_fetched == 6
        assert result.events_marked == 6
        assert result.alerts_touched == 1
        [alert] = await repository.query_alerts(AlertFilter())
        assert alert.alert_type == AlertType.BRUTE_FORCE
        assert alert.confidence == 90
        assert alert.version == 2
        assert len(alert.related_log_ids) == 6
        assert dispatcher.reasons() == ["immediate"]

    @pytest.mark.asyncio
    async def test_next_attempt_merges(self, detection_engine, repository, dispatcher):
        """A later attempt merges into the same alert without renotifying"""
        await repository.add_events(failed_logins(6))
        await detection_engine.run_detection_cycle(now=T0 + timedelta(minutes=1))

        seventh = make_event(
            "Failed password for admin from 203.0.113.10",
            timestamp=T0 + timedelta(seconds=60),
        )
        await repository.add_events([seventh])
        result = await detection_engine.run_detection_cycle(now=T0 + timedelta(minutes=2))

        assert result.events_fetched == 1
        [alert] = await repository.query_alerts(AlertFilter())
        assert alert.confidence == 95
        assert len(alert.related_log_ids) == 7
        assert alert.version == 3
        assert len(dispatcher.calls) == 1

    @pytest.mark.asyncio
    async def test_same_batch_twice_single_alert(self, detection_engine, repository):
        """Processed events are never re-evaluated"""
        await repository.add_events(failed_logins(6))
        await detection_engine.run_detection_cycle(now=T0 + timedelta(minutes=1))
        second = await detection_engine.run_detection_cycle(now=T0 + timedelta(minutes=1))

        assert second.events_fetched == 0
        assert repository.alert_count == 1

    @pytest.mark.asyncio
    async def test_window_excludes_old_events(self, detection_engine, repository):
        """Events older than the window are left alone"""
        await repository.add_events(failed_logins(6))
        result = await detection_engine.run_detection_cycle(now=T0 + timedelta(minutes=30))

        assert result.events_fetched == 0
        unprocessed = await repository.query_events(T0, EventFilter(processed=False))
        assert len(unprocessed) == 6

    @pytest.mark.asyncio
    async def test_mixed_batch(self, detection_engine, repository):
        """Each rule contributes its own alert"""
        await repository.add_events(
            failed_logins(5)
            + [
                make_event(
                    "SELECT * FROM users WHERE id=1 OR 1=1",
                    category=EventCategory.DATABASE,
                    source_ip="198.51.100.20",
                ),
                make_event("sudo su - root", category=EventCategory.SYSTEM, source_ip=None),
            ]
        )
        result = await detection_engine.run_detection_cycle(now=T0 + timedelta(minutes=1))

        types = {a.alert_type for a in await repository.query_alerts(AlertFilter())}
        assert types == {
            AlertType.BRUTE_FORCE,
            AlertType.SQL_INJECTION,
            AlertType.PRIVILEGE_ESCALATION,
        }
        assert result.candidates == 3

    @pytest.mark.asyncio
    async def test_empty_batch(self, detection_engine):
        """No events is a quiet, successful cycle"""
        result = await detection_engine.run_detection_cycle(now=T0)
        assert result.events_fetched == 0
        assert result.alert_ids == []
        assert detection_engine.last_cycle_at == T0


class TestCycleFailures:
    """Tests for rule and repository failures."""

    @pytest.mark.asyncio
    async def test_failing_rule_isolated(self, repository, materializer):
        """A raising rule is reported and the batch is still consumed"""
        engine = create_detection_engine(repository, materializer, DetectionConfig())
        engine.rules.insert(0, ExplodingRule(DetectionConfig().brute_force))
        await repository.add_events(failed_logins(6))

        result = await engine.run_detection_cycle(now=T0 + timedelta(minutes=1))

        assert result.rule_errors == ["exploding"]
        assert result.alerts_touched == 1
        assert result.events_marked == 6

    @pytest.mark.asyncio
    async def test_fetch_failure_raises(self, materializer):
        """A fetch failure aborts the cycle"""
        failing = FailingRepository()
        failing.fail_fetch = True
        engine = create_detection_engine(failing, materializer)

        with pytest.raises(RepositoryError):
            await engine.run_detection_cycle(now=T0)
        assert engine.last_cycle_at is None

    @pytest.mark.asyncio
    async def test_write_failure_marks_nothing(self, dispatcher):
        """A write failure leaves the batch for the next cycle"""
        failing = FailingRepository()
        failing.fail_create = True
        engine = create_detection_engine(failing, AlertMaterializer(failing, dispatcher))
        await failing.add_events(failed_logins(6))

        with pytest.raises(RepositoryError):
            await engine.run_detection_cycle(now=T0 + timedelta(minutes=1))

        unprocessed = await failing.query_events(T0, EventFilter(processed=False))
        assert len(unprocessed) == 6

    @pytest.mark.asyncio
    async def test_overlapping_cycle_skipped(self, detection_engine, repository):
        """A cycle started while one runs is skipped"""
        await repository.add_events(failed_logins(6))

        async with detection_engine._cycle_lock:
            result = await detection_engine.run_detection_cycle(now=T0)

        assert result.skipped is True
        assert repository.alert_count == 0


class TestRuleManagement:
    """Tests for rule toggling and status."""

    @pytest.mark.asyncio
    async def test_disabled_rule_not_evaluated(self, detection_engine, repository):
        """Disabled rules produce nothing"""
        detection_engine.set_rule_enabled("brute_force", False)
        await repository.add_events(failed_logins(6))

        result = await detection_engine.run_detection_cycle(now=T0 + timedelta(minutes=1))

        assert result.candidates == 0
        assert result.events_marked == 6

    def test_unknown_rule(self, detection_engine):
        """Toggling an unknown rule raises KeyError"""
        with pytest.raises(KeyError):
            detection_engine.set_rule_enabled("nope", True)

    def test_status(self, detection_engine):
        """status reports every rule"""
        detection_engine.set_rule_enabled("anomaly", False)
        status = detection_engine.status()

        assert status["running"] is False
        assert status["enabled_rules"] == 4
        assert [r["name"] for r in status["rules"]][0] == "brute_force"
        assert status["last_cycle_at"] is None

    @pytest.mark.asyncio
    async def test_sweep_clears_tracker(self, detection_engine, repository):
        """sweep forgets expired brute-force attempts"""
        await repository.add_events(failed_logins(2))
        await detection_engine.run_detection_cycle(now=T0 + timedelta(minutes=1))

        assert detection_engine.sweep(T0 + timedelta(hours=1)) == 1

    def test_factory_uses_config_window(self, repository, materializer):
        """The batch window comes from configuration"""
        engine = create_detection_engine(
            repository, materializer, DetectionConfig(window_seconds=60)
        )
        assert isinstance(engine, DetectionEngine)
        assert engine.window == timedelta(seconds=60)
