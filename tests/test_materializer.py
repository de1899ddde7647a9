"""Tests for the AlertMaterializer merge-or-create path."""

import asyncio
from datetime import timedelta

import pytest

from siem_engine.detection.materializer import AlertMaterializer
from siem_engine.interfaces.repository import AlertFilter, AlertVersionConflict
from siem_engine.models.alerts import AlertSeverity, AlertStatus, AlertType
from siem_engine.storage.memory import InMemoryEventRepository

from .conftest import T0, RecordingDispatcher, make_candidate


class ConflictingRepository(InMemoryEventRepository):
    """Repository whose next N writes lose a version race."""

    def __init__(self) -> None:
        super().__init__()
        self.update_conflicts = 0
        self.create_conflicts = 0

    async def update_alert(self, alert, expected_version):
        if self.update_conflicts > 0:
            self.update_conflicts -= 1
            raise AlertVersionConflict(alert.alert_id, expected_version, expected_version + 1)
        return await super().update_alert(alert, expected_version)

    async def create_alert(self, alert, dedup_since=None):
        if self.create_conflicts > 0:
            self.create_conflicts -= 1
            raise AlertVersionConflict(alert.alert_id, 0, None)
        return await super().create_alert(alert, dedup_since)


class YieldingRepository(InMemoryEventRepository):
    """Repository that yields to the event loop on every alert call."""

    def __init__(self) -> None:
        super().__init__()
        self.dedup_since = []

    async def query_alerts(self, alert_filter):
        await asyncio.sleep(0)
        return await super().query_alerts(alert_filter)

    async def create_alert(self, alert, dedup_since=None):
        self.dedup_since.append(dedup_since)
        await asyncio.sleep(0)
        return await super().create_alert(alert, dedup_since)

    async def update_alert(self, alert, expected_version):
        await asyncio.sleep(0)
        return await super().update_alert(alert, expected_version)


class TestMergeOrCreate:
    """Tests for deduplication of candidates into alerts."""

    @pytest.mark.asyncio
    async def test_creates_new_alert(self, materializer, repository):
        """The first candidate creates an active alert at version 1"""
        alert = await materializer.materialize(
            make_candidate(severity=AlertSeverity.MEDIUM), T0
        )

        assert alert is not None
        assert alert.status == AlertStatus.ACTIVE
        assert alert.version == 1
        assert repository.alert_count == 1

    @pytest.mark.asyncio
    async def test_merges_into_open_alert(self, materializer, repository):
        """A second candidate with the same key merges"""
        first = await materializer.materialize(
            make_candidate(severity=AlertSeverity.MEDIUM, confidence=70), T0
        )
        second = await materializer.materialize(
            make_candidate(
                severity=AlertSeverity.MEDIUM,
                confidence=80,
                related_log_ids=("log-2",),
            ),
            T0 + timedelta(minutes=1),
        )

        assert second.alert_id == first.alert_id
        assert second.version == 2
        assert second.confidence == 80
        assert second.related_log_ids == {"log-1", "log-2"}
        assert repository.alert_count == 1

    @pytest.mark.asyncio
    async def test_different_ip_creates_second_alert(self, materializer, repository):
        """Dedup keys include the source IP"""
        await materializer.materialize(make_candidate(source_ip="10.0.0.1"), T0)
        await materializer.materialize(make_candidate(source_ip="10.0.0.2"), T0)
        assert repository.alert_count == 2

    @pytest.mark.asyncio
    async def test_outside_rule_window_creates_new(self, materializer, repository):
        """Detections only merge within the rule window"""
        await materializer.materialize(make_candidate(), T0)
        await materializer.materialize(make_candidate(), T0 + timedelta(minutes=10))
        assert repository.alert_count == 2

    @pytest.mark.asyncio
    async def test_closed_alert_not_reopened(self, materializer, repository):
        """A resolved alert never absorbs new evidence"""
        first = await materializer.materialize(
            make_candidate(severity=AlertSeverity.MEDIUM), T0
        )
        closed = first.transition(AlertStatus.RESOLVED, timestamp=T0)
        await repository.update_alert(closed, expected_version=first.version)

        second = await materializer.materialize(
            make_candidate(severity=AlertSeverity.MEDIUM), T0 + timedelta(minutes=1)
        )

        assert second.alert_id != first.alert_id
        assert (await repository.get_alert(first.alert_id)).status == AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_correlation_merges_on_id_regardless_of_age(self, materializer, repository):
        """Correlation candidates match on correlation id alone"""
        candidate = make_candidate(
            alert_type=AlertType.ATTACK_CHAIN,
            correlation_id="CHAIN-1-10_0_0_1",
            window=timedelta(hours=1),
        )
        first = await materializer.materialize(candidate, T0)
        second = await materializer.materialize(candidate, T0 + timedelta(hours=3))

        assert second.alert_id == first.alert_id
        assert repository.alert_count == 1

    @pytest.mark.asyncio
    async def test_materialize_all_aligned(self, materializer):
        """Results line up with candidates"""
        results = await materializer.materialize_all(
            [make_candidate(source_ip="10.0.0.1"), make_candidate(source_ip="10.0.0.1")],
            T0,
        )
        assert len(results) == 2
        assert results[0].alert_id == results[1].alert_id


class TestImmediateNotification:
    """Tests for immediate notification of high/critical alerts."""

    @pytest.mark.asyncio
    async def test_high_alert_notified_once(self, materializer, dispatcher):
        """New high alerts enqueue on the immediate channels exactly once"""
        first = await materializer.materialize(make_candidate(), T0)
        second = await materializer.materialize(
            make_candidate(related_log_ids=("log-2",)), T0 + timedelta(seconds=30)
        )

        assert dispatcher.calls == [(first.alert_id, ["dashboard"], "immediate")]
        assert first.version == 2
        assert first.has_notified(["dashboard"])
        assert second.version == 3

    @pytest.mark.asyncio
    async def test_medium_alert_not_notified(self, materializer, dispatcher):
        """Medium and low alerts wait for escalation"""
        await materializer.materialize(make_candidate(severity=AlertSeverity.MEDIUM), T0)
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_enqueue_failure_keeps_alert(self, materializer, dispatcher, repository):
        """A failed enqueue is retried on the next merge"""
        dispatcher.fail = True
        alert = await materializer.materialize(make_candidate(), T0)

        assert alert is not None
        assert alert.notifications == []
        assert repository.alert_count == 1

        dispatcher.fail = False
        merged = await materializer.materialize(
            make_candidate(related_log_ids=("log-2",)), T0 + timedelta(seconds=30)
        )
        assert dispatcher.reasons() == ["immediate"]
        assert merged.has_notified(["dashboard"])

    @pytest.mark.asyncio
    async def test_custom_channels(self, repository, dispatcher):
        """Immediate channels are configurable"""
        materializer = AlertMaterializer(
            repository, dispatcher, immediate_channels=["webhook", "dashboard"]
        )
        alert = await materializer.materialize(make_candidate(), T0)
        assert dispatcher.calls == [(alert.alert_id, ["dashboard", "webhook"], "immediate")]


class TestConcurrency:
    """Tests for version-conflict handling and per-key locks."""

    @pytest.fixture
    def conflicting(self) -> ConflictingRepository:
        return ConflictingRepository()

    @pytest.mark.asyncio
    async def test_update_conflict_retried(self, conflicting):
        """One lost race is retried with a fresh read"""
        materializer = AlertMaterializer(conflicting, RecordingDispatcher())
        await materializer.materialize(make_candidate(severity=AlertSeverity.MEDIUM), T0)

        conflicting.update_conflicts = 1
        merged = await materializer.materialize(
            make_candidate(severity=AlertSeverity.MEDIUM, related_log_ids=("log-2",)),
            T0 + timedelta(seconds=10),
        )

        assert merged is not None
        assert merged.version == 2
        assert merged.related_log_ids == {"log-1", "log-2"}

    @pytest.mark.asyncio
    async def test_repeated_conflict_dropped(self, conflicting):
        """Two lost races drop the candidate"""
        materializer = AlertMaterializer(conflicting, RecordingDispatcher())
        conflicting.create_conflicts = 2

        result = await materializer.materialize(make_candidate(), T0)

        assert result is None
        assert conflicting.alert_count == 0

    @pytest.mark.asyncio
    async def test_notification_record_conflict_tolerated(self, conflicting):
        """Losing the race on the notification record keeps the alert"""
        dispatcher = RecordingDispatcher()
        materializer = AlertMaterializer(conflicting, dispatcher)
        conflicting.update_conflicts = 1

        alert = await materializer.materialize(make_candidate(), T0)

        assert alert is not None
        assert alert.version == 1
        assert len(dispatcher.calls) == 1

    @pytest.mark.asyncio
    async def test_locks_bounded_and_swept(self, repository, dispatcher):
        """Idle per-key locks are bounded and swept"""
        materializer = AlertMaterializer(repository, dispatcher, max_locks=2)
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            await materializer.materialize(
                make_candidate(source_ip=ip, severity=AlertSeverity.MEDIUM), T0
            )

        assert materializer.lock_count == 2
        assert materializer.sweep() == 2
        assert materializer.lock_count == 0

    @pytest.mark.asyncio
    async def test_find_open_match_prefers_newest(self, materializer, repository):
        """The most recent open alert with the key wins"""
        await materializer.materialize(make_candidate(severity=AlertSeverity.MEDIUM), T0)
        open_alerts = await repository.query_alerts(AlertFilter(statuses=None))
        match = await materializer.find_open_match(
            make_candidate(severity=AlertSeverity.MEDIUM), T0 + timedelta(minutes=1)
        )
        assert match.alert_id == open_alerts[-1].alert_id

    @pytest.mark.asyncio
    async def test_concurrent_candidates_share_one_alert_per_key(self, dispatcher):
        """Racing detection and correlation candidates each collapse into one alert"""
        repository = YieldingRepository()
        materializer = AlertMaterializer(repository, dispatcher)
        detections = [
            make_candidate(related_log_ids=(f"log-{i}",), confidence=60 + i)
            for i in range(8)
        ]
        correlations = [
            make_candidate(
                alert_type=AlertType.ATTACK_CHAIN,
                correlation_id="CHAIN-1-203_0_113_10",
                related_log_ids=(f"chain-{i}",),
                window=timedelta(hours=1),
            )
            for i in range(8)
        ]
        racers = [c for pair in zip(detections, correlations) for c in pair]

        results = await asyncio.gather(*(materializer.materialize(c, T0) for c in racers))

        assert all(result is not None for result in results)
        assert repository.alert_count == 2
        [detection] = await repository.query_alerts(AlertFilter(alert_type=AlertType.BRUTE_FORCE))
        [correlation] = await repository.query_alerts(
            AlertFilter(correlation_id="CHAIN-1-203_0_113_10")
        )
        assert detection.related_log_ids == {f"log-{i}" for i in range(8)}
        assert detection.confidence == 67
        assert correlation.related_log_ids == {f"chain-{i}" for i in range(8)}
        assert {r.alert_id for r in results} == {detection.alert_id, correlation.alert_id}

    @pytest.mark.asyncio
    async def test_create_receives_dedup_window(self, dispatcher):
        """Creates tell the store how far back an open alert still dedups"""
        repository = YieldingRepository()
        materializer = AlertMaterializer(repository, dispatcher)
        short_window = timedelta(seconds=60)

        first = await materializer.materialize(make_candidate(window=short_window), T0)
        second = await materializer.materialize(
            make_candidate(window=short_window), T0 + timedelta(minutes=3)
        )
        await materializer.materialize(
            make_candidate(alert_type=AlertType.ATTACK_CHAIN, correlation_id="CHAIN-1-x"), T0
        )

        assert second is not None
        assert second.alert_id != first.alert_id
        assert repository.dedup_since == [
            T0 - short_window,
            T0 + timedelta(minutes=2),
            None,
        ]
