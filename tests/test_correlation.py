"""Tests for correlation rules and the CorrelationEngine cycle."""

from datetime import timedelta
from typing import List

import pytest

from siem_engine.config.models import (
    MB,
    AttackChainSettings,
    CoordinatedAttackSettings,
    CorrelationConfig,
    DataBreachSettings,
    LateralMovementSettings,
)
from siem_engine.correlation.engine import create_correlation_engine
from siem_engine.correlation.rules import (
    AttackChainRule,
    CoordinatedAttackRule,
    DataBreachRule,
    LateralMovementRule,
    build_correlation_rules,
    classify_stage,
    correlation_severity,
)
from siem_engine.interfaces.repository import AlertFilter
from siem_engine.models.alerts import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    DetectionMethod,
)
from siem_engine.models.events import LogEvent
from siem_engine.stats.windows import epoch_millis

from .conftest import T0, make_candidate, make_event


ATTACKER = "198.51.100.7"


def chain_events(source_ip: str = ATTACKER) -> List[LogEvent]:
    """Reconnaissance, access and escalation from one IP."""
    return [
        make_event(
            f"Port scan detected from {source_ip}",
            timestamp=T0,
            source="ids",
            source_ip=source_ip,
        ),
        make_event(
            "Successful login for admin",
            timestamp=T0 + timedelta(minutes=5),
            source="sshd",
            source_ip=source_ip,
        ),
        make_event(
            "Privilege escalation attempt via sudo",
            timestamp=T0 + timedelta(minutes=10),
            source="sudo",
            source_ip=source_ip,
        ),
    ]


def signal_alerts(ips, alert_type=AlertType.BRUTE_FORCE) -> List[Alert]:
    """Detection alerts one minute apart, one per IP."""
    return [
        Alert.from_candidate(
            make_candidate(alert_type=alert_type, source_ip=ip),
            timestamp=T0 + timedelta(minutes=i + 1),
        )
        for i, ip in enumerate(ips)
    ]


def lateral_events(sources=("host-a", "host-b", "host-c")) -> List[LogEvent]:
    return [
        make_event(
            "Accepted publickey for alice",
            timestamp=T0 + timedelta(minutes=i),
            source=source,
            source_ip="10.0.0.5",
            details={"user": "alice"},
        )
        for i, source in enumerate(sources)
    ]


class TestHelpers:
    """Tests for stage classification and severity mapping."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            pytest.param("Port scan from 10.0.0.1", "reconnaissance", id="scan"),
            pytest.param("Unauthorized access to /admin", "initial_access", id="access"),
            pytest.param("Privilege Escalation Attempt", "privilege_escalation", id="title"),
            pytest.param("possible lateral hop", "lateral_movement", id="lateral"),
            pytest.param("Potential Data Exfiltration", "data_exfiltration", id="exfil"),
            pytest.param("heartbeat ok", None, id="none"),
        ],
    )
    def test_classify_stage(self, text, expected):
        """First matching stage keyword wins"""
        assert classify_stage(text) == expected

    @pytest.mark.parametrize(
        "confidence,assets,expected",
        [
            pytest.param(85, 3, AlertSeverity.CRITICAL, id="critical"),
            pytest.param(85, 1, AlertSeverity.HIGH, id="confident_narrow"),
            pytest.param(50, 2, AlertSeverity.HIGH, id="wide"),
            pytest.param(65, 1, AlertSeverity.MEDIUM, id="medium"),
            pytest.param(40, 1, AlertSeverity.LOW, id="low"),
        ],
    )
    def test_correlation_severity(self, confidence, assets, expected):
        """Severity depends on confidence and reach"""
        assert correlation_severity(confidence, assets) == expected


class TestAttackChainRule:
    """Tests for AttackChainRule."""

    @pytest.fixture
    def rule(self) -> AttackChainRule:
        return AttackChainRule(AttackChainSettings())

    def test_three_stages_fire(self, rule):
        """Three distinct stages make a chain"""
        events = chain_events()
        [candidate] = rule.evaluate(events, [], T0 + timedelta(minutes=15))

        assert candidate.alert_type == AlertType.ATTACK_CHAIN
        assert candidate.detection_method == DetectionMethod.CORRELATION
        assert candidate.confidence == 90
        assert candidate.severity == AlertSeverity.CRITICAL
        assert candidate.correlation_id == f"CHAIN-{epoch_millis(T0)}-198_51_100_7"
        assert candidate.related_log_ids == frozenset(e.id for e in events)
        assert candidate.affected_assets == frozenset({"ids", "sshd", "sudo"})
        assert "reconnaissance -> initial_access -> privilege_escalation" in candidate.description

    def test_repeated_stage_counts_once(self, rule):
        """Many scans are still one stage"""
        events = [
            make_event(f"Port scan #{i}", timestamp=T0 + timedelta(minutes=i), source_ip=ATTACKER)
            for i in range(5)
        ]
        assert rule.evaluate(events, [], T0 + timedelta(minutes=10)) == []

    def test_alert_titles_contribute(self, rule):
        """Detection alert titles are classified alongside events"""
        events = chain_events()[:2]
        escalation = Alert.from_candidate(
            make_candidate(alert_type=AlertType.PRIVILEGE_ESCALATION, source_ip=ATTACKER),
            timestamp=T0 + timedelta(minutes=8),
        ).model_copy(update={"title": "Privilege Escalation Attempt"})

        [candidate] = rule.evaluate(events, [escalation], T0 + timedelta(minutes=15))
        assert candidate.related_alert_ids == frozenset({escalation.alert_id})

    def test_composite_alerts_ignored(self, rule):
        """Correlation alerts never feed another chain"""
        events = chain_events()[:2]
        composite = Alert.from_candidate(
            make_candidate(source_ip=ATTACKER, correlation_id="X-1"),
            timestamp=T0 + timedelta(minutes=8),
        ).model_copy(update={"title": "Privilege Escalation Attempt"})

        assert rule.evaluate(events, [composite], T0 + timedelta(minutes=15)) == []

    def test_outside_window_ignored(self, rule):
        """Items older than the rule window are dropped"""
        assert rule.evaluate(chain_events(), [], T0 + timedelta(hours=2)) == []

    def test_stable_id_across_runs(self, rule):
        """Re-evaluating the same activity yields the same id"""
        events = chain_events()
        first = rule.evaluate(events, [], T0 + timedelta(minutes=15))
        second = rule.evaluate(events, [], T0 + timedelta(minutes=30))
        assert first[0].correlation_id == second[0].correlation_id

    def test_open_chain_keeps_its_id(self, rule):
        """An open chain alert for the IP lends its id to later findings"""
        ongoing = Alert.from_candidate(
            make_candidate(
                alert_type=AlertType.ATTACK_CHAIN,
                source_ip=ATTACKER,
                correlation_id="CHAIN-1000-198_51_100_7",
            ),
            timestamp=T0 - timedelta(minutes=30),
        )
        other_ip = Alert.from_candidate(
            make_candidate(
                alert_type=AlertType.ATTACK_CHAIN,
                source_ip="10.9.9.9",
                correlation_id="CHAIN-2000-10_9_9_9",
            ),
            timestamp=T0 - timedelta(minutes=10),
        )

        [candidate] = rule.evaluate(
            chain_events(), [ongoing, other_ip], T0 + timedelta(minutes=15)
        )
        assert candidate.correlation_id == "CHAIN-1000-198_51_100_7"

    def test_closed_chain_not_reused(self, rule):
        """A resolved chain alert does not lend its id"""
        closed = Alert.from_candidate(
            make_candidate(
                alert_type=AlertType.ATTACK_CHAIN,
                source_ip=ATTACKER,
                correlation_id="CHAIN-1000-198_51_100_7",
            ),
            timestamp=T0 - timedelta(minutes=30),
        ).transition(AlertStatus.RESOLVED, timestamp=T0)

        [candidate] = rule.evaluate(chain_events(), [closed], T0 + timedelta(minutes=15))
        assert candidate.correlation_id == f"CHAIN-{epoch_millis(T0)}-198_51_100_7"


class TestCoordinatedAttackRule:
    """Tests for CoordinatedAttackRule."""

    @pytest.fixture
    def rule(self) -> CoordinatedAttackRule:
        return CoordinatedAttackRule(CoordinatedAttackSettings())

    def test_three_ips_fire(self, rule):
        """Three IPs with the same type in one bucket are coordinated"""
        alerts = signal_alerts(["10.0.0.1", "10.0.0.2", "10.0.0.3"])
        [candidate] = rule.evaluate([], alerts, T0 + timedelta(minutes=10))

        assert candidate.confidence == 80
        assert candidate.severity == AlertSeverity.HIGH
        assert candidate.source_ip is None
        assert candidate.correlation_id == f"COORD-{epoch_millis(T0)}-brute_force"
        assert candidate.related_alert_ids == frozenset(a.alert_id for a in alerts)

    def test_same_ip_counts_once(self, rule):
        """Repeat alerts from one IP do not add reach"""
        alerts = signal_alerts(["10.0.0.1", "10.0.0.1", "10.0.0.2"])
        assert rule.evaluate([], alerts, T0 + timedelta(minutes=10)) == []

    def test_different_types_not_combined(self, rule):
        """Only alerts of the same type are grouped"""
        alerts = signal_alerts(["10.0.0.1", "10.0.0.2"]) + signal_alerts(
            ["10.0.0.3"], alert_type=AlertType.SQL_INJECTION
        )
        assert rule.evaluate([], alerts, T0 + timedelta(minutes=10)) == []

    def test_different_buckets_not_combined(self, rule):
        """Alerts in different buckets are separate groups"""
        alerts = signal_alerts(["10.0.0.1", "10.0.0.2"])
        late = Alert.from_candidate(
            make_candidate(source_ip="10.0.0.3"), timestamp=T0 + timedelta(minutes=6)
        )
        assert rule.evaluate([], alerts + [late], T0 + timedelta(minutes=10)) == []


class TestLateralMovementRule:
    """Tests for LateralMovementRule."""

    @pytest.fixture
    def rule(self) -> LateralMovementRule:
        return LateralMovementRule(LateralMovementSettings())

    def test_three_systems_fire(self, rule):
        """One user/IP reaching three systems is lateral movement"""
        events = lateral_events()
        [candidate] = rule.evaluate(events, [], T0 + timedelta(minutes=30))

        assert candidate.confidence == 85
        assert candidate.severity == AlertSeverity.CRITICAL
        assert candidate.source_ip == "10.0.0.5"
        assert candidate.correlation_id == f"LATERAL-{epoch_millis(T0)}-alice-10_0_0_5"
        assert "host-a, host-b, host-c" in candidate.description

    def test_open_lateral_keeps_its_id(self, rule):
        """An open lateral alert for the same user and IP lends its id"""
        ongoing = Alert.from_candidate(
            make_candidate(
                alert_type=AlertType.LATERAL_MOVEMENT,
                source_ip="10.0.0.5",
                correlation_id="LATERAL-1000-alice-10_0_0_5",
            ),
            timestamp=T0 - timedelta(hours=1),
        )
        bob = ongoing.model_copy(
            update={"alert_id": "bob-alert", "correlation_id": "LATERAL-3000-bob-10_0_0_5"}
        )

        [candidate] = rule.evaluate(lateral_events(), [bob, ongoing], T0 + timedelta(minutes=30))
        assert candidate.correlation_id == "LATERAL-1000-alice-10_0_0_5"

    def test_two_systems_quiet(self, rule):
        """Two systems are below the minimum"""
        assert rule.evaluate(lateral_events(("host-a", "host-b")), [], T0 + timedelta(minutes=5)) == []

    def test_events_without_user_ignored(self, rule):
        """A user is required"""
        events = [
            make_event("login", source=f"host-{i}", source_ip="10.0.0.5") for i in range(4)
        ]
        assert rule.evaluate(events, [], T0 + timedelta(minutes=5)) == []


class TestDataBreachRule:
    """Tests for DataBreachRule."""

    @pytest.fixture
    def rule(self) -> DataBreachRule:
        return DataBreachRule(DataBreachSettings())

    def test_frequency_alone(self, rule):
        """Five data events are enough on their own"""
        events = [
            make_event("Database export started", timestamp=T0 + timedelta(seconds=i))
            for i in range(5)
        ]
        [candidate] = rule.evaluate(events, [], T0 + timedelta(minutes=5))

        assert candidate.confidence == 60
        assert candidate.severity == AlertSeverity.HIGH
        assert candidate.affected_assets == frozenset({"Database", "File System"})

    def test_volume_and_frequency(self, rule):
        """Volume and frequency together raise confidence"""
        events = [
            make_event(
                "Database export started",
                timestamp=T0 + timedelta(seconds=i),
                details={"size": 11 * MB},
            )
            for i in range(5)
        ]
        [candidate] = rule.evaluate(events, [], T0 + timedelta(minutes=5))
        assert candidate.confidence == 80

    def test_volume_alone(self, rule):
        """One large download fires on volume"""
        events = [make_event("file download", details={"size": 60 * MB})]
        [candidate] = rule.evaluate(events, [], T0 + timedelta(minutes=5))
        assert candidate.confidence == 60

    def test_unrelated_messages_ignored(self, rule):
        """Only data-movement messages count"""
        events = [make_event("heartbeat") for _ in range(10)]
        assert rule.evaluate(events, [], T0 + timedelta(minutes=5)) == []


class TestCorrelationEngine:
    """End-to-end correlation cycles."""

    @pytest.mark.asyncio
    async def test_attack_chain_end_to_end(self, correlation_engine, repository, dispatcher):
        """A chain in the store becomes one critical alert"""
        await repository.add_events(chain_events())

        result = await correlation_engine.run_correlation_cycle(now=T0 + timedelta(minutes=15))

        assert result.events_fetched == 3
        assert result.alerts_touched == 1
        [alert] = await repository.query_alerts(AlertFilter())
        assert alert.alert_type == AlertType.ATTACK_CHAIN
        assert alert.severity == AlertSeverity.CRITICAL
        assert dispatcher.reasons() == ["immediate"]

    @pytest.mark.asyncio
    async def test_rerun_merges(self, correlation_engine, repository):
        """The same activity merges into the existing correlation"""
        await repository.add_events(chain_events())
        first = await correlation_engine.run_correlation_cycle(now=T0 + timedelta(minutes=15))
        second = await correlation_engine.run_correlation_cycle(now=T0 + timedelta(minutes=20))

        assert first.alert_ids == second.alert_ids
        assert repository.alert_count == 1

    @pytest.mark.asyncio
    async def test_sliding_window_keeps_one_chain(self, correlation_engine, repository):
        """A chain that outlives its first stage stays one alert"""
        stages = [
            ("Port scan detected", T0),
            ("Successful login for admin", T0 + timedelta(minutes=10)),
            ("Privilege escalation attempt via sudo", T0 + timedelta(minutes=20)),
        ]
        await repository.add_events(
            [make_event(text, timestamp=ts, source_ip=ATTACKER) for text, ts in stages]
        )
        first = await correlation_engine.run_correlation_cycle(now=T0 + timedelta(minutes=30))

        await repository.add_events(
            [
                make_event(
                    "Port scan detected",
                    timestamp=T0 + timedelta(minutes=50),
                    source_ip=ATTACKER,
                )
            ]
        )
        second = await correlation_engine.run_correlation_cycle(now=T0 + timedelta(minutes=65))

        chains = await repository.query_alerts(AlertFilter(alert_type=AlertType.ATTACK_CHAIN))
        assert len(chains) == 1
        assert second.alert_ids == first.alert_ids
        assert chains[0].correlation_id == f"CHAIN-{epoch_millis(T0)}-198_51_100_7"
        assert len(chains[0].related_log_ids) == 4

    @pytest.mark.asyncio
    async def test_open_chain_older_than_fetch_window_reused(
        self, correlation_engine, repository
    ):
        """Open composites are found even when created before the widest window"""
        await repository.add_events(chain_events())
        first = await correlation_engine.run_correlation_cycle(now=T0 + timedelta(minutes=15))

        later = T0 + timedelta(hours=3)
        await repository.add_events(
            [
                make_event(
                    event.message,
                    timestamp=later + (event.timestamp - T0),
                    source_ip=ATTACKER,
                )
                for event in chain_events()
            ]
        )
        second = await correlation_engine.run_correlation_cycle(now=later + timedelta(minutes=15))

        assert second.alert_ids == first.alert_ids
        assert repository.alert_count == 1

    @pytest.mark.asyncio
    async def test_coordinated_from_stored_alerts(self, correlation_engine, repository):
        """Detection alerts in the store feed coordinated attacks"""
        for alert in signal_alerts(["10.0.0.1", "10.0.0.2", "10.0.0.3"]):
            await repository.create_alert(alert)

        result = await correlation_engine.run_correlation_cycle(now=T0 + timedelta(minutes=10))

        assert result.alerts_fetched == 3
        coordinated = await repository.query_alerts(
            AlertFilter(alert_type=AlertType.COORDINATED_ATTACK)
        )
        assert len(coordinated) == 1
        assert coordinated[0].correlation_id == f"COORD-{epoch_millis(T0)}-brute_force"

    @pytest.mark.asyncio
    async def test_false_positives_excluded(self, correlation_engine, repository):
        """Alerts closed as false positives are not correlated"""
        for alert in signal_alerts(["10.0.0.1", "10.0.0.2", "10.0.0.3"]):
            dismissed = alert.transition(AlertStatus.FALSE_POSITIVE, timestamp=T0)
            await repository.create_alert(dismissed)

        result = await correlation_engine.run_correlation_cycle(now=T0 + timedelta(minutes=10))

        assert result.alerts_fetched == 0
        assert result.candidates == 0

    @pytest.mark.asyncio
    async def test_all_rules_disabled(self, correlation_engine, repository):
        """With no enabled rule the cycle does nothing"""
        for rule in correlation_engine.rules:
            correlation_engine.set_rule_enabled(rule.name, False)
        await repository.add_events(chain_events())

        result = await correlation_engine.run_correlation_cycle(now=T0 + timedelta(minutes=15))

        assert result.candidates == 0
        assert result.events_fetched == 0
        assert correlation_engine.max_window == timedelta(0)

    @pytest.mark.asyncio
    async def test_overlapping_cycle_skipped(self, correlation_engine):
        """A cycle started while one runs is skipped"""
        async with correlation_engine._cycle_lock:
            result = await correlation_engine.run_correlation_cycle(now=T0)
        assert result.skipped is True

    def test_max_window_and_status(self, correlation_engine):
        """The fetch window is the widest enabled rule window"""
        assert correlation_engine.max_window == timedelta(hours=2)
        correlation_engine.set_rule_enabled("lateral_movement", False)
        assert correlation_engine.max_window == timedelta(hours=1)

        status = correlation_engine.status()
        assert status["enabled_rules"] == 3
        assert status["max_window_seconds"] == 3600

    def test_unknown_rule(self, correlation_engine):
        """Unknown rule names raise KeyError"""
        with pytest.raises(KeyError):
            correlation_engine.get_rule("nope")

    def test_factory_defaults(self, repository, materializer):
        """The factory builds all four rules"""
        engine = create_correlation_engine(repository, materializer)
        assert [r.name for r in engine.rules] == [
            r.name for r in build_correlation_rules(CorrelationConfig())
        ]
        assert len(engine.rules) == 4
