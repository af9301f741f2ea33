"""Tests for the AlertEngine: evaluation pipeline, lifecycle, escalation sweep."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from vitalwatch.core.storage.models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    ConditionOperator,
    EmergencyContact,
    Measurement,
    MetricType,
    ThresholdRule,
)
from vitalwatch.domains.health.domain_logic.alert_engine import (
    AlertEngine,
    AlertNotFoundError,
    RuleNotFoundError,
)
from vitalwatch.domains.health.domain_logic.alert_lifecycle import InvalidStateTransition

NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(health_repository, audit_logger):
    counter = itertools.count(1)
    return AlertEngine(
        health_repository, audit_logger, id_factory=lambda: f"id-{next(counter)}"
    )


def _make_rule(**overrides) -> ThresholdRule:
    defaults = dict(
        id="",
        user_id="u1",
        metric_type=MetricType.HEART_RATE,
        condition_operator=ConditionOperator.ABOVE,
        threshold_value=120.0,
        alert_type=AlertType.HEART_RATE_HIGH,
        name="High HR",
        cooldown_minutes=60,
    )
    defaults.update(overrides)
    return ThresholdRule(**defaults)


def _reading(value: float, at: datetime = NOW, **overrides) -> Measurement:
    defaults = dict(
        user_id="u1",
        metric_type=MetricType.HEART_RATE,
        value=value,
        timestamp=at,
    )
    defaults.update(overrides)
    return Measurement(**defaults)


def _at(minutes: int) -> datetime:
    return NOW + timedelta(minutes=minutes)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

class TestEvaluateMeasurement:
    def test_violation_creates_active_alert(self, engine, health_repository):
        rule = engine.add_rule(_make_rule())
        alerts = engine.evaluate_measurement(_reading(150, id="m-1"))

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.status == AlertStatus.ACTIVE
        assert alert.severity == AlertSeverity.MEDIUM
        assert alert.title == "Elevated Heart Rate Detected"
        assert alert.message == "Your heart rate of 150 bpm is above the threshold of 120 bpm."
        assert alert.triggering_value == 150
        assert alert.measurement_id == "m-1"
        assert alert.rule_id == rule.id

        stored_rule = health_repository.get_rule(rule.id)
        assert stored_rule.trigger_count == 1
        assert stored_rule.last_triggered_at == NOW

    def test_normal_reading_creates_nothing(self, engine, health_repository):
        engine.add_rule(_make_rule())
        assert engine.evaluate_measurement(_reading(80)) == []
        assert health_repository.count_alerts() == 0

    def test_other_metric_ignored(self, engine):
        engine.add_rule(_make_rule())
        reading = _reading(150, metric_type=MetricType.BLOOD_GLUCOSE)
        assert engine.evaluate_measurement(reading) == []

    def test_non_finite_value_skipped(self, engine):
        engine.add_rule(_make_rule())
        assert engine.evaluate_measurement(_reading(float("nan"))) == []
        assert engine.evaluate_measurement(_reading(float("inf"))) == []

    def test_cooldown_suppresses_repeat(self, engine):
        engine.add_rule(_make_rule())
        assert len(engine.evaluate_measurement(_reading(150, _at(0)))) == 1
        assert engine.evaluate_measurement(_reading(150, _at(10))) == []
        assert len(engine.evaluate_measurement(_reading(150, _at(61)))) == 1

    def test_multiple_occurrences_required(self, engine):
        engine.add_rule(_make_rule(occurrences_required=3))
        assert engine.evaluate_measurement(_reading(130, _at(0))) == []
        assert engine.evaluate_measurement(_reading(130, _at(1))) == []
        assert len(engine.evaluate_measurement(_reading(130, _at(2)))) == 1

    def test_consecutive_run_broken_by_normal_reading(self, engine):
        engine.add_rule(_make_rule(occurrences_required=2))
        engine.evaluate_measurement(_reading(130, _at(0)))
        engine.evaluate_measurement(_reading(90, _at(1)))
        assert engine.evaluate_measurement(_reading(130, _at(2))) == []

    def test_several_rules_may_fire(self, engine):
        engine.add_rule(_make_rule(name="a", priority=9))
        engine.add_rule(_make_rule(name="b", threshold_value=100.0, custom_title="Over 100"))
        alerts = engine.evaluate_measurement(_reading(150))
        assert len(alerts) == 2
        assert alerts[0].title == "Elevated Heart Rate Detected"
        assert alerts[1].title == "Over 100"

    def test_inactive_rule_ignored(self, engine):
        rule = engine.add_rule(_make_rule())
        engine.set_rule_active(rule.id, False, now=NOW)
        assert engine.evaluate_measurement(_reading(150)) == []

    def test_rule_outside_time_window_ignored(self, engine):
        engine.add_rule(_make_rule(time_restriction_start="22:00", time_restriction_end="06:00"))
        assert engine.evaluate_measurement(_reading(150, NOW)) == []
        night = NOW.replace(hour=23, minute=30)
        assert len(engine.evaluate_measurement(_reading(150, night))) == 1

    def test_emergency_reading(self, engine):
        engine.add_rule(_make_rule())
        engine.add_emergency_contact(EmergencyContact(id="", user_id="u1", name="Sam"))
        alert = engine.evaluate_measurement(_reading(185))[0]
        assert alert.severity == AlertSeverity.EMERGENCY
        assert alert.requires_medical_review is True
        assert alert.emergency_contacts_notified is True
        assert alert.status == AlertStatus.ACTIVE

    def test_emergency_without_contacts(self, engine):
        engine.add_rule(_make_rule())
        alert = engine.evaluate_measurement(_reading(185))[0]
        assert alert.requires_medical_review is True
        assert alert.emergency_contacts_notified is False

    def test_creation_is_audited(self, engine, audit_logger):
        engine.add_rule(_make_rule())
        alert = engine.evaluate_measurement(_reading(150))[0]
        actions = [e["action"] for e in audit_logger.get_events(entity_id=alert.id)]
        assert sorted(actions) == ["activate", "create"]


# ---------------------------------------------------------------------------
# Default rules
# ---------------------------------------------------------------------------

class TestDefaultRules:
    def test_install_once(self, engine):
        installed = engine.install_default_rules("u1", now=NOW)
        assert len(installed) == 7
        assert engine.install_default_rules("u1", now=NOW) == []
        assert len(engine.list_rules("u1")) == 7

    def test_default_high_heart_rate_needs_three_readings(self, engine):
        engine.install_default_rules("u1", now=NOW)
        assert engine.evaluate_measurement(_reading(130, _at(0))) == []
        assert engine.evaluate_measurement(_reading(130, _at(1))) == []
        alerts = engine.evaluate_measurement(_reading(130, _at(2)))
        assert [a.alert_type for a in alerts] == [AlertType.HEART_RATE_HIGH]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def _alert(self, engine):
        engine.add_rule(_make_rule())
        return engine.evaluate_measurement(_reading(150))[0]

    def test_acknowledge_then_resolve(self, engine, audit_logger):
        alert = self._alert(engine)
        acked = engine.acknowledge_alert(alert.id, "climbing stairs", now=_at(5))
        assert acked.status == AlertStatus.ACKNOWLEDGED
        assert acked.time_to_acknowledge == 5
        resolved = engine.resolve_alert(alert.id, "felt fine after rest", now=_at(20))
        assert resolved.status == AlertStatus.RESOLVED
        assert engine.get_alert(alert.id).resolution == "felt fine after rest"
        assert engine.list_active_alerts("u1") == []

        event = audit_logger.get_events(action="resolve")[0]
        assert event["from_status"] == "ACKNOWLEDGED"
        assert event["to_status"] == "RESOLVED"

    def test_rejected_transition_is_audited(self, engine, audit_logger):
        alert = self._alert(engine)
        engine.resolve_alert(alert.id, "done", now=_at(5))
        with pytest.raises(InvalidStateTransition):
            engine.resolve_alert(alert.id, "again", now=_at(6))
        assert engine.get_alert(alert.id).resolution == "done"
        rejected = audit_logger.get_events(status="rejected")
        assert len(rejected) == 1
        assert rejected[0]["from_status"] == "RESOLVED"

    def test_missing_alert(self, engine):
        with pytest.raises(AlertNotFoundError):
            engine.acknowledge_alert("nope")
        with pytest.raises(AlertNotFoundError):
            engine.get_alert("nope")

    def test_false_alarm_and_dismiss(self, engine):
        alert = self._alert(engine)
        engine.dismiss_alert(alert.id, now=_at(1))
        assert engine.list_active_alerts("u1") == []
        marked = engine.mark_false_alarm(alert.id, "strap was loose", now=_at(2))
        assert marked.status == AlertStatus.FALSE_ALARM

    def test_medical_review_after_resolution(self, engine):
        alert = self._alert(engine)
        engine.resolve_alert(alert.id, "done", now=_at(5))
        reviewed = engine.record_medical_review(alert.id, "Dr. Okafor", "no concern", now=_at(60))
        assert reviewed.is_medically_reviewed is True
        assert reviewed.status == AlertStatus.RESOLVED

    def test_notification_sent(self, engine):
        alert = self._alert(engine)
        updated = engine.mark_notification_sent(alert.id, now=_at(1))
        assert updated.notification_sent is True


# ---------------------------------------------------------------------------
# Escalation sweep
# ---------------------------------------------------------------------------

class TestEscalationSweep:
    def test_unacknowledged_alert_climbs_to_emergency(self, engine):
        engine.add_rule(_make_rule())
        engine.add_emergency_contact(EmergencyContact(id="c1", user_id="u1", name="A", priority=1))
        engine.add_emergency_contact(EmergencyContact(id="c2", user_id="u1", name="B", priority=2))
        alert = engine.evaluate_measurement(_reading(150))[0]
        assert alert.severity == AlertSeverity.MEDIUM

        assert engine.run_escalation_sweep(now=_at(59)) == []

        first = engine.run_escalation_sweep(now=_at(60))
        assert len(first) == 1
        assert first[0].status == AlertStatus.ESCALATED
        assert first[0].severity == AlertSeverity.HIGH
        assert first[0].escalation_level == 1
        assert first[0].escalated_at == _at(60)
        assert first[0].escalated_to_contact_ids == ["c1"]

        # HIGH waits 30 minutes from the last escalation
        assert engine.run_escalation_sweep(now=_at(60)) == []
        assert engine.run_escalation_sweep(now=_at(89)) == []

        second = engine.run_escalation_sweep(now=_at(90))
        assert second[0].severity == AlertSeverity.EMERGENCY
        assert second[0].escalation_level == 2
        assert second[0].escalated_to_contact_ids == ["c1", "c2"]
        assert second[0].emergency_contacts_notified is True
        assert second[0].requires_medical_review is True

        assert engine.run_escalation_sweep(now=_at(600)) == []

    def test_back_to_back_sweeps_escalate_once(self, engine):
        engine.add_rule(_make_rule())
        alert = engine.evaluate_measurement(_reading(130))[0]
        assert alert.severity == AlertSeverity.LOW

        swept = [engine.run_escalation_sweep(now=_at(m)) for m in (120, 121, 122, 123)]

        assert [len(s) for s in swept] == [1, 0, 0, 0]
        stored = engine.get_alert(alert.id)
        assert stored.severity == AlertSeverity.MEDIUM
        assert stored.escalation_level == 1

    def test_each_tier_waits_its_own_threshold(self, engine):
        engine.add_rule(_make_rule())
        alert = engine.evaluate_measurement(_reading(130))[0]

        engine.run_escalation_sweep(now=_at(120))
        assert engine.run_escalation_sweep(now=_at(179)) == []
        assert engine.run_escalation_sweep(now=_at(180))[0].severity == AlertSeverity.HIGH
        assert engine.run_escalation_sweep(now=_at(209)) == []
        assert engine.run_escalation_sweep(now=_at(210))[0].severity == AlertSeverity.EMERGENCY
        assert engine.get_alert(alert.id).escalation_level == 3

    def test_acknowledged_alert_not_escalated(self, engine):
        engine.add_rule(_make_rule())
        alert = engine.evaluate_measurement(_reading(150))[0]
        engine.acknowledge_alert(alert.id, now=_at(10))
        assert engine.run_escalation_sweep(now=_at(600)) == []

    def test_sweep_is_audited(self, engine, audit_logger):
        engine.add_rule(_make_rule())
        engine.evaluate_measurement(_reading(150))
        engine.run_escalation_sweep(now=_at(60))
        event = audit_logger.get_events(action="escalate")[0]
        assert event["actor"] == "escalation_sweep"
        assert event["from_status"] == "ACTIVE"
        assert event["to_status"] == "ESCALATED"


# ---------------------------------------------------------------------------
# Rules and retention
# ---------------------------------------------------------------------------

class TestRulesAndRetention:
    def test_disable_drops_pending_occurrences(self, engine):
        rule = engine.add_rule(_make_rule(occurrences_required=2))
        engine.evaluate_measurement(_reading(130, _at(0)))
        engine.set_rule_active(rule.id, False, now=_at(1))
        engine.set_rule_active(rule.id, True, now=_at(2))
        assert engine.evaluate_measurement(_reading(130, _at(3))) == []

    def test_set_rule_active_missing(self, engine):
        with pytest.raises(RuleNotFoundError):
            engine.set_rule_active("nope", False)

    def test_delete_rule(self, engine, audit_logger):
        rule = engine.add_rule(_make_rule())
        engine.delete_rule(rule.id)
        assert engine.list_rules("u1") == []
        assert audit_logger.get_events(action="data_delete")[0]["entity_type"] == "rule"
        with pytest.raises(RuleNotFoundError):
            engine.delete_rule(rule.id)

    def test_purge_terminal_alerts(self, engine, health_repository):
        engine.add_rule(_make_rule())
        old = engine.evaluate_measurement(_reading(150, _at(0)))[0]
        engine.resolve_alert(old.id, "done", now=_at(5))
        engine.evaluate_measurement(_reading(150, _at(120)))
        purged = engine.purge_terminal_alerts("u1", older_than_days=90, now=NOW + timedelta(days=91))
        assert purged == 1
        assert health_repository.count_alerts("u1") == 1
