"""Tests for escalation decisions and contact selection."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from vitalwatch.core.storage.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    EmergencyContact,
)
from vitalwatch.domains.health.domain_logic.escalation import (
    get_escalated_severity,
    is_due_for_escalation,
    select_escalation_contacts,
    should_escalate_alert,
)

NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


def _make_alert(**overrides) -> Alert:
    defaults = dict(
        id="a1",
        user_id="u1",
        alert_type=AlertType.HEART_RATE_HIGH,
        severity=AlertSeverity.HIGH,
        title="t",
        message="m",
        recommendation="r",
        timestamp=NOW,
        status=AlertStatus.ACTIVE,
    )
    defaults.update(overrides)
    return Alert(**defaults)


def _contact(cid: str, priority: int, **overrides) -> EmergencyContact:
    return EmergencyContact(id=cid, user_id="u1", name=cid, priority=priority, **overrides)


class TestShouldEscalate:
    @pytest.mark.parametrize("severity,minutes", [
        (AlertSeverity.HIGH, 30),
        (AlertSeverity.MEDIUM, 60),
        (AlertSeverity.LOW, 120),
    ])
    def test_thresholds(self, severity, minutes):
        alert = _make_alert(severity=severity)
        assert should_escalate_alert(alert, NOW + timedelta(minutes=minutes - 1)) is False
        assert should_escalate_alert(alert, NOW + timedelta(minutes=minutes)) is True

    def test_acknowledged_never_escalates(self):
        alert = _make_alert(status=AlertStatus.ACKNOWLEDGED, acknowledged_at=NOW)
        assert should_escalate_alert(alert, NOW + timedelta(days=1)) is False

    def test_emergency_never_escalates(self):
        alert = _make_alert(severity=AlertSeverity.EMERGENCY)
        assert should_escalate_alert(alert, NOW + timedelta(days=1)) is False

    @pytest.mark.parametrize("status", [AlertStatus.RESOLVED, AlertStatus.FALSE_ALARM])
    def test_terminal_never_escalates(self, status):
        alert = _make_alert(status=status)
        assert should_escalate_alert(alert, NOW + timedelta(days=1)) is False

    def test_escalated_alert_keeps_climbing(self):
        alert = _make_alert(status=AlertStatus.ESCALATED, severity=AlertSeverity.MEDIUM)
        assert should_escalate_alert(alert, NOW + timedelta(minutes=60)) is True


class TestIsDueForEscalation:
    def test_first_escalation_counts_from_creation(self):
        alert = _make_alert(severity=AlertSeverity.LOW)
        assert is_due_for_escalation(alert, NOW + timedelta(minutes=119)) is False
        assert is_due_for_escalation(alert, NOW + timedelta(minutes=120)) is True

    def test_escalated_alert_waits_from_last_escalation(self):
        escalated_at = NOW + timedelta(minutes=120)
        alert = _make_alert(
            status=AlertStatus.ESCALATED,
            severity=AlertSeverity.MEDIUM,
            escalated_at=escalated_at,
            escalation_level=1,
        )
        assert is_due_for_escalation(alert, escalated_at) is False
        assert is_due_for_escalation(alert, escalated_at + timedelta(minutes=59)) is False
        assert is_due_for_escalation(alert, escalated_at + timedelta(minutes=60)) is True

    def test_escalated_emergency_stays_put(self):
        alert = _make_alert(
            status=AlertStatus.ESCALATED,
            severity=AlertSeverity.EMERGENCY,
            escalated_at=NOW,
        )
        assert is_due_for_escalation(alert, NOW + timedelta(days=1)) is False


class TestEscalatedSeverity:
    def test_steps_up(self):
        assert get_escalated_severity(AlertSeverity.LOW) == AlertSeverity.MEDIUM
        assert get_escalated_severity(AlertSeverity.MEDIUM) == AlertSeverity.HIGH
        assert get_escalated_severity(AlertSeverity.HIGH) == AlertSeverity.EMERGENCY

    def test_ceiling(self):
        assert get_escalated_severity(AlertSeverity.EMERGENCY) == AlertSeverity.EMERGENCY


class TestSelectContacts:
    def test_tiers_by_priority(self):
        contacts = [_contact("c3", 3), _contact("c1", 1), _contact("c2a", 2), _contact("c2b", 2)]
        level1 = select_escalation_contacts(contacts, AlertSeverity.EMERGENCY, 1)
        level2 = select_escalation_contacts(contacts, AlertSeverity.EMERGENCY, 2)
        assert [c.id for c in level1] == ["c1"]
        assert [c.id for c in level2] == ["c1", "c2a", "c2b"]

    def test_respects_min_severity_and_active(self):
        contacts = [
            _contact("only-emergencies", 1, min_severity=AlertSeverity.EMERGENCY),
            _contact("inactive", 1, is_active=False),
            _contact("any-high", 2),
        ]
        selected = select_escalation_contacts(contacts, AlertSeverity.HIGH, 1)
        assert [c.id for c in selected] == ["any-high"]

    def test_level_zero_selects_nobody(self):
        assert select_escalation_contacts([_contact("c1", 1)], AlertSeverity.HIGH, 0) == []
