"""Escalation policy for unacknowledged alerts.

Only pure decisions live here. The periodic sweep that applies them is
``AlertEngine.run_escalation_sweep``.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from vitalwatch.core.storage.models import Alert, AlertSeverity, AlertStatus, EmergencyContact
from vitalwatch.domains.health.domain_logic.rule_conditions import minutes_between

# Minutes an alert may sit unacknowledged at a severity before it escalates
ESCALATION_THRESHOLD_MINUTES: dict[AlertSeverity, int] = {
    AlertSeverity.HIGH: 30,
    AlertSeverity.MEDIUM: 60,
    AlertSeverity.LOW: 120,
}

_NEXT_SEVERITY = {
    AlertSeverity.LOW: AlertSeverity.MEDIUM,
    AlertSeverity.MEDIUM: AlertSeverity.HIGH,
    AlertSeverity.HIGH: AlertSeverity.EMERGENCY,
    AlertSeverity.EMERGENCY: AlertSeverity.EMERGENCY,
}


def should_escalate_alert(alert: Alert, now: datetime) -> bool:
    """True if an unacknowledged, non-terminal alert has waited past its threshold."""
    if alert.status.is_terminal:
        return False
    if alert.is_acknowledged or alert.severity == AlertSeverity.EMERGENCY:
        return False
    threshold = ESCALATION_THRESHOLD_MINUTES.get(alert.severity)
    if threshold is None:
        return False
    return minutes_between(alert.timestamp, now) >= threshold


def is_due_for_escalation(alert: Alert, now: datetime) -> bool:
    """Sweep check: first escalation counts from creation, later ones from ``escalated_at``.

    An ESCALATED alert has to wait out the threshold of its new severity
    before it can climb again.
    """
    if alert.status != AlertStatus.ESCALATED or alert.escalated_at is None:
        return should_escalate_alert(alert, now)
    if not should_escalate_alert(alert, now):
        return False
    threshold = ESCALATION_THRESHOLD_MINUTES[alert.severity]
    return minutes_between(alert.escalated_at, now) >= threshold


def get_escalated_severity(current: AlertSeverity) -> AlertSeverity:
    """Next severity up; EMERGENCY stays EMERGENCY."""
    return _NEXT_SEVERITY[current]


def select_escalation_contacts(
    contacts: Iterable[EmergencyContact],
    severity: AlertSeverity,
    escalation_level: int,
) -> list[EmergencyContact]:
    """Pick who to notify for an alert escalated to ``escalation_level``.

    Eligible contacts are active and accept ``severity`` (``min_severity <=
    severity``). Contacts sharing a priority number form a tier; level N
    includes the first N tiers, most urgent (lowest number) first.
    """
    if escalation_level <= 0:
        return []
    eligible = sorted(
        (c for c in contacts if c.is_active and c.min_severity <= severity),
        key=lambda c: (c.priority, c.name),
    )
    tiers = sorted({c.priority for c in eligible})[:escalation_level]
    return [c for c in eligible if c.priority in tiers]
