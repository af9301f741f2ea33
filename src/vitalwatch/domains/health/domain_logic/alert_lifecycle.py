"""Alert lifecycle state machine.

States::

    NEW -> ACTIVE -> ACKNOWLEDGED -> RESOLVED
             |            |
             +--> ESCALATED (may be acknowledged, resolved, or escalated again)

    any non-terminal -> FALSE_ALARM

RESOLVED and FALSE_ALARM are terminal: after that only the medical review
fields may change. Dismissal is a flag, not a status.

Every transition is a pure function ``(alert, now, ...) -> new alert``. An
illegal request raises :class:`InvalidStateTransition` and the input alert
is untouched, which lets the repository run these inside an atomic
read-modify-write.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime

from vitalwatch.core.storage.models import Alert, AlertSeverity, AlertStatus, AlertType
from vitalwatch.domains.health.domain_logic.alert_content import AlertContent
from vitalwatch.domains.health.domain_logic.rule_conditions import minutes_between

_ACKNOWLEDGEABLE = frozenset({AlertStatus.ACTIVE, AlertStatus.ESCALATED})
_RESOLVABLE = frozenset({AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED, AlertStatus.ESCALATED})
_ESCALATABLE = frozenset({AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED, AlertStatus.ESCALATED})


class InvalidStateTransition(Exception):
    """Raised when a lifecycle action is not allowed from the alert's current state."""

    def __init__(
        self,
        alert_id: str,
        current_status: AlertStatus,
        action: str,
        reason: str | None = None,
    ) -> None:
        self.alert_id = alert_id
        self.current_status = current_status
        self.action = action
        self.reason = reason
        detail = reason or f"not allowed from {current_status.value}"
        super().__init__(f"Cannot {action} alert {alert_id}: {detail}")


def _require(alert: Alert, allowed: frozenset[AlertStatus], action: str) -> None:
    if alert.status not in allowed:
        raise InvalidStateTransition(alert.id, alert.status, action)


def calculate_time_to_acknowledge(timestamp: datetime, acknowledged_at: datetime) -> int:
    """Minutes from creation to acknowledgment, truncated toward zero."""
    return minutes_between(timestamp, acknowledged_at)


def create_alert(
    *,
    alert_id: str,
    user_id: str,
    alert_type: AlertType,
    severity: AlertSeverity,
    content: AlertContent,
    timestamp: datetime,
    triggering_value: float | None = None,
    threshold_value: float | None = None,
    measurement_id: str | None = None,
    rule_id: str | None = None,
) -> Alert:
    """Build a new alert in state NEW. EMERGENCY alerts are flagged for medical review."""
    return Alert(
        id=alert_id,
        user_id=user_id,
        alert_type=alert_type,
        severity=severity,
        title=content.title,
        message=content.message,
        recommendation=content.recommendation,
        timestamp=timestamp,
        status=AlertStatus.NEW,
        triggering_value=triggering_value,
        threshold_value=threshold_value,
        measurement_id=measurement_id,
        rule_id=rule_id,
        requires_medical_review=severity == AlertSeverity.EMERGENCY,
        created_at=timestamp,
        modified_at=timestamp,
    )


def activate(alert: Alert, now: datetime) -> Alert:
    """NEW -> ACTIVE."""
    _require(alert, frozenset({AlertStatus.NEW}), "activate")
    return replace(alert, status=AlertStatus.ACTIVE, modified_at=now)


def acknowledge(alert: Alert, now: datetime, user_response: str | None = None) -> Alert:
    """ACTIVE / ESCALATED -> ACKNOWLEDGED, recording the response and time to acknowledge."""
    _require(alert, _ACKNOWLEDGEABLE, "acknowledge")
    return replace(
        alert,
        status=AlertStatus.ACKNOWLEDGED,
        acknowledged_at=now,
        user_response=user_response,
        time_to_acknowledge=calculate_time_to_acknowledge(alert.timestamp, now),
        modified_at=now,
    )


def resolve(alert: Alert, now: datetime, resolution: str) -> Alert:
    """ACTIVE / ACKNOWLEDGED / ESCALATED -> RESOLVED. ``resolution`` must be non-empty."""
    _require(alert, _RESOLVABLE, "resolve")
    if resolution is None or not resolution.strip():
        raise InvalidStateTransition(
            alert.id, alert.status, "resolve", "a resolution is required"
        )
    return replace(
        alert,
        status=AlertStatus.RESOLVED,
        resolved_at=now,
        resolution=resolution.strip(),
        modified_at=now,
    )


def mark_false_alarm(alert: Alert, now: datetime, reason: str | None = None) -> Alert:
    """Any non-terminal status -> FALSE_ALARM; ``reason`` is kept as the resolution."""
    if alert.status.is_terminal:
        raise InvalidStateTransition(alert.id, alert.status, "mark_false_alarm")
    return replace(
        alert,
        status=AlertStatus.FALSE_ALARM,
        resolved_at=now,
        resolution=reason.strip() if reason and reason.strip() else None,
        modified_at=now,
    )


def escalate(
    alert: Alert,
    now: datetime,
    new_severity: AlertSeverity,
    contact_ids: Iterable[str] = (),
) -> Alert:
    """Promote an open alert to ESCALATED at ``new_severity``.

    Increments ``escalation_level`` and merges ``contact_ids`` into the set
    of notified contacts. Reaching EMERGENCY marks emergency contacts as
    notified and flags the alert for medical review.
    """
    _require(alert, _ESCALATABLE, "escalate")

    notified = list(alert.escalated_to_contact_ids)
    for contact_id in contact_ids:
        if contact_id not in notified:
            notified.append(contact_id)

    changes: dict = {
        "status": AlertStatus.ESCALATED,
        "severity": new_severity,
        "escalation_level": alert.escalation_level + 1,
        "escalated_at": now,
        "escalated_to_contact_ids": notified,
        "modified_at": now,
    }
    if new_severity == AlertSeverity.EMERGENCY:
        changes["requires_medical_review"] = True
        if notified and not alert.emergency_contacts_notified:
            changes["emergency_contacts_notified"] = True
            changes["emergency_notification_time"] = now
    return replace(alert, **changes)


def dismiss(alert: Alert, now: datetime) -> Alert:
    """Hide an open alert from active views. Status is unchanged."""
    if alert.status.is_terminal:
        raise InvalidStateTransition(alert.id, alert.status, "dismiss")
    return replace(alert, is_dismissed=True, modified_at=now)


def mark_notification_sent(alert: Alert, now: datetime) -> Alert:
    if alert.status.is_terminal:
        raise InvalidStateTransition(alert.id, alert.status, "mark_notification_sent")
    return replace(alert, notification_sent=True, notification_sent_at=now, modified_at=now)


def mark_emergency_contacts_notified(alert: Alert, now: datetime) -> Alert:
    if alert.status.is_terminal:
        raise InvalidStateTransition(alert.id, alert.status, "notify_emergency_contacts")
    return replace(
        alert,
        emergency_contacts_notified=True,
        emergency_notification_time=now,
        modified_at=now,
    )


def record_medical_review(
    alert: Alert,
    now: datetime,
    reviewed_by: str,
    notes: str | None = None,
) -> Alert:
    """Attach a medical review. Allowed in every status, terminal ones included."""
    if not reviewed_by or not reviewed_by.strip():
        raise InvalidStateTransition(
            alert.id, alert.status, "record_medical_review", "a reviewer is required"
        )
    return replace(
        alert,
        is_medically_reviewed=True,
        medically_reviewed_by=reviewed_by.strip(),
        medically_reviewed_at=now,
        medical_review_notes=notes,
        modified_at=now,
    )
