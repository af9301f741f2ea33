"""Row <-> record conversion for the SQLite store.

Decoding is the only place where persisted strings become enums and
datetimes. Anything that does not parse raises :class:`ParseError`, so a
corrupt row surfaces as one well-known exception instead of an arbitrary
``ValueError`` or ``KeyError`` deep inside the engine.

Encrypted columns (``*_enc``) are handled by the repository, not here:
encode functions emit plaintext under the logical field name and decode
functions expect the already-decrypted value under that name.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any, TypeVar

from vitalwatch.core.storage.models import (
    WEEKDAY_NAMES,
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    ConditionOperator,
    EmergencyContact,
    Goal,
    GoalProgress,
    MetricType,
    ThresholdRule,
)

E = TypeVar("E", bound=Enum)


class ParseError(Exception):
    """Raised when a stored value cannot be decoded into its domain type."""


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------

def parse_enum(enum_cls: type[E], raw: Any, *, field_name: str = "") -> E:
    """Decode an enum from its persisted string value."""
    try:
        return enum_cls(raw)
    except ValueError as exc:
        label = field_name or enum_cls.__name__
        raise ParseError(f"Unknown {label} value: {raw!r}") from exc


def parse_datetime(raw: str | None, *, field_name: str = "") -> datetime | None:
    if raw is None or raw == "":
        return None
    try:
        return datetime.fromisoformat(raw)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"Malformed timestamp in {field_name or 'field'}: {raw!r}") from exc


def parse_date(raw: str | None, *, field_name: str = "") -> date | None:
    if raw is None or raw == "":
        return None
    try:
        return date.fromisoformat(raw)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"Malformed date in {field_name or 'field'}: {raw!r}") from exc


def parse_weekdays(raw: str | None) -> frozenset[str] | None:
    """Decode a comma-separated list of weekday names.

    Unknown names are kept as-is; the activation gate simply never matches
    them, and ``validate_rule`` reports them as a configuration warning.
    """
    if raw is None:
        return None
    return frozenset(part.strip().upper() for part in raw.split(",") if part.strip())


def encode_weekdays(days: frozenset[str] | None) -> str | None:
    if days is None:
        return None
    ordered = [d for d in WEEKDAY_NAMES if d in days]
    ordered += sorted(d for d in days if d not in WEEKDAY_NAMES)
    return ",".join(ordered)


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _get(row: Mapping[str, Any], key: str) -> Any:
    try:
        return row[key]
    except (KeyError, IndexError) as exc:
        raise ParseError(f"Missing column: {key}") from exc


# ---------------------------------------------------------------------------
# ThresholdRule
# ---------------------------------------------------------------------------

def rule_to_row(rule: ThresholdRule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "user_id": rule.user_id,
        "name": rule.name,
        "description": rule.description,
        "metric_type": rule.metric_type.value,
        "condition_operator": rule.condition_operator.value,
        "threshold_value": rule.threshold_value,
        "secondary_threshold_value": rule.secondary_threshold_value,
        "unit": rule.unit,
        "alert_type": rule.alert_type.value,
        "default_severity": rule.default_severity.value,
        "custom_title": rule.custom_title,
        "custom_message": rule.custom_message,
        "custom_recommendation": rule.custom_recommendation,
        "time_window_minutes": rule.time_window_minutes,
        "occurrences_required": rule.occurrences_required,
        "cooldown_minutes": rule.cooldown_minutes,
        "is_active": int(rule.is_active),
        "is_system_rule": int(rule.is_system_rule),
        "priority": rule.priority,
        "time_restriction_start": rule.time_restriction_start,
        "time_restriction_end": rule.time_restriction_end,
        "active_days_of_week": encode_weekdays(rule.active_days_of_week),
        "last_triggered_at": _iso(rule.last_triggered_at),
        "trigger_count": rule.trigger_count,
        "created_at": _iso(rule.created_at),
        "modified_at": _iso(rule.modified_at),
        "version": rule.version,
    }


def rule_from_row(row: Mapping[str, Any]) -> ThresholdRule:
    return ThresholdRule(
        id=_get(row, "id"),
        user_id=_get(row, "user_id"),
        name=_get(row, "name") or "",
        description=_get(row, "description"),
        metric_type=parse_enum(MetricType, _get(row, "metric_type"), field_name="metric_type"),
        condition_operator=parse_enum(
            ConditionOperator, _get(row, "condition_operator"), field_name="condition_operator"
        ),
        threshold_value=_get(row, "threshold_value"),
        secondary_threshold_value=_get(row, "secondary_threshold_value"),
        unit=_get(row, "unit") or "",
        alert_type=parse_enum(AlertType, _get(row, "alert_type"), field_name="alert_type"),
        default_severity=parse_enum(
            AlertSeverity, _get(row, "default_severity"), field_name="default_severity"
        ),
        custom_title=_get(row, "custom_title"),
        custom_message=_get(row, "custom_message"),
        custom_recommendation=_get(row, "custom_recommendation"),
        time_window_minutes=_get(row, "time_window_minutes"),
        occurrences_required=_get(row, "occurrences_required"),
        cooldown_minutes=_get(row, "cooldown_minutes"),
        is_active=bool(_get(row, "is_active")),
        is_system_rule=bool(_get(row, "is_system_rule")),
        priority=_get(row, "priority"),
        time_restriction_start=_get(row, "time_restriction_start"),
        time_restriction_end=_get(row, "time_restriction_end"),
        active_days_of_week=parse_weekdays(_get(row, "active_days_of_week")),
        last_triggered_at=parse_datetime(
            _get(row, "last_triggered_at"), field_name="last_triggered_at"
        ),
        trigger_count=_get(row, "trigger_count"),
        created_at=parse_datetime(_get(row, "created_at"), field_name="created_at"),
        modified_at=parse_datetime(_get(row, "modified_at"), field_name="modified_at"),
        version=_get(row, "version"),
    )


# ---------------------------------------------------------------------------
# Alert
# ---------------------------------------------------------------------------

def alert_to_row(alert: Alert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "user_id": alert.user_id,
        "alert_type": alert.alert_type.value,
        "severity": alert.severity.value,
        "title": alert.title,
        "message": alert.message,
        "recommendation": alert.recommendation,
        "timestamp": _iso(alert.timestamp),
        "status": alert.status.value,
        "is_emergency": int(alert.is_emergency),
        "triggering_value": alert.triggering_value,
        "threshold_value": alert.threshold_value,
        "measurement_id": alert.measurement_id,
        "rule_id": alert.rule_id,
        "notification_sent": int(alert.notification_sent),
        "notification_sent_at": _iso(alert.notification_sent_at),
        "emergency_contacts_notified": int(alert.emergency_contacts_notified),
        "emergency_notification_time": _iso(alert.emergency_notification_time),
        "acknowledged_at": _iso(alert.acknowledged_at),
        "user_response": alert.user_response,
        "time_to_acknowledge": alert.time_to_acknowledge,
        "is_dismissed": int(alert.is_dismissed),
        "resolved_at": _iso(alert.resolved_at),
        "resolution": alert.resolution,
        "escalated_at": _iso(alert.escalated_at),
        "escalation_level": alert.escalation_level,
        "escalated_to_contact_ids": json.dumps(alert.escalated_to_contact_ids),
        "requires_medical_review": int(alert.requires_medical_review),
        "is_medically_reviewed": int(alert.is_medically_reviewed),
        "medical_review_notes": alert.medical_review_notes,
        "medically_reviewed_by": alert.medically_reviewed_by,
        "medically_reviewed_at": _iso(alert.medically_reviewed_at),
        "created_at": _iso(alert.created_at),
        "modified_at": _iso(alert.modified_at),
        "version": alert.version,
    }


def _parse_contact_ids(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        ids = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Malformed escalated_to_contact_ids: {raw!r}") from exc
    if not isinstance(ids, list):
        raise ParseError(f"escalated_to_contact_ids is not a list: {raw!r}")
    return [str(i) for i in ids]


def alert_from_row(row: Mapping[str, Any]) -> Alert:
    timestamp = parse_datetime(_get(row, "timestamp"), field_name="timestamp")
    if timestamp is None:
        raise ParseError("Alert is missing its creation timestamp")
    return Alert(
        id=_get(row, "id"),
        user_id=_get(row, "user_id"),
        alert_type=parse_enum(AlertType, _get(row, "alert_type"), field_name="alert_type"),
        severity=parse_enum(AlertSeverity, _get(row, "severity"), field_name="severity"),
        title=_get(row, "title"),
        message=_get(row, "message"),
        recommendation=_get(row, "recommendation"),
        timestamp=timestamp,
        status=parse_enum(AlertStatus, _get(row, "status"), field_name="status"),
        triggering_value=_get(row, "triggering_value"),
        threshold_value=_get(row, "threshold_value"),
        measurement_id=_get(row, "measurement_id"),
        rule_id=_get(row, "rule_id"),
        notification_sent=bool(_get(row, "notification_sent")),
        notification_sent_at=parse_datetime(
            _get(row, "notification_sent_at"), field_name="notification_sent_at"
        ),
        emergency_contacts_notified=bool(_get(row, "emergency_contacts_notified")),
        emergency_notification_time=parse_datetime(
            _get(row, "emergency_notification_time"), field_name="emergency_notification_time"
        ),
        acknowledged_at=parse_datetime(_get(row, "acknowledged_at"), field_name="acknowledged_at"),
        user_response=_get(row, "user_response"),
        time_to_acknowledge=_get(row, "time_to_acknowledge"),
        is_dismissed=bool(_get(row, "is_dismissed")),
        resolved_at=parse_datetime(_get(row, "resolved_at"), field_name="resolved_at"),
        resolution=_get(row, "resolution"),
        escalated_at=parse_datetime(_get(row, "escalated_at"), field_name="escalated_at"),
        escalation_level=_get(row, "escalation_level"),
        escalated_to_contact_ids=_parse_contact_ids(_get(row, "escalated_to_contact_ids")),
        requires_medical_review=bool(_get(row, "requires_medical_review")),
        is_medically_reviewed=bool(_get(row, "is_medically_reviewed")),
        medical_review_notes=_get(row, "medical_review_notes"),
        medically_reviewed_by=_get(row, "medically_reviewed_by"),
        medically_reviewed_at=parse_datetime(
            _get(row, "medically_reviewed_at"), field_name="medically_reviewed_at"
        ),
        created_at=parse_datetime(_get(row, "created_at"), field_name="created_at"),
        modified_at=parse_datetime(_get(row, "modified_at"), field_name="modified_at"),
        version=_get(row, "version"),
    )


# ---------------------------------------------------------------------------
# EmergencyContact
# ---------------------------------------------------------------------------

def contact_to_row(contact: EmergencyContact) -> dict[str, Any]:
    return {
        "id": contact.id,
        "user_id": contact.user_id,
        "name": contact.name,
        "phone_number": contact.phone_number,
        "relationship": contact.relationship,
        "email": contact.email,
        "priority": contact.priority,
        "is_active": int(contact.is_active),
        "min_severity": contact.min_severity.value,
    }


def contact_from_row(row: Mapping[str, Any]) -> EmergencyContact:
    return EmergencyContact(
        id=_get(row, "id"),
        user_id=_get(row, "user_id"),
        name=_get(row, "name"),
        phone_number=_get(row, "phone_number") or "",
        relationship=_get(row, "relationship") or "",
        email=_get(row, "email"),
        priority=_get(row, "priority"),
        is_active=bool(_get(row, "is_active")),
        min_severity=parse_enum(AlertSeverity, _get(row, "min_severity"), field_name="min_severity"),
    )


# ---------------------------------------------------------------------------
# Goal / GoalProgress
# ---------------------------------------------------------------------------

def goal_to_row(goal: Goal) -> dict[str, Any]:
    return {
        "id": goal.id,
        "user_id": goal.user_id,
        "metric_type": goal.metric_type.value,
        "title": goal.title,
        "unit": goal.unit,
        "goal_type": goal.goal_type,
        "start_value": goal.start_value,
        "target_value": goal.target_value,
        "current_value": goal.current_value,
        "is_incremental": int(goal.is_incremental),
        "start_date": _iso(goal.start_date),
        "deadline": _iso(goal.deadline),
        "is_active": int(goal.is_active),
        "is_completed": int(goal.is_completed),
        "completed_at": _iso(goal.completed_at),
        "is_recurring": int(goal.is_recurring),
        "current_streak": goal.current_streak,
        "longest_streak": goal.longest_streak,
        "last_updated_date": _iso(goal.last_updated_date),
        "created_at": _iso(goal.created_at),
        "modified_at": _iso(goal.modified_at),
        "version": goal.version,
    }


def goal_from_row(row: Mapping[str, Any]) -> Goal:
    return Goal(
        id=_get(row, "id"),
        user_id=_get(row, "user_id"),
        metric_type=parse_enum(MetricType, _get(row, "metric_type"), field_name="metric_type"),
        title=_get(row, "title") or "",
        unit=_get(row, "unit") or "",
        goal_type=_get(row, "goal_type") or "",
        start_value=_get(row, "start_value"),
        target_value=_get(row, "target_value"),
        current_value=_get(row, "current_value"),
        is_incremental=bool(_get(row, "is_incremental")),
        start_date=parse_date(_get(row, "start_date"), field_name="start_date"),
        deadline=parse_date(_get(row, "deadline"), field_name="deadline"),
        is_active=bool(_get(row, "is_active")),
        is_completed=bool(_get(row, "is_completed")),
        completed_at=parse_datetime(_get(row, "completed_at"), field_name="completed_at"),
        is_recurring=bool(_get(row, "is_recurring")),
        current_streak=_get(row, "current_streak"),
        longest_streak=_get(row, "longest_streak"),
        last_updated_date=parse_date(_get(row, "last_updated_date"), field_name="last_updated_date"),
        created_at=parse_datetime(_get(row, "created_at"), field_name="created_at"),
        modified_at=parse_datetime(_get(row, "modified_at"), field_name="modified_at"),
        version=_get(row, "version"),
    )


def progress_to_row(progress: GoalProgress) -> dict[str, Any]:
    return {
        "id": progress.id,
        "goal_id": progress.goal_id,
        "user_id": progress.user_id,
        "timestamp": _iso(progress.timestamp),
        "current_value": progress.current_value,
        "progress_percentage": progress.progress_percentage,
        "is_completed": int(progress.is_completed),
        "notes": progress.notes,
        "is_milestone": int(progress.is_milestone),
        "milestone_description": progress.milestone_description,
        "streak_count": progress.streak_count,
    }


def progress_from_row(row: Mapping[str, Any]) -> GoalProgress:
    timestamp = parse_datetime(_get(row, "timestamp"), field_name="timestamp")
    if timestamp is None:
        raise ParseError("Goal progress is missing its timestamp")
    return GoalProgress(
        id=_get(row, "id"),
        goal_id=_get(row, "goal_id"),
        user_id=_get(row, "user_id"),
        timestamp=timestamp,
        current_value=_get(row, "current_value"),
        progress_percentage=_get(row, "progress_percentage"),
        is_completed=bool(_get(row, "is_completed")),
        notes=_get(row, "notes"),
        is_milestone=bool(_get(row, "is_milestone")),
        milestone_description=_get(row, "milestone_description"),
        streak_count=_get(row, "streak_count"),
    )
