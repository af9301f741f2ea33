"""Records and closed vocabularies shared by the alert engine and storage.

Every record is a plain dataclass that maps field-for-field onto a row of
the SQLite store (see ``codecs``). Enumerations are ``str``-valued so their
persisted form is simply ``.value``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

class MetricType(str, Enum):
    """Kinds of physiological measurement produced by device ingestion."""

    HEART_RATE = "heart_rate"
    HEART_RATE_RESTING = "heart_rate_resting"
    HEART_RATE_VARIABILITY = "heart_rate_variability"
    BLOOD_PRESSURE_SYSTOLIC = "blood_pressure_systolic"
    BLOOD_PRESSURE_DIASTOLIC = "blood_pressure_diastolic"
    OXYGEN_SATURATION = "oxygen_saturation"
    BODY_TEMPERATURE = "body_temperature"
    BLOOD_GLUCOSE = "blood_glucose"
    RESPIRATORY_RATE = "respiratory_rate"
    STRESS_LEVEL = "stress_level"
    DAILY_STEPS = "daily_steps"
    ACTIVE_MINUTES = "active_minutes"
    SLEEP_DURATION = "sleep_duration"
    WEIGHT = "weight"
    WATER_INTAKE = "water_intake"


class ConditionOperator(str, Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"
    EQUAL = "EQUAL"
    NOT_EQUAL = "NOT_EQUAL"
    BETWEEN = "BETWEEN"
    OUTSIDE = "OUTSIDE"

    @property
    def needs_secondary_threshold(self) -> bool:
        return self in (ConditionOperator.BETWEEN, ConditionOperator.OUTSIDE)


class AlertType(str, Enum):
    HEART_RATE_HIGH = "HEART_RATE_HIGH"
    HEART_RATE_LOW = "HEART_RATE_LOW"
    BLOOD_PRESSURE_HIGH = "BLOOD_PRESSURE_HIGH"
    BLOOD_PRESSURE_LOW = "BLOOD_PRESSURE_LOW"
    OXYGEN_LOW = "OXYGEN_LOW"
    GLUCOSE_HIGH = "GLUCOSE_HIGH"
    GLUCOSE_LOW = "GLUCOSE_LOW"
    TEMPERATURE_HIGH = "TEMPERATURE_HIGH"
    TEMPERATURE_LOW = "TEMPERATURE_LOW"
    IRREGULAR_HEARTBEAT = "IRREGULAR_HEARTBEAT"
    SLEEP_APNEA = "SLEEP_APNEA"
    STRESS_HIGH = "STRESS_HIGH"
    ACTIVITY_LOW = "ACTIVITY_LOW"
    DEHYDRATION = "DEHYDRATION"
    CUSTOM = "CUSTOM"


class AlertSeverity(str, Enum):
    """Four-level severity with a total order LOW < MEDIUM < HIGH < EMERGENCY.

    Comparison operators use the declaration order, not string order.
    """

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EMERGENCY = "EMERGENCY"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self.value]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, AlertSeverity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, AlertSeverity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, AlertSeverity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, AlertSeverity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {"LOW": 0, "MEDIUM": 1, "HIGH": 2, "EMERGENCY": 3}


class AlertStatus(str, Enum):
    NEW = "NEW"
    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    FALSE_ALARM = "FALSE_ALARM"

    @property
    def is_terminal(self) -> bool:
        return self in (AlertStatus.RESOLVED, AlertStatus.FALSE_ALARM)


class TrendDirection(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    STABLE = "STABLE"


WEEKDAY_NAMES = (
    "MONDAY",
    "TUESDAY",
    "WEDNESDAY",
    "THURSDAY",
    "FRIDAY",
    "SATURDAY",
    "SUNDAY",
)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Measurement:
    """A single reading from a device. Read-only input to the engine."""

    user_id: str
    metric_type: MetricType
    value: float
    timestamp: datetime
    id: str = ""


@dataclass
class ThresholdRule:
    """A user-configurable condition that decides whether a reading alerts."""

    id: str
    user_id: str
    metric_type: MetricType
    condition_operator: ConditionOperator
    threshold_value: float
    alert_type: AlertType
    default_severity: AlertSeverity = AlertSeverity.MEDIUM
    secondary_threshold_value: float | None = None
    name: str = ""
    description: str | None = None
    unit: str = ""

    # Overrides for the generated alert text
    custom_title: str | None = None
    custom_message: str | None = None
    custom_recommendation: str | None = None

    # Firing policy
    time_window_minutes: int | None = None  # None = consecutive occurrences
    occurrences_required: int = 1
    cooldown_minutes: int = 60
    is_active: bool = True
    is_system_rule: bool = False
    priority: int = 5  # higher is evaluated first

    # Activation window
    time_restriction_start: str | None = None  # "HH:MM"
    time_restriction_end: str | None = None
    active_days_of_week: frozenset[str] | None = None  # e.g. {"MONDAY"}

    # Trigger bookkeeping
    last_triggered_at: datetime | None = None
    trigger_count: int = 0

    created_at: datetime | None = None
    modified_at: datetime | None = None
    version: int = 0


@dataclass
class Alert:
    """A generated health alert and its lifecycle state."""

    id: str
    user_id: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    recommendation: str
    timestamp: datetime  # creation time, immutable
    status: AlertStatus = AlertStatus.NEW

    # What triggered it
    triggering_value: float | None = None
    threshold_value: float | None = None
    measurement_id: str | None = None
    rule_id: str | None = None

    # Notification
    notification_sent: bool = False
    notification_sent_at: datetime | None = None
    emergency_contacts_notified: bool = False
    emergency_notification_time: datetime | None = None

    # Acknowledgment
    acknowledged_at: datetime | None = None
    user_response: str | None = None
    time_to_acknowledge: int | None = None  # minutes
    is_dismissed: bool = False

    # Resolution
    resolved_at: datetime | None = None
    resolution: str | None = None

    # Escalation
    escalated_at: datetime | None = None
    escalation_level: int = 0
    escalated_to_contact_ids: list[str] = field(default_factory=list)

    # Medical review
    requires_medical_review: bool = False
    is_medically_reviewed: bool = False
    medical_review_notes: str | None = None
    medically_reviewed_by: str | None = None
    medically_reviewed_at: datetime | None = None

    created_at: datetime | None = None
    modified_at: datetime | None = None
    version: int = 0

    @property
    def is_emergency(self) -> bool:
        return self.severity == AlertSeverity.EMERGENCY

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledged_at is not None


@dataclass
class EmergencyContact:
    """Someone to notify when an alert escalates."""

    id: str
    user_id: str
    name: str
    phone_number: str = ""
    relationship: str = ""
    email: str | None = None
    priority: int = 1  # lower is contacted first
    is_active: bool = True
    min_severity: AlertSeverity = AlertSeverity.HIGH


@dataclass
class Goal:
    """A target for a metric, tracked over time."""

    id: str
    user_id: str
    metric_type: MetricType
    target_value: float
    current_value: float = 0.0
    start_value: float | None = None
    is_incremental: bool = True  # False = lower is better (e.g. weight loss)
    title: str = ""
    unit: str = ""
    goal_type: str = ""
    start_date: date | None = None
    deadline: date | None = None
    is_active: bool = True
    is_completed: bool = False
    completed_at: datetime | None = None
    is_recurring: bool = False
    current_streak: int = 0
    longest_streak: int = 0
    last_updated_date: date | None = None
    created_at: datetime | None = None
    modified_at: datetime | None = None
    version: int = 0


@dataclass
class GoalProgress:
    """Append-only snapshot of a goal's value at a point in time."""

    id: str
    goal_id: str
    user_id: str
    timestamp: datetime
    current_value: float
    progress_percentage: int  # 0-100
    is_completed: bool
    notes: str | None = None
    is_milestone: bool = False
    milestone_description: str | None = None
    streak_count: int = 0
