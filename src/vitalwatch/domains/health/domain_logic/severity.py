"""Severity classification for threshold violations.

Deterministic: the same (alert type, value, threshold) always produces the
same severity. Absolute clinical cutoffs are checked before the generic
deviation bands so that a lenient user threshold can never downgrade a
dangerous reading.
"""

from __future__ import annotations

import math
import operator
from collections.abc import Callable

from vitalwatch.core.storage.models import AlertSeverity, AlertType

# Alert types where a reading above the threshold is the problem
HIGH_IS_BAD = frozenset({
    AlertType.HEART_RATE_HIGH,
    AlertType.BLOOD_PRESSURE_HIGH,
    AlertType.GLUCOSE_HIGH,
    AlertType.TEMPERATURE_HIGH,
})

# Alert types where a reading below the threshold is the problem
LOW_IS_BAD = frozenset({
    AlertType.HEART_RATE_LOW,
    AlertType.BLOOD_PRESSURE_LOW,
    AlertType.GLUCOSE_LOW,
    AlertType.OXYGEN_LOW,
    AlertType.TEMPERATURE_LOW,
})

# alert type -> (comparison, absolute cutoff)
EMERGENCY_OVERRIDES: dict[AlertType, tuple[Callable[[float, float], bool], float]] = {
    AlertType.HEART_RATE_HIGH: (operator.gt, 180.0),      # bpm
    AlertType.HEART_RATE_LOW: (operator.lt, 40.0),        # bpm
    AlertType.BLOOD_PRESSURE_HIGH: (operator.gt, 180.0),  # systolic mmHg
    AlertType.OXYGEN_LOW: (operator.lt, 90.0),            # SpO2 %
    AlertType.TEMPERATURE_HIGH: (operator.gt, 39.5),      # °C
    AlertType.GLUCOSE_LOW: (operator.lt, 54.0),           # mg/dL
    AlertType.GLUCOSE_HIGH: (operator.gt, 250.0),         # mg/dL
}

EMERGENCY_DEVIATION = 50.0
HIGH_DEVIATION = 30.0
MEDIUM_DEVIATION = 15.0


def deviation_percentage(alert_type: AlertType, value: float, threshold: float) -> float:
    """Relative distance of ``value`` from ``threshold`` in percent.

    Signed for directional alert types (positive = worse), absolute for
    the rest. A zero or non-finite threshold, or a non-finite value,
    yields 0.0.
    """
    if threshold == 0 or not math.isfinite(threshold) or not math.isfinite(value):
        return 0.0
    if alert_type in HIGH_IS_BAD:
        return (value - threshold) / threshold * 100
    if alert_type in LOW_IS_BAD:
        return (threshold - value) / threshold * 100
    return abs((value - threshold) / threshold * 100)


def is_emergency_reading(alert_type: AlertType, value: float) -> bool:
    """True if ``value`` crosses the absolute emergency cutoff for ``alert_type``."""
    override = EMERGENCY_OVERRIDES.get(alert_type)
    if override is None:
        return False
    compare, cutoff = override
    return compare(value, cutoff)


def determine_severity(alert_type: AlertType, value: float, threshold: float) -> AlertSeverity:
    """Classify a threshold violation into LOW / MEDIUM / HIGH / EMERGENCY."""
    deviation = deviation_percentage(alert_type, value, threshold)

    if is_emergency_reading(alert_type, value) or deviation > EMERGENCY_DEVIATION:
        return AlertSeverity.EMERGENCY
    if deviation > HIGH_DEVIATION:
        return AlertSeverity.HIGH
    if deviation > MEDIUM_DEVIATION:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW
