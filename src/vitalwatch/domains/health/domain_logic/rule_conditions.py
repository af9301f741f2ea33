"""Threshold rule evaluation and the rule activation gate.

All functions here are pure: they take a rule plus explicit inputs (value,
current time) and never touch storage. Malformed configuration fails
closed instead of raising, so one bad rule cannot break evaluation of the
others.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import datetime, time

from vitalwatch.core.storage.models import WEEKDAY_NAMES, ConditionOperator, ThresholdRule

logger = logging.getLogger(__name__)


def check_condition(value: float | None, rule: ThresholdRule) -> bool:
    """Return True if ``value`` satisfies the rule's condition.

    Total over every input: NaN on either side compares false for every
    operator (NOT_EQUAL included), and BETWEEN / OUTSIDE without a
    secondary threshold are simply not met.
    """
    threshold = rule.threshold_value
    if value is None or threshold is None or math.isnan(value) or math.isnan(threshold):
        return False

    op = rule.condition_operator
    if op == ConditionOperator.ABOVE:
        return value > threshold
    if op == ConditionOperator.BELOW:
        return value < threshold
    if op == ConditionOperator.EQUAL:
        return value == threshold
    if op == ConditionOperator.NOT_EQUAL:
        return value != threshold

    secondary = rule.secondary_threshold_value
    if secondary is None or math.isnan(secondary):
        return False
    if op == ConditionOperator.BETWEEN:
        return threshold <= value <= secondary
    if op == ConditionOperator.OUTSIDE:
        return value < threshold or value > secondary
    return False


def parse_time_of_day(raw: str | None) -> time | None:
    """Parse "HH:MM" (or "HH:MM:SS"). Returns None when absent or malformed."""
    if not raw:
        return None
    try:
        return time.fromisoformat(raw.strip())
    except ValueError:
        return None


def within_time_window(current: time, start: time, end: time) -> bool:
    """Inclusive window check; ``start > end`` means the window crosses midnight."""
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def minutes_between(earlier: datetime, later: datetime) -> int:
    """Whole minutes from ``earlier`` to ``later``, truncated toward zero."""
    return int((later - earlier).total_seconds() / 60)


def is_rule_active_now(rule: ThresholdRule, now: datetime) -> bool:
    """Decide whether a rule is eligible to fire at ``now``.

    Checks, in order: enabled flag, day-of-week, time-of-day, cooldown.
    A disabled rule returns before any time computation. An unparseable
    time-of-day restriction is logged and ignored, so the rule stays live.
    """
    if not rule.is_active:
        return False

    if rule.active_days_of_week is not None:
        if WEEKDAY_NAMES[now.weekday()] not in rule.active_days_of_week:
            return False

    if rule.time_restriction_start is not None and rule.time_restriction_end is not None:
        start = parse_time_of_day(rule.time_restriction_start)
        end = parse_time_of_day(rule.time_restriction_end)
        if start is None or end is None:
            logger.warning(
                "Rule %s has an unparseable time restriction (%r-%r); ignoring it",
                rule.id, rule.time_restriction_start, rule.time_restriction_end,
            )
        elif not within_time_window(now.time().replace(tzinfo=None), start, end):
            return False

    if rule.last_triggered_at is not None and rule.cooldown_minutes > 0:
        if minutes_between(rule.last_triggered_at, now) < rule.cooldown_minutes:
            return False

    return True


def update_after_trigger(rule: ThresholdRule, trigger_time: datetime) -> ThresholdRule:
    """Return a copy of ``rule`` recording a firing at ``trigger_time``."""
    return replace(
        rule,
        last_triggered_at=trigger_time,
        trigger_count=rule.trigger_count + 1,
        modified_at=trigger_time,
    )


def validate_rule(rule: ThresholdRule) -> list[str]:
    """Collect configuration warnings for a rule. Never raises."""
    warnings: list[str] = []

    if rule.condition_operator.needs_secondary_threshold:
        if rule.secondary_threshold_value is None:
            warnings.append(
                f"{rule.condition_operator.value} requires a secondary threshold; "
                "the condition will never be met"
            )
        elif rule.secondary_threshold_value < rule.threshold_value:
            warnings.append("secondary threshold is below the primary threshold")

    if rule.occurrences_required < 1:
        warnings.append("occurrences_required must be at least 1")
    if rule.cooldown_minutes < 0:
        warnings.append("cooldown_minutes is negative")
    if rule.time_window_minutes is not None and rule.time_window_minutes <= 0:
        warnings.append("time_window_minutes must be positive")

    has_start = rule.time_restriction_start is not None
    has_end = rule.time_restriction_end is not None
    if has_start != has_end:
        warnings.append("time restriction needs both a start and an end; it is ignored")
    elif has_start and (
        parse_time_of_day(rule.time_restriction_start) is None
        or parse_time_of_day(rule.time_restriction_end) is None
    ):
        warnings.append("time restriction is not in HH:MM form; it is ignored")

    if rule.active_days_of_week is not None:
        unknown = sorted(d for d in rule.active_days_of_week if d not in WEEKDAY_NAMES)
        if unknown:
            warnings.append(f"unknown day names: {', '.join(unknown)}")
        if not rule.active_days_of_week:
            warnings.append("active_days_of_week is empty; the rule never fires")

    return warnings
