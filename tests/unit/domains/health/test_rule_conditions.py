"""Tests for threshold condition checks and the rule activation gate."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

import pytest

from vitalwatch.core.storage.models import (
    AlertType,
    ConditionOperator,
    MetricType,
    ThresholdRule,
)
from vitalwatch.domains.health.domain_logic.rule_conditions import (
    check_condition,
    is_rule_active_now,
    minutes_between,
    parse_time_of_day,
    update_after_trigger,
    validate_rule,
    within_time_window,
)

# Wednesday, 12:00 UTC
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


def _make_rule(**overrides) -> ThresholdRule:
    defaults = dict(
        id="r1",
        user_id="u1",
        metric_type=MetricType.HEART_RATE,
        condition_operator=ConditionOperator.ABOVE,
        threshold_value=120.0,
        alert_type=AlertType.HEART_RATE_HIGH,
        cooldown_minutes=60,
    )
    defaults.update(overrides)
    return ThresholdRule(**defaults)


class TestCheckCondition:
    @pytest.mark.parametrize("op,value,expected", [
        (ConditionOperator.ABOVE, 121, True),
        (ConditionOperator.ABOVE, 120, False),
        (ConditionOperator.BELOW, 119, True),
        (ConditionOperator.BELOW, 120, False),
        (ConditionOperator.EQUAL, 120, True),
        (ConditionOperator.EQUAL, 120.5, False),
        (ConditionOperator.NOT_EQUAL, 121, True),
        (ConditionOperator.NOT_EQUAL, 120, False),
    ])
    def test_single_threshold_operators(self, op, value, expected):
        assert check_condition(value, _make_rule(condition_operator=op)) is expected

    def test_between_is_inclusive(self):
        rule = _make_rule(
            condition_operator=ConditionOperator.BETWEEN,
            threshold_value=60.0,
            secondary_threshold_value=100.0,
        )
        assert check_condition(60, rule) is True
        assert check_condition(100, rule) is True
        assert check_condition(101, rule) is False

    def test_outside(self):
        rule = _make_rule(
            condition_operator=ConditionOperator.OUTSIDE,
            threshold_value=60.0,
            secondary_threshold_value=100.0,
        )
        assert check_condition(59, rule) is True
        assert check_condition(101, rule) is True
        assert check_condition(60, rule) is False

    @pytest.mark.parametrize("op", [ConditionOperator.BETWEEN, ConditionOperator.OUTSIDE])
    def test_missing_secondary_never_met(self, op):
        rule = _make_rule(condition_operator=op, secondary_threshold_value=None)
        assert check_condition(0, rule) is False
        assert check_condition(500, rule) is False

    @pytest.mark.parametrize("op", list(ConditionOperator))
    def test_nan_never_met(self, op):
        rule = _make_rule(condition_operator=op, secondary_threshold_value=200.0)
        assert check_condition(float("nan"), rule) is False

    def test_none_value_never_met(self):
        assert check_condition(None, _make_rule()) is False


class TestTimeHelpers:
    def test_parse_time_of_day(self):
        assert parse_time_of_day("22:00") == time(22, 0)
        assert parse_time_of_day(None) is None
        assert parse_time_of_day("25:99") is None
        assert parse_time_of_day("late") is None

    def test_window_same_day(self):
        assert within_time_window(time(9, 0), time(9, 0), time(17, 0)) is True
        assert within_time_window(time(17, 1), time(9, 0), time(17, 0)) is False

    def test_window_crossing_midnight(self):
        start, end = time(22, 0), time(6, 0)
        assert within_time_window(time(23, 30), start, end) is True
        assert within_time_window(time(5, 59), start, end) is True
        assert within_time_window(time(12, 0), start, end) is False

    def test_minutes_between_truncates(self):
        assert minutes_between(NOW, NOW + timedelta(minutes=59, seconds=59)) == 59
        assert minutes_between(NOW, NOW + timedelta(minutes=60)) == 60


class TestIsRuleActiveNow:
    def test_plain_active_rule(self):
        assert is_rule_active_now(_make_rule(), NOW) is True

    def test_disabled_rule(self):
        assert is_rule_active_now(_make_rule(is_active=False), NOW) is False

    def test_disabled_rule_with_bad_time_does_not_raise(self):
        rule = _make_rule(
            is_active=False,
            time_restriction_start="nonsense",
            time_restriction_end="also nonsense",
        )
        assert is_rule_active_now(rule, NOW) is False

    def test_day_of_week(self):
        assert is_rule_active_now(_make_rule(active_days_of_week=frozenset({"WEDNESDAY"})), NOW)
        assert not is_rule_active_now(_make_rule(active_days_of_week=frozenset({"MONDAY"})), NOW)

    def test_empty_day_set_never_fires(self):
        assert is_rule_active_now(_make_rule(active_days_of_week=frozenset()), NOW) is False

    def test_overnight_restriction(self):
        rule = _make_rule(time_restriction_start="22:00", time_restriction_end="06:00")
        assert is_rule_active_now(rule, NOW.replace(hour=23, minute=30)) is True
        assert is_rule_active_now(rule, NOW) is False

    def test_only_start_set_is_ignored(self):
        rule = _make_rule(time_restriction_start="22:00")
        assert is_rule_active_now(rule, NOW) is True

    def test_malformed_restriction_is_ignored(self):
        rule = _make_rule(time_restriction_start="late", time_restriction_end="early")
        assert is_rule_active_now(rule, NOW) is True

    def test_cooldown(self):
        rule = _make_rule(last_triggered_at=NOW)
        assert is_rule_active_now(rule, NOW + timedelta(minutes=30)) is False
        assert is_rule_active_now(rule, NOW + timedelta(minutes=59, seconds=59)) is False
        assert is_rule_active_now(rule, NOW + timedelta(minutes=61)) is True

    def test_zero_cooldown(self):
        rule = _make_rule(last_triggered_at=NOW, cooldown_minutes=0)
        assert is_rule_active_now(rule, NOW) is True


class TestUpdateAfterTrigger:
    def test_records_firing(self):
        rule = _make_rule(trigger_count=2)
        updated = update_after_trigger(rule, NOW)
        assert updated.last_triggered_at == NOW
        assert updated.trigger_count == 3
        assert rule.trigger_count == 2


class TestValidateRule:
    def test_clean_rule(self):
        assert validate_rule(_make_rule()) == []

    def test_between_without_secondary(self):
        warnings = validate_rule(_make_rule(condition_operator=ConditionOperator.BETWEEN))
        assert any("secondary threshold" in w for w in warnings)

    def test_inverted_range(self):
        rule = _make_rule(
            condition_operator=ConditionOperator.OUTSIDE,
            threshold_value=100.0,
            secondary_threshold_value=60.0,
        )
        assert any("below the primary" in w for w in validate_rule(rule))

    def test_bad_counts(self):
        warnings = validate_rule(_make_rule(
            occurrences_required=0, cooldown_minutes=-5, time_window_minutes=0,
        ))
        assert len(warnings) == 3

    def test_time_restriction_problems(self):
        assert validate_rule(_make_rule(time_restriction_end="06:00"))
        assert validate_rule(_make_rule(time_restriction_start="x", time_restriction_end="y"))

    def test_day_problems(self):
        assert any("unknown day" in w for w in
                   validate_rule(_make_rule(active_days_of_week=frozenset({"FUNDAY"}))))
        assert any("never fires" in w for w in
                   validate_rule(_make_rule(active_days_of_week=frozenset())))
