"""Goal progress evaluation: achievement, streaks, trend.

Pure functions over explicit inputs; "today" and "now" are always
parameters so results never depend on the wall clock. Degenerate spans
(target equal to start, or moving the wrong way) count as achieved rather
than dividing by zero.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import replace
from datetime import date, datetime

from vitalwatch.core.storage.models import Goal, GoalProgress, TrendDirection

TREND_EPSILON = 0.01

MILESTONES: dict[int, str] = {
    25: "25% of goal achieved",
    50: "Halfway to your goal!",
    75: "75% of goal achieved",
    100: "Goal achieved!",
}


def _round_half_away(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _clamp(value: int, lo: int = 0, hi: int = 100) -> int:
    return max(lo, min(hi, value))


def _percent(ratio: float) -> int:
    if not math.isfinite(ratio):
        return 0
    return _clamp(_round_half_away(ratio * 100))


def calculate_achievement_percentage(
    current: float,
    target: float,
    start: float | None = None,
    is_incremental: bool = True,
) -> int:
    """Progress toward ``target`` as an integer percentage in [0, 100]."""
    if start is None:
        if target == 0:
            return 100 if is_goal_achieved(current, target, is_incremental) else 0
        if is_incremental:
            return _percent(current / target)
        return _percent(1 - current / target)

    if is_incremental:
        progress, total = current - start, target - start
    else:
        progress, total = start - current, start - target
    if total <= 0:
        return 100
    return _percent(progress / total)


def is_goal_achieved(current: float, target: float, is_incremental: bool = True) -> bool:
    if is_incremental:
        return current >= target
    return current <= target


def update_streak(
    current_streak: int,
    longest_streak: int,
    is_achieved: bool,
    last_updated_date: date | None,
    today: date,
) -> tuple[int, int]:
    """Return ``(current_streak, longest_streak)`` after an update on ``today``.

    A same-day repeat keeps the streak, a next-day achievement extends it,
    a longer gap restarts it at 1 and a miss resets it to 0.
    """
    if last_updated_date is None:
        new_streak = 1 if is_achieved else 0
    elif not is_achieved:
        new_streak = 0
    else:
        gap = (today - last_updated_date).days
        if gap == 1:
            new_streak = current_streak + 1
        elif gap == 0:
            new_streak = current_streak
        else:
            new_streak = 1
    return new_streak, max(longest_streak, new_streak)


def calculate_trend_direction(
    recent_values: Sequence[float], is_inverse: bool = False
) -> TrendDirection:
    """Direction of the average step across ``recent_values`` (oldest first).

    With ``is_inverse`` a falling series is an improvement and reads UP.
    """
    if len(recent_values) < 2:
        return TrendDirection.STABLE
    deltas = [b - a for a, b in zip(recent_values, recent_values[1:])]
    average = sum(deltas) / len(deltas)
    if not math.isfinite(average) or abs(average) < TREND_EPSILON:
        return TrendDirection.STABLE
    if (not is_inverse and average > 0) or (is_inverse and average < 0):
        return TrendDirection.UP
    return TrendDirection.DOWN


def calculate_days_remaining(deadline: date | None, today: date) -> int | None:
    if deadline is None:
        return None
    if deadline < today:
        return 0
    return (deadline - today).days


def calculate_required_daily_progress(
    current: float,
    target: float,
    days_remaining: int,
    is_incremental: bool = True,
) -> float:
    """Per-day change still needed to hit ``target``; 0.0 once achieved or out of time."""
    if days_remaining <= 0:
        return 0.0
    remaining = target - current if is_incremental else current - target
    if remaining <= 0:
        return 0.0
    return remaining / days_remaining


def is_goal_on_track(
    current: float,
    target: float,
    start: float | None,
    days_elapsed: int,
    total_days: int,
    is_incremental: bool = True,
) -> bool:
    """Compare actual progress against a straight line from start to deadline."""
    fraction = 1.0 if total_days <= 0 else min(1.0, max(0.0, days_elapsed / total_days))

    if start is None:
        expected = target * fraction
        return current >= expected if is_incremental else current <= expected

    if is_incremental:
        total_change, actual_change = target - start, current - start
    else:
        total_change, actual_change = start - target, start - current
    return actual_change >= total_change * fraction


def is_personal_best(
    value: float, previous_best: float | None, is_inverse: bool = False
) -> bool:
    if previous_best is None:
        return True
    return value < previous_best if is_inverse else value > previous_best


def milestone_for(percentage: int) -> str | None:
    return MILESTONES.get(percentage)


def should_mark_inactive(goal: Goal, today: date) -> bool:
    """An active, uncompleted goal whose deadline has passed."""
    if not goal.is_active or goal.is_completed or goal.deadline is None:
        return False
    return goal.deadline < today


def create_progress_record(
    goal: Goal,
    value: float,
    now: datetime,
    notes: str | None = None,
    progress_id: str = "",
) -> GoalProgress:
    """Snapshot of ``goal`` after recording ``value`` at ``now``."""
    achieved = is_goal_achieved(value, goal.target_value, goal.is_incremental)
    percentage = calculate_achievement_percentage(
        value, goal.target_value, goal.start_value, goal.is_incremental
    )
    streak, _ = update_streak(
        goal.current_streak, goal.longest_streak, achieved, goal.last_updated_date, now.date()
    )
    milestone = milestone_for(percentage)
    return GoalProgress(
        id=progress_id,
        goal_id=goal.id,
        user_id=goal.user_id,
        timestamp=now,
        current_value=value,
        progress_percentage=percentage,
        is_completed=achieved,
        notes=notes,
        is_milestone=milestone is not None,
        milestone_description=milestone,
        streak_count=streak,
    )


def apply_progress(goal: Goal, value: float, now: datetime) -> Goal:
    """Return ``goal`` updated with a new current value recorded at ``now``.

    Non-recurring goals stay completed once achieved. Recurring goals
    recompute completion on every update.
    """
    today = now.date()
    achieved = is_goal_achieved(value, goal.target_value, goal.is_incremental)
    streak, longest = update_streak(
        goal.current_streak, goal.longest_streak, achieved, goal.last_updated_date, today
    )

    if goal.is_recurring:
        is_completed = achieved
        completed_at = (goal.completed_at if goal.is_completed else now) if achieved else None
    elif goal.is_completed:
        is_completed, completed_at = True, goal.completed_at or now
    else:
        is_completed = achieved
        completed_at = now if achieved else None

    return replace(
        goal,
        current_value=value,
        current_streak=streak,
        longest_streak=longest,
        is_completed=is_completed,
        completed_at=completed_at,
        last_updated_date=today,
        modified_at=now,
    )
