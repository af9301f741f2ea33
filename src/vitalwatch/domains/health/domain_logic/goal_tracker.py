"""Goal tracking service: records progress and keeps goals up to date."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, NamedTuple

from vitalwatch.core.audit.logger import AuditLogger
from vitalwatch.core.storage.models import Goal, GoalProgress, TrendDirection
from vitalwatch.core.storage.repository import HealthRepository
from vitalwatch.domains.health.domain_logic.goal_progress import (
    apply_progress,
    calculate_achievement_percentage,
    calculate_days_remaining,
    calculate_required_daily_progress,
    calculate_trend_direction,
    create_progress_record,
    is_goal_achieved,
    is_goal_on_track,
    is_personal_best,
    should_mark_inactive,
)

logger = logging.getLogger(__name__)


class GoalNotFoundError(Exception):
    """Raised when a goal id does not exist."""

    def __init__(self, goal_id: str) -> None:
        self.goal_id = goal_id
        super().__init__(f"Goal not found: {goal_id}")


class InvalidGoalError(Exception):
    """Raised when a goal or progress value cannot be accepted."""


class ProgressUpdate(NamedTuple):
    goal: Goal
    progress: GoalProgress
    personal_best: bool


class GoalTracker:
    """Creates goals and records progress against them.

    Usage::

        tracker = GoalTracker(repository, audit_logger)
        goal = tracker.create_goal(Goal(id="", user_id="u1", metric_type=MetricType.WEIGHT,
                                        target_value=70.0, start_value=80.0,
                                        is_incremental=False))
        update = tracker.record_progress(goal.id, 75.0)
        update.progress.progress_percentage  # 50
    """

    def __init__(
        self,
        repository: HealthRepository,
        audit_logger: AuditLogger | None = None,
        *,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._repo = repository
        self._audit = audit_logger
        self._new_id = id_factory or HealthRepository.new_id

    def create_goal(self, goal: Goal, now: datetime | None = None) -> Goal:
        if not math.isfinite(goal.target_value):
            raise InvalidGoalError("target_value must be a finite number")
        now = now or datetime.now(timezone.utc)
        goal = replace(
            goal,
            id=goal.id or self._new_id(),
            start_date=goal.start_date or now.date(),
            current_value=(
                goal.start_value
                if goal.current_value == 0.0 and goal.start_value is not None
                else goal.current_value
            ),
            created_at=goal.created_at or now,
            modified_at=now,
        )
        self._repo.save_goal(goal)
        return goal

    def get_goal(self, goal_id: str) -> Goal:
        goal = self._repo.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(goal_id)
        return goal

    def record_progress(
        self,
        goal_id: str,
        value: float,
        now: datetime | None = None,
        notes: str | None = None,
    ) -> ProgressUpdate:
        """Append a progress snapshot and update the goal atomically.

        Raises:
            GoalNotFoundError: If the goal does not exist.
            InvalidGoalError: If ``value`` is not finite.
        """
        if value is None or not math.isfinite(value):
            raise InvalidGoalError("progress value must be a finite number")
        now = now or datetime.now(timezone.utc)

        previous = self._repo.list_progress(goal_id, limit=1000)
        snapshot: list[tuple[Goal, GoalProgress]] = []

        def mutate(current: Goal) -> Goal:
            record = create_progress_record(current, value, now, notes, self._new_id())
            snapshot[:] = [(current, record)]
            return apply_progress(current, value, now)

        updated = self._repo.update_goal(goal_id, mutate)
        if updated is None:
            raise GoalNotFoundError(goal_id)
        before, record = snapshot[-1]
        self._repo.add_progress(record)

        values = [p.current_value for p in previous]
        previous_best = None
        if values:
            previous_best = max(values) if before.is_incremental else min(values)
        best = is_personal_best(value, previous_best, is_inverse=not before.is_incremental)

        if updated.is_completed and not before.is_completed:
            logger.info("Goal %s completed", goal_id)
            if self._audit is not None:
                self._audit.log_transition(
                    "goal", goal_id, action="complete",
                    from_status="in_progress", to_status="completed",
                )
        return ProgressUpdate(goal=updated, progress=record, personal_best=best)

    def goal_trend(self, goal_id: str, limit: int = 7) -> TrendDirection:
        """Trend over the last ``limit`` progress records; UP means improving."""
        goal = self.get_goal(goal_id)
        recent = self._repo.list_progress(goal_id, limit=limit)
        values = [p.current_value for p in reversed(recent)]
        return calculate_trend_direction(values, is_inverse=not goal.is_incremental)

    def goal_summary(self, goal_id: str, today: date | None = None) -> dict[str, Any]:
        goal = self.get_goal(goal_id)
        today = today or datetime.now(timezone.utc).date()

        days_remaining = calculate_days_remaining(goal.deadline, today)
        on_track = None
        if goal.deadline is not None and goal.start_date is not None:
            on_track = is_goal_on_track(
                goal.current_value,
                goal.target_value,
                goal.start_value,
                (today - goal.start_date).days,
                (goal.deadline - goal.start_date).days,
                goal.is_incremental,
            )

        return {
            "goal_id": goal.id,
            "title": goal.title,
            "metric_type": goal.metric_type.value,
            "current_value": goal.current_value,
            "target_value": goal.target_value,
            "progress_percentage": calculate_achievement_percentage(
                goal.current_value, goal.target_value, goal.start_value, goal.is_incremental
            ),
            "is_achieved": is_goal_achieved(
                goal.current_value, goal.target_value, goal.is_incremental
            ),
            "is_completed": goal.is_completed,
            "is_active": goal.is_active,
            "current_streak": goal.current_streak,
            "longest_streak": goal.longest_streak,
            "days_remaining": days_remaining,
            "required_daily_progress": (
                calculate_required_daily_progress(
                    goal.current_value, goal.target_value, days_remaining, goal.is_incremental
                )
                if days_remaining is not None
                else None
            ),
            "on_track": on_track,
            "trend": self.goal_trend(goal_id).value,
            "progress_records": self._repo.count_progress(goal_id),
        }

    def deactivate_expired_goals(self, user_id: str, today: date | None = None) -> list[Goal]:
        """Mark active, uncompleted goals past their deadline as inactive."""
        today = today or datetime.now(timezone.utc).date()
        deactivated: list[Goal] = []
        for goal in self._repo.list_goals(user_id, active_only=True):
            if not should_mark_inactive(goal, today):
                continue
            updated = self._repo.update_goal(
                goal.id, lambda current: replace(current, is_active=False)
            )
            if updated is None:
                continue
            if self._audit is not None:
                self._audit.log_transition(
                    "goal", goal.id, action="expire",
                    from_status="active", to_status="inactive", actor="engine",
                )
            deactivated.append(updated)
        return deactivated

    def delete_goal(self, goal_id: str) -> None:
        """Delete a goal and its progress history."""
        if not self._repo.delete_goal(goal_id):
            raise GoalNotFoundError(goal_id)
        if self._audit is not None:
            self._audit.log_data_delete("goal", entity_id=goal_id, count=1)
