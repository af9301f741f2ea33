"""MCP tools for health goals and progress tracking."""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from vitalwatch.core.storage.codecs import ParseError, parse_date, parse_enum
from vitalwatch.core.storage.models import Goal, MetricType
from vitalwatch.domains.health.domain_logic.goal_tracker import (
    GoalNotFoundError,
    InvalidGoalError,
)
from vitalwatch.domains.health.tools.alert_tools import parse_zone

if TYPE_CHECKING:
    from vitalwatch.domains.health.domain_logic.goal_tracker import GoalTracker

logger = logging.getLogger(__name__)


def _not_found(goal_id: str) -> str:
    return json.dumps({
        "status": "not_found",
        "goal_id": goal_id,
        "message": "No goal found with that ID.",
    })


def register_goal_tools(mcp: FastMCP, tracker: GoalTracker) -> None:
    """Register goal tracking tools on the MCP server."""

    @mcp.tool
    async def create_goal(
        ctx: Context,
        user_id: str,
        metric_type: str,
        target_value: float,
        start_value: float | None = None,
        is_incremental: bool = True,
        title: str = "",
        unit: str = "",
        deadline: str = "",
        is_recurring: bool = False,
    ) -> str:
        """Create a goal for a metric.

        Args:
            user_id: Goal owner.
            metric_type: e.g. 'daily_steps', 'weight', 'sleep_duration'.
            target_value: The value to reach.
            start_value: Baseline; progress is measured from here when given.
            is_incremental: True if higher is better, False for e.g. weight loss.
            title: Display title.
            unit: Display unit.
            deadline: Optional ISO date (YYYY-MM-DD).
            is_recurring: Recurring goals re-evaluate completion on every update.
        """
        try:
            metric = parse_enum(MetricType, metric_type, field_name="metric_type")
            deadline_date: date | None = parse_date(deadline or None, field_name="deadline")
            goal = tracker.create_goal(Goal(
                id="",
                user_id=user_id,
                metric_type=metric,
                target_value=target_value,
                start_value=start_value,
                is_incremental=is_incremental,
                title=title,
                unit=unit,
                deadline=deadline_date,
                is_recurring=is_recurring,
            ))
        except (ParseError, InvalidGoalError) as exc:
            return json.dumps({"status": "error", "message": str(exc)})

        return json.dumps({
            "status": "ok",
            "goal_id": goal.id,
            "start_date": goal.start_date.isoformat() if goal.start_date else None,
        })

    @mcp.tool
    async def record_goal_progress(
        ctx: Context,
        goal_id: str,
        value: float,
        notes: str = "",
        user_timezone: str = "",
    ) -> str:
        """Record a new value for a goal.

        Returns the progress snapshot: percentage, milestone, streak, and
        whether this is a personal best. Streak days follow the calendar of
        ``user_timezone`` (UTC when not given).

        Args:
            goal_id: The goal.
            value: The new current value.
            notes: Optional notes (stored encrypted).
            user_timezone: IANA zone of the user, e.g. 'Asia/Tokyo'.
        """
        try:
            now = datetime.now(parse_zone(user_timezone) or timezone.utc)
            update = tracker.record_progress(goal_id, value, now=now, notes=notes or None)
        except GoalNotFoundError:
            return _not_found(goal_id)
        except (ParseError, InvalidGoalError) as exc:
            return json.dumps({"status": "error", "message": str(exc)})

        progress = update.progress
        return json.dumps({
            "status": "ok",
            "goal_id": goal_id,
            "progress_percentage": progress.progress_percentage,
            "is_achieved": progress.is_completed,
            "goal_completed": update.goal.is_completed,
            "milestone": progress.milestone_description,
            "current_streak": update.goal.current_streak,
            "longest_streak": update.goal.longest_streak,
            "personal_best": update.personal_best,
        }, indent=2)

    @mcp.tool
    async def goal_summary(ctx: Context, goal_id: str) -> str:
        """Summarize a goal: progress, streaks, deadline outlook and trend.

        Args:
            goal_id: The goal.
        """
        try:
            summary = tracker.goal_summary(goal_id)
        except GoalNotFoundError:
            return _not_found(goal_id)
        return json.dumps({"status": "ok", **summary}, indent=2)
