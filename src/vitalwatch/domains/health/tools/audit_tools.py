"""MCP tools for viewing the audit trail.

The audit log records lifecycle transitions, rejected requests and
deletions by identifier only. No measured values or free text are stored
in it.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from vitalwatch.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


def register_audit_tools(
    mcp: FastMCP,
    audit_logger: AuditLogger,
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def audit_summary(
        ctx: Context,
        days: int = 30,
    ) -> str:
        """View recent alert lifecycle activity.

        Shows transition counts by action, how many requests were rejected,
        and the most recent events.

        Args:
            days: Number of days to look back (default: 30).
        """
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

        total_events = audit_logger.count_events(since=since)
        rejected = audit_logger.count_events(since=since, status="rejected")
        by_action = audit_logger.count_by_action(since=since)
        recent_events = audit_logger.get_events(since=since, limit=20)

        display_events = []
        for event in recent_events:
            display_events.append({
                "timestamp": event.get("timestamp"),
                "action": event.get("action"),
                "entity_type": event.get("entity_type"),
                "entity_id": event.get("entity_id"),
                "from_status": event.get("from_status"),
                "to_status": event.get("to_status"),
                "actor": event.get("actor"),
                "status": event.get("status"),
            })

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": total_events,
            "rejected_requests": rejected,
            "events_by_action": by_action,
            "recent_events": display_events,
            "note": "This audit trail contains identifiers and statuses only, no health data.",
        }, indent=2)
