"""MCP tools for measurement submission and the alert lifecycle.

Rejected transitions are not errors at this surface: they come back as a
``{"status": "rejected", ...}`` payload that a client can show as a
message while the alert stays as it was.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastmcp import Context, FastMCP

from vitalwatch.core.storage.codecs import ParseError, parse_enum
from vitalwatch.core.storage.models import Alert, Measurement, MetricType
from vitalwatch.domains.health.domain_logic.alert_engine import AlertNotFoundError
from vitalwatch.domains.health.domain_logic.alert_lifecycle import InvalidStateTransition

if TYPE_CHECKING:
    from vitalwatch.domains.health.domain_logic.alert_engine import AlertEngine

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_zone(name: str) -> tzinfo | None:
    """Resolve an IANA zone name such as 'Europe/Berlin'; empty gives None."""
    if not name:
        return None
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ParseError(f"Unknown timezone: {name!r}") from exc


def parse_timestamp(raw: str, zone: tzinfo | None = None) -> datetime:
    """Parse an ISO 8601 tool argument; empty means now.

    With a ``zone`` the result is converted to it, and naive input is read
    as wall-clock time there. Without one, an explicit offset is kept and
    naive input is taken to be UTC. Rule day and time-of-day restrictions
    are checked against the clock of the returned value.
    """
    if not raw:
        return datetime.now(zone or timezone.utc)
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ParseError(f"Malformed timestamp: {raw!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone or timezone.utc)
    return parsed.astimezone(zone) if zone is not None else parsed


def alert_view(alert: Alert) -> dict[str, Any]:
    """JSON-ready view of an alert."""
    return {
        "alert_id": alert.id,
        "user_id": alert.user_id,
        "alert_type": alert.alert_type.value,
        "severity": alert.severity.value,
        "status": alert.status.value,
        "is_emergency": alert.is_emergency,
        "title": alert.title,
        "message": alert.message,
        "recommendation": alert.recommendation,
        "timestamp": _iso(alert.timestamp),
        "rule_id": alert.rule_id,
        "triggering_value": alert.triggering_value,
        "threshold_value": alert.threshold_value,
        "is_dismissed": alert.is_dismissed,
        "acknowledged_at": _iso(alert.acknowledged_at),
        "time_to_acknowledge": alert.time_to_acknowledge,
        "user_response": alert.user_response,
        "resolved_at": _iso(alert.resolved_at),
        "resolution": alert.resolution,
        "escalation_level": alert.escalation_level,
        "escalated_at": _iso(alert.escalated_at),
        "escalated_to_contact_ids": alert.escalated_to_contact_ids,
        "emergency_contacts_notified": alert.emergency_contacts_notified,
        "requires_medical_review": alert.requires_medical_review,
        "is_medically_reviewed": alert.is_medically_reviewed,
        "medically_reviewed_by": alert.medically_reviewed_by,
    }


def _transition_result(call: Callable[[], Alert]) -> str:
    try:
        alert = call()
    except InvalidStateTransition as exc:
        return json.dumps({
            "status": "rejected",
            "alert_id": exc.alert_id,
            "current_status": exc.current_status.value,
            "message": str(exc),
        })
    except AlertNotFoundError as exc:
        return json.dumps({
            "status": "not_found",
            "alert_id": exc.alert_id,
            "message": "No alert found with that ID.",
        })
    return json.dumps({"status": "ok", "alert": alert_view(alert)}, indent=2)


def register_alert_tools(
    mcp: FastMCP,
    engine: AlertEngine,
    *,
    retention_days: int = 90,
) -> None:
    """Register measurement and alert lifecycle tools on the MCP server."""

    @mcp.tool
    async def submit_measurement(
        ctx: Context,
        user_id: str,
        metric_type: str,
        value: float,
        timestamp: str = "",
        measurement_id: str = "",
        user_timezone: str = "",
    ) -> str:
        """Evaluate a new measurement against the user's alert rules.

        Rule day-of-week and time-of-day restrictions (e.g. "22:00"-"06:00")
        are judged on the clock of ``user_timezone``. Without one they use
        the timestamp's own offset, or UTC when it has none.

        Args:
            user_id: Owner of the measurement.
            metric_type: e.g. 'heart_rate', 'oxygen_saturation', 'body_temperature'.
            value: The measured value.
            timestamp: ISO 8601 time of the reading (default: now). A timestamp
                without an offset is read as local time in ``user_timezone``.
            measurement_id: Optional id of the stored reading.
            user_timezone: IANA zone of the user, e.g. 'America/New_York'.
        """
        try:
            metric = parse_enum(MetricType, metric_type, field_name="metric_type")
            at = parse_timestamp(timestamp, parse_zone(user_timezone))
        except ParseError as exc:
            return json.dumps({"status": "error", "message": str(exc)})

        measurement = Measurement(
            user_id=user_id, metric_type=metric, value=value, timestamp=at, id=measurement_id,
        )
        alerts = engine.evaluate_measurement(measurement)
        return json.dumps({
            "status": "ok",
            "alerts_created": len(alerts),
            "alerts": [alert_view(a) for a in alerts],
        }, indent=2)

    @mcp.tool
    async def list_active_alerts(ctx: Context, user_id: str) -> str:
        """List open, non-dismissed alerts: most severe first, then newest.

        Args:
            user_id: Whose alerts to list.
        """
        alerts = engine.list_active_alerts(user_id)
        return json.dumps({
            "status": "ok",
            "count": len(alerts),
            "alerts": [alert_view(a) for a in alerts],
        }, indent=2)

    @mcp.tool
    async def acknowledge_alert(ctx: Context, alert_id: str, user_response: str = "") -> str:
        """Acknowledge an active or escalated alert.

        Args:
            alert_id: The alert to acknowledge.
            user_response: Optional note from the user (stored encrypted).
        """
        return _transition_result(
            lambda: engine.acknowledge_alert(alert_id, user_response or None)
        )

    @mcp.tool
    async def resolve_alert(ctx: Context, alert_id: str, resolution: str) -> str:
        """Resolve an alert. A non-empty resolution is required.

        Args:
            alert_id: The alert to resolve.
            resolution: What was done about it (stored encrypted).
        """
        return _transition_result(lambda: engine.resolve_alert(alert_id, resolution))

    @mcp.tool
    async def mark_false_alarm(ctx: Context, alert_id: str, reason: str = "") -> str:
        """Close an alert as a false alarm.

        Args:
            alert_id: The alert to close.
            reason: Optional explanation (stored encrypted).
        """
        return _transition_result(lambda: engine.mark_false_alarm(alert_id, reason or None))

    @mcp.tool
    async def dismiss_alert(ctx: Context, alert_id: str) -> str:
        """Hide an open alert from the active list without changing its status.

        Args:
            alert_id: The alert to dismiss.
        """
        return _transition_result(lambda: engine.dismiss_alert(alert_id))

    @mcp.tool
    async def record_medical_review(
        ctx: Context,
        alert_id: str,
        reviewed_by: str,
        notes: str = "",
    ) -> str:
        """Attach a clinician's review to any alert, including closed ones.

        Args:
            alert_id: The reviewed alert.
            reviewed_by: Name or id of the reviewer.
            notes: Review notes (stored encrypted).
        """
        return _transition_result(
            lambda: engine.record_medical_review(alert_id, reviewed_by, notes or None)
        )

    @mcp.tool
    async def run_escalation_sweep(ctx: Context) -> str:
        """Escalate every unacknowledged alert that has waited past its threshold.

        HIGH alerts escalate after 30 minutes, MEDIUM after 60, LOW after 120.
        Intended to be called periodically by a scheduler.
        """
        escalated = engine.run_escalation_sweep()
        return json.dumps({
            "status": "ok",
            "escalated": len(escalated),
            "alerts": [alert_view(a) for a in escalated],
        }, indent=2)

    @mcp.tool
    async def purge_old_alerts(
        ctx: Context,
        user_id: str,
        older_than_days: int = retention_days,
    ) -> str:
        """Delete resolved and false-alarm alerts older than a retention window.

        Open alerts are never purged.

        Args:
            user_id: Whose alerts to purge.
            older_than_days: Retention window in days.
        """
        if older_than_days < 1:
            return json.dumps({
                "status": "error",
                "message": "older_than_days must be at least 1.",
            })
        count = engine.purge_terminal_alerts(user_id, older_than_days)
        return json.dumps({
            "status": "purged",
            "alerts_deleted": count,
            "older_than_days": older_than_days,
        })
