"""MCP tools for alert rules and emergency contacts."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from vitalwatch.core.storage.codecs import ParseError, parse_enum
from vitalwatch.core.storage.models import AlertSeverity, EmergencyContact, ThresholdRule
from vitalwatch.domains.health.domain_logic.alert_engine import RuleNotFoundError
from vitalwatch.domains.health.domain_logic.rule_conditions import validate_rule

if TYPE_CHECKING:
    from vitalwatch.domains.health.domain_logic.alert_engine import AlertEngine

logger = logging.getLogger(__name__)


def rule_view(rule: ThresholdRule) -> dict[str, Any]:
    return {
        "rule_id": rule.id,
        "name": rule.name,
        "metric_type": rule.metric_type.value,
        "condition_operator": rule.condition_operator.value,
        "threshold_value": rule.threshold_value,
        "secondary_threshold_value": rule.secondary_threshold_value,
        "unit": rule.unit,
        "alert_type": rule.alert_type.value,
        "default_severity": rule.default_severity.value,
        "occurrences_required": rule.occurrences_required,
        "time_window_minutes": rule.time_window_minutes,
        "cooldown_minutes": rule.cooldown_minutes,
        "priority": rule.priority,
        "is_active": rule.is_active,
        "is_system_rule": rule.is_system_rule,
        "trigger_count": rule.trigger_count,
        "last_triggered_at": (
            rule.last_triggered_at.isoformat() if rule.last_triggered_at else None
        ),
        "warnings": validate_rule(rule),
    }


def register_rule_tools(mcp: FastMCP, engine: AlertEngine) -> None:
    """Register rule and emergency contact tools on the MCP server."""

    @mcp.tool
    async def install_default_rules(ctx: Context, user_id: str) -> str:
        """Create the standard alert rules for a new user.

        Does nothing if the user already has system rules.

        Args:
            user_id: The new user.
        """
        rules = engine.install_default_rules(user_id)
        return json.dumps({
            "status": "ok" if rules else "unchanged",
            "rules_created": len(rules),
            "rules": [rule_view(r) for r in rules],
        }, indent=2)

    @mcp.tool
    async def list_alert_rules(ctx: Context, user_id: str, active_only: bool = False) -> str:
        """List a user's alert rules, highest priority first.

        Each rule carries any configuration warnings (for example a BETWEEN
        rule without an upper bound, which can never fire).

        Args:
            user_id: Whose rules to list.
            active_only: Only include enabled rules.
        """
        rules = engine.list_rules(user_id, active_only=active_only)
        return json.dumps({
            "status": "ok",
            "count": len(rules),
            "rules": [rule_view(r) for r in rules],
        }, indent=2)

    @mcp.tool
    async def set_rule_active(ctx: Context, rule_id: str, active: bool) -> str:
        """Enable or disable an alert rule.

        Args:
            rule_id: The rule to change.
            active: True to enable, False to disable.
        """
        try:
            rule = engine.set_rule_active(rule_id, active)
        except RuleNotFoundError:
            return json.dumps({
                "status": "not_found",
                "rule_id": rule_id,
                "message": "No rule found with that ID.",
            })
        return json.dumps({"status": "ok", "rule": rule_view(rule)}, indent=2)

    @mcp.tool
    async def delete_alert_rule(ctx: Context, rule_id: str) -> str:
        """Permanently delete an alert rule. Existing alerts are kept.

        Args:
            rule_id: The rule to delete.
        """
        try:
            engine.delete_rule(rule_id)
        except RuleNotFoundError:
            return json.dumps({
                "status": "not_found",
                "rule_id": rule_id,
                "message": "No rule found with that ID.",
            })
        logger.info("Deleted alert rule %s", rule_id)
        return json.dumps({"status": "deleted", "rule_id": rule_id})

    @mcp.tool
    async def add_emergency_contact(
        ctx: Context,
        user_id: str,
        name: str,
        phone_number: str = "",
        relationship: str = "",
        email: str = "",
        priority: int = 1,
        min_severity: str = "HIGH",
    ) -> str:
        """Add someone to notify when the user's alerts escalate.

        Args:
            user_id: The user the contact belongs to.
            name: Contact name.
            phone_number: Phone number.
            relationship: e.g. 'spouse', 'physician'.
            email: Optional email address.
            priority: Tier, lower is contacted first (default: 1).
            min_severity: Lowest severity they want to hear about (LOW/MEDIUM/HIGH/EMERGENCY).
        """
        try:
            severity = parse_enum(AlertSeverity, min_severity.upper(), field_name="min_severity")
        except ParseError as exc:
            return json.dumps({"status": "error", "message": str(exc)})

        contact = engine.add_emergency_contact(EmergencyContact(
            id="",
            user_id=user_id,
            name=name,
            phone_number=phone_number,
            relationship=relationship,
            email=email or None,
            priority=priority,
            min_severity=severity,
        ))
        return json.dumps({
            "status": "ok",
            "contact_id": contact.id,
            "priority": contact.priority,
            "min_severity": contact.min_severity.value,
        })
