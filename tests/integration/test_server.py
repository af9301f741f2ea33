"""Integration tests for the VitalWatch MCP server."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastmcp import Client

from vitalwatch.core.server.app import create_app
from vitalwatch.core.storage.models import (
    AlertType,
    ConditionOperator,
    MetricType,
    ThresholdRule,
)


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _payload(result) -> dict:
    """Decode the JSON text a tool returned."""
    content = getattr(result, "content", result)
    return json.loads(content[0].text)


ALL_EXPECTED_TOOLS = [
    "health_check",
    "submit_measurement",
    "list_active_alerts",
    "acknowledge_alert",
    "resolve_alert",
    "mark_false_alarm",
    "dismiss_alert",
    "record_medical_review",
    "run_escalation_sweep",
    "purge_old_alerts",
    "install_default_rules",
    "list_alert_rules",
    "set_rule_active",
    "delete_alert_rule",
    "add_emergency_contact",
    "create_goal",
    "record_goal_progress",
    "goal_summary",
    "audit_summary",
]


@pytest.fixture
def client(health_repository, audit_logger):
    """Create an MCP client connected to a server backed by in-memory storage."""
    mcp = create_app(
        repository_override=health_repository,
        audit_logger_override=audit_logger,
    )
    return Client(mcp)


def _submit(client, value: float, timestamp: str = "2026-03-04T12:00:00+00:00", **extra):
    return client.call_tool("submit_measurement", {
        "user_id": "u1",
        "metric_type": "heart_rate",
        "value": value,
        "timestamp": timestamp,
        **extra,
    })


def test_server_starts_and_lists_tools(client):
    async def _check():
        async with client:
            tools = await client.list_tools()
            tool_names = [t.name for t in tools]
            for expected in ALL_EXPECTED_TOOLS:
                assert expected in tool_names, f"Missing tool: {expected}"
    _run(_check())


def test_health_check_reports_storage(client):
    async def _check():
        async with client:
            status = _payload(await client.call_tool("health_check", {}))
            assert status["status"] == "ok"
            assert status["storage_enabled"] is True
            assert status["audit_enabled"] is True
            assert status["alerts_stored"] == 0
    _run(_check())


def test_server_without_encryption_key_has_no_alert_tools():
    async def _check():
        async with Client(create_app()) as client:
            tool_names = [t.name for t in await client.list_tools()]
            assert "health_check" in tool_names
            assert "submit_measurement" not in tool_names
            status = _payload(await client.call_tool("health_check", {}))
            assert status["storage_enabled"] is False
    _run(_check())


def test_measurement_to_resolution(client):
    async def _check():
        async with client:
            installed = _payload(await client.call_tool("install_default_rules", {"user_id": "u1"}))
            assert installed["rules_created"] == 7

            # The default high heart rate rule needs three consecutive readings
            for minute in range(2):
                result = _payload(await _submit(client, 130, f"2026-03-04T12:0{minute}:00+00:00"))
                assert result["alerts_created"] == 0
            result = _payload(await _submit(client, 130, "2026-03-04T12:02:00+00:00"))
            assert result["alerts_created"] == 1
            alert = result["alerts"][0]
            assert alert["status"] == "ACTIVE"
            assert alert["alert_type"] == "HEART_RATE_HIGH"

            active = _payload(await client.call_tool("list_active_alerts", {"user_id": "u1"}))
            assert active["count"] == 1

            acked = _payload(await client.call_tool("acknowledge_alert", {
                "alert_id": alert["alert_id"], "user_response": "climbing stairs",
            }))
            assert acked["status"] == "ok"
            assert acked["alert"]["status"] == "ACKNOWLEDGED"
            assert acked["alert"]["user_response"] == "climbing stairs"

            resolved = _payload(await client.call_tool("resolve_alert", {
                "alert_id": alert["alert_id"], "resolution": "resting, back to normal",
            }))
            assert resolved["alert"]["status"] == "RESOLVED"

            again = _payload(await client.call_tool("resolve_alert", {
                "alert_id": alert["alert_id"], "resolution": "again",
            }))
            assert again["status"] == "rejected"
            assert again["current_status"] == "RESOLVED"

            audit = _payload(await client.call_tool("audit_summary", {"days": 3650}))
            assert audit["rejected_requests"] == 1
            assert audit["events_by_action"]["resolve"] == 2
    _run(_check())


def test_unknown_alert_is_not_found(client):
    async def _check():
        async with client:
            result = _payload(await client.call_tool("acknowledge_alert", {"alert_id": "nope"}))
            assert result["status"] == "not_found"
    _run(_check())


def test_bad_metric_type_is_error(client):
    async def _check():
        async with client:
            result = _payload(await client.call_tool("submit_measurement", {
                "user_id": "u1", "metric_type": "mood", "value": 3,
            }))
            assert result["status"] == "error"
    _run(_check())


def test_night_rule_follows_user_timezone(client, health_repository):
    health_repository.save_rule(ThresholdRule(
        id="night-hr",
        user_id="u1",
        metric_type=MetricType.HEART_RATE,
        condition_operator=ConditionOperator.ABOVE,
        threshold_value=100.0,
        alert_type=AlertType.HEART_RATE_HIGH,
        cooldown_minutes=0,
        time_restriction_start="22:00",
        time_restriction_end="06:00",
    ))

    async def _check():
        async with client:
            # 23:30 UTC is 08:30 the next morning in Tokyo
            morning = _payload(await _submit(
                client, 130, "2026-03-04T23:30:00+00:00", user_timezone="Asia/Tokyo",
            ))
            assert morning["alerts_created"] == 0

            # 14:00 UTC is 23:00 in Tokyo
            night = _payload(await _submit(
                client, 130, "2026-03-04T14:00:00+00:00", user_timezone="Asia/Tokyo",
            ))
            assert night["alerts_created"] == 1
            assert night["alerts"][0]["timestamp"] == "2026-03-04T23:00:00+09:00"

            utc_night = _payload(await _submit(client, 130, "2026-03-04T23:30:00+00:00"))
            assert utc_night["alerts_created"] == 1

            bad = _payload(await _submit(client, 130, user_timezone="Mars/Olympus_Mons"))
            assert bad["status"] == "error"
    _run(_check())


def test_escalation_sweep_and_contacts(client):
    async def _check():
        async with client:
            await client.call_tool("install_default_rules", {"user_id": "u1"})
            contact = _payload(await client.call_tool("add_emergency_contact", {
                "user_id": "u1", "name": "Sam", "relationship": "spouse",
            }))
            assert contact["status"] == "ok"

            for minute in range(3):
                await _submit(client, 130, f"2026-03-04T12:0{minute}:00+00:00")

            # The reading is long past every escalation threshold
            swept = _payload(await client.call_tool("run_escalation_sweep", {}))
            assert swept["escalated"] == 1
            assert swept["alerts"][0]["status"] == "ESCALATED"
            assert swept["alerts"][0]["severity"] == "MEDIUM"
            assert swept["alerts"][0]["escalation_level"] == 1
    _run(_check())


def test_rule_tools(client):
    async def _check():
        async with client:
            await client.call_tool("install_default_rules", {"user_id": "u1"})
            rules = _payload(await client.call_tool("list_alert_rules", {"user_id": "u1"}))
            assert rules["count"] == 7
            assert rules["rules"][0]["alert_type"] == "OXYGEN_LOW"

            rule_id = rules["rules"][0]["rule_id"]
            disabled = _payload(await client.call_tool(
                "set_rule_active", {"rule_id": rule_id, "active": False}
            ))
            assert disabled["rule"]["is_active"] is False

            active = _payload(await client.call_tool(
                "list_alert_rules", {"user_id": "u1", "active_only": True}
            ))
            assert active["count"] == 6

            deleted = _payload(await client.call_tool("delete_alert_rule", {"rule_id": rule_id}))
            assert deleted["status"] == "deleted"
            missing = _payload(await client.call_tool("delete_alert_rule", {"rule_id": rule_id}))
            assert missing["status"] == "not_found"

            unchanged = _payload(await client.call_tool("install_default_rules", {"user_id": "u1"}))
            assert unchanged["status"] == "unchanged"
    _run(_check())


def test_goal_tools(client):
    async def _check():
        async with client:
            created = _payload(await client.call_tool("create_goal", {
                "user_id": "u1",
                "metric_type": "weight",
                "target_value": 70.0,
                "start_value": 80.0,
                "is_incremental": False,
                "title": "Lose 10 kg",
            }))
            assert created["status"] == "ok"
            goal_id = created["goal_id"]

            progress = _payload(await client.call_tool("record_goal_progress", {
                "goal_id": goal_id, "value": 75.0, "notes": "new routine",
            }))
            assert progress["progress_percentage"] == 50
            assert progress["milestone"] == "Halfway to your goal!"
            assert progress["personal_best"] is True

            summary = _payload(await client.call_tool("goal_summary", {"goal_id": goal_id}))
            assert summary["current_value"] == 75.0
            assert summary["progress_records"] == 1

            zoned = _payload(await client.call_tool("record_goal_progress", {
                "goal_id": goal_id, "value": 74.0, "user_timezone": "Pacific/Auckland",
            }))
            assert zoned["status"] == "ok"

            bad_zone = _payload(await client.call_tool("record_goal_progress", {
                "goal_id": goal_id, "value": 74.0, "user_timezone": "Nowhere/Special",
            }))
            assert bad_zone["status"] == "error"

            missing = _payload(await client.call_tool("goal_summary", {"goal_id": "nope"}))
            assert missing["status"] == "not_found"
    _run(_check())
