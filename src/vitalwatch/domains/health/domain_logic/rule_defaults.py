"""Default rule set loader: reads system alert rules from YAML."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from vitalwatch.core.storage.codecs import ParseError, parse_enum, parse_weekdays
from vitalwatch.core.storage.models import (
    AlertSeverity,
    AlertType,
    ConditionOperator,
    MetricType,
    ThresholdRule,
)

logger = logging.getLogger(__name__)

DEFAULT_RULES_PATH = (
    Path(__file__).resolve().parent.parent / "rules" / "default_rules.yaml"
)

_OPTIONAL_FIELDS = (
    "description",
    "secondary_threshold_value",
    "custom_title",
    "custom_message",
    "custom_recommendation",
    "time_window_minutes",
    "time_restriction_start",
    "time_restriction_end",
)


def load_rule_templates(path: str | Path | None = None) -> list[dict[str, Any]]:
    """Read the raw rule templates from a YAML file.

    Raises:
        ParseError: If the file has no ``rules`` list.
    """
    path = Path(path) if path else DEFAULT_RULES_PATH
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    templates = data.get("rules") if isinstance(data, dict) else None
    if not isinstance(templates, list):
        raise ParseError(f"{path}: expected a top-level 'rules' list")
    return templates


def rule_from_template(
    template: dict[str, Any], user_id: str, rule_id: str, now: datetime
) -> ThresholdRule:
    """Build a system ThresholdRule for ``user_id`` from one YAML template."""
    try:
        threshold = float(template["threshold_value"])
        name = str(template["name"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ParseError(f"Invalid rule template {template.get('name')!r}: {exc}") from exc

    optional = {key: template[key] for key in _OPTIONAL_FIELDS if key in template}
    days = template.get("active_days_of_week")
    if isinstance(days, list):
        days = ",".join(str(d) for d in days)

    return ThresholdRule(
        id=rule_id,
        user_id=user_id,
        name=name,
        metric_type=parse_enum(MetricType, template.get("metric_type"), field_name="metric_type"),
        condition_operator=parse_enum(
            ConditionOperator, template.get("condition_operator"), field_name="condition_operator"
        ),
        threshold_value=threshold,
        unit=str(template.get("unit", "")),
        alert_type=parse_enum(AlertType, template.get("alert_type"), field_name="alert_type"),
        default_severity=parse_enum(
            AlertSeverity, template.get("default_severity", "MEDIUM"), field_name="default_severity"
        ),
        occurrences_required=int(template.get("occurrences_required", 1)),
        cooldown_minutes=int(template.get("cooldown_minutes", 60)),
        priority=int(template.get("priority", 5)),
        active_days_of_week=parse_weekdays(days),
        is_system_rule=True,
        created_at=now,
        modified_at=now,
        **optional,
    )


def create_default_rules(
    user_id: str,
    now: datetime,
    *,
    id_factory,
    path: str | Path | None = None,
) -> list[ThresholdRule]:
    """Instantiate the default rule set for a new user.

    Args:
        user_id: Owner of the new rules.
        now: Creation timestamp.
        id_factory: Zero-argument callable returning fresh rule ids.
        path: Optional YAML override; defaults to the packaged rule set.
    """
    rules = [
        rule_from_template(template, user_id, id_factory(), now)
        for template in load_rule_templates(path)
    ]
    logger.info("Built %d default rules for user %s", len(rules), user_id)
    return rules
