"""Alert evaluation pipeline and lifecycle service.

Ties the pure pieces together::

    measurement -> activation gate -> condition -> occurrence window
                -> severity -> content -> Alert (NEW -> ACTIVE)

and exposes the user-driven lifecycle transitions and the periodic
escalation sweep. Every state change goes through the repository's atomic
read-modify-write, and every transition (or refusal) is audited.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

from vitalwatch.core.audit.logger import AuditLogger
from vitalwatch.core.storage.models import (
    Alert,
    AlertSeverity,
    EmergencyContact,
    Measurement,
    ThresholdRule,
)
from vitalwatch.core.storage.repository import HealthRepository
from vitalwatch.domains.health.domain_logic import alert_lifecycle as lifecycle
from vitalwatch.domains.health.domain_logic.alert_content import generate_alert_content
from vitalwatch.domains.health.domain_logic.alert_lifecycle import InvalidStateTransition
from vitalwatch.domains.health.domain_logic.escalation import (
    get_escalated_severity,
    is_due_for_escalation,
    select_escalation_contacts,
)
from vitalwatch.domains.health.domain_logic.occurrence import OccurrenceTracker
from vitalwatch.domains.health.domain_logic.rule_conditions import (
    check_condition,
    is_rule_active_now,
    update_after_trigger,
    validate_rule,
)
from vitalwatch.domains.health.domain_logic.rule_defaults import create_default_rules
from vitalwatch.domains.health.domain_logic.severity import determine_severity

logger = logging.getLogger(__name__)


class AlertNotFoundError(Exception):
    """Raised when an alert id does not exist."""

    def __init__(self, alert_id: str) -> None:
        self.alert_id = alert_id
        super().__init__(f"Alert not found: {alert_id}")


class RuleNotFoundError(Exception):
    """Raised when a rule id does not exist."""

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule not found: {rule_id}")


class _SkipUpdate(Exception):
    """Aborts a read-modify-write whose precondition no longer holds."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertEngine:
    """Evaluates measurements against rules and drives alert lifecycles.

    Usage::

        engine = AlertEngine(repository, audit_logger)
        engine.install_default_rules("user-1")
        alerts = engine.evaluate_measurement(measurement)
        engine.acknowledge_alert(alerts[0].id, user_response="resting now")
        engine.run_escalation_sweep()
    """

    def __init__(
        self,
        repository: HealthRepository,
        audit_logger: AuditLogger | None = None,
        *,
        tracker: OccurrenceTracker | None = None,
        id_factory: Callable[[], str] | None = None,
        default_rules_path: str | Path | None = None,
    ) -> None:
        self._repo = repository
        self._audit = audit_logger
        self._tracker = tracker or OccurrenceTracker()
        self._new_id = id_factory or HealthRepository.new_id
        self._default_rules_path = default_rules_path or None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_measurement(
        self, measurement: Measurement, now: datetime | None = None
    ) -> list[Alert]:
        """Run one measurement through every active rule for its metric.

        Rules are visited highest priority first and are independent of
        each other; a measurement may fire several rules.

        Returns:
            The alerts created (already ACTIVE).
        """
        now = now or measurement.timestamp
        if measurement.value is None or not math.isfinite(measurement.value):
            logger.warning(
                "Skipping non-finite %s measurement for user %s",
                measurement.metric_type.value, measurement.user_id,
            )
            return []

        rules = self._repo.list_rules(
            measurement.user_id, metric_type=measurement.metric_type, active_only=True
        )
        created: list[Alert] = []
        for rule in rules:
            alert = self._evaluate_rule(rule, measurement, now)
            if alert is not None:
                created.append(alert)
        return created

    def _evaluate_rule(
        self, rule: ThresholdRule, measurement: Measurement, now: datetime
    ) -> Alert | None:
        for warning in validate_rule(rule):
            logger.warning("Rule %s (%s): %s", rule.id, rule.name, warning)

        if not is_rule_active_now(rule, now):
            return None

        qualifies = check_condition(measurement.value, rule)
        if not self._tracker.observe(rule, qualifies=qualifies, at=measurement.timestamp):
            return None

        def trigger(current: ThresholdRule) -> ThresholdRule:
            # Another writer may have fired the rule since it was listed
            if not is_rule_active_now(current, now):
                raise _SkipUpdate
            return update_after_trigger(current, now)

        try:
            fired = self._repo.update_rule(rule.id, trigger)
        except _SkipUpdate:
            logger.info("Rule %s fired concurrently; suppressing duplicate", rule.id)
            return None
        if fired is None:
            return None

        return self._create_alert(fired, measurement, now)

    def _create_alert(
        self, rule: ThresholdRule, measurement: Measurement, now: datetime
    ) -> Alert:
        severity = determine_severity(rule.alert_type, measurement.value, rule.threshold_value)
        content = generate_alert_content(
            rule.alert_type, severity, measurement.value, rule.threshold_value, rule
        )
        alert = lifecycle.create_alert(
            alert_id=self._new_id(),
            user_id=measurement.user_id,
            alert_type=rule.alert_type,
            severity=severity,
            content=content,
            timestamp=now,
            triggering_value=measurement.value,
            threshold_value=rule.threshold_value,
            measurement_id=measurement.id or None,
            rule_id=rule.id,
        )
        self._repo.save_alert(alert)
        self._audit_transition(alert, "create", None, alert.status.value, actor="engine")

        activated = self._transition(alert.id, "activate", lifecycle.activate, now, actor="engine")

        if severity == AlertSeverity.EMERGENCY:
            contacts = select_escalation_contacts(
                self._repo.list_contacts(alert.user_id), severity, escalation_level=1
            )
            if contacts:
                activated = self._transition(
                    alert.id,
                    "notify_emergency_contacts",
                    lifecycle.mark_emergency_contacts_notified,
                    now,
                    actor="engine",
                )

        logger.info(
            "Created %s alert %s (%s) from rule %s",
            severity.value, alert.id, rule.alert_type.value, rule.id,
        )
        return activated

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    def _audit_transition(
        self, alert: Alert, action: str, from_status: str | None, to_status: str, *, actor: str
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_transition(
            "alert",
            alert.id,
            action=action,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            metadata={"severity": alert.severity.value, "alert_type": alert.alert_type.value},
        )

    def _transition(
        self,
        alert_id: str,
        action: str,
        apply: Callable[..., Alert],
        now: datetime,
        *args,
        actor: str = "user",
    ) -> Alert:
        before: list[Alert] = []

        def mutate(current: Alert) -> Alert:
            before[:] = [current]
            return apply(current, now, *args)

        try:
            updated = self._repo.update_alert(alert_id, mutate)
        except InvalidStateTransition as exc:
            logger.warning("Rejected %s on alert %s: %s", action, alert_id, exc)
            if self._audit is not None:
                self._audit.log_rejected(
                    "alert",
                    alert_id,
                    action=action,
                    current_status=exc.current_status.value,
                    error_type=type(exc).__name__,
                    actor=actor,
                )
            raise
        if updated is None:
            raise AlertNotFoundError(alert_id)

        self._audit_transition(
            updated, action, before[-1].status.value, updated.status.value, actor=actor
        )
        return updated

    def get_alert(self, alert_id: str) -> Alert:
        alert = self._repo.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    def list_active_alerts(self, user_id: str) -> list[Alert]:
        return self._repo.list_active_alerts(user_id)

    def acknowledge_alert(
        self, alert_id: str, user_response: str | None = None, now: datetime | None = None
    ) -> Alert:
        return self._transition(
            alert_id, "acknowledge", lifecycle.acknowledge, now or _utcnow(), user_response
        )

    def resolve_alert(
        self, alert_id: str, resolution: str, now: datetime | None = None
    ) -> Alert:
        return self._transition(
            alert_id, "resolve", lifecycle.resolve, now or _utcnow(), resolution
        )

    def mark_false_alarm(
        self, alert_id: str, reason: str | None = None, now: datetime | None = None
    ) -> Alert:
        return self._transition(
            alert_id, "mark_false_alarm", lifecycle.mark_false_alarm, now or _utcnow(), reason
        )

    def dismiss_alert(self, alert_id: str, now: datetime | None = None) -> Alert:
        return self._transition(alert_id, "dismiss", lifecycle.dismiss, now or _utcnow())

    def mark_notification_sent(self, alert_id: str, now: datetime | None = None) -> Alert:
        return self._transition(
            alert_id,
            "mark_notification_sent",
            lifecycle.mark_notification_sent,
            now or _utcnow(),
            actor="engine",
        )

    def record_medical_review(
        self,
        alert_id: str,
        reviewed_by: str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Alert:
        return self._transition(
            alert_id,
            "record_medical_review",
            lifecycle.record_medical_review,
            now or _utcnow(),
            reviewed_by,
            notes,
            actor="reviewer",
        )

    # ------------------------------------------------------------------
    # Escalation sweep and retention
    # ------------------------------------------------------------------

    def run_escalation_sweep(self, now: datetime | None = None) -> list[Alert]:
        """Escalate every open alert that has waited past its threshold.

        An alert that is already ESCALATED waits out the threshold of its
        current severity again, counted from its last escalation.

        Returns:
            The alerts escalated by this sweep.
        """
        now = now or _utcnow()
        contacts_by_user: dict[str, list[EmergencyContact]] = {}
        escalated: list[Alert] = []

        for alert in self._repo.list_open_alerts():
            if not is_due_for_escalation(alert, now):
                continue
            if alert.user_id not in contacts_by_user:
                contacts_by_user[alert.user_id] = self._repo.list_contacts(alert.user_id)
            contacts = contacts_by_user[alert.user_id]
            before: list[Alert] = []

            def mutate(current: Alert) -> Alert:
                if not is_due_for_escalation(current, now):
                    raise _SkipUpdate
                before[:] = [current]
                severity = get_escalated_severity(current.severity)
                chosen = select_escalation_contacts(
                    contacts, severity, current.escalation_level + 1
                )
                return lifecycle.escalate(current, now, severity, [c.id for c in chosen])

            try:
                updated = self._repo.update_alert(alert.id, mutate)
            except (_SkipUpdate, InvalidStateTransition):
                continue
            if updated is None:
                continue

            self._audit_transition(
                updated, "escalate", before[-1].status.value, updated.status.value,
                actor="escalation_sweep",
            )
            logger.info(
                "Escalated alert %s to %s (level %d, %d contacts)",
                updated.id, updated.severity.value, updated.escalation_level,
                len(updated.escalated_to_contact_ids),
            )
            escalated.append(updated)

        return escalated

    def purge_terminal_alerts(
        self, user_id: str, older_than_days: int, now: datetime | None = None
    ) -> int:
        """Delete a user's RESOLVED / FALSE_ALARM alerts older than the retention window."""
        cutoff = (now or _utcnow()) - timedelta(days=older_than_days)
        count = self._repo.purge_terminal_alerts(user_id, cutoff)
        if self._audit is not None:
            self._audit.log_data_delete(
                "alert", count=count, metadata={"older_than_days": older_than_days}
            )
        return count

    # ------------------------------------------------------------------
    # Rules and contacts
    # ------------------------------------------------------------------

    def install_default_rules(
        self, user_id: str, now: datetime | None = None
    ) -> list[ThresholdRule]:
        """Create the system rule set for a user. No-op if they already have it."""
        existing = [r for r in self._repo.list_rules(user_id) if r.is_system_rule]
        if existing:
            logger.info("User %s already has %d system rules", user_id, len(existing))
            return []

        rules = create_default_rules(
            user_id, now or _utcnow(), id_factory=self._new_id, path=self._default_rules_path
        )
        self._repo.save_rules(rules)
        return rules

    def add_rule(self, rule: ThresholdRule) -> ThresholdRule:
        if not rule.id:
            rule = replace(rule, id=self._new_id())
        for warning in validate_rule(rule):
            logger.warning("New rule %s: %s", rule.name or rule.alert_type.value, warning)
        self._repo.save_rule(rule)
        return rule

    def list_rules(self, user_id: str, *, active_only: bool = False) -> list[ThresholdRule]:
        return self._repo.list_rules(user_id, active_only=active_only)

    def set_rule_active(
        self, rule_id: str, active: bool, now: datetime | None = None
    ) -> ThresholdRule:
        """Enable or soft-delete a rule. Disabling drops any pending occurrences."""
        now = now or _utcnow()
        before: list[ThresholdRule] = []

        def mutate(current: ThresholdRule) -> ThresholdRule:
            before[:] = [current]
            return replace(current, is_active=active, modified_at=now)

        updated = self._repo.update_rule(rule_id, mutate)
        if updated is None:
            raise RuleNotFoundError(rule_id)
        if not active:
            self._tracker.reset(updated.user_id, updated.id)
        if self._audit is not None:
            self._audit.log_transition(
                "rule",
                rule_id,
                action="enable" if active else "disable",
                from_status="active" if before[-1].is_active else "inactive",
                to_status="active" if active else "inactive",
            )
        return updated

    def delete_rule(self, rule_id: str) -> None:
        rule = self._repo.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        self._repo.delete_rule(rule_id)
        self._tracker.reset(rule.user_id, rule_id)
        if self._audit is not None:
            self._audit.log_data_delete("rule", entity_id=rule_id, count=1)

    def add_emergency_contact(self, contact: EmergencyContact) -> EmergencyContact:
        if not contact.id:
            contact = replace(contact, id=self._new_id())
        self._repo.save_contact(contact)
        return contact
