"""Health record repository: the storage collaborator for the alert engine.

The repository mediates between records (ThresholdRule, Alert, Goal, ...)
and the SQLite database. It owns three concerns the pure engine does not:

* encryption of free-text fields through :class:`FieldEncryptor`;
* atomic read-modify-write of rules, alerts and goals, implemented as
  compare-and-swap on the ``version`` column;
* reactive subscriptions that re-run a query after every committed write
  to a topic and hand the fresh result to a callback.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, TypeVar

from vitalwatch.core.storage import codecs
from vitalwatch.core.storage.codecs import ParseError
from vitalwatch.core.storage.database import HealthDatabase
from vitalwatch.core.storage.encryption import EncryptionError, FieldEncryptor
from vitalwatch.core.storage.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    EmergencyContact,
    Goal,
    GoalProgress,
    MetricType,
    ThresholdRule,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOPIC_RULES = "rules"
TOPIC_ALERTS = "alerts"
TOPIC_CONTACTS = "contacts"
TOPIC_GOALS = "goals"
TOPIC_GOAL_PROGRESS = "goal_progress"

# Logical field -> encrypted column
_ENCRYPTED_ALERT_FIELDS = {
    "user_response": "user_response_enc",
    "resolution": "resolution_enc",
    "medical_review_notes": "medical_review_notes_enc",
}
_ENCRYPTED_PROGRESS_FIELDS = {"notes": "notes_enc"}

_OPEN_STATUSES = (
    AlertStatus.NEW,
    AlertStatus.ACTIVE,
    AlertStatus.ACKNOWLEDGED,
    AlertStatus.ESCALATED,
)
_TERMINAL_STATUSES = (AlertStatus.RESOLVED, AlertStatus.FALSE_ALARM)

_SEVERITY_ORDER_SQL = (
    "CASE severity WHEN 'EMERGENCY' THEN 1 WHEN 'HIGH' THEN 2 "
    "WHEN 'MEDIUM' THEN 3 WHEN 'LOW' THEN 4 ELSE 5 END"
)


class RepositoryError(Exception):
    """Raised when repository operations fail."""


class ConcurrentModificationError(RepositoryError):
    """Raised when a record keeps changing underneath a read-modify-write."""


@dataclass(eq=False)
class Subscription:
    """Handle returned by :meth:`HealthRepository.subscribe`."""

    topic: str
    query: Callable[[], Any]
    callback: Callable[[Any], None]
    _repository: HealthRepository | None = None

    def cancel(self) -> None:
        if self._repository is not None:
            self._repository._unsubscribe(self)
            self._repository = None

    @property
    def active(self) -> bool:
        return self._repository is not None


class HealthRepository:
    """CRUD repository for rules, alerts, contacts, goals and goal progress.

    Usage::

        db = HealthDatabase(":memory:")
        db.initialize()
        repo = HealthRepository(db, FieldEncryptor(key="..."))

        repo.save_rule(rule)
        repo.update_alert(alert_id, lambda a: acknowledge(a, now))
        sub = repo.subscribe(TOPIC_ALERTS, lambda: repo.list_active_alerts("u1"), render)
    """

    def __init__(
        self,
        database: HealthDatabase,
        encryptor: FieldEncryptor,
        *,
        max_update_attempts: int = 3,
    ) -> None:
        self._db = database
        self._enc = encryptor
        self._max_update_attempts = max_update_attempts
        self._subscribers: dict[str, list[Subscription]] = {}

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        topic: str,
        query: Callable[[], T],
        callback: Callable[[T], None],
    ) -> Subscription:
        """Deliver ``query()`` to ``callback`` now and after every write to ``topic``.

        Returns:
            A :class:`Subscription`; call ``cancel()`` to stop deliveries.
        """
        sub = Subscription(topic=topic, query=query, callback=callback, _repository=self)
        self._subscribers.setdefault(topic, []).append(sub)
        callback(query())
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.topic, [])
        if sub in subs:
            subs.remove(sub)

    def _publish(self, topic: str) -> None:
        for sub in list(self._subscribers.get(topic, [])):
            try:
                sub.callback(sub.query())
            except Exception:
                logger.exception("Subscriber callback failed for topic %s", topic)

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    def _upsert(self, table: str, row: dict[str, Any]) -> None:
        columns = list(row)
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
        self._db.connection.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            [row[c] for c in columns],
        )

    def _compare_and_swap(
        self, table: str, row: dict[str, Any], expected_version: int
    ) -> bool:
        columns = [c for c in row if c != "id"]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        cursor = self._db.connection.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ? AND version = ?",
            [row[c] for c in columns] + [row["id"], expected_version],
        )
        return cursor.rowcount == 1

    def _read_modify_write(
        self,
        record_id: str,
        *,
        load: Callable[[str], T | None],
        to_row: Callable[[T], dict[str, Any]],
        table: str,
        topic: str,
        mutate: Callable[[T], T],
    ) -> T | None:
        """Apply ``mutate`` to the current persisted record atomically.

        ``mutate`` receives the latest stored record and returns the new one.
        Exceptions raised by ``mutate`` propagate and leave the row unchanged.
        """
        for attempt in range(1, self._max_update_attempts + 1):
            current = load(record_id)
            if current is None:
                return None
            updated = mutate(current)
            updated = replace(
                updated,
                id=current.id,
                version=current.version + 1,
                modified_at=updated.modified_at or self._now(),
            )
            if self._compare_and_swap(table, to_row(updated), current.version):
                self._db.connection.commit()
                self._publish(topic)
                return updated
            self._db.connection.rollback()
            logger.warning(
                "Version conflict on %s %s (attempt %d/%d)",
                table, record_id, attempt, self._max_update_attempts,
            )
        raise ConcurrentModificationError(
            f"{table} {record_id} was modified concurrently; gave up after "
            f"{self._max_update_attempts} attempts"
        )

    def _decode_many(
        self, rows: Iterable[Any], decode: Callable[[Any], T], kind: str
    ) -> list[T]:
        """Decode rows, skipping (and logging) any that are corrupt."""
        records: list[T] = []
        for row in rows:
            try:
                records.append(decode(row))
            except (ParseError, EncryptionError) as exc:
                logger.warning("Skipping corrupt %s row %s: %s", kind, row["id"], exc)
        return records

    # ------------------------------------------------------------------
    # Threshold rules
    # ------------------------------------------------------------------

    def save_rule(self, rule: ThresholdRule) -> str:
        """Insert or replace a rule. Generates an id when ``rule.id`` is empty."""
        now = self._now()
        rule = replace(
            rule,
            id=rule.id or self.new_id(),
            created_at=rule.created_at or now,
            modified_at=rule.modified_at or now,
        )
        self._upsert("threshold_rules", codecs.rule_to_row(rule))
        self._db.connection.commit()
        logger.info("Saved rule %s (%s, user=%s)", rule.id, rule.alert_type.value, rule.user_id)
        self._publish(TOPIC_RULES)
        return rule.id

    def save_rules(self, rules: Iterable[ThresholdRule]) -> list[str]:
        return [self.save_rule(rule) for rule in rules]

    def get_rule(self, rule_id: str) -> ThresholdRule | None:
        row = self._db.connection.execute(
            "SELECT * FROM threshold_rules WHERE id = ?", (rule_id,)
        ).fetchone()
        return codecs.rule_from_row(row) if row is not None else None

    def list_rules(
        self,
        user_id: str,
        *,
        metric_type: MetricType | None = None,
        active_only: bool = False,
    ) -> list[ThresholdRule]:
        """List a user's rules, highest priority first."""
        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]
        if metric_type is not None:
            conditions.append("metric_type = ?")
            params.append(metric_type.value)
        if active_only:
            conditions.append("is_active = 1")

        rows = self._db.connection.execute(
            f"SELECT * FROM threshold_rules WHERE {' AND '.join(conditions)} "
            "ORDER BY priority DESC, created_at ASC",
            params,
        ).fetchall()
        return self._decode_many(rows, codecs.rule_from_row, "rule")

    def update_rule(
        self, rule_id: str, mutate: Callable[[ThresholdRule], ThresholdRule]
    ) -> ThresholdRule | None:
        """Atomically apply ``mutate`` to a rule. Returns None if it does not exist."""
        return self._read_modify_write(
            rule_id,
            load=self.get_rule,
            to_row=codecs.rule_to_row,
            table="threshold_rules",
            topic=TOPIC_RULES,
            mutate=mutate,
        )

    def delete_rule(self, rule_id: str) -> bool:
        cursor = self._db.connection.execute(
            "DELETE FROM threshold_rules WHERE id = ?", (rule_id,)
        )
        self._db.connection.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted rule %s", rule_id)
            self._publish(TOPIC_RULES)
        return deleted

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _alert_row(self, alert: Alert) -> dict[str, Any]:
        row = codecs.alert_to_row(alert)
        for field_name, column in _ENCRYPTED_ALERT_FIELDS.items():
            row[column] = self._enc.encrypt(row.pop(field_name))
        return row

    def _decode_alert(self, row: Any) -> Alert:
        data = dict(row)
        for field_name, column in _ENCRYPTED_ALERT_FIELDS.items():
            data[field_name] = self._enc.decrypt(data.pop(column))
        return codecs.alert_from_row(data)

    def save_alert(self, alert: Alert) -> str:
        """Insert or replace an alert. Generates an id when ``alert.id`` is empty."""
        now = self._now()
        alert = replace(
            alert,
            id=alert.id or self.new_id(),
            created_at=alert.created_at or now,
            modified_at=alert.modified_at or now,
        )
        self._upsert("alerts", self._alert_row(alert))
        self._db.connection.commit()
        logger.info(
            "Saved alert %s (%s/%s, status=%s)",
            alert.id, alert.alert_type.value, alert.severity.value, alert.status.value,
        )
        self._publish(TOPIC_ALERTS)
        return alert.id

    def get_alert(self, alert_id: str) -> Alert | None:
        """Retrieve an alert by ID.

        Raises:
            ParseError: If the stored row is corrupt.
            EncryptionError: If a free-text field cannot be decrypted.
        """
        row = self._db.connection.execute(
            "SELECT * FROM alerts WHERE id = ?", (alert_id,)
        ).fetchone()
        return self._decode_alert(row) if row is not None else None

    def list_alerts(
        self,
        user_id: str | None = None,
        *,
        statuses: Iterable[AlertStatus] | None = None,
        severity: AlertSeverity | None = None,
        rule_id: str | None = None,
        include_dismissed: bool = True,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[Alert]:
        """Query alerts with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        if statuses is not None:
            status_values = [s.value for s in statuses]
            if not status_values:
                return []
            conditions.append(f"status IN ({','.join('?' for _ in status_values)})")
            params.extend(status_values)
        if severity is not None:
            conditions.append("severity = ?")
            params.append(severity.value)
        if rule_id is not None:
            conditions.append("rule_id = ?")
            params.append(rule_id)
        if not include_dismissed:
            conditions.append("is_dismissed = 0")
        if since is not None:
            conditions.append("timestamp >= ?")
            params.append(since.isoformat())
        if until is not None:
            conditions.append("timestamp <= ?")
            params.append(until.isoformat())

        query = "SELECT * FROM alerts"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return self._decode_many(rows, self._decode_alert, "alert")

    def list_active_alerts(self, user_id: str) -> list[Alert]:
        """Non-terminal, non-dismissed alerts: most severe first, then newest."""
        placeholders = ",".join("?" for _ in _OPEN_STATUSES)
        rows = self._db.connection.execute(
            f"""SELECT * FROM alerts
                WHERE user_id = ? AND is_dismissed = 0 AND status IN ({placeholders})
                ORDER BY {_SEVERITY_ORDER_SQL}, timestamp DESC""",
            [user_id, *(s.value for s in _OPEN_STATUSES)],
        ).fetchall()
        return self._decode_many(rows, self._decode_alert, "alert")

    def list_open_alerts(self) -> list[Alert]:
        """All non-terminal alerts across users, oldest first (escalation sweep input)."""
        placeholders = ",".join("?" for _ in _OPEN_STATUSES)
        rows = self._db.connection.execute(
            f"SELECT * FROM alerts WHERE status IN ({placeholders}) ORDER BY timestamp ASC",
            [s.value for s in _OPEN_STATUSES],
        ).fetchall()
        return self._decode_many(rows, self._decode_alert, "alert")

    def count_alerts(self, user_id: str | None = None) -> int:
        if user_id is None:
            row = self._db.connection.execute("SELECT COUNT(*) FROM alerts").fetchone()
        else:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM alerts WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row[0]

    def update_alert(
        self, alert_id: str, mutate: Callable[[Alert], Alert]
    ) -> Alert | None:
        """Atomically apply ``mutate`` to an alert. Returns None if it does not exist."""
        return self._read_modify_write(
            alert_id,
            load=self.get_alert,
            to_row=self._alert_row,
            table="alerts",
            topic=TOPIC_ALERTS,
            mutate=mutate,
        )

    def delete_alert(self, alert_id: str) -> bool:
        cursor = self._db.connection.execute("DELETE FROM alerts WHERE id = ?", (alert_id,))
        self._db.connection.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted alert %s", alert_id)
            self._publish(TOPIC_ALERTS)
        return deleted

    def purge_terminal_alerts(self, user_id: str, before: datetime) -> int:
        """Delete a user's RESOLVED / FALSE_ALARM alerts created before ``before``.

        Returns:
            Number of alerts deleted.
        """
        placeholders = ",".join("?" for _ in _TERMINAL_STATUSES)
        cursor = self._db.connection.execute(
            f"""DELETE FROM alerts
                WHERE user_id = ? AND status IN ({placeholders}) AND timestamp < ?""",
            [user_id, *(s.value for s in _TERMINAL_STATUSES), before.isoformat()],
        )
        self._db.connection.commit()
        count = cursor.rowcount
        if count:
            logger.info("Purged %d terminal alerts for user %s older than %s", count, user_id, before)
            self._publish(TOPIC_ALERTS)
        return count

    # ------------------------------------------------------------------
    # Emergency contacts
    # ------------------------------------------------------------------

    def save_contact(self, contact: EmergencyContact) -> str:
        contact = replace(contact, id=contact.id or self.new_id())
        self._upsert("emergency_contacts", codecs.contact_to_row(contact))
        self._db.connection.commit()
        logger.info("Saved emergency contact %s (user=%s)", contact.id, contact.user_id)
        self._publish(TOPIC_CONTACTS)
        return contact.id

    def list_contacts(self, user_id: str, *, active_only: bool = True) -> list[EmergencyContact]:
        """List a user's emergency contacts, lowest priority number first."""
        query = "SELECT * FROM emergency_contacts WHERE user_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY priority ASC, name ASC"
        rows = self._db.connection.execute(query, (user_id,)).fetchall()
        return self._decode_many(rows, codecs.contact_from_row, "contact")

    def delete_contact(self, contact_id: str) -> bool:
        cursor = self._db.connection.execute(
            "DELETE FROM emergency_contacts WHERE id = ?", (contact_id,)
        )
        self._db.connection.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            self._publish(TOPIC_CONTACTS)
        return deleted

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    def save_goal(self, goal: Goal) -> str:
        now = self._now()
        goal = replace(
            goal,
            id=goal.id or self.new_id(),
            created_at=goal.created_at or now,
            modified_at=goal.modified_at or now,
        )
        self._upsert("goals", codecs.goal_to_row(goal))
        self._db.connection.commit()
        logger.info("Saved goal %s (%s, user=%s)", goal.id, goal.metric_type.value, goal.user_id)
        self._publish(TOPIC_GOALS)
        return goal.id

    def get_goal(self, goal_id: str) -> Goal | None:
        row = self._db.connection.execute(
            "SELECT * FROM goals WHERE id = ?", (goal_id,)
        ).fetchone()
        return codecs.goal_from_row(row) if row is not None else None

    def list_goals(self, user_id: str, *, active_only: bool = False) -> list[Goal]:
        query = "SELECT * FROM goals WHERE user_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at ASC"
        rows = self._db.connection.execute(query, (user_id,)).fetchall()
        return self._decode_many(rows, codecs.goal_from_row, "goal")

    def update_goal(self, goal_id: str, mutate: Callable[[Goal], Goal]) -> Goal | None:
        """Atomically apply ``mutate`` to a goal. Returns None if it does not exist."""
        return self._read_modify_write(
            goal_id,
            load=self.get_goal,
            to_row=codecs.goal_to_row,
            table="goals",
            topic=TOPIC_GOALS,
            mutate=mutate,
        )

    def delete_goal(self, goal_id: str) -> bool:
        """Delete a goal; its progress records go with it (ON DELETE CASCADE)."""
        cursor = self._db.connection.execute("DELETE FROM goals WHERE id = ?", (goal_id,))
        self._db.connection.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted goal %s", goal_id)
            self._publish(TOPIC_GOALS)
            self._publish(TOPIC_GOAL_PROGRESS)
        return deleted

    # ------------------------------------------------------------------
    # Goal progress (append-only)
    # ------------------------------------------------------------------

    def add_progress(self, progress: GoalProgress) -> str:
        progress = replace(progress, id=progress.id or self.new_id())
        row = codecs.progress_to_row(progress)
        for field_name, column in _ENCRYPTED_PROGRESS_FIELDS.items():
            row[column] = self._enc.encrypt(row.pop(field_name))
        columns = list(row)
        self._db.connection.execute(
            f"INSERT INTO goal_progress ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            [row[c] for c in columns],
        )
        self._db.connection.commit()
        self._publish(TOPIC_GOAL_PROGRESS)
        return progress.id

    def _decode_progress(self, row: Any) -> GoalProgress:
        data = dict(row)
        for field_name, column in _ENCRYPTED_PROGRESS_FIELDS.items():
            data[field_name] = self._enc.decrypt(data.pop(column))
        return codecs.progress_from_row(data)

    def list_progress(self, goal_id: str, *, limit: int = 30) -> list[GoalProgress]:
        """Progress records for a goal, newest first."""
        rows = self._db.connection.execute(
            """SELECT * FROM goal_progress WHERE goal_id = ?
               ORDER BY timestamp DESC LIMIT ?""",
            (goal_id, limit),
        ).fetchall()
        return self._decode_many(rows, self._decode_progress, "goal_progress")

    def count_progress(self, goal_id: str) -> int:
        row = self._db.connection.execute(
            "SELECT COUNT(*) FROM goal_progress WHERE goal_id = ?", (goal_id,)
        ).fetchone()
        return row[0]
