"""Audit logger: PHI-free trail of alert lifecycle activity.

Records every lifecycle transition, rejected transition request and
deletion in the ``audit_log`` table. Entries carry identifiers, statuses
and counts only:

* ``entity_type`` / ``entity_id``: what was touched (alert, rule, goal).
* ``from_status`` / ``to_status``: the lifecycle edge that was taken.
* ``status``: ``success`` or ``rejected`` for refused transitions.

Measured values and free text (responses, resolutions, review notes) never
reach this table.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from vitalwatch.core.storage.database import HealthDatabase

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                      # 'transition' | 'transition_rejected' | 'data_delete' | ...
    entity_type: str | None = None   # 'alert' | 'rule' | 'goal' | 'contact'
    entity_id: str | None = None
    from_status: str | None = None
    to_status: str | None = None
    actor: str | None = None         # 'user' | 'escalation_sweep' | 'engine'
    status: str = "success"          # 'success' | 'rejected' | 'failure'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    All writes are committed immediately so no audit entry is lost on crash.
    A failed write is logged and reported as an empty event id; it never
    interrupts the operation being audited.

    Usage::

        audit = AuditLogger(health_db)
        audit.log_transition(
            "alert", alert.id, action="acknowledge",
            from_status="ACTIVE", to_status="ACKNOWLEDGED", actor="user",
        )
    """

    def __init__(self, database: HealthDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID (empty string on failure)."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), sort_keys=True)
            if event.metadata
            else None
        )

        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, entity_type, entity_id, from_status,
                    to_status, actor, status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    now,
                    event.action,
                    event.entity_type,
                    event.entity_id,
                    event.from_status,
                    event.to_status,
                    event.actor,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
            conn.commit()
        except Exception:
            logger.exception("Failed to write audit event %s, event lost", event.action)
            return ""

        return event_id

    def log_transition(
        self,
        entity_type: str,
        entity_id: str,
        *,
        action: str,
        from_status: str | None,
        to_status: str | None,
        actor: str = "user",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log a successful lifecycle transition.

        Args:
            entity_type: Kind of record ('alert', 'rule', 'goal').
            entity_id: Record identifier.
            action: Lifecycle operation name (e.g. 'acknowledge', 'escalate').
            from_status: Status before the transition.
            to_status: Status after the transition.
            actor: Who drove it ('user', 'engine', 'escalation_sweep').
            metadata: Additional non-PHI context (severity, levels, counts).
        """
        return self.log_event(AuditEvent(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            metadata=metadata or {},
        ))

    def log_rejected(
        self,
        entity_type: str,
        entity_id: str,
        *,
        action: str,
        current_status: str | None,
        error_type: str,
        actor: str = "user",
    ) -> str:
        """Log a transition request that was refused and left the record unchanged."""
        return self.log_event(AuditEvent(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            from_status=current_status,
            actor=actor,
            status="rejected",
            error_type=error_type,
        ))

    def log_data_delete(
        self,
        entity_type: str,
        *,
        entity_id: str | None = None,
        count: int = 0,
        actor: str = "user",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log a deletion of one record (``entity_id``) or a bulk purge (``count``)."""
        return self.log_event(AuditEvent(
            action="data_delete",
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            metadata={**(metadata or {}), "records_deleted": count},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        entity_id: str | None = None,
        status: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if entity_id:
            conditions.append("entity_id = ?")
            params.append(entity_id)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, since: str | None = None, status: str | None = None) -> int:
        """Count audit events, optionally since a timestamp and/or by status."""
        conditions: list[str] = []
        params: list[Any] = []
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)
        if status:
            conditions.append("status = ?")
            params.append(status)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        row = self._db.connection.execute(
            f"SELECT COUNT(*) FROM audit_log{where}", params
        ).fetchone()
        return row[0]

    def count_by_action(self, *, since: str | None = None) -> dict[str, int]:
        """Event counts grouped by action."""
        if since:
            rows = self._db.connection.execute(
                "SELECT action, COUNT(*) AS n FROM audit_log WHERE timestamp >= ? GROUP BY action",
                (since,),
            ).fetchall()
        else:
            rows = self._db.connection.execute(
                "SELECT action, COUNT(*) AS n FROM audit_log GROUP BY action"
            ).fetchall()
        return {row["action"]: row["n"] for row in rows}
