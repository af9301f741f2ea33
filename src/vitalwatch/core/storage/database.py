"""SQLite database management for the VitalWatch store.

Handles connection lifecycle, schema creation, and migrations.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS threshold_rules (
    id                        TEXT PRIMARY KEY,
    user_id                   TEXT NOT NULL,
    name                      TEXT NOT NULL DEFAULT '',
    description               TEXT,
    metric_type               TEXT NOT NULL,
    condition_operator        TEXT NOT NULL,
    threshold_value           REAL NOT NULL,
    secondary_threshold_value REAL,
    unit                      TEXT NOT NULL DEFAULT '',
    alert_type                TEXT NOT NULL,
    default_severity          TEXT NOT NULL,
    custom_title              TEXT,
    custom_message            TEXT,
    custom_recommendation     TEXT,
    time_window_minutes       INTEGER,
    occurrences_required      INTEGER NOT NULL DEFAULT 1,
    cooldown_minutes          INTEGER NOT NULL DEFAULT 60,
    is_active                 INTEGER NOT NULL DEFAULT 1,
    is_system_rule            INTEGER NOT NULL DEFAULT 0,
    priority                  INTEGER NOT NULL DEFAULT 5,
    time_restriction_start    TEXT,
    time_restriction_end      TEXT,
    active_days_of_week       TEXT,
    last_triggered_at         TEXT,
    trigger_count             INTEGER NOT NULL DEFAULT 0,
    created_at                TEXT NOT NULL,
    modified_at               TEXT NOT NULL,
    version                   INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS alerts (
    id                          TEXT PRIMARY KEY,
    user_id                     TEXT NOT NULL,
    alert_type                  TEXT NOT NULL,
    severity                    TEXT NOT NULL,
    title                       TEXT NOT NULL,
    message                     TEXT NOT NULL,
    recommendation              TEXT NOT NULL,
    timestamp                   TEXT NOT NULL,
    status                      TEXT NOT NULL,
    is_emergency                INTEGER NOT NULL DEFAULT 0,

    triggering_value            REAL,
    threshold_value             REAL,
    measurement_id              TEXT,
    rule_id                     TEXT,

    notification_sent           INTEGER NOT NULL DEFAULT 0,
    notification_sent_at        TEXT,
    emergency_contacts_notified INTEGER NOT NULL DEFAULT 0,
    emergency_notification_time TEXT,

    acknowledged_at             TEXT,
    user_response_enc           TEXT,
    time_to_acknowledge         INTEGER,
    is_dismissed                INTEGER NOT NULL DEFAULT 0,

    resolved_at                 TEXT,
    resolution_enc              TEXT,

    escalated_at                TEXT,
    escalation_level            INTEGER NOT NULL DEFAULT 0,
    escalated_to_contact_ids    TEXT,

    requires_medical_review     INTEGER NOT NULL DEFAULT 0,
    is_medically_reviewed       INTEGER NOT NULL DEFAULT 0,
    medical_review_notes_enc    TEXT,
    medically_reviewed_by       TEXT,
    medically_reviewed_at       TEXT,

    created_at                  TEXT NOT NULL,
    modified_at                 TEXT NOT NULL,
    version                     INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS emergency_contacts (
    id           TEXT PRIMARY KEY,
    user_id      TEXT NOT NULL,
    name         TEXT NOT NULL,
    phone_number TEXT NOT NULL DEFAULT '',
    relationship TEXT NOT NULL DEFAULT '',
    email        TEXT,
    priority     INTEGER NOT NULL DEFAULT 1,
    is_active    INTEGER NOT NULL DEFAULT 1,
    min_severity TEXT NOT NULL DEFAULT 'HIGH'
);

CREATE TABLE IF NOT EXISTS goals (
    id                TEXT PRIMARY KEY,
    user_id           TEXT NOT NULL,
    metric_type       TEXT NOT NULL,
    title             TEXT NOT NULL DEFAULT '',
    unit              TEXT NOT NULL DEFAULT '',
    goal_type         TEXT NOT NULL DEFAULT '',
    start_value       REAL,
    target_value      REAL NOT NULL,
    current_value     REAL NOT NULL DEFAULT 0,
    is_incremental    INTEGER NOT NULL DEFAULT 1,
    start_date        TEXT,
    deadline          TEXT,
    is_active         INTEGER NOT NULL DEFAULT 1,
    is_completed      INTEGER NOT NULL DEFAULT 0,
    completed_at      TEXT,
    is_recurring      INTEGER NOT NULL DEFAULT 0,
    current_streak    INTEGER NOT NULL DEFAULT 0,
    longest_streak    INTEGER NOT NULL DEFAULT 0,
    last_updated_date TEXT,
    created_at        TEXT NOT NULL,
    modified_at       TEXT NOT NULL,
    version           INTEGER NOT NULL DEFAULT 0
);

-- Append-only; removed together with the owning goal
CREATE TABLE IF NOT EXISTS goal_progress (
    id                    TEXT PRIMARY KEY,
    goal_id               TEXT NOT NULL REFERENCES goals(id) ON DELETE CASCADE,
    user_id               TEXT NOT NULL,
    timestamp             TEXT NOT NULL,
    current_value         REAL NOT NULL,
    progress_percentage   INTEGER NOT NULL,
    is_completed          INTEGER NOT NULL DEFAULT 0,
    notes_enc             TEXT,
    is_milestone          INTEGER NOT NULL DEFAULT 0,
    milestone_description TEXT,
    streak_count          INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Indexes for common query patterns
CREATE INDEX IF NOT EXISTS idx_rules_user_metric  ON threshold_rules(user_id, metric_type);
CREATE INDEX IF NOT EXISTS idx_alerts_user        ON alerts(user_id);
CREATE INDEX IF NOT EXISTS idx_alerts_status      ON alerts(status);
CREATE INDEX IF NOT EXISTS idx_alerts_ts          ON alerts(timestamp);
CREATE INDEX IF NOT EXISTS idx_alerts_rule        ON alerts(rule_id);
CREATE INDEX IF NOT EXISTS idx_contacts_user      ON emergency_contacts(user_id);
CREATE INDEX IF NOT EXISTS idx_goals_user         ON goals(user_id);
CREATE INDEX IF NOT EXISTS idx_progress_goal_ts   ON goal_progress(goal_id, timestamp);
"""

# ---------------------------------------------------------------------------
# V2: Audit log table (lifecycle transitions, rejected requests, deletions)
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS audit_log (
    id            TEXT PRIMARY KEY,
    timestamp     TEXT NOT NULL DEFAULT (datetime('now')),
    action        TEXT NOT NULL,
    entity_type   TEXT,
    entity_id     TEXT,
    from_status   TEXT,
    to_status     TEXT,
    actor         TEXT,
    status        TEXT NOT NULL DEFAULT 'success',
    error_type    TEXT,
    metadata_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_entity    ON audit_log(entity_id);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class HealthDatabase:
    """SQLite database manager for the VitalWatch store.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    Usage::

        db = HealthDatabase(":memory:")
        db.initialize()
        conn = db.connection
        # ... use connection ...
        db.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        """Initialize database manager.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    def initialize(self) -> None:
        """Create the database connection and ensure schema exists.

        For file-based databases, creates parent directories if needed.
        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return

        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_file), check_same_thread=False)
        else:
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)

        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._ensure_schema()
        logger.info("Health database initialized: %s", self._db_path)

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist and apply migrations."""
        conn = self.connection

        # V1: Core tables (CREATE IF NOT EXISTS is idempotent)
        conn.executescript(_SCHEMA_V1)

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        current_version = row[0] if row[0] is not None else 0

        if current_version < 2:
            conn.executescript(_SCHEMA_V2)
            logger.info("Applied schema migration V2: audit_log table")

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
            logger.info(
                "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
            )

    def get_schema_version(self) -> int:
        """Return the current schema version."""
        cursor = self.connection.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Health database closed")

    def __enter__(self) -> HealthDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
