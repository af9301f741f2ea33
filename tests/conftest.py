"""Shared test fixtures for VitalWatch tests."""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "health.db"))
    monkeypatch.setenv("DEFAULT_RULES_PATH", "")
    monkeypatch.setenv("VW_HOST", "127.0.0.1")
    monkeypatch.chdir(tmp_path)  # keep a developer's .env out of Settings

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))


# Fixed reference time used across tests: a Wednesday, 12:00 UTC
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def health_db():
    """Create an in-memory HealthDatabase for testing."""
    from vitalwatch.core.storage.database import HealthDatabase

    db = HealthDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from vitalwatch.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def health_repository(health_db, field_encryptor):
    """Create a HealthRepository backed by in-memory SQLite."""
    from vitalwatch.core.storage.repository import HealthRepository

    return HealthRepository(health_db, field_encryptor)


@pytest.fixture
def audit_logger(health_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from vitalwatch.core.audit.logger import AuditLogger

    return AuditLogger(health_db)


@pytest.fixture
def alert_engine(health_repository, audit_logger):
    from vitalwatch.domains.health.domain_logic.alert_engine import AlertEngine

    return AlertEngine(health_repository, audit_logger)


@pytest.fixture
def goal_tracker(health_repository, audit_logger):
    from vitalwatch.domains.health.domain_logic.goal_tracker import GoalTracker

    return GoalTracker(health_repository, audit_logger)
