"""VitalWatch MCP server: application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from vitalwatch.core.audit.logger import AuditLogger
from vitalwatch.core.config.settings import get_settings
from vitalwatch.core.storage.database import HealthDatabase
from vitalwatch.core.storage.encryption import EncryptionError, FieldEncryptor
from vitalwatch.core.storage.repository import HealthRepository
from vitalwatch.domains.health.domain_logic.alert_engine import AlertEngine
from vitalwatch.domains.health.domain_logic.goal_tracker import GoalTracker
from vitalwatch.domains.health.tools.alert_tools import register_alert_tools
from vitalwatch.domains.health.tools.audit_tools import register_audit_tools
from vitalwatch.domains.health.tools.goal_tools import register_goal_tools
from vitalwatch.domains.health.tools.rule_tools import register_rule_tools

logger = logging.getLogger(__name__)


def create_app(
    *,
    repository_override: HealthRepository | None = None,
    audit_logger_override: AuditLogger | None = None,
) -> FastMCP:
    """Create and configure the VitalWatch MCP server.

    1. Creates the FastMCP server instance
    2. Initializes encrypted storage and the audit trail
    3. Builds the alert engine and goal tracker
    4. Registers all tools
    """
    settings = get_settings()

    server = FastMCP(
        "VitalWatch",
        instructions=(
            "VitalWatch health alerting server. Evaluates measurements against "
            "per-user threshold rules, manages the alert lifecycle (acknowledge, "
            "resolve, escalate, medical review) and tracks goal progress."
        ),
    )

    # --- Initialize encrypted storage ---
    repository: HealthRepository | None = None
    audit_logger: AuditLogger | None = audit_logger_override
    if repository_override is not None:
        repository = repository_override
    elif settings.encryption_key:
        try:
            encryptor = FieldEncryptor(settings.encryption_key)
            health_db = HealthDatabase(settings.db_path)
            health_db.initialize()
            repository = HealthRepository(health_db, encryptor)
            if audit_logger is None:
                audit_logger = AuditLogger(health_db)
            logger.info(
                "Health store initialized: %s (schema v%d)",
                settings.db_path,
                health_db.get_schema_version(),
            )
        except EncryptionError as exc:
            logger.error("Failed to initialize storage: %s", exc)
            logger.warning("Continuing without persistence, alert tools disabled")
    else:
        logger.info(
            "No ENCRYPTION_KEY configured, running without persistence. "
            "Set ENCRYPTION_KEY to enable alerting."
        )

    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        status = {
            "status": "ok",
            "server": "VitalWatch",
            "version": "0.1.0",
            "storage_enabled": repository is not None,
            "audit_enabled": audit_logger is not None,
            "alert_retention_days": settings.alert_retention_days,
            "physiological_defaults": {
                "resting_heart_rate": settings.resting_heart_rate,
                "max_heart_rate": settings.max_heart_rate,
            },
        }
        if repository is not None:
            status["alerts_stored"] = repository.count_alerts()
        return status

    # --- Register tools (require storage) ---
    if repository is not None:
        engine = AlertEngine(
            repository,
            audit_logger,
            default_rules_path=settings.default_rules_path or None,
        )
        register_alert_tools(server, engine, retention_days=settings.alert_retention_days)
        register_rule_tools(server, engine)
        logger.info("Alert and rule tools registered")

        tracker = GoalTracker(repository, audit_logger)
        register_goal_tools(server, tracker)
        logger.info("Goal tools registered")

    if audit_logger is not None:
        register_audit_tools(server, audit_logger)

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
