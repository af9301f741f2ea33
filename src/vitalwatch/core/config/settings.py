"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """VitalWatch server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Default to loopback: the alert tools mutate health records and there is
    # no auth layer. Opt into `0.0.0.0` explicitly when you intend remote access.
    vw_host: str = "127.0.0.1"
    vw_port: int = 8001
    vw_log_level: str = "info"
    vw_allow_insecure_bind: bool = False

    # Storage (rules, alerts, goals)
    db_path: str = "~/.vitalwatch/health.db"

    # Encryption of free-text fields at rest; storage is disabled without it
    encryption_key: str = ""

    # Alerts
    alert_retention_days: int = 90
    default_rules_path: str = ""

    # Per-user physiological defaults (read only)
    resting_heart_rate: int = 60
    max_heart_rate: int = 190


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
