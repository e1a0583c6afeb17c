"""Configuration via environment variables."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # Calendar
    timezone: str = "UTC"
    at_risk_hour: int = 18  # local hour after which an unmet active streak is at risk

    # Goals
    default_step_goal: int = 10_000

    # Shields
    subscription_tier: Literal["free", "pro"] = "free"
    shield_consumption_order: Literal["purchased_first", "recurring_first"] = "purchased_first"
    repair_lookback_days: int = 7  # includes today
    auto_deploy_shields: bool = True

    # Reconciliation
    reconcile_enabled: bool = True
    reconcile_min_interval_hours: float = 6.0
    reconcile_poll_seconds: float = 300.0

    # Sources
    provider_precedence: list[str] = ["health_store", "device_motion", "cloud_sync"]
    source_base_url: str = ""
    source_api_token: str = ""
    source_timeout_seconds: float = 10.0

    # Storage
    store_backend: Literal["memory", "encrypted"] = "memory"
    data_store_path: Path = Path("data/store")
    data_audit_path: Path = Path("data/audit")
    age_recipient: str = ""
    age_identity: str = ""

    # App
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    api_key: str = ""
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
