# app/config/settings.py

from functools import lru_cache
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SeverityLevel = Literal["low", "medium", "high", "critical"]


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_name: str = "cms-access-core"
    environment: Literal["dev", "test", "prod"] = "dev"
    debug: bool = False
    version: str = "0.1.0"

    # --- Security ---
    jwt_secret: str = Field(..., min_length=32)
    jwt_algorithm: str = "HS256"

    # --- Database ---
    database_url: str

    # --- Audit trail ---
    audit_retention_days: int = Field(365, ge=1, le=3650)
    audit_export_limit: int = Field(10000, ge=1)
    audit_archive_dir: str = "./data/archives"

    # --- Suspicious activity heuristics ---
    failed_login_threshold: int = 5
    failed_login_window_minutes: int = 60
    ip_fanout_threshold: int = 3
    ip_fanout_window_minutes: int = 60
    burst_threshold: int = 20
    burst_window_minutes: int = 5

    # --- Alert delivery ---
    alert_in_app_enabled: bool = True
    alert_in_app_threshold: SeverityLevel = "low"
    alert_email_enabled: bool = False
    alert_email_recipients: List[str] = Field(default_factory=list)
    alert_email_threshold: SeverityLevel = "high"
    alert_webhook_enabled: bool = False
    alert_webhook_url: str = ""
    alert_webhook_threshold: SeverityLevel = "critical"
    alert_webhook_timeout_seconds: float = 5.0

    # --- Observability ---
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


@lru_cache
def get_settings() -> AppSettings:
    return AppSettings()
