"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is driven by environment variables."""

    # API key
    fwmon_api_key: str = ""

    # Connect throttle (milliseconds)
    fwmon_connect_cooldown_ms: int = 15000
    fwmon_connect_backoff_base_ms: int = 15000
    fwmon_connect_backoff_max_ms: int = 300000

    # SSH session timings (seconds)
    fwmon_ssh_connect_timeout_seconds: float = 20.0
    fwmon_ssh_session_timeout_seconds: float = 45.0
    fwmon_ssh_menu_fallback_seconds: float = 1.8
    fwmon_ssh_command_delay_seconds: float = 0.7
    fwmon_ssh_drain_timeout_seconds: float = 15.0
    fwmon_ssh_close_grace_seconds: float = 0.05
    fwmon_ssh_max_workers: int = 32

    # Periodic monitoring
    fwmon_scheduler_enabled: bool = True
    fwmon_monitor_interval_seconds: float = 60.0

    # Alerts
    fwmon_disk_alert_percent: int = 80
    fwmon_notifications_enabled: bool = False
    fwmon_webhook_url: str = ""
    fwmon_smtp_host: str = ""
    fwmon_smtp_port: int = 587
    fwmon_smtp_user: str = ""
    fwmon_smtp_password: str = ""
    fwmon_smtp_from: str = ""
    # Comma separated list of default recipients
    fwmon_alert_emails: str = ""

    # Storage
    fwmon_encryption_key: str = "change-me-in-production"
    fwmon_data_file: str = Field(default="/data/firewalls.json")

    # Logging
    fwmon_log_level: str = "INFO"
    fwmon_log_json: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def alert_recipients(self) -> list[str]:
        return [a.strip() for a in self.fwmon_alert_emails.split(",") if a.strip()]


# Default instance used when no explicit settings are passed
settings = Settings()
