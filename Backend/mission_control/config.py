"""Application configuration loaded from environment variables."""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # ── Server ───────────────────────────────────────────────────────────────
    port: int = 8080
    log_level: str = "INFO"
    cors_origins: str = "*"

    # ── Auth ─────────────────────────────────────────────────────────────────
    # Must be overridden outside local development.
    secret_key: str = "change-this-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 1440  # 24 hours

    # ── Database (users, and audit logs when audit_backend=database) ─────────
    database_url: str = "sqlite:///./data/mission_control.db"

    # ── Audit log ────────────────────────────────────────────────────────────
    # "file": JSON array on disk with debounced writes
    # "database": audit_logs table in database_url
    audit_backend: str = "file"
    audit_log_path: str = "data/audit-logs.json"
    audit_flush_delay_seconds: float = 0.1
    audit_max_buffered_writes: int = 500
    audit_retention_days: int = 90
    # 0 disables the background cleanup task
    audit_cleanup_interval_seconds: int = 3600

    # ── WebSocket stream ─────────────────────────────────────────────────────
    ws_heartbeat_interval_seconds: float = 30.0
    ws_send_timeout_seconds: float = 1.0
    # protocol-level ping/pong, handled by uvicorn
    ws_ping_interval_seconds: float = 30.0
    ws_ping_timeout_seconds: float = 30.0

    # ── Gateway ──────────────────────────────────────────────────────────────
    gateway_cli: str = "openclaw"
    gateway_timeout_seconds: float = 5.0
    gateway_health_timeout_seconds: float = 2.0
    gateway_message_timeout_seconds: float = 60.0

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
