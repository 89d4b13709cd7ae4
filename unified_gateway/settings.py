from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    config_path: str = "config.json"
    models_cache_path: str = "data/models.json"
    history_path: str = "data/chats.json"
    logs_dir: str = "logs"
    request_log_enabled: bool = True
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 120.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 5.0
    oauth_refresh_skew_seconds: int = 300
    oauth_default_expires_in_seconds: int = 3600
    host: str = "0.0.0.0"
    port: int = 3000

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def server_log_path(self) -> Path:
        return Path(self.logs_dir) / "server_logs.jsonl"

    @property
    def client_log_path(self) -> Path:
        return Path(self.logs_dir) / "client_logs.jsonl"


@lru_cache
def get_settings() -> Settings:
    return Settings()
