from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


# Page size for scroll exports; the search engine is never asked for more per batch.
EXPORT_BATCH_SIZE = 1000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "logproxy"
    log_level: str = "INFO"

    # Root for every JSON snapshot the service owns (policy, rules, metrics, users).
    data_dir: str = "./data"

    # Search engine connection; credentials are optional for unsecured dev clusters.
    search_url: str = "http://localhost:9200"
    search_username: str | None = None
    search_password: str | None = None
    search_verify_ssl: bool = True
    # Bound every upstream call so a stalled cluster cannot pin request handlers.
    search_timeout_s: float = 30.0
    # Keep-alive passed to the scroll API between export batches.
    export_scroll_ttl: str = "1m"
    export_batch_size: int = EXPORT_BATCH_SIZE
    # Sample size used by the export estimate endpoint.
    export_estimate_sample: int = 10

    # Response cache window; 0 disables caching entirely.
    cache_ttl_ms: int = 15000
    cache_max_entries: int = 500

    # Bearer tokens expire quickly; the login flow re-issues them.
    auth_token_ttl_minutes: int = 10
    default_team: str = "core"

    # Alert evaluation cadence and metrics snapshot cadence.
    alert_eval_interval_s: int = 300
    alert_scheduler_enabled: bool = True
    metrics_flush_interval_s: int = 30
    activity_max_entries: int = 500

    # SMTP transport for alert notifications.
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_timeout_s: float = 15.0
    alert_email_to: str = ""
    alert_email_from: str = ""

    # Lines returned by the admin error log endpoint.
    error_log_tail_lines: int = 200

    def data_path(self, name: str) -> Path:
        return Path(self.data_dir) / name


@lru_cache
def get_settings() -> Settings:
    return Settings()
