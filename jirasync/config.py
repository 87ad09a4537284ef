"""Application configuration"""

import logging
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Jira (destination)
    jira_host: str = ""
    jira_write_token: str = ""

    # GitHub (source)
    github_read_token: str = ""
    github_graphql_url: str = "https://api.github.com/graphql"

    # Sync definition and persisted watermarks
    sync_config_path: str = "sync.yaml"
    sync_state_path: str = "sync-state.yaml"

    # Run history
    database_url: str = "sqlite:///./jirasync.db"

    # Minimum delay between the start of two consecutive Jira calls.
    jira_min_call_interval_ms: int = 100
    # Pause applied once when Jira answers with its throttling/unauthorized shape.
    throttle_cooldown_seconds: float = 30.0
    # Re-read and re-apply records that failed in a previous run.
    retry_failed_records: bool = True

    # Server / scheduler
    host: str = "0.0.0.0"
    port: int = 8000
    scheduler_enabled: bool = True
    sync_interval_minutes: int = 30

    # Logging
    log_level: str = "INFO"

    # API auth (optional)
    # When set, every route except /health requires "Authorization: Bearer <api_token>".
    api_token: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()


def configure_logging(level: str = None):
    """Configure root logging once for the process"""
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
