"""Configuration for the webwatch service."""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from models.stats import ChartMode


class Settings(BaseModel):
    """Deployment-wide settings, read from WEBWATCH_* environment variables."""

    db_path: str = Field(default="data/webwatch.db", description="SQLite database file")
    timeout: float = Field(default=30, description="Per-probe timeout in seconds")
    insecure: bool = Field(default=False, description="Skip TLS certificate verification")
    retention_days: int = Field(default=30, description="Days of check history to keep")
    chart_type: ChartMode = Field(default=ChartMode.AREA, description="Dashboard chart mode")
    degraded_threshold_ms: int = Field(default=500, ge=0, description="Response time above which an up check counts as degraded")
    shutdown_grace: float = Field(default=10, gt=0, description="Seconds to wait for in-flight probes on shutdown")
    webhook_url: Optional[str] = Field(default=None, description="Webhook posted to when a monitor goes down")

    title: str = Field(default="Webwatch Dashboard")
    description: str = Field(default="Track uptime and response times across all monitors")
    timezone: str = Field(default="Europe/Vienna", description="Timezone the dashboard renders times in")

    incidents_path: Optional[str] = Field(default=None, description="Directory of status incident YAML files")
    incidents_repo_url: Optional[str] = Field(default=None, description="Git repository to clone incident files from")
    incidents_sync_interval: float = Field(default=300, gt=0, description="Seconds between incident repository pulls")

    log_level: str = Field(default="INFO", description="Logging level")
    port: int = Field(default=8080)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()


_ENV_VARS = {
    "db_path": "WEBWATCH_DB_PATH",
    "timeout": "WEBWATCH_TIMEOUT",
    "insecure": "WEBWATCH_INSECURE",
    "retention_days": "WEBWATCH_RETENTION_DAYS",
    "chart_type": "WEBWATCH_CHART_TYPE",
    "degraded_threshold_ms": "WEBWATCH_DEGRADED_THRESHOLD_MS",
    "shutdown_grace": "WEBWATCH_SHUTDOWN_GRACE",
    "webhook_url": "WEBWATCH_WEBHOOK_URL",
    "title": "WEBWATCH_TITLE",
    "description": "WEBWATCH_DESCRIPTION",
    "timezone": "WEBWATCH_TIMEZONE",
    "incidents_path": "WEBWATCH_INCIDENT_PATH",
    "incidents_repo_url": "WEBWATCH_INCIDENT_REPO",
    "incidents_sync_interval": "WEBWATCH_INCIDENT_SYNC",
    "log_level": "LOG_LEVEL",
    "port": "PORT",
}


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Load settings from the environment, after applying a .env file if present."""
    load_dotenv(env_file)
    values = {}
    for field, var in _ENV_VARS.items():
        raw = os.getenv(var)
        if raw is not None and raw != "":
            values[field] = raw
    return Settings(**values)
