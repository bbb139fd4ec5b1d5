from pydantic import BaseModel, Field, HttpUrl
from datetime import datetime, timezone
from typing import Optional

MIN_CHECK_INTERVAL = 10
MAX_CHECK_INTERVAL = 86400


class MonitorCreate(BaseModel):
    url: HttpUrl
    name: Optional[str] = None
    check_interval: int = Field(
        60,
        description="Check interval in seconds",
        ge=MIN_CHECK_INTERVAL,
        le=MAX_CHECK_INTERVAL,
    )


class Monitor(BaseModel):
    id: int
    name: str
    url: HttpUrl
    check_interval: int = Field(
        60,
        description="Check interval in seconds",
        ge=MIN_CHECK_INTERVAL,
        le=MAX_CHECK_INTERVAL,
    )
    active: bool = Field(default=True, description="Whether the scheduler probes this monitor")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
