from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    MAINTENANCE = "maintenance"


class IncidentStatus(str, Enum):
    INVESTIGATING = "investigating"
    IDENTIFIED = "identified"
    MONITORING = "monitoring"
    RESOLVED = "resolved"


class IncidentUpdate(BaseModel):
    message: str
    status: IncidentStatus
    created_at: datetime


class StatusIncident(BaseModel):
    """A hand-written status page incident, loaded from a YAML file."""

    id: str
    title: str = ""
    description: str = ""
    severity: Severity
    status: IncidentStatus
    affected_monitors: List[str] = Field(default_factory=list)
    started_at: datetime
    resolved_at: Optional[datetime] = None
    updates: List[IncidentUpdate] = Field(default_factory=list)

    @field_validator("started_at", "resolved_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
