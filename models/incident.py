from pydantic import BaseModel
from datetime import datetime
from typing import Optional

class Incident(BaseModel):
    id: int
    monitor_id: int
    started_at: datetime
    resolved_at: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    @property
    def duration_seconds(self) -> Optional[int]:
        if self.resolved_at is None:
            return None
        return int((self.resolved_at - self.started_at).total_seconds())
