from pydantic import BaseModel
from datetime import datetime
from typing import Optional

class Check(BaseModel):
    id: Optional[int] = None
    monitor_id: int
    checked_at: datetime
    is_up: bool
    status_code: Optional[int] = None  # HTTP status code
    response_time_ms: Optional[int] = None  # only set once a request was attempted
    error: Optional[str] = None
