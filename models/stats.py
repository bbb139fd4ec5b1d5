"""
Models for aggregated uptime and latency statistics
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field

class ChartMode(str, Enum):
    """How check history is rolled up into data points"""
    AREA = "area"  # continuous response-time series
    BARS = "bars"  # discrete status-ratio bars

class Percentiles(BaseModel):
    """Nearest-rank response time percentiles in milliseconds"""
    p50: int
    p75: int
    p90: int
    p95: int
    p99: int

class DataPoint(BaseModel):
    """One bucket of checks"""
    timestamp: datetime
    is_up: bool
    response_time: Optional[float] = None
    up_ratio: Optional[float] = None
    degraded_ratio: Optional[float] = None
    down_ratio: Optional[float] = None

class StatsSummary(BaseModel):
    """Statistics over one window of checks"""
    uptime_pct: float = 100.0
    avg_response_time: Optional[float] = None
    percentiles: Optional[Percentiles] = None
    data_points: List[DataPoint] = Field(default_factory=list)

class MonitorStats(StatsSummary):
    """Statistics for a monitor, as served to the dashboard"""
    id: int
    name: str
    url: str
    check_interval: int
