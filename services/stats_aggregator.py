"""
Uptime and latency statistics over a window of checks.

Everything here is a pure function of the checks passed in: no storage
access and no state, so the API layer can feed it whatever it queried.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from models.check import Check
from models.stats import ChartMode, DataPoint, Percentiles, StatsSummary

DEGRADED_THRESHOLD_MS = 500
STATUS_BAR_COUNT = 80

PERCENTILE_RANKS = {
    "p50": 0.50,
    "p75": 0.75,
    "p90": 0.90,
    "p95": 0.95,
    "p99": 0.99,
}

HOUR = 3600
DAY = 24 * HOUR


def uptime_percentage(checks: Sequence[Check]) -> float:
    """Share of up checks, 100.0 when there is no data."""
    if not checks:
        return 100.0
    up_count = sum(1 for check in checks if check.is_up)
    return round((up_count / len(checks)) * 100, 2)


def _up_response_times(checks: Iterable[Check]) -> List[int]:
    # Down checks are left out so timeouts don't skew latency.
    return [
        check.response_time_ms
        for check in checks
        if check.is_up and check.response_time_ms is not None
    ]


def average_response_time(checks: Sequence[Check]) -> Optional[float]:
    response_times = _up_response_times(checks)
    if not response_times:
        return None
    return round(sum(response_times) / len(response_times), 2)


def nearest_rank(sorted_values: Sequence[int], p: float) -> int:
    """Value at index floor(p * n), clamped to the last element."""
    if not sorted_values:
        raise ValueError("nearest_rank() of an empty sequence")
    index = min(int(math.floor(p * len(sorted_values))), len(sorted_values) - 1)
    return sorted_values[index]


def calculate_percentiles(checks: Sequence[Check]) -> Optional[Percentiles]:
    response_times = sorted(_up_response_times(checks))
    if not response_times:
        return None
    return Percentiles(**{name: nearest_rank(response_times, p) for name, p in PERCENTILE_RANKS.items()})


def time_series_bucket_size(window_seconds: int) -> int:
    if window_seconds <= DAY:
        return 30 * 60
    if window_seconds <= 7 * DAY:
        return 4 * HOUR
    if window_seconds <= 14 * DAY:
        return 8 * HOUR
    return DAY


def status_bucket_size(window_seconds: int) -> int:
    return max(1, int(window_seconds) // STATUS_BAR_COUNT)


def bucket_key(checked_at: datetime, bucket_seconds: int) -> int:
    """Start of the bucket holding checked_at, as a unix timestamp."""
    if checked_at.tzinfo is None:
        checked_at = checked_at.replace(tzinfo=timezone.utc)
    return int(math.floor(checked_at.timestamp() / bucket_seconds)) * bucket_seconds


def group_by_bucket(checks: Iterable[Check], bucket_seconds: int) -> Dict[int, List[Check]]:
    """Buckets in ascending order; slots without checks are absent."""
    buckets: Dict[int, List[Check]] = {}
    for check in checks:
        buckets.setdefault(bucket_key(check.checked_at, bucket_seconds), []).append(check)
    return {key: buckets[key] for key in sorted(buckets)}


def _bucket_timestamp(key: int) -> datetime:
    return datetime.fromtimestamp(key, tz=timezone.utc)


def _majority_up(checks: Sequence[Check]) -> bool:
    up_count = sum(1 for check in checks if check.is_up)
    return up_count > len(checks) / 2


def time_series_points(checks: Iterable[Check], window_seconds: int) -> List[DataPoint]:
    points = []
    for key, bucket in group_by_bucket(checks, time_series_bucket_size(window_seconds)).items():
        points.append(
            DataPoint(
                timestamp=_bucket_timestamp(key),
                response_time=average_response_time(bucket),
                is_up=_majority_up(bucket),
            )
        )
    return points


def status_points(
    checks: Iterable[Check],
    window_seconds: int,
    degraded_threshold_ms: int = DEGRADED_THRESHOLD_MS,
) -> List[DataPoint]:
    points = []
    for key, bucket in group_by_bucket(checks, status_bucket_size(window_seconds)).items():
        total = len(bucket)
        degraded = sum(
            1
            for check in bucket
            if check.is_up
            and check.response_time_ms is not None
            and check.response_time_ms > degraded_threshold_ms
        )
        up = sum(1 for check in bucket if check.is_up) - degraded
        down = total - up - degraded
        points.append(
            DataPoint(
                timestamp=_bucket_timestamp(key),
                is_up=_majority_up(bucket),
                up_ratio=up / total,
                degraded_ratio=degraded / total,
                down_ratio=down / total,
            )
        )
    return points


def compute(
    checks: Iterable[Check],
    window_seconds: int,
    mode: ChartMode = ChartMode.AREA,
    now: Optional[datetime] = None,
    degraded_threshold_ms: int = DEGRADED_THRESHOLD_MS,
) -> StatsSummary:
    """Summarize the checks that fall inside the last window_seconds."""
    if window_seconds <= 0:
        raise ValueError(f"window_seconds must be positive, got {window_seconds}")
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(seconds=window_seconds)
    in_window = [check for check in checks if since <= _aware(check.checked_at) <= now]

    if ChartMode(mode) is ChartMode.BARS:
        data_points = status_points(in_window, window_seconds, degraded_threshold_ms)
    else:
        data_points = time_series_points(in_window, window_seconds)

    return StatsSummary(
        uptime_pct=uptime_percentage(in_window),
        avg_response_time=average_response_time(in_window),
        percentiles=calculate_percentiles(in_window),
        data_points=data_points,
    )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
