from unittest.mock import MagicMock

import pytest

from models.incident import Incident
from services.incident_tracker import OPENED, RESOLVED, IncidentTracker
from services.storage_uptime import StorageError, UptimeStorage

MOCK_URL = "https://status.example.com/health"


@pytest.fixture
def storage():
    store = UptimeStorage(":memory:")
    yield store
    store.close()


@pytest.fixture
def monitor_id(storage):
    return storage.create_monitor(MOCK_URL, check_interval=60).id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "observations",
    [
        [True, True, True],
        [False, False, True],
        [True, False, True, False, True],
        [False, True, False, False, False, True, True, False],
        [False] * 5,
    ],
)
async def test_at_most_one_open_incident(storage, monitor_id, observations):
    tracker = IncidentTracker(storage)

    for is_up in observations:
        await tracker.track(monitor_id, is_up, None if is_up else "HTTP 503 Service Unavailable")
        assert len(storage.list_open_incidents()) <= 1

    recoveries = sum(1 for prev, cur in zip([True] + observations, observations) if not prev and cur)
    incidents = storage.list_incidents(monitor_id)
    resolved = [incident for incident in incidents if not incident.is_open]
    assert len(resolved) == recoveries
    assert tracker.is_open(monitor_id) == (not observations[-1])


@pytest.mark.asyncio
async def test_transition_table(storage, monitor_id):
    tracker = IncidentTracker(storage)

    assert await tracker.track(monitor_id, True) is None
    assert await tracker.track(monitor_id, False, "request failed: timeout") == OPENED
    assert await tracker.track(monitor_id, False, "request failed: timeout") is None
    assert await tracker.track(monitor_id, True) == RESOLVED
    assert await tracker.track(monitor_id, True) is None

    incidents = storage.list_incidents(monitor_id)
    assert len(incidents) == 1
    assert incidents[0].reason == "request failed: timeout"
    assert incidents[0].resolved_at is not None
    assert incidents[0].duration_seconds >= 0


@pytest.mark.asyncio
async def test_failed_create_leaves_latch_closed():
    storage = MagicMock(spec=UptimeStorage)
    storage.create_incident.side_effect = [StorageError("database is locked"), (7, True)]
    tracker = IncidentTracker(storage)

    assert await tracker.track(1, False, "HTTP 500 Internal Server Error") is None
    assert not tracker.is_open(1)

    assert await tracker.track(1, False, "HTTP 500 Internal Server Error") == OPENED
    assert tracker.is_open(1)
    assert storage.create_incident.call_count == 2


@pytest.mark.asyncio
async def test_failed_resolve_is_retried_on_next_up():
    storage = MagicMock(spec=UptimeStorage)
    storage.create_incident.return_value = (3, True)
    storage.resolve_incident.side_effect = [StorageError("disk I/O error"), None]
    tracker = IncidentTracker(storage)

    await tracker.track(1, False, "request failed: connection refused")
    assert await tracker.track(1, True) is None
    assert tracker.is_open(1)

    assert await tracker.track(1, True) == RESOLVED
    assert not tracker.is_open(1)
    assert storage.resolve_incident.call_count == 2


@pytest.mark.asyncio
async def test_monitors_are_tracked_independently(storage):
    first = storage.create_monitor("https://a.example.com/health", check_interval=60).id
    second = storage.create_monitor("https://b.example.com/health", check_interval=60).id
    tracker = IncidentTracker(storage)

    assert await tracker.track(first, False, "down") == OPENED
    assert await tracker.track(second, False, "down") == OPENED
    assert await tracker.track(first, True) == RESOLVED

    assert not tracker.is_open(first)
    assert tracker.is_open(second)
    assert [incident.monitor_id for incident in storage.list_open_incidents()] == [second]


@pytest.mark.asyncio
async def test_load_open_restores_latch(storage, monitor_id):
    incident_id, _ = storage.create_incident(monitor_id, "request failed: timeout")

    tracker = IncidentTracker(storage)
    assert await tracker.load_open() == 1
    assert tracker.is_open(monitor_id)

    assert await tracker.track(monitor_id, False, "request failed: timeout") is None
    assert await tracker.track(monitor_id, True) == RESOLVED
    incidents = storage.list_incidents(monitor_id)
    assert [incident.id for incident in incidents] == [incident_id]
    assert not incidents[0].is_open


@pytest.mark.asyncio
async def test_forget_drops_latch():
    storage = MagicMock(spec=UptimeStorage)
    storage.list_open_incidents.return_value = [
        Incident(id=4, monitor_id=9, started_at="2026-01-01T00:00:00Z", reason="down")
    ]
    tracker = IncidentTracker(storage)
    await tracker.load_open()
    assert tracker.is_open(9)

    await tracker.forget(9)
    assert not tracker.is_open(9)


@pytest.mark.asyncio
async def test_already_open_incident_is_not_reported_as_opened(storage, monitor_id):
    # A previous run opened this incident, and the latch was never restored.
    incident_id, _ = storage.create_incident(monitor_id, "request failed: timeout")
    tracker = IncidentTracker(storage)

    assert await tracker.track(monitor_id, False, "request failed: timeout") is None
    assert tracker.is_open(monitor_id)
    assert await tracker.track(monitor_id, True) == RESOLVED
    assert [incident.id for incident in storage.list_incidents(monitor_id)] == [incident_id]
