import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from jobs.scheduler import UptimeScheduler
from services.storage_uptime import StorageError, UptimeStorage
from services.uptime_checker import ProbeResult

MOCK_URL = "https://status.example.com/health"
FAST_INTERVAL = 0.05  # seconds, below the configurable minimum on purpose


class FakeChecker:
    """Stands in for UptimeChecker; replays a list of up/down outcomes, then stays up."""

    def __init__(self, outcomes=None, delay: float = 0):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls = 0
        self.closed = False

    async def check(self, url: str) -> ProbeResult:
        self.calls += 1
        checked_at = datetime.now(timezone.utc)
        if self.delay:
            await asyncio.sleep(self.delay)
        is_up = self.outcomes.pop(0) if self.outcomes else True
        if is_up:
            return ProbeResult(True, 120, 200, None, checked_at)
        return ProbeResult(False, 15, None, "request failed: connection refused", checked_at)

    async def aclose(self) -> None:
        self.closed = True


async def wait_until(predicate, timeout: float = 3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def storage():
    store = UptimeStorage(":memory:")
    yield store
    store.close()


def fast_monitor(storage: UptimeStorage, url: str = MOCK_URL):
    # Stored inactive so start() leaves it to add_monitor().
    monitor = storage.create_monitor(url, name="Status", check_interval=60, active=False)
    return monitor.model_copy(update={"check_interval": FAST_INTERVAL})


@pytest.mark.asyncio
async def test_start_probes_active_monitors_immediately(storage):
    monitor = storage.create_monitor(MOCK_URL, name="Status", check_interval=60)
    checker = FakeChecker()
    scheduler = UptimeScheduler(storage, checker)

    await scheduler.start()
    assert scheduler.is_running
    assert scheduler.scheduled_ids() == [monitor.id]
    await wait_until(lambda: len(storage.query_checks(monitor.id)) == 1)
    await scheduler.stop()

    checks = storage.query_checks(monitor.id)
    assert len(checks) == 1
    assert checks[0].is_up
    assert checks[0].response_time_ms == 120
    assert checker.closed
    assert not scheduler.is_running
    assert scheduler.scheduled_ids() == []


@pytest.mark.asyncio
async def test_start_fails_when_monitors_cannot_be_loaded(storage):
    storage.list_active_monitors = MagicMock(side_effect=StorageError("database is locked"))
    scheduler = UptimeScheduler(storage, FakeChecker())

    with pytest.raises(StorageError):
        await scheduler.start()
    assert not scheduler.is_running
    assert scheduler.scheduled_ids() == []


@pytest.mark.asyncio
async def test_periodic_probes(storage):
    monitor = fast_monitor(storage)
    scheduler = UptimeScheduler(storage, FakeChecker())
    await scheduler.start()

    assert await scheduler.add_monitor(monitor)
    await wait_until(lambda: len(storage.query_checks(monitor.id)) >= 3)
    await scheduler.stop()


@pytest.mark.asyncio
async def test_add_monitor_twice_is_noop(storage):
    monitor = fast_monitor(storage)
    checker = FakeChecker()
    scheduler = UptimeScheduler(storage, checker)
    await scheduler.start()

    assert await scheduler.add_monitor(monitor)
    assert not await scheduler.add_monitor(monitor)
    assert scheduler.scheduled_ids() == [monitor.id]
    await scheduler.stop()


@pytest.mark.asyncio
async def test_add_monitor_when_stopped_is_noop(storage):
    monitor = fast_monitor(storage)
    scheduler = UptimeScheduler(storage, FakeChecker())

    assert not await scheduler.add_monitor(monitor)
    assert scheduler.scheduled_ids() == []


@pytest.mark.asyncio
async def test_deleted_monitor_produces_no_more_checks(storage):
    monitor = fast_monitor(storage)
    scheduler = UptimeScheduler(storage, FakeChecker())
    await scheduler.start()
    await scheduler.add_monitor(monitor)
    await wait_until(lambda: len(storage.query_checks(monitor.id)) >= 2)

    assert await scheduler.delete_monitor(monitor.id)
    removed_at = datetime.now(timezone.utc)
    count = len(storage.query_checks(monitor.id))

    await asyncio.sleep(FAST_INTERVAL * 5)
    checks = storage.query_checks(monitor.id)
    assert len(checks) == count
    assert all(check.checked_at <= removed_at for check in checks)
    assert monitor.id not in scheduler.scheduled_ids()

    assert not await scheduler.delete_monitor(monitor.id)
    await scheduler.stop()


@pytest.mark.asyncio
async def test_stop_lets_in_flight_probe_persist(storage):
    monitor = storage.create_monitor(MOCK_URL, check_interval=60)
    checker = FakeChecker(delay=0.2)
    scheduler = UptimeScheduler(storage, checker)
    await scheduler.start()
    await wait_until(lambda: checker.calls == 1)

    await scheduler.stop()

    assert len(storage.query_checks(monitor.id)) == 1
    assert checker.closed


@pytest.mark.asyncio
async def test_stop_cancels_probes_that_overrun_grace(storage):
    storage.create_monitor(MOCK_URL, check_interval=60)
    checker = FakeChecker(delay=5)
    scheduler = UptimeScheduler(storage, checker, shutdown_grace=0.1)
    await scheduler.start()
    await wait_until(lambda: checker.calls == 1)

    await asyncio.wait_for(scheduler.stop(), timeout=2)
    assert checker.closed


@pytest.mark.asyncio
async def test_failed_write_waits_for_next_tick(storage):
    monitor = fast_monitor(storage)
    real_insert = storage.insert_check
    attempts = []

    def flaky_insert(check):
        attempts.append(check)
        if len(attempts) == 1:
            raise StorageError("disk I/O error")
        return real_insert(check)

    storage.insert_check = flaky_insert
    scheduler = UptimeScheduler(storage, FakeChecker())
    await scheduler.start()
    await scheduler.add_monitor(monitor)

    await wait_until(lambda: len(storage.query_checks(monitor.id)) >= 1)
    await scheduler.stop()
    assert len(attempts) >= 2


@pytest.mark.asyncio
async def test_outage_opens_and_resolves_one_incident(storage):
    monitor = fast_monitor(storage)
    notifier = AsyncMock()
    scheduler = UptimeScheduler(storage, FakeChecker([True, False, False, True]), notifier=notifier)
    await scheduler.start()
    await scheduler.add_monitor(monitor)

    await wait_until(lambda: len(storage.query_checks(monitor.id)) >= 5)
    await scheduler.stop()

    incidents = storage.list_incidents(monitor.id)
    assert len(incidents) == 1
    assert incidents[0].reason == "request failed: connection refused"
    assert not incidents[0].is_open
    notifier.assert_awaited_once_with(monitor, "request failed: connection refused")


@pytest.mark.asyncio
async def test_notifier_failure_does_not_stop_probing(storage):
    monitor = fast_monitor(storage)
    notifier = AsyncMock(side_effect=RuntimeError("webhook unreachable"))
    scheduler = UptimeScheduler(storage, FakeChecker([False]), notifier=notifier)
    await scheduler.start()
    await scheduler.add_monitor(monitor)

    await wait_until(lambda: len(storage.query_checks(monitor.id)) >= 3)
    await scheduler.stop()
    notifier.assert_awaited_once()


@pytest.mark.asyncio
async def test_sweeper_runs_and_stops_with_scheduler(storage):
    scheduler = UptimeScheduler(storage, FakeChecker(), retention_days=0, sweep_interval=0.05)
    assert scheduler.retention_days == 30

    storage.delete_checks_before = MagicMock(wraps=storage.delete_checks_before)
    await scheduler.start()
    await wait_until(lambda: storage.delete_checks_before.call_count >= 1)
    await scheduler.stop()


@pytest.mark.asyncio
async def test_overlapping_starts_schedule_each_monitor_once(storage):
    storage.create_monitor(MOCK_URL, check_interval=60)
    scheduler = UptimeScheduler(storage, FakeChecker())

    await asyncio.gather(scheduler.start(), scheduler.start())
    monitor_tasks = [t for t in asyncio.all_tasks() if t.get_name().startswith("monitor-")]
    assert len(monitor_tasks) == 1

    await scheduler.stop()
    assert all(task.done() for task in monitor_tasks)


@pytest.mark.asyncio
async def test_stopped_scheduler_cannot_restart(storage):
    checker = FakeChecker()
    scheduler = UptimeScheduler(storage, checker)
    await scheduler.start()
    await scheduler.stop()

    with pytest.raises(RuntimeError):
        await scheduler.start()
    assert not scheduler.is_running


@pytest.mark.asyncio
async def test_unexpected_check_error_keeps_schedule_alive(storage):
    monitor = fast_monitor(storage)
    checker = FakeChecker()
    real_check = checker.check
    attempts = []

    async def broken_once(url):
        attempts.append(url)
        if len(attempts) == 1:
            raise ValueError("unexpected")
        return await real_check(url)

    checker.check = broken_once
    scheduler = UptimeScheduler(storage, checker)
    await scheduler.start()
    await scheduler.add_monitor(monitor)

    await wait_until(lambda: len(storage.query_checks(monitor.id)) >= 2)
    assert scheduler.scheduled_ids() == [monitor.id]
    await scheduler.stop()


@pytest.mark.asyncio
async def test_outage_open_before_restart_is_not_notified_again(storage):
    monitor = fast_monitor(storage)
    storage.create_incident(monitor.id, "request failed: connection refused")
    storage.list_open_incidents = MagicMock(side_effect=StorageError("database is locked"))
    notifier = AsyncMock()
    scheduler = UptimeScheduler(storage, FakeChecker([False, False]), notifier=notifier)
    await scheduler.start()
    await scheduler.add_monitor(monitor)

    await wait_until(lambda: len(storage.query_checks(monitor.id)) >= 2)
    await scheduler.stop()
    notifier.assert_not_awaited()
