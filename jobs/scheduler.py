import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from background.cleanup_history import DEFAULT_RETENTION_DAYS, SWEEP_INTERVAL, RetentionSweeper
from models.check import Check
from models.monitor import Monitor
from services.incident_tracker import OPENED, IncidentTracker
from services.storage_uptime import StorageError, UptimeStorage
from services.uptime_checker import ProbeResult, UptimeChecker

logger = structlog.get_logger(__name__)

DEFAULT_SHUTDOWN_GRACE = 10  # seconds

# Called with (monitor, reason) when a monitor's incident opens.
Notifier = Callable[[Monitor, str], Awaitable[None]]


class ScheduledEntry:
    """A monitor paired with its live periodic task."""

    def __init__(self, monitor: Monitor):
        self.monitor = monitor
        self.stopped = asyncio.Event()
        self.task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        """Stop the timer. A probe already in flight still finishes and persists."""
        self.stopped.set()


class UptimeScheduler:
    """Runs one periodic probe task per active monitor, plus the retention sweep.

    The live entry map is only mutated under ``_entries_lock``; task bodies
    never hold it while probing.
    """

    def __init__(
        self,
        storage: UptimeStorage,
        checker: UptimeChecker,
        tracker: Optional[IncidentTracker] = None,
        notifier: Optional[Notifier] = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        sweep_interval: float = SWEEP_INTERVAL,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
    ):
        if retention_days < 1:
            retention_days = DEFAULT_RETENTION_DAYS
        self.storage = storage
        self.checker = checker
        self.tracker = tracker or IncidentTracker(storage)
        self.notifier = notifier
        self.retention_days = retention_days
        self.shutdown_grace = shutdown_grace
        self.sweeper = RetentionSweeper(storage, retention_days, sweep_interval)

        self._entries: Dict[int, ScheduledEntry] = {}
        self._entries_lock = asyncio.Lock()
        self._sweeper_stopped = asyncio.Event()
        self._sweeper_task: Optional[asyncio.Task] = None
        self._running = False
        self._start_lock = asyncio.Lock()
        self._stopped_once = False

    @property
    def is_running(self) -> bool:
        return self._running

    def scheduled_ids(self) -> List[int]:
        return sorted(self._entries)

    async def start(self) -> None:
        """Schedule every active monitor. Raises if the monitors can't be loaded.

        A scheduler runs once: stop() closes its checker, so starting it again
        raises RuntimeError. Build a new scheduler instead.
        """
        async with self._start_lock:
            if self._running:
                logger.warning("Scheduler already running")
                return
            if self._stopped_once:
                raise RuntimeError("scheduler was stopped and cannot be restarted")

            monitors = await asyncio.to_thread(self.storage.list_active_monitors)
            try:
                await self.tracker.load_open()
            except StorageError as e:
                logger.error("Failed to restore open incidents", error=str(e))

            async with self._entries_lock:
                self._running = True
                for monitor in monitors:
                    self._schedule(monitor)

                self._sweeper_stopped = asyncio.Event()
                self._sweeper_task = asyncio.create_task(
                    self.sweeper.run(self._sweeper_stopped), name="retention-sweeper"
                )
        logger.info("Uptime scheduler started", monitors=len(monitors), retention_days=self.retention_days)

    async def add_monitor(self, monitor: Monitor) -> bool:
        """Schedule a monitor at runtime. Returns False if it was not scheduled."""
        async with self._entries_lock:
            if not self._running:
                logger.warning("Scheduler not running, monitor not scheduled", monitor_id=monitor.id)
                return False
            if monitor.id in self._entries:
                logger.warning("Monitor already scheduled", monitor_id=monitor.id)
                return False
            self._schedule(monitor)
        logger.info("Scheduled monitor", monitor_id=monitor.id, interval=monitor.check_interval)
        return True

    async def delete_monitor(self, monitor_id: int) -> bool:
        """Unschedule a monitor. No further probes start once this returns."""
        async with self._entries_lock:
            entry = self._entries.get(monitor_id)
            if entry is None:
                return False
            entry.cancel()
            del self._entries[monitor_id]

        if entry.task is not None:
            await self._join([entry.task])
        await self.tracker.forget(monitor_id)
        logger.info("Unscheduled monitor", monitor_id=monitor_id)
        return True

    async def stop(self) -> None:
        """Stop all timers, wait for in-flight probes, then release the checker."""
        async with self._entries_lock:
            if not self._running:
                return
            self._running = False
            self._stopped_once = True
            entries = list(self._entries.values())
            for entry in entries:
                entry.cancel()
            self._entries.clear()
            self._sweeper_stopped.set()

        tasks = [entry.task for entry in entries if entry.task is not None]
        if self._sweeper_task is not None:
            tasks.append(self._sweeper_task)
            self._sweeper_task = None
        await self._join(tasks)

        await self.checker.aclose()
        logger.info("Uptime scheduler stopped")

    def _schedule(self, monitor: Monitor) -> None:
        if monitor.id in self._entries:
            logger.warning("Monitor already scheduled", monitor_id=monitor.id)
            return
        entry = ScheduledEntry(monitor)
        entry.task = asyncio.create_task(self._run_monitor(entry), name=f"monitor-{monitor.id}")
        self._entries[monitor.id] = entry

    async def _join(self, tasks: List[asyncio.Task]) -> None:
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace)
        if pending:
            logger.warning("Tasks still running after shutdown grace, cancelling", pending=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run_monitor(self, entry: ScheduledEntry) -> None:
        loop = asyncio.get_running_loop()
        interval = entry.monitor.check_interval
        next_run = loop.time()

        while not entry.stopped.is_set():
            try:
                await self.perform_check(entry.monitor)
            except Exception:
                logger.exception("Check failed unexpectedly", monitor_id=entry.monitor.id)

            # Fixed-rate ticks; a slow probe skips missed ticks instead of stacking them.
            next_run += interval
            now = loop.time()
            while next_run <= now:
                next_run += interval
            try:
                await asyncio.wait_for(entry.stopped.wait(), timeout=next_run - now)
            except asyncio.TimeoutError:
                pass

    async def perform_check(self, monitor: Monitor) -> Optional[Check]:
        """Probe, persist and feed the incident tracker for one tick."""
        result: ProbeResult = await self.checker.check(str(monitor.url))
        check = Check(
            monitor_id=monitor.id,
            checked_at=result.checked_at,
            is_up=result.is_up,
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
            error=result.error,
        )

        try:
            check.id = await asyncio.to_thread(self.storage.insert_check, check)
        except StorageError as e:
            logger.error("Failed to store check", monitor_id=monitor.id, error=str(e))
            return None

        logger.debug(
            "Checked monitor",
            monitor_id=monitor.id,
            status=result.status,
            response_time_ms=result.response_time_ms,
        )

        transition = await self.tracker.track(monitor.id, result.is_up, result.error, result.checked_at)
        if transition == OPENED and self.notifier is not None:
            try:
                await self.notifier(monitor, result.error or "Unknown")
            except Exception as e:
                logger.error("Failed to send monitor down notification", monitor_id=monitor.id, error=str(e))
        return check
