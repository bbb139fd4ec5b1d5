import asyncio
from datetime import datetime
from typing import Dict, Optional

import structlog

from services.storage_uptime import StorageError, UptimeStorage

logger = structlog.get_logger(__name__)

OPENED = "opened"
RESOLVED = "resolved"


class IncidentTracker:
    """Turns each monitor's stream of up/down observations into incidents.

    Holds one latch per monitor (monitor_id -> id of its open incident). A
    latch only moves after the storage call that backs it succeeded, so a
    failed create or resolve is attempted again on the next observation.
    """

    def __init__(self, storage: UptimeStorage):
        self.storage = storage
        self._open: Dict[int, int] = {}
        self._lock = asyncio.Lock()

    async def load_open(self) -> int:
        """Seed latches from incidents left open by a previous run."""
        incidents = await asyncio.to_thread(self.storage.list_open_incidents)
        async with self._lock:
            for incident in incidents:
                self._open[incident.monitor_id] = incident.id
        if incidents:
            logger.info("Restored open incidents", count=len(incidents))
        return len(incidents)

    async def track(
        self,
        monitor_id: int,
        is_up: bool,
        reason: Optional[str] = None,
        observed_at: Optional[datetime] = None,
    ) -> Optional[str]:
        """Apply one observation. Returns "opened", "resolved" or None."""
        async with self._lock:
            incident_id = self._open.get(monitor_id)

            if not is_up and incident_id is None:
                try:
                    new_id, created = await asyncio.to_thread(
                        self.storage.create_incident, monitor_id, reason or None, observed_at
                    )
                except StorageError as e:
                    logger.error("Failed to create incident", monitor_id=monitor_id, error=str(e))
                    return None
                self._open[monitor_id] = new_id
                if not created:
                    # Already open in storage, e.g. when load_open failed at startup.
                    logger.info("Incident already open, latch restored", monitor_id=monitor_id, incident_id=new_id)
                    return None
                logger.warning("Incident opened", monitor_id=monitor_id, incident_id=new_id, reason=reason)
                return OPENED

            if is_up and incident_id is not None:
                try:
                    await asyncio.to_thread(self.storage.resolve_incident, incident_id, observed_at)
                except StorageError as e:
                    logger.error(
                        "Failed to resolve incident",
                        monitor_id=monitor_id,
                        incident_id=incident_id,
                        error=str(e),
                    )
                    return None
                del self._open[monitor_id]
                logger.info("Incident resolved", monitor_id=monitor_id, incident_id=incident_id)
                return RESOLVED

            return None

    def is_open(self, monitor_id: int) -> bool:
        return monitor_id in self._open

    async def forget(self, monitor_id: int) -> None:
        async with self._lock:
            self._open.pop(monitor_id, None)
