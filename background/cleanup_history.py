#!/usr/bin/env python3
"""
Retention sweep for check history.

The scheduler runs RetentionSweeper hourly; the module can also be run on its
own as a one-shot job: python -m background.cleanup_history
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from services.storage_uptime import StorageError, UptimeStorage

logger = structlog.get_logger(__name__)

DEFAULT_RETENTION_DAYS = 30
SWEEP_INTERVAL = 3600  # seconds

def cleanup_checks(storage: UptimeStorage, days_to_keep: int, now: Optional[datetime] = None) -> int:
    """Delete checks older than days_to_keep. Returns the number deleted."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days_to_keep)
    deleted = storage.delete_checks_before(cutoff)
    logger.info("Cleaned up old checks", deleted=deleted, cutoff=cutoff.isoformat())
    return deleted

class RetentionSweeper:
    def __init__(self, storage: UptimeStorage, retention_days: int = DEFAULT_RETENTION_DAYS, interval: float = SWEEP_INTERVAL):
        self.storage = storage
        self.retention_days = retention_days
        self.interval = interval

    def sweep(self, now: Optional[datetime] = None) -> int:
        """One cleanup cycle. Storage errors are logged, and 0 is returned."""
        try:
            return cleanup_checks(self.storage, self.retention_days, now)
        except StorageError as e:
            logger.error("Failed to cleanup old checks", error=str(e))
            return 0

    async def run(self, stop_event: asyncio.Event) -> None:
        """Sweep every interval until stop_event is set."""
        while True:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass
            await asyncio.to_thread(self.sweep)

async def main() -> int:
    from main import configure_logging
    from settings import load_settings

    settings = load_settings()
    configure_logging(settings.log_level)
    logger.info("Starting history cleanup job", retention_days=settings.retention_days)

    storage = UptimeStorage(settings.db_path)
    try:
        return cleanup_checks(storage, settings.retention_days)
    except StorageError as e:
        logger.error("Error in cleanup job", error=str(e))
        return -1
    finally:
        storage.close()

if __name__ == "__main__":
    result = asyncio.run(main())

    # Exit with appropriate code
    sys.exit(0 if result >= 0 else 1)
