import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from jobs.scheduler import UptimeScheduler
from models.check import Check
from models.incident import Incident
from models.monitor import Monitor, MonitorCreate
from models.stats import MonitorStats
from services import stats_aggregator
from models.status_incident import StatusIncident
from services.status_incidents import IncidentCatalog
from services.storage_uptime import ConflictError, StorageError, UptimeStorage
from settings import Settings

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Uptime Monitoring"])

DEFAULT_WINDOW = 86400  # seconds
MAX_WINDOW = 90 * 86400


def get_storage(request: Request) -> UptimeStorage:
    return request.app.state.storage


def get_scheduler(request: Request) -> UptimeScheduler:
    return request.app.state.scheduler


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_incident_catalog(request: Request) -> Optional[IncidentCatalog]:
    return getattr(request.app.state, "incidents", None)


def _monitor_stats(monitor: Monitor, checks: List[Check], seconds: int, now: datetime, settings: Settings) -> MonitorStats:
    summary = stats_aggregator.compute(
        checks,
        seconds,
        settings.chart_type,
        now=now,
        degraded_threshold_ms=settings.degraded_threshold_ms,
    )
    return MonitorStats(
        id=monitor.id,
        name=monitor.name,
        url=str(monitor.url),
        check_interval=monitor.check_interval,
        **summary.model_dump(),
    )


# ⚙️ Dashboard configuration
@router.get("/config")
def get_config(
    settings: Settings = Depends(get_settings),
    catalog: Optional[IncidentCatalog] = Depends(get_incident_catalog),
) -> Dict[str, Any]:
    return {
        "title": settings.title,
        "description": settings.description,
        "timezone": settings.timezone,
        "chart_type": settings.chart_type.value,
        "incidents_enabled": catalog is not None,
    }


# 📊 Stats for all monitors
@router.get("/monitors", response_model=List[MonitorStats])
def get_monitors(
    seconds: int = Query(DEFAULT_WINDOW, ge=60, le=MAX_WINDOW),
    storage: UptimeStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """Uptime, latency percentiles and chart data for every monitor over the last `seconds`."""
    now = datetime.now(timezone.utc)
    try:
        monitors = storage.list_monitors()
        checks = storage.query_checks(since=now - timedelta(seconds=seconds))
    except StorageError as e:
        logger.error("Failed to get monitor stats", error=str(e))
        raise HTTPException(status_code=500, detail="failed to retrieve monitors")

    checks_by_monitor: Dict[int, List[Check]] = defaultdict(list)
    for check in checks:
        checks_by_monitor[check.monitor_id].append(check)

    return [
        _monitor_stats(monitor, checks_by_monitor[monitor.id], seconds, now, settings)
        for monitor in monitors
    ]


# 🔍 Stats for one monitor
@router.get("/monitors/{monitor_id}", response_model=MonitorStats)
def get_monitor(
    monitor_id: int,
    seconds: int = Query(DEFAULT_WINDOW, ge=60, le=MAX_WINDOW),
    storage: UptimeStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    now = datetime.now(timezone.utc)
    try:
        monitor = storage.get_monitor(monitor_id)
        if not monitor:
            raise HTTPException(status_code=404, detail="Monitor not found")
        checks = storage.query_checks(monitor_id, since=now - timedelta(seconds=seconds))
    except StorageError as e:
        logger.error("Failed to get monitor stats", monitor_id=monitor_id, error=str(e))
        raise HTTPException(status_code=500, detail="failed to retrieve monitor")
    return _monitor_stats(monitor, checks, seconds, now, settings)


# 🚀 Add a monitor
@router.post("/monitors", response_model=Monitor, status_code=201)
async def add_monitor(
    payload: MonitorCreate,
    storage: UptimeStorage = Depends(get_storage),
    scheduler: UptimeScheduler = Depends(get_scheduler),
):
    """Create a monitor and start probing it right away."""
    try:
        existing = await asyncio.to_thread(storage.list_monitors)
        if any(str(m.url) == str(payload.url) for m in existing):
            raise HTTPException(status_code=409, detail="Monitor with this url already exists")
        monitor = await asyncio.to_thread(
            storage.create_monitor,
            str(payload.url),
            payload.name,
            payload.check_interval,
        )
    except ConflictError:
        raise HTTPException(status_code=409, detail="Monitor with this url already exists")
    except StorageError as e:
        logger.error("Failed to create monitor", url=str(payload.url), error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    await scheduler.add_monitor(monitor)
    return monitor


# ❌ Delete a monitor
@router.delete("/monitors/{monitor_id}")
async def delete_monitor(
    monitor_id: int,
    storage: UptimeStorage = Depends(get_storage),
    scheduler: UptimeScheduler = Depends(get_scheduler),
):
    """Stop probing a monitor, then delete it with its history."""
    # Unschedule first so no probe writes a check for a deleted monitor.
    await scheduler.delete_monitor(monitor_id)
    try:
        deleted = await asyncio.to_thread(storage.delete_monitor, monitor_id)
    except StorageError as e:
        logger.error("Failed to delete monitor", monitor_id=monitor_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail="Monitor not found")
    return {"success": True}


# 📜 Outage history
@router.get("/monitors/{monitor_id}/outages", response_model=List[Incident])
def get_monitor_outages(
    monitor_id: int,
    limit: int = Query(50, ge=1, le=500),
    storage: UptimeStorage = Depends(get_storage),
):
    try:
        if not storage.get_monitor(monitor_id):
            raise HTTPException(status_code=404, detail="Monitor not found")
        return storage.list_incidents(monitor_id, limit=limit)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/outages", response_model=List[Incident])
def get_outages(
    open_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    storage: UptimeStorage = Depends(get_storage),
):
    try:
        if open_only:
            return storage.list_open_incidents()
        return storage.list_incidents(limit=limit)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))


# 📢 Status page incidents
@router.get("/incidents", response_model=List[StatusIncident])
def get_status_incidents(catalog: Optional[IncidentCatalog] = Depends(get_incident_catalog)):
    if catalog is None:
        raise HTTPException(status_code=404, detail="Incidents not configured")
    return catalog.get_incidents()


@router.get("/incidents/{incident_id}", response_model=StatusIncident)
def get_status_incident(incident_id: str, catalog: Optional[IncidentCatalog] = Depends(get_incident_catalog)):
    if catalog is None:
        raise HTTPException(status_code=404, detail="Incidents not configured")
    incident = catalog.get_incident(incident_id)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return incident
