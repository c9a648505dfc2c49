"""Sync trigger, status, config and history routes."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlmodel import Session, select

from tracker.db.engine import get_session
from tracker.models.config import LOCATION_PRECISIONS
from tracker.models.record import MetricClass, SyncKind
from tracker.models.sync import SyncLog
from tracker.runtime import TrackerRuntime

router = APIRouter()


def get_runtime(request: Request) -> TrackerRuntime:
    return request.app.state.runtime


class SyncStatusResponse(BaseModel):
    state: str
    at: Optional[datetime]
    message: Optional[str]
    description: str
    last_success_at: Optional[datetime]
    queue_depth: int
    next_location_sync: Optional[datetime]
    next_biometric_sync: Optional[datetime]
    background_state: str


class SyncConfigBody(BaseModel):
    location_interval_minutes: Optional[int] = None
    biometric_interval_minutes: Optional[int] = None
    sync_on_app_open: Optional[bool] = None
    notifications_enabled: Optional[bool] = None
    location_precision: Optional[str] = None


def _config_json(runtime: TrackerRuntime) -> Dict[str, Any]:
    config = runtime.config.current
    return {"endpoint": config.endpoint, **config.settings_wire()}


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(runtime: TrackerRuntime = Depends(get_runtime)):
    """Current sync status as seen by the presentation layer."""
    status = runtime.status.current
    fire_times = runtime.intervals.next_fire_times()
    return SyncStatusResponse(
        state=status.state.value,
        at=status.at,
        message=status.message,
        description=status.description,
        last_success_at=runtime.status.last_success_at,
        queue_depth=runtime.queue.count(),
        next_location_sync=fire_times.get(MetricClass.LOCATION),
        next_biometric_sync=fire_times.get(MetricClass.BIOMETRIC),
        background_state=runtime.background.state.value,
    )


@router.post("/trigger")
async def trigger_sync(
    background_tasks: BackgroundTasks,
    runtime: TrackerRuntime = Depends(get_runtime),
):
    """
    Manual sync (the dashboard's "Sync now").
    Returns immediately; the pass runs in the background.
    """
    background_tasks.add_task(runtime.engine.run_pass, SyncKind.MANUAL)
    return {"message": "Sync started"}


@router.post("/app-active")
async def app_active(
    background_tasks: BackgroundTasks,
    runtime: TrackerRuntime = Depends(get_runtime),
):
    """The app came to the foreground."""
    background_tasks.add_task(runtime.become_active)
    return {"message": "Foreground activation recorded"}


@router.post("/app-background")
async def app_background(
    background_tasks: BackgroundTasks,
    runtime: TrackerRuntime = Depends(get_runtime),
):
    """The app is about to lose foreground execution time."""
    background_tasks.add_task(runtime.enter_background)
    return {"message": "Background transition recorded"}


@router.get("/config")
def get_config(runtime: TrackerRuntime = Depends(get_runtime)):
    return _config_json(runtime)


@router.put("/config")
async def update_config(
    body: SyncConfigBody,
    runtime: TrackerRuntime = Depends(get_runtime),
):
    """Apply a local settings edit; it is pushed to the control plane in the background."""
    if body.location_precision is not None and body.location_precision not in LOCATION_PRECISIONS:
        raise HTTPException(status_code=422, detail=f"Unknown location precision {body.location_precision!r}")
    for name in ("location_interval_minutes", "biometric_interval_minutes"):
        value = getattr(body, name)
        if value is not None and value <= 0:
            raise HTTPException(status_code=422, detail=f"{name} must be positive")

    changes: Dict[str, Any] = {}
    if body.location_interval_minutes is not None:
        changes["location_interval"] = timedelta(minutes=body.location_interval_minutes)
    if body.biometric_interval_minutes is not None:
        changes["biometric_interval"] = timedelta(minutes=body.biometric_interval_minutes)
    for name in ("sync_on_app_open", "notifications_enabled", "location_precision"):
        value = getattr(body, name)
        if value is not None:
            changes[name] = value

    runtime.update_config(runtime.config.current.with_changes(**changes))
    return _config_json(runtime)


@router.get("/queue")
def offline_queue(runtime: TrackerRuntime = Depends(get_runtime)):
    """Records waiting in the offline queue, oldest first."""
    records = runtime.queue.records()
    return {"count": len(records), "records": [r.to_wire() for r in records]}


@router.get("/history", response_model=List[SyncLog])
def sync_history(
    limit: int = Query(default=20, ge=1, le=500),
    session: Session = Depends(get_session),
):
    """Most recent sync passes, newest first."""
    return session.exec(
        select(SyncLog).order_by(SyncLog.started_at.desc()).limit(limit)
    ).all()
