"""
Operator-facing routes for the monitor: start/stop, settings, and the data
the dashboard reads (local alerts, last-known vehicles, distance history).
"""
import datetime as dt
from typing import Optional

from fastapi import APIRouter, Body, HTTPException, Request
from fastapi.responses import PlainTextResponse

from fleet_guardian.config import ConfigError, MonitorConfig
from fleet_guardian.logging_config import get_logger
from fleet_guardian.reports import distance_csv
from fleet_guardian.store import SNAPSHOT_KEY
from fleet_guardian.webhook import parse_limit

router = APIRouter(prefix="/monitor", tags=["monitor"])
logger = get_logger("control", "control.log")


def _parse_config(payload: dict) -> MonitorConfig:
    try:
        return MonitorConfig.from_dict(payload)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))


def _parse_day(day: Optional[str]) -> Optional[dt.date]:
    if day is None:
        return None
    try:
        return dt.date.fromisoformat(day)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date '{day}'")


def _status(request: Request) -> dict:
    scheduler = request.app.state.scheduler
    current = scheduler.configs.current()
    return {
        "monitoring": scheduler.monitoring,
        "config": current.to_dict() if current else None,
    }


# ---------------------------------------------------
#                START / STOP / STATUS
# ---------------------------------------------------
@router.get("/status")
async def monitor_status(request: Request):
    return _status(request)


@router.post("/start")
async def monitor_start(request: Request, payload: Optional[dict] = Body(None)):
    config = _parse_config(payload) if payload else None
    if not request.app.state.scheduler.start(config):
        raise HTTPException(status_code=409, detail="No configuration, monitoring not started")
    return {"success": True, **_status(request)}


@router.post("/stop")
async def monitor_stop(request: Request):
    request.app.state.scheduler.stop()
    return {"success": True, **_status(request)}


# ---------------------------------------------------
#                SETTINGS
# ---------------------------------------------------
@router.get("/config")
async def get_config(request: Request):
    current = request.app.state.scheduler.configs.current()
    if current is None:
        raise HTTPException(status_code=404, detail="No configuration")
    return current.to_dict()


@router.put("/config")
async def put_config(request: Request, payload: dict):
    config = _parse_config(payload)
    request.app.state.scheduler.update_config(config)
    return config.to_dict()


# ---------------------------------------------------
#                DASHBOARD DATA
# ---------------------------------------------------
@router.get("/alerts")
async def local_alerts(request: Request, limit: Optional[str] = None):
    log = request.app.state.scheduler.sink.log
    return {
        "alerts": await log.recent(parse_limit(limit)),
        "total": await log.count(),
    }


@router.get("/vehicles")
async def last_known_vehicles(request: Request):
    snapshot = await request.app.state.store.get_all(SNAPSHOT_KEY)
    return {"vehicles": list(snapshot.values())}


@router.get("/distance")
async def distance_history(request: Request, day: Optional[str] = None):
    history = request.app.state.history
    wanted = _parse_day(day)
    if wanted is None:
        return {"history": await history.entries()}
    entry = await history.day(wanted)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No distance data for {wanted.isoformat()}")
    return entry


@router.get("/distance.csv")
async def distance_report(request: Request, day: str):
    wanted = _parse_day(day)
    entry = await request.app.state.history.day(wanted)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No distance data for {wanted.isoformat()}")
    return PlainTextResponse(
        distance_csv(entry),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="distance-report-{wanted.isoformat()}.csv"'},
    )
