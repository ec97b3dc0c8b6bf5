import asyncio
import time
from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from fleet_guardian.alerts import AlertLog, AlertSink, LogNotifier
from fleet_guardian.config import ConfigStore
from fleet_guardian.logging_config import get_logger
from fleet_guardian.monitor import AlertEngine
from fleet_guardian.store import SERVER_ALERTS_KEY, VEHICLES_KEY
from fleet_guardian.telemetry import InvalidPayload, parse_push_payload, sample_from_record
from fleet_guardian.tracker import ReferenceClock, StagnationTracker
from fleet_guardian.variables import DEFAULT_ALERT_LIMIT, SERVER_ALERT_CAP

router = APIRouter()
logger = get_logger("webhook", "webhook.log")


class IngestService:
    """
    Server side of the push model: keeps the latest record per vehicle and
    runs the alert rules on each delivery (reference clock = GPS time).
    """

    def __init__(self, store, configs: ConfigStore, notifier=None):
        self.store = store
        self.configs = configs
        self.engine = AlertEngine(StagnationTracker(ReferenceClock.SAMPLE_TIME))
        self.log = AlertLog(store, SERVER_ALERTS_KEY, SERVER_ALERT_CAP)
        self.sink = AlertSink(self.log, notifier or LogNotifier())
        self.started = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started

    async def ingest(self, payload: dict, now: Optional[float] = None) -> dict:
        now = time.time() if now is None else now
        record = parse_push_payload(payload, received_ms=int(now * 1000))
        vehicle = record["vehicle_number"]
        await self.store.put(VEHICLES_KEY, vehicle, record)

        config = self.configs.current()
        if config is not None:
            sample = sample_from_record(record)
            async with self._lock:
                alerts = self.engine.analyze([sample], config, now=now)
                await self.sink.commit(alerts)
        else:
            logger.info(f"[ingest] No monitor config, stored {vehicle} without analysis")

        return {
            "success": True,
            "message": "Data received successfully",
            "vehicle_count": await self.store.count(VEHICLES_KEY),
            "alert_count": await self.log.count(),
        }


def get_ingest(request: Request) -> IngestService:
    return request.app.state.ingest


def parse_limit(raw: Optional[str], default: int = DEFAULT_ALERT_LIMIT) -> int:
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return default
    return limit if limit > 0 else default


# ---------------------------------------------------
#                TELEMETRY WEBHOOK
# ---------------------------------------------------
@router.post("/webhook")
async def telemetry_hook(payload: dict, request: Request):
    service = get_ingest(request)
    try:
        result = await service.ingest(payload)
    except InvalidPayload as e:
        logger.info(f"[ingest] Rejected payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid data format")
    except Exception:
        logger.exception("[ingest] Error processing webhook")
        raise HTTPException(status_code=500, detail="Internal server error")

    logger.info(f"[ingest] Payload stored for vehicle {payload.get('vehicle_number')}")
    return result


# ---------------------------------------------------
#                FLEET SNAPSHOT / ALERTS
# ---------------------------------------------------
@router.get("/api/vehicles")
async def fleet_snapshot(request: Request):
    vehicles = list((await get_ingest(request).store.get_all(VEHICLES_KEY)).values())
    return {
        "vehicles": vehicles,
        "lastUpdate": max((v.get("lastUpdate") or 0 for v in vehicles), default=0),
    }


@router.get("/api/alerts")
async def server_alerts(request: Request, limit: Optional[str] = None):
    log = get_ingest(request).log
    return {
        "alerts": await log.recent(parse_limit(limit)),
        "total": await log.count(),
    }


@router.get("/health")
async def health(request: Request):
    service = get_ingest(request)
    return {
        "status": "OK",
        "vehicles": await service.store.count(VEHICLES_KEY),
        "alerts": await service.log.count(),
        "uptime": service.uptime,
    }
