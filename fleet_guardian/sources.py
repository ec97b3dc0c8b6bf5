"""
Where a monitoring cycle gets its samples from.

- StoreSource:    records pushed to the ingestion endpoint (same process or shared Redis)
- SnapshotSource: the ingestion server's fleet snapshot over HTTP
- FleetApiSource: the remote fleet API, polled with a session token
"""
import datetime as dt
from typing import List, Optional, Protocol

import httpx
import redis

from fleet_guardian.config import MonitorConfig
from fleet_guardian.logging_config import get_logger
from fleet_guardian.monitor import cap_batch
from fleet_guardian.store import VEHICLES_KEY
from fleet_guardian.telemetry import VehicleSample, sample_from_fleet_api, sample_from_record
from fleet_guardian.tracker import ReferenceClock
from fleet_guardian.variables import HTTP_TIMEOUT_S

logger = get_logger("sources", "sources.log")

INGEST_PATH = "/webhook"
SNAPSHOT_PATH = "/api/vehicles"


class TransportError(Exception):
    """Samples could not be fetched; the cycle is skipped."""


class SampleSource(Protocol):
    reference: ReferenceClock

    async def fetch(self, config: MonitorConfig) -> List[VehicleSample]: ...


def snapshot_url(webhook_url: str) -> str:
    url = webhook_url.rstrip("/")
    if url.endswith(INGEST_PATH):
        url = url[: -len(INGEST_PATH)]
    return url + SNAPSHOT_PATH


def iso_utc(ts: dt.datetime) -> str:
    return ts.astimezone(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------- Push deliveries ----------
class StoreSource:
    reference = ReferenceClock.SAMPLE_TIME

    def __init__(self, store):
        self.store = store

    async def fetch(self, config: MonitorConfig) -> List[VehicleSample]:
        try:
            records = await self.store.get_all(VEHICLES_KEY)
        except redis.exceptions.RedisError as e:
            raise TransportError(f"store read failed: {e}") from e
        samples = [sample_from_record(r) for r in records.values()]
        return [s for s in samples if s is not None]


# ---------- HTTP ----------
class _HttpSource:
    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = HTTP_TIMEOUT_S):
        self._client = client
        self.timeout = timeout

    async def _get_json(self, url: str, headers: dict, params: Optional[dict] = None):
        try:
            if self._client is not None:
                resp = await self._client.get(url, headers=headers, params=params)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(url, headers=headers, params=params)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as e:
            raise TransportError(f"GET {url} failed: {e}") from e
        except ValueError as e:
            raise TransportError(f"GET {url} returned invalid JSON") from e


class SnapshotSource(_HttpSource):
    reference = ReferenceClock.SAMPLE_TIME

    async def fetch(self, config: MonitorConfig) -> List[VehicleSample]:
        url = snapshot_url(config.webhook_url)
        headers = {"Content-Type": "application/json"}
        if config.auth_header:
            headers["Authorization"] = config.auth_header

        logger.info(f"[snapshot] Checking webhook data from {url}")
        data = await self._get_json(url, headers)
        vehicles = data.get("vehicles") if isinstance(data, dict) else None
        samples = [sample_from_record(v) for v in vehicles or [] if isinstance(v, dict)]
        samples = [s for s in samples if s is not None]
        logger.info(f"[snapshot] Received data for {len(samples)} vehicles")
        return samples


class FleetApiSource(_HttpSource):
    reference = ReferenceClock.WALL_CLOCK

    @staticmethod
    def _headers(config: MonitorConfig) -> dict:
        return {
            "Authorization": f"Bearer {config.session_token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _base(config: MonitorConfig) -> str:
        if not config.base_url:
            raise TransportError("fleet API base url is not configured")
        return config.base_url.rstrip("/")

    async def fetch(self, config: MonitorConfig) -> List[VehicleSample]:
        data = await self._get_json(f"{self._base(config)}/api/v1/vehicles", self._headers(config))
        if isinstance(data, dict):
            data = data.get("vehicles") or []
        if not isinstance(data, list):
            data = []
        samples = [sample_from_fleet_api(v) for v in cap_batch(data) if isinstance(v, dict)]
        return [s for s in samples if s is not None]

    async def fetch_trips(self, vehicle_id: str, start: dt.datetime, end: dt.datetime,
                          config: MonitorConfig) -> list:
        data = await self._get_json(
            f"{self._base(config)}/api/v1/vehicles/{vehicle_id}/trips",
            self._headers(config),
            params={"start": iso_utc(start), "end": iso_utc(end)},
        )
        if isinstance(data, dict):
            data = data.get("trips") or []
        return data if isinstance(data, list) else []


def build_source(kind: str, store, client: Optional[httpx.AsyncClient] = None):
    if kind == "push":
        return StoreSource(store)
    if kind == "snapshot":
        return SnapshotSource(client)
    if kind == "fleet_api":
        return FleetApiSource(client)
    raise ValueError(f"unknown MONITOR_SOURCE {kind!r}")
