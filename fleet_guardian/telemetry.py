import datetime as dt
import math
import time
from dataclasses import dataclass
from typing import Any, Optional


class InvalidPayload(ValueError):
    """Push payload rejected at the ingestion boundary."""


@dataclass(frozen=True)
class VehicleSample:
    vehicle_id: str
    speed: float = 0.0                   # km/h
    sample_time: Optional[float] = None  # epoch seconds, as reported by the GPS unit
    name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    ignition: Optional[bool] = None
    odometer: Optional[float] = None
    direction: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.name or self.vehicle_id

    @property
    def location(self) -> Optional[dict]:
        if self.latitude is None and self.longitude is None:
            return None
        return {"latitude": self.latitude, "longitude": self.longitude}


# ---------------------------------------------------
#                 COERCION HELPERS
# ---------------------------------------------------
def to_float(v: Any, default: Optional[float] = None) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return default
    try:
        f = float(v)
    except (TypeError, ValueError):
        return default
    return f if math.isfinite(f) else default


def to_int(v: Any) -> Optional[int]:
    f = to_float(v)
    return int(f) if f is not None else None


def to_bool(v: Any) -> Optional[bool]:
    if v is None:
        return None
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def to_epoch_seconds(v: Any) -> Optional[float]:
    """
    Accepts epoch seconds, epoch milliseconds, ISO strings or datetimes.
    Anything unparseable is treated as absent.
    """
    if isinstance(v, dt.datetime):
        v = v if v.tzinfo else v.replace(tzinfo=dt.timezone.utc)
        return v.timestamp()

    if isinstance(v, str) and not v.strip().lstrip("-").replace(".", "", 1).isdigit():
        try:
            d = dt.datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return to_epoch_seconds(d)

    f = to_float(v)
    if f is None:
        return None
    # milliseconds
    if f > 1e11:
        f = f / 1000.0
    return f


# ---------------------------------------------------
#                 PUSH PAYLOADS
# ---------------------------------------------------
def parse_push_payload(payload: dict, received_ms: Optional[int] = None) -> dict:
    """
    Validate one pushed telemetry record and return the stored form.
    Field names stay as delivered so the fleet snapshot serves them unchanged.
    """
    if not isinstance(payload, dict):
        raise InvalidPayload("payload must be an object")

    vehicle_number = payload.get("vehicle_number")
    if vehicle_number is None or not str(vehicle_number).strip():
        raise InvalidPayload("missing vehicle_number")

    if payload.get("speed") is None:
        raise InvalidPayload("missing speed")
    speed = to_float(payload.get("speed"))
    if speed is None or speed < 0:
        raise InvalidPayload("speed must be a non-negative number")

    return {
        "device_imei": payload.get("device_imei"),
        "vehicle_number": str(vehicle_number).strip(),
        "speed": speed,
        "gpstime": to_int(payload.get("gpstime")),
        "ignition_on": bool(to_bool(payload.get("ignition_on"))),
        "odometer_reading": to_float(payload.get("odometer_reading")),
        "latitude": to_float(payload.get("latitude")),
        "longitude": to_float(payload.get("longitude")),
        "direction": to_int(payload.get("direction")),
        "lastUpdate": received_ms if received_ms is not None else int(time.time() * 1000),
    }


def sample_from_record(rec: dict) -> Optional[VehicleSample]:
    """Fleet snapshot / stored push record -> sample."""
    vehicle_id = str(rec.get("vehicle_number") or "").strip()
    if not vehicle_id:
        return None
    return VehicleSample(
        vehicle_id=vehicle_id,
        speed=max(to_float(rec.get("speed"), 0.0), 0.0),
        sample_time=to_epoch_seconds(rec.get("gpstime")),
        latitude=to_float(rec.get("latitude")),
        longitude=to_float(rec.get("longitude")),
        ignition=to_bool(rec.get("ignition_on")),
        odometer=to_float(rec.get("odometer_reading")),
        direction=to_int(rec.get("direction")),
    )


def sample_from_fleet_api(rec: dict) -> Optional[VehicleSample]:
    """Remote fleet API vehicle entry -> sample."""
    vehicle_id = rec.get("id") or rec.get("vehicleId") or rec.get("name")
    if vehicle_id is None or not str(vehicle_id).strip():
        return None
    vehicle_id = str(vehicle_id).strip()
    location = rec.get("location")
    if not isinstance(location, dict):
        location = {}
    return VehicleSample(
        vehicle_id=vehicle_id,
        name=rec.get("name") or rec.get("vehicleName") or f"Vehicle {vehicle_id}",
        speed=max(to_float(rec.get("speed"), 0.0), 0.0),
        sample_time=to_epoch_seconds(rec.get("lastUpdate") or rec.get("timestamp")),
        latitude=to_float(location.get("latitude", location.get("lat"))),
        longitude=to_float(location.get("longitude", location.get("lng"))),
        ignition=to_bool(rec.get("ignition")),
        odometer=to_float(rec.get("odometer")),
    )
