import os
import threading
from dataclasses import dataclass, asdict
from typing import Optional, Tuple
from urllib.parse import urlparse

from dotenv import load_dotenv

from fleet_guardian.variables import MAX_MONITORED_VEHICLES

load_dotenv()

REDIS_URL        = os.getenv("REDIS_URL", "")
DATABASE_URL     = os.getenv("DATABASE_URL", "sqlite:///fleet_guardian.db")
HOST             = os.getenv("HOST", "0.0.0.0")
PORT             = int(os.getenv("PORT", 8000))

WEBHOOK_URL      = os.getenv("WEBHOOK_URL", "")
AUTH_HEADER      = os.getenv("AUTH_HEADER") or None
FLEET_API_URL    = os.getenv("FLEET_API_URL") or None
SESSION_TOKEN    = os.getenv("SESSION_TOKEN") or None
TOKEN_EXPIRY     = int(os.getenv("TOKEN_EXPIRY")) if os.getenv("TOKEN_EXPIRY", "").isdigit() else None
SPEED_LIMIT      = float(os.getenv("SPEED_LIMIT_KMH", 80))
STAGNATION_MIN   = float(os.getenv("STAGNATION_MIN", 30))
MONITORED_VEHICLES = [
    v.strip() for v in os.getenv("MONITORED_VEHICLES", "").split(",") if v.strip()
]
MONITOR_SOURCE   = os.getenv("MONITOR_SOURCE", "push")
MONITOR_AUTOSTART = os.getenv("MONITOR_AUTOSTART", "false").lower() in ("1", "true", "yes")
REPORT_TZ        = os.getenv("REPORT_TZ", "UTC")

PRIMARY_EMAIL  = os.getenv("PRIMARY_EMAIL")
SMTP_HOST      = os.getenv("SMTP_HOST")
SMTP_PORT      = int(os.getenv("SMTP_PORT", 465))
SMTP_USER      = os.getenv("SMTP_USER")
SMTP_PASSWORD  = os.getenv("SMTP_PASSWORD")


class ConfigError(ValueError):
    """Operator-entered settings failed validation."""


@dataclass(frozen=True)
class MonitorConfig:
    webhook_url: str
    vehicle_ids: Tuple[str, ...]
    speed_limit: float = 80.0
    stagnation_minutes: float = 30.0
    auth_header: Optional[str] = None
    base_url: Optional[str] = None
    session_token: Optional[str] = None
    token_expiry: Optional[int] = None  # epoch ms

    @property
    def stagnation_seconds(self) -> float:
        return self.stagnation_minutes * 60

    def token_expired(self, now_ms: float) -> bool:
        return self.token_expiry is not None and now_ms > self.token_expiry

    def to_dict(self) -> dict:
        d = asdict(self)
        d["vehicle_ids"] = list(self.vehicle_ids)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "MonitorConfig":
        """
        Validate operator settings and build a snapshot.
        Accepts the vehicle list either as a list or a comma separated string.
        """
        webhook_url = str(data.get("webhook_url") or "").strip()
        if not webhook_url:
            raise ConfigError("Webhook URL and vehicle numbers are required")
        parsed = urlparse(webhook_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError("Please enter a valid webhook URL")

        raw_ids = data.get("vehicle_ids") or []
        if isinstance(raw_ids, str):
            raw_ids = raw_ids.split(",")
        vehicle_ids = []
        for v in raw_ids:
            v = str(v).strip()
            if v and v not in vehicle_ids:
                vehicle_ids.append(v)
        if not vehicle_ids or len(vehicle_ids) > MAX_MONITORED_VEHICLES:
            raise ConfigError(
                f"Please enter 1-{MAX_MONITORED_VEHICLES} vehicle numbers separated by commas"
            )

        speed_limit = _positive(data.get("speed_limit", 80), "speed_limit")
        stagnation = _positive(data.get("stagnation_minutes", 30), "stagnation_minutes")

        expiry = data.get("token_expiry")
        if expiry is not None:
            try:
                expiry = int(expiry)
            except (TypeError, ValueError):
                raise ConfigError("token_expiry must be epoch milliseconds")

        return cls(
            webhook_url=webhook_url,
            vehicle_ids=tuple(vehicle_ids),
            speed_limit=speed_limit,
            stagnation_minutes=stagnation,
            auth_header=data.get("auth_header") or None,
            base_url=(data.get("base_url") or None),
            session_token=data.get("session_token") or None,
            token_expiry=expiry,
        )


def _positive(value, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number")
    if not number > 0:
        raise ConfigError(f"{name} must be positive")
    return number


def config_from_env() -> Optional[MonitorConfig]:
    """Snapshot built from the environment, or None when nothing is configured."""
    if not MONITORED_VEHICLES:
        return None
    return MonitorConfig.from_dict({
        "webhook_url": WEBHOOK_URL or f"http://localhost:{PORT}/webhook",
        "vehicle_ids": MONITORED_VEHICLES,
        "speed_limit": SPEED_LIMIT,
        "stagnation_minutes": STAGNATION_MIN,
        "auth_header": AUTH_HEADER,
        "base_url": FLEET_API_URL,
        "session_token": SESSION_TOKEN,
        "token_expiry": TOKEN_EXPIRY,
    })


class ConfigStore:
    """Holds the active snapshot. Readers take one reference per cycle."""

    def __init__(self, config: Optional[MonitorConfig] = None):
        self._config = config
        self._lock = threading.Lock()

    def current(self) -> Optional[MonitorConfig]:
        return self._config

    def replace(self, config: MonitorConfig) -> MonitorConfig:
        with self._lock:
            self._config = config
        return config
