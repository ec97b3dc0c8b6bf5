# fleet_guardian/monitor.py
import math
import time
from typing import Iterable, List, Optional, Sequence

from fleet_guardian.alerts import Alert, AlertType
from fleet_guardian.config import MonitorConfig
from fleet_guardian.logging_config import get_logger
from fleet_guardian.telemetry import VehicleSample
from fleet_guardian.tracker import StagnationTracker
from fleet_guardian.variables import MAX_MONITORED_VEHICLES, STAGNANT_SPEED

logger = get_logger("monitor", "monitor.log")


# =====================================================================
# Helper: formatting
# =====================================================================
def fmt_number(x: float) -> str:
    """90.0 -> '90', 80.5 -> '80.5'"""
    x = float(x)
    return str(int(x)) if x.is_integer() else str(x)


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


# =====================================================================
# Helper: which samples a cycle looks at
# =====================================================================
def cap_batch(samples: Iterable, limit: int = MAX_MONITORED_VEHICLES) -> list:
    """First `limit` entries in source order; the rest are dropped."""
    return list(samples)[:limit]


def select_monitored(samples: Iterable[Optional[VehicleSample]], vehicle_ids: Sequence[str],
                     limit: int = MAX_MONITORED_VEHICLES) -> List[VehicleSample]:
    """Samples for configured vehicles, first `limit` entries in source order."""
    allowed = set(vehicle_ids)
    return cap_batch((s for s in samples if s is not None and s.vehicle_id in allowed), limit)


def display_status(sample: Optional[VehicleSample], config: MonitorConfig, now: float) -> str:
    if sample is None or sample.sample_time is None:
        return "No data"
    speed = sample.speed or 0
    if speed > config.speed_limit:
        return "Speeding!"
    if speed < STAGNANT_SPEED and (now - sample.sample_time) > config.stagnation_seconds:
        return "Stagnant"
    if speed >= STAGNANT_SPEED:
        return "Moving"
    return "Idle"


# =====================================================================
# MAIN ENGINE
# =====================================================================
class AlertEngine:
    """
    Stateless rules over one batch; stagnation state lives in the tracker.

    Speeding fires on every qualifying sample. Stagnation fires once per
    stationary episode because the tracker only signals it once.
    """

    def __init__(self, tracker: StagnationTracker):
        self.tracker = tracker

    def analyze(self, samples: Iterable[Optional[VehicleSample]], config: MonitorConfig,
                now: Optional[float] = None) -> List[Alert]:
        now = time.time() if now is None else now
        now_ms = int(now * 1000)
        alerts: List[Alert] = []

        monitored = select_monitored(samples, config.vehicle_ids)
        logger.info(f"[engine] Analyzing {len(monitored)} sample(s) reference={self.tracker.reference.value}")

        for sample in monitored:
            speed = sample.speed or 0

            # ------------------- SPEEDING --------------------
            if speed > config.speed_limit:
                alerts.append(Alert(
                    type=AlertType.SPEEDING,
                    vehicle_id=sample.vehicle_id,
                    vehicle_name=sample.display_name,
                    message=(
                        f"Speeding at {fmt_number(speed)} km/h "
                        f"(limit: {fmt_number(config.speed_limit)} km/h)"
                    ),
                    timestamp=now_ms,
                    location=sample.location,
                ))
                logger.info(f"[engine] Speeding: {sample.vehicle_id} at {speed} km/h")

            # ------------------- STAGNATION --------------------
            verdict = self.tracker.evaluate(
                sample.vehicle_id, speed, sample.sample_time, now, config.stagnation_seconds
            )
            if verdict.newly_stagnant:
                logger.info(f"[engine] {sample.vehicle_id} became stationary")
            if verdict.should_alert:
                minutes = round_half_up(verdict.stagnant_seconds / 60)
                alerts.append(Alert(
                    type=AlertType.STAGNATION,
                    vehicle_id=sample.vehicle_id,
                    vehicle_name=sample.display_name,
                    message=f"Stagnant for {minutes} minutes",
                    timestamp=now_ms,
                    location=sample.location,
                ))
                logger.info(f"[engine] Stagnation: {sample.vehicle_id} for {minutes} minutes")

        return alerts
