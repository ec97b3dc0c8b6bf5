from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, NamedTuple, Optional

from fleet_guardian.telemetry import to_epoch_seconds, to_float
from fleet_guardian.variables import STAGNANT_SPEED


class ReferenceClock(str, Enum):
    # stagnation timed from the wall-clock instant the vehicle was first seen stationary
    WALL_CLOCK = "wall_clock"
    # stagnation timed from the GPS time the sample itself reports
    SAMPLE_TIME = "sample_time"


@dataclass
class VehicleState:
    is_stagnant: bool = False
    stagnant_since: Optional[float] = None  # epoch seconds, only while stagnant
    alerted: bool = False


class Verdict(NamedTuple):
    newly_stagnant: bool
    should_alert: bool
    stagnant_seconds: float = 0.0


class StagnationTracker:
    """
    Owns one VehicleState per vehicle id for the lifetime of the process.

    At most one stagnation alert is signalled per continuous stationary
    episode; a sample at or above STAGNANT_SPEED ends the episode and re-arms
    alerting. Only the owner of the tracker (the active cycle, or the
    ingestion handler) may call evaluate().
    """

    def __init__(self, reference: ReferenceClock = ReferenceClock.WALL_CLOCK):
        self.reference = ReferenceClock(reference)
        self._states: Dict[str, VehicleState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def state(self, vehicle_id: str) -> Optional[VehicleState]:
        s = self._states.get(vehicle_id)
        return replace(s) if s else None

    def evaluate(self, vehicle_id: str, speed, sample_time, now: float,
                 window_seconds: float) -> Verdict:
        """
        Apply one observation. now is wall-clock epoch seconds.
        Malformed speed counts as 0, malformed sample time as absent.
        """
        speed = to_float(speed, 0.0)
        state = self._states.setdefault(vehicle_id, VehicleState())

        if speed >= STAGNANT_SPEED:
            state.is_stagnant = False
            state.stagnant_since = None
            state.alerted = False
            return Verdict(False, False)

        if self.reference is ReferenceClock.WALL_CLOCK:
            return self._by_wall_clock(state, now, window_seconds)
        return self._by_sample_time(state, to_epoch_seconds(sample_time), now, window_seconds)

    # =====================================================================
    # Helper: wall clock, the episode starts when we first see it
    # =====================================================================
    @staticmethod
    def _by_wall_clock(state: VehicleState, now: float, window: float) -> Verdict:
        if not state.is_stagnant or state.stagnant_since is None:
            state.is_stagnant = True
            state.stagnant_since = now
            state.alerted = False
            return Verdict(True, False)

        duration = now - state.stagnant_since
        if duration > window and not state.alerted:
            state.alerted = True
            return Verdict(False, True, duration)
        return Verdict(False, False, duration)

    # =====================================================================
    # Helper: sample time, age of the last GPS fix decides
    # =====================================================================
    @staticmethod
    def _by_sample_time(state: VehicleState, sample_time: Optional[float],
                        now: float, window: float) -> Verdict:
        if sample_time is None:
            return Verdict(False, False)

        elapsed = now - sample_time
        if not elapsed > window:
            return Verdict(False, False, max(elapsed, 0.0))

        newly = not state.is_stagnant
        if state.alerted:
            return Verdict(newly, False, elapsed)

        state.is_stagnant = True
        state.stagnant_since = sample_time
        state.alerted = True
        return Verdict(newly, True, elapsed)
