import asyncio
import datetime as dt
import time
from typing import Callable, List, Optional, Set

from fleet_guardian.alerts import Alert, AlertSink
from fleet_guardian.config import ConfigStore, MonitorConfig
from fleet_guardian.logging_config import get_logger
from fleet_guardian.monitor import AlertEngine, display_status, select_monitored
from fleet_guardian.sources import TransportError
from fleet_guardian.store import SNAPSHOT_KEY
from fleet_guardian.tracker import StagnationTracker
from fleet_guardian.variables import (
    MONITOR_INITIAL_DELAY_S,
    MONITOR_PERIOD_S,
    ROLLUP_HOUR,
    ROLLUP_MINUTE,
)

logger = get_logger("scheduler", "scheduler.log")


class MonitorScheduler:
    """
    Idle <-> Monitoring. While monitoring, a timer fires one cycle after
    `initial_delay` and then every `period` seconds:

        fetch samples -> AlertEngine -> AlertSink -> last-known snapshot
                                                 -> daily rollup at 23:59

    A tick that finds the previous cycle still running is skipped. stop()
    cancels the timer only; a cycle already running finishes and commits.
    The tracker is kept across stop/start and config swaps.
    """

    def __init__(self, source, sink: AlertSink, store, configs: Optional[ConfigStore] = None,
                 rollup=None, initial_delay: float = MONITOR_INITIAL_DELAY_S,
                 period: float = MONITOR_PERIOD_S, clock: Callable[[], float] = time.time, tz=None):
        self.source = source
        self.sink = sink
        self.store = store
        self.configs = configs or ConfigStore()
        self.rollup = rollup
        self.initial_delay = initial_delay
        self.period = period
        self.clock = clock
        self.tz = tz or dt.timezone.utc

        self.tracker = StagnationTracker(source.reference)
        self.engine = AlertEngine(self.tracker)

        self._timer: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()
        self._last_rollup: Optional[dt.date] = None

    @property
    def monitoring(self) -> bool:
        return self._timer is not None and not self._timer.done()

    # ---------- State transitions ----------
    def start(self, config: Optional[MonitorConfig] = None) -> bool:
        if config is not None:
            self.configs.replace(config)
        current = self.configs.current()
        if current is None:
            logger.info("[scheduler] No config found, monitoring not started")
            return False

        self.stop()
        self._timer = asyncio.get_running_loop().create_task(self._run_timer())
        logger.info(
            f"[scheduler] Monitoring started source={type(self.source).__name__} "
            f"vehicles={list(current.vehicle_ids)} delay={self.initial_delay}s period={self.period}s"
        )
        return True

    def stop(self) -> None:
        if self._timer is None:
            return
        timer, self._timer = self._timer, None
        timer.cancel()
        logger.info("[scheduler] Monitoring stopped")

    def update_config(self, config: MonitorConfig) -> None:
        """Takes effect at the next cycle."""
        self.configs.replace(config)
        logger.info(f"[scheduler] Config updated vehicles={list(config.vehicle_ids)}")

    # ---------- Timer ----------
    async def _run_timer(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            self._spawn_cycle()
            await asyncio.sleep(self.period)

    def _spawn_cycle(self) -> None:
        if self._cycle is not None and not self._cycle.done():
            logger.warning("[scheduler] Previous cycle still running, skipping tick")
            return
        self._cycle = asyncio.get_running_loop().create_task(self._guarded_tick())

    async def _guarded_tick(self) -> None:
        try:
            await self.on_tick()
        except Exception:
            logger.exception("[scheduler] Cycle failed")

    async def drain(self) -> None:
        """Wait for the running cycle and any rollup still in flight."""
        pending = [t for t in [self._cycle, *self._background] if t is not None and not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ---------- One cycle ----------
    async def on_tick(self) -> List[Alert]:
        async with self._lock:
            config = self.configs.current()
            if config is None:
                return []

            now = self.clock()
            if config.token_expired(now * 1000):
                logger.info("[scheduler] Token expired, stopping monitoring")
                self.stop()
                return []

            try:
                samples = await self.source.fetch(config)
            except TransportError as e:
                logger.warning(f"[scheduler] Fetch failed, skipping cycle: {e}")
                return []

            monitored = select_monitored(samples, config.vehicle_ids)
            alerts = self.engine.analyze(monitored, config, now=now)
            await self.sink.commit(alerts)

            # every source feeds the last-known snapshot; the ingestion server keeps its own hash
            if monitored:
                await self._persist_snapshot(monitored, config, now)
            self._maybe_rollup(monitored, config, now)

            logger.info(f"[scheduler] Cycle done: {len(monitored)} vehicle sample(s), {len(alerts)} alert(s)")
            return alerts

    async def _persist_snapshot(self, samples, config: MonitorConfig, now: float) -> None:
        for s in samples:
            await self.store.put(SNAPSHOT_KEY, s.vehicle_id, {
                "vehicle_id": s.vehicle_id,
                "name": s.display_name,
                "speed": s.speed,
                "sample_time": s.sample_time,
                "latitude": s.latitude,
                "longitude": s.longitude,
                "ignition": s.ignition,
                "odometer": s.odometer,
                "direction": s.direction,
                "status": display_status(s, config, now),
            })

    # ---------- Daily rollup ----------
    def rollup_due(self, now: float) -> Optional[dt.date]:
        if self.rollup is None or not hasattr(self.source, "fetch_trips"):
            return None
        local = dt.datetime.fromtimestamp(now, self.tz)
        if local.hour != ROLLUP_HOUR or local.minute != ROLLUP_MINUTE:
            return None
        if self._last_rollup == local.date():
            return None
        return local.date()

    def _maybe_rollup(self, samples, config: MonitorConfig, now: float) -> None:
        day = self.rollup_due(now)
        if day is None or not samples:
            return
        self._last_rollup = day
        logger.info(f"[scheduler] Triggering daily distance rollup for {day.isoformat()}")
        task = asyncio.get_running_loop().create_task(self.rollup.run(samples, config, day))
        self._background.add(task)
        task.add_done_callback(self._rollup_done)

    def _rollup_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[scheduler] Daily rollup failed: {exc!r}")
