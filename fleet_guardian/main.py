from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from fleet_guardian import config
from fleet_guardian.alerts import AlertLog, AlertSink, build_notifier
from fleet_guardian.config import ConfigError, ConfigStore, config_from_env
from fleet_guardian.control import router as control_router
from fleet_guardian.logging_config import get_logger
from fleet_guardian.reports import DistanceHistory, DistanceRollup, local_tz
from fleet_guardian.scheduler import MonitorScheduler
from fleet_guardian.sources import build_source
from fleet_guardian.store import LOCAL_ALERTS_KEY, make_store
from fleet_guardian.variables import LOCAL_ALERT_CAP, MONITOR_INITIAL_DELAY_S, MONITOR_PERIOD_S
from fleet_guardian.webhook import IngestService
from fleet_guardian.webhook import router as webhook_router

logger = get_logger("main", "main.log")


def initial_configs() -> ConfigStore:
    try:
        return ConfigStore(config_from_env())
    except ConfigError as e:
        logger.error(f"Ignoring monitor settings from environment: {e}")
        return ConfigStore()


def build_monitor(store, configs: ConfigStore, source, history: DistanceHistory, notifier=None,
                  initial_delay: float = MONITOR_INITIAL_DELAY_S,
                  period: float = MONITOR_PERIOD_S) -> MonitorScheduler:
    tz = local_tz()
    sink = AlertSink(AlertLog(store, LOCAL_ALERTS_KEY, LOCAL_ALERT_CAP), notifier)
    rollup = DistanceRollup(source, history, tz) if hasattr(source, "fetch_trips") else None
    return MonitorScheduler(
        source, sink, store, configs,
        rollup=rollup, initial_delay=initial_delay, period=period, tz=tz,
    )


def create_app(store=None, configs: Optional[ConfigStore] = None, source=None,
               history: Optional[DistanceHistory] = None, notifier=None,
               database_url: Optional[str] = None, autostart: Optional[bool] = None,
               initial_delay: float = MONITOR_INITIAL_DELAY_S,
               period: float = MONITOR_PERIOD_S) -> FastAPI:
    store = store if store is not None else make_store(config.REDIS_URL)
    configs = configs or initial_configs()
    source = source or build_source(config.MONITOR_SOURCE, store)
    history = history or DistanceHistory.from_url(database_url or config.DATABASE_URL)
    autostart = config.MONITOR_AUTOSTART if autostart is None else autostart

    scheduler = build_monitor(
        store, configs, source, history, notifier or build_notifier(),
        initial_delay=initial_delay, period=period,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if autostart:
            scheduler.start()
        yield
        scheduler.stop()
        await scheduler.drain()

    app = FastAPI(title="Fleet-Guardian", lifespan=lifespan)
    app.state.store = store
    app.state.history = history
    app.state.scheduler = scheduler
    # server-side alerts stay in the log; operator notifications come from the monitor
    app.state.ingest = IngestService(store, configs)
    app.include_router(webhook_router)
    app.include_router(control_router)
    return app


def run():
    uvicorn.run("fleet_guardian.main:create_app", factory=True, host=config.HOST, port=config.PORT, reload=False)


if __name__ == "__main__":
    run()
