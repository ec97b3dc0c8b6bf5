# worker.py: monitor only, no HTTP server
import asyncio

from fleet_guardian import config
from fleet_guardian.alerts import build_notifier
from fleet_guardian.logging_config import get_logger
from fleet_guardian.main import build_monitor, initial_configs
from fleet_guardian.reports import DistanceHistory
from fleet_guardian.sources import build_source
from fleet_guardian.store import make_store

logger = get_logger("worker", "worker.log")


async def worker():
    logger.info("Worker starting, building monitor...")
    store = make_store(config.REDIS_URL)
    configs = initial_configs()
    source = build_source(config.MONITOR_SOURCE, store)
    history = DistanceHistory.from_url(config.DATABASE_URL)
    scheduler = build_monitor(store, configs, source, history, build_notifier())

    if not scheduler.start():
        logger.error("No monitor configuration (set MONITORED_VEHICLES), exiting")
        return

    try:
        # runs until cancelled (SIGINT / SIGTERM)
        await asyncio.Event().wait()
    finally:
        scheduler.stop()
        await scheduler.drain()
        logger.info("Worker stopped")


def run():
    logger.info("Worker starting up...")
    try:
        asyncio.run(worker())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
