#!/usr/bin/env python3
"""
Fleet Guardian - daily distance rollup and CSV report

Usage:
    fleet-guardian-report 2026-10-18 --out distance.csv
    -> writes the stored rollup for that day (dates are local to REPORT_TZ)

Notes:
- The rollup runs from the monitor at 23:59 local time and stores one row per
  vehicle per day; only the 30 most recent days are kept.
- Distances are stored in meters and rendered in kilometers.
"""
import argparse
import asyncio
import datetime as dt
from typing import List, Optional

import pandas as pd
import pytz
from sqlalchemy.exc import OperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from fleet_guardian import config
from fleet_guardian.crud import load_rows, replace_day, trim_days
from fleet_guardian.database import init_db, make_engine, make_session_factory
from fleet_guardian.logging_config import get_logger
from fleet_guardian.monitor import cap_batch
from fleet_guardian.telemetry import to_float
from fleet_guardian.variables import DISTANCE_HISTORY_DAYS

logger = get_logger("reports", "reports.log")

CSV_HEADERS = ["Date", "Vehicle Name", "Distance (km)", "Number of Trips", "Status"]


def local_tz(name: Optional[str] = None):
    return pytz.timezone(name or config.REPORT_TZ)


def day_window(day: dt.date, tz) -> tuple:
    """Local midnight to 23:59:59.999 of `day`, tz-aware."""
    start = tz.localize(dt.datetime.combine(day, dt.time.min))
    end = tz.localize(dt.datetime.combine(day, dt.time(23, 59, 59, 999000)))
    return start, end


def to_km(meters: float) -> str:
    return f"{(meters or 0) / 1000:.1f}"


# ----------------- History (SQL) -----------------
class DistanceHistory:
    """Daily rollups keyed by date. Blocking SQL work runs in the executor."""

    def __init__(self, session_factory, keep: int = DISTANCE_HISTORY_DAYS):
        self.session_factory = session_factory
        self.keep = keep

    @classmethod
    def from_url(cls, url: str, keep: int = DISTANCE_HISTORY_DAYS) -> "DistanceHistory":
        engine = make_engine(url)
        init_db(engine)
        return cls(make_session_factory(engine), keep)

    @retry(
        wait=wait_exponential_jitter(initial=1, max=10),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _store(self, day: dt.date, records: List[dict]) -> None:
        with self.session_factory() as db:
            replace_day(db, day, records)
            removed = trim_days(db, self.keep)
            db.commit()
        if removed:
            logger.info(f"[history] Dropped {len(removed)} old day(s): {removed[0]}..{removed[-1]}")

    def _entries(self, day: Optional[dt.date] = None) -> List[dict]:
        with self.session_factory() as db:
            rows = load_rows(db, day)

        by_day = {}
        for r in rows:
            entry = by_day.setdefault(r.day, {"date": r.day.isoformat(), "vehicles": [], "total_distance": 0.0})
            entry["vehicles"].append({
                "date": r.day.isoformat(),
                "vehicle_id": r.vehicle_id,
                "vehicle_name": r.vehicle_name,
                "distance": float(r.distance_m or 0),
                "trips": int(r.trips or 0),
                "error": bool(r.error),
            })
            entry["total_distance"] += float(r.distance_m or 0)
        return [by_day[d] for d in sorted(by_day)]

    async def store_day(self, day: dt.date, records: List[dict]) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._store, day, records)
        logger.info(f"[history] Stored daily distance data for {day.isoformat()}")

    async def entries(self) -> List[dict]:
        return await asyncio.get_running_loop().run_in_executor(None, self._entries, None)

    async def day(self, day: dt.date) -> Optional[dict]:
        found = await asyncio.get_running_loop().run_in_executor(None, self._entries, day)
        return found[0] if found else None


# ----------------- Rollup -----------------
class DistanceRollup:
    """
    Sums one local day of trip distances per vehicle. A vehicle whose trip
    query fails is recorded with error=True and does not stop the others.
    Repeated samples for one vehicle yield a single record.
    """

    def __init__(self, source, history: DistanceHistory, tz=None):
        self.source = source
        self.history = history
        self.tz = tz or local_tz()

    async def run(self, samples, monitor_config, day: dt.date) -> dict:
        start, end = day_window(day, self.tz)
        records = []
        seen = set()

        for sample in cap_batch(samples):
            if sample.vehicle_id in seen:
                continue
            seen.add(sample.vehicle_id)
            record = {
                "date": day.isoformat(),
                "vehicle_id": sample.vehicle_id,
                "vehicle_name": sample.display_name,
                "distance": 0.0,
                "trips": 0,
                "error": False,
            }
            try:
                trips = await self.source.fetch_trips(sample.vehicle_id, start, end, monitor_config)
                record["distance"] = sum(
                    to_float(t.get("distance"), 0.0) for t in trips if isinstance(t, dict)
                )
                record["trips"] = len(trips)
            except Exception:
                logger.exception(f"[rollup] Error fetching daily distance for vehicle {sample.vehicle_id}")
                record["error"] = True
            records.append(record)

        if records:
            await self.history.store_day(day, records)

        return {
            "date": day.isoformat(),
            "vehicles": records,
            "total_distance": sum(r["distance"] for r in records),
        }


# ----------------- CSV -----------------
def distance_csv(entry: dict) -> str:
    """One row per vehicle plus a TOTAL FLEET row."""
    date = entry["date"]
    vehicles = entry.get("vehicles") or []
    rows = [{
        "Date": date,
        "Vehicle Name": v.get("vehicle_name") or v.get("vehicle_id"),
        "Distance (km)": to_km(v.get("distance")),
        "Number of Trips": int(v.get("trips") or 0),
        "Status": "Error" if v.get("error") else "OK",
    } for v in vehicles]
    rows.append({
        "Date": date,
        "Vehicle Name": "TOTAL FLEET",
        "Distance (km)": to_km(sum(v.get("distance") or 0 for v in vehicles)),
        "Number of Trips": sum(int(v.get("trips") or 0) for v in vehicles),
        "Status": "Summary",
    })
    df = pd.DataFrame(rows, columns=CSV_HEADERS)
    return df.to_csv(index=False, lineterminator="\n")


# ----------------- CLI -----------------
def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Export a stored daily distance rollup as CSV.")
    p.add_argument("day", help="Report date (YYYY-MM-DD), local to REPORT_TZ")
    p.add_argument("--out", default=None, help="Output file. Defaults to distance-report-<day>.csv")
    p.add_argument("--db", default=config.DATABASE_URL, help="SQLAlchemy DB URL (overrides .env)")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        day = dt.date.fromisoformat(args.day)
    except ValueError as e:
        raise SystemExit(f"Invalid date format '{args.day}': {e}")

    history = DistanceHistory.from_url(args.db)
    entry = asyncio.run(history.day(day))
    if entry is None:
        raise SystemExit(f"No distance data stored for {day.isoformat()}")

    out = args.out or f"distance-report-{day.isoformat()}.csv"
    with open(out, "w", encoding="utf-8") as fh:
        fh.write(distance_csv(entry))
    print(f"CSV saved to {out}")


if __name__ == "__main__":
    main()
