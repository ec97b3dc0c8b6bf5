import datetime as dt
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from fleet_guardian.models import DailyDistance


def replace_day(db: Session, day: dt.date, records: List[dict]) -> None:
    """Drop whatever was stored for `day` and write the new rows."""
    db.execute(delete(DailyDistance).where(DailyDistance.day == day))
    for r in records:
        db.add(DailyDistance(
            day=day,
            vehicle_id=str(r["vehicle_id"]),
            vehicle_name=r.get("vehicle_name"),
            distance_m=float(r.get("distance") or 0),
            trips=int(r.get("trips") or 0),
            error=bool(r.get("error", False)),
        ))


def trim_days(db: Session, keep: int) -> List[dt.date]:
    """Keep the `keep` most recent days; returns the days removed."""
    days = db.scalars(
        select(DailyDistance.day).distinct().order_by(DailyDistance.day.desc())
    ).all()
    old = list(days[keep:])
    if old:
        db.execute(delete(DailyDistance).where(DailyDistance.day.in_(old)))
    return old


def load_rows(db: Session, day: Optional[dt.date] = None) -> List[DailyDistance]:
    q = select(DailyDistance).order_by(DailyDistance.day, DailyDistance.id)
    if day is not None:
        q = q.where(DailyDistance.day == day)
    return list(db.scalars(q).all())
