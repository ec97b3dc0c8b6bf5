from sqlalchemy import Boolean, Column, Date, DateTime, Float, Integer, Text, UniqueConstraint
from sqlalchemy.sql import func

from fleet_guardian.database import Base


class DailyDistance(Base):
    __tablename__ = "daily_distance"
    __table_args__ = (UniqueConstraint("day", "vehicle_id", name="uq_daily_distance_day_vehicle"),)

    id           = Column(Integer, primary_key=True, autoincrement=True)
    day          = Column(Date, index=True, nullable=False)
    vehicle_id   = Column(Text, nullable=False)
    vehicle_name = Column(Text)
    distance_m   = Column(Float, default=0)     # sum of trip distances reported for the day
    trips        = Column(Integer, default=0)
    error        = Column(Boolean, default=False)  # trip query failed for this vehicle
    created_at   = Column(DateTime(timezone=True), server_default=func.now())
