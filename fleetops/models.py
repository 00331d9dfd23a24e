from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

Base = declarative_base()

class Driver(Base):
    __tablename__ = "drivers"
    id = Column(Integer, primary_key=True)
    external_id = Column(String(128), unique=True, nullable=False)
    name = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class AttendanceRecord(Base):
    """One row per (driver, local calendar day)."""
    __tablename__ = "attendance_records"
    __table_args__ = (UniqueConstraint("driver_id", "date", name="uq_attendance_driver_date"),)

    id = Column(Integer, primary_key=True)
    driver_id = Column(String(128), nullable=False, index=True)
    date = Column(String(10), nullable=False)  # yyyy-MM-dd
    first_clock_in_time = Column(DateTime(timezone=True), nullable=False)
    events = Column(JSON, nullable=False, default=list)  # [{"type", "timestamp", "event_id"}]
    total_worked_seconds = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

class Trip(Base):
    __tablename__ = "trips"
    # Columns are nullable: documents come from an external dispatch process
    # and are validated on decode, not on write.
    id = Column(String(128), primary_key=True)
    driver_id = Column(String(128), index=True)
    vehicle_id = Column(String(128))
    start_location = Column(String(512))
    end_location = Column(String(512))
    date = Column(String(32))
    time = Column(String(32))
    start_time = Column(DateTime(timezone=True))
    end_time = Column(DateTime(timezone=True))
    status = Column(String(32), index=True)
    vehicle_type = Column(String(64))
    passengers = Column(Integer)
    load_weight = Column(Float)
    go_clicked = Column(String(64))
    end_clicked = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

class TripCharges(Base):
    __tablename__ = "trip_charges"
    id = Column(Integer, primary_key=True)
    trip_id = Column(String(128), ForeignKey("trips.id"), unique=True, nullable=False)
    misc = Column(Float, default=0.0)
    fuel_log = Column(Float, default=0.0)
    toll_fees = Column(Float, default=0.0)
    incidental = Column(Float, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    trip = relationship("Trip")

class RouteDeviation(Base):
    __tablename__ = "route_deviations"
    id = Column(Integer, primary_key=True)
    trip_id = Column(String(128), ForeignKey("trips.id"), index=True)
    vehicle_id = Column(String(128))
    driver_id = Column(String(128), index=True)
    distance_m = Column(Float)
    lat = Column(Float)
    lon = Column(Float)
    timestamp = Column(DateTime(timezone=True))
    meta = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
