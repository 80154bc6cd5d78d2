from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, JSON
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

class Driver(Base):
    __tablename__ = "drivers"
    id = Column(Integer, primary_key=True)
    external_id = Column(String(128), unique=True, nullable=False)
    name = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class TripRecord(Base):
    __tablename__ = "trips"
    id = Column(Integer, primary_key=True)
    trip_uuid = Column(String(64), unique=True, nullable=False)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    start_time = Column(DateTime(timezone=True))
    end_time = Column(DateTime(timezone=True))
    distance_m = Column(Float)
    duration_s = Column(Float)
    max_speed_mps = Column(Float)
    average_speed_mps = Column(Float)
    route = Column(JSON)
    base_score = Column(Float)
    improvement_bonus = Column(Float)
    final_score = Column(Float)
    breakdown = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    driver = relationship("Driver")
    events = relationship("EventRecord", back_populates="trip", cascade="all, delete-orphan")
    speed_violations = relationship("SpeedViolationRecord", back_populates="trip", cascade="all, delete-orphan")

class EventRecord(Base):
    __tablename__ = "events"
    id = Column(Integer, primary_key=True)
    event_uuid = Column(String(64))
    trip_id = Column(Integer, ForeignKey("trips.id"))
    driver_id = Column(Integer, ForeignKey("drivers.id"))
    event_type = Column(String(64))
    severity = Column(String(16))
    timestamp = Column(DateTime(timezone=True))
    lat = Column(Float)
    lon = Column(Float)
    magnitude = Column(Float)
    description = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    trip = relationship("TripRecord", back_populates="events")

class SpeedViolationRecord(Base):
    __tablename__ = "speed_violations"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"))
    driver_id = Column(Integer, ForeignKey("drivers.id"))
    timestamp = Column(DateTime(timezone=True))
    lat = Column(Float)
    lon = Column(Float)
    speed_mph = Column(Float)
    limit_mph = Column(Float)
    excess_mph = Column(Float)
    percentage_over = Column(Float)
    severity = Column(String(16))
    road_name = Column(String(255))
    trip = relationship("TripRecord", back_populates="speed_violations")

class DriverScore(Base):
    __tablename__ = "driver_scores"
    id = Column(Integer, primary_key=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), unique=True, nullable=False)
    value = Column(Float)
    trend = Column(String(16))
    last_base_score = Column(Float)
    trip_count = Column(Integer, default=0)
    updated_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
