"""SQLAlchemy-backed trip sink, driver score store and read-side queries."""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from .db import SessionLocal
from .domain import DriverScoreState, EventType, ScoreBreakdown, Trend, Trip, TripMetrics
from .exceptions import PersistenceError
from .geo import meters_to_miles
from .models import Driver, DriverScore, EventRecord, SpeedViolationRecord, TripRecord

logger = logging.getLogger(__name__)

def get_driver(db: Session, external_id: str) -> Optional[Driver]:
    return db.query(Driver).filter(Driver.external_id == external_id).first()

def ensure_driver_exists(db: Session, external_id: str) -> Driver:
    """Ensure a driver exists in the database, create if not."""
    driver = get_driver(db, external_id)

    if not driver:
        driver = Driver(external_id=external_id, name=external_id)
        db.add(driver)
        db.flush()

    return driver

def build_trip_record(driver: Driver, trip: Trip, breakdown: ScoreBreakdown) -> TripRecord:
    """Map a finalized trip and its score onto ORM rows (trip, events, violations)."""
    record = TripRecord(
        trip_uuid=trip.id,
        driver_id=driver.id,
        start_time=trip.start_time,
        end_time=trip.end_time,
        distance_m=trip.distance_m,
        duration_s=trip.duration_s,
        max_speed_mps=trip.max_speed_mps,
        average_speed_mps=trip.average_speed_mps,
        route=trip.to_dict(include_route=True)['route'],
        base_score=breakdown.base_score,
        improvement_bonus=breakdown.improvement_bonus,
        final_score=breakdown.final_score,
        breakdown=breakdown.to_dict()
    )

    for event in trip.events:
        record.events.append(EventRecord(
            event_uuid=event.id,
            driver_id=driver.id,
            event_type=event.type.value,
            severity=event.severity.value,
            timestamp=event.timestamp,
            lat=event.latitude,
            lon=event.longitude,
            magnitude=event.magnitude,
            description=event.description
        ))

    for violation in trip.speed_violations:
        record.speed_violations.append(SpeedViolationRecord(
            driver_id=driver.id,
            timestamp=violation.timestamp,
            lat=violation.latitude,
            lon=violation.longitude,
            speed_mph=violation.speed_mph,
            limit_mph=violation.limit_mph,
            excess_mph=violation.excess_mph,
            percentage_over=violation.percentage_over,
            severity=violation.severity.value,
            road_name=violation.road_name
        ))

    return record


class SqlTripSink:
    """Persists finalized trips with their events and speed violations."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def save(self, driver_id: str, trip: Trip, breakdown: ScoreBreakdown) -> int:
        db = self.session_factory()
        try:
            driver = ensure_driver_exists(db, driver_id)
            record = build_trip_record(driver, trip, breakdown)
            db.add(record)
            db.commit()
            db.refresh(record)
            logger.info(f"Saved trip {trip.id} as record {record.id}")
            return record.id
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Could not save trip {trip.id}: {e}") from e
        finally:
            db.close()


class SqlDriverScoreStore:
    """One rolling score row per driver."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def load(self, driver_id: str) -> Optional[DriverScoreState]:
        db = self.session_factory()
        try:
            row = db.query(DriverScore).join(Driver, DriverScore.driver_id == Driver.id).filter(
                Driver.external_id == driver_id
            ).first()
            if row is None:
                return None
            return DriverScoreState(
                value=row.value,
                updated_at=row.updated_at,
                trend=Trend(row.trend) if row.trend else Trend.NEW,
                last_base_score=row.last_base_score,
                trip_count=row.trip_count or 0
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load driver score for {driver_id}: {e}") from e
        finally:
            db.close()

    def store(self, driver_id: str, state: DriverScoreState) -> None:
        """Upsert the driver's score row."""
        db = self.session_factory()
        try:
            driver = ensure_driver_exists(db, driver_id)
            row = db.query(DriverScore).filter(DriverScore.driver_id == driver.id).first()

            if row is None:
                row = DriverScore(driver_id=driver.id)
                db.add(row)

            row.value = state.value
            row.trend = state.trend.value
            row.last_base_score = state.last_base_score
            row.trip_count = state.trip_count
            row.updated_at = state.updated_at
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Could not store driver score for {driver_id}: {e}") from e
        finally:
            db.close()


def get_driver_trips(
    db: Session,
    driver_id: str,
    limit: int = 50,
    offset: int = 0
) -> List[TripRecord]:
    """Get trips for a driver, newest first."""
    return db.query(TripRecord).join(Driver, TripRecord.driver_id == Driver.id).filter(
        Driver.external_id == driver_id
    ).order_by(
        TripRecord.start_time.desc()
    ).offset(offset).limit(limit).all()

def get_trip(db: Session, trip_id: int) -> Optional[TripRecord]:
    return db.query(TripRecord).filter(TripRecord.id == trip_id).first()

def get_driver_events(
    db: Session,
    driver_id: str,
    limit: int = 100,
    offset: int = 0,
    event_type: Optional[str] = None
) -> List[EventRecord]:
    """Get recent events for a driver."""
    query = db.query(EventRecord).join(Driver, EventRecord.driver_id == Driver.id).filter(
        Driver.external_id == driver_id
    )
    if event_type:
        query = query.filter(EventRecord.event_type == event_type)
    return query.order_by(
        EventRecord.timestamp.desc()
    ).offset(offset).limit(limit).all()

def get_trip_violations(db: Session, trip_id: int) -> List[SpeedViolationRecord]:
    return db.query(SpeedViolationRecord).filter(
        SpeedViolationRecord.trip_id == trip_id
    ).order_by(SpeedViolationRecord.timestamp).all()

def get_trip_metrics_since(db: Session, driver_id: str, since: datetime) -> List[TripMetrics]:
    """Per-trip scoring counters for a driver's trips started at or after ``since``."""
    records = db.query(TripRecord).join(Driver, TripRecord.driver_id == Driver.id).filter(
        Driver.external_id == driver_id,
        TripRecord.start_time >= since
    ).all()
    return [record_metrics(record) for record in records]

def record_metrics(record: TripRecord) -> TripMetrics:
    """Rebuild scoring counters from a stored trip."""
    counts: Dict[str, int] = {}
    for event in record.events:
        counts[event.event_type] = counts.get(event.event_type, 0) + 1

    start_time = record.start_time
    if start_time is not None and start_time.tzinfo is None:
        # SQLite hands back naive datetimes; trips are recorded in UTC
        start_time = start_time.replace(tzinfo=timezone.utc)

    return TripMetrics(
        start_time=start_time,
        distance_miles=meters_to_miles(record.distance_m or 0.0),
        hard_brakes=counts.get(EventType.HARD_BRAKE.value, 0),
        rapid_accelerations=counts.get(EventType.RAPID_ACCELERATION.value, 0),
        phone_events=counts.get(EventType.PHONE_USE.value, 0),
        sharp_turns=counts.get(EventType.SHARP_TURN.value, 0),
        speed_violations=len(record.speed_violations)
    )

def get_event_stats(db: Session, driver_id: Optional[str] = None) -> Dict:
    """Get event statistics."""
    query = db.query(
        EventRecord.event_type,
        func.count(EventRecord.id).label('count')
    )

    if driver_id:
        query = query.join(Driver, EventRecord.driver_id == Driver.id).filter(
            Driver.external_id == driver_id
        )

    # Count events by type
    event_counts = query.group_by(EventRecord.event_type).all()

    stats = {
        'total_events': sum(count for _, count in event_counts),
        'by_type': {event_type: count for event_type, count in event_counts}
    }

    return stats

def trip_record_to_dict(record: TripRecord, include_route: bool = False) -> Dict:
    data = {
        "id": record.id,
        "trip_id": record.trip_uuid,
        "driver_id": record.driver_id,
        "start_time": record.start_time.isoformat() if record.start_time else None,
        "end_time": record.end_time.isoformat() if record.end_time else None,
        "distance_m": record.distance_m,
        "duration_s": record.duration_s,
        "max_speed_mps": record.max_speed_mps,
        "average_speed_mps": record.average_speed_mps,
        "base_score": record.base_score,
        "improvement_bonus": record.improvement_bonus,
        "final_score": record.final_score,
        "event_count": len(record.events),
        "violation_count": len(record.speed_violations),
        "created_at": record.created_at.isoformat() if record.created_at else None
    }
    if include_route:
        data["route"] = record.route or []
        data["breakdown"] = record.breakdown
    return data

def event_record_to_dict(event: EventRecord) -> Dict:
    return {
        "id": event.id,
        "event_id": event.event_uuid,
        "driver_id": event.driver_id,
        "trip_id": event.trip_id,
        "event_type": event.event_type,
        "severity": event.severity,
        "timestamp": event.timestamp.isoformat() if event.timestamp else None,
        "lat": event.lat,
        "lon": event.lon,
        "magnitude": event.magnitude,
        "description": event.description,
        "created_at": event.created_at.isoformat() if event.created_at else None
    }

def violation_record_to_dict(violation: SpeedViolationRecord) -> Dict:
    return {
        "id": violation.id,
        "trip_id": violation.trip_id,
        "timestamp": violation.timestamp.isoformat() if violation.timestamp else None,
        "lat": violation.lat,
        "lon": violation.lon,
        "speed_mph": violation.speed_mph,
        "limit_mph": violation.limit_mph,
        "excess_mph": violation.excess_mph,
        "percentage_over": violation.percentage_over,
        "severity": violation.severity,
        "road_name": violation.road_name
    }
