from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from ..db import get_db
from ..domain import SpeedViolation, ViolationSeverity
from ..exceptions import InvalidSampleError
from ..persistence import (
    event_record_to_dict,
    get_driver_events,
    get_driver_trips,
    get_event_stats,
    get_trip,
    get_trip_metrics_since,
    get_trip_violations,
    trip_record_to_dict,
    violation_record_to_dict,
)
from ..scoring import (
    driver_rating,
    has_enough_trips,
    period_bounds,
    score_driver_periods,
    score_grade,
    split_periods,
)
from ..session import SessionRegistry
from ..speed_limits import speed_stats

router = APIRouter()

class SampleBatch(BaseModel):
    samples: List[Dict[str, Any]]
    speed_unit: str = "mps"

def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry

@router.post("/drivers/{driver_id}/samples")
def submit_samples(
    driver_id: str,
    batch: SampleBatch,
    registry: SessionRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    """Feed a batch of samples, in timestamp order, to the driver's tracking session."""
    session = registry.get(driver_id)
    accepted = 0
    ignored = 0

    for index, payload in enumerate(batch.samples):
        try:
            if session.submit_payload(payload, batch.speed_unit):
                accepted += 1
            else:
                ignored += 1
        except InvalidSampleError as e:
            raise HTTPException(
                status_code=422,
                detail=f"Invalid sample at index {index}: {e} ({accepted} accepted before it)"
            )

    return {
        "driver_id": driver_id,
        "accepted": accepted,
        "ignored": ignored,
        "state": session.state.value
    }

@router.post("/drivers/{driver_id}/stop")
def stop_trip(
    driver_id: str,
    registry: SessionRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    """End the driver's current trip now, regardless of the stopped timer."""
    session = registry.find(driver_id)
    outcome = session.stop_trip() if session else None
    if outcome is None:
        return {"driver_id": driver_id, "message": "no active trip"}
    return {"driver_id": driver_id, "outcome": outcome.to_dict()}

@router.get("/drivers")
def list_drivers(registry: SessionRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    """Drivers with a tracking session in this process."""
    result = []
    for driver_id in registry.driver_ids():
        session = registry.find(driver_id)
        if session is not None:
            result.append({"driver_id": driver_id, "state": session.state.value})
    return result

@router.get("/drivers/{driver_id}/session")
def get_session_state(
    driver_id: str,
    registry: SessionRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    """Live state of the driver's tracking session."""
    session = registry.find(driver_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No tracking session for {driver_id}")
    return session.snapshot()

@router.get("/drivers/{driver_id}/score")
def get_driver_score(
    driver_id: str,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    """Rolling driver score plus the 30-day period composite with trend."""
    config = registry.config
    state = registry.driver_score(driver_id)

    try:
        now = datetime.now(timezone.utc)
        since, _ = period_bounds(now, config, periods_ago=1)
        current, previous = split_periods(get_trip_metrics_since(db, driver_id, since), now, config)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

    period = None
    if current:
        period_score = score_driver_periods(current, previous or None, config)
        grade, label = score_grade(period_score.current.final_score)
        period = period_score.to_dict()
        period.update({"grade": grade, "label": label})

    return {
        "driver_id": driver_id,
        "driver_score": state.to_dict(),
        "rating": driver_rating(state.value),
        "trips_in_period": len(current),
        "enough_trips": has_enough_trips(len(current), config),
        "period": period
    }

@router.get("/drivers/{driver_id}/trips")
def get_driver_trips_endpoint(
    driver_id: str,
    db: Session = Depends(get_db),
    limit: int = Query(50, ge=1, le=500, description="Number of trips to return"),
    offset: int = Query(0, ge=0, description="Number of trips to skip")
) -> List[Dict[str, Any]]:
    """Get trips for a specific driver."""
    try:
        trips = get_driver_trips(db, driver_id, limit, offset)
        return [trip_record_to_dict(trip) for trip in trips]

    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

@router.get("/trips/{trip_id}")
def get_trip_endpoint(trip_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Get one stored trip with route, events and speed violations."""
    try:
        record = get_trip(db, trip_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Trip {trip_id} not found")

        violations = get_trip_violations(db, trip_id)
        data = trip_record_to_dict(record, include_route=True)
        data["events"] = [event_record_to_dict(event) for event in record.events]
        data["speed_violations"] = [violation_record_to_dict(v) for v in violations]
        data["speed_stats"] = speed_stats([
            SpeedViolation(
                timestamp=v.timestamp,
                latitude=v.lat,
                longitude=v.lon,
                speed_mph=v.speed_mph,
                limit_mph=v.limit_mph,
                excess_mph=v.excess_mph,
                percentage_over=v.percentage_over,
                severity=ViolationSeverity(v.severity),
                road_name=v.road_name
            )
            for v in violations
        ]).to_dict()
        if record.final_score is not None:
            data["grade"], data["label"] = score_grade(record.final_score)
        return data

    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

@router.get("/drivers/{driver_id}/events")
def get_driver_events_endpoint(
    driver_id: str,
    db: Session = Depends(get_db),
    event_type: Optional[str] = Query(None, description="Filter by event type"),
    limit: int = Query(100, ge=1, le=1000, description="Number of events to return"),
    offset: int = Query(0, ge=0, description="Number of events to skip")
) -> List[Dict[str, Any]]:
    """Get events for a specific driver."""
    try:
        events = get_driver_events(db, driver_id, limit, offset, event_type)
        return [event_record_to_dict(event) for event in events]

    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

@router.get("/events/stats")
def get_events_stats(
    db: Session = Depends(get_db),
    driver_id: Optional[str] = Query(None, description="Filter by driver ID")
) -> Dict[str, Any]:
    """Get event statistics."""
    try:
        return get_event_stats(db, driver_id)

    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

@router.get("/config")
def get_config(registry: SessionRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Thresholds the engine is running with."""
    config = registry.config
    return {
        "trip": config.get_trip_config(),
        "detection": config.get_detection_config(),
        "speed": config.get_speed_config(),
        "scoring": config.get_scoring_config()
    }
