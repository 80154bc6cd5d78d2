"""Trip, event and score data model shared by the tracker, scoring and storage layers."""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import InvalidSampleError
from .geo import kmh_to_mps, mph_to_mps


class TripState(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    ACTIVE = "active"
    STOPPED = "stopped"
    ENDED = "ended"


class EventType(str, Enum):
    HARD_BRAKE = "hard_brake"
    RAPID_ACCELERATION = "rapid_acceleration"
    SPEEDING = "speeding"
    PHONE_USE = "phone_use"
    SHARP_TURN = "sharp_turn"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ViolationSeverity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"
    EXTREME = "extreme"


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"
    NEW = "new"


_SPEED_UNITS = {
    "mps": lambda v: v,
    "kmh": kmh_to_mps,
    "kph": kmh_to_mps,
    "mph": mph_to_mps,
}


def is_aware(value: datetime) -> bool:
    return value.tzinfo is not None and value.utcoffset() is not None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError as e:
            raise InvalidSampleError(f"Unparseable timestamp: {value!r}") from e
    raise InvalidSampleError("Sample is missing a timestamp")


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def _optional_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes')
    return bool(value)


@dataclass(frozen=True)
class Sample:
    """One location/motion observation. Speed is always stored in m/s."""

    timestamp: datetime
    latitude: float
    longitude: float
    speed_mps: float
    heading_deg: Optional[float] = None
    accuracy_m: Optional[float] = None
    accel_long_g: Optional[float] = None
    """Longitudinal acceleration in g. Negative = braking."""
    accel_lat_g: Optional[float] = None
    """Lateral acceleration in g."""
    app_foreground: Optional[bool] = None
    """False while the driver has left the driving app (distraction proxy)."""
    road_class: Optional[str] = None

    def validate(self) -> None:
        """Raise InvalidSampleError if the sample cannot be trusted at all."""
        if not isinstance(self.timestamp, datetime):
            raise InvalidSampleError("Sample timestamp must be a datetime")
        if not is_aware(self.timestamp):
            raise InvalidSampleError(f"Sample timestamp must carry a UTC offset: {self.timestamp.isoformat()}")
        for name in ("latitude", "longitude", "speed_mps"):
            value = getattr(self, name)
            if value is None or not math.isfinite(value):
                raise InvalidSampleError(f"Sample {name} must be a finite number, got {value!r}")
        if not -90.0 <= self.latitude <= 90.0:
            raise InvalidSampleError(f"Latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise InvalidSampleError(f"Longitude out of range: {self.longitude}")
        if self.speed_mps < 0:
            raise InvalidSampleError(f"Negative speed: {self.speed_mps}")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], speed_unit: str = "mps") -> "Sample":
        """Build a validated sample from a loosely-typed dict, normalizing speed to m/s.

        Accepts ``speed_mps``, ``speed_kph`` or ``speed_mph`` keys, or a bare
        ``speed`` interpreted in ``speed_unit``. A missing speed reads as 0.
        """
        if speed_unit not in _SPEED_UNITS:
            raise InvalidSampleError(f"Unknown speed unit: {speed_unit}")

        lat = payload.get('lat', payload.get('latitude'))
        lon = payload.get('lon', payload.get('longitude'))
        if lat is None or lon is None:
            raise InvalidSampleError("Sample is missing coordinates")

        try:
            if payload.get('speed_mps') is not None:
                speed = float(payload['speed_mps'])
            elif payload.get('speed_kph') is not None:
                speed = kmh_to_mps(float(payload['speed_kph']))
            elif payload.get('speed_mph') is not None:
                speed = mph_to_mps(float(payload['speed_mph']))
            else:
                speed = _SPEED_UNITS[speed_unit](float(payload.get('speed') or 0.0))

            sample = cls(
                timestamp=_parse_timestamp(payload.get('timestamp')),
                latitude=float(lat),
                longitude=float(lon),
                speed_mps=speed,
                heading_deg=_optional_float(payload.get('heading')),
                accuracy_m=_optional_float(payload.get('accuracy')),
                accel_long_g=_optional_float(payload.get('accel_long_g')),
                accel_lat_g=_optional_float(payload.get('accel_lat_g')),
                app_foreground=_optional_bool(payload.get('app_foreground')),
                road_class=payload.get('road_class'),
            )
        except InvalidSampleError:
            raise
        except (TypeError, ValueError) as e:
            raise InvalidSampleError(f"Malformed sample payload: {e}") from e
        sample.validate()
        return sample


@dataclass(frozen=True)
class RoutePoint:
    latitude: float
    longitude: float
    timestamp: datetime
    speed_mps: float


@dataclass(frozen=True)
class DrivingEvent:
    """A discrete driving event recorded during a trip."""

    id: str
    type: EventType
    timestamp: datetime
    latitude: float
    longitude: float
    severity: Severity
    magnitude: float
    """g-force, mph over the limit, or seconds distracted depending on ``type``."""
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'timestamp': self.timestamp.isoformat(),
            'lat': self.latitude,
            'lon': self.longitude,
            'severity': self.severity.value,
            'magnitude': self.magnitude,
            'description': self.description
        }


@dataclass(frozen=True)
class SpeedViolation:
    timestamp: datetime
    latitude: float
    longitude: float
    speed_mph: float
    limit_mph: float
    excess_mph: float
    percentage_over: float
    severity: ViolationSeverity
    road_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'lat': self.latitude,
            'lon': self.longitude,
            'speed_mph': self.speed_mph,
            'limit_mph': self.limit_mph,
            'excess_mph': self.excess_mph,
            'percentage_over': self.percentage_over,
            'severity': self.severity.value,
            'road_name': self.road_name
        }


@dataclass
class Trip:
    """Accumulator for one trip, mutated only by the tracker that owns it."""

    id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    distance_m: float = 0.0
    duration_s: float = 0.0
    max_speed_mps: float = 0.0
    average_speed_mps: float = 0.0
    route: List[RoutePoint] = field(default_factory=list)
    events: List[DrivingEvent] = field(default_factory=list)
    speed_violations: List[SpeedViolation] = field(default_factory=list)

    @property
    def last_point(self) -> Optional[RoutePoint]:
        return self.route[-1] if self.route else None

    def finish(self, end_time: datetime) -> None:
        """Set the end time. A trip can only be finished once."""
        if self.end_time is not None:
            raise RuntimeError(f"Trip {self.id} already ended at {self.end_time.isoformat()}")
        self.end_time = end_time

    def count_events(self, event_type: EventType) -> int:
        return sum(1 for e in self.events if e.type == event_type)

    def to_dict(self, include_route: bool = False) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'distance_m': self.distance_m,
            'duration_s': self.duration_s,
            'max_speed_mps': self.max_speed_mps,
            'average_speed_mps': self.average_speed_mps,
            'point_count': len(self.route),
            'events': [e.to_dict() for e in self.events],
            'speed_violations': [v.to_dict() for v in self.speed_violations]
        }
        if include_route:
            data['route'] = [
                {
                    'lat': p.latitude,
                    'lon': p.longitude,
                    'timestamp': p.timestamp.isoformat(),
                    'speed_mps': p.speed_mps
                }
                for p in self.route
            ]
        return data


@dataclass(frozen=True)
class TripMetrics:
    """Per-trip counters handed to the scoring engine."""

    start_time: datetime
    distance_miles: float
    hard_brakes: int = 0
    rapid_accelerations: int = 0
    phone_events: int = 0
    sharp_turns: int = 0
    speed_violations: int = 0


@dataclass(frozen=True)
class ScoreMetrics:
    total_trips: int
    total_miles: float
    total_hard_brakes: int
    total_rapid_accelerations: int
    total_phone_events: int
    night_trips: int
    average_miles_per_trip: float
    hard_brakes_per_mile: float
    rapid_accels_per_mile: float
    phone_events_per_trip: float


@dataclass(frozen=True)
class ScoreBreakdown:
    # Component scores (0-100)
    hard_braking_score: float
    rapid_acceleration_score: float
    night_driving_score: float
    mileage_score: float
    phone_distraction_score: float

    # Weighted contributions
    hard_braking_contribution: float
    rapid_acceleration_contribution: float
    night_driving_contribution: float
    mileage_contribution: float
    phone_distraction_contribution: float

    base_score: float
    improvement_bonus: float
    final_score: float
    metrics: ScoreMetrics

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DriverScoreState:
    """Rolling driver-level score on the 0-1000 scale."""

    value: float
    updated_at: Optional[datetime]
    trend: Trend = Trend.NEW
    last_base_score: Optional[float] = None
    trip_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'value': self.value,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'trend': self.trend.value,
            'last_base_score': self.last_base_score,
            'trip_count': self.trip_count
        }


@dataclass
class TripOutcome:
    """What the tracker reports on the trip-ended channel."""

    trip: Trip
    discarded: bool = False
    discard_reason: Optional[str] = None
    breakdown: Optional[ScoreBreakdown] = None
    driver_score: Optional[DriverScoreState] = None
    record_id: Optional[int] = None
    persist_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trip': self.trip.to_dict(),
            'discarded': self.discarded,
            'discard_reason': self.discard_reason,
            'breakdown': self.breakdown.to_dict() if self.breakdown else None,
            'driver_score': self.driver_score.to_dict() if self.driver_score else None,
            'record_id': self.record_id,
            'persist_error': self.persist_error
        }
