"""Stateless classifiers turning an instantaneous motion reading into a candidate event.

Dwell and debounce are the tracker's job; everything here is a pure function
of its arguments.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .config import Config
from .domain import EventType, Sample, Severity
from .geo import kmh_to_mps, mps2_to_g

MOTORWAY = "motorway"


@dataclass(frozen=True)
class EventCandidate:
    type: EventType
    severity: Severity
    magnitude: float
    description: str


def compute_acceleration_g(prev_speed_mps: float, prev_ts: datetime, speed_mps: float, ts: datetime) -> float:
    """Compute longitudinal acceleration in g from two consecutive speeds."""
    delta_s = (ts - prev_ts).total_seconds()
    if delta_s <= 0.0:
        # Avoid division by zero; treat as zero acceleration
        return 0.0
    return mps2_to_g((speed_mps - prev_speed_mps) / delta_s)


def g_severity(g_force: float, config: Config) -> Severity:
    """Bucket a g-force magnitude into low/medium/high."""
    magnitude = abs(g_force)
    if magnitude >= config.g_severity_high:
        return Severity.HIGH
    if magnitude >= config.g_severity_medium:
        return Severity.MEDIUM
    return Severity.LOW


def phone_severity(duration_s: float, config: Config) -> Severity:
    if duration_s >= config.phone_high_duration_s:
        return Severity.HIGH
    if duration_s >= config.phone_medium_duration_s:
        return Severity.MEDIUM
    return Severity.LOW


def classify_hard_brake(accel_long_g: Optional[float], config: Config) -> Optional[EventCandidate]:
    """Hard braking: longitudinal deceleration beyond the braking threshold."""
    if accel_long_g is None or accel_long_g >= config.hard_brake_threshold_g:
        return None
    return EventCandidate(
        type=EventType.HARD_BRAKE,
        severity=g_severity(accel_long_g, config),
        magnitude=abs(accel_long_g),
        description=f"Hard braking detected ({abs(accel_long_g):.2f}g)"
    )


def classify_rapid_acceleration(accel_long_g: Optional[float], config: Config) -> Optional[EventCandidate]:
    """Rapid acceleration: mirror of hard braking on the positive side."""
    if accel_long_g is None or accel_long_g <= config.rapid_accel_threshold_g:
        return None
    return EventCandidate(
        type=EventType.RAPID_ACCELERATION,
        severity=g_severity(accel_long_g, config),
        magnitude=accel_long_g,
        description=f"Rapid acceleration detected ({accel_long_g:.2f}g)"
    )


def sharp_turn_threshold_g(road_class: Optional[str], config: Config) -> float:
    if road_class == MOTORWAY:
        return config.sharp_turn_motorway_g
    return config.sharp_turn_g


def classify_sharp_turn(accel_lat_g: Optional[float], road_class: Optional[str],
                        config: Config) -> Optional[EventCandidate]:
    """Sharp cornering: lateral g above a road-class dependent threshold."""
    if accel_lat_g is None:
        return None
    lateral = abs(accel_lat_g)
    if lateral <= sharp_turn_threshold_g(road_class, config):
        return None
    return EventCandidate(
        type=EventType.SHARP_TURN,
        severity=g_severity(lateral, config),
        magnitude=lateral,
        description=f"Sharp turn detected ({lateral:.2f}g lateral)"
    )


def is_distracted(sample: Sample, config: Config) -> bool:
    """True when the driving app is backgrounded while moving above the distraction floor."""
    if sample.app_foreground is not False:
        return False
    return sample.speed_mps >= kmh_to_mps(config.phone_min_speed_kmh)


def classify_phone_distraction(duration_s: float, config: Config) -> Optional[EventCandidate]:
    """A finished distraction episode counts only if it outlasted a reflexive glance."""
    if duration_s < config.phone_min_duration_s:
        return None
    return EventCandidate(
        type=EventType.PHONE_USE,
        severity=phone_severity(duration_s, config),
        magnitude=duration_s,
        description=f"Phone distraction ({duration_s:.1f}s)"
    )


def detect_maneuvers(sample: Sample, accel_long_g: Optional[float], config: Config) -> List[EventCandidate]:
    """Run the instantaneous classifiers against one sample."""
    candidates = []

    # Braking and acceleration are mutually exclusive for one reading
    longitudinal = classify_hard_brake(accel_long_g, config) or \
        classify_rapid_acceleration(accel_long_g, config)
    if longitudinal:
        candidates.append(longitudinal)

    turn = classify_sharp_turn(sample.accel_lat_g, sample.road_class, config)
    if turn:
        candidates.append(turn)

    return candidates
