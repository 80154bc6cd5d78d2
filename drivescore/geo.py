"""Great-circle distance and unit conversions."""
import math
from typing import Iterable, Tuple

EARTH_RADIUS_M = 6371000.0
STANDARD_GRAVITY = 9.80665
METERS_PER_MILE = 1609.344

MPS_TO_KMH = 3.6
KMH_TO_MPH = 0.621371


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two GPS points in meters using Haversine formula."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2 - lon1)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    # Rounding can push a slightly above 1 for antipodal points
    c = 2 * math.asin(math.sqrt(min(1.0, a)))

    return EARTH_RADIUS_M * c


def route_distance_m(points: Iterable[Tuple[float, float]]) -> float:
    """Total distance in meters along a sequence of (lat, lon) points."""
    total = 0.0
    prev = None
    for lat, lon in points:
        if prev is not None:
            total += distance_m(prev[0], prev[1], lat, lon)
        prev = (lat, lon)
    return total


def mps_to_kmh(mps: float) -> float:
    return mps * MPS_TO_KMH


def kmh_to_mps(kmh: float) -> float:
    return kmh / MPS_TO_KMH


def kmh_to_mph(kmh: float) -> float:
    return kmh * KMH_TO_MPH


def mph_to_kmh(mph: float) -> float:
    return mph / KMH_TO_MPH


def mps_to_mph(mps: float) -> float:
    return kmh_to_mph(mps_to_kmh(mps))


def mph_to_mps(mph: float) -> float:
    return kmh_to_mps(mph_to_kmh(mph))


def meters_to_miles(meters: float) -> float:
    return meters / METERS_PER_MILE


def mps2_to_g(mps2: float) -> float:
    return mps2 / STANDARD_GRAVITY
