"""Legal speed limit cache and the sustained-overspeed monitor."""
import logging
import threading
from concurrent.futures import Executor, Future
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .config import Config
from .domain import Sample, SpeedViolation, ViolationSeverity
from .dwell import SustainedCondition
from .exceptions import SpeedLimitLookupError
from .geo import kmh_to_mph, mph_to_kmh, mps_to_mph

logger = logging.getLogger(__name__)

# Rough time spent overspeeding per recorded violation, for stats
SECONDS_PER_VIOLATION = 5


@dataclass(frozen=True)
class SpeedLimit:
    limit_kmh: float
    confidence: str = "high"
    road_name: Optional[str] = None

    @property
    def limit_mph(self) -> float:
        return kmh_to_mph(self.limit_kmh)


class FixedSpeedLimitProvider:
    """Answers every lookup with one configured limit."""

    def __init__(self, limit_kmh: float, confidence: str = "low"):
        self.limit_kmh = limit_kmh
        self.confidence = confidence

    def lookup(self, lat: float, lon: float) -> SpeedLimit:
        return SpeedLimit(limit_kmh=self.limit_kmh, confidence=self.confidence)


class SpeedLimitCache:
    """Speed limits keyed by coarse location, safe to share between sessions.

    Entries carry the sample time they were requested for; a write that is
    older than the stored entry is dropped, so a late refresh never
    overwrites a newer answer.
    """

    def __init__(self, ttl_s: float = 3600.0, precision: int = 3):
        self.ttl_s = ttl_s
        self.precision = precision
        self._entries: Dict[Tuple[float, float], Tuple[SpeedLimit, datetime]] = {}
        self._lock = threading.Lock()

    def key(self, lat: float, lon: float) -> Tuple[float, float]:
        return (round(lat, self.precision), round(lon, self.precision))

    def get(self, lat: float, lon: float, now: datetime) -> Optional[SpeedLimit]:
        """Return the cached limit for this cell, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(self.key(lat, lon))
        if entry is None:
            return None
        limit, as_of = entry
        if abs((now - as_of).total_seconds()) > self.ttl_s:
            return None
        return limit

    def put(self, lat: float, lon: float, limit: SpeedLimit, as_of: datetime) -> bool:
        """Store a limit; return False if a newer value already won."""
        key = self.key(lat, lon)
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing[1] > as_of:
                return False
            self._entries[key] = (limit, as_of)
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def classify_overspeed(speed_mph: float, limit_mph: float) -> Tuple[float, Optional[ViolationSeverity]]:
    """Return (excess mph, severity), with severity None when not over the limit."""
    excess = speed_mph - limit_mph
    if excess <= 0:
        return 0.0, None
    if excess <= 10:
        return excess, ViolationSeverity.MINOR
    if excess <= 20:
        return excess, ViolationSeverity.MODERATE
    if excess <= 30:
        return excess, ViolationSeverity.SEVERE
    return excess, ViolationSeverity.EXTREME


@dataclass(frozen=True)
class SpeedStats:
    total_violations: int = 0
    minor_violations: int = 0
    moderate_violations: int = 0
    severe_violations: int = 0
    extreme_violations: int = 0
    total_time_overspeeding_s: float = 0.0
    max_excess_mph: float = 0.0
    average_excess_mph: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def speed_stats(violations: List[SpeedViolation]) -> SpeedStats:
    """Summarize a trip's speed violations."""
    if not violations:
        return SpeedStats()

    def count(severity: ViolationSeverity) -> int:
        return sum(1 for v in violations if v.severity == severity)

    return SpeedStats(
        total_violations=len(violations),
        minor_violations=count(ViolationSeverity.MINOR),
        moderate_violations=count(ViolationSeverity.MODERATE),
        severe_violations=count(ViolationSeverity.SEVERE),
        extreme_violations=count(ViolationSeverity.EXTREME),
        total_time_overspeeding_s=len(violations) * SECONDS_PER_VIOLATION,
        max_excess_mph=max(v.excess_mph for v in violations),
        average_excess_mph=sum(v.excess_mph for v in violations) / len(violations)
    )


class SpeedLimitMonitor:
    """Tracks the legal limit around the vehicle and emits sustained overspeed violations.

    Provider lookups are rate-limited to one per ``speed_limit_refresh_s`` of
    sample time. With an ``executor`` the lookup runs in the background and
    the previous (or fallback) limit is used until it lands in the cache;
    without one the lookup runs inline. Provider failures always degrade to
    the configured fallback limit.
    """

    def __init__(self, provider, config: Config,
                 cache: Optional[SpeedLimitCache] = None,
                 executor: Optional[Executor] = None):
        self.provider = provider
        self.config = config
        self.cache = cache if cache is not None else SpeedLimitCache(
            ttl_s=config.speed_limit_cache_ttl_s,
            precision=config.speed_limit_cache_precision
        )
        self.executor = executor
        self.fallback = SpeedLimit(
            limit_kmh=mph_to_kmh(config.fallback_speed_limit_mph),
            confidence="low"
        )
        self._overspeed = SustainedCondition(dwell_s=config.speeding_dwell_s, rearm=True)
        self._limit: Optional[SpeedLimit] = None
        self._last_refresh: Optional[datetime] = None
        self._in_flight: Dict[Tuple[float, float], Future] = {}
        self._lock = threading.Lock()

    @property
    def current_limit(self) -> SpeedLimit:
        with self._lock:
            return self._limit or self.fallback

    @property
    def overspeeding(self) -> bool:
        return self._overspeed.active

    def update(self, sample: Sample) -> Optional[SpeedViolation]:
        """Check one sample; return a violation once overspeeding has lasted the dwell."""
        limit = self._resolve_limit(sample)
        speed_mph = mps_to_mph(sample.speed_mps)
        excess, severity = classify_overspeed(speed_mph, limit.limit_mph)

        if not self._overspeed.update(severity is not None, sample.timestamp):
            return None

        percentage = (excess / limit.limit_mph) * 100 if limit.limit_mph > 0 else 0.0
        violation = SpeedViolation(
            timestamp=sample.timestamp,
            latitude=sample.latitude,
            longitude=sample.longitude,
            speed_mph=speed_mph,
            limit_mph=limit.limit_mph,
            excess_mph=excess,
            percentage_over=percentage,
            severity=severity,
            road_name=limit.road_name
        )
        logger.info(f"Speed violation: {excess:.1f} mph over {limit.limit_mph:.0f} mph limit ({severity.value})")
        return violation

    def reset(self) -> None:
        """Forget per-trip state. The shared cache is kept."""
        self._overspeed.reset()
        with self._lock:
            self._limit = None
            self._last_refresh = None

    def _resolve_limit(self, sample: Sample) -> SpeedLimit:
        now = sample.timestamp
        cached = self.cache.get(sample.latitude, sample.longitude, now)
        if cached is not None:
            with self._lock:
                self._limit = cached
            return cached

        due = self._last_refresh is None or \
            (now - self._last_refresh).total_seconds() >= self.config.speed_limit_refresh_s
        if due:
            self._last_refresh = now
            if self.executor is None:
                self._refresh_inline(sample)
            else:
                self._refresh_async(sample)

        return self.current_limit

    def _refresh_inline(self, sample: Sample) -> None:
        try:
            limit = self._lookup(sample.latitude, sample.longitude)
        except Exception as e:
            logger.warning(f"Speed limit lookup failed, using fallback: {e}")
            with self._lock:
                self._limit = None
            return
        self.cache.put(sample.latitude, sample.longitude, limit, sample.timestamp)
        with self._lock:
            self._limit = limit

    def _refresh_async(self, sample: Sample) -> None:
        key = self.cache.key(sample.latitude, sample.longitude)
        with self._lock:
            if key in self._in_flight:
                return
        try:
            future = self.executor.submit(self._lookup, sample.latitude, sample.longitude)
        except RuntimeError as e:
            logger.warning(f"Could not schedule speed limit lookup: {e}")
            return
        with self._lock:
            self._in_flight[key] = future
        future.add_done_callback(
            lambda f: self._on_lookup_done(key, sample.latitude, sample.longitude, sample.timestamp, f)
        )

    def _on_lookup_done(self, key, lat: float, lon: float, as_of: datetime, future: Future) -> None:
        with self._lock:
            self._in_flight.pop(key, None)
        try:
            limit = future.result()
        except Exception as e:
            logger.warning(f"Background speed limit lookup failed, using fallback: {e}")
            with self._lock:
                self._limit = None
            return
        if not self.cache.put(lat, lon, limit, as_of):
            logger.debug(f"Discarded stale speed limit for {key}")

    def _lookup(self, lat: float, lon: float) -> SpeedLimit:
        if self.provider is None:
            raise SpeedLimitLookupError("No speed limit provider configured")
        result = self.provider.lookup(lat, lon)
        if result is None:
            raise SpeedLimitLookupError(f"No speed limit known near {lat:.5f},{lon:.5f}")
        return result
