"""Trip lifecycle state machine.

Idle -> Detecting -> Active <-> Stopped -> Ended -> Idle, driven by a stream
of timestamped samples. While Active every sample extends the route, runs
the maneuver classifiers through dwell timers and feeds the speed limit
monitor.
"""
import logging
import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, Optional

from .config import Config
from .detection import (
    EventCandidate,
    classify_phone_distraction,
    compute_acceleration_g,
    detect_maneuvers,
    is_distracted,
)
from .domain import (
    DrivingEvent,
    EventType,
    RoutePoint,
    Sample,
    Severity,
    SpeedViolation,
    Trip,
    TripOutcome,
    TripState,
    ViolationSeverity,
    is_aware,
)
from .dwell import SustainedCondition
from .exceptions import InvalidSampleError
from .geo import distance_m, kmh_to_mps, mps_to_kmh
from .notifications import TripNotification, TripNotifier
from .speed_limits import SpeedLimitMonitor

logger = logging.getLogger(__name__)

DISCARD_TOO_SHORT_DISTANCE = "too_short_distance"
DISCARD_TOO_SHORT_DURATION = "too_short_duration"

_VIOLATION_EVENT_SEVERITY = {
    ViolationSeverity.MINOR: Severity.LOW,
    ViolationSeverity.MODERATE: Severity.MEDIUM,
    ViolationSeverity.SEVERE: Severity.HIGH,
    ViolationSeverity.EXTREME: Severity.HIGH,
}


def _new_id() -> str:
    return str(uuid.uuid4())


class TripTracker:
    """Owns the lifecycle of one trip at a time for a single sample stream.

    Samples must arrive in increasing timestamp order; older or duplicate
    samples are ignored. Corrupt samples raise ``InvalidSampleError``.
    All mutation happens under one lock, so a tracker can be fed from
    several threads.
    """

    def __init__(self, config: Config,
                 speed_monitor: Optional[SpeedLimitMonitor] = None,
                 notifier: Optional[TripNotifier] = None,
                 finalizer: Optional[Callable[[Trip], TripOutcome]] = None,
                 id_factory: Callable[[], str] = _new_id):
        self.config = config
        self.speed_monitor = speed_monitor
        self.notifier = notifier or TripNotifier()
        self.finalizer = finalizer
        self.id_factory = id_factory

        self.state = TripState.IDLE
        self.current_trip: Optional[Trip] = None
        self.last_outcome: Optional[TripOutcome] = None

        self._lock = threading.RLock()
        self._last_sample: Optional[Sample] = None
        self._moving_since: Optional[datetime] = None
        self._stopped_since: Optional[datetime] = None
        self._last_update_at: Optional[datetime] = None

        self._maneuvers: Dict[EventType, SustainedCondition] = {
            EventType.HARD_BRAKE: SustainedCondition(config.accel_min_dwell_s, gap_s=config.event_merge_gap_s),
            EventType.RAPID_ACCELERATION: SustainedCondition(config.accel_min_dwell_s, gap_s=config.event_merge_gap_s),
            EventType.SHARP_TURN: SustainedCondition(config.sharp_turn_min_dwell_s, gap_s=config.event_merge_gap_s),
        }
        self._peaks: Dict[EventType, EventCandidate] = {}
        self._distraction = SustainedCondition(config.phone_min_duration_s)

    @property
    def start_speed_mps(self) -> float:
        return kmh_to_mps(self.config.start_speed_kmh)

    @property
    def stop_speed_mps(self) -> float:
        return kmh_to_mps(self.config.stop_speed_kmh)

    def submit(self, sample: Sample) -> bool:
        """Process one sample. Returns False if it was ignored as out of order."""
        sample.validate()

        with self._lock:
            prev = self._last_sample
            if prev is not None and sample.timestamp <= prev.timestamp:
                logger.debug(f"Ignoring out-of-order sample at {sample.timestamp.isoformat()}")
                return False
            self._last_sample = sample

            if self.state == TripState.IDLE:
                self._handle_idle(sample)
            elif self.state == TripState.DETECTING:
                self._handle_detecting(sample)
            elif self.state == TripState.ACTIVE:
                self._handle_active(sample, prev)
            elif self.state == TripState.STOPPED:
                self._handle_stopped(sample, prev)
            return True

    def stop_trip(self, now: Optional[datetime] = None) -> Optional[TripOutcome]:
        """Force the current trip to end regardless of the stopped timer."""
        if now is not None and not is_aware(now):
            raise InvalidSampleError(f"Stop time must carry a UTC offset: {now.isoformat()}")
        with self._lock:
            if self.state in (TripState.ACTIVE, TripState.STOPPED):
                end_time = now
                if self._last_sample is not None and (end_time is None or end_time < self._last_sample.timestamp):
                    end_time = self._last_sample.timestamp
                logger.info("Trip stopped manually")
                return self._end_trip(end_time)

            if self.state == TripState.DETECTING:
                logger.info("Trip detection cancelled")
                self._reset()
            return None

    def snapshot(self) -> dict:
        """Current state for status endpoints."""
        with self._lock:
            return {
                'state': self.state.value,
                'trip': self.current_trip.to_dict() if self.current_trip else None,
                'last_sample_at': self._last_sample.timestamp.isoformat() if self._last_sample else None
            }

    def _handle_idle(self, sample: Sample) -> None:
        if sample.speed_mps >= self.start_speed_mps:
            self._moving_since = sample.timestamp
            self.state = TripState.DETECTING
            logger.info(f"Detecting trip start (speed: {mps_to_kmh(sample.speed_mps):.1f} km/h)")

    def _handle_detecting(self, sample: Sample) -> None:
        if sample.speed_mps < self.start_speed_mps:
            self._moving_since = None
            self.state = TripState.IDLE
            logger.info("False start - speed dropped")
            return

        moving_for = (sample.timestamp - self._moving_since).total_seconds()
        if moving_for >= self.config.start_duration_s:
            self._start_trip(sample)

    def _handle_active(self, sample: Sample, prev: Optional[Sample]) -> None:
        trip = self.current_trip
        last = trip.last_point

        trip.route.append(RoutePoint(sample.latitude, sample.longitude, sample.timestamp, sample.speed_mps))
        if last is not None:
            trip.distance_m += distance_m(last.latitude, last.longitude, sample.latitude, sample.longitude)
        trip.duration_s = max(trip.duration_s, (sample.timestamp - trip.start_time).total_seconds())
        trip.max_speed_mps = max(trip.max_speed_mps, sample.speed_mps)
        if trip.duration_s > 0:
            trip.average_speed_mps = trip.distance_m / trip.duration_s

        self._track_maneuvers(sample, prev)
        self._track_distraction(sample)
        self._track_speed(sample)

        if self._update_due(sample.timestamp):
            self._last_update_at = sample.timestamp
            self.notifier.publish(TripNotification.UPDATED, trip)

        if sample.speed_mps < self.stop_speed_mps:
            self._stopped_since = sample.timestamp
            self.state = TripState.STOPPED
            logger.info(f"Vehicle stopped (speed: {mps_to_kmh(sample.speed_mps):.1f} km/h)")

    def _handle_stopped(self, sample: Sample, prev: Optional[Sample]) -> None:
        if sample.speed_mps >= self.start_speed_mps:
            self._stopped_since = None
            self.state = TripState.ACTIVE
            logger.info("Trip resumed")
            self._handle_active(sample, prev)
            return

        self._track_distraction(sample)

        stopped_for = (sample.timestamp - self._stopped_since).total_seconds()
        if stopped_for >= self.config.stop_duration_s:
            self._end_trip(sample.timestamp)

    def _start_trip(self, sample: Sample) -> None:
        trip = Trip(
            id=self.id_factory(),
            start_time=sample.timestamp,
            max_speed_mps=sample.speed_mps,
            average_speed_mps=sample.speed_mps,
            route=[RoutePoint(sample.latitude, sample.longitude, sample.timestamp, sample.speed_mps)]
        )
        self.current_trip = trip
        self.state = TripState.ACTIVE
        self._stopped_since = None
        self._last_update_at = sample.timestamp
        self._clear_detectors()

        logger.info(f"Trip started: {trip.id} at {sample.latitude:.6f}, {sample.longitude:.6f} "
                    f"({mps_to_kmh(sample.speed_mps):.1f} km/h)")
        self.notifier.publish(TripNotification.STARTED, trip)

    def _end_trip(self, end_time: datetime) -> TripOutcome:
        trip = self.current_trip

        # An open distraction episode still counts when the trip ends
        duration = self._distraction.release(end_time)
        if duration is not None:
            self._record_candidate(classify_phone_distraction(duration, self.config), end_time)

        self._clear_detectors()
        trip.finish(end_time)
        self.state = TripState.ENDED

        reason = None
        if trip.distance_m < self.config.min_trip_distance_m:
            reason = DISCARD_TOO_SHORT_DISTANCE
        elif trip.duration_s < self.config.min_trip_duration_s:
            reason = DISCARD_TOO_SHORT_DURATION

        if reason is not None:
            logger.info(f"Trip too short, discarding: {trip.distance_m:.0f}m "
                        f"(min: {self.config.min_trip_distance_m:.0f}m), {trip.duration_s:.0f}s "
                        f"(min: {self.config.min_trip_duration_s:.0f}s)")
            outcome = TripOutcome(trip=trip, discarded=True, discard_reason=reason)
        else:
            logger.info(f"Trip ended: {trip.id} distance={trip.distance_m / 1000:.2f} km "
                        f"duration={trip.duration_s / 60:.1f} min points={len(trip.route)} "
                        f"events={len(trip.events)}")
            outcome = self._finalize(trip)

        self.last_outcome = outcome
        self.notifier.publish(TripNotification.ENDED, outcome)
        self._reset()
        return outcome

    def _finalize(self, trip: Trip) -> TripOutcome:
        if self.finalizer is None:
            return TripOutcome(trip=trip)
        try:
            return self.finalizer(trip)
        except Exception as e:
            logger.exception(f"Failed to finalize trip {trip.id}")
            return TripOutcome(trip=trip, persist_error=str(e))

    def _reset(self) -> None:
        self.current_trip = None
        self.state = TripState.IDLE
        self._moving_since = None
        self._stopped_since = None
        self._last_update_at = None
        self._clear_detectors()

    def _clear_detectors(self) -> None:
        for condition in self._maneuvers.values():
            condition.reset()
        self._peaks.clear()
        self._distraction.reset()
        if self.speed_monitor is not None:
            self.speed_monitor.reset()

    def _update_due(self, now: datetime) -> bool:
        if self._last_update_at is None:
            return True
        return (now - self._last_update_at).total_seconds() >= self.config.trip_update_interval_s

    def _track_maneuvers(self, sample: Sample, prev: Optional[Sample]) -> None:
        accel_long_g = sample.accel_long_g
        if accel_long_g is None and prev is not None:
            accel_long_g = compute_acceleration_g(prev.speed_mps, prev.timestamp, sample.speed_mps, sample.timestamp)

        candidates = {c.type: c for c in detect_maneuvers(sample, accel_long_g, self.config)}

        for event_type, condition in self._maneuvers.items():
            candidate = candidates.get(event_type)
            if candidate is not None:
                peak = self._peaks.get(event_type)
                if peak is None or candidate.magnitude > peak.magnitude:
                    self._peaks[event_type] = candidate

            if condition.update(candidate is not None, sample.timestamp):
                self._record_candidate(self._peaks.get(event_type), sample.timestamp)

            if not condition.active:
                self._peaks.pop(event_type, None)

    def _track_distraction(self, sample: Sample) -> None:
        if self._distraction.active:
            if sample.app_foreground is True:
                duration = self._distraction.release(sample.timestamp)
                self._record_candidate(classify_phone_distraction(duration, self.config), sample.timestamp)
            else:
                self._distraction.update(True, sample.timestamp)
        elif self.state == TripState.ACTIVE and is_distracted(sample, self.config):
            self._distraction.update(True, sample.timestamp)
            logger.info("Phone distraction started (app backgrounded)")

    def _track_speed(self, sample: Sample) -> None:
        if self.speed_monitor is None:
            return
        try:
            violation = self.speed_monitor.update(sample)
        except Exception:
            # Speed monitoring must never break trip tracking
            logger.exception("Speed monitoring error")
            return
        if violation is not None:
            self._record_violation(violation)

    def _record_candidate(self, candidate: Optional[EventCandidate], timestamp: datetime) -> None:
        if candidate is None:
            return
        point = self.current_trip.last_point
        event = DrivingEvent(
            id=self.id_factory(),
            type=candidate.type,
            timestamp=timestamp,
            latitude=point.latitude,
            longitude=point.longitude,
            severity=candidate.severity,
            magnitude=candidate.magnitude,
            description=candidate.description
        )
        self.current_trip.events.append(event)
        logger.info(f"{event.description} - Severity: {event.severity.value}")

    def _record_violation(self, violation: SpeedViolation) -> None:
        self.current_trip.speed_violations.append(violation)
        self._record_candidate(EventCandidate(
            type=EventType.SPEEDING,
            severity=_VIOLATION_EVENT_SEVERITY[violation.severity],
            magnitude=violation.excess_mph,
            description=f"Speeding {violation.excess_mph:.1f} mph over {violation.limit_mph:.0f} mph limit"
        ), violation.timestamp)
