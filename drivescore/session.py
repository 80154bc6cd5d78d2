"""Per-driver tracking sessions and the registry the service uses to look them up."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .config import Config
from .domain import DriverScoreState, Sample, Trip, TripOutcome, TripState
from .interfaces import DriverScoreStore, SpeedLimitProvider, TripSink
from .notifications import TripNotification, TripNotifier
from .scoring import score_trip, update_driver_score
from .speed_limits import FixedSpeedLimitProvider, SpeedLimitCache, SpeedLimitMonitor
from .tracker import TripTracker

logger = logging.getLogger(__name__)


class TrackingSession:
    """One driver's sample stream: tracker, speed monitor, scoring and storage.

    Collaborators are injected; any of them may be omitted. Storage failures
    are logged and reported on the outcome's ``persist_error`` but never stop
    the trip from being reported on the trip-ended channel.
    """

    def __init__(self, driver_id: str,
                 config: Optional[Config] = None,
                 speed_limit_provider: Optional[SpeedLimitProvider] = None,
                 sink: Optional[TripSink] = None,
                 score_store: Optional[DriverScoreStore] = None,
                 notifier: Optional[TripNotifier] = None,
                 cache: Optional[SpeedLimitCache] = None,
                 executor=None):
        self.driver_id = driver_id
        self.config = config or Config()
        self.sink = sink
        self.score_store = score_store
        self.notifier = notifier or TripNotifier()
        self.speed_monitor = SpeedLimitMonitor(speed_limit_provider, self.config, cache=cache, executor=executor)
        self.tracker = TripTracker(
            self.config,
            speed_monitor=self.speed_monitor,
            notifier=self.notifier,
            finalizer=self._finalize_trip
        )
        self._score: Optional[DriverScoreState] = None
        self.trips_completed = 0
        self.trips_discarded = 0
        self.notifier.on_trip_end(self._count_outcome)

    @property
    def state(self) -> TripState:
        return self.tracker.state

    def submit(self, sample: Sample) -> bool:
        return self.tracker.submit(sample)

    def submit_payload(self, payload: Dict[str, Any], speed_unit: str = "mps") -> bool:
        return self.tracker.submit(Sample.from_payload(payload, speed_unit))

    def stop_trip(self, now: Optional[datetime] = None) -> Optional[TripOutcome]:
        return self.tracker.stop_trip(now)

    def driver_score(self) -> DriverScoreState:
        """Current rolling score, or the cold-start default for a new driver."""
        state = self._load_score()
        if state is None:
            return DriverScoreState(value=self.config.driver_score_cold_start, updated_at=None)
        return state

    def snapshot(self) -> dict:
        data = self.tracker.snapshot()
        data.update({
            'driver_id': self.driver_id,
            'driver_score': self.driver_score().to_dict(),
            'speed_limit_mph': self.speed_monitor.current_limit.limit_mph,
            'trips_completed': self.trips_completed,
            'trips_discarded': self.trips_discarded
        })
        return data

    def _count_outcome(self, outcome: TripOutcome) -> None:
        if outcome.discarded:
            self.trips_discarded += 1
        else:
            self.trips_completed += 1

    def _load_score(self) -> Optional[DriverScoreState]:
        if self.score_store is None:
            return self._score
        try:
            stored = self.score_store.load(self.driver_id)
        except Exception as e:
            logger.error(f"Could not load driver score for {self.driver_id}: {e}")
            return self._score
        return stored if stored is not None else self._score

    def _finalize_trip(self, trip: Trip) -> TripOutcome:
        previous = self._load_score()
        breakdown = score_trip(trip, self.config, previous.last_base_score if previous else None)
        state = update_driver_score(previous, breakdown, trip.end_time, self.config)
        self._score = state

        outcome = TripOutcome(trip=trip, breakdown=breakdown, driver_score=state)
        errors = []

        if self.score_store is not None:
            try:
                self.score_store.store(self.driver_id, state)
            except Exception as e:
                logger.error(f"Failed to store driver score for {self.driver_id}: {e}")
                errors.append(str(e))

        if self.sink is not None:
            try:
                outcome.record_id = self.sink.save(self.driver_id, trip, breakdown)
            except Exception as e:
                logger.error(f"Failed to save trip {trip.id} for {self.driver_id}: {e}")
                errors.append(str(e))

        if errors:
            outcome.persist_error = "; ".join(errors)

        logger.info(f"Trip {trip.id} scored {breakdown.final_score:.1f} "
                    f"(base {breakdown.base_score:.1f}, bonus {breakdown.improvement_bonus:.1f})")
        return outcome


SessionListener = Callable[[str, TripNotification, Any], None]


class SessionRegistry:
    """One ``TrackingSession`` per driver, sharing a speed limit cache and lookup pool."""

    def __init__(self, config: Optional[Config] = None,
                 speed_limit_provider: Optional[SpeedLimitProvider] = None,
                 sink: Optional[TripSink] = None,
                 score_store: Optional[DriverScoreStore] = None,
                 lookup_workers: int = 0):
        self.config = config or Config()
        self.speed_limit_provider = speed_limit_provider or \
            FixedSpeedLimitProvider(self.config.default_speed_limit_kmh)
        self.sink = sink
        self.score_store = score_store
        self.cache = SpeedLimitCache(
            ttl_s=self.config.speed_limit_cache_ttl_s,
            precision=self.config.speed_limit_cache_precision
        )
        self.executor = ThreadPoolExecutor(
            max_workers=lookup_workers,
            thread_name_prefix="speed-limit"
        ) if lookup_workers > 0 else None

        self._sessions: Dict[str, TrackingSession] = {}
        self._listeners: List[SessionListener] = []
        self._lock = threading.Lock()

    def get(self, driver_id: str) -> TrackingSession:
        """Return the driver's session, creating it on first use."""
        with self._lock:
            session = self._sessions.get(driver_id)
            if session is None:
                session = TrackingSession(
                    driver_id,
                    config=self.config,
                    speed_limit_provider=self.speed_limit_provider,
                    sink=self.sink,
                    score_store=self.score_store,
                    cache=self.cache,
                    executor=self.executor
                )
                session.notifier.subscribe_all(
                    lambda kind, payload, driver_id=driver_id: self._forward(driver_id, kind, payload)
                )
                self._sessions[driver_id] = session
                logger.info(f"Tracking session created for {driver_id}")
            return session

    def find(self, driver_id: str) -> Optional[TrackingSession]:
        with self._lock:
            return self._sessions.get(driver_id)

    def driver_score(self, driver_id: str) -> DriverScoreState:
        """Rolling score for any driver without opening a session for them."""
        session = self.find(driver_id)
        if session is not None:
            return session.driver_score()
        state = None
        if self.score_store is not None:
            try:
                state = self.score_store.load(driver_id)
            except Exception as e:
                logger.error(f"Could not load driver score for {driver_id}: {e}")
        if state is None:
            return DriverScoreState(value=self.config.driver_score_cold_start, updated_at=None)
        return state

    def driver_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def remove(self, driver_id: str) -> Optional[TripOutcome]:
        """Drop a session, ending its trip first if one is running."""
        with self._lock:
            session = self._sessions.pop(driver_id, None)
        if session is None:
            return None
        return session.stop_trip()

    def add_listener(self, listener: SessionListener) -> None:
        """Receive ``(driver_id, kind, payload)`` for every session's notifications."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def shutdown(self) -> None:
        for driver_id in self.driver_ids():
            self.remove(driver_id)
        if self.executor is not None:
            self.executor.shutdown(wait=False)

    def _forward(self, driver_id: str, kind: TripNotification, payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(driver_id, kind, payload)
            except Exception:
                logger.exception(f"Error in session listener for {driver_id}")
