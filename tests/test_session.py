import pytest
from drivescore.config import Config
from drivescore.domain import DriverScoreState, Trend, TripState
from drivescore.notifications import TripNotification
from drivescore.session import SessionRegistry, TrackingSession
from drivescore.speed_limits import SpeedLimit
from trip_helpers import Drive, T0, feed

class CountingProvider:
    def __init__(self, limit):
        self.limit = limit
        self.calls = 0

    def lookup(self, lat, lon):
        self.calls += 1
        return self.limit

class MemorySink:
    def __init__(self, fail=False):
        self.fail = fail
        self.saved = []

    def save(self, driver_id, trip, breakdown):
        if self.fail:
            raise ConnectionError("database unavailable")
        self.saved.append((driver_id, trip, breakdown))
        return len(self.saved)

class MemoryScoreStore:
    def __init__(self, initial=None):
        self.states = dict(initial or {})

    def load(self, driver_id):
        return self.states.get(driver_id)

    def store(self, driver_id, state):
        self.states[driver_id] = state

def complete_trip(target, drive):
    """690 m over 70 s, then parked long enough for the trip to end."""
    feed(target, drive.at(10.0, 80))
    feed(target, drive.at(0.0, 125))

class TestTrackingSession:
    """Scoring and storage wired behind the tracker."""

    def setup_method(self):
        self.sink = MemorySink()
        self.store = MemoryScoreStore()
        self.session = TrackingSession("driver_1", Config(), sink=self.sink, score_store=self.store)
        self.ended = []
        self.session.notifier.on_trip_end(self.ended.append)

    def test_completed_trip_is_scored_and_saved(self):
        complete_trip(self.session, Drive())

        assert self.session.state == TripState.IDLE
        assert len(self.ended) == 1
        outcome = self.ended[0]
        assert not outcome.discarded
        assert outcome.breakdown.final_score == 100
        assert outcome.driver_score.value == pytest.approx(0.15 * 1000 + 0.85 * 760)
        assert outcome.driver_score.trend == Trend.NEW
        assert outcome.record_id == 1
        assert outcome.persist_error is None

        driver_id, trip, breakdown = self.sink.saved[0]
        assert driver_id == "driver_1"
        assert trip.distance_m == pytest.approx(690, rel=1e-6)
        assert self.store.states["driver_1"] is outcome.driver_score
        assert self.session.trips_completed == 1

    def test_second_trip_uses_stored_score(self):
        drive = Drive()
        complete_trip(self.session, drive)
        complete_trip(self.session, drive)

        first, second = self.ended
        assert second.driver_score.trip_count == 2
        assert second.driver_score.trend == Trend.STABLE
        assert second.driver_score.value == pytest.approx(0.15 * 1000 + 0.85 * first.driver_score.value)

    def test_discarded_trip_not_scored(self):
        drive = Drive()
        feed(self.session, drive.at(7.5, 50))
        feed(self.session, drive.at(0.0, 125))

        outcome = self.ended[0]
        assert outcome.discarded
        assert outcome.breakdown is None
        assert self.sink.saved == []
        assert self.session.trips_discarded == 1

    def test_sink_failure_reported_on_outcome(self):
        """A storage failure is reported but the trip still ends and is published."""
        session = TrackingSession("driver_2", Config(), sink=MemorySink(fail=True), score_store=self.store)
        ended = []
        session.notifier.on_trip_end(ended.append)

        complete_trip(session, Drive())

        assert len(ended) == 1
        assert "database unavailable" in ended[0].persist_error
        assert ended[0].breakdown is not None
        assert session.state == TripState.IDLE
        assert "driver_2" in self.store.states

    def test_driver_score_cold_start(self):
        state = self.session.driver_score()
        assert state.value == 760
        assert state.updated_at is None

    def test_driver_score_from_store(self):
        stored = DriverScoreState(value=812.0, updated_at=T0, trip_count=9)
        session = TrackingSession("driver_3", Config(), score_store=MemoryScoreStore({"driver_3": stored}))
        assert session.driver_score() is stored

    def test_submit_payload(self):
        drive = Drive()
        for payload in drive.payloads(10.0, 20):
            self.session.submit_payload(payload)
        assert self.session.state == TripState.ACTIVE

        outcome = self.session.stop_trip()
        assert outcome is not None
        assert outcome.discarded

    def test_snapshot(self):
        feed(self.session, Drive().at(10.0, 20))
        snapshot = self.session.snapshot()
        assert snapshot["driver_id"] == "driver_1"
        assert snapshot["state"] == "active"
        assert snapshot["trip"]["point_count"] == 10
        assert snapshot["speed_limit_mph"] == pytest.approx(35.0)
        assert snapshot["driver_score"]["value"] == 760

class TestSessionRegistry:
    """Per-driver sessions behind one registry."""

    def setup_method(self):
        self.registry = SessionRegistry(Config())
        self.events = []
        self.registry.add_listener(lambda driver_id, kind, payload: self.events.append((driver_id, kind)))

    def teardown_method(self):
        self.registry.shutdown()

    def test_one_session_per_driver(self):
        first = self.registry.get("driver_1")
        assert self.registry.get("driver_1") is first
        assert self.registry.get("driver_2") is not first
        assert self.registry.driver_ids() == ["driver_1", "driver_2"]
        assert self.registry.find("driver_3") is None

    def test_sessions_share_speed_limit_cache(self):
        provider = CountingProvider(SpeedLimit(60.0))
        registry = SessionRegistry(Config(), speed_limit_provider=provider)
        first, second = registry.get("driver_1"), registry.get("driver_2")
        assert first.speed_monitor.cache is second.speed_monitor.cache is registry.cache

        first.speed_monitor.update(Drive().at(10.0, 1)[0])
        second.speed_monitor.update(Drive().at(10.0, 1)[0])
        assert provider.calls == 1
        assert second.speed_monitor.current_limit.limit_kmh == 60.0
        registry.shutdown()

    def test_driver_score_lookup_opens_no_session(self):
        store = MemoryScoreStore({"driver_1": DriverScoreState(value=812.0, updated_at=T0, trip_count=3)})
        registry = SessionRegistry(Config(), score_store=store)
        assert registry.driver_score("driver_1").value == 812.0
        assert self.registry.driver_score("driver_1").value == 760
        assert registry.driver_ids() == []
        assert self.registry.driver_ids() == []
        registry.shutdown()

    def test_sessions_are_independent(self):
        feed(self.registry.get("driver_1"), Drive().at(10.0, 20))
        feed(self.registry.get("driver_2"), Drive().at(2.0, 20))
        assert self.registry.get("driver_1").state == TripState.ACTIVE
        assert self.registry.get("driver_2").state == TripState.IDLE

    def test_listener_receives_driver_notifications(self):
        complete_trip(self.registry.get("driver_1"), Drive())
        kinds = [kind for driver_id, kind in self.events if driver_id == "driver_1"]
        assert kinds[0] == TripNotification.STARTED
        assert kinds[-1] == TripNotification.ENDED

    def test_failing_listener_isolated(self):
        def broken(driver_id, kind, payload):
            raise RuntimeError("boom")

        self.registry.add_listener(broken)
        feed(self.registry.get("driver_1"), Drive().at(10.0, 20))
        assert self.registry.get("driver_1").state == TripState.ACTIVE
        assert (("driver_1", TripNotification.STARTED)) in self.events

    def test_remove_ends_running_trip(self):
        feed(self.registry.get("driver_1"), Drive().at(10.0, 80))
        outcome = self.registry.remove("driver_1")
        assert outcome is not None
        assert not outcome.discarded
        assert self.registry.find("driver_1") is None
        assert self.registry.remove("driver_1") is None
