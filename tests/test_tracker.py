import pytest
from datetime import timedelta
from drivescore.config import Config
from drivescore.domain import EventType, Sample, Severity, TripOutcome, TripState
from drivescore.exceptions import InvalidSampleError
from drivescore.geo import route_distance_m
from drivescore.notifications import TripNotification, TripNotifier
from drivescore.speed_limits import FixedSpeedLimitProvider, SpeedLimitMonitor
from drivescore.tracker import (
    DISCARD_TOO_SHORT_DISTANCE,
    TripTracker,
)
from trip_helpers import Drive, T0, feed

def drive_to_active(tracker, drive, speed=10.0, count=20):
    """Start moving and run past the start dwell."""
    feed(tracker, drive.at(speed, count))
    assert tracker.state == TripState.ACTIVE

class TestTripStart:
    """Idle -> Detecting -> Active transitions."""

    def setup_method(self):
        self.config = Config()
        self.tracker = TripTracker(self.config)
        self.drive = Drive()

    def test_stays_idle_below_start_speed(self):
        """A stream held below the start speed never leaves Idle."""
        for sample in self.drive.at(4.0, 300):
            self.tracker.submit(sample)
            assert self.tracker.state == TripState.IDLE
        assert self.tracker.current_trip is None

    def test_detecting_then_active_after_start_duration(self):
        """Movement must be sustained for the start duration before a trip starts."""
        feed(self.tracker, self.drive.at(10.0, 1))
        assert self.tracker.state == TripState.DETECTING

        feed(self.tracker, self.drive.at(10.0, 9))
        assert self.tracker.state == TripState.DETECTING

        feed(self.tracker, self.drive.at(10.0, 1))
        assert self.tracker.state == TripState.ACTIVE
        trip = self.tracker.current_trip
        assert trip.start_time == self.drive.now
        assert len(trip.route) == 1

    def test_false_start_returns_to_idle(self):
        """Dropping below the start speed while detecting is a false start."""
        feed(self.tracker, self.drive.at(10.0, 5))
        feed(self.tracker, self.drive.at(2.0, 1))
        assert self.tracker.state == TripState.IDLE

    def test_idle_never_jumps_to_active(self):
        """Even with no start dwell, the first fast sample only reaches Detecting."""
        tracker = TripTracker(Config(start_duration_s=0))
        feed(tracker, self.drive.at(10.0, 1))
        assert tracker.state == TripState.DETECTING
        feed(tracker, self.drive.at(10.0, 1))
        assert tracker.state == TripState.ACTIVE

class TestTripAccumulation:
    """Route, distance and duration while Active."""

    def setup_method(self):
        self.tracker = TripTracker(Config())
        self.drive = Drive()

    def test_distance_matches_route_and_never_decreases(self):
        """Distance is the sum of pairwise great-circle distances along the route."""
        drive_to_active(self.tracker, self.drive)
        distances = []
        for speed in (10.0, 12.0, 8.0, 15.0):
            for sample in self.drive.at(speed, 10):
                self.tracker.submit(sample)
                distances.append(self.tracker.current_trip.distance_m)

        assert distances == sorted(distances)
        trip = self.tracker.current_trip
        expected = route_distance_m((p.latitude, p.longitude) for p in trip.route)
        assert trip.distance_m == pytest.approx(expected, rel=1e-9)
        # 10 samples each at 10, 12, 8 and 15 m/s plus 9 cruise steps at 10 m/s
        assert trip.distance_m == pytest.approx(90 + 100 + 120 + 80 + 150, rel=1e-6)

    def test_duration_and_speeds(self):
        """Duration counts from the start sample; max and average speed are tracked."""
        drive_to_active(self.tracker, self.drive)
        feed(self.tracker, self.drive.at(20.0, 10))
        trip = self.tracker.current_trip
        assert trip.duration_s == pytest.approx(19.0)
        assert trip.max_speed_mps == 20.0
        assert trip.average_speed_mps == pytest.approx(trip.distance_m / trip.duration_s)

    def test_out_of_order_and_duplicate_samples_ignored(self):
        """Old or repeated timestamps are ignored and never move totals backward."""
        drive_to_active(self.tracker, self.drive)
        samples = self.drive.at(10.0, 5)
        feed(self.tracker, samples)
        trip = self.tracker.current_trip
        distance, duration, points = trip.distance_m, trip.duration_s, len(trip.route)

        assert self.tracker.submit(samples[2]) is False
        assert self.tracker.submit(samples[-1]) is False
        assert (trip.distance_m, trip.duration_s, len(trip.route)) == (distance, duration, points)

    def test_corrupt_sample_rejected(self):
        """Corrupt coordinates or speed raise a typed error at ingestion."""
        with pytest.raises(InvalidSampleError):
            self.tracker.submit(Sample(timestamp=T0, latitude=120.0, longitude=0.0, speed_mps=5.0))
        with pytest.raises(InvalidSampleError):
            self.tracker.submit(Sample(timestamp=T0, latitude=10.0, longitude=0.0, speed_mps=float("nan")))
        with pytest.raises(InvalidSampleError):
            self.tracker.submit(Sample(timestamp=T0, latitude=10.0, longitude=0.0, speed_mps=-1.0))

    def test_naive_timestamp_rejected(self):
        """Timestamps without a UTC offset cannot be ordered against the stream."""
        drive_to_active(self.tracker, self.drive)
        last = self.drive.now
        naive = Sample(timestamp=last.replace(tzinfo=None) + timedelta(seconds=1),
                       latitude=self.drive.lat, longitude=self.drive.lon, speed_mps=10.0)

        with pytest.raises(InvalidSampleError):
            self.tracker.submit(naive)
        with pytest.raises(InvalidSampleError):
            self.tracker.stop_trip(last.replace(tzinfo=None))
        assert self.tracker.state == TripState.ACTIVE

class TestTripEnd:
    """Active -> Stopped -> Ended and trip validation."""

    def setup_method(self):
        self.finalized = []
        self.ended = []
        self.notifier = TripNotifier()
        self.notifier.on_trip_end(self.ended.append)
        self.tracker = TripTracker(Config(), notifier=self.notifier, finalizer=self._finalize)
        self.drive = Drive()

    def _finalize(self, trip):
        self.finalized.append(trip)
        return TripOutcome(trip=trip, record_id=7)

    def test_stopped_then_resume(self):
        """Slowing below the stop speed pauses the trip; regaining start speed resumes it."""
        drive_to_active(self.tracker, self.drive)
        feed(self.tracker, self.drive.at(0.0, 10))
        assert self.tracker.state == TripState.STOPPED

        feed(self.tracker, self.drive.at(3.0, 10))
        assert self.tracker.state == TripState.STOPPED

        points = len(self.tracker.current_trip.route)
        feed(self.tracker, self.drive.at(10.0, 1))
        assert self.tracker.state == TripState.ACTIVE
        assert len(self.tracker.current_trip.route) == points + 1

    def test_trip_ends_after_stop_duration(self):
        """The trip ends once stopped for the stop duration and the tracker resets."""
        feed(self.tracker, self.drive.at(10.0, 80))
        feed(self.tracker, self.drive.at(0.0, 120))
        assert self.tracker.state == TripState.STOPPED

        feed(self.tracker, self.drive.at(0.0, 1))
        assert self.tracker.state == TripState.IDLE
        assert self.tracker.current_trip is None

        assert len(self.ended) == 1
        outcome = self.ended[0]
        assert not outcome.discarded
        assert outcome.record_id == 7
        assert outcome.trip.end_time == self.drive.now
        assert outcome.trip.distance_m == pytest.approx(690.0, rel=1e-6)
        assert outcome.trip.duration_s == pytest.approx(70.0)

    def test_short_trip_discarded(self):
        """About 300 m over 40 s is parking-lot noise: discarded, never finalized."""
        feed(self.tracker, self.drive.at(7.5, 50))
        feed(self.tracker, self.drive.at(0.0, 121))

        assert len(self.ended) == 1
        outcome = self.ended[0]
        assert outcome.discarded
        assert outcome.discard_reason == DISCARD_TOO_SHORT_DISTANCE
        assert outcome.trip.distance_m < 500
        assert outcome.trip.duration_s < 60
        assert self.finalized == []

    def test_minimum_trip_kept(self):
        """600 m over 70 s passes both minimums and is finalized."""
        feed(self.tracker, self.drive.at(600.0 / 69, 80))
        feed(self.tracker, self.drive.at(0.0, 121))

        outcome = self.ended[0]
        assert not outcome.discarded
        assert outcome.trip.distance_m == pytest.approx(600.0, rel=1e-6)
        assert outcome.trip.duration_s == pytest.approx(70.0)
        assert self.finalized == [outcome.trip]

    def test_short_duration_reason(self):
        """A fast but brief trip is discarded for its duration."""
        tracker = TripTracker(Config(), notifier=self.notifier)
        feed(tracker, self.drive.at(30.0, 40))
        outcome = tracker.stop_trip()
        assert outcome.discarded
        assert outcome.discard_reason == "too_short_duration"

    def test_forced_stop(self):
        """stop_trip ends the trip immediately at the last sample time."""
        feed(self.tracker, self.drive.at(10.0, 80))
        outcome = self.tracker.stop_trip()

        assert outcome is self.ended[0]
        assert outcome.trip.end_time == self.drive.now
        assert self.tracker.state == TripState.IDLE
        assert self.tracker.stop_trip() is None

    def test_forced_stop_while_detecting(self):
        """Stopping before a trip exists just cancels detection."""
        feed(self.tracker, self.drive.at(10.0, 3))
        assert self.tracker.stop_trip() is None
        assert self.tracker.state == TripState.IDLE
        assert self.ended == []

    def test_finalizer_failure_still_reported(self):
        """A failing finalizer is recorded on the outcome; the trip still ends."""
        def explode(trip):
            raise RuntimeError("disk full")

        tracker = TripTracker(Config(), notifier=self.notifier, finalizer=explode)
        feed(tracker, self.drive.at(10.0, 80))
        outcome = tracker.stop_trip()
        assert outcome.persist_error == "disk full"
        assert tracker.state == TripState.IDLE

class TestNotifications:
    """Start / update / end notifications."""

    def test_lifecycle_notifications(self):
        """One start, updates while Active, one end carrying the outcome."""
        notifier = TripNotifier()
        seen = []
        notifier.subscribe_all(lambda kind, payload: seen.append(kind))
        tracker = TripTracker(Config(), notifier=notifier)
        drive = Drive()

        feed(tracker, drive.at(10.0, 80))
        tracker.stop_trip()

        assert seen.count(TripNotification.STARTED) == 1
        assert seen.count(TripNotification.ENDED) == 1
        assert seen.count(TripNotification.UPDATED) == 69
        assert seen[0] == TripNotification.STARTED
        assert seen[-1] == TripNotification.ENDED

    def test_update_interval(self):
        """Updates are throttled to the configured interval."""
        notifier = TripNotifier()
        updates = []
        notifier.on_trip_update(updates.append)
        tracker = TripTracker(Config(trip_update_interval_s=10), notifier=notifier)

        feed(tracker, Drive().at(10.0, 50))
        # Active from t=11, updates at t=21, 31, 41
        assert len(updates) == 3

    def test_failing_subscriber_does_not_break_tracking(self):
        """An exception in one subscriber does not affect others or the state machine."""
        notifier = TripNotifier()
        started = []

        def broken(trip):
            raise ValueError("boom")

        notifier.on_trip_start(broken)
        notifier.on_trip_start(started.append)
        tracker = TripTracker(Config(), notifier=notifier)

        feed(tracker, Drive().at(10.0, 20))
        assert tracker.state == TripState.ACTIVE
        assert len(started) == 1

class TestManeuverEvents:
    """Dwell-gated maneuver detection inside the tracker."""

    def setup_method(self):
        self.tracker = TripTracker(Config())
        self.drive = Drive()
        drive_to_active(self.tracker, self.drive)

    def events(self, event_type):
        return [e for e in self.tracker.current_trip.events if e.type == event_type]

    def test_sustained_hard_brake_recorded_once(self):
        """A braking episode past the dwell yields exactly one event."""
        feed(self.tracker, self.drive.at(10.0, 3, accel_long_g=-0.5))
        feed(self.tracker, self.drive.at(10.0, 5))

        brakes = self.events(EventType.HARD_BRAKE)
        assert len(brakes) == 1
        assert brakes[0].severity == Severity.MEDIUM
        assert brakes[0].magnitude == pytest.approx(0.5)
        assert brakes[0].latitude == self.tracker.current_trip.route[22 - 11].latitude

    def test_single_spike_ignored(self):
        """A one-sample spike never outlasts the dwell."""
        feed(self.tracker, self.drive.at(10.0, 1, accel_long_g=-0.8))
        feed(self.tracker, self.drive.at(10.0, 5))
        assert self.events(EventType.HARD_BRAKE) == []

    def test_braking_derived_from_speed(self):
        """Without an accelerometer reading, deceleration comes from the speed change."""
        feed(self.tracker, self.drive.at(20.0, 1))
        feed(self.tracker, self.drive.at(14.0, 1))
        feed(self.tracker, self.drive.at(8.0, 1))
        feed(self.tracker, self.drive.at(8.0, 5))

        brakes = self.events(EventType.HARD_BRAKE)
        assert len(brakes) == 1
        assert brakes[0].magnitude == pytest.approx(6.0 / 9.80665)

    def test_rapid_acceleration(self):
        feed(self.tracker, self.drive.at(10.0, 3, accel_long_g=0.45))
        feed(self.tracker, self.drive.at(10.0, 3))
        assert len(self.events(EventType.RAPID_ACCELERATION)) == 1

    def test_sharp_turn_uses_motorway_threshold(self):
        """0.38 g lateral is sharp on surface streets but not on a motorway."""
        feed(self.tracker, self.drive.at(10.0, 3, accel_lat_g=0.38, road_class="motorway"))
        feed(self.tracker, self.drive.at(10.0, 3))
        assert self.events(EventType.SHARP_TURN) == []

        feed(self.tracker, self.drive.at(10.0, 3, accel_lat_g=0.38))
        feed(self.tracker, self.drive.at(10.0, 3))
        assert len(self.events(EventType.SHARP_TURN)) == 1

class TestPhoneDistraction:
    """Distraction episodes from app foreground changes."""

    def setup_method(self):
        self.tracker = TripTracker(Config())
        self.drive = Drive()
        drive_to_active(self.tracker, self.drive)

    def phone_events(self, trip=None):
        trip = trip or self.tracker.current_trip
        return [e for e in trip.events if e.type == EventType.PHONE_USE]

    def test_episode_recorded_when_app_returns(self):
        feed(self.tracker, self.drive.at(10.0, 5, app_foreground=False))
        assert self.phone_events() == []

        feed(self.tracker, self.drive.at(10.0, 1, app_foreground=True))
        events = self.phone_events()
        assert len(events) == 1
        assert events[0].magnitude == pytest.approx(5.0)
        assert events[0].severity == Severity.LOW

    def test_glance_ignored(self):
        """Episodes shorter than the minimum are not distraction."""
        feed(self.tracker, self.drive.at(10.0, 2, app_foreground=False))
        feed(self.tracker, self.drive.at(10.0, 1, app_foreground=True))
        assert self.phone_events() == []

    def test_open_episode_flushed_on_stop(self):
        """An episode still open when the trip ends is recorded."""
        feed(self.tracker, self.drive.at(10.0, 12, app_foreground=False))
        outcome = self.tracker.stop_trip()
        events = self.phone_events(outcome.trip)
        assert len(events) == 1
        assert events[0].magnitude == pytest.approx(11.0)
        assert events[0].severity == Severity.MEDIUM

    def test_slow_backgrounding_ignored(self):
        """Backgrounding below the distraction speed floor does not start an episode."""
        feed(self.tracker, self.drive.at(0.0, 1))
        feed(self.tracker, self.drive.at(0.0, 10, app_foreground=False))
        assert self.tracker.state == TripState.STOPPED
        feed(self.tracker, self.drive.at(0.0, 1, app_foreground=True))
        assert self.phone_events() == []

class TestSpeedingInTrip:
    """Speed violations flow into the trip and its event list."""

    def test_sustained_overspeed_recorded_once(self):
        """15 s above the limit yields exactly one violation and one speeding event."""
        config = Config()
        monitor = SpeedLimitMonitor(FixedSpeedLimitProvider(50.0), config)
        tracker = TripTracker(config, speed_monitor=monitor)
        drive = Drive()

        drive_to_active(tracker, drive)
        feed(tracker, drive.at(20.0, 16))
        feed(tracker, drive.at(10.0, 10))

        trip = tracker.current_trip
        assert len(trip.speed_violations) == 1
        speeding = [e for e in trip.events if e.type == EventType.SPEEDING]
        assert len(speeding) == 1
        assert speeding[0].severity == Severity.MEDIUM
        assert speeding[0].magnitude == pytest.approx(trip.speed_violations[0].excess_mph)

    def test_provider_failure_never_breaks_tracking(self):
        """A provider that always fails degrades to the fallback limit."""
        class BrokenProvider:
            def lookup(self, lat, lon):
                raise TimeoutError("provider down")

        config = Config()
        tracker = TripTracker(config, speed_monitor=SpeedLimitMonitor(BrokenProvider(), config))
        drive = Drive()
        drive_to_active(tracker, drive)
        # 20 m/s is about 44.7 mph, over the 35 mph fallback
        feed(tracker, drive.at(20.0, 12))
        assert tracker.state == TripState.ACTIVE
        assert len(tracker.current_trip.speed_violations) == 1
        assert tracker.current_trip.speed_violations[0].limit_mph == pytest.approx(35.0)
