from datetime import datetime, timedelta
from drivescore.dwell import SustainedCondition

T0 = datetime(2024, 1, 1, 8, 0, 0)

def at(seconds):
    return T0 + timedelta(seconds=seconds)

class TestSustainedCondition:
    """Start / extend / expire semantics of the dwell timer."""

    def test_fires_once_dwell_reached(self):
        condition = SustainedCondition(dwell_s=2.0)
        assert condition.update(True, at(0)) is False
        assert condition.update(True, at(1)) is False
        assert condition.update(True, at(2)) is True
        assert condition.active

    def test_latches_without_rearm(self):
        """Without re-arm an episode fires once however long it lasts."""
        condition = SustainedCondition(dwell_s=1.0)
        fired = [condition.update(True, at(t)) for t in range(10)]
        assert fired.count(True) == 1

    def test_rearm_fires_once_per_dwell_interval(self):
        condition = SustainedCondition(dwell_s=10.0, rearm=True)
        fired = [t for t in range(16) if condition.update(True, at(t))]
        assert fired == [10]

        fired = [t for t in range(16, 31) if condition.update(True, at(t))]
        assert fired == [20, 30]

    def test_false_resets_episode(self):
        condition = SustainedCondition(dwell_s=2.0)
        condition.update(True, at(0))
        condition.update(True, at(1))
        condition.update(False, at(2))
        assert not condition.active
        assert condition.update(True, at(3)) is False

    def test_short_gap_tolerated(self):
        """A dip shorter than the gap keeps the episode alive."""
        condition = SustainedCondition(dwell_s=1.0, gap_s=0.5)
        condition.update(True, at(0))
        condition.update(False, at(0.4))
        assert condition.active
        assert condition.update(True, at(1.0)) is True

    def test_long_gap_breaks_episode(self):
        condition = SustainedCondition(dwell_s=1.0, gap_s=0.5)
        condition.update(True, at(0))
        condition.update(False, at(0.8))
        assert not condition.active

    def test_release_reports_duration(self):
        condition = SustainedCondition(dwell_s=3.0)
        assert condition.release(at(0)) is None
        condition.update(True, at(5))
        condition.update(True, at(9))
        assert condition.release(at(12)) == 7.0
        assert not condition.active

    def test_reset(self):
        condition = SustainedCondition(dwell_s=1.0)
        condition.update(True, at(0))
        condition.update(True, at(2))
        condition.reset()
        assert not condition.active
        assert not condition.fired
        assert condition.elapsed_s(at(5)) == 0.0
