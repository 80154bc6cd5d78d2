"""Sustained-condition timer shared by every dwell-based detector."""
from datetime import datetime
from typing import Optional


class SustainedCondition:
    """Tracks how long a condition has held across timestamped updates.

    Parameters
    ----------
    dwell_s:
        Seconds the condition must hold continuously before ``update`` fires.
    gap_s:
        Dips shorter than this many seconds do not break the episode.
    rearm:
        If True the timer restarts after firing so a condition that keeps
        holding fires once per dwell interval. Otherwise it fires once per
        episode.
    """

    def __init__(self, dwell_s: float, gap_s: float = 0.0, rearm: bool = False):
        self.dwell_s = dwell_s
        self.gap_s = gap_s
        self.rearm = rearm
        self.started_at: Optional[datetime] = None
        self.last_true_at: Optional[datetime] = None
        self.fired = False

    @property
    def active(self) -> bool:
        return self.started_at is not None

    def elapsed_s(self, now: datetime) -> float:
        """Seconds since the current episode (or re-armed interval) began."""
        if self.started_at is None:
            return 0.0
        return max(0.0, (now - self.started_at).total_seconds())

    def update(self, condition: bool, now: datetime) -> bool:
        """Feed one observation; return True when the dwell is reached."""
        if condition:
            if self.started_at is None:
                self.started_at = now
                self.fired = False
            self.last_true_at = now

            if not self.fired and self.elapsed_s(now) >= self.dwell_s:
                if self.rearm:
                    self.started_at = now
                else:
                    self.fired = True
                return True
            return False

        if self.started_at is not None:
            since_true = (now - self.last_true_at).total_seconds()
            if self.gap_s > 0 and since_true <= self.gap_s:
                return False
            self.reset()
        return False

    def release(self, now: datetime) -> Optional[float]:
        """End the running episode and return how long it lasted, or None if idle."""
        if self.started_at is None:
            return None
        duration = self.elapsed_s(now)
        self.reset()
        return duration

    def reset(self) -> None:
        self.started_at = None
        self.last_true_at = None
        self.fired = False
