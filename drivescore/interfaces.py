"""Narrow interfaces for the collaborators the engine talks to."""
from typing import Optional, Protocol

from .domain import DriverScoreState, ScoreBreakdown, Trip


class SpeedLimitProvider(Protocol):
    def lookup(self, lat: float, lon: float):
        """Return a SpeedLimit near the coordinate, None if unknown; may raise."""


class TripSink(Protocol):
    def save(self, driver_id: str, trip: Trip, breakdown: ScoreBreakdown) -> int:
        """Persist a finalized trip and return its record id; may raise."""


class DriverScoreStore(Protocol):
    def load(self, driver_id: str) -> Optional[DriverScoreState]:
        ...

    def store(self, driver_id: str, state: DriverScoreState) -> None:
        ...
