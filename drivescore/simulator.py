"""Sample sources for demos and tests: a synthetic trip generator and CSV replay."""
import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional

import numpy as np
import pandas as pd

from .domain import Sample, TripOutcome
from .exceptions import InvalidSampleError
from .geo import STANDARD_GRAVITY, distance_m, mps_to_kmh
from .session import SessionRegistry, TrackingSession

logger = logging.getLogger(__name__)

# Starting point: Philadelphia
START_LAT = 39.9526
START_LON = -75.1652
DEGREES_PER_METER = 1 / 111000

SAMPLE_COLUMNS = [
    "timestamp", "lat", "lon", "speed_mps", "heading", "accuracy",
    "accel_long_g", "accel_lat_g", "app_foreground", "road_class",
]


def generate_trip_frame(duration_s: int = 300,
                        start_time: Optional[datetime] = None,
                        start_lat: float = START_LAT,
                        start_lon: float = START_LON,
                        idle_tail_s: int = 0,
                        seed: Optional[int] = 0) -> pd.DataFrame:
    """Build a one-sample-per-second trip with scripted driving events.

    Profile: accelerate over 10 s, cruise around 13 m/s, harsh brake at
    30-32 s, harsh acceleration at 60-62 s, harsh corner at 90-93 s, app
    backgrounded at 120-140 s, decelerate over the last 10 s. ``idle_tail_s``
    appends stationary samples so the trip can end on its own.
    """
    rng = np.random.default_rng(seed)
    start_time = start_time or datetime.now(timezone.utc)

    lat, lon = start_lat, start_lon
    heading = 90.0  # East
    rows = []

    for t in range(duration_s):
        if t < 10:
            speed = (t / 10) * 15
        elif t > duration_s - 10:
            speed = ((duration_s - t) / 10) * 15
        else:
            speed = 13 + math.sin(t / 20) * 2

        ax = 0.0
        if 30 <= t <= 32:
            ax = -5.0
            speed = max(0.0, speed - 2)
        if 60 <= t <= 62:
            ax = 4.5
            speed = min(20.0, speed + 2)

        ay = 0.0
        if 90 <= t <= 93:
            ay = 4.5
            heading += 10

        lat += speed * math.cos(math.radians(heading)) * DEGREES_PER_METER
        lon += speed * math.sin(math.radians(heading)) * DEGREES_PER_METER / math.cos(math.radians(lat))
        heading += rng.uniform(-1, 1)

        rows.append({
            "timestamp": start_time + timedelta(seconds=t),
            "lat": lat,
            "lon": lon,
            "speed_mps": speed,
            "heading": heading % 360,
            "accuracy": 3 + rng.uniform(0, 2),
            "accel_long_g": (ax + rng.uniform(-0.1, 0.1)) / STANDARD_GRAVITY,
            "accel_lat_g": (ay + rng.uniform(-0.1, 0.1)) / STANDARD_GRAVITY,
            "app_foreground": not (120 <= t <= 140),
            "road_class": None,
        })

    for t in range(duration_s, duration_s + idle_tail_s):
        rows.append({
            "timestamp": start_time + timedelta(seconds=t),
            "lat": lat,
            "lon": lon,
            "speed_mps": 0.0,
            "heading": heading % 360,
            "accuracy": 3.0,
            "accel_long_g": 0.0,
            "accel_lat_g": 0.0,
            "app_foreground": True,
            "road_class": None,
        })

    return pd.DataFrame(rows, columns=SAMPLE_COLUMNS)


def load_samples_csv(csv_path: str, track_id=None) -> pd.DataFrame:
    """Read recorded samples from CSV, sorted by time.

    The time column may be ``timestamp`` or ``time``. Without a speed column,
    speed is derived from consecutive positions. A ``track_id`` column, when
    present, can be used to pick one track.
    """
    df = pd.read_csv(csv_path)
    if "timestamp" not in df.columns and "time" in df.columns:
        df = df.rename(columns={"time": "timestamp"})
    if "timestamp" not in df.columns:
        raise ValueError(f"{csv_path} has no timestamp/time column")

    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    if track_id is not None and "track_id" in df.columns:
        df = df[df["track_id"] == track_id]
    df = df.sort_values("timestamp").reset_index(drop=True)

    if not {"speed_mps", "speed_kph", "speed_mph"} & set(df.columns):
        df["speed_mps"] = derive_speeds(df)

    logger.info(f"Loaded {len(df)} samples from {csv_path}")
    return df


def derive_speeds(df: pd.DataFrame) -> List[float]:
    """Speed in m/s between consecutive positions; the first point gets 0."""
    speeds = [0.0]
    for prev, cur in zip(df.iloc[:-1].itertuples(), df.iloc[1:].itertuples()):
        elapsed = (cur.timestamp - prev.timestamp).total_seconds()
        if elapsed <= 0:
            speeds.append(speeds[-1])
            continue
        speeds.append(distance_m(prev.lat, prev.lon, cur.lat, cur.lon) / elapsed)
    return speeds


def frame_to_samples(df: pd.DataFrame) -> Iterator[Sample]:
    """Turn frame rows into validated samples, skipping rows that fail validation."""
    for index, record in enumerate(df.to_dict("records")):
        payload = {key: (None if _is_missing(value) else value) for key, value in record.items()}
        timestamp = payload.get("timestamp")
        if isinstance(timestamp, pd.Timestamp):
            payload["timestamp"] = timestamp.to_pydatetime()
        try:
            yield Sample.from_payload(payload)
        except InvalidSampleError as e:
            logger.warning(f"Skipping row {index}: {e}")


def _is_missing(value) -> bool:
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def replay(session: TrackingSession, samples, stop_at_end: bool = False) -> List[TripOutcome]:
    """Feed samples through a session synchronously and collect ended trips."""
    outcomes: List[TripOutcome] = []
    subscription = session.notifier.on_trip_end(outcomes.append)
    try:
        for sample in samples:
            session.submit(sample)
        if stop_at_end:
            session.stop_trip()
    finally:
        subscription.unsubscribe()
    return outcomes


class Simulator:
    """Paces frames into a session registry in real time, one task per driver."""

    def __init__(self, registry: SessionRegistry, interval: float = 1.0):
        self.registry = registry
        self.interval = interval
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def running_drivers(self) -> List[str]:
        return sorted(d for d, task in self._tasks.items() if not task.done())

    def start(self, driver_id: str, frame: pd.DataFrame, interval: Optional[float] = None) -> bool:
        """Schedule a replay on the running loop; False if this driver is already simulating."""
        task = self._tasks.get(driver_id)
        if task is not None and not task.done():
            logger.info(f"Simulation already running for {driver_id}")
            return False

        pace = self.interval if interval is None else interval
        self._tasks[driver_id] = asyncio.get_running_loop().create_task(self.run(driver_id, frame, pace))
        return True

    async def run(self, driver_id: str, frame: pd.DataFrame, interval: float) -> int:
        """Submit every row to the driver's session, sleeping ``interval`` between samples."""
        session = self.registry.get(driver_id)
        logger.info(f"Starting simulation for {driver_id}: {len(frame)} samples every {interval}s")

        submitted = 0
        try:
            for sample in frame_to_samples(frame):
                session.submit(sample)
                submitted += 1
                if submitted % 60 == 0:
                    logger.debug(f"{driver_id}: {submitted}/{len(frame)} samples, "
                                 f"{mps_to_kmh(sample.speed_mps):.1f} km/h, {session.state.value}")
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info(f"Simulation stopped for {driver_id} after {submitted} samples")
            raise
        finally:
            session.stop_trip()

        logger.info(f"Simulation completed for {driver_id}: {submitted} samples")
        return submitted

    def stop(self, driver_id: Optional[str] = None) -> List[str]:
        """Cancel one driver's simulation, or all of them."""
        stopped = []
        for key, task in list(self._tasks.items()):
            if driver_id is not None and key != driver_id:
                continue
            if not task.done():
                task.cancel()
                stopped.append(key)
        return stopped
