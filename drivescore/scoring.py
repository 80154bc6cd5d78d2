"""Driver scoring: per-trip and per-period composites plus the rolling driver score.

Everything here is a pure function of its inputs and the ``Config`` passed in.
Composite scores live on a 0-100 scale; the rolling driver score lives on
0-``driver_score_max`` (1000 by default).
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from .config import Config
from .domain import (
    DriverScoreState,
    EventType,
    ScoreBreakdown,
    ScoreMetrics,
    Trend,
    Trip,
    TripMetrics,
)
from .geo import meters_to_miles

logger = logging.getLogger(__name__)

PERFECT_SCORE = 100.0

GRADES = (
    (90, "A", "Excellent"),
    (80, "B", "Good"),
    (70, "C", "Average"),
    (60, "D", "Below Average"),
)

DRIVER_RATINGS = (
    (700, "Excellent"),
    (600, "Good"),
    (500, "Average"),
    (400, "Below Average"),
)


def _clamp(value: float, low: float = 0.0, high: float = PERFECT_SCORE) -> float:
    return max(low, min(high, value))


def _rate_score(rate: float, benchmark: float) -> float:
    # The rate is measured against the "poor" level, twice the average
    # benchmark: 0 -> 100, 1x benchmark -> 75, 2x benchmark -> 50.
    if benchmark <= 0:
        return PERFECT_SCORE if rate <= 0 else 0.0
    ratio = min(rate / (2 * benchmark), 2)
    return _clamp(PERFECT_SCORE * (1 - ratio / 2))


def hard_braking_score(hard_brakes: int, miles: float, config: Config) -> float:
    """Hard braking component from hard brakes per mile."""
    if miles <= 0:
        return PERFECT_SCORE
    return _rate_score(hard_brakes / miles, config.hard_brakes_per_mile_benchmark)


def rapid_acceleration_score(rapid_accels: int, miles: float, config: Config) -> float:
    """Same shape as hard braking."""
    if miles <= 0:
        return PERFECT_SCORE
    return _rate_score(rapid_accels / miles, config.rapid_accels_per_mile_benchmark)


def night_driving_score(night_trips: int, total_trips: int, config: Config) -> float:
    """Share of trips started at night against the allowed maximum share."""
    if total_trips <= 0:
        return PERFECT_SCORE
    proportion = night_trips / total_trips
    return _clamp(PERFECT_SCORE * (1 - proportion / config.night_max_proportion))


def mileage_score(average_miles_per_trip: float, config: Config) -> float:
    """Lose ``mileage_penalty_per_mile`` (as a fraction) per mile over the benchmark."""
    miles_over = max(0.0, average_miles_per_trip - config.mileage_benchmark_miles)
    return _clamp(PERFECT_SCORE - miles_over * config.mileage_penalty_per_mile * PERFECT_SCORE)


def phone_distraction_score(phone_events: int, total_trips: int, config: Config) -> float:
    """Same shape as hard braking, rate = phone events per trip."""
    if total_trips <= 0:
        return PERFECT_SCORE
    return _rate_score(phone_events / total_trips, config.phone_events_per_trip_benchmark)


def is_night_trip(start_time: datetime, config: Config) -> bool:
    """Night is an hour-of-day window that wraps midnight, 21:00 to 06:00 by default.

    The hour is read in ``night_timezone`` when one is configured, otherwise in
    whatever offset the timestamp carries. Naive timestamps are read as given.
    """
    if config.night_timezone and start_time.tzinfo is not None:
        start_time = start_time.astimezone(ZoneInfo(config.night_timezone))
    hour = start_time.hour
    if config.night_start_hour > config.night_end_hour:
        return hour >= config.night_start_hour or hour < config.night_end_hour
    return config.night_start_hour <= hour < config.night_end_hour


def calculate_improvement_bonus(current_base: float, previous_base: Optional[float], config: Config) -> float:
    """Bonus points for improving on the previous base score.

    Nothing below ``improvement_threshold_pct``; above it the bonus equals the
    percent improvement, capped at ``improvement_max_bonus``.
    """
    if previous_base is None or previous_base <= 0:
        return 0.0
    improvement_pct = (current_base - previous_base) / previous_base * 100
    if improvement_pct < config.improvement_threshold_pct:
        return 0.0
    return max(0.0, min(improvement_pct, config.improvement_max_bonus))


def percent_change(current: float, previous: Optional[float]) -> Optional[float]:
    if previous is None or previous == 0:
        return None
    return (current - previous) / previous * 100


def classify_trend(current_base: float, previous_base: Optional[float], config: Config) -> Trend:
    change = percent_change(current_base, previous_base)
    if previous_base is None:
        return Trend.NEW
    if change is None:
        return Trend.IMPROVING if current_base > 0 else Trend.STABLE
    if change > config.trend_deadband_pct:
        return Trend.IMPROVING
    if change < -config.trend_deadband_pct:
        return Trend.DECLINING
    return Trend.STABLE


def trip_metrics(trip: Trip) -> TripMetrics:
    """Counters for one finalized trip."""
    return TripMetrics(
        start_time=trip.start_time,
        distance_miles=meters_to_miles(trip.distance_m),
        hard_brakes=trip.count_events(EventType.HARD_BRAKE),
        rapid_accelerations=trip.count_events(EventType.RAPID_ACCELERATION),
        phone_events=trip.count_events(EventType.PHONE_USE),
        sharp_turns=trip.count_events(EventType.SHARP_TURN),
        speed_violations=len(trip.speed_violations)
    )


def aggregate_metrics(trips: Sequence[TripMetrics], config: Config) -> ScoreMetrics:
    total_trips = len(trips)
    total_miles = sum(t.distance_miles for t in trips)
    total_hard_brakes = sum(t.hard_brakes for t in trips)
    total_rapid_accels = sum(t.rapid_accelerations for t in trips)
    total_phone_events = sum(t.phone_events for t in trips)
    night_trips = sum(1 for t in trips if is_night_trip(t.start_time, config))

    return ScoreMetrics(
        total_trips=total_trips,
        total_miles=total_miles,
        total_hard_brakes=total_hard_brakes,
        total_rapid_accelerations=total_rapid_accels,
        total_phone_events=total_phone_events,
        night_trips=night_trips,
        average_miles_per_trip=total_miles / total_trips if total_trips else 0.0,
        hard_brakes_per_mile=total_hard_brakes / total_miles if total_miles else 0.0,
        rapid_accels_per_mile=total_rapid_accels / total_miles if total_miles else 0.0,
        phone_events_per_trip=total_phone_events / total_trips if total_trips else 0.0
    )


def score_period(trips: Sequence[TripMetrics], config: Config,
                 previous_base: Optional[float] = None) -> ScoreBreakdown:
    """Composite score for a set of trips.

    The base score is the weighted mean of the five components, so a trip
    with every component at 100 scores exactly 100 whatever the weights sum
    to. Contributions are each component's share of that base.
    """
    metrics = aggregate_metrics(trips, config)

    components = (
        (hard_braking_score(metrics.total_hard_brakes, metrics.total_miles, config),
         config.weight_hard_braking),
        (rapid_acceleration_score(metrics.total_rapid_accelerations, metrics.total_miles, config),
         config.weight_rapid_acceleration),
        (night_driving_score(metrics.night_trips, metrics.total_trips, config),
         config.weight_night_driving),
        (mileage_score(metrics.average_miles_per_trip, config),
         config.weight_mileage),
        (phone_distraction_score(metrics.total_phone_events, metrics.total_trips, config),
         config.weight_phone_distraction),
    )
    total_weight = sum(weight for _, weight in components)
    if total_weight <= 0:
        raise ValueError("Scoring weights must sum to a positive value")

    contributions = [score * weight / total_weight for score, weight in components]
    base_score = round(_clamp(sum(contributions)), 2)
    bonus = round(calculate_improvement_bonus(base_score, previous_base, config), 2)
    final_score = round(min(config.final_score_clamp, base_score + bonus), 2)

    return ScoreBreakdown(
        hard_braking_score=components[0][0],
        rapid_acceleration_score=components[1][0],
        night_driving_score=components[2][0],
        mileage_score=components[3][0],
        phone_distraction_score=components[4][0],
        hard_braking_contribution=contributions[0],
        rapid_acceleration_contribution=contributions[1],
        night_driving_contribution=contributions[2],
        mileage_contribution=contributions[3],
        phone_distraction_contribution=contributions[4],
        base_score=base_score,
        improvement_bonus=bonus,
        final_score=final_score,
        metrics=metrics
    )


def score_trip(trip: Trip, config: Config, previous_base: Optional[float] = None) -> ScoreBreakdown:
    """Composite score for a single finalized trip."""
    return score_period([trip_metrics(trip)], config, previous_base)


def normalize_trip_score(final_score: float, config: Config) -> float:
    """Map a 0-100 composite onto the driver score scale."""
    return _clamp(final_score, 0.0, PERFECT_SCORE) / PERFECT_SCORE * config.driver_score_max


def update_driver_score(previous: Optional[DriverScoreState], breakdown: ScoreBreakdown,
                        now: datetime, config: Config) -> DriverScoreState:
    """Fold one trip into the rolling driver score (exponential moving average)."""
    alpha = config.driver_score_alpha
    old_value = previous.value if previous else config.driver_score_cold_start
    new_value = alpha * normalize_trip_score(breakdown.final_score, config) + (1 - alpha) * old_value

    previous_base = previous.last_base_score if previous else None
    state = DriverScoreState(
        value=new_value,
        updated_at=now,
        trend=classify_trend(breakdown.base_score, previous_base, config),
        last_base_score=breakdown.base_score,
        trip_count=(previous.trip_count if previous else 0) + 1
    )
    logger.info(f"Driver score {old_value:.1f} -> {new_value:.1f} ({state.trend.value})")
    return state


def score_grade(score: float) -> Tuple[str, str]:
    """Letter grade and label for a 0-100 score."""
    for floor, grade, label in GRADES:
        if score >= floor:
            return grade, label
    return "F", "Poor"


def driver_rating(value: float) -> str:
    """Rating band for a driver score on the 0-1000 scale."""
    for floor, label in DRIVER_RATINGS:
        if value >= floor:
            return label
    return "Needs Improvement"


@dataclass(frozen=True)
class PeriodScore:
    current: ScoreBreakdown
    previous: Optional[ScoreBreakdown]
    trend: Trend
    percent_change: Optional[float]

    def to_dict(self) -> dict:
        return {
            'current': self.current.to_dict(),
            'previous': self.previous.to_dict() if self.previous else None,
            'trend': self.trend.value,
            'percent_change': self.percent_change
        }


def score_driver_periods(current: Sequence[TripMetrics], previous: Optional[Sequence[TripMetrics]],
                         config: Config) -> PeriodScore:
    """Score the current period with trend and bonus against the previous one."""
    previous_score = score_period(previous, config) if previous else None
    previous_base = previous_score.base_score if previous_score else None
    current_score = score_period(current, config, previous_base)

    change = percent_change(current_score.base_score, previous_base)
    return PeriodScore(
        current=current_score,
        previous=previous_score,
        trend=classify_trend(current_score.base_score, previous_base, config),
        percent_change=round(change, 1) if change is not None else None
    )


def period_bounds(now: datetime, config: Config, periods_ago: int = 0) -> Tuple[datetime, datetime]:
    """(start, end) of a scoring period; ``periods_ago=1`` is the one before the current."""
    length = timedelta(days=config.scoring_period_days)
    end = now - length * periods_ago
    return end - length, end


def split_periods(trips: Iterable[TripMetrics], now: datetime,
                  config: Config) -> Tuple[List[TripMetrics], List[TripMetrics]]:
    """Partition trips into the current and previous scoring periods; older trips are dropped."""
    current_start, current_end = period_bounds(now, config)
    previous_start, _ = period_bounds(now, config, periods_ago=1)

    current, previous = [], []
    for trip in trips:
        if current_start <= trip.start_time <= current_end:
            current.append(trip)
        elif previous_start <= trip.start_time < current_start:
            previous.append(trip)
    return current, previous


def has_enough_trips(trip_count: int, config: Config) -> bool:
    return trip_count >= config.min_trips_per_period
