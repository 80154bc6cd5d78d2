import os
import logging
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///drivescore.db")

# Simulation configuration
EMIT_INTERVAL_SECONDS = float(os.getenv("EMIT_INTERVAL_SECONDS", "1.0"))

# Trip lifecycle thresholds
START_SPEED_KMH = float(os.getenv("START_SPEED_KMH", "15"))
START_DURATION_S = float(os.getenv("START_DURATION_S", "10"))
STOP_SPEED_KMH = float(os.getenv("STOP_SPEED_KMH", "5"))
STOP_DURATION_S = float(os.getenv("STOP_DURATION_S", "120"))
MIN_TRIP_DISTANCE_M = float(os.getenv("MIN_TRIP_DISTANCE_M", "500"))
MIN_TRIP_DURATION_S = float(os.getenv("MIN_TRIP_DURATION_S", "60"))
TRIP_UPDATE_INTERVAL_S = float(os.getenv("TRIP_UPDATE_INTERVAL_S", "0"))

# Detection thresholds
DETECTION_SENSITIVITY = os.getenv("DETECTION_SENSITIVITY", "normal").lower()
SENSITIVITY_PRESETS_G = {"normal": 0.40, "high": 0.35}
HARD_BRAKE_G = os.getenv("HARD_BRAKE_G")
RAPID_ACCEL_G = os.getenv("RAPID_ACCEL_G")
ACCEL_MIN_DWELL_S = float(os.getenv("ACCEL_MIN_DWELL_S", "0.3"))
SHARP_TURN_G = float(os.getenv("SHARP_TURN_G", "0.35"))
SHARP_TURN_MOTORWAY_G = float(os.getenv("SHARP_TURN_MOTORWAY_G", "0.40"))
SHARP_TURN_MIN_DWELL_S = float(os.getenv("SHARP_TURN_MIN_DWELL_S", "0.4"))
G_SEVERITY_MEDIUM = float(os.getenv("G_SEVERITY_MEDIUM", "0.5"))
G_SEVERITY_HIGH = float(os.getenv("G_SEVERITY_HIGH", "0.7"))
EVENT_MERGE_GAP_S = float(os.getenv("EVENT_MERGE_GAP_S", "0.5"))
PHONE_MIN_DURATION_S = float(os.getenv("PHONE_MIN_DURATION_S", "3"))
PHONE_MEDIUM_DURATION_S = float(os.getenv("PHONE_MEDIUM_DURATION_S", "10"))
PHONE_HIGH_DURATION_S = float(os.getenv("PHONE_HIGH_DURATION_S", "20"))
PHONE_MIN_SPEED_KMH = float(os.getenv("PHONE_MIN_SPEED_KMH", "10"))

# Speed limit monitoring
SPEED_LIMIT_REFRESH_S = float(os.getenv("SPEED_LIMIT_REFRESH_S", "5"))
SPEEDING_DWELL_S = float(os.getenv("SPEEDING_DWELL_S", "10"))
FALLBACK_SPEED_LIMIT_MPH = float(os.getenv("FALLBACK_SPEED_LIMIT_MPH", "35"))
SPEED_LIMIT_CACHE_TTL_S = float(os.getenv("SPEED_LIMIT_CACHE_TTL_S", "3600"))
SPEED_LIMIT_CACHE_PRECISION = int(os.getenv("SPEED_LIMIT_CACHE_PRECISION", "3"))
DEFAULT_SPEED_LIMIT_KMH = float(os.getenv("DEFAULT_SPEED_LIMIT_KMH", "50"))

# Scoring configuration
WEIGHT_HARD_BRAKING = float(os.getenv("WEIGHT_HARD_BRAKING", "0.25"))
WEIGHT_RAPID_ACCELERATION = float(os.getenv("WEIGHT_RAPID_ACCELERATION", "0.15"))
WEIGHT_NIGHT_DRIVING = float(os.getenv("WEIGHT_NIGHT_DRIVING", "0.20"))
WEIGHT_MILEAGE = float(os.getenv("WEIGHT_MILEAGE", "0.20"))
WEIGHT_PHONE_DISTRACTION = float(os.getenv("WEIGHT_PHONE_DISTRACTION", "0.10"))
HARD_BRAKES_PER_MILE_BENCHMARK = float(os.getenv("HARD_BRAKES_PER_MILE_BENCHMARK", "1.0"))
RAPID_ACCELS_PER_MILE_BENCHMARK = float(os.getenv("RAPID_ACCELS_PER_MILE_BENCHMARK", "1.0"))
PHONE_EVENTS_PER_TRIP_BENCHMARK = float(os.getenv("PHONE_EVENTS_PER_TRIP_BENCHMARK", "2"))
NIGHT_MAX_PROPORTION = float(os.getenv("NIGHT_MAX_PROPORTION", "0.3"))
NIGHT_START_HOUR = int(os.getenv("NIGHT_START_HOUR", "21"))
NIGHT_END_HOUR = int(os.getenv("NIGHT_END_HOUR", "6"))
# IANA zone for the night window; empty uses the offset each timestamp carries
NIGHT_TIMEZONE = os.getenv("NIGHT_TIMEZONE", "")
MILEAGE_BENCHMARK_MILES = float(os.getenv("MILEAGE_BENCHMARK_MILES", "10"))
MILEAGE_PENALTY_PER_MILE = float(os.getenv("MILEAGE_PENALTY_PER_MILE", "0.01"))
IMPROVEMENT_THRESHOLD_PCT = float(os.getenv("IMPROVEMENT_THRESHOLD_PCT", "5"))
IMPROVEMENT_MAX_BONUS = float(os.getenv("IMPROVEMENT_MAX_BONUS", "10"))
FINAL_SCORE_CLAMP = float(os.getenv("FINAL_SCORE_CLAMP", "100"))
DRIVER_SCORE_ALPHA = float(os.getenv("DRIVER_SCORE_ALPHA", "0.15"))
DRIVER_SCORE_MAX = float(os.getenv("DRIVER_SCORE_MAX", "1000"))
DRIVER_SCORE_COLD_START = float(os.getenv("DRIVER_SCORE_COLD_START", "760"))
TREND_DEADBAND_PCT = float(os.getenv("TREND_DEADBAND_PCT", "2"))
SCORING_PERIOD_DAYS = int(os.getenv("SCORING_PERIOD_DAYS", "30"))
MIN_TRIPS_PER_PERIOD = int(os.getenv("MIN_TRIPS_PER_PERIOD", "5"))

# WebSocket configuration
WS_MAX_CONNECTIONS = int(os.getenv("WS_MAX_CONNECTIONS", "100"))

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
LOG_FILE = os.getenv("LOG_FILE", "")


class Config:
    """Engine configuration: environment defaults with construction-time overrides."""

    def __init__(self, **overrides):
        self.database_url = DATABASE_URL
        self.emit_interval_seconds = EMIT_INTERVAL_SECONDS

        # Trip lifecycle
        self.start_speed_kmh = START_SPEED_KMH
        self.start_duration_s = START_DURATION_S
        self.stop_speed_kmh = STOP_SPEED_KMH
        self.stop_duration_s = STOP_DURATION_S
        self.min_trip_distance_m = MIN_TRIP_DISTANCE_M
        self.min_trip_duration_s = MIN_TRIP_DURATION_S
        self.trip_update_interval_s = TRIP_UPDATE_INTERVAL_S

        # Detection thresholds
        self.sensitivity = DETECTION_SENSITIVITY
        self.hard_brake_g = float(HARD_BRAKE_G) if HARD_BRAKE_G else None
        self.rapid_accel_g = float(RAPID_ACCEL_G) if RAPID_ACCEL_G else None
        self.accel_min_dwell_s = ACCEL_MIN_DWELL_S
        self.sharp_turn_g = SHARP_TURN_G
        self.sharp_turn_motorway_g = SHARP_TURN_MOTORWAY_G
        self.sharp_turn_min_dwell_s = SHARP_TURN_MIN_DWELL_S
        self.g_severity_medium = G_SEVERITY_MEDIUM
        self.g_severity_high = G_SEVERITY_HIGH
        self.event_merge_gap_s = EVENT_MERGE_GAP_S
        self.phone_min_duration_s = PHONE_MIN_DURATION_S
        self.phone_medium_duration_s = PHONE_MEDIUM_DURATION_S
        self.phone_high_duration_s = PHONE_HIGH_DURATION_S
        self.phone_min_speed_kmh = PHONE_MIN_SPEED_KMH

        # Speed limit monitoring
        self.speed_limit_refresh_s = SPEED_LIMIT_REFRESH_S
        self.speeding_dwell_s = SPEEDING_DWELL_S
        self.fallback_speed_limit_mph = FALLBACK_SPEED_LIMIT_MPH
        self.speed_limit_cache_ttl_s = SPEED_LIMIT_CACHE_TTL_S
        self.speed_limit_cache_precision = SPEED_LIMIT_CACHE_PRECISION
        self.default_speed_limit_kmh = DEFAULT_SPEED_LIMIT_KMH

        # Scoring
        self.weight_hard_braking = WEIGHT_HARD_BRAKING
        self.weight_rapid_acceleration = WEIGHT_RAPID_ACCELERATION
        self.weight_night_driving = WEIGHT_NIGHT_DRIVING
        self.weight_mileage = WEIGHT_MILEAGE
        self.weight_phone_distraction = WEIGHT_PHONE_DISTRACTION
        self.hard_brakes_per_mile_benchmark = HARD_BRAKES_PER_MILE_BENCHMARK
        self.rapid_accels_per_mile_benchmark = RAPID_ACCELS_PER_MILE_BENCHMARK
        self.phone_events_per_trip_benchmark = PHONE_EVENTS_PER_TRIP_BENCHMARK
        self.night_max_proportion = NIGHT_MAX_PROPORTION
        self.night_start_hour = NIGHT_START_HOUR
        self.night_end_hour = NIGHT_END_HOUR
        self.night_timezone = NIGHT_TIMEZONE
        self.mileage_benchmark_miles = MILEAGE_BENCHMARK_MILES
        self.mileage_penalty_per_mile = MILEAGE_PENALTY_PER_MILE
        self.improvement_threshold_pct = IMPROVEMENT_THRESHOLD_PCT
        self.improvement_max_bonus = IMPROVEMENT_MAX_BONUS
        self.final_score_clamp = FINAL_SCORE_CLAMP
        self.driver_score_alpha = DRIVER_SCORE_ALPHA
        self.driver_score_max = DRIVER_SCORE_MAX
        self.driver_score_cold_start = DRIVER_SCORE_COLD_START
        self.trend_deadband_pct = TREND_DEADBAND_PCT
        self.scoring_period_days = SCORING_PERIOD_DAYS
        self.min_trips_per_period = MIN_TRIPS_PER_PERIOD

        # WebSocket settings
        self.ws_max_connections = WS_MAX_CONNECTIONS

        # Logging
        self.log_level = LOG_LEVEL
        self.log_format = LOG_FORMAT
        self.log_file = LOG_FILE

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise TypeError(f"Unknown configuration option: {key}")
            setattr(self, key, value)

        if self.sensitivity not in SENSITIVITY_PRESETS_G:
            raise ValueError(f"Unknown detection sensitivity: {self.sensitivity}")

    @property
    def hard_brake_threshold_g(self) -> float:
        """Negative longitudinal g below which braking counts as hard."""
        if self.hard_brake_g is not None:
            return -abs(self.hard_brake_g)
        return -SENSITIVITY_PRESETS_G[self.sensitivity]

    @property
    def rapid_accel_threshold_g(self) -> float:
        """Positive longitudinal g above which acceleration counts as rapid."""
        if self.rapid_accel_g is not None:
            return abs(self.rapid_accel_g)
        return SENSITIVITY_PRESETS_G[self.sensitivity]

    def update_trip_thresholds(self,
                               start_speed_kmh: Optional[float] = None,
                               stop_speed_kmh: Optional[float] = None,
                               min_trip_distance_m: Optional[float] = None,
                               min_trip_duration_s: Optional[float] = None):
        """Update trip lifecycle thresholds at runtime."""
        if start_speed_kmh is not None:
            self.start_speed_kmh = start_speed_kmh
        if stop_speed_kmh is not None:
            self.stop_speed_kmh = stop_speed_kmh
        if min_trip_distance_m is not None:
            self.min_trip_distance_m = min_trip_distance_m
        if min_trip_duration_s is not None:
            self.min_trip_duration_s = min_trip_duration_s

    def get_trip_config(self) -> dict:
        """Get trip lifecycle configuration as dictionary."""
        return {
            "start_speed_kmh": self.start_speed_kmh,
            "start_duration_s": self.start_duration_s,
            "stop_speed_kmh": self.stop_speed_kmh,
            "stop_duration_s": self.stop_duration_s,
            "min_trip_distance_m": self.min_trip_distance_m,
            "min_trip_duration_s": self.min_trip_duration_s,
            "trip_update_interval_s": self.trip_update_interval_s
        }

    def get_detection_config(self) -> dict:
        """Get detection configuration as dictionary."""
        return {
            "sensitivity": self.sensitivity,
            "hard_brake_g": self.hard_brake_threshold_g,
            "rapid_accel_g": self.rapid_accel_threshold_g,
            "accel_min_dwell_s": self.accel_min_dwell_s,
            "sharp_turn_g": self.sharp_turn_g,
            "sharp_turn_motorway_g": self.sharp_turn_motorway_g,
            "sharp_turn_min_dwell_s": self.sharp_turn_min_dwell_s,
            "phone_min_duration_s": self.phone_min_duration_s,
            "phone_min_speed_kmh": self.phone_min_speed_kmh
        }

    def get_speed_config(self) -> dict:
        """Get speed limit monitoring configuration as dictionary."""
        return {
            "refresh_s": self.speed_limit_refresh_s,
            "speeding_dwell_s": self.speeding_dwell_s,
            "fallback_limit_mph": self.fallback_speed_limit_mph,
            "cache_ttl_s": self.speed_limit_cache_ttl_s
        }

    def get_scoring_config(self) -> dict:
        """Get scoring configuration as dictionary."""
        return {
            "weights": {
                "hard_braking": self.weight_hard_braking,
                "rapid_acceleration": self.weight_rapid_acceleration,
                "night_driving": self.weight_night_driving,
                "mileage": self.weight_mileage,
                "phone_distraction": self.weight_phone_distraction
            },
            "night_hours": [self.night_start_hour, self.night_end_hour],
            "night_timezone": self.night_timezone or None,
            "final_score_clamp": self.final_score_clamp,
            "driver_score_alpha": self.driver_score_alpha,
            "driver_score_max": self.driver_score_max,
            "driver_score_cold_start": self.driver_score_cold_start
        }


def setup_logging(config: Config) -> logging.Logger:
    """Setup logging configuration."""
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format=config.log_format,
        handlers=handlers
    )

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)

    return logging.getLogger("drivescore")
