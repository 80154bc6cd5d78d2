import logging
import pytest
from drivescore.config import Config, setup_logging

class TestConfig:
    """Environment defaults and construction-time overrides."""

    def test_defaults(self):
        config = Config()
        assert config.start_speed_kmh == 15
        assert config.stop_duration_s == 120
        assert config.fallback_speed_limit_mph == 35
        assert config.driver_score_cold_start == 760
        assert config.hard_brake_threshold_g == pytest.approx(-0.40)
        assert config.rapid_accel_threshold_g == pytest.approx(0.40)

    def test_overrides(self):
        config = Config(start_speed_kmh=20, min_trip_distance_m=1000)
        assert config.start_speed_kmh == 20
        assert config.min_trip_distance_m == 1000
        assert Config().start_speed_kmh == 15

    def test_unknown_option_rejected(self):
        with pytest.raises(TypeError):
            Config(start_speed=20)

    def test_unknown_sensitivity_rejected(self):
        with pytest.raises(ValueError):
            Config(sensitivity="paranoid")

    def test_update_trip_thresholds(self):
        config = Config()
        config.update_trip_thresholds(stop_speed_kmh=3, min_trip_duration_s=90)
        trip_config = config.get_trip_config()
        assert trip_config["stop_speed_kmh"] == 3
        assert trip_config["min_trip_duration_s"] == 90
        assert trip_config["start_speed_kmh"] == 15

    def test_config_sections(self):
        config = Config(sensitivity="high")
        assert config.get_detection_config()["hard_brake_g"] == pytest.approx(-0.35)
        assert config.get_speed_config()["fallback_limit_mph"] == 35
        weights = config.get_scoring_config()["weights"]
        assert set(weights) == {"hard_braking", "rapid_acceleration", "night_driving",
                                "mileage", "phone_distraction"}

    def test_setup_logging(self):
        logger = setup_logging(Config(log_level="DEBUG"))
        assert isinstance(logger, logging.Logger)
        assert logger.name == "drivescore"
