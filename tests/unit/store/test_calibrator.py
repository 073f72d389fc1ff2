import random

import pytest

from codemend.calibration.calibrator import ConfidenceCalibrator
from codemend.config.remediation import CalibrationConfig


def _observe(calibrator, outcomes, strategy="contextual", domain="reliability"):
    for success in outcomes:
        calibrator.observe(strategy, domain, success)


def test_raw_confidence_until_enough_history(calibrator):
    _observe(calibrator, [False] * 19)
    assert calibrator.calibrate("contextual", "reliability", 0.8) == 0.8
    assert calibrator.stats("contextual", "reliability").reliability == "unknown"


def test_history_scales_confidence(calibrator):
    _observe(calibrator, [True] * 15 + [False] * 5)
    assert calibrator.calibrate("contextual", "reliability", 0.8) == pytest.approx(0.6)
    # Other strategies and domains keep their own record.
    assert calibrator.calibrate("contextual", "security", 0.8) == 0.8
    assert calibrator.calibrate("generative", "reliability", 0.8) == 0.8


def test_only_the_recent_window_counts(storage):
    calibrator = ConfidenceCalibrator(storage, CalibrationConfig(window=10, min_observations=5))
    _observe(calibrator, [False] * 10 + [True] * 10)

    stats = calibrator.stats("contextual", "reliability")
    assert stats.observations == 10
    assert stats.success_rate == 1.0
    assert stats.reliability == "high"


def test_calibrated_never_exceeds_raw(storage):
    calibrator = ConfidenceCalibrator(storage, CalibrationConfig(window=50, min_observations=5))
    rng = random.Random(7)
    _observe(calibrator, [rng.random() < 0.6 for _ in range(40)])

    for _ in range(200):
        raw = rng.random()
        calibrated = calibrator.calibrate("contextual", "reliability", raw)
        assert 0.0 <= calibrated <= raw


def test_observation_invalidates_cached_window(calibrator):
    _observe(calibrator, [True] * 20)
    assert calibrator.calibrate("contextual", "reliability", 0.5) == 0.5
    _observe(calibrator, [False] * 20)
    assert calibrator.calibrate("contextual", "reliability", 0.5) == pytest.approx(0.25)
