"""
Unit tests for AntiCheatValidator.

Coordinates are chosen so 0.001 degrees of latitude is about 111 m.
"""

from unittest.mock import MagicMock

import pytest

from tagclient.anticheat.models import LocationSample, SuspicionLevel, TagRejectReason, ViolationType
from tagclient.anticheat.validator import AntiCheatValidator
from tagclient.config.models import AntiCheatConfig
from tagclient.events.event_types import ViolationDetected

BASE_LAT = 40.0
BASE_LNG = -73.0
T0 = 1_700_000_000.0


def sample(lat_offset=0.0, lng_offset=0.0, t=0.0, accuracy=5.0, is_mock=False):
    return LocationSample(
        lat=BASE_LAT + lat_offset,
        lng=BASE_LNG + lng_offset,
        accuracy=accuracy,
        timestamp=T0 + t,
        is_mock=is_mock,
    )


def types_of(result):
    return [v.type for v in result.violations]


def test_first_sample_is_clean(validator):
    """Test the first sample has nothing to compare against."""
    result = validator.validate_position(sample())
    assert result.valid
    assert result.violations == []
    assert result.suspicion_score == 0.0


def test_walking_pace_is_clean(validator):
    """Test realistic movement raises nothing."""
    validator.validate_position(sample())
    # ~11 m in 5 s
    result = validator.validate_position(sample(lat_offset=0.0001, t=5))
    assert result.valid
    assert result.violations == []


def test_speed_hack(validator):
    """Test ~111 m in 5 s (22 m/s) is a speed hack but still valid."""
    validator.validate_position(sample())
    result = validator.validate_position(sample(lat_offset=0.001, t=5))
    assert result.valid
    assert types_of(result) == [ViolationType.SPEED_HACK]
    assert result.suspicion_score == pytest.approx(20.0)
    assert validator.is_flagged()
    assert not validator.is_blocked()


def test_teleport_is_invalid_and_not_also_speed_hack(validator):
    """Test a large jump in under a second is a teleport only."""
    validator.validate_position(sample())
    result = validator.validate_position(sample(lat_offset=0.01, t=0.5))
    assert not result.valid
    assert types_of(result) == [ViolationType.TELEPORT]
    assert result.suspicion_score == pytest.approx(50.0)
    assert validator.is_blocked()


def test_teleported_sample_is_not_a_reference(validator):
    """Test an invalid sample does not become the baseline."""
    validator.validate_position(sample())
    validator.validate_position(sample(lat_offset=0.01, t=0.5))
    result = validator.validate_position(sample(lat_offset=0.00005, t=10))
    assert result.valid
    assert result.violations == []
    assert len(validator.history) == 2


def test_mock_provider_is_invalid_and_blocks(validator):
    """Test a mock location provider pushes the score to at least the block threshold."""
    result = validator.validate_position(sample(is_mock=True))
    assert not result.valid
    assert types_of(result) == [ViolationType.MOCK_PROVIDER]
    assert validator.is_blocked()
    assert validator.get_suspicion_level() is SuspicionLevel.BANNED
    assert validator.history == ()


def test_mock_provider_floor_is_block_threshold():
    """Test a small mock weight still lands on the block threshold."""
    validator = AntiCheatValidator(AntiCheatConfig(mock_provider_weight=1.0))
    validator.validate_position(sample(is_mock=True))
    assert validator.suspicion_score == pytest.approx(50.0)


def test_fake_gps_after_run_of_precise_samples(validator):
    """Test five consecutive sub-meter accuracy readings flag fake GPS once."""
    results = [
        validator.validate_position(sample(lat_offset=0.0001 * i, t=5 * i, accuracy=0.5)) for i in range(6)
    ]
    flagged = [i for i, r in enumerate(results) if ViolationType.FAKE_GPS in types_of(r)]
    assert flagged == [4]


def test_imprecise_sample_breaks_fake_gps_run(validator):
    """Test a normal reading resets the run."""
    accuracies = [0.5, 0.5, 0.5, 0.5, 8.0, 0.5, 0.5]
    for i, accuracy in enumerate(accuracies):
        result = validator.validate_position(sample(lat_offset=0.0001 * i, t=5 * i, accuracy=accuracy))
        assert ViolationType.FAKE_GPS not in types_of(result)


def test_static_location_detected_once_per_window(validator):
    """Test frozen coordinates over a full window are flagged, then cooled down."""
    results = [validator.validate_position(sample(t=float(i))) for i in range(12)]
    flagged = [i for i, r in enumerate(results) if ViolationType.STATIC_LOCATION in types_of(r)]
    assert flagged == [9]


def test_static_requires_increasing_timestamps(validator):
    """Test repeated timestamps are not treated as a frozen position."""
    for _ in range(12):
        result = validator.validate_position(sample(t=0.0))
        assert ViolationType.STATIC_LOCATION not in types_of(result)


def test_decay_applies_before_new_weight(validator):
    """Test the score decays by a fixed amount on every sample."""
    validator.validate_position(sample())
    validator.validate_position(sample(lat_offset=0.001, t=5))
    result = validator.validate_position(sample(lat_offset=0.0011, t=15))
    assert result.suspicion_score == pytest.approx(19.9)


def test_score_never_negative(validator):
    """Test decay floors at zero."""
    for i in range(3):
        result = validator.validate_position(sample(lat_offset=0.0001 * i, t=5 * i))
    assert result.suspicion_score == 0.0


def test_out_of_order_sample_skips_movement_checks(validator):
    """Test an older sample is not compared and not used as the reference."""
    validator.validate_position(sample(t=10))
    result = validator.validate_position(sample(lat_offset=0.05, t=5))
    assert result.violations == []
    assert len(validator.history) == 1


def test_violation_event_and_reporter(event_bus, recorded_events):
    """Test violations are published and handed to the reporter."""
    reporter = MagicMock()
    validator = AntiCheatValidator(AntiCheatConfig(), event_bus, reporter)
    events = recorded_events(ViolationDetected)
    validator.validate_position(sample(is_mock=True))
    assert len(events) == 1
    assert events[0].violations[0].type is ViolationType.MOCK_PROVIDER
    reporter.report.assert_called_once()


def test_verify_tag_within_range(validator):
    """Test a nearby target is accepted."""
    result = validator.verify_tag(sample(), sample(lat_offset=0.0002))
    assert result.accepted
    assert result.distance_m == pytest.approx(22.2, rel=0.01)


def test_verify_tag_uses_gps_tolerance(validator):
    """Test the tolerance is added to the tag range."""
    # ~25 m is outside 20 m but inside 20 + 10 m
    assert validator.verify_tag(sample(), sample(lat_offset=0.000225)).accepted
    result = validator.verify_tag(sample(), sample(lat_offset=0.0004))
    assert not result.accepted
    assert result.reason is TagRejectReason.TOO_FAR


def test_verify_tag_custom_distance(validator):
    """Test a caller supplied range."""
    assert validator.verify_tag(sample(), sample(lat_offset=0.0009), max_distance=100).accepted


def test_verify_tag_rejected_when_blocked(validator):
    """Test a blocked player cannot tag."""
    validator.validate_position(sample(is_mock=True))
    result = validator.verify_tag(sample(), sample())
    assert not result.accepted
    assert result.reason is TagRejectReason.FLAGGED


@pytest.mark.parametrize(
    ("score", "level"),
    [
        (0.0, SuspicionLevel.CLEAN),
        (5.0, SuspicionLevel.LOW),
        (20.0, SuspicionLevel.MEDIUM),
        (50.0, SuspicionLevel.HIGH),
        (100.0, SuspicionLevel.BANNED),
    ],
)
def test_suspicion_levels(validator, score, level):
    """Test score buckets."""
    validator._record.score = score
    assert validator.get_suspicion_level() is level


def test_violation_report(validator):
    """Test the report summarizes score, totals and recent violations."""
    validator.validate_position(sample())
    validator.validate_position(sample(lat_offset=0.001, t=5))
    report = validator.get_violation_report()
    assert report["suspicion_score"] == 20.0
    assert report["suspicion_level"] == "medium"
    assert report["is_flagged"] is True
    assert report["total_violations"] == 1
    assert report["by_type"] == {"speed_hack": 1}
    assert report["by_severity"] == {"medium": 1}
    assert report["recent_violations"][0]["type"] == "speed_hack"
    assert report["history_length"] == 2


def test_reset_clears_session_state(validator):
    """Test reset() starts a clean session."""
    validator.validate_position(sample(is_mock=True))
    validator.validate_position(sample())
    validator.reset()
    assert validator.suspicion_score == 0.0
    assert validator.history == ()
    assert validator.get_violation_report()["total_violations"] == 0


def test_accepts_dict_config():
    """Test config can be supplied as a plain dict."""
    validator = AntiCheatValidator({"max_speed_mps": 50.0})
    validator.validate_position(sample())
    assert validator.validate_position(sample(lat_offset=0.001, t=5)).violations == []
