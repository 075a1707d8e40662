from datetime import datetime, timezone

import pytest

from medsync.core import collections
from medsync.core.errors import ConflictError, ValidationError
from medsync.models.commands import Frequency
from medsync.models.preferences import (
    FlexibleScheduleConfig,
    Lifestyle,
    default_preferences,
    night_shift_time_buckets,
)
from medsync.services.time_buckets import (
    get_time_bucket_for_time,
    time_in_range,
    validate_time_buckets,
)

from conftest import medication_request


@pytest.mark.parametrize(
    "value,earliest,latest,expected",
    [
        ("08:00", "06:00", "10:00", True),
        ("10:00", "06:00", "10:00", True),
        ("10:01", "06:00", "10:00", False),
        ("23:30", "23:00", "02:00", True),
        ("01:15", "23:00", "02:00", True),
        ("03:00", "23:00", "02:00", False),
    ],
)
def test_time_in_range_wraps_midnight(value, earliest, latest, expected):
    assert time_in_range(value, earliest, latest) is expected


def test_default_preferences_are_valid():
    result = validate_time_buckets(default_preferences("patient-1"))
    assert result.is_valid
    assert result.warnings == []
    assert result.is_night_shift is False


def test_night_shift_evening_at_two_is_an_error():
    prefs = default_preferences("patient-1")
    prefs.time_buckets = night_shift_time_buckets()
    assert validate_time_buckets(prefs).is_valid

    prefs.time_buckets.evening.default_time = "02:00"
    result = validate_time_buckets(prefs)
    assert result.is_night_shift
    assert not result.is_valid
    assert any("use 00:00" in e for e in result.errors)


def test_default_outside_range_and_overlaps():
    prefs = default_preferences("patient-1")
    prefs.time_buckets.morning.default_time = "11:00"
    prefs.time_buckets.lunch.time_range.earliest = "09:30"

    result = validate_time_buckets(prefs)
    assert any("outside range" in e for e in result.errors)
    assert "Time ranges of morning and lunch overlap" in result.warnings


def test_bucket_lookup_falls_back_to_custom():
    prefs = default_preferences("patient-1")
    assert get_time_bucket_for_time("12:30", prefs) == "lunch"
    assert get_time_bucket_for_time("15:00", prefs) == "custom"


def test_create_and_update_preferences(engine, clock):
    prefs = engine.time_buckets.create_time_preferences("patient-1", created_by="nurse-1")
    assert prefs.version == 1

    with pytest.raises(ConflictError):
        engine.time_buckets.create_time_preferences("patient-1")

    clock.advance(hours=1)
    updated = engine.time_buckets.update_time_preferences(
        "patient-1", {"timeBuckets.morning.defaultTime": "07:00"}, "nurse-2"
    )
    assert updated.version == 2
    assert updated.time_buckets.morning.default_time == "07:00"
    assert updated.metadata.updated_by == "nurse-2"
    assert engine.time_buckets.get_time_preferences("patient-1").time_buckets.morning.default_time == "07:00"


def test_invalid_update_is_not_saved(engine):
    engine.time_buckets.create_time_preferences("patient-1")

    with pytest.raises(ValidationError):
        engine.time_buckets.update_time_preferences(
            "patient-1", {"timeBuckets.morning.defaultTime": "13:00"}
        )
    with pytest.raises(ValidationError):
        engine.time_buckets.update_time_preferences("patient-1", {"patientId": "someone-else"})

    assert engine.time_buckets.get_time_preferences("patient-1").version == 1


def test_get_or_create_is_idempotent(engine, storage):
    first = engine.time_buckets.get_or_create_time_preferences("patient-1")
    second = engine.time_buckets.get_or_create_time_preferences("patient-1")
    assert first.version == second.version == 1
    assert len(storage.query(collections.TIME_PREFERENCES, [])) == 1


def test_compute_schedule_from_frequency(engine):
    schedule = engine.time_buckets.compute_schedule(
        "patient-1", Frequency.FOUR_TIMES_DAILY, overrides={"lunch": "12:30"}
    )
    assert schedule.times == ["08:00", "12:30", "18:00", "22:00"]
    assert schedule.buckets == ["morning", "lunch", "evening", "beforeBed"]
    assert schedule.method == "frequency_mapping"
    assert schedule.preferences_version == 0


def test_compute_schedule_interval_based(engine):
    config = FlexibleScheduleConfig.model_validate(
        {"method": "interval_based", "intervalBased": {"intervalHours": 6, "startTime": "08:00"}}
    )
    schedule = engine.time_buckets.compute_schedule("patient-1", Frequency.CUSTOM, flexible_config=config)
    assert schedule.times == ["08:00", "14:00", "20:00"]
    assert schedule.buckets == ["morning", "lunch", "evening"]


def test_meal_relative_uses_fallback_without_meal_times(engine):
    config = FlexibleScheduleConfig.model_validate(
        {
            "method": "meal_relative",
            "mealRelative": {"mealType": "breakfast", "timing": "before", "fallbackTime": "7:30"},
        }
    )
    schedule = engine.time_buckets.compute_schedule("patient-1", Frequency.DAILY, flexible_config=config)
    assert schedule.times == ["07:30"]


def test_meal_relative_offsets_meal_time(engine):
    engine.time_buckets.create_time_preferences(
        "patient-1", lifestyle=Lifestyle(meal_times={"dinner": "18:30"})
    )
    config = FlexibleScheduleConfig.model_validate(
        {
            "method": "meal_relative",
            "mealRelative": {"mealType": "dinner", "timing": "after", "offsetMinutes": 30},
        }
    )
    schedule = engine.time_buckets.compute_schedule("patient-1", Frequency.DAILY, flexible_config=config)
    assert schedule.times == ["19:00"]
    assert schedule.buckets == ["evening"]


def test_bucket_status(engine):
    engine.time_buckets.create_time_preferences("patient-1", lifestyle=Lifestyle(timezone="UTC"))
    command, _ = engine.commands.create(
        medication_request(schedule={"frequency": "twice_daily", "times": ["08:00", "12:30"]})
    )

    statuses = engine.time_buckets.get_time_bucket_status(
        "patient-1", [command], now=datetime(2024, 3, 13, 12, 30, tzinfo=timezone.utc)
    )
    by_bucket = {s["bucket"]: s for s in statuses}

    assert by_bucket["morning"]["status"] == "past"
    assert by_bucket["lunch"]["status"] == "current"
    assert by_bucket["evening"]["status"] == "upcoming"
    assert [m["time"] for m in by_bucket["lunch"]["medications"]] == ["12:30"]
