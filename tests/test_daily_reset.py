from datetime import date, datetime, timezone

import pytest

from medsync.models.preferences import Lifestyle
from medsync.models.requests import CreateEventRequest, EventQuery

from conftest import medication_request


def _record(engine, command_id, event_type, at, patient_id="patient-1", **timing):
    return engine.events.create(
        CreateEventRequest.model_validate(
            {
                "commandId": command_id,
                "patientId": patient_id,
                "eventType": event_type,
                "context": {"medicationName": command_id},
                "timing": {"eventTimestamp": at, **timing},
            }
        )
    )


def _utc(day, hour, minute=0):
    return datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def yesterday(engine):
    """Two doses on the 12th (one taken, one missed) and one event either side"""
    events = [
        _record(engine, "cmd_a", "dose_scheduled", _utc(12, 8)),
        _record(engine, "cmd_a", "dose_taken", _utc(12, 8, 5), isOnTime=True, minutesLate=5),
        _record(engine, "cmd_b", "dose_scheduled", _utc(12, 20)),
        _record(engine, "cmd_b", "dose_missed", _utc(12, 20, 30)),
    ]
    _record(engine, "cmd_a", "dose_scheduled", _utc(11, 8))
    _record(engine, "cmd_a", "dose_scheduled", _utc(13, 8))
    return events


def test_reset_summarizes_and_archives(engine, yesterday):
    result = engine.daily_reset.execute_daily_reset("patient-1", "UTC")

    assert result.success
    assert result.summary_date == "2024-03-12"
    assert result.summary_created
    assert result.events_archived == 4

    summary = engine.daily_reset.get_daily_summary("patient-1", "2024-03-12")
    assert summary.id == "patient-1_2024-03-12"
    stats = summary.statistics
    assert stats.total_scheduled_doses == 2
    assert stats.total_taken_doses == 1
    assert stats.total_missed_doses == 1
    assert stats.adherence_rate == 50.0
    assert stats.on_time_rate == 100.0
    assert stats.average_delay_minutes == 5.0
    assert {m.command_id: m.adherence_rate for m in summary.medication_breakdown} == {
        "cmd_a": 100.0,
        "cmd_b": 0,
    }
    assert set(summary.archived_events.event_ids) == {e.id for e in yesterday}

    archived = engine.events.get(yesterday[0].id)
    assert archived.archive_status.daily_summary_id == "patient-1_2024-03-12"
    visible = engine.events.query(EventQuery(patient_id="patient-1"))
    assert {e.timing.event_timestamp.day for e in visible} == {11, 13}


def test_reset_is_idempotent(engine, yesterday):
    engine.daily_reset.execute_daily_reset("patient-1", "UTC")
    again = engine.daily_reset.execute_daily_reset("patient-1", "UTC")

    assert again.success
    assert not again.summary_created
    assert again.events_archived == 0
    assert len(engine.daily_reset.get_daily_summaries("patient-1")) == 1


def test_dry_run_writes_nothing(engine, yesterday):
    result = engine.daily_reset.execute_daily_reset("patient-1", "UTC", dry_run=True)

    assert result.success
    assert result.dry_run
    assert result.summary.statistics.total_scheduled_doses == 2
    assert not result.summary_created
    assert engine.daily_reset.get_daily_summary("patient-1", "2024-03-12") is None
    assert not engine.events.get(yesterday[0].id).is_archived


def test_local_day_boundaries(engine):
    # 02:00 UTC on the 13th is still the 12th in New York
    late_evening = _record(engine, "cmd_a", "dose_scheduled", _utc(13, 2))

    result = engine.daily_reset.execute_daily_reset("patient-1", "America/New_York")

    assert result.summary_date == "2024-03-12"
    assert result.summary.archived_events.event_ids == [late_evening.id]


def test_invalid_timezone(engine, yesterday):
    result = engine.daily_reset.execute_daily_reset("patient-1", "Atlantis/Capital")

    assert not result.success
    assert "Invalid timezone" in result.error
    assert not engine.events.get(yesterday[0].id).is_archived


def test_no_events_is_a_quiet_success(engine):
    result = engine.daily_reset.execute_daily_reset("patient-1", "UTC")
    assert result.success
    assert result.summary is None
    assert result.events_archived == 0


def test_run_for_all_patients_uses_each_timezone(engine):
    engine.commands.create(medication_request())
    engine.time_buckets.create_time_preferences("patient-2", lifestyle=Lifestyle(timezone="UTC"))
    _record(engine, "cmd_c", "dose_scheduled", _utc(12, 9), patient_id="patient-2")

    results = engine.daily_reset.run_for_all_patients()

    assert [(r.patient_id, r.timezone) for r in results] == [
        ("patient-1", "America/Chicago"),
        ("patient-2", "UTC"),
    ]
    assert results[1].events_archived == 1
    assert engine.daily_reset.timezone_for("patient-2") == "UTC"
    assert engine.daily_reset.timezone_for("patient-1") == "America/Chicago"


def test_summary_listing_by_date(engine):
    for day in (10, 11, 12):
        _record(engine, "cmd_a", "dose_scheduled", _utc(day, 8))
        engine.daily_reset.execute_daily_reset("patient-1", "UTC", now=_utc(day + 1, 1))

    summaries = engine.daily_reset.get_daily_summaries(
        "patient-1", start=date(2024, 3, 11), end=date(2024, 3, 12)
    )
    assert [s.summary_date for s in summaries] == ["2024-03-12", "2024-03-11"]


def test_summary_counts_a_corrected_dose_once(engine, yesterday):
    taken = yesterday[1]
    engine.events.create(
        CreateEventRequest.model_validate(
            {
                "commandId": "cmd_a",
                "patientId": "patient-1",
                "eventType": "dose_missed_corrected",
                "eventData": {
                    "undoData": {
                        "isUndo": False,
                        "originalEventId": taken.id,
                        "undoReason": "Wrong button",
                        "undoTimestamp": _utc(12, 8, 7),
                        "correctedAction": "missed",
                    }
                },
                "context": {"medicationName": "cmd_a"},
                "timing": {"eventTimestamp": _utc(12, 8, 7), "scheduledFor": _utc(12, 8)},
            }
        )
    )

    engine.daily_reset.execute_daily_reset("patient-1", "UTC")

    stats = engine.daily_reset.get_daily_summary("patient-1", "2024-03-12").statistics
    assert stats.total_scheduled_doses == 2
    assert stats.total_taken_doses == 0
    assert stats.total_missed_doses == 2
    assert stats.adherence_rate == 0
