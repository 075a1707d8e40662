from datetime import datetime, timedelta, timezone

import pytest

from medsync.core.errors import ValidationError
from medsync.models.analytics import RiskLevel, Trend
from medsync.models.requests import CreateEventRequest

from conftest import medication_request

FIRST_DAY = datetime(2024, 3, 3, 8, 0, tzinfo=timezone.utc)


def _record(engine, command_id, event_type, slot, at=None, **timing):
    at = at or slot
    return engine.events.create(
        CreateEventRequest.model_validate(
            {
                "commandId": command_id,
                "patientId": "patient-1",
                "eventType": event_type,
                "context": {"medicationName": "Lisinopril"},
                "timing": {"eventTimestamp": at, "scheduledFor": slot, **timing},
            }
        )
    )


@pytest.fixture
def command_id(engine):
    command, _ = engine.commands.create(medication_request())
    return command.id


@pytest.fixture
def history(engine, command_id):
    """Ten daily doses: five on time, one late, one very late, then three missed"""
    for day in range(10):
        slot = FIRST_DAY + timedelta(days=day)
        _record(engine, command_id, "dose_scheduled", slot)
        if day < 5:
            _record(engine, command_id, "dose_taken", slot, isOnTime=True, minutesLate=0)
        elif day == 5:
            late = slot + timedelta(minutes=45)
            _record(engine, command_id, "dose_taken", slot, late, isOnTime=False, minutesLate=45)
        elif day == 6:
            very_late = slot + timedelta(minutes=200)
            _record(engine, command_id, "dose_taken", slot, very_late, isOnTime=False, minutesLate=200)
        else:
            _record(engine, command_id, "dose_missed", slot, slot + timedelta(minutes=30))
    return command_id


def test_metrics(engine, history):
    analytics = engine.analytics.calculate("patient-1")
    metrics = analytics.metrics

    assert metrics.total_scheduled_doses == 10
    assert metrics.total_taken_doses == 7
    assert metrics.missed_doses == 3
    assert metrics.overall_adherence_rate == 70.0
    assert metrics.on_time_adherence_rate == 71.43
    assert metrics.late_doses == 1
    assert metrics.very_late_doses == 1
    assert metrics.average_delay_minutes == 122.5
    assert metrics.max_delay_minutes == 200


def test_patterns_and_risk(engine, history):
    analytics = engine.analytics.calculate("patient-1", history)
    patterns = analytics.patterns

    assert analytics.medication_name == "Lisinopril"
    assert patterns.most_missed_time_slot == "morning"
    assert patterns.longest_adherence_streak == 7
    assert patterns.current_adherence_streak == 0
    assert patterns.consecutive_missed_doses == 3
    assert patterns.improvement_trend == Trend.DECLINING
    # Weekend days are Sun 3rd, Sat 9th (both taken) and Sun 10th (missed)
    assert patterns.weekend_adherence_rate == 66.67
    assert patterns.weekday_adherence_rate == 71.43

    risk = analytics.risk_assessment
    # Medium by rate, escalated one level by the miss streak and decline
    assert risk.risk_level == RiskLevel.HIGH
    assert "3 consecutive missed doses" in risk.risk_factors
    assert "Declining adherence trend" in risk.risk_factors
    assert "family_notification" in risk.intervention_recommendations


def test_undone_doses_do_not_count(engine, clock, command_id):
    slot = FIRST_DAY
    _record(engine, command_id, "dose_scheduled", slot)
    taken = _record(engine, command_id, "dose_taken", slot, isOnTime=True, minutesLate=0)
    engine.events.create(
        CreateEventRequest.model_validate(
            {
                "commandId": command_id,
                "patientId": "patient-1",
                "eventType": "dose_taken_undone",
                "eventData": {
                    "undoData": {
                        "originalEventId": taken.id,
                        "undoReason": "wrong patient",
                        "undoTimestamp": clock.now + timedelta(seconds=12),
                    }
                },
                "timing": {"eventTimestamp": slot + timedelta(seconds=12), "scheduledFor": slot},
            }
        )
    )

    analytics = engine.analytics.calculate("patient-1")

    assert analytics.metrics.total_taken_doses == 0
    assert analytics.metrics.undone_doses == 1
    assert analytics.patterns.undo_patterns.total_undos == 1
    assert analytics.patterns.undo_patterns.undo_reasons == {"wrong patient": 1}
    assert analytics.patterns.undo_patterns.average_undo_seconds == 12.0


def test_empty_history(engine):
    analytics = engine.analytics.calculate("patient-1")
    assert analytics.metrics.overall_adherence_rate == 0
    assert analytics.patterns.most_missed_time_slot is None
    assert analytics.patterns.most_missed_day_of_week is None


def test_calculate_validates_inputs(engine, clock):
    with pytest.raises(ValidationError):
        engine.analytics.calculate("patient-1", tz="Nowhere/Special")
    with pytest.raises(ValidationError):
        engine.analytics.calculate("patient-1", start=clock.now, end=clock.now - timedelta(days=1))


def test_weekly_report(engine, history):
    report = engine.analytics.generate_report("patient-1", "weekly")

    # Window covers the 7th through the 12th: three taken of six scheduled
    assert report.overall.metrics.overall_adherence_rate == 50.0
    assert report.summary.total_medications == 1
    assert report.summary.best_performing == "Lisinopril"
    assert report.summary.needs_attention == "Lisinopril"
    assert report.summary.medications_at_risk == ["Lisinopril"]


def test_report_type_checks(engine):
    with pytest.raises(ValidationError):
        engine.analytics.generate_report("patient-1", "custom")
    with pytest.raises(ValidationError):
        engine.analytics.generate_report("patient-1", "quarterly")


def test_milestones_are_recorded_once(engine, history):
    first = engine.analytics.check_milestones("patient-1")
    assert [m.milestone_type for m in first] == ["first_dose"]

    assert engine.analytics.check_milestones("patient-1") == []
