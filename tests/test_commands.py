import pytest

from medsync.core.errors import ConflictError, NotFoundError, ValidationError
from medsync.models.commands import MedicationStatus, MedicationType
from medsync.models.requests import CommandQuery
from medsync.services.commands import classify_medication, determine_time_slot

from conftest import medication_request


def test_create_command_defaults(engine):
    command, warnings = engine.commands.create(medication_request())

    assert warnings == []
    assert command.id.startswith("cmd_")
    assert command.status.current == MedicationStatus.ACTIVE
    assert command.status.is_active is True
    assert command.status.is_prn is False
    assert command.grace_period.medication_type == MedicationType.STANDARD
    assert command.grace_period.default_minutes == 30
    assert command.metadata.version == 1
    assert engine.commands.verify_checksum(command)
    assert engine.commands.get(command.id) == command


def test_validation_collects_every_error(engine):
    request = medication_request(
        patientId="",
        schedule={"times": ["25:00"], "dosageAmount": "", "timezone": "Mars/Olympus"},
    )
    with pytest.raises(ValidationError) as excinfo:
        engine.commands.create(request)

    errors = excinfo.value.errors
    assert "Patient ID is required" in errors
    assert "Dosage amount is required" in errors
    assert any("25:00" in e for e in errors)
    assert any("Mars/Olympus" in e for e in errors)


def test_end_before_start_is_rejected(engine):
    request = medication_request(schedule={"endDate": "2024-02-01T00:00:00Z"})
    with pytest.raises(ValidationError):
        engine.commands.create(request)


@pytest.mark.parametrize(
    "name,frequency,expected",
    [
        ("Insulin Glargine", "daily", MedicationType.CRITICAL),
        ("Vitamin D3", "daily", MedicationType.VITAMIN),
        ("Ibuprofen", "as_needed", MedicationType.PRN),
        ("Metformin", "twice_daily", MedicationType.STANDARD),
    ],
)
def test_classification(name, frequency, expected):
    assert classify_medication(name, frequency) == expected


def test_critical_medication_gets_short_grace_period(engine):
    command, _ = engine.commands.create(medication_request(medication={"name": "Warfarin"}))
    assert command.grace_period.default_minutes == 15


def test_times_resolved_from_patient_preferences(engine):
    request = medication_request(
        schedule={"frequency": "twice_daily", "times": [], "usePatientTimePreferences": True}
    )
    command, _ = engine.commands.create(request)

    assert command.schedule.times == ["08:00", "18:00"]
    assert command.schedule.computed_schedule.buckets == ["morning", "evening"]


def test_default_times_when_no_preferences_requested(engine):
    request = medication_request(schedule={"frequency": "three_times_daily", "times": []})
    command, _ = engine.commands.create(request)
    assert command.schedule.times == ["08:00", "14:00", "20:00"]


def test_count_mismatch_and_duplicates_are_warnings(engine):
    engine.commands.create(medication_request())
    _, warnings = engine.commands.create(
        medication_request(schedule={"frequency": "twice_daily", "times": ["08:00"]})
    )

    assert any("expects 2" in w for w in warnings)
    assert any("already has an active medication" in w for w in warnings)


def test_update_bumps_version_and_checksum(engine, clock):
    command, _ = engine.commands.create(medication_request())
    clock.advance(minutes=5)

    updated = engine.commands.update(command.id, {"schedule.times": ["9:30"]}, "nurse-2")

    assert updated.schedule.times == ["09:30"]
    assert updated.metadata.version == 2
    assert updated.metadata.updated_by == "nurse-2"
    assert updated.metadata.checksum != command.metadata.checksum
    assert engine.commands.verify_checksum(updated)


def test_update_rejects_status_and_identity_fields(engine):
    command, _ = engine.commands.create(medication_request())
    with pytest.raises(ValidationError) as excinfo:
        engine.commands.update(command.id, {"status.current": "paused", "patientId": "other"})
    assert len(excinfo.value.errors) == 2


def test_update_of_unknown_command(engine):
    with pytest.raises(NotFoundError):
        engine.commands.update("cmd_missing", {"schedule.times": ["09:00"]})


def test_status_change_keeps_flags_consistent(engine):
    command, _ = engine.commands.create(medication_request())

    paused = engine.commands.change_status(command.id, MedicationStatus.PAUSED, "travel")
    assert paused.status.is_active is False
    assert paused.flags_consistent()

    with pytest.raises(ConflictError):
        engine.commands.change_status(command.id, MedicationStatus.PAUSED)

    resumed = engine.commands.change_status(command.id, MedicationStatus.ACTIVE)
    assert resumed.status.is_active is True
    assert resumed.metadata.version == 3


def test_query_by_name_and_status(engine):
    engine.commands.create(medication_request(medication={"name": "Metformin", "genericName": "metformin hcl"}))
    lisinopril, _ = engine.commands.create(medication_request())
    engine.commands.discontinue(lisinopril.id, "side effects")

    by_name = engine.commands.query(CommandQuery(patient_id="patient-1", name="HCL"))
    assert [c.medication.name for c in by_name] == ["Metformin"]

    active = engine.commands.get_active("patient-1")
    assert [c.medication.name for c in active] == ["Metformin"]

    stats = engine.commands.get_stats("patient-1")
    assert stats["total"] == 2
    assert stats["byStatus"] == {"active": 1, "discontinued": 1}


@pytest.mark.parametrize(
    "clock_time,slot",
    [("07:30", "morning"), ("12:00", "lunch"), ("18:45", "evening"), ("22:00", "beforeBed")],
)
def test_time_slot(clock_time, slot):
    assert determine_time_slot(clock_time) == slot
