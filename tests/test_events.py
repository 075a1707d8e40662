from datetime import datetime, timedelta, timezone

import pytest

from medsync.core import collections
from medsync.core.errors import ConflictError, ValidationError
from medsync.core.storage import WriteOp
from medsync.models.events import EventType
from medsync.models.requests import CreateEventRequest, EventQuery


def _event_request(event_type="dose_taken", at=None, **extra):
    timing = {"eventTimestamp": at.isoformat()} if at else {}
    payload = {
        "commandId": "cmd_1",
        "patientId": "patient-1",
        "eventType": event_type,
        "context": {"medicationName": "Lisinopril"},
        "timing": timing,
    }
    payload.update(extra)
    return CreateEventRequest.model_validate(payload)


def test_create_event_fills_metadata(engine, clock):
    event = engine.events.create(_event_request())

    assert event.id.startswith("evt_")
    assert event.event_type == EventType.DOSE_TAKEN
    assert event.timing.event_timestamp == clock.now
    assert event.metadata.created_at == clock.now
    assert event.metadata.correlation_id.startswith("corr_")
    assert event.metadata.event_version == 1


def test_unknown_event_type_is_rejected(engine):
    with pytest.raises(ValidationError) as excinfo:
        engine.events.create(_event_request("dose_teleported"))
    assert "Unknown event type: dose_teleported" in excinfo.value.errors


def test_events_cannot_be_overwritten(engine):
    event = engine.events.create(_event_request())
    with pytest.raises(ConflictError):
        engine.storage.commit(
            [WriteOp(collections.EVENTS, event.id, "create", {"id": event.id, "eventType": "dose_missed"})]
        )
    assert engine.events.get(event.id).event_type == EventType.DOSE_TAKEN


def test_batch_keeps_earlier_successes(engine):
    result = engine.events.create_batch(
        [_event_request(), _event_request("not_a_type"), _event_request("dose_skipped")],
        correlation_id="corr_batch",
    )

    assert len(result.created) == 2
    assert result.failed[0]["index"] == 1
    assert result.failed[0]["code"] == "validation"
    correlated = engine.events.get_correlated_events("corr_batch")
    assert {e.id for e in correlated} == set(result.created)


def test_query_by_type_and_range(engine, clock):
    base = clock.now
    for hours in (0, 1, 2, 3):
        engine.events.create(_event_request(at=base + timedelta(hours=hours)))
    engine.events.create(_event_request("dose_missed", at=base + timedelta(hours=1)))

    events = engine.events.query(
        EventQuery(
            patient_id="patient-1",
            event_type="dose_taken",
            start_date=base + timedelta(hours=1),
            end_date=base + timedelta(hours=2),
            order_direction="asc",
        )
    )
    assert [e.timing.event_timestamp for e in events] == [
        base + timedelta(hours=1),
        base + timedelta(hours=2),
    ]


def test_archived_events_hidden_by_default(engine):
    first = engine.events.create(_event_request())
    second = engine.events.create(_event_request("dose_skipped"))

    assert engine.events.archive([first.id], "2024-03-12", "patient-1_2024-03-12") == 1
    # Second archive of the same event is a no-op
    assert engine.events.archive([first.id], "2024-03-12", "patient-1_2024-03-12") == 0

    visible = engine.events.query(EventQuery(patient_id="patient-1"))
    assert [e.id for e in visible] == [second.id]

    archived = engine.events.query(EventQuery(patient_id="patient-1", only_archived=True))
    assert archived[0].archive_status.belongs_to_date == "2024-03-12"
    # Business fields are untouched by archival
    assert archived[0].event_type == first.event_type
    assert archived[0].timing == first.timing


def test_taken_event_near_slot(engine):
    slot = datetime(2024, 3, 13, 8, 0, tzinfo=timezone.utc)
    engine.events.create(_event_request(at=slot + timedelta(hours=3, minutes=59)))

    assert engine.events.has_taken_event_near("cmd_1", slot)
    assert not engine.events.has_taken_event_near("cmd_1", slot - timedelta(hours=1, minutes=1))
    assert not engine.events.has_taken_event_near("cmd_1", slot + timedelta(hours=5))


def test_event_statistics(engine):
    engine.events.create(_event_request())
    engine.events.create(_event_request())
    engine.events.create(_event_request("dose_missed"))

    stats = engine.events.get_event_statistics("patient-1")
    assert stats["total"] == 3
    assert stats["byType"] == {"dose_taken": 2, "dose_missed": 1}
