import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from medsync.core import collections
from medsync.core.engine import MedicationEngine
from medsync.core.storage import MemoryStorage, WriteOp
from medsync.models.events import EventType
from medsync.models.notifications import NotificationType, Urgency
from medsync.models.requests import (
    EventQuery,
    MarkTakenRequest,
    MissedDoseRequest,
    StatusChangeRequest,
    UpdateMedicationRequest,
)
from medsync.services.events import missed_event_id

from conftest import medication_request

FIRST_SLOT = datetime(2024, 3, 14, 8, 0, tzinfo=timezone.utc)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def created(engine):
    result = run(engine.orchestrator.create_medication_workflow(medication_request()))
    assert result.success, result.error
    return result


@pytest.fixture
def family(storage):
    storage.commit(
        [
            WriteOp(collections.PATIENTS, "patient-1", "create", {"id": "patient-1", "name": "Ada"}),
            WriteOp(
                collections.FAMILY_ACCESS,
                "fa-1",
                "create",
                {
                    "id": "fa-1",
                    "patientId": "patient-1",
                    "familyMemberId": "daughter-1",
                    "familyMemberName": "Grace",
                    "status": "active",
                    "permissions": {"canReceiveAlerts": True},
                },
            ),
            WriteOp(
                collections.FAMILY_ACCESS,
                "fa-2",
                "create",
                {
                    "id": "fa-2",
                    "patientId": "patient-1",
                    "familyMemberId": "neighbour-1",
                    "status": "active",
                    "permissions": {"canReceiveAlerts": False, "isEmergencyContact": True},
                },
            ),
        ]
    )


def _scheduled(engine, command_id):
    return engine.events.query(
        EventQuery(command_id=command_id, event_type="dose_scheduled", order_direction="asc")
    )


def test_create_writes_command_seed_and_schedule(engine, created):
    command = engine.commands.get(created.command_id)
    assert command is not None
    assert created.transaction_id is not None

    seeds = [engine.events.get(i).event_type for i in created.event_ids[:2]]
    assert seeds == [EventType.MEDICATION_CREATED, EventType.SCHEDULE_CREATED]

    scheduled = _scheduled(engine, command.id)
    # Daily 08:00 UTC from tomorrow through the 30 day horizon
    assert len(scheduled) == 30
    assert len(created.event_ids) == 32
    first = scheduled[0]
    assert first.timing.scheduled_for == FIRST_SLOT
    assert first.timing.event_timestamp == FIRST_SLOT
    assert first.timing.grace_period_end == FIRST_SLOT + timedelta(minutes=30)
    assert {e.metadata.correlation_id for e in scheduled} == {created.correlation_id}


def test_create_reports_validation_failure(engine):
    result = run(
        engine.orchestrator.create_medication_workflow(medication_request(patientId=""))
    )
    assert not result.success
    assert result.error_code == "validation"
    assert "Patient ID is required" in result.data["errors"]
    assert engine.commands.get_active() == []


def test_schedule_change_regenerates_future_slots(engine, created):
    result = run(
        engine.orchestrator.update_medication_workflow(
            UpdateMedicationRequest(command_id=created.command_id, changes={"schedule.times": ["09:00"]})
        )
    )

    assert result.success
    assert result.data["regenerated"]["deleted"] == 30
    assert result.data["regenerated"]["created"] == 30
    times = {e.timing.scheduled_for.strftime("%H:%M") for e in _scheduled(engine, created.command_id)}
    assert times == {"09:00"}


def test_non_schedule_update_keeps_events(engine, created):
    result = run(
        engine.orchestrator.update_medication_workflow(
            UpdateMedicationRequest(
                command_id=created.command_id, changes={"medication.instructions": "With water"}
            )
        )
    )
    assert result.success
    assert "regenerated" not in result.data
    assert len(_scheduled(engine, created.command_id)) == 30


def test_mark_taken_on_time(engine, clock, created):
    clock.advance(hours=22, minutes=10)

    result = run(
        engine.orchestrator.mark_medication_taken_workflow(
            MarkTakenRequest(command_id=created.command_id, scheduled_for=FIRST_SLOT)
        )
    )

    assert result.success
    assert result.data == {"isOnTime": True, "minutesLate": 10}
    assert engine.commands.get(created.command_id).metadata.last_event_id == result.event_ids[0]


def test_mark_taken_early_keeps_signed_minutes(engine, clock, created):
    clock.now = FIRST_SLOT - timedelta(minutes=20)

    result = run(
        engine.orchestrator.mark_medication_taken_workflow(
            MarkTakenRequest(command_id=created.command_id, scheduled_for=FIRST_SLOT)
        )
    )

    assert result.success
    assert result.data == {"isOnTime": True, "minutesLate": -20}
    metrics = engine.analytics.calculate("patient-1").metrics
    assert metrics.early_doses == 1
    assert metrics.late_doses == 0
    assert metrics.on_time_doses == 1


def test_mark_taken_rejects_non_taken_type(engine, created):
    result = run(
        engine.orchestrator.mark_medication_taken_workflow(
            MarkTakenRequest(command_id=created.command_id, scheduled_for=FIRST_SLOT, event_type="dose_missed")
        )
    )
    assert result.error_code == "validation"


def test_unknown_command_is_not_found(engine):
    result = run(
        engine.orchestrator.mark_medication_taken_workflow(
            MarkTakenRequest(command_id="cmd_missing", scheduled_for=FIRST_SLOT)
        )
    )
    assert not result.success
    assert result.error_code == "not_found"


def test_status_change_blocks_doses(engine, created):
    paused = run(
        engine.orchestrator.medication_status_change_workflow(
            StatusChangeRequest(command_id=created.command_id, new_status="paused", reason="surgery")
        )
    )
    assert paused.success
    assert paused.data == {"previousStatus": "active", "newStatus": "paused"}

    taken = run(
        engine.orchestrator.mark_medication_taken_workflow(
            MarkTakenRequest(command_id=created.command_id, scheduled_for=FIRST_SLOT)
        )
    )
    assert not taken.success
    assert taken.error_code == "conflict"

    same = run(
        engine.orchestrator.medication_status_change_workflow(
            StatusChangeRequest(command_id=created.command_id, new_status="paused")
        )
    )
    assert same.error_code == "conflict"


def test_missed_workflow_is_idempotent(engine, created):
    request = MissedDoseRequest(command_id=created.command_id, scheduled_for=FIRST_SLOT, notify=False)

    first = run(engine.orchestrator.process_missed_medication_workflow(request))
    second = run(engine.orchestrator.process_missed_medication_workflow(request))

    assert first.success and len(first.event_ids) == 1
    assert second.success and second.data == {"alreadyRecorded": True}
    missed = engine.events.query(EventQuery(command_id=created.command_id, event_type="dose_missed"))
    assert len(missed) == 1


class GatedStorage(MemoryStorage):
    """Holds a gated thread's next transaction until every party has reached it"""

    def __init__(self, parties: int):
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=5)
        self.local = threading.local()

    def run_transaction(self, fn):
        if getattr(self.local, "gated", False):
            self.local.gated = False
            self.barrier.wait()
        return super().run_transaction(fn)


def test_racing_missed_workflows_record_the_slot_once(clock, dispatcher):
    storage = GatedStorage(parties=2)
    engines = [MedicationEngine(storage, dispatcher=dispatcher, clock=clock) for _ in range(2)]
    created = run(engines[0].orchestrator.create_medication_workflow(medication_request()))
    request = MissedDoseRequest(command_id=created.command_id, scheduled_for=FIRST_SLOT, notify=False)
    outcomes = []

    def detect(engine):
        # Both workflows pass the "already missed?" read before either writes
        storage.local.gated = True
        outcomes.append(run(engine.orchestrator.process_missed_medication_workflow(request)))

    threads = [threading.Thread(target=detect, args=(e,)) for e in engines]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(outcomes) == 2
    assert all(o.success for o in outcomes)
    assert sorted(bool(o.data.get("alreadyRecorded")) for o in outcomes) == [False, True]
    missed = engines[1].events.query(EventQuery(command_id=created.command_id, event_type="dose_missed"))
    assert [e.id for e in missed] == [missed_event_id(created.command_id, FIRST_SLOT)]


def test_missed_workflow_defers_to_a_taken_dose(engine, clock, created):
    clock.now = FIRST_SLOT + timedelta(minutes=5)
    taken = run(
        engine.orchestrator.mark_medication_taken_workflow(
            MarkTakenRequest(command_id=created.command_id, scheduled_for=FIRST_SLOT, taken_by="patient-1")
        )
    )
    assert taken.success

    clock.advance(hours=1)
    outcome = run(
        engine.orchestrator.process_missed_medication_workflow(
            MissedDoseRequest(command_id=created.command_id, scheduled_for=FIRST_SLOT, notify=False)
        )
    )

    assert outcome.success
    assert outcome.data == {"alreadyRecorded": True}
    assert outcome.event_ids == []
    assert engine.events.query(EventQuery(command_id=created.command_id, event_type="dose_missed")) == []


def test_detection_flags_overdue_slots_once(engine, clock, created, family, dispatcher):
    clock.advance(hours=23)

    result = run(engine.orchestrator.process_missed_medication_detection())

    assert result.success
    assert result.medications_processed == 1
    assert result.missed_detected == 1
    assert result.workflows_executed == 1
    # Patient on two channels, one family member with alerts enabled on two
    assert result.notifications_sent == 4

    request = dispatcher.requests[0]
    assert request.notification_type == NotificationType.MISSED
    assert request.urgency == Urgency.MEDIUM
    assert {r.user_id for r in request.recipients} == {"patient-1", "daughter-1"}

    again = run(engine.orchestrator.process_missed_medication_detection())
    assert again.missed_detected == 0
    assert len(dispatcher.requests) == 1


def test_detection_respects_taken_window(engine, clock, created):
    # Taken 50 minutes early covers the slot
    clock.advance(hours=21, minutes=10)
    run(
        engine.orchestrator.mark_medication_taken_workflow(
            MarkTakenRequest(command_id=created.command_id, scheduled_for=FIRST_SLOT - timedelta(minutes=50))
        )
    )
    clock.advance(hours=2)
    assert run(engine.orchestrator.process_missed_medication_detection()).missed_detected == 0


def test_detection_ignores_taken_far_after_slot(engine, clock, created):
    # 4.5 hours after the slot is outside the taken window
    clock.advance(hours=26, minutes=30)
    taken_at = FIRST_SLOT + timedelta(hours=4, minutes=30)
    run(
        engine.orchestrator.mark_medication_taken_workflow(
            MarkTakenRequest(command_id=created.command_id, scheduled_for=taken_at, taken_at=taken_at)
        )
    )
    assert run(engine.orchestrator.process_missed_medication_detection()).missed_detected == 1


def test_detection_skips_paused_medications(engine, clock, created):
    run(
        engine.orchestrator.medication_status_change_workflow(
            StatusChangeRequest(command_id=created.command_id, new_status="paused")
        )
    )
    clock.advance(hours=23)
    result = run(engine.orchestrator.process_missed_medication_detection())
    assert result.medications_processed == 0
    assert result.missed_detected == 0


def test_notifications_never_fail_a_workflow(engine, created, family):
    class BrokenDispatcher:
        async def dispatch(self, request):
            raise RuntimeError("provider down")

    engine.orchestrator.dispatcher = BrokenDispatcher()
    result = run(
        engine.orchestrator.medication_status_change_workflow(
            StatusChangeRequest(command_id=created.command_id, new_status="held", notify_family=True)
        )
    )
    assert result.success
    assert result.notifications_sent == 0
