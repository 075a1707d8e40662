from medsync.core import collections
from medsync.core.storage import WriteOp
from medsync.models.commands import MedicationStatus
from medsync.models.events import EventType
from medsync.models.requests import CreateEventRequest
from medsync.models.transactions import TransactionStatus
from medsync.services.transactions import DistributedPhase

from conftest import medication_request


def _op(doc_id, operation="create", **data):
    return WriteOp("things", doc_id, operation, {"id": doc_id, **data})


def test_successful_transaction_is_logged(engine):
    result = engine.transactions.execute_transaction(
        [_op("a"), _op("b")], transaction_type="import", created_by="nurse-1"
    )

    assert result.success
    assert result.results == {"operationCount": 2}
    entry = engine.transactions.get_transaction_status(result.transaction_id)
    assert entry.status == TransactionStatus.COMPLETED
    assert entry.created_by == "nurse-1"
    assert [op.document_id for op in entry.operations] == ["a", "b"]
    assert entry.operations[0].data_keys == ["id"]


def test_failed_transaction_writes_nothing(engine, storage):
    storage.commit([_op("existing")])

    result = engine.transactions.execute_transaction([_op("fresh"), _op("existing")])

    assert not result.success
    assert result.error_code == "conflict"
    assert result.rollback_performed
    assert storage.get("things", "fresh") is None
    entry = engine.transactions.get_transaction_status(result.transaction_id)
    assert entry.status == TransactionStatus.FAILED
    assert "already exists" in entry.error


def test_manual_strategy_skips_compensation(engine):
    result = engine.transactions.execute_transaction(
        [_op("ghost", "update", n=1)], rollback_strategy="manual"
    )
    assert not result.success
    assert result.error_code == "not_found"
    assert not result.rollback_performed


def test_dose_transaction_requires_active_command(engine, clock):
    command, _ = engine.commands.create(medication_request())
    engine.commands.change_status(command.id, MedicationStatus.PAUSED, "hospital stay")
    event = engine.events.build_event(
        CreateEventRequest(command_id=command.id, patient_id="patient-1", event_type="dose_taken")
    )

    result = engine.transactions.execute_dose_transaction(command.id, event, "nurse-1")

    assert not result.success
    assert result.error_code == "conflict"
    assert engine.events.get(event.id) is None


def test_dose_transaction_bumps_command(engine):
    command, _ = engine.commands.create(medication_request())
    event = engine.events.build_event(
        CreateEventRequest(command_id=command.id, patient_id="patient-1", event_type="dose_taken")
    )

    result = engine.transactions.execute_dose_transaction(command.id, event, "nurse-1")

    assert result.success
    stored = engine.commands.get(command.id)
    assert stored.metadata.version == 2
    assert stored.metadata.last_event_id == event.id
    assert engine.commands.verify_checksum(stored)


def test_status_change_writes_command_and_event_together(engine):
    command, _ = engine.commands.create(medication_request())

    result = engine.transactions.execute_status_change_transaction(
        command.id, MedicationStatus.HELD, reason="lab results", changed_by="dr-1"
    )

    assert result.success
    assert result.results["previousStatus"] == "active"
    event = engine.events.get(result.results["eventId"])
    assert event.event_type == EventType.MEDICATION_HELD
    assert event.event_data.status_reason == "lab results"
    stored = engine.commands.get(command.id)
    assert stored.status.current == MedicationStatus.HELD
    assert stored.metadata.last_event_id == event.id


def test_distributed_failure_compensates_in_reverse(engine, storage):
    storage.commit([_op("taken")])
    phases = [
        DistributedPhase("first", [_op("x")], [WriteOp("things", "x", "delete")]),
        DistributedPhase("second", [_op("y")], [WriteOp("things", "y", "delete")]),
        DistributedPhase("third", [_op("taken")]),
    ]

    result = engine.transactions.execute_distributed_transaction(phases)

    assert not result.success
    assert result.results == {"failedPhase": "third", "compensatedPhases": ["second", "first"]}
    assert storage.get("things", "x") is None
    assert storage.get("things", "y") is None

    rollbacks = storage.query(collections.ROLLBACK_LOG, [("transactionId", "==", result.transaction_id)])
    assert len(rollbacks) == 1
    assert rollbacks[0]["completedPhases"] == ["first", "second"]
    assert rollbacks[0]["compensationErrors"] == []


def test_distributed_success(engine, storage):
    phases = [
        DistributedPhase("first", [_op("x")]),
        DistributedPhase("second", [_op("x", "update", n=2)]),
    ]
    result = engine.transactions.execute_distributed_transaction(phases)

    assert result.success
    assert result.results["completedPhases"] == ["first", "second"]
    assert storage.get("things", "x")["n"] == 2


def test_transaction_statistics(engine, storage):
    storage.commit([_op("existing")])
    engine.transactions.execute_transaction([_op("one")])
    engine.transactions.execute_transaction([_op("existing")])

    stats = engine.transactions.get_transaction_statistics(transaction_type="custom")
    assert stats["total"] == 2
    assert stats["successful"] == 1
    assert stats["failed"] == 1
    assert stats["successRate"] == 50.0
