"""
Transaction manager
Atomic multi-document writes with a transaction log, best-effort compensation
and the domain transactions used by the orchestrator
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from medsync.core import collections
from medsync.core.errors import ConflictError, MedsyncError, NotFoundError
from medsync.core.ids import generate_transaction_id, hashed_id
from medsync.core.logger import get_logger
from medsync.core.protocols import Clock
from medsync.core.storage import AtomicStorage, Transaction, WriteOp, apply_update
from medsync.core.timeutils import utcnow
from medsync.models.commands import MedicationCommand, MedicationStatus
from medsync.models.events import EventContext, EventData, EventType, MedicationEvent
from medsync.models.requests import CreateEventRequest, EventTimingRequest
from medsync.models.transactions import (
    LoggedOperation,
    RollbackInfo,
    RollbackLogEntry,
    RollbackStrategy,
    TransactionLogEntry,
    TransactionResult,
    TransactionStatus,
)
from medsync.services.commands import CommandStore, compute_checksum
from medsync.services.events import EventStore

logger = get_logger(__name__)

STATUS_EVENT_TYPES = {
    MedicationStatus.PAUSED: EventType.MEDICATION_PAUSED,
    MedicationStatus.HELD: EventType.MEDICATION_HELD,
    MedicationStatus.DISCONTINUED: EventType.MEDICATION_DISCONTINUED,
    MedicationStatus.ACTIVE: EventType.MEDICATION_RESUMED,
}

TransactionFn = Callable[[Transaction], Dict[str, Any]]


@dataclass
class DistributedPhase:
    """One step of a saga: its writes and the writes that undo them"""

    name: str
    operations: List[WriteOp]
    compensation: List[WriteOp] = field(default_factory=list)


class TransactionManager:
    """Runs atomic writes and records them in the transaction log"""

    def __init__(
        self,
        storage: AtomicStorage,
        commands: CommandStore,
        events: EventStore,
        clock: Clock = utcnow,
    ):
        self.storage = storage
        self.commands = commands
        self.events = events
        self.clock = clock

    # ==================== Core runner ====================

    def _run(
        self,
        transaction_type: str,
        fn: TransactionFn,
        planned: Sequence[WriteOp] = (),
        rollback_strategy: str = "automatic",
        created_by: str = "system",
        correlation_id: Optional[str] = None,
    ) -> TransactionResult:
        strategy = RollbackStrategy(rollback_strategy)
        transaction_id = generate_transaction_id(self.clock())
        started = time.perf_counter()
        entry = TransactionLogEntry(
            transaction_id=transaction_id,
            transaction_type=transaction_type,
            operations=[self._logged(op) for op in planned],
            status=TransactionStatus.PENDING,
            started_at=self.clock(),
            created_by=created_by,
            correlation_id=correlation_id,
            rollback_info=RollbackInfo(strategy=strategy),
        )
        self._write_log(entry)

        pre_existing = self._existing_targets(planned)
        captured: List[WriteOp] = []

        def _wrapped(txn: Transaction) -> Dict[str, Any]:
            try:
                return fn(txn)
            finally:
                captured[:] = txn.operations

        try:
            results = self.storage.run_transaction(_wrapped)
        except MedsyncError as e:
            return self._fail(entry, started, e.message, e.code, captured or list(planned), planned, pre_existing)
        except Exception as e:
            logger.error(f"Transaction {transaction_id} failed unexpectedly: {e}", exc_info=True)
            return self._fail(
                entry, started, str(e), "infrastructure", captured or list(planned), planned, pre_existing
            )

        elapsed = (time.perf_counter() - started) * 1000
        entry.operations = [self._logged(op) for op in captured]
        entry.status = TransactionStatus.COMPLETED
        entry.completed_at = self.clock()
        entry.execution_time_ms = round(elapsed, 3)
        self._write_log(entry)
        logger.info(
            f"✓ Transaction {transaction_id} ({transaction_type}) committed {len(captured)} operations"
        )
        return TransactionResult(
            success=True,
            transaction_id=transaction_id,
            correlation_id=correlation_id,
            execution_time_ms=entry.execution_time_ms,
            results=results or {},
        )

    def _fail(
        self,
        entry: TransactionLogEntry,
        started: float,
        error: str,
        code: str,
        operations: Sequence[WriteOp],
        planned: Sequence[WriteOp],
        pre_existing: set,
    ) -> TransactionResult:
        """Compensation only covers explicitly planned operations; callback transactions are fully native"""
        logger.warning(f"Transaction {entry.transaction_id} ({entry.transaction_type}) failed: {error}")
        if entry.rollback_info.strategy == RollbackStrategy.AUTOMATIC:
            entry.rollback_info = self._compensate(entry.transaction_id, planned, pre_existing)
        else:
            logger.warning(f"Transaction {entry.transaction_id}: manual rollback strategy, nothing compensated")

        entry.status = TransactionStatus.FAILED
        entry.error = error
        entry.completed_at = self.clock()
        entry.execution_time_ms = round((time.perf_counter() - started) * 1000, 3)
        entry.operations = [self._logged(op) for op in operations]
        self._write_log(entry)
        return TransactionResult(
            success=False,
            transaction_id=entry.transaction_id,
            correlation_id=entry.correlation_id,
            execution_time_ms=entry.execution_time_ms,
            error=error,
            error_code=code,
            rollback_performed=entry.rollback_info.attempted,
        )

    def _compensate(
        self, transaction_id: str, operations: Sequence[WriteOp], pre_existing: set
    ) -> RollbackInfo:
        """Delete documents this transaction created; updates and deletes need manual review"""
        info = RollbackInfo(strategy=RollbackStrategy.AUTOMATIC, attempted=True)
        for op in reversed(list(operations)):
            key = (op.collection, op.document_id)
            if op.operation in ("set", "create"):
                if key in pre_existing or self.storage.get(op.collection, op.document_id) is None:
                    continue
                try:
                    self.storage.commit([WriteOp(op.collection, op.document_id, "delete", must_exist=False)])
                    info.compensated_document_ids.append(op.document_id)
                except MedsyncError as e:
                    logger.error(
                        f"Transaction {transaction_id}: compensation of {op.collection}/{op.document_id} failed: {e}",
                        exc_info=True,
                    )
                    info.manual_review_required = True
            else:
                logger.warning(
                    f"Transaction {transaction_id}: {op.operation} on {op.collection}/{op.document_id} "
                    "cannot be compensated automatically, manual review required"
                )
                info.manual_review_required = True
        return info

    def _existing_targets(self, operations: Sequence[WriteOp]) -> set:
        return {
            (op.collection, op.document_id)
            for op in operations
            if op.operation in ("set", "create")
            and self.storage.get(op.collection, op.document_id) is not None
        }

    def _logged(self, op: WriteOp) -> LoggedOperation:
        return LoggedOperation.model_validate(op.to_dict())

    def _write_log(self, entry: TransactionLogEntry) -> None:
        try:
            self.storage.commit(
                [WriteOp(collections.TRANSACTION_LOG, entry.transaction_id, "set", entry.to_document())]
            )
        except MedsyncError as e:
            logger.error(f"Failed to write transaction log {entry.transaction_id}: {e}", exc_info=True)

    # ==================== Generic ====================

    def execute_transaction(
        self,
        operations: Sequence[WriteOp],
        rollback_strategy: str = "automatic",
        transaction_type: str = "custom",
        created_by: str = "system",
        correlation_id: Optional[str] = None,
    ) -> TransactionResult:
        """Apply every operation atomically; update/delete re-check existence inside"""
        operations = list(operations)

        def _apply(txn: Transaction) -> Dict[str, Any]:
            for op in operations:
                txn.apply(op)
            return {"operationCount": len(operations)}

        return self._run(
            transaction_type,
            _apply,
            planned=operations,
            rollback_strategy=rollback_strategy,
            created_by=created_by,
            correlation_id=correlation_id,
        )

    # ==================== Domain transactions ====================

    def execute_medication_creation_transaction(
        self, command: MedicationCommand, seed_events: Sequence[MedicationEvent]
    ) -> TransactionResult:
        operations = [WriteOp(collections.COMMANDS, command.id, "create", command.to_document())]
        operations += [
            WriteOp(collections.EVENTS, event.id, "create", event.to_document()) for event in seed_events
        ]
        result = self.execute_transaction(
            operations,
            transaction_type="medication_creation",
            created_by=command.metadata.created_by,
            correlation_id=seed_events[0].metadata.correlation_id if seed_events else None,
        )
        if result.success:
            result.results = {
                "commandId": command.id,
                "eventIds": [event.id for event in seed_events],
            }
        return result

    def execute_dose_transaction(
        self, command_id: str, event: MedicationEvent, updated_by: str = "system"
    ) -> TransactionResult:
        """Record a taken dose and bump the command metadata together"""

        def _dose(txn: Transaction) -> Dict[str, Any]:
            doc = txn.get(collections.COMMANDS, command_id)
            if doc is None:
                raise NotFoundError("Medication command", command_id)
            command = MedicationCommand.from_document(doc)
            if not command.status.is_active:
                raise ConflictError(
                    f"Medication {command_id} is {command.status.current.value}, not active",
                    {"commandId": command_id, "status": command.status.current.value},
                )
            txn.create(collections.EVENTS, event.id, event.to_document())
            self._bump_command(txn, command, event.id, updated_by)
            return {"eventId": event.id, "commandVersion": command.metadata.version}

        return self._run(
            "dose_taken",
            _dose,
            created_by=updated_by,
            correlation_id=event.metadata.correlation_id,
        )

    def execute_status_change_transaction(
        self,
        command_id: str,
        new_status: MedicationStatus,
        reason: Optional[str] = None,
        changed_by: str = "system",
        paused_until: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> TransactionResult:
        """Change status and record the matching lifecycle event atomically"""
        new_status = MedicationStatus(new_status)

        def _status(txn: Transaction) -> Dict[str, Any]:
            doc = txn.get(collections.COMMANDS, command_id)
            if doc is None:
                raise NotFoundError("Medication command", command_id)
            current = MedicationCommand.from_document(doc)
            changes = self.commands.status_changes(current, new_status, reason, changed_by, paused_until)

            event = self.events.build_event(
                CreateEventRequest(
                    command_id=command_id,
                    patient_id=current.patient_id,
                    event_type=STATUS_EVENT_TYPES.get(new_status, EventType.MEDICATION_UPDATED).value,
                    event_data=EventData(
                        previous_status=current.status.current.value,
                        new_status=new_status.value,
                        status_reason=reason,
                    ),
                    context=EventContext(medication_name=current.medication.name),
                    timing=EventTimingRequest(),
                    created_by=changed_by,
                    correlation_id=correlation_id,
                )
            )
            changes["metadata.lastEventId"] = event.id
            command = MedicationCommand.from_document(apply_update(doc, changes))
            command.metadata.checksum = compute_checksum(command)
            txn.set(collections.COMMANDS, command_id, command.to_document())
            txn.create(collections.EVENTS, event.id, event.to_document())
            return {
                "eventId": event.id,
                "previousStatus": current.status.current.value,
                "newStatus": new_status.value,
                "correlationId": event.metadata.correlation_id,
            }

        return self._run(
            "status_change",
            _status,
            created_by=changed_by,
            correlation_id=correlation_id,
        )

    def execute_events_transaction(
        self,
        events: Sequence[MedicationEvent],
        transaction_type: str,
        created_by: str = "system",
        precondition: Optional[Callable[[Transaction], None]] = None,
    ) -> TransactionResult:
        """Create several events atomically, after an optional in-transaction check"""

        def _events(txn: Transaction) -> Dict[str, Any]:
            if precondition is not None:
                precondition(txn)
            for event in events:
                txn.create(collections.EVENTS, event.id, event.to_document())
            return {"eventIds": [event.id for event in events]}

        return self._run(
            transaction_type,
            _events,
            created_by=created_by,
            correlation_id=events[0].metadata.correlation_id if events else None,
        )

    def _bump_command(
        self, txn: Transaction, command: MedicationCommand, event_id: str, updated_by: str
    ) -> None:
        command.metadata.last_event_id = event_id
        command.metadata.updated_at = self.clock()
        command.metadata.updated_by = updated_by
        command.metadata.version += 1
        command.metadata.checksum = compute_checksum(command)
        txn.set(collections.COMMANDS, command.id, command.to_document())

    # ==================== Distributed ====================

    def execute_distributed_transaction(
        self,
        phases: Sequence[DistributedPhase],
        transaction_type: str = "distributed",
        created_by: str = "system",
    ) -> TransactionResult:
        """Saga: phases commit one by one; on failure completed phases are compensated in reverse"""
        transaction_id = generate_transaction_id(self.clock())
        started = time.perf_counter()
        all_ops = [op for phase in phases for op in phase.operations]
        entry = TransactionLogEntry(
            transaction_id=transaction_id,
            transaction_type=transaction_type,
            operations=[self._logged(op) for op in all_ops],
            started_at=self.clock(),
            created_by=created_by,
        )
        self._write_log(entry)

        completed: List[DistributedPhase] = []
        for phase in phases:
            try:
                self.storage.commit(phase.operations)
            except MedsyncError as e:
                return self._fail_distributed(entry, started, phase, completed, e.message, e.code)
            except Exception as e:
                logger.error(f"Phase {phase.name} of {transaction_id} failed unexpectedly: {e}", exc_info=True)
                return self._fail_distributed(entry, started, phase, completed, str(e), "infrastructure")
            completed.append(phase)
            logger.debug(f"Transaction {transaction_id}: phase {phase.name} committed")

        entry.status = TransactionStatus.COMPLETED
        entry.completed_at = self.clock()
        entry.execution_time_ms = round((time.perf_counter() - started) * 1000, 3)
        self._write_log(entry)
        logger.info(f"✓ Distributed transaction {transaction_id} completed {len(completed)} phases")
        return TransactionResult(
            success=True,
            transaction_id=transaction_id,
            execution_time_ms=entry.execution_time_ms,
            results={"completedPhases": [p.name for p in completed]},
        )

    def _fail_distributed(
        self,
        entry: TransactionLogEntry,
        started: float,
        failed: DistributedPhase,
        completed: List[DistributedPhase],
        error: str,
        code: str,
    ) -> TransactionResult:
        compensated, compensation_errors = self._run_compensations(entry.transaction_id, completed)
        rollback = RollbackLogEntry(
            id=hashed_id("rb", entry.transaction_id),
            transaction_id=entry.transaction_id,
            failed_phase=failed.name,
            completed_phases=[p.name for p in completed],
            compensated_phases=compensated,
            compensation_errors=compensation_errors,
            error=error,
            created_at=self.clock(),
        )
        try:
            self.storage.commit([WriteOp(collections.ROLLBACK_LOG, rollback.id, "create", rollback.to_document())])
        except MedsyncError as e:
            logger.error(f"Failed to write rollback log for {entry.transaction_id}: {e}", exc_info=True)

        entry.status = TransactionStatus.FAILED
        entry.error = f"Phase {failed.name} failed: {error}"
        entry.completed_at = self.clock()
        entry.execution_time_ms = round((time.perf_counter() - started) * 1000, 3)
        entry.rollback_info = RollbackInfo(
            attempted=bool(completed),
            manual_review_required=bool(compensation_errors),
        )
        self._write_log(entry)
        logger.warning(
            f"Distributed transaction {entry.transaction_id} failed at {failed.name}, "
            f"compensated {len(compensated)}/{len(completed)} phases"
        )
        return TransactionResult(
            success=False,
            transaction_id=entry.transaction_id,
            execution_time_ms=entry.execution_time_ms,
            error=entry.error,
            error_code=code,
            rollback_performed=bool(completed),
            results={"failedPhase": failed.name, "compensatedPhases": compensated},
        )

    def _run_compensations(
        self, transaction_id: str, completed: List[DistributedPhase]
    ) -> Tuple[List[str], List[str]]:
        compensated: List[str] = []
        errors: List[str] = []
        for phase in reversed(completed):
            try:
                self.storage.commit(phase.compensation)
                compensated.append(phase.name)
            except MedsyncError as e:
                logger.error(
                    f"Compensation of phase {phase.name} ({transaction_id}) failed: {e}", exc_info=True
                )
                errors.append(f"{phase.name}: {e.message}")
        return compensated, errors

    # ==================== Log queries ====================

    def get_transaction_status(self, transaction_id: str) -> Optional[TransactionLogEntry]:
        doc = self.storage.get(collections.TRANSACTION_LOG, transaction_id)
        return TransactionLogEntry.from_document(doc) if doc else None

    def get_transaction_statistics(
        self, transaction_type: Optional[str] = None, hours: int = 24
    ) -> Dict[str, Any]:
        since = self.clock() - timedelta(hours=hours)
        filters: List[Any] = [("startedAt", ">=", since)]
        if transaction_type:
            filters.append(("transactionType", "==", transaction_type))
        entries = [
            TransactionLogEntry.from_document(doc)
            for doc in self.storage.query(collections.TRANSACTION_LOG, filters)
        ]

        successful = [e for e in entries if e.status == TransactionStatus.COMPLETED]
        failed = [e for e in entries if e.status == TransactionStatus.FAILED]
        timed = [e.execution_time_ms for e in entries if e.execution_time_ms is not None]
        by_type: Dict[str, int] = {}
        for e in entries:
            by_type[e.transaction_type] = by_type.get(e.transaction_type, 0) + 1

        return {
            "total": len(entries),
            "successful": len(successful),
            "failed": len(failed),
            "pending": len(entries) - len(successful) - len(failed),
            "successRate": round(len(successful) / len(entries) * 100, 2) if entries else 0,
            "averageExecutionTime": round(sum(timed) / len(timed), 3) if timed else 0,
            "byType": by_type,
        }
