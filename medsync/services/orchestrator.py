"""
Medication orchestrator
Coordinates the command store, event store, transaction manager, undo service
and notifications. Every workflow returns a WorkflowResult and never raises.
"""

import math
import time
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from medsync.config.settings import EngineSettings
from medsync.core.errors import MedsyncError, ValidationError
from medsync.core.ids import generate_correlation_id, generate_workflow_id
from medsync.core.logger import get_logger
from medsync.core.protocols import Clock, NotificationDispatcher, RecipientResolver
from medsync.core.timeutils import combine_local, ensure_utc, get_zone, utcnow
from medsync.models.commands import Frequency, MedicationCommand, MedicationType
from medsync.models.events import (
    TAKEN_EVENT_TYPES,
    EventContext,
    EventData,
    EventType,
    MedicationEvent,
    TriggerSource,
)
from medsync.models.notifications import NotificationRequest, NotificationType, Urgency
from medsync.models.requests import (
    CorrectionRequest,
    CreateEventRequest,
    CreateMedicationRequest,
    EventTimingRequest,
    MarkTakenRequest,
    MissedDoseRequest,
    StatusChangeRequest,
    UndoRequest,
    UpdateMedicationRequest,
)
from medsync.models.results import MissedDetectionResult, WorkflowResult
from medsync.models.transactions import TransactionResult
from medsync.services.commands import CommandStore
from medsync.services.events import EventStore, missed_event_id
from medsync.services.transactions import TransactionManager
from medsync.services.undo import UndoService

logger = get_logger(__name__)

DAILY_FREQUENCIES = (
    Frequency.DAILY,
    Frequency.TWICE_DAILY,
    Frequency.THREE_TIMES_DAILY,
    Frequency.FOUR_TIMES_DAILY,
)

# Changing any of these moves future dose slots
SCHEDULE_KEYS = ("schedule", "reminders", "gracePeriod")

_TAKEN_TYPE_VALUES = {t.value for t in TAKEN_EVENT_TYPES}


class MedicationOrchestrator:
    """Workflow layer over the engine services"""

    def __init__(
        self,
        commands: CommandStore,
        events: EventStore,
        transactions: TransactionManager,
        undo: UndoService,
        dispatcher: NotificationDispatcher,
        recipients: RecipientResolver,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utcnow,
    ):
        self.commands = commands
        self.events = events
        self.transactions = transactions
        self.undo_service = undo
        self.dispatcher = dispatcher
        self.recipients = recipients
        self.settings = settings or EngineSettings()
        self.clock = clock

    # ==================== Result helpers ====================

    def _elapsed(self, started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)

    def _failure(
        self,
        workflow_id: str,
        started: float,
        error: Exception,
        correlation_id: Optional[str] = None,
        command_id: Optional[str] = None,
    ) -> WorkflowResult:
        if isinstance(error, MedsyncError):
            code = error.code
            message = error.message
            logger.warning(f"Workflow {workflow_id} failed ({code}): {message}")
        else:
            code = "infrastructure"
            message = str(error) or error.__class__.__name__
            logger.error(f"Workflow {workflow_id} failed unexpectedly: {error}", exc_info=True)
        warnings = error.warnings if isinstance(error, ValidationError) else []
        data = error.details if isinstance(error, MedsyncError) else {}
        return WorkflowResult(
            success=False,
            workflow_id=workflow_id,
            correlation_id=correlation_id,
            command_id=command_id,
            error=message,
            error_code=code,
            warnings=warnings,
            execution_time_ms=self._elapsed(started),
            data=data,
        )

    def _already_recorded(
        self, workflow_id: str, started: float, correlation_id: str, command_id: str, scheduled_for: datetime
    ) -> WorkflowResult:
        logger.debug(f"Missed dose for {command_id} at {scheduled_for.isoformat()} already recorded")
        return WorkflowResult(
            success=True,
            workflow_id=workflow_id,
            correlation_id=correlation_id,
            command_id=command_id,
            execution_time_ms=self._elapsed(started),
            data={"alreadyRecorded": True},
        )

    def _transaction_failure(
        self,
        workflow_id: str,
        started: float,
        result: TransactionResult,
        correlation_id: Optional[str] = None,
        command_id: Optional[str] = None,
    ) -> WorkflowResult:
        logger.warning(f"Workflow {workflow_id} transaction {result.transaction_id} failed: {result.error}")
        return WorkflowResult(
            success=False,
            workflow_id=workflow_id,
            correlation_id=correlation_id or result.correlation_id,
            command_id=command_id,
            transaction_id=result.transaction_id,
            error=result.error,
            error_code=result.error_code or "infrastructure",
            execution_time_ms=self._elapsed(started),
            data={"rollbackPerformed": result.rollback_performed},
        )

    # ==================== Notifications ====================

    async def _notify(
        self,
        command: MedicationCommand,
        notification_type: NotificationType,
        urgency: Urgency,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Dispatch and return the number of successful deliveries; never affects medical state"""
        try:
            recipients = self.recipients.resolve(command.patient_id, notification_type.value)
            if not recipients:
                logger.debug(f"No recipients for {notification_type.value} on {command.id}")
                return 0
            result = await self.dispatcher.dispatch(
                NotificationRequest(
                    patient_id=command.patient_id,
                    command_id=command.id,
                    medication_name=command.medication.name,
                    notification_type=notification_type,
                    urgency=urgency,
                    message=message,
                    recipients=recipients,
                    context=context or {},
                )
            )
            return result.sent_count
        except Exception as e:
            logger.error(f"Notification {notification_type.value} for {command.id} failed: {e}", exc_info=True)
            return 0

    # ==================== Create ====================

    async def create_medication_workflow(self, request: CreateMedicationRequest) -> WorkflowResult:
        workflow_id = generate_workflow_id(self.clock())
        started = time.perf_counter()
        correlation_id = generate_correlation_id(self.clock())
        try:
            command, warnings = self.commands.build_command(request)

            seed = [self._seed_event(command, EventType.MEDICATION_CREATED, correlation_id)]
            if command.reminders.enabled:
                seed.append(self._seed_event(command, EventType.SCHEDULE_CREATED, correlation_id))

            result = self.transactions.execute_medication_creation_transaction(command, seed)
            if not result.success:
                return self._transaction_failure(workflow_id, started, result, correlation_id, command.id)

            event_ids = [event.id for event in seed]
            if command.reminders.enabled and not command.is_prn:
                event_ids += self._generate_scheduled_events(command, correlation_id)

            sent = 0
            if request.notify_family:
                sent = await self._notify(
                    command,
                    NotificationType.NEW_MEDICATION,
                    Urgency.LOW,
                    f"{command.medication.name} has been added to the medication list.",
                )

            logger.info(f"✓ Medication workflow {workflow_id} created {command.id} with {len(event_ids)} events")
            return WorkflowResult(
                success=True,
                workflow_id=workflow_id,
                correlation_id=correlation_id,
                command_id=command.id,
                event_ids=event_ids,
                notifications_sent=sent,
                transaction_id=result.transaction_id,
                warnings=warnings,
                execution_time_ms=self._elapsed(started),
                data={"command": command.to_document()},
            )
        except Exception as e:
            return self._failure(workflow_id, started, e, correlation_id)

    def _seed_event(
        self, command: MedicationCommand, event_type: EventType, correlation_id: str
    ) -> MedicationEvent:
        return self.events.build_event(
            CreateEventRequest(
                command_id=command.id,
                patient_id=command.patient_id,
                event_type=event_type.value,
                event_data=EventData(
                    dosage_amount=command.schedule.dosage_amount,
                    additional_data={
                        "frequency": command.schedule.frequency.value,
                        "times": list(command.schedule.times),
                    },
                ),
                context=EventContext(
                    medication_name=command.medication.name,
                    trigger_source=TriggerSource.USER_ACTION,
                ),
                created_by=command.metadata.created_by,
                correlation_id=correlation_id,
            )
        )

    # ==================== Scheduled events ====================

    def _occurs_on(self, day: date, command: MedicationCommand) -> bool:
        schedule = command.schedule
        if schedule.frequency in DAILY_FREQUENCIES:
            return True
        if schedule.frequency == Frequency.WEEKLY:
            return day.weekday() in (schedule.days_of_week or [])
        if schedule.frequency == Frequency.MONTHLY:
            return day.day == (schedule.day_of_month or 1)
        return False

    def _dose_slots(self, command: MedicationCommand, now: datetime) -> List[datetime]:
        """Future dose times in UTC, within the horizon and under the per-run cap"""
        schedule = command.schedule
        if schedule.frequency in (Frequency.AS_NEEDED, Frequency.CUSTOM) or not schedule.times:
            return []

        zone = get_zone(schedule.timezone)
        start = ensure_utc(schedule.start_date)
        horizon = now + timedelta(days=self.settings.schedule_horizon_days)
        end = min(ensure_utc(schedule.end_date), horizon) if schedule.end_date else horizon
        limit = self.settings.max_scheduled_events_per_run

        slots: List[datetime] = []
        day = max(start, now).astimezone(zone).date()
        last_day = end.astimezone(zone).date()
        while day <= last_day and len(slots) < limit:
            if self._occurs_on(day, command):
                for clock_time in sorted(schedule.times):
                    slot = combine_local(day, clock_time, schedule.timezone)
                    if slot > now and start <= slot <= end:
                        slots.append(slot)
                        if len(slots) >= limit:
                            break
            day += timedelta(days=1)
        return slots

    def _generate_scheduled_events(self, command: MedicationCommand, correlation_id: str) -> List[str]:
        now = self.clock()
        grace = timedelta(minutes=command.grace_period.default_minutes)
        requests = [
            CreateEventRequest(
                command_id=command.id,
                patient_id=command.patient_id,
                event_type=EventType.DOSE_SCHEDULED.value,
                event_data=EventData(
                    scheduled_date_time=slot,
                    dosage_amount=command.schedule.dosage_amount,
                    grace_period_minutes=command.grace_period.default_minutes,
                    grace_period_end=slot + grace,
                ),
                context=EventContext(
                    medication_name=command.medication.name,
                    trigger_source=TriggerSource.SCHEDULED_TASK,
                ),
                timing=EventTimingRequest(
                    event_timestamp=slot, scheduled_for=slot, grace_period_end=slot + grace
                ),
                created_by="system",
                correlation_id=correlation_id,
            )
            for slot in self._dose_slots(command, now)
        ]
        if not requests:
            return []
        batch = self.events.create_batch(requests, correlation_id)
        for failure in batch.failed:
            logger.warning(f"Scheduled event {failure['index']} for {command.id} failed: {failure['error']}")
        logger.info(f"✓ Generated {len(batch.created)} scheduled events for {command.id}")
        return batch.created

    def regenerate_scheduled_events(self, command_id: str) -> Dict[str, Any]:
        """Delete future scheduled events and generate them again from the current schedule"""
        try:
            command = self.commands.require(command_id)
            deleted = self.events.delete_future_scheduled_events(command_id, self.clock())
            event_ids: List[str] = []
            if command.status.is_active and command.reminders.enabled and not command.is_prn:
                event_ids = self._generate_scheduled_events(command, generate_correlation_id(self.clock()))
            logger.info(f"✓ Regenerated events for {command_id}: deleted {deleted}, created {len(event_ids)}")
            return {
                "success": True,
                "eventIds": event_ids,
                "deleted": deleted,
                "created": len(event_ids),
            }
        except MedsyncError as e:
            logger.warning(f"Regenerating scheduled events for {command_id} failed: {e.message}")
            return {"success": False, "eventIds": [], "deleted": 0, "created": 0, "error": e.message}

    async def update_medication_workflow(self, request: UpdateMedicationRequest) -> WorkflowResult:
        """Update a command and regenerate its future slots when the schedule moved"""
        workflow_id = generate_workflow_id(self.clock())
        started = time.perf_counter()
        try:
            command = self.commands.update(request.command_id, request.changes, request.updated_by)
            data: Dict[str, Any] = {"command": command.to_document()}
            event_ids: List[str] = []
            if any(key.split(".")[0] in SCHEDULE_KEYS for key in request.changes):
                regenerated = self.regenerate_scheduled_events(command.id)
                data["regenerated"] = regenerated
                event_ids = regenerated["eventIds"]
            return WorkflowResult(
                success=True,
                workflow_id=workflow_id,
                command_id=command.id,
                event_ids=event_ids,
                execution_time_ms=self._elapsed(started),
                data=data,
            )
        except Exception as e:
            return self._failure(workflow_id, started, e, command_id=request.command_id)

    # ==================== Doses ====================

    async def mark_medication_taken_workflow(self, request: MarkTakenRequest) -> WorkflowResult:
        workflow_id = generate_workflow_id(self.clock())
        started = time.perf_counter()
        correlation_id = generate_correlation_id(self.clock())
        try:
            if request.event_type not in _TAKEN_TYPE_VALUES:
                raise ValidationError([f"Not a taken event type: {request.event_type}"])
            command = self.commands.require(request.command_id)

            scheduled_for = ensure_utc(request.scheduled_for)
            taken_at = ensure_utc(request.taken_at or self.clock())
            # Negative when taken before the slot
            minutes_late = math.trunc((taken_at - scheduled_for).total_seconds() / 60)
            is_on_time = minutes_late <= self.settings.on_time_threshold_minutes
            grace_end = scheduled_for + timedelta(minutes=command.grace_period.default_minutes)

            event = self.events.build_event(
                CreateEventRequest(
                    command_id=command.id,
                    patient_id=command.patient_id,
                    event_type=request.event_type,
                    event_data=EventData(
                        scheduled_date_time=scheduled_for,
                        actual_date_time=taken_at,
                        dosage_amount=request.dosage_amount or command.schedule.dosage_amount,
                        taken_by=request.taken_by,
                        notes=request.notes,
                    ),
                    context=EventContext(
                        medication_name=command.medication.name,
                        trigger_source=TriggerSource.USER_ACTION,
                    ),
                    timing=EventTimingRequest(
                        event_timestamp=taken_at,
                        scheduled_for=scheduled_for,
                        grace_period_end=grace_end,
                        is_within_grace_period=taken_at <= grace_end,
                        is_on_time=is_on_time,
                        minutes_late=minutes_late,
                    ),
                    created_by=request.taken_by,
                    correlation_id=correlation_id,
                    session_id=request.session_id,
                )
            )
            result = self.transactions.execute_dose_transaction(command.id, event, request.taken_by)
            if not result.success:
                return self._transaction_failure(workflow_id, started, result, correlation_id, command.id)

            sent = 0
            if request.notify_family:
                timing = "on time" if is_on_time else f"{minutes_late} minutes late"
                sent = await self._notify(
                    command,
                    NotificationType.DOSE_TAKEN,
                    Urgency.LOW,
                    f"{command.medication.name} was taken {timing}.",
                    {"eventId": event.id, "minutesLate": minutes_late},
                )

            logger.info(f"✓ Dose taken for {command.id} ({minutes_late} min late)")
            return WorkflowResult(
                success=True,
                workflow_id=workflow_id,
                correlation_id=correlation_id,
                command_id=command.id,
                event_ids=[event.id],
                notifications_sent=sent,
                transaction_id=result.transaction_id,
                execution_time_ms=self._elapsed(started),
                data={"isOnTime": is_on_time, "minutesLate": minutes_late},
            )
        except Exception as e:
            return self._failure(workflow_id, started, e, correlation_id, request.command_id)

    async def process_missed_medication_workflow(self, request: MissedDoseRequest) -> WorkflowResult:
        workflow_id = generate_workflow_id(self.clock())
        started = time.perf_counter()
        correlation_id = generate_correlation_id(self.clock())
        try:
            command = self.commands.require(request.command_id)
            scheduled_for = ensure_utc(request.scheduled_for)

            if self.events.has_missed_event_for(command.id, scheduled_for):
                return self._already_recorded(workflow_id, started, correlation_id, command.id, scheduled_for)

            grace_minutes = command.grace_period.default_minutes
            grace_end = request.grace_period_end or scheduled_for + timedelta(minutes=grace_minutes)
            event = self.events.build_event(
                CreateEventRequest(
                    command_id=command.id,
                    patient_id=command.patient_id,
                    event_type=EventType.DOSE_MISSED.value,
                    event_data=EventData(
                        scheduled_date_time=scheduled_for,
                        dosage_amount=command.schedule.dosage_amount,
                        grace_period_minutes=grace_minutes,
                        grace_period_end=grace_end,
                        action_reason=request.reason,
                    ),
                    context=EventContext(
                        medication_name=command.medication.name,
                        trigger_source=request.trigger_source,
                    ),
                    timing=EventTimingRequest(
                        scheduled_for=scheduled_for,
                        grace_period_end=grace_end,
                        is_within_grace_period=False,
                        is_on_time=False,
                    ),
                    created_by=request.detected_by,
                    correlation_id=correlation_id,
                )
            )
            event = event.model_copy(update={"id": missed_event_id(command.id, scheduled_for)})
            result = self.transactions.execute_events_transaction(
                [event],
                "dose_missed",
                created_by=request.detected_by,
                precondition=lambda txn: self.events.ensure_slot_open(txn, command.id, scheduled_for),
            )
            if result.error_code == "conflict":
                # Slot already missed or taken by the time the transaction ran
                return self._already_recorded(workflow_id, started, correlation_id, command.id, scheduled_for)
            if not result.success:
                return self._transaction_failure(workflow_id, started, result, correlation_id, command.id)

            sent = 0
            if request.notify:
                critical = command.grace_period.medication_type == MedicationType.CRITICAL
                local = scheduled_for.astimezone(get_zone(command.schedule.timezone))
                sent = await self._notify(
                    command,
                    NotificationType.MISSED,
                    Urgency.HIGH if critical else Urgency.MEDIUM,
                    f"{command.medication.name} dose was missed. Scheduled for {local.strftime('%H:%M')}.",
                    {"eventId": event.id, "scheduledFor": scheduled_for.isoformat()},
                )

            logger.info(f"✓ Missed dose recorded for {command.id} at {scheduled_for.isoformat()}")
            return WorkflowResult(
                success=True,
                workflow_id=workflow_id,
                correlation_id=correlation_id,
                command_id=command.id,
                event_ids=[event.id],
                notifications_sent=sent,
                transaction_id=result.transaction_id,
                execution_time_ms=self._elapsed(started),
            )
        except Exception as e:
            return self._failure(workflow_id, started, e, correlation_id, request.command_id)

    # ==================== Status ====================

    async def medication_status_change_workflow(self, request: StatusChangeRequest) -> WorkflowResult:
        workflow_id = generate_workflow_id(self.clock())
        started = time.perf_counter()
        correlation_id = generate_correlation_id(self.clock())
        try:
            result = self.transactions.execute_status_change_transaction(
                request.command_id,
                request.new_status,
                reason=request.reason,
                changed_by=request.changed_by,
                paused_until=request.paused_until,
                correlation_id=correlation_id,
            )
            if not result.success:
                return self._transaction_failure(
                    workflow_id, started, result, correlation_id, request.command_id
                )

            sent = 0
            if request.notify_family:
                command = self.commands.require(request.command_id)
                sent = await self._notify(
                    command,
                    NotificationType.STATUS_CHANGE,
                    Urgency.MEDIUM,
                    f"{command.medication.name} status changed from {result.results['previousStatus']} "
                    f"to {result.results['newStatus']}. Reason: {request.reason or 'not given'}",
                )

            return WorkflowResult(
                success=True,
                workflow_id=workflow_id,
                correlation_id=correlation_id,
                command_id=request.command_id,
                event_ids=[result.results["eventId"]],
                notifications_sent=sent,
                transaction_id=result.transaction_id,
                execution_time_ms=self._elapsed(started),
                data={
                    "previousStatus": result.results["previousStatus"],
                    "newStatus": result.results["newStatus"],
                },
            )
        except Exception as e:
            return self._failure(workflow_id, started, e, correlation_id, request.command_id)

    # ==================== Undo / correction ====================

    async def undo_medication_workflow(self, request: UndoRequest) -> WorkflowResult:
        workflow_id = generate_workflow_id(self.clock())
        started = time.perf_counter()
        try:
            undone = self.undo_service.undo(request)
            event_ids = [undone.undo_event_id]
            if undone.correction_event_id:
                event_ids.append(undone.correction_event_id)
            original = self.events.require(request.event_id)

            sent = 0
            if request.notify_family:
                command = self.commands.require(original.command_id)
                sent = await self._notify(
                    command,
                    NotificationType.UNDO,
                    Urgency.LOW,
                    f"{command.medication.name} dose marking was undone. "
                    f"Reason: {request.undo_reason or 'not given'}",
                    {"originalEventId": original.id},
                )

            return WorkflowResult(
                success=True,
                workflow_id=workflow_id,
                correlation_id=undone.correlation_id,
                command_id=original.command_id,
                event_ids=event_ids,
                notifications_sent=sent,
                execution_time_ms=self._elapsed(started),
                data=undone.to_document(),
            )
        except Exception as e:
            return self._failure(workflow_id, started, e)

    async def correct_medication_workflow(self, request: CorrectionRequest) -> WorkflowResult:
        workflow_id = generate_workflow_id(self.clock())
        started = time.perf_counter()
        try:
            corrected = self.undo_service.correct(request)
            original = self.events.require(request.event_id)
            return WorkflowResult(
                success=True,
                workflow_id=workflow_id,
                correlation_id=corrected.correlation_id,
                command_id=original.command_id,
                event_ids=[corrected.correction_event_id],
                execution_time_ms=self._elapsed(started),
                data=corrected.to_document(),
            )
        except Exception as e:
            return self._failure(workflow_id, started, e)

    # ==================== Missed-dose sweep ====================

    async def process_missed_medication_detection(
        self, now: Optional[datetime] = None
    ) -> MissedDetectionResult:
        """Flag scheduled doses past their grace period with no taken event; safe to re-run"""
        started = time.perf_counter()
        now = ensure_utc(now or self.clock())
        since = now - timedelta(hours=self.settings.missed_lookback_hours)
        result = MissedDetectionResult(success=True)

        try:
            commands = [c for c in self.commands.get_active() if not c.is_prn]
        except MedsyncError as e:
            logger.error(f"Missed detection could not load commands: {e}", exc_info=True)
            result.success = False
            result.errors.append(e.message)
            result.execution_time_ms = self._elapsed(started)
            return result

        for command in commands:
            result.medications_processed += 1
            try:
                overdue = self.events.get_missed_events_in_grace_period(
                    command_id=command.id, now=now, since=since
                )
            except MedsyncError as e:
                logger.error(f"Missed detection failed for {command.id}: {e}", exc_info=True)
                result.errors.append(f"{command.id}: {e.message}")
                continue

            for scheduled in overdue:
                slot = scheduled.reference_time
                if self.events.has_missed_event_for(command.id, slot):
                    continue
                outcome = await self.process_missed_medication_workflow(
                    MissedDoseRequest(
                        command_id=command.id,
                        scheduled_for=slot,
                        grace_period_end=scheduled.timing.grace_period_end,
                        detected_by="missed_detection",
                        trigger_source=TriggerSource.SYSTEM_DETECTION,
                    )
                )
                if outcome.success and outcome.data.get("alreadyRecorded"):
                    continue
                if outcome.success:
                    result.missed_detected += 1
                    result.workflows_executed += 1
                    result.notifications_sent += outcome.notifications_sent
                else:
                    result.errors.append(f"{command.id}: {outcome.error}")

        result.execution_time_ms = self._elapsed(started)
        logger.info(
            f"✓ Missed detection: {result.medications_processed} medications, "
            f"{result.missed_detected} missed, {len(result.errors)} errors"
        )
        return result

    # ==================== Statistics ====================

    def get_workflow_statistics(self, hours: int = 24) -> Dict[str, Any]:
        stats = self.transactions.get_transaction_statistics(hours=hours)
        return {
            "periodHours": hours,
            "totalWorkflows": stats["total"],
            "successfulWorkflows": stats["successful"],
            "failedWorkflows": stats["failed"],
            "successRate": stats["successRate"],
            "averageExecutionTime": stats["averageExecutionTime"],
            "byType": stats["byType"],
        }
