"""
Undo and correction of taken doses

Per taken event:
    elapsed <= undo timeout          -> undo window
    undo timeout < elapsed <= 24h    -> correction window
    elapsed > 24h                    -> locked

Originals are never mutated. Reversals are new events linked through
relatedEventIds and undoData, written with fixed ids derived from the
original so a second undo or correction collides inside the transaction.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from medsync.config.settings import EngineSettings
from medsync.core import collections
from medsync.core.errors import (
    ConflictError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
    WindowError,
)
from medsync.core.logger import get_logger
from medsync.core.protocols import Clock
from medsync.core.storage import Transaction
from medsync.core.timeutils import ensure_utc, parse_datetime, utcnow
from medsync.models.events import (
    UNDO_EVENT_TYPES,
    UNDOABLE_EVENT_TYPES,
    EventContext,
    EventData,
    EventType,
    MedicationEvent,
    TriggerSource,
    UndoData,
)
from medsync.models.requests import (
    CorrectionRequest,
    CreateEventRequest,
    EventQuery,
    EventTimingRequest,
    UndoRequest,
)
from medsync.models.results import AdherenceImpact, UndoResult, UndoValidation
from medsync.models.transactions import TransactionResult
from medsync.services.analytics import AdherenceAnalyticsService
from medsync.services.events import EventStore
from medsync.services.transactions import TransactionManager

logger = get_logger(__name__)

UNDO_TIMEOUT_SECONDS = 30
CORRECTION_WINDOW_HOURS = 24

# Follow-up event written alongside an undo
UNDO_FOLLOW_UP_TYPES = {
    "missed": EventType.DOSE_MISSED,
    "skipped": EventType.DOSE_SKIPPED,
    "rescheduled": EventType.DOSE_RESCHEDULED,
}

CORRECTION_EVENT_TYPES = {
    "missed": EventType.DOSE_MISSED_CORRECTED,
    "skipped": EventType.DOSE_SKIPPED_CORRECTED,
    "taken": EventType.DOSE_TAKEN,
    "rescheduled": EventType.DOSE_RESCHEDULED,
}


def undo_event_id(original_id: str) -> str:
    return f"{original_id}_undo"


def correction_event_id(original_id: str) -> str:
    return f"{original_id}_correction"


class UndoService:
    """Time-windowed reversal of taken doses"""

    def __init__(
        self,
        events: EventStore,
        transactions: TransactionManager,
        analytics: AdherenceAnalyticsService,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utcnow,
    ):
        self.events = events
        self.transactions = transactions
        self.analytics = analytics
        self.storage = events.storage
        settings = settings or EngineSettings()
        self.undo_timeout_seconds = settings.undo_timeout_seconds
        self.correction_window_seconds = settings.correction_window_hours * 3600
        self.clock = clock

    def _window(self, elapsed: float) -> str:
        if elapsed <= self.undo_timeout_seconds:
            return "undo"
        if elapsed <= self.correction_window_seconds:
            return "correction"
        return "locked"

    def _reversal_exists(self, original_id: str) -> bool:
        return any(
            self.storage.get(collections.EVENTS, rid) is not None
            for rid in (undo_event_id(original_id), correction_event_id(original_id))
        )

    def _guard_reversal(self, original_id: str):
        """In-transaction re-check that nothing has reversed the event yet"""

        def _check(txn: Transaction) -> None:
            for rid in (undo_event_id(original_id), correction_event_id(original_id)):
                if txn.exists(collections.EVENTS, rid):
                    raise ConflictError(
                        f"Event {original_id} has already been undone or corrected",
                        {"eventId": original_id, "reversalId": rid},
                    )

        return _check

    def validate_undo(self, event_id: str, now: Optional[datetime] = None) -> UndoValidation:
        original = self.events.get(event_id)
        if original is None:
            raise NotFoundError("Medication event", event_id)

        now = ensure_utc(now or self.clock())
        elapsed = (now - ensure_utc(original.metadata.created_at)).total_seconds()
        window = self._window(elapsed)

        if original.event_type not in UNDOABLE_EVENT_TYPES:
            return UndoValidation(
                can_undo=False,
                can_correct=False,
                window=window,
                elapsed_seconds=elapsed,
                reason=f"Events of type {original.event_type.value} cannot be undone",
                original_event=original,
            )
        if self._reversal_exists(event_id):
            return UndoValidation(
                can_undo=False,
                can_correct=False,
                window=window,
                elapsed_seconds=elapsed,
                reason="Event has already been undone or corrected",
                original_event=original,
            )

        reason = None
        if window == "correction":
            reason = "Undo window expired, correction is still available"
        elif window == "locked":
            reason = f"Event is older than {self.correction_window_seconds // 3600} hours and can no longer be changed"
        return UndoValidation(
            can_undo=window == "undo",
            can_correct=window == "correction",
            window=window,
            elapsed_seconds=elapsed,
            reason=reason,
            original_event=original,
        )

    def _require_reversible(self, validation: UndoValidation) -> MedicationEvent:
        original = validation.original_event
        if original.event_type not in UNDOABLE_EVENT_TYPES:
            raise ValidationError([validation.reason])
        if not validation.can_undo and not validation.can_correct and validation.window != "locked":
            raise ConflictError(validation.reason, {"eventId": original.id})
        return original

    def undo(self, request: UndoRequest, now: Optional[datetime] = None) -> UndoResult:
        now = ensure_utc(now or self.clock())
        validation = self.validate_undo(request.event_id, now)
        original = self._require_reversible(validation)

        if validation.window == "correction":
            raise WindowError(
                f"Undo window of {self.undo_timeout_seconds}s has passed, use a correction instead",
                window="correction",
                suggestion="correction",
                elapsed_seconds=validation.elapsed_seconds,
            )
        if validation.window == "locked":
            raise WindowError(
                validation.reason,
                window="locked",
                elapsed_seconds=validation.elapsed_seconds,
            )

        correlation_id = original.metadata.correlation_id
        reversal_id = undo_event_id(original.id)

        undo_event = self._build(
            reversal_id,
            original,
            EventType.DOSE_TAKEN_UNDONE,
            EventData(
                scheduled_date_time=original.timing.scheduled_for,
                action_reason=request.undo_reason,
                undo_data=UndoData(
                    is_undo=True,
                    original_event_id=original.id,
                    undo_event_id=reversal_id,
                    undo_reason=request.undo_reason,
                    undo_timestamp=now,
                    corrected_action=request.corrected_action,
                    corrected_data=request.corrected_data,
                ),
            ),
            [original.id],
            request.undone_by,
            now,
        )
        to_write = [undo_event]

        follow_up: Optional[MedicationEvent] = None
        if request.corrected_action:
            follow_up = self.events.build_event(
                self._follow_up_request(
                    original,
                    UNDO_FOLLOW_UP_TYPES[request.corrected_action],
                    request.corrected_action,
                    request.undo_reason,
                    request.corrected_data or {},
                    [original.id, reversal_id],
                    request.undone_by,
                    now,
                )
            )
            to_write.append(follow_up)

        impact = self._adherence_impact(original, to_write, now)
        result = self.transactions.execute_events_transaction(
            to_write,
            "dose_undo",
            created_by=request.undone_by,
            precondition=self._guard_reversal(original.id),
        )
        self._raise_for(result)
        logger.info(f"✓ Dose {original.id} undone ({reversal_id})")
        return UndoResult(
            success=True,
            undo_event_id=reversal_id,
            correction_event_id=follow_up.id if follow_up else None,
            correlation_id=correlation_id,
            adherence_impact=impact,
        )

    def correct(self, request: CorrectionRequest, now: Optional[datetime] = None) -> UndoResult:
        if not request.reason or not request.reason.strip():
            raise ValidationError(["A reason is required to correct a dose"])

        now = ensure_utc(now or self.clock())
        validation = self.validate_undo(request.event_id, now)
        original = self._require_reversible(validation)

        if validation.window == "undo":
            raise WindowError(
                "Dose is still inside the undo window, use undo instead",
                window="undo",
                suggestion="undo",
                elapsed_seconds=validation.elapsed_seconds,
            )
        if validation.window == "locked":
            raise WindowError(
                validation.reason,
                window="locked",
                elapsed_seconds=validation.elapsed_seconds,
            )

        reversal_id = correction_event_id(original.id)
        correction = self._build(
            reversal_id,
            original,
            CORRECTION_EVENT_TYPES[request.corrected_action],
            self._follow_up_data(
                original,
                request.corrected_action,
                request.reason,
                request.corrected_data or {},
                UndoData(
                    is_undo=False,
                    original_event_id=original.id,
                    undo_reason=request.reason,
                    undo_timestamp=now,
                    corrected_action=request.corrected_action,
                    corrected_data=request.corrected_data,
                ),
            ),
            [original.id],
            request.corrected_by,
            now,
        )

        impact = self._adherence_impact(original, [correction], now)
        result = self.transactions.execute_events_transaction(
            [correction],
            "dose_correction",
            created_by=request.corrected_by,
            precondition=self._guard_reversal(original.id),
        )
        self._raise_for(result)
        logger.info(f"✓ Dose {original.id} corrected to {request.corrected_action}")
        return UndoResult(
            success=True,
            correction_event_id=reversal_id,
            correlation_id=original.metadata.correlation_id,
            adherence_impact=impact,
        )

    def get_undo_history(self, command_id: str, limit: int = 50) -> List[MedicationEvent]:
        events = self.events.query(EventQuery(command_id=command_id, exclude_archived=False))
        history = [
            e
            for e in events
            if e.event_type in UNDO_EVENT_TYPES or e.event_data.undo_data is not None
        ]
        return history[:limit]

    # ==================== Helpers ====================

    def _follow_up_data(
        self,
        original: MedicationEvent,
        action: str,
        reason: Optional[str],
        corrected_data: Dict,
        undo_data: Optional[UndoData] = None,
    ) -> EventData:
        data = EventData(
            scheduled_date_time=original.timing.scheduled_for,
            action_reason=reason,
            undo_data=undo_data,
        )
        if action == "skipped":
            data.skip_reason = corrected_data.get("skipReason") or reason
        elif action == "rescheduled":
            new_time = corrected_data.get("newScheduledTime")
            data.new_scheduled_time = parse_datetime(new_time) if new_time else None
        elif action == "taken":
            actual = corrected_data.get("actualDateTime")
            data.actual_date_time = parse_datetime(actual) if actual else original.timing.event_timestamp
            data.dosage_amount = corrected_data.get("dosageAmount") or original.event_data.dosage_amount
        return data

    def _follow_up_request(
        self,
        original: MedicationEvent,
        event_type: EventType,
        action: str,
        reason: Optional[str],
        corrected_data: Dict,
        related: List[str],
        by: str,
        now: datetime,
    ) -> CreateEventRequest:
        return CreateEventRequest(
            command_id=original.command_id,
            patient_id=original.patient_id,
            event_type=event_type.value,
            event_data=self._follow_up_data(original, action, reason, corrected_data),
            context=EventContext(
                medication_name=original.context.medication_name,
                trigger_source=TriggerSource.USER_ACTION,
                related_event_ids=related,
            ),
            timing=EventTimingRequest(event_timestamp=now, scheduled_for=original.timing.scheduled_for),
            created_by=by,
            correlation_id=original.metadata.correlation_id,
        )

    def _build(
        self,
        event_id: str,
        original: MedicationEvent,
        event_type: EventType,
        data: EventData,
        related: List[str],
        by: str,
        now: datetime,
    ) -> MedicationEvent:
        event = self.events.build_event(
            CreateEventRequest(
                command_id=original.command_id,
                patient_id=original.patient_id,
                event_type=event_type.value,
                event_data=data,
                context=EventContext(
                    medication_name=original.context.medication_name,
                    trigger_source=TriggerSource.USER_ACTION,
                    related_event_ids=related,
                ),
                timing=EventTimingRequest(
                    event_timestamp=now, scheduled_for=original.timing.scheduled_for
                ),
                created_by=by,
                correlation_id=original.metadata.correlation_id,
            )
        )
        return event.model_copy(update={"id": event_id})

    def _adherence_impact(
        self, original: MedicationEvent, pending: Sequence[MedicationEvent], now: datetime
    ) -> AdherenceImpact:
        """Recent adherence of the command before and after the reversal is written"""
        previous = self.analytics.recent_adherence_rate(
            original.patient_id, original.command_id, now=now
        )
        new = self.analytics.recent_adherence_rate(
            original.patient_id, original.command_id, pending=pending, now=now
        )
        earlier_reversals = self.get_undo_history(original.command_id, limit=1)
        streak_impact = (
            "Undo may affect your adherence streak"
            if earlier_reversals
            else "First undo - minimal impact on streak"
        )
        return AdherenceImpact(
            previous_adherence=round(previous),
            new_adherence=round(new),
            streak_impact=streak_impact,
        )

    def _raise_for(self, result: TransactionResult) -> None:
        if result.success:
            return
        if result.error_code == "conflict":
            raise ConflictError(result.error or "Conflict", {"transactionId": result.transaction_id})
        if result.error_code == "validation":
            raise ValidationError([result.error or "Invalid event"])
        raise InfrastructureError(result.error or "Transaction failed", {"transactionId": result.transaction_id})
