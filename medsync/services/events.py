"""
Event store
Append-only medication events. Business fields never change after creation;
archiveStatus is set once by the daily reset.
"""

from collections import deque
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Set

from medsync.config.settings import EngineSettings
from medsync.core import collections
from medsync.core.errors import ConflictError, MedsyncError, NotFoundError, ValidationError
from medsync.core.ids import generate_correlation_id, hashed_id
from medsync.core.logger import get_logger
from medsync.core.protocols import Clock
from medsync.core.storage import AtomicStorage, Transaction
from medsync.core.timeutils import ensure_utc, utcnow
from medsync.models.events import (
    MISSED_EVENT_TYPES,
    REVERSAL_EVENT_TYPES,
    TAKEN_EVENT_TYPES,
    EventMetadata,
    EventTiming,
    EventType,
    MedicationEvent,
)
from medsync.models.requests import CreateEventRequest, EventQuery
from medsync.models.results import BatchCreateResult

logger = get_logger(__name__)

ORDER_FIELDS = {
    "eventTimestamp": "timing.eventTimestamp",
    "scheduledFor": "timing.scheduledFor",
    "createdAt": "metadata.createdAt",
}

GROUP_BY_OPTIONS = ("eventType", "medicationName", "day", "week", "month")

# Taken events inside [scheduled - before, scheduled + after] satisfy a slot
TAKEN_WINDOW_BEFORE = timedelta(hours=1)
TAKEN_WINDOW_AFTER = timedelta(hours=4)

_KNOWN_TYPES = {t.value for t in EventType}

EVENT_DESCRIPTIONS = {
    EventType.MEDICATION_CREATED: "Medication added",
    EventType.MEDICATION_UPDATED: "Medication updated",
    EventType.MEDICATION_DELETED: "Medication deleted",
    EventType.MEDICATION_PAUSED: "Medication paused",
    EventType.MEDICATION_RESUMED: "Medication resumed",
    EventType.MEDICATION_HELD: "Medication held",
    EventType.MEDICATION_DISCONTINUED: "Medication discontinued",
    EventType.SCHEDULE_CREATED: "Schedule created",
    EventType.DOSE_SCHEDULED: "Dose scheduled",
    EventType.DOSE_TAKEN: "Dose taken",
    EventType.DOSE_MISSED: "Dose missed",
    EventType.DOSE_SKIPPED: "Dose skipped",
    EventType.DOSE_SNOOZED: "Dose snoozed",
    EventType.DOSE_RESCHEDULED: "Dose rescheduled",
    EventType.DOSE_TAKEN_UNDONE: "Dose taken was undone",
    EventType.DOSE_MISSED_CORRECTED: "Corrected to missed",
    EventType.DOSE_SKIPPED_CORRECTED: "Corrected to skipped",
}


def describe_event(event: MedicationEvent) -> str:
    base = EVENT_DESCRIPTIONS.get(event.event_type, event.event_type.value.replace("_", " ").capitalize())
    undo = event.event_data.undo_data
    if undo is not None and undo.undo_reason:
        return f"{base}: {undo.undo_reason}"
    if event.event_data.status_reason:
        return f"{base}: {event.event_data.status_reason}"
    if event.event_data.skip_reason:
        return f"{base}: {event.event_data.skip_reason}"
    return base


def group_dose_events(events: Sequence[MedicationEvent]) -> Dict[str, List[MedicationEvent]]:
    groups: Dict[str, List[MedicationEvent]] = {
        "scheduled": [],
        "taken": [],
        "missed": [],
        "skipped": [],
        "snoozed": [],
    }
    for event in events:
        if event.event_type == EventType.DOSE_SCHEDULED:
            groups["scheduled"].append(event)
        elif event.event_type in TAKEN_EVENT_TYPES:
            groups["taken"].append(event)
        elif event.event_type == EventType.DOSE_MISSED:
            groups["missed"].append(event)
        elif event.event_type == EventType.DOSE_SKIPPED:
            groups["skipped"].append(event)
        elif event.event_type == EventType.DOSE_SNOOZED:
            groups["snoozed"].append(event)
    return groups


def superseded_event_ids(events: Sequence[MedicationEvent]) -> Set[str]:
    """Originals replaced by an undo or a correction event"""
    return {
        e.event_data.undo_data.original_event_id
        for e in events
        if e.event_data.undo_data is not None
    }


def taken_satisfies_slot(
    event: MedicationEvent,
    scheduled_for: datetime,
    before: timedelta = TAKEN_WINDOW_BEFORE,
    after: timedelta = TAKEN_WINDOW_AFTER,
) -> bool:
    """A taken event covers a slot if it names the slot or lands in [-1h, +4h]"""
    scheduled_for = ensure_utc(scheduled_for)
    if event.timing.scheduled_for is not None and ensure_utc(event.timing.scheduled_for) == scheduled_for:
        return True
    taken_at = ensure_utc(event.timing.event_timestamp)
    return scheduled_for - before <= taken_at <= scheduled_for + after


def missed_event_id(command_id: str, scheduled_for: datetime) -> str:
    """One missed event per command and slot"""
    return f"{command_id}_missed_{ensure_utc(scheduled_for):%Y%m%dT%H%M%SZ}"


class EventStore:
    """Create-only event persistence and derived reads"""

    def __init__(
        self,
        storage: AtomicStorage,
        clock: Clock = utcnow,
        settings: Optional[EngineSettings] = None,
    ):
        self.storage = storage
        self.clock = clock
        settings = settings or EngineSettings()
        self.taken_window = (
            timedelta(minutes=settings.missed_window_before_minutes),
            timedelta(minutes=settings.missed_window_after_minutes),
        )

    # ==================== Create ====================

    def build_event(self, request: CreateEventRequest) -> MedicationEvent:
        """Validate and assemble an event without writing it"""
        errors = []
        if not request.command_id:
            errors.append("Command ID is required")
        if not request.patient_id:
            errors.append("Patient ID is required")
        if not request.event_type:
            errors.append("Event type is required")
        elif request.event_type not in _KNOWN_TYPES:
            errors.append(f"Unknown event type: {request.event_type}")
        if errors:
            raise ValidationError(errors)

        now = self.clock()
        timing = request.timing
        event_timestamp = timing.event_timestamp or now
        return MedicationEvent(
            id=hashed_id("evt", request.command_id, request.event_type, event_timestamp.isoformat()),
            command_id=request.command_id,
            patient_id=request.patient_id,
            event_type=EventType(request.event_type),
            event_data=request.event_data.model_copy(deep=True),
            context=request.context.model_copy(deep=True),
            timing=EventTiming(
                event_timestamp=event_timestamp,
                scheduled_for=timing.scheduled_for,
                grace_period_end=timing.grace_period_end,
                is_within_grace_period=timing.is_within_grace_period,
                is_on_time=timing.is_on_time,
                minutes_late=timing.minutes_late,
            ),
            metadata=EventMetadata(
                event_version=1,
                created_at=now,
                created_by=request.created_by,
                correlation_id=request.correlation_id or generate_correlation_id(now),
                session_id=request.session_id,
            ),
        )

    def create(self, request: CreateEventRequest) -> MedicationEvent:
        event = self.build_event(request)

        def _create(txn: Transaction) -> None:
            txn.create(collections.EVENTS, event.id, event.to_document())

        self.storage.run_transaction(_create)
        logger.debug(f"Event created: {event.id} ({event.event_type.value})")
        return event

    def create_batch(
        self, requests: Sequence[CreateEventRequest], correlation_id: Optional[str] = None
    ) -> BatchCreateResult:
        """Write each event on its own; earlier successes are kept when a later one fails"""
        correlation_id = correlation_id or generate_correlation_id(self.clock())
        result = BatchCreateResult(correlation_id=correlation_id)
        for index, request in enumerate(requests):
            try:
                event = self.create(request.model_copy(update={"correlation_id": correlation_id}))
                result.created.append(event.id)
            except MedsyncError as e:
                logger.warning(f"Batch event {index} failed: {e.message}")
                result.failed.append({"index": index, "error": e.message, "code": e.code})
        logger.info(
            f"✓ Event batch {correlation_id}: {len(result.created)} created, {len(result.failed)} failed"
        )
        return result

    # ==================== Read ====================

    def get(self, event_id: str) -> Optional[MedicationEvent]:
        doc = self.storage.get(collections.EVENTS, event_id)
        return MedicationEvent.from_document(doc) if doc else None

    def require(self, event_id: str) -> MedicationEvent:
        event = self.get(event_id)
        if event is None:
            raise NotFoundError("Medication event", event_id)
        return event

    def query(self, query: EventQuery) -> List[MedicationEvent]:
        filters: List[Any] = []
        if query.patient_id:
            filters.append(("patientId", "==", query.patient_id))
        if query.command_id:
            filters.append(("commandId", "==", query.command_id))
        if query.event_type:
            filters.append(("eventType", "==", query.event_type))
        if query.event_types:
            filters.append(("eventType", "in", list(query.event_types)))
        if query.start_date is not None:
            filters.append(("timing.eventTimestamp", ">=", query.start_date))
        if query.end_date is not None:
            filters.append(("timing.eventTimestamp", "<=", query.end_date))
        if query.correlation_id:
            filters.append(("metadata.correlationId", "==", query.correlation_id))
        if query.trigger_source is not None:
            filters.append(("context.triggerSource", "==", query.trigger_source.value))
        if query.only_archived:
            filters.append(("archiveStatus.isArchived", "==", True))
        elif query.exclude_archived:
            filters.append(("archiveStatus.isArchived", "!=", True))
        if query.belongs_to_date:
            filters.append(("archiveStatus.belongsToDate", "==", query.belongs_to_date))

        docs = self.storage.query(
            collections.EVENTS,
            filters,
            order_by=ORDER_FIELDS[query.order_by],
            descending=query.order_direction == "desc",
            limit=query.limit,
        )
        return [MedicationEvent.from_document(doc) for doc in docs]

    def get_events_for_command(self, command_id: str, limit: int = 50) -> List[MedicationEvent]:
        return self.query(EventQuery(command_id=command_id, limit=limit))

    def get_recent_events(self, patient_id: str, hours: int = 24) -> List[MedicationEvent]:
        since = self.clock() - timedelta(hours=hours)
        return self.query(EventQuery(patient_id=patient_id, start_date=since))

    def get_correlated_events(self, correlation_id: str) -> List[MedicationEvent]:
        return self.query(
            EventQuery(
                correlation_id=correlation_id, exclude_archived=False, order_direction="asc"
            )
        )

    def get_dose_events(
        self,
        patient_id: str,
        command_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, List[MedicationEvent]]:
        events = self.query(
            EventQuery(
                patient_id=patient_id,
                command_id=command_id,
                start_date=start,
                end_date=end,
                order_direction="asc",
            )
        )
        return group_dose_events(events)

    def _taken_events(self, command_id: str) -> List[MedicationEvent]:
        """Taken events for a command, minus those later undone or corrected"""
        events = self.query(
            EventQuery(
                command_id=command_id,
                event_types=[t.value for t in [*TAKEN_EVENT_TYPES, *REVERSAL_EVENT_TYPES]],
                exclude_archived=False,
            )
        )
        superseded = superseded_event_ids(events)
        return [e for e in events if e.event_type in TAKEN_EVENT_TYPES and e.id not in superseded]

    def has_taken_event_near(self, command_id: str, scheduled_for: datetime) -> bool:
        return any(taken_satisfies_slot(e, scheduled_for, *self.taken_window) for e in self._taken_events(command_id))

    def has_missed_event_for(self, command_id: str, scheduled_for: datetime) -> bool:
        missed = self.query(
            EventQuery(
                command_id=command_id,
                event_types=[t.value for t in MISSED_EVENT_TYPES],
                exclude_archived=False,
            )
        )
        target = ensure_utc(scheduled_for)
        return any(
            e.timing.scheduled_for is not None and ensure_utc(e.timing.scheduled_for) == target
            for e in missed
        )

    def ensure_slot_open(self, txn: Transaction, command_id: str, scheduled_for: datetime) -> None:
        """Raise ConflictError if the slot already has a missed event or a standing taken event; called inside the transaction writing it"""
        target = ensure_utc(scheduled_for)
        if txn.exists(collections.EVENTS, missed_event_id(command_id, target)):
            raise ConflictError("Missed dose already recorded", {"reason": "missed", "commandId": command_id})

        relevant = [*MISSED_EVENT_TYPES, *TAKEN_EVENT_TYPES, *REVERSAL_EVENT_TYPES]
        events = [
            MedicationEvent.from_document(doc)
            for doc in txn.query(
                collections.EVENTS,
                [("commandId", "==", command_id), ("eventType", "in", [t.value for t in relevant])],
            )
        ]
        superseded = superseded_event_ids(events)
        for event in events:
            if event.id in superseded:
                continue
            if (
                event.event_type in MISSED_EVENT_TYPES
                and event.timing.scheduled_for is not None
                and ensure_utc(event.timing.scheduled_for) == target
            ):
                raise ConflictError("Missed dose already recorded", {"reason": "missed", "commandId": command_id})
            if event.event_type in TAKEN_EVENT_TYPES and taken_satisfies_slot(event, target, *self.taken_window):
                raise ConflictError("Dose already taken", {"reason": "taken", "commandId": command_id})

    def get_missed_events_in_grace_period(
        self,
        patient_id: Optional[str] = None,
        command_id: Optional[str] = None,
        now: Optional[datetime] = None,
        since: Optional[datetime] = None,
    ) -> List[MedicationEvent]:
        """Scheduled events past their grace period with no taken event for the slot"""
        now = now or self.clock()
        filters: List[Any] = [
            ("eventType", "==", EventType.DOSE_SCHEDULED.value),
            ("timing.gracePeriodEnd", "<", now),
            ("archiveStatus.isArchived", "!=", True),
        ]
        if patient_id:
            filters.append(("patientId", "==", patient_id))
        if command_id:
            filters.append(("commandId", "==", command_id))
        if since is not None:
            filters.append(("timing.scheduledFor", ">=", since))
        docs = self.storage.query(collections.EVENTS, filters, order_by="timing.scheduledFor")
        scheduled = [MedicationEvent.from_document(doc) for doc in docs]

        taken_by_command: Dict[str, List[MedicationEvent]] = {}
        missed = []
        for event in scheduled:
            if event.command_id not in taken_by_command:
                taken_by_command[event.command_id] = self._taken_events(event.command_id)
            slot = event.reference_time
            if not any(taken_satisfies_slot(t, slot, *self.taken_window) for t in taken_by_command[event.command_id]):
                missed.append(event)
        return missed

    def aggregate_events(
        self,
        patient_id: str,
        group_by: str = "eventType",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, int]:
        if group_by not in GROUP_BY_OPTIONS:
            raise ValidationError([f"Unknown groupBy: {group_by}"])
        events = self.query(
            EventQuery(
                patient_id=patient_id, start_date=start, end_date=end, exclude_archived=False
            )
        )
        counts: Dict[str, int] = {}
        for event in events:
            ts = ensure_utc(event.timing.event_timestamp)
            if group_by == "eventType":
                key = event.event_type.value
            elif group_by == "medicationName":
                key = event.context.medication_name or "unknown"
            elif group_by == "day":
                key = ts.date().isoformat()
            elif group_by == "week":
                year, week, _ = ts.isocalendar()
                key = f"{year}-W{week:02d}"
            else:
                key = ts.strftime("%Y-%m")
            counts[key] = counts.get(key, 0) + 1
        return counts

    def get_event_chain(self, event_id: str) -> List[Dict[str, Any]]:
        """Events linked through relatedEventIds and undo data, oldest first"""
        root = self.require(event_id)
        seen: Dict[str, MedicationEvent] = {root.id: root}
        pending = deque([root])
        while pending:
            event = pending.popleft()
            linked_ids = list(event.context.related_event_ids)
            undo = event.event_data.undo_data
            if undo is not None:
                linked_ids.append(undo.original_event_id)
                if undo.undo_event_id:
                    linked_ids.append(undo.undo_event_id)
            linked = [self.get(i) for i in linked_ids if i and i not in seen]
            referencing = [
                MedicationEvent.from_document(doc)
                for doc in self.storage.query(
                    collections.EVENTS, [("context.relatedEventIds", "array_contains", event.id)]
                )
            ]
            for other in linked + referencing:
                if other is not None and other.id not in seen:
                    seen[other.id] = other
                    pending.append(other)

        chain = sorted(seen.values(), key=lambda e: ensure_utc(e.timing.event_timestamp))
        return [
            {
                "eventId": e.id,
                "eventType": e.event_type.value,
                "eventTimestamp": e.timing.event_timestamp.isoformat(),
                "description": describe_event(e),
            }
            for e in chain
        ]

    def get_event_statistics(
        self,
        patient_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        events = self.query(
            EventQuery(
                patient_id=patient_id, start_date=start, end_date=end, exclude_archived=False
            )
        )
        by_type: Dict[str, int] = {}
        by_source: Dict[str, int] = {}
        for event in events:
            by_type[event.event_type.value] = by_type.get(event.event_type.value, 0) + 1
            source = event.context.trigger_source.value
            by_source[source] = by_source.get(source, 0) + 1
        return {
            "total": len(events),
            "archived": sum(1 for e in events if e.is_archived),
            "byType": by_type,
            "byTriggerSource": by_source,
        }

    # ==================== Maintenance ====================

    def delete_future_scheduled_events(
        self, command_id: str, now: Optional[datetime] = None
    ) -> int:
        """Remove not-yet-due scheduled events whose slot has not been acted on"""
        now = now or self.clock()
        scheduled = self.storage.query(
            collections.EVENTS,
            [
                ("commandId", "==", command_id),
                ("eventType", "==", EventType.DOSE_SCHEDULED.value),
                ("timing.scheduledFor", ">", now),
                ("archiveStatus.isArchived", "!=", True),
            ],
        )
        if not scheduled:
            return 0

        acted = self.storage.query(
            collections.EVENTS,
            [
                ("commandId", "==", command_id),
                ("eventType", "!=", EventType.DOSE_SCHEDULED.value),
                ("timing.scheduledFor", ">", now),
            ],
        )
        acted_slots = {
            ensure_utc(MedicationEvent.from_document(doc).timing.scheduled_for) for doc in acted
        }
        doomed = [
            doc["id"]
            for doc in scheduled
            if ensure_utc(MedicationEvent.from_document(doc).timing.scheduled_for) not in acted_slots
        ]

        def _delete(txn: Transaction) -> int:
            for event_id in doomed:
                txn.delete(collections.EVENTS, event_id, must_exist=False)
            return len(doomed)

        deleted = self.storage.run_transaction(_delete)
        logger.info(f"✓ Deleted {deleted} future scheduled events for {command_id}")
        return deleted

    def archive(
        self,
        event_ids: Sequence[str],
        belongs_to_date: str,
        summary_id: str,
        reason: str = "daily_reset",
        batch_size: int = 500,
    ) -> int:
        """Set archiveStatus once per event, one transaction per batch"""
        archived = 0
        ids = list(event_ids)
        for offset in range(0, len(ids), batch_size):
            batch = ids[offset : offset + batch_size]
            archived_at = self.clock()

            def _archive(txn: Transaction, batch=batch) -> int:
                count = 0
                for event_id in batch:
                    doc = txn.get(collections.EVENTS, event_id)
                    if doc is None or (doc.get("archiveStatus") or {}).get("isArchived"):
                        continue
                    txn.update(
                        collections.EVENTS,
                        event_id,
                        {
                            "archiveStatus": {
                                "isArchived": True,
                                "archivedAt": archived_at.isoformat(),
                                "archivedReason": reason,
                                "belongsToDate": belongs_to_date,
                                "dailySummaryId": summary_id,
                            }
                        },
                    )
                    count += 1
                return count

            archived += self.storage.run_transaction(_archive)
        logger.info(f"✓ Archived {archived} events for {belongs_to_date} ({summary_id})")
        return archived
