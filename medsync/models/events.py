"""
Medication event model
Immutable facts about a command; only archiveStatus is ever set afterwards
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from .base import BaseModel


class EventType(str, Enum):
    # Medication lifecycle
    MEDICATION_CREATED = "medication_created"
    MEDICATION_UPDATED = "medication_updated"
    MEDICATION_DELETED = "medication_deleted"
    MEDICATION_PAUSED = "medication_paused"
    MEDICATION_RESUMED = "medication_resumed"
    MEDICATION_HELD = "medication_held"
    MEDICATION_DISCONTINUED = "medication_discontinued"

    # Schedule
    SCHEDULE_CREATED = "schedule_created"
    SCHEDULE_UPDATED = "schedule_updated"
    SCHEDULE_PAUSED = "schedule_paused"
    SCHEDULE_RESUMED = "schedule_resumed"

    # Doses
    DOSE_SCHEDULED = "dose_scheduled"
    DOSE_TAKEN = "dose_taken"
    DOSE_MISSED = "dose_missed"
    DOSE_SKIPPED = "dose_skipped"
    DOSE_SNOOZED = "dose_snoozed"
    DOSE_RESCHEDULED = "dose_rescheduled"

    # Reminders and alerts
    REMINDER_SENT = "reminder_sent"
    REMINDER_ACKNOWLEDGED = "reminder_acknowledged"
    ALERT_TRIGGERED = "alert_triggered"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    MISSED_DETECTION_RUN = "missed_detection_run"

    # Taken variants
    DOSE_TAKEN_FULL = "dose_taken_full"
    DOSE_TAKEN_PARTIAL = "dose_taken_partial"
    DOSE_TAKEN_ADJUSTED = "dose_taken_adjusted"
    DOSE_TAKEN_LATE = "dose_taken_late"
    DOSE_TAKEN_EARLY = "dose_taken_early"

    # Undo and corrections
    DOSE_TAKEN_UNDONE = "dose_taken_undone"
    DOSE_MISSED_CORRECTED = "dose_missed_corrected"
    DOSE_SKIPPED_CORRECTED = "dose_skipped_corrected"

    # Family
    FAMILY_REMINDER_SENT = "family_reminder_sent"
    FAMILY_ADHERENCE_ALERT = "family_adherence_alert"
    CAREGIVER_ASSISTANCE = "caregiver_assistance"


TAKEN_EVENT_TYPES = [
    EventType.DOSE_TAKEN,
    EventType.DOSE_TAKEN_FULL,
    EventType.DOSE_TAKEN_PARTIAL,
    EventType.DOSE_TAKEN_ADJUSTED,
    EventType.DOSE_TAKEN_LATE,
    EventType.DOSE_TAKEN_EARLY,
]

UNDOABLE_EVENT_TYPES = list(TAKEN_EVENT_TYPES)

UNDO_EVENT_TYPES = [
    EventType.DOSE_TAKEN_UNDONE,
    EventType.DOSE_MISSED_CORRECTED,
    EventType.DOSE_SKIPPED_CORRECTED,
]

# Event types that can carry undoData pointing at the dose they replace;
# corrections back to taken are written as dose_taken
REVERSAL_EVENT_TYPES = [*UNDO_EVENT_TYPES, EventType.DOSE_RESCHEDULED]

MISSED_EVENT_TYPES = [EventType.DOSE_MISSED, EventType.DOSE_MISSED_CORRECTED]
SKIPPED_EVENT_TYPES = [EventType.DOSE_SKIPPED, EventType.DOSE_SKIPPED_CORRECTED]

# Event types read by adherence analytics
ADHERENCE_EVENT_TYPES = [
    EventType.DOSE_SCHEDULED,
    *TAKEN_EVENT_TYPES,
    EventType.DOSE_MISSED,
    EventType.DOSE_SKIPPED,
    EventType.DOSE_SNOOZED,
    EventType.DOSE_TAKEN_UNDONE,
    EventType.DOSE_MISSED_CORRECTED,
    EventType.DOSE_SKIPPED_CORRECTED,
]


class TriggerSource(str, Enum):
    USER_ACTION = "user_action"
    SYSTEM_DETECTION = "system_detection"
    SCHEDULED_TASK = "scheduled_task"
    API_CALL = "api_call"


class UndoData(BaseModel):
    is_undo: bool = True
    original_event_id: str
    undo_event_id: Optional[str] = None
    undo_reason: Optional[str] = None
    undo_timestamp: datetime
    corrected_action: Optional[str] = None
    corrected_data: Optional[Dict[str, Any]] = None


class EventData(BaseModel):
    scheduled_date_time: Optional[datetime] = None
    actual_date_time: Optional[datetime] = None
    dosage_amount: Optional[str] = None
    taken_by: Optional[str] = None
    notes: Optional[str] = None
    action_reason: Optional[str] = None
    snooze_minutes: Optional[int] = None
    new_scheduled_time: Optional[datetime] = None
    skip_reason: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    status_reason: Optional[str] = None
    grace_period_minutes: Optional[int] = None
    grace_period_end: Optional[datetime] = None
    undo_data: Optional[UndoData] = None
    additional_data: Optional[Dict[str, Any]] = None


class EventContext(BaseModel):
    medication_name: str = ""
    trigger_source: TriggerSource = TriggerSource.USER_ACTION
    related_event_ids: List[str] = Field(default_factory=list)
    calendar_event_id: Optional[str] = None


class EventTiming(BaseModel):
    event_timestamp: datetime
    scheduled_for: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    is_within_grace_period: Optional[bool] = None
    is_on_time: Optional[bool] = None
    minutes_late: Optional[int] = None


class EventMetadata(BaseModel):
    event_version: int = 1
    created_at: datetime
    created_by: str
    correlation_id: str
    session_id: Optional[str] = None


class ArchiveStatus(BaseModel):
    is_archived: bool = False
    archived_at: Optional[datetime] = None
    archived_reason: Optional[str] = None
    belongs_to_date: Optional[str] = None
    daily_summary_id: Optional[str] = None


class MedicationEvent(BaseModel):
    id: str
    command_id: str
    patient_id: str
    event_type: EventType
    event_data: EventData = Field(default_factory=EventData)
    context: EventContext = Field(default_factory=EventContext)
    timing: EventTiming
    metadata: EventMetadata
    archive_status: Optional[ArchiveStatus] = None

    @property
    def is_archived(self) -> bool:
        return bool(self.archive_status and self.archive_status.is_archived)

    @property
    def reference_time(self) -> datetime:
        """Scheduled time when known, otherwise the event timestamp"""
        return self.timing.scheduled_for or self.timing.event_timestamp
