"""
Request models for engine workflows and queries
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from .base import BaseModel
from .commands import Frequency, MedicationInfo, MedicationStatus, ReminderSettings
from .events import EventContext, EventData, TriggerSource
from .preferences import FlexibleScheduleConfig, FrequencyMapping, Lifestyle, TimeBuckets

# ============================================================================
# Command Request Models
# ============================================================================


class ScheduleRequest(BaseModel):
    """Schedule part of a create request. Required fields are checked by the command store.

    @property frequency - daily | twice_daily | ... | as_needed | custom
    @property times - Explicit HH:MM times; empty to resolve from preferences or defaults
    @property usePatientTimePreferences - Resolve times through the patient's time buckets
    @property timezone - IANA zone of the times (UTC when omitted)
    """

    frequency: Optional[Frequency] = None
    times: List[str] = Field(default_factory=list)
    days_of_week: Optional[List[int]] = None
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_indefinite: bool = True
    dosage_amount: Optional[str] = None
    instructions: Optional[str] = None
    timezone: Optional[str] = None
    use_patient_time_preferences: bool = False
    flexible_scheduling: Optional[FlexibleScheduleConfig] = None
    time_bucket_overrides: Dict[str, str] = Field(default_factory=dict)


class CreateMedicationRequest(BaseModel):
    """Request parameters for creating a medication.

    @property patientId - Owner of the medication.
    @property medication - Name and prescription details.
    @property schedule - Frequency, times and dosage.
    @property reminders - Optional reminder settings (defaults apply when omitted).
    @property gracePeriodMinutes - Optional override of the classified grace period.
    @property createdBy - Acting user id.
    @property notifyFamily - Notify family members once the medication exists.
    """

    patient_id: str = ""
    medication: MedicationInfo
    schedule: ScheduleRequest
    reminders: Optional[ReminderSettings] = None
    grace_period_minutes: Optional[int] = Field(default=None, ge=0)
    created_by: str = "system"
    notify_family: bool = False


class UpdateMedicationRequest(BaseModel):
    """Partial camelCase changes, dotted keys allowed (e.g. "schedule.times")."""

    command_id: str
    changes: Dict[str, Any]
    updated_by: str = "system"


class CommandQuery(BaseModel):
    """Filters for listing commands.

    @property name - Case-insensitive substring over name, genericName and brandName.
    @property orderBy - name | createdAt | updatedAt
    """

    patient_id: Optional[str] = None
    status: Optional[MedicationStatus] = None
    is_active: Optional[bool] = None
    is_prn: Optional[bool] = Field(default=None, alias="isPRN")
    frequency: Optional[Frequency] = None
    name: Optional[str] = None
    order_by: Literal["name", "createdAt", "updatedAt"] = "name"
    order_direction: Literal["asc", "desc"] = "asc"
    limit: Optional[int] = Field(default=None, ge=1, le=1000)


# ============================================================================
# Event Request Models
# ============================================================================


class EventTimingRequest(BaseModel):
    event_timestamp: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    is_within_grace_period: Optional[bool] = None
    is_on_time: Optional[bool] = None
    minutes_late: Optional[int] = None


class CreateEventRequest(BaseModel):
    """Request parameters for recording an event.

    @property eventType - Must be one of the known event types.
    @property correlationId - Shared by related events; generated when omitted.
    """

    command_id: str = ""
    patient_id: str = ""
    event_type: str = ""
    event_data: EventData = Field(default_factory=EventData)
    context: EventContext = Field(default_factory=EventContext)
    timing: EventTimingRequest = Field(default_factory=EventTimingRequest)
    created_by: str = "system"
    correlation_id: Optional[str] = None
    session_id: Optional[str] = None


class EventQuery(BaseModel):
    """Filters for listing events.

    @property startDate - Inclusive lower bound on timing.eventTimestamp.
    @property endDate - Inclusive upper bound on timing.eventTimestamp.
    @property excludeArchived - Hide events folded into a daily summary (default true).
    @property orderBy - eventTimestamp | scheduledFor | createdAt
    """

    patient_id: Optional[str] = None
    command_id: Optional[str] = None
    event_type: Optional[str] = None
    event_types: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    correlation_id: Optional[str] = None
    trigger_source: Optional[TriggerSource] = None
    exclude_archived: bool = True
    only_archived: bool = False
    belongs_to_date: Optional[str] = None
    order_by: Literal["eventTimestamp", "scheduledFor", "createdAt"] = "eventTimestamp"
    order_direction: Literal["asc", "desc"] = "desc"
    limit: Optional[int] = Field(default=None, ge=1, le=5000)


# ============================================================================
# Workflow Request Models
# ============================================================================


class MarkTakenRequest(BaseModel):
    """Request parameters for recording a taken dose.

    @property scheduledFor - The dose slot being taken.
    @property takenAt - Defaults to now.
    @property eventType - dose_taken or one of its variants (full, partial, ...).
    """

    command_id: str
    scheduled_for: datetime
    taken_at: Optional[datetime] = None
    taken_by: str = "system"
    dosage_amount: Optional[str] = None
    notes: Optional[str] = None
    event_type: str = "dose_taken"
    session_id: Optional[str] = None
    notify_family: bool = False


class MissedDoseRequest(BaseModel):
    command_id: str
    scheduled_for: datetime
    grace_period_end: Optional[datetime] = None
    reason: Optional[str] = None
    detected_by: str = "system"
    trigger_source: TriggerSource = TriggerSource.USER_ACTION
    notify: bool = True


class StatusChangeRequest(BaseModel):
    """Request parameters for changing medication status.

    @property newStatus - active | paused | held | discontinued | completed
    @property pausedUntil - Only meaningful for paused.
    """

    command_id: str
    new_status: MedicationStatus
    reason: Optional[str] = None
    paused_until: Optional[datetime] = None
    changed_by: str = "system"
    notify_family: bool = False


class UndoRequest(BaseModel):
    """Request parameters for undoing a taken dose (within the undo window).

    @property correctedAction - Optional follow-up: missed | skipped | rescheduled
    """

    event_id: str
    undo_reason: Optional[str] = None
    corrected_action: Optional[Literal["missed", "skipped", "rescheduled"]] = None
    corrected_data: Optional[Dict[str, Any]] = None
    undone_by: str = "system"
    notify_family: bool = False


class CorrectionRequest(BaseModel):
    """Request parameters for correcting a taken dose (within the correction window).

    @property reason - Required, non-empty.
    """

    event_id: str
    corrected_action: Literal["missed", "skipped", "taken", "rescheduled"]
    reason: str = ""
    corrected_data: Optional[Dict[str, Any]] = None
    corrected_by: str = "system"


# ============================================================================
# Preferences, Analytics and Reset Request Models
# ============================================================================


class CreatePreferencesRequest(BaseModel):
    patient_id: str
    time_buckets: Optional[TimeBuckets] = None
    frequency_mapping: Optional[FrequencyMapping] = None
    lifestyle: Optional[Lifestyle] = None
    created_by: str = "system"


class UpdatePreferencesRequest(BaseModel):
    patient_id: str
    changes: Dict[str, Any]
    updated_by: str = "system"


class ComputeScheduleRequest(BaseModel):
    patient_id: str
    frequency: Frequency
    overrides: Optional[Dict[str, str]] = None
    flexible_config: Optional[FlexibleScheduleConfig] = None


class AnalyticsRequest(BaseModel):
    """Request parameters for adherence analytics.

    @property medicationId - Restrict to one command.
    @property startDate - Defaults to 30 days before endDate.
    @property endDate - Defaults to now.
    """

    patient_id: str
    medication_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    timezone: str = "UTC"


class ReportRequest(BaseModel):
    """Request parameters for an adherence report.

    @property reportType - daily | weekly | monthly | custom (custom needs both dates)
    """

    patient_id: str
    report_type: Literal["daily", "weekly", "monthly", "custom"] = "weekly"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    timezone: str = "UTC"


class DailyResetRequest(BaseModel):
    patient_id: str
    timezone: Optional[str] = None
    dry_run: bool = False


class CommandIdRequest(BaseModel):
    command_id: str


class EventIdRequest(BaseModel):
    event_id: str


class MilestoneRequest(BaseModel):
    patient_id: str
    medication_id: Optional[str] = None
