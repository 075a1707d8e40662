"""
Daily summary model
"""

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from .base import BaseModel


class DailyStatistics(BaseModel):
    total_scheduled_doses: int = 0
    total_taken_doses: int = 0
    total_missed_doses: int = 0
    total_skipped_doses: int = 0
    total_snoozed_doses: int = 0
    adherence_rate: float = 0
    on_time_rate: float = 0
    average_delay_minutes: float = 0


class MedicationBreakdown(BaseModel):
    command_id: str
    medication_name: str
    scheduled: int = 0
    taken: int = 0
    missed: int = 0
    skipped: int = 0
    adherence_rate: float = 0


class ArchivedEventsInfo(BaseModel):
    total_archived: int = 0
    event_ids: List[str] = Field(default_factory=list)
    archived_at: datetime


class SummaryMetadata(BaseModel):
    created_at: datetime
    created_by: str = "daily_reset"
    version: int = 1


class DailySummary(BaseModel):
    """Per-patient, per-day rollup; created once and never updated"""

    id: str
    patient_id: str
    summary_date: str
    timezone: str
    statistics: DailyStatistics
    medication_breakdown: List[MedicationBreakdown] = Field(default_factory=list)
    archived_events: ArchivedEventsInfo
    metadata: SummaryMetadata


class DailyResetResult(BaseModel):
    success: bool
    patient_id: str
    summary_date: Optional[str] = None
    timezone: Optional[str] = None
    summary_created: bool = False
    events_archived: int = 0
    dry_run: bool = False
    summary: Optional[DailySummary] = None
    error: Optional[str] = None
    execution_time_ms: float = 0
