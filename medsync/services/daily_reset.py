"""
Daily reset
Folds yesterday's events (patient-local day) into an immutable daily summary
and archives them. Safe to re-run for the same day.
"""

import time
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

from medsync.config.settings import EngineSettings
from medsync.core import collections
from medsync.core.errors import ConflictError, MedsyncError, ValidationError
from medsync.core.logger import get_logger
from medsync.core.protocols import Clock
from medsync.core.storage import WriteOp
from medsync.core.timeutils import ensure_utc, is_valid_timezone, previous_day_bounds, utcnow
from medsync.models.events import (
    MISSED_EVENT_TYPES,
    SKIPPED_EVENT_TYPES,
    TAKEN_EVENT_TYPES,
    EventType,
    MedicationEvent,
)
from medsync.models.requests import EventQuery
from medsync.models.summaries import (
    ArchivedEventsInfo,
    DailyResetResult,
    DailyStatistics,
    DailySummary,
    MedicationBreakdown,
    SummaryMetadata,
)
from medsync.services.events import EventStore, superseded_event_ids

logger = get_logger(__name__)


def summary_id(patient_id: str, summary_date: str) -> str:
    return f"{patient_id}_{summary_date}"


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0


def _counted(events: Sequence[MedicationEvent]) -> List[MedicationEvent]:
    superseded = superseded_event_ids(events)
    return [e for e in events if e.id not in superseded]


def daily_statistics(events: Sequence[MedicationEvent]) -> DailyStatistics:
    events = _counted(events)
    taken = [e for e in events if e.event_type in TAKEN_EVENT_TYPES]
    scheduled = sum(1 for e in events if e.event_type == EventType.DOSE_SCHEDULED)
    late = [e.timing.minutes_late for e in taken if e.timing.minutes_late and e.timing.minutes_late > 0]
    return DailyStatistics(
        total_scheduled_doses=scheduled,
        total_taken_doses=len(taken),
        total_missed_doses=sum(1 for e in events if e.event_type in MISSED_EVENT_TYPES),
        total_skipped_doses=sum(1 for e in events if e.event_type in SKIPPED_EVENT_TYPES),
        total_snoozed_doses=sum(1 for e in events if e.event_type == EventType.DOSE_SNOOZED),
        adherence_rate=_rate(len(taken), scheduled),
        on_time_rate=_rate(sum(1 for e in taken if e.timing.is_on_time), len(taken)),
        average_delay_minutes=round(sum(late) / len(late), 2) if late else 0,
    )


def medication_breakdown(events: Sequence[MedicationEvent]) -> List[MedicationBreakdown]:
    by_command: Dict[str, MedicationBreakdown] = {}
    for event in _counted(events):
        entry = by_command.get(event.command_id)
        if entry is None:
            entry = MedicationBreakdown(
                command_id=event.command_id, medication_name=event.context.medication_name
            )
            by_command[event.command_id] = entry
        if event.event_type == EventType.DOSE_SCHEDULED:
            entry.scheduled += 1
        elif event.event_type in TAKEN_EVENT_TYPES:
            entry.taken += 1
        elif event.event_type in MISSED_EVENT_TYPES:
            entry.missed += 1
        elif event.event_type in SKIPPED_EVENT_TYPES:
            entry.skipped += 1
    for entry in by_command.values():
        entry.adherence_rate = _rate(entry.taken, entry.scheduled)
    return list(by_command.values())


class DailyResetService:
    """Daily summaries and event archival"""

    def __init__(
        self,
        events: EventStore,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utcnow,
    ):
        self.events = events
        self.storage = events.storage
        self.settings = settings or EngineSettings()
        self.clock = clock

    def execute_daily_reset(
        self,
        patient_id: str,
        timezone: str,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> DailyResetResult:
        started = time.perf_counter()

        def _elapsed() -> float:
            return round((time.perf_counter() - started) * 1000, 3)

        if not is_valid_timezone(timezone):
            logger.warning(f"Daily reset for {patient_id} rejected: invalid timezone {timezone}")
            return DailyResetResult(
                success=False,
                patient_id=patient_id,
                timezone=timezone,
                dry_run=dry_run,
                error=f"Invalid timezone: {timezone}",
                execution_time_ms=_elapsed(),
            )

        start, end, summary_date = previous_day_bounds(timezone, now or self.clock())
        result = DailyResetResult(
            success=True,
            patient_id=patient_id,
            summary_date=summary_date,
            timezone=timezone,
            dry_run=dry_run,
        )

        try:
            events = [
                e
                for e in self.events.query(
                    EventQuery(
                        patient_id=patient_id,
                        start_date=start,
                        end_date=end,
                        order_direction="asc",
                    )
                )
                if ensure_utc(e.timing.event_timestamp) < end
            ]
            if not events:
                logger.info(f"No events to archive for {patient_id} on {summary_date}")
                result.execution_time_ms = _elapsed()
                return result

            doc_id = summary_id(patient_id, summary_date)
            summary = DailySummary(
                id=doc_id,
                patient_id=patient_id,
                summary_date=summary_date,
                timezone=timezone,
                statistics=daily_statistics(events),
                medication_breakdown=medication_breakdown(events),
                archived_events=ArchivedEventsInfo(
                    total_archived=len(events),
                    event_ids=[e.id for e in events],
                    archived_at=self.clock(),
                ),
                metadata=SummaryMetadata(created_at=self.clock()),
            )
            result.summary = summary

            if dry_run:
                logger.info(f"Dry run: would archive {len(events)} events for {patient_id} on {summary_date}")
                result.execution_time_ms = _elapsed()
                return result

            result.summary_created = self._create_summary(summary)
            result.events_archived = self.events.archive(
                [e.id for e in events],
                summary_date,
                doc_id,
                batch_size=self.settings.archive_batch_size,
            )
        except MedsyncError as e:
            logger.error(f"Daily reset failed for {patient_id} ({summary_date}): {e}", exc_info=True)
            result.success = False
            result.error = e.message

        result.execution_time_ms = _elapsed()
        if result.success:
            logger.info(
                f"✓ Daily reset for {patient_id} ({summary_date}): "
                f"{result.events_archived} archived, summary created: {result.summary_created}"
            )
        return result

    def _create_summary(self, summary: DailySummary) -> bool:
        """Create-only; an existing summary for the day is never overwritten"""
        try:
            self.storage.commit(
                [WriteOp(collections.DAILY_SUMMARIES, summary.id, "create", summary.to_document())]
            )
            return True
        except ConflictError:
            logger.info(f"Daily summary {summary.id} already exists, keeping it")
            return False

    def get_daily_summary(self, patient_id: str, summary_date: str) -> Optional[DailySummary]:
        doc = self.storage.get(collections.DAILY_SUMMARIES, summary_id(patient_id, summary_date))
        return DailySummary.from_document(doc) if doc else None

    def get_daily_summaries(
        self,
        patient_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> List[DailySummary]:
        """Newest first; start and end are inclusive calendar dates"""
        if start and end and start > end:
            raise ValidationError(["Start date must be before end date"])
        filters = [("patientId", "==", patient_id)]
        if start is not None:
            filters.append(("summaryDate", ">=", start.isoformat()))
        if end is not None:
            filters.append(("summaryDate", "<=", end.isoformat()))
        docs = self.storage.query(
            collections.DAILY_SUMMARIES, filters, order_by="summaryDate", descending=True, limit=limit
        )
        return [DailySummary.from_document(doc) for doc in docs]

    def patient_timezones(self) -> Dict[str, str]:
        """Every patient with commands or preferences, mapped to their timezone"""
        timezones: Dict[str, str] = {}
        for doc in self.storage.query(collections.COMMANDS):
            timezones.setdefault(doc["patientId"], self.settings.default_timezone)
        for doc in self.storage.query(collections.TIME_PREFERENCES):
            tz = (doc.get("lifestyle") or {}).get("timezone")
            if is_valid_timezone(tz):
                timezones[doc["patientId"]] = tz
            else:
                logger.warning(f"Patient {doc['patientId']} has invalid timezone {tz}, using default")
                timezones.setdefault(doc["patientId"], self.settings.default_timezone)
        return timezones

    def timezone_for(self, patient_id: str) -> str:
        doc = self.storage.get(collections.TIME_PREFERENCES, patient_id)
        tz = ((doc or {}).get("lifestyle") or {}).get("timezone")
        return tz if is_valid_timezone(tz) else self.settings.default_timezone

    def run_for_all_patients(
        self, now: Optional[datetime] = None, dry_run: bool = False
    ) -> List[DailyResetResult]:
        now = now or self.clock()
        results = [
            self.execute_daily_reset(patient_id, tz, dry_run=dry_run, now=now)
            for patient_id, tz in sorted(self.patient_timezones().items())
        ]
        failed = sum(1 for r in results if not r.success)
        logger.info(f"✓ Daily reset run: {len(results)} patients, {failed} failed")
        return results
