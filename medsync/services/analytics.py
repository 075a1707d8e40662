"""
Adherence analytics
Read-only metrics, patterns and risk over the event log, plus reports and
milestones. Archived events are included.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from medsync.config.settings import EngineSettings
from medsync.core import collections
from medsync.core.errors import ConflictError, ValidationError
from medsync.core.ids import hashed_id
from medsync.core.logger import get_logger
from medsync.core.protocols import Clock
from medsync.core.storage import WriteOp
from medsync.core.timeutils import ensure_utc, get_zone, is_valid_timezone, utcnow
from medsync.models.analytics import (
    RISK_ORDER,
    AdherenceAnalytics,
    AdherenceMetrics,
    AdherencePatterns,
    AdherenceReport,
    AnalyticsPeriod,
    Milestone,
    ReportSummary,
    RiskAssessment,
    RiskLevel,
    Trend,
    UndoPatterns,
)
from medsync.models.events import (
    ADHERENCE_EVENT_TYPES,
    MISSED_EVENT_TYPES,
    REVERSAL_EVENT_TYPES,
    SKIPPED_EVENT_TYPES,
    TAKEN_EVENT_TYPES,
    EventType,
    MedicationEvent,
)
from medsync.models.requests import CommandQuery, EventQuery
from medsync.services.commands import CommandStore
from medsync.services.events import EventStore, superseded_event_ids

logger = get_logger(__name__)

DEFAULT_PERIOD_DAYS = 30
# Window behind the before/after score shown when a dose is undone or corrected
RECENT_WINDOW_DAYS = 7
TREND_THRESHOLD = 5

REPORT_PERIOD_DAYS = {"daily": 1, "weekly": 7, "monthly": 30}

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

FULL_DOSE_TYPES = (
    EventType.DOSE_TAKEN,
    EventType.DOSE_TAKEN_FULL,
    EventType.DOSE_TAKEN_LATE,
    EventType.DOSE_TAKEN_EARLY,
)

INTERVENTIONS = {
    RiskLevel.LOW: ["continue_current_approach"],
    RiskLevel.MEDIUM: ["gentle_reminders", "schedule_optimization"],
    RiskLevel.HIGH: ["family_notification", "schedule_review", "barrier_assessment"],
    RiskLevel.CRITICAL: ["immediate_family_alert", "provider_notification", "urgent_review"],
}

MILESTONES = {
    "first_dose": {
        "title": "First Dose",
        "description": "Took your first dose!",
        "type": "dose_count",
        "value": 1,
    },
    "week_streak": {
        "title": "Week Warrior",
        "description": "7 days of perfect adherence!",
        "type": "streak",
        "value": 7,
    },
    "month_champion": {
        "title": "Month Champion",
        "description": "30 days of excellent adherence!",
        "type": "streak",
        "value": 30,
    },
    "perfect_week": {
        "title": "Perfect Week",
        "description": "100% adherence for a full week!",
        "type": "weekly_adherence",
        "value": 100,
    },
    "timing_master": {
        "title": "Timing Master",
        "description": "95% on-time doses this month!",
        "type": "timing_accuracy",
        "value": 95,
    },
}


def time_slot_for_hour(hour: int) -> str:
    if hour < 10:
        return "morning"
    if hour < 15:
        return "lunch"
    if hour < 21:
        return "evening"
    return "beforeBed"


def adherence_rate(events: Sequence[MedicationEvent]) -> float:
    scheduled = sum(1 for e in events if e.event_type == EventType.DOSE_SCHEDULED)
    taken = sum(1 for e in events if e.event_type in TAKEN_EVENT_TYPES)
    return taken / scheduled * 100 if scheduled else 0


def _percent(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole else 0


class AdherenceAnalyticsService:
    """Adherence metrics, patterns, risk, reports and milestones"""

    def __init__(
        self,
        events: EventStore,
        commands: CommandStore,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utcnow,
    ):
        self.events = events
        self.commands = commands
        self.storage = events.storage
        self.settings = settings or EngineSettings()
        self.clock = clock

    # ==================== Calculation ====================

    def _load_events(
        self,
        patient_id: str,
        medication_id: Optional[str],
        start: datetime,
        end: datetime,
        pending: Sequence[MedicationEvent] = (),
    ) -> List[MedicationEvent]:
        """Adherence events in [start, end]; `pending` events are treated as already written"""
        events = self.events.query(
            EventQuery(
                patient_id=patient_id,
                command_id=medication_id,
                event_types=[t.value for t in [*ADHERENCE_EVENT_TYPES, *REVERSAL_EVENT_TYPES]],
                start_date=start,
                end_date=end,
                exclude_archived=False,
                order_direction="asc",
            )
        )
        events += pending
        # Undone or corrected doses count as whatever replaced them
        superseded = superseded_event_ids(events)
        return [
            e for e in events if e.id not in superseded and e.event_type in ADHERENCE_EVENT_TYPES
        ]

    def recent_adherence_rate(
        self,
        patient_id: str,
        medication_id: Optional[str] = None,
        pending: Sequence[MedicationEvent] = (),
        days: int = RECENT_WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> float:
        """Overall adherence over the last few days, up to now"""
        end = ensure_utc(now or self.clock())
        events = self._load_events(patient_id, medication_id, end - timedelta(days=days), end, pending)
        return self._metrics(events).overall_adherence_rate

    def calculate(
        self,
        patient_id: str,
        medication_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tz: str = "UTC",
    ) -> AdherenceAnalytics:
        if not is_valid_timezone(tz):
            raise ValidationError([f"Invalid timezone: {tz}"])
        end = ensure_utc(end or self.clock())
        start = ensure_utc(start or end - timedelta(days=DEFAULT_PERIOD_DAYS))
        if start > end:
            raise ValidationError(["Start date must be before end date"])

        events = self._load_events(patient_id, medication_id, start, end)
        metrics = self._metrics(events)
        patterns = self._patterns(events, tz)
        risk = self._risk(metrics, patterns)

        medication_name = None
        if medication_id:
            command = self.commands.get(medication_id)
            medication_name = command.medication.name if command else None

        logger.debug(
            f"Adherence for {patient_id}/{medication_id or 'all'}: "
            f"{metrics.overall_adherence_rate}% over {len(events)} events"
        )
        return AdherenceAnalytics(
            patient_id=patient_id,
            medication_id=medication_id,
            medication_name=medication_name,
            period=AnalyticsPeriod(start_date=start, end_date=end, timezone=tz),
            metrics=metrics,
            patterns=patterns,
            risk_assessment=risk,
            calculated_at=self.clock(),
        )

    def _metrics(self, events: Sequence[MedicationEvent]) -> AdherenceMetrics:
        metrics = AdherenceMetrics()
        delays: List[int] = []

        for event in events:
            kind = event.event_type
            if kind == EventType.DOSE_SCHEDULED:
                metrics.total_scheduled_doses += 1
            elif kind in TAKEN_EVENT_TYPES:
                metrics.total_taken_doses += 1
                if kind in FULL_DOSE_TYPES:
                    metrics.full_doses_taken += 1
                elif kind == EventType.DOSE_TAKEN_PARTIAL:
                    metrics.partial_doses_taken += 1
                elif kind == EventType.DOSE_TAKEN_ADJUSTED:
                    metrics.adjusted_doses_taken += 1
                if event.timing.is_on_time:
                    metrics.on_time_doses += 1

                minutes_late = event.timing.minutes_late or 0
                if minutes_late > 0:
                    delays.append(minutes_late)
                    if minutes_late > self.settings.very_late_threshold_minutes:
                        metrics.very_late_doses += 1
                    else:
                        metrics.late_doses += 1
                elif minutes_late < 0:
                    metrics.early_doses += 1
            elif kind in MISSED_EVENT_TYPES:
                metrics.missed_doses += 1
            elif kind in SKIPPED_EVENT_TYPES:
                metrics.skipped_doses += 1
            elif kind == EventType.DOSE_TAKEN_UNDONE:
                metrics.undone_doses += 1

        metrics.overall_adherence_rate = _percent(metrics.total_taken_doses, metrics.total_scheduled_doses)
        metrics.full_dose_adherence_rate = _percent(metrics.full_doses_taken, metrics.total_scheduled_doses)
        metrics.on_time_adherence_rate = _percent(metrics.on_time_doses, metrics.total_taken_doses)
        if delays:
            delays.sort()
            metrics.average_delay_minutes = round(sum(delays) / len(delays), 2)
            metrics.median_delay_minutes = delays[len(delays) // 2]
            metrics.max_delay_minutes = delays[-1]
        return metrics

    def _patterns(self, events: Sequence[MedicationEvent], tz: str) -> AdherencePatterns:
        zone = get_zone(tz)
        ordered = sorted(events, key=lambda e: ensure_utc(e.timing.event_timestamp))

        slot_misses: Dict[str, int] = {}
        day_misses: Dict[int, int] = {}
        weekday: List[MedicationEvent] = []
        weekend: List[MedicationEvent] = []
        miss_reasons: Dict[str, int] = {}
        undo = UndoPatterns()
        undo_seconds: List[float] = []
        miss_streak = 0
        take_streak = 0
        longest = 0

        for event in ordered:
            local = ensure_utc(event.reference_time).astimezone(zone)
            (weekend if local.weekday() >= 5 else weekday).append(event)

            if event.event_type in MISSED_EVENT_TYPES:
                miss_streak += 1
                take_streak = 0
                slot = time_slot_for_hour(local.hour)
                slot_misses[slot] = slot_misses.get(slot, 0) + 1
                day_misses[local.weekday()] = day_misses.get(local.weekday(), 0) + 1
            elif event.event_type in TAKEN_EVENT_TYPES:
                miss_streak = 0
                take_streak += 1
                longest = max(longest, take_streak)
            elif event.event_type in SKIPPED_EVENT_TYPES:
                reason = event.event_data.skip_reason or "unknown"
                miss_reasons[reason] = miss_reasons.get(reason, 0) + 1
            elif event.event_type == EventType.DOSE_TAKEN_UNDONE:
                undo.total_undos += 1
                data = event.event_data.undo_data
                reason = (data.undo_reason if data else None) or "unknown"
                undo.undo_reasons[reason] = undo.undo_reasons.get(reason, 0) + 1
                original = self.events.get(data.original_event_id) if data else None
                if original is not None and data.undo_timestamp:
                    undo_seconds.append(
                        (ensure_utc(data.undo_timestamp) - ensure_utc(original.metadata.created_at)).total_seconds()
                    )
        if undo_seconds:
            undo.average_undo_seconds = round(sum(undo_seconds) / len(undo_seconds), 2)

        weekday_rate = round(adherence_rate(weekday), 2)
        weekend_rate = round(adherence_rate(weekend), 2)
        midpoint = len(ordered) // 2
        difference = adherence_rate(ordered[midpoint:]) - adherence_rate(ordered[:midpoint])
        if difference > TREND_THRESHOLD:
            trend = Trend.IMPROVING
        elif difference < -TREND_THRESHOLD:
            trend = Trend.DECLINING
        else:
            trend = Trend.STABLE

        most_missed_day = max(day_misses, key=day_misses.get) if day_misses else None
        return AdherencePatterns(
            most_missed_time_slot=max(slot_misses, key=slot_misses.get) if slot_misses else None,
            most_missed_day_of_week=DAY_NAMES[most_missed_day] if most_missed_day is not None else None,
            weekday_adherence_rate=weekday_rate,
            weekend_adherence_rate=weekend_rate,
            weekday_vs_weekend_delta=round(weekday_rate - weekend_rate, 2),
            consecutive_missed_doses=miss_streak,
            longest_adherence_streak=longest,
            current_adherence_streak=take_streak,
            improvement_trend=trend,
            common_miss_reasons=sorted(miss_reasons, key=miss_reasons.get, reverse=True),
            undo_patterns=undo,
        )

    def _risk(self, metrics: AdherenceMetrics, patterns: AdherencePatterns) -> RiskAssessment:
        rate = metrics.overall_adherence_rate
        risk_factors: List[str] = []
        protective: List[str] = []

        if rate >= self.settings.low_risk_threshold:
            level = RiskLevel.LOW
            protective.append("Excellent overall adherence")
        elif rate >= self.settings.medium_risk_threshold:
            level = RiskLevel.MEDIUM
            risk_factors.append("Moderate adherence rate")
        elif rate >= self.settings.high_risk_threshold:
            level = RiskLevel.HIGH
            risk_factors.append("Poor adherence rate")
        else:
            level = RiskLevel.CRITICAL
            risk_factors.append("Very poor adherence rate")

        escalate = False
        if patterns.consecutive_missed_doses >= 3:
            risk_factors.append(f"{patterns.consecutive_missed_doses} consecutive missed doses")
            escalate = True
        if patterns.improvement_trend == Trend.DECLINING:
            risk_factors.append("Declining adherence trend")
            escalate = True
        if escalate:
            level = RISK_ORDER[min(RISK_ORDER.index(level) + 1, len(RISK_ORDER) - 1)]

        if metrics.total_taken_doses and metrics.on_time_adherence_rate < 70:
            risk_factors.append("Poor timing adherence")
        if patterns.current_adherence_streak >= 7:
            protective.append(f"{patterns.current_adherence_streak}-dose adherence streak")
        if metrics.on_time_adherence_rate >= 90:
            protective.append("Excellent timing adherence")
        if patterns.improvement_trend == Trend.IMPROVING:
            protective.append("Improving adherence trend")

        prediction = rate
        if patterns.improvement_trend == Trend.IMPROVING:
            prediction += 5
        elif patterns.improvement_trend == Trend.DECLINING:
            prediction -= 5
        if patterns.current_adherence_streak >= 7:
            prediction += 3
        elif patterns.consecutive_missed_doses >= 2:
            prediction -= 10
        prediction = round(min(100, max(0, prediction)))

        confidence = 50
        if metrics.total_scheduled_doses >= 30:
            confidence += 20
        elif metrics.total_scheduled_doses >= 14:
            confidence += 10
        if patterns.improvement_trend == Trend.STABLE:
            confidence += 15
        if patterns.current_adherence_streak > 0:
            confidence += 10

        return RiskAssessment(
            risk_level=level,
            risk_factors=risk_factors,
            protective_factors=protective,
            intervention_recommendations=list(INTERVENTIONS[level]),
            predicted_adherence_next7_days=prediction,
            confidence_level=min(100, confidence),
            risk_trend=patterns.improvement_trend,
        )

    # ==================== Reports ====================

    def generate_report(
        self,
        patient_id: str,
        report_type: str = "weekly",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tz: str = "UTC",
    ) -> AdherenceReport:
        if report_type == "custom":
            if start is None or end is None:
                raise ValidationError(["Custom reports need both start and end dates"])
        elif report_type in REPORT_PERIOD_DAYS:
            end = ensure_utc(end or self.clock())
            start = end - timedelta(days=REPORT_PERIOD_DAYS[report_type])
        else:
            raise ValidationError([f"Unknown report type: {report_type}"])

        overall = self.calculate(patient_id, None, start, end, tz)
        medications = [
            self.calculate(patient_id, command.id, start, end, tz)
            for command in self.commands.query(CommandQuery(patient_id=patient_id))
        ]
        scored = [m for m in medications if m.metrics.total_scheduled_doses > 0]

        summary = ReportSummary(
            total_medications=len(medications),
            overall_adherence_rate=overall.metrics.overall_adherence_rate,
            on_time_adherence_rate=overall.metrics.on_time_adherence_rate,
            medications_at_risk=[
                m.medication_name or m.medication_id
                for m in scored
                if m.risk_assessment.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
            ],
        )
        if scored:
            best = max(scored, key=lambda m: m.metrics.overall_adherence_rate)
            worst = min(scored, key=lambda m: m.metrics.overall_adherence_rate)
            summary.best_performing = best.medication_name or best.medication_id
            if worst.metrics.overall_adherence_rate < self.settings.medium_risk_threshold:
                summary.needs_attention = worst.medication_name or worst.medication_id

        logger.info(f"✓ {report_type} adherence report generated for {patient_id}")
        return AdherenceReport(
            report_id=hashed_id("rpt", patient_id, report_type),
            patient_id=patient_id,
            report_type=report_type,
            period=overall.period,
            overall=overall,
            medications=medications,
            summary=summary,
            generated_at=self.clock(),
        )

    # ==================== Milestones ====================

    def _achieved(self, rule: Dict, analytics: AdherenceAnalytics) -> bool:
        metrics = analytics.metrics
        kind = rule["type"]
        if kind == "dose_count":
            return metrics.total_taken_doses >= rule["value"]
        if kind == "streak":
            return analytics.patterns.current_adherence_streak >= rule["value"]
        if kind == "weekly_adherence":
            end = analytics.period.end_date
            week = self.calculate(analytics.patient_id, analytics.medication_id, end - timedelta(days=7), end)
            return (
                week.metrics.total_scheduled_doses > 0
                and week.metrics.overall_adherence_rate >= rule["value"]
            )
        if kind == "timing_accuracy":
            return metrics.total_taken_doses > 0 and metrics.on_time_adherence_rate >= rule["value"]
        return False

    def check_milestones(self, patient_id: str, medication_id: Optional[str] = None) -> List[Milestone]:
        """Record newly achieved milestones once; returns only the new ones"""
        analytics = self.calculate(patient_id, medication_id)
        achieved: List[Milestone] = []
        for key, rule in MILESTONES.items():
            milestone_id = f"{patient_id}_{medication_id or 'all'}_{key}"
            if self.storage.get(collections.MILESTONES, milestone_id) is not None:
                continue
            if not self._achieved(rule, analytics):
                continue

            milestone = Milestone(
                id=milestone_id,
                patient_id=patient_id,
                medication_id=medication_id,
                milestone_type=key,
                title=rule["title"],
                description=rule["description"],
                value=rule["value"],
                achieved_at=self.clock(),
            )
            try:
                self.storage.commit(
                    [WriteOp(collections.MILESTONES, milestone_id, "create", milestone.to_document())]
                )
            except ConflictError:
                logger.debug(f"Milestone {milestone_id} recorded concurrently")
                continue
            logger.info(f"✓ Milestone achieved: {milestone_id}")
            achieved.append(milestone)
        return achieved
