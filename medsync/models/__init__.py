"""
Engine data models
Commands, events, preferences, summaries and the request/result models of the workflows
"""

from .analytics import (
    AdherenceAnalytics,
    AdherenceMetrics,
    AdherencePatterns,
    AdherenceReport,
    Milestone,
    RiskAssessment,
    RiskLevel,
    Trend,
)
from .base import BaseModel
from .commands import (
    Frequency,
    GracePeriod,
    MedicationCommand,
    MedicationInfo,
    MedicationStatus,
    MedicationType,
    ReminderSettings,
    Schedule,
)
from .events import EventType, MedicationEvent, TriggerSource
from .notifications import (
    NotificationDeliveryResult,
    NotificationRequest,
    NotificationType,
    Recipient,
    Urgency,
)
from .preferences import ComputedSchedule, FlexibleScheduleConfig, PatientTimePreferences
from .requests import (
    AnalyticsRequest,
    CommandQuery,
    CorrectionRequest,
    CreateEventRequest,
    CreateMedicationRequest,
    DailyResetRequest,
    EventQuery,
    MarkTakenRequest,
    MissedDoseRequest,
    ScheduleRequest,
    StatusChangeRequest,
    UndoRequest,
)
from .results import MissedDetectionResult, UndoResult, UndoValidation, WorkflowResult
from .summaries import DailyResetResult, DailySummary
from .transactions import TransactionLogEntry, TransactionResult

__all__ = [
    # Base
    "BaseModel",
    # Commands
    "Frequency",
    "GracePeriod",
    "MedicationCommand",
    "MedicationInfo",
    "MedicationStatus",
    "MedicationType",
    "ReminderSettings",
    "Schedule",
    # Events
    "EventType",
    "MedicationEvent",
    "TriggerSource",
    # Preferences
    "ComputedSchedule",
    "FlexibleScheduleConfig",
    "PatientTimePreferences",
    # Notifications
    "NotificationDeliveryResult",
    "NotificationRequest",
    "NotificationType",
    "Recipient",
    "Urgency",
    # Requests
    "AnalyticsRequest",
    "CommandQuery",
    "CorrectionRequest",
    "CreateEventRequest",
    "CreateMedicationRequest",
    "DailyResetRequest",
    "EventQuery",
    "MarkTakenRequest",
    "MissedDoseRequest",
    "ScheduleRequest",
    "StatusChangeRequest",
    "UndoRequest",
    # Results
    "MissedDetectionResult",
    "UndoResult",
    "UndoValidation",
    "WorkflowResult",
    "DailyResetResult",
    "DailySummary",
    "TransactionLogEntry",
    "TransactionResult",
    # Analytics
    "AdherenceAnalytics",
    "AdherenceMetrics",
    "AdherencePatterns",
    "AdherenceReport",
    "Milestone",
    "RiskAssessment",
    "RiskLevel",
    "Trend",
]
