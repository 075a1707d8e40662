"""
Engine services
Command and event stores, transactions, undo, time buckets, orchestration,
notifications, analytics and daily reset
"""

from .analytics import AdherenceAnalyticsService
from .commands import CommandStore
from .daily_reset import DailyResetService
from .events import EventStore
from .notifications import (
    LoggingNotificationDispatcher,
    StoredRecipientResolver,
    WebhookNotificationDispatcher,
)
from .orchestrator import MedicationOrchestrator
from .time_buckets import TimeBucketService
from .transactions import TransactionManager
from .undo import UndoService

__all__ = [
    "AdherenceAnalyticsService",
    "CommandStore",
    "DailyResetService",
    "EventStore",
    "LoggingNotificationDispatcher",
    "MedicationOrchestrator",
    "StoredRecipientResolver",
    "TimeBucketService",
    "TransactionManager",
    "UndoService",
    "WebhookNotificationDispatcher",
]
