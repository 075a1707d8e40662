"""
Engine wiring
Builds every service on one storage, one clock and one set of settings
"""

from typing import Any, Dict, Optional

from medsync.config.loader import ConfigLoader, get_config
from medsync.config.settings import EngineSettings, NotificationSettings
from medsync.core.logger import get_logger
from medsync.core.protocols import Clock, NotificationDispatcher, RecipientResolver
from medsync.core.storage import AtomicStorage
from medsync.core.timeutils import utcnow
from medsync.services.analytics import AdherenceAnalyticsService
from medsync.services.commands import CommandStore
from medsync.services.daily_reset import DailyResetService
from medsync.services.events import EventStore
from medsync.services.notifications import (
    LoggingNotificationDispatcher,
    StoredRecipientResolver,
    WebhookNotificationDispatcher,
)
from medsync.services.orchestrator import MedicationOrchestrator
from medsync.services.time_buckets import TimeBucketService
from medsync.services.transactions import TransactionManager
from medsync.services.undo import UndoService

logger = get_logger(__name__)

_engine: Optional["MedicationEngine"] = None


class MedicationEngine:
    """Holds the wired services; handlers and the CLI only talk to this"""

    def __init__(
        self,
        storage: AtomicStorage,
        settings: Optional[EngineSettings] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        recipients: Optional[RecipientResolver] = None,
        clock: Clock = utcnow,
    ):
        self.storage = storage
        self.settings = settings or EngineSettings()
        self.clock = clock

        self.time_buckets = TimeBucketService(storage, clock)
        self.commands = CommandStore(storage, self.time_buckets, clock)
        self.events = EventStore(storage, clock, self.settings)
        self.transactions = TransactionManager(storage, self.commands, self.events, clock)
        self.analytics = AdherenceAnalyticsService(self.events, self.commands, self.settings, clock)
        self.undo = UndoService(self.events, self.transactions, self.analytics, self.settings, clock)

        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.recipients = recipients or StoredRecipientResolver(storage)

        self.orchestrator = MedicationOrchestrator(
            self.commands,
            self.events,
            self.transactions,
            self.undo,
            self.dispatcher,
            self.recipients,
            self.settings,
            clock,
        )
        self.daily_reset = DailyResetService(self.events, self.settings, clock)

    @classmethod
    def from_config(
        cls,
        config: ConfigLoader,
        storage: Optional[AtomicStorage] = None,
        clock: Clock = utcnow,
    ) -> "MedicationEngine":
        """Build from the loaded configuration; storage defaults to the configured SQLite file"""
        if storage is None:
            from medsync.core.db import get_db

            storage = get_db()

        settings = EngineSettings.from_config(config)
        notification_settings = NotificationSettings.from_config(config)

        dispatcher: NotificationDispatcher
        if notification_settings.webhook_url:
            dispatcher = WebhookNotificationDispatcher(notification_settings, storage, clock=clock)
            logger.info(f"Notifications delivered via webhook: {notification_settings.webhook_url}")
        else:
            dispatcher = LoggingNotificationDispatcher()
            logger.info("No notification webhook configured, notifications are only logged")

        return cls(storage, settings, dispatcher, StoredRecipientResolver(storage), clock)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "settings": self.settings.model_dump(),
            "dispatcher": type(self.dispatcher).__name__,
            "workflows": self.orchestrator.get_workflow_statistics(),
            "transactions": self.transactions.get_transaction_statistics(),
        }


def get_engine() -> MedicationEngine:
    """Get global engine singleton"""
    global _engine
    if _engine is None:
        _engine = MedicationEngine.from_config(get_config())
        logger.info("✓ Medication engine initialized")
    return _engine


def set_engine(engine: Optional[MedicationEngine]) -> None:
    """Replace the global engine (None drops it; the next get_engine() rebuilds)"""
    global _engine
    _engine = engine
