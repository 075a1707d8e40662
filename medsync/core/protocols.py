"""
Type protocols for engine collaborators

This module provides Protocol classes for the parts of the system the engine
consumes but does not own: persistence, notification delivery, recipient
resolution and the clock.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, TypeVar

from medsync.models.notifications import (
    NotificationDeliveryResult,
    NotificationRequest,
    Recipient,
)

T = TypeVar("T")

Clock = Callable[[], datetime]

# ==================== Storage Protocols ====================


class StorageProtocol(Protocol):
    """Protocol for atomic document storage"""

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Get one document or None"""
        ...

    def query(
        self,
        collection: str,
        filters: Optional[Sequence[Tuple[str, str, Any]]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Filtered, in-memory-sorted query"""
        ...

    def run_transaction(self, fn: Callable[[Any], T]) -> T:
        """Run fn with a read-your-writes transaction and commit atomically"""
        ...

    def commit(self, operations: Sequence[Any]) -> int:
        """Apply a list of write operations atomically"""
        ...


# ==================== Collaborator Protocols ====================


class NotificationDispatcher(Protocol):
    """Protocol for notification delivery

    Retry, backoff and dead-lettering belong to the implementation.
    """

    async def dispatch(self, request: NotificationRequest) -> NotificationDeliveryResult:
        """Deliver to every recipient, reporting per-recipient outcome"""
        ...


class RecipientResolver(Protocol):
    """Protocol for deciding who receives a notification"""

    def resolve(self, patient_id: str, notification_type: str) -> List[Recipient]:
        """Return recipients for a patient and notification type"""
        ...
