"""
Notification boundary models
The engine decides that and to whom; delivery belongs to a dispatcher.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from .base import BaseModel


class NotificationType(str, Enum):
    REMINDER = "reminder"
    MISSED = "missed"
    ALERT = "alert"
    STATUS_CHANGE = "status_change"
    DOSE_TAKEN = "dose_taken"
    UNDO = "undo"
    NEW_MEDICATION = "new_medication"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Recipient(BaseModel):
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: str = "patient"
    methods: List[str] = Field(default_factory=lambda: ["browser"])
    is_emergency_contact: bool = False


class NotificationRequest(BaseModel):
    patient_id: str
    command_id: Optional[str] = None
    medication_name: str
    notification_type: NotificationType
    urgency: Urgency = Urgency.MEDIUM
    message: str
    recipients: List[Recipient] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)


class RecipientDelivery(BaseModel):
    user_id: str
    method: str
    success: bool
    attempts: int = 1
    error: Optional[str] = None


class NotificationDeliveryResult(BaseModel):
    success: bool
    deliveries: List[RecipientDelivery] = Field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(1 for d in self.deliveries if d.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for d in self.deliveries if not d.success)
