"""
Notification recipients and dispatchers
The engine only decides that and to whom; these adapters hand off delivery.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from medsync.config.settings import NotificationSettings
from medsync.core import collections
from medsync.core.errors import MedsyncError
from medsync.core.ids import hashed_id
from medsync.core.logger import get_logger
from medsync.core.protocols import Clock
from medsync.core.storage import AtomicStorage, WriteOp
from medsync.core.timeutils import utcnow
from medsync.models.notifications import (
    NotificationDeliveryResult,
    NotificationRequest,
    NotificationType,
    Recipient,
    RecipientDelivery,
)

logger = get_logger(__name__)

PATIENT_METHODS = ["browser", "push"]
FAMILY_METHODS = ["email", "browser"]


class StoredRecipientResolver:
    """Patient plus active family members allowed to receive this kind of notification"""

    def __init__(self, storage: AtomicStorage):
        self.storage = storage

    def resolve(self, patient_id: str, notification_type: str) -> List[Recipient]:
        recipients: List[Recipient] = []

        patient = self.storage.get(collections.PATIENTS, patient_id)
        if patient is not None:
            recipients.append(
                Recipient(
                    user_id=patient_id,
                    name=patient.get("name") or "Patient",
                    email=patient.get("email"),
                    phone=patient.get("phone"),
                    role="patient",
                    methods=list(PATIENT_METHODS),
                )
            )

        family = self.storage.query(
            collections.FAMILY_ACCESS,
            [("patientId", "==", patient_id), ("status", "==", "active")],
        )
        for member in family:
            permissions = member.get("permissions") or {}
            can_receive = bool(permissions.get("canReceiveAlerts"))
            emergency = bool(permissions.get("isEmergencyContact"))
            if notification_type == NotificationType.ALERT.value:
                include = can_receive or emergency
            else:
                include = can_receive
            if not include:
                continue
            recipients.append(
                Recipient(
                    user_id=member.get("familyMemberId") or member.get("id", ""),
                    name=member.get("familyMemberName"),
                    email=member.get("familyMemberEmail"),
                    role="family",
                    methods=list(FAMILY_METHODS),
                    is_emergency_contact=emergency,
                )
            )
        return recipients


class LoggingNotificationDispatcher:
    """Default dispatcher when no webhook is configured: logs and reports success"""

    async def dispatch(self, request: NotificationRequest) -> NotificationDeliveryResult:
        deliveries = []
        for recipient in request.recipients:
            for method in recipient.methods:
                logger.info(
                    f"Notification [{request.notification_type.value}/{request.urgency.value}] "
                    f"to {recipient.user_id} via {method}: {request.message}"
                )
                deliveries.append(
                    RecipientDelivery(user_id=recipient.user_id, method=method, success=True)
                )
        return NotificationDeliveryResult(success=True, deliveries=deliveries)


class WebhookNotificationDispatcher:
    """POSTs one JSON payload per recipient and method, with retry and dead-lettering"""

    def __init__(
        self,
        settings: NotificationSettings,
        storage: Optional[AtomicStorage] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utcnow,
    ):
        if not settings.webhook_url:
            raise ValueError("WebhookNotificationDispatcher requires notifications.webhook_url")
        self.url = settings.webhook_url
        self.timeout = httpx.Timeout(settings.timeout)
        self.max_retries = settings.max_retries
        self.retry_backoff = settings.retry_backoff
        self.non_retry_status = {400, 401, 403, 404, 422}
        self.storage = storage
        self.transport = transport
        self.clock = clock

    def _should_retry(self, response: Optional[httpx.Response]) -> bool:
        """Determine whether to continue retrying"""
        if response is None:
            return True
        return (
            response.status_code >= 500
            and response.status_code not in self.non_retry_status
        )

    def _payload(
        self, request: NotificationRequest, recipient: Recipient, method: str
    ) -> Dict[str, Any]:
        return {
            "patientId": request.patient_id,
            "commandId": request.command_id,
            "medicationName": request.medication_name,
            "notificationType": request.notification_type.value,
            "urgency": request.urgency.value,
            "message": request.message,
            "method": method,
            "recipient": recipient.to_document(),
            "context": request.context,
        }

    async def dispatch(self, request: NotificationRequest) -> NotificationDeliveryResult:
        deliveries: List[RecipientDelivery] = []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for recipient in request.recipients:
                for method in recipient.methods:
                    deliveries.append(await self._deliver(client, request, recipient, method))

        result = NotificationDeliveryResult(
            success=all(d.success for d in deliveries), deliveries=deliveries
        )
        logger.info(
            f"Notification {request.notification_type.value} for {request.patient_id}: "
            f"{result.sent_count} sent, {result.failed_count} failed"
        )
        return result

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        request: NotificationRequest,
        recipient: Recipient,
        method: str,
    ) -> RecipientDelivery:
        payload = self._payload(request, recipient, method)
        last_error: Optional[str] = None
        attempts = 0

        for attempt in range(1, self.max_retries + 2):
            attempts = attempt
            try:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
                return RecipientDelivery(
                    user_id=recipient.user_id, method=method, success=True, attempts=attempt
                )
            except httpx.HTTPStatusError as exc:
                last_error = f"HTTP {exc.response.status_code}: {exc.response.text[:200]}"
                final_attempt = attempt > self.max_retries or not self._should_retry(exc.response)
            except httpx.TimeoutException:
                last_error = "Request timeout"
                final_attempt = attempt > self.max_retries
            except httpx.RequestError as exc:
                last_error = f"Network request exception: {str(exc) or exc.__class__.__name__}"
                final_attempt = attempt > self.max_retries

            logger.warning(
                f"Notification to {recipient.user_id} via {method} failed "
                f"(attempt {attempt}): {last_error}"
            )
            if final_attempt:
                break
            await asyncio.sleep(self.retry_backoff * 2 ** (attempt - 1))

        self._record_failure(request, recipient, method, attempts, last_error)
        return RecipientDelivery(
            user_id=recipient.user_id,
            method=method,
            success=False,
            attempts=attempts,
            error=last_error,
        )

    def _record_failure(
        self,
        request: NotificationRequest,
        recipient: Recipient,
        method: str,
        attempts: int,
        error: Optional[str],
    ) -> None:
        logger.error(
            f"Notification to {recipient.user_id} via {method} permanently failed after {attempts} attempts"
        )
        if self.storage is None:
            return
        record_id = hashed_id("ntf", request.patient_id, recipient.user_id, method)
        record = {
            "id": record_id,
            "patientId": request.patient_id,
            "commandId": request.command_id,
            "recipientId": recipient.user_id,
            "method": method,
            "notificationType": request.notification_type.value,
            "urgency": request.urgency.value,
            "attempts": attempts,
            "lastError": error,
            "status": "permanently_failed",
            "failedAt": self.clock().isoformat(),
        }
        try:
            self.storage.commit([WriteOp(collections.NOTIFICATION_DELIVERY_LOG, record_id, "create", record)])
        except MedsyncError as e:
            logger.error(f"Failed to record notification failure {record_id}: {e}", exc_info=True)
