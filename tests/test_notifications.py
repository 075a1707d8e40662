import asyncio
import json

import httpx
import pytest

from medsync.config.settings import NotificationSettings
from medsync.core import collections
from medsync.core.storage import WriteOp
from medsync.models.notifications import NotificationRequest, NotificationType, Recipient, Urgency
from medsync.services import notifications
from medsync.services.notifications import (
    LoggingNotificationDispatcher,
    StoredRecipientResolver,
    WebhookNotificationDispatcher,
)


def _request(*recipients):
    return NotificationRequest(
        patient_id="patient-1",
        command_id="cmd_1",
        medication_name="Warfarin",
        notification_type=NotificationType.MISSED,
        urgency=Urgency.HIGH,
        message="Warfarin dose was missed.",
        recipients=list(recipients) or [Recipient(user_id="patient-1", methods=["push"])],
    )


def _dispatcher(storage, handler, max_retries=2):
    settings = NotificationSettings(
        webhook_url="https://hooks.example.test/notify", max_retries=max_retries, retry_backoff=0
    )
    return WebhookNotificationDispatcher(settings, storage, transport=httpx.MockTransport(handler))


def test_webhook_posts_one_payload_per_method(storage):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    result = asyncio.run(
        _dispatcher(storage, handler).dispatch(
            _request(Recipient(user_id="patient-1", methods=["push", "email"]))
        )
    )

    assert result.success
    assert result.sent_count == 2
    assert [p["method"] for p in seen] == ["push", "email"]
    assert seen[0]["notificationType"] == "missed"
    assert seen[0]["recipient"]["userId"] == "patient-1"


def test_server_errors_are_retried(storage):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200)

    result = asyncio.run(_dispatcher(storage, handler).dispatch(_request()))

    assert result.success
    assert result.deliveries[0].attempts == 3


def test_client_errors_are_not_retried(storage):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, text="bad payload")

    result = asyncio.run(_dispatcher(storage, handler).dispatch(_request()))

    assert not result.success
    assert len(calls) == 1
    assert result.deliveries[0].error.startswith("HTTP 400")


def test_permanent_failure_is_recorded(storage):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = asyncio.run(_dispatcher(storage, handler, max_retries=1).dispatch(_request()))

    assert result.failed_count == 1
    assert result.deliveries[0].attempts == 2
    records = storage.query(collections.NOTIFICATION_DELIVERY_LOG, [("patientId", "==", "patient-1")])
    assert len(records) == 1
    assert records[0]["status"] == "permanently_failed"
    assert records[0]["attempts"] == 2
    assert "connection refused" in records[0]["lastError"]


def test_webhook_requires_url():
    with pytest.raises(ValueError):
        WebhookNotificationDispatcher(NotificationSettings())


def test_logging_dispatcher_reports_success():
    result = asyncio.run(
        LoggingNotificationDispatcher().dispatch(
            _request(Recipient(user_id="patient-1", methods=["browser", "push"]))
        )
    )
    assert result.sent_count == 2


def test_resolver_filters_family_by_permission(storage):
    storage.commit(
        [
            WriteOp(collections.PATIENTS, "patient-1", "create", {"id": "patient-1", "email": "p@example.test"}),
            WriteOp(
                collections.FAMILY_ACCESS,
                "fa-1",
                "create",
                {
                    "id": "fa-1",
                    "patientId": "patient-1",
                    "familyMemberId": "son-1",
                    "status": "active",
                    "permissions": {"isEmergencyContact": True},
                },
            ),
            WriteOp(
                collections.FAMILY_ACCESS,
                "fa-2",
                "create",
                {
                    "id": "fa-2",
                    "patientId": "patient-1",
                    "familyMemberId": "ex-carer",
                    "status": "revoked",
                    "permissions": {"canReceiveAlerts": True},
                },
            ),
        ]
    )
    resolver = StoredRecipientResolver(storage)

    missed = resolver.resolve("patient-1", "missed")
    assert [r.user_id for r in missed] == ["patient-1"]
    assert missed[0].email == "p@example.test"

    # Emergency contacts only receive alerts
    alert = resolver.resolve("patient-1", "alert")
    assert [r.user_id for r in alert] == ["patient-1", "son-1"]
    assert alert[1].is_emergency_contact


def test_retries_back_off_exponentially(storage, monkeypatch):
    delays = []

    async def no_wait(seconds):
        delays.append(seconds)

    monkeypatch.setattr(notifications.asyncio, "sleep", no_wait)
    settings = NotificationSettings(
        webhook_url="https://hooks.example.test/notify", max_retries=3, retry_backoff=0.5
    )
    dispatcher = WebhookNotificationDispatcher(
        settings, storage, transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )

    result = asyncio.run(dispatcher.dispatch(_request()))

    assert result.deliveries[0].attempts == 4
    assert delays == [0.5, 1.0, 2.0]
