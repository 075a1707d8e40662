"""
Shared fixtures
Points the config loader at a throwaway config file before medsync is imported,
so logs and the default database never land in the user's home directory.
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

_CONFIG_DIR = Path(tempfile.mkdtemp(prefix="medsync-tests-"))
os.environ["MEDSYNC_CONFIG_FILE"] = str(_CONFIG_DIR / "config.toml")

from medsync.core.engine import MedicationEngine  # noqa: E402
from medsync.core.storage import MemoryStorage  # noqa: E402
from medsync.models.notifications import NotificationDeliveryResult, RecipientDelivery  # noqa: E402
from medsync.models.requests import CreateMedicationRequest  # noqa: E402


class FakeClock:
    """Injectable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher:
    """Accepts every notification and remembers it"""

    def __init__(self):
        self.requests = []

    async def dispatch(self, request):
        self.requests.append(request)
        deliveries = [
            RecipientDelivery(user_id=r.user_id, method=m, success=True)
            for r in request.recipients
            for m in r.methods
        ]
        return NotificationDeliveryResult(success=True, deliveries=deliveries)


@pytest.fixture
def clock():
    # A Wednesday, mid-morning UTC
    return FakeClock(datetime(2024, 3, 13, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def engine(storage, clock, dispatcher):
    return MedicationEngine(storage, dispatcher=dispatcher, clock=clock)


def medication_request(**overrides) -> CreateMedicationRequest:
    payload = {
        "patientId": "patient-1",
        "medication": {"name": "Lisinopril", "strength": "10mg"},
        "schedule": {
            "frequency": "daily",
            "times": ["08:00"],
            "startDate": "2024-03-01T00:00:00Z",
            "dosageAmount": "1 tablet",
            "timezone": "UTC",
        },
        "createdBy": "nurse-1",
    }
    for key, value in overrides.items():
        if key == "schedule":
            payload["schedule"] = {**payload["schedule"], **value}
        else:
            payload[key] = value
    return CreateMedicationRequest.model_validate(payload)
