import pytest
from fastapi.testclient import TestClient

from medsync.app import create_app
from medsync.core.engine import set_engine

from conftest import medication_request


@pytest.fixture
def client(engine):
    set_engine(engine)
    yield TestClient(create_app())
    set_engine(None)


def _create(client, **overrides):
    body = medication_request(**overrides).model_dump(mode="json")
    response = client.post("/api/medications/create", json=body)
    assert response.status_code == 200
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_create_and_read_medication(client):
    created = _create(client)
    assert created["success"]
    command_id = created["data"]["commandId"]

    fetched = client.get(f"/api/medications/{command_id}").json()
    assert fetched["success"]
    assert fetched["data"]["medication"]["name"] == "Lisinopril"

    listed = client.post("/api/medications/list", json={"patientId": "patient-1"}).json()
    assert [c["id"] for c in listed["data"]] == [command_id]


def test_workflow_failure_payload(client):
    response = _create(client, patientId="")
    assert response["success"] is False
    assert response["errorCode"] == "validation"
    assert response["data"]["errorCode"] == "validation"


def test_missing_medication(client):
    response = client.get("/api/medications/cmd_missing").json()
    assert response["success"] is False
    assert response["errorCode"] == "not_found"

    deleted = client.delete("/api/medications/cmd_missing").json()
    assert deleted["errorCode"] == "not_found"


def test_mark_taken_then_undo(client, clock):
    command_id = _create(client)["data"]["commandId"]
    taken = client.post(
        "/api/medications/mark-taken",
        json={"commandId": command_id, "scheduledFor": "2024-03-13T09:45:00Z"},
    ).json()
    assert taken["data"]["data"] == {"isOnTime": True, "minutesLate": 15}
    event_id = taken["data"]["eventIds"][0]

    validation = client.post("/api/medications/undo/validate", json={"eventId": event_id}).json()
    assert validation["data"]["canUndo"] is True

    clock.advance(seconds=5)
    undone = client.post("/api/medications/undo", json={"eventId": event_id, "undoReason": "oops"}).json()
    assert undone["success"]
    assert undone["data"]["eventIds"] == [f"{event_id}_undo"]

    chain = client.get(f"/api/events/{event_id}/chain").json()
    assert [link["eventType"] for link in chain["data"]] == ["dose_taken", "dose_taken_undone"]


def test_preferences_round_trip(client):
    defaults = client.get("/api/preferences/patient-2").json()
    assert defaults["data"]["timeBuckets"]["morning"]["defaultTime"] == "08:00"

    updated = client.post(
        "/api/preferences/update",
        json={"patientId": "patient-2", "changes": {"timeBuckets.evening.defaultTime": "19:00"}},
    ).json()
    assert updated["success"]
    assert updated["data"]["timeBuckets"]["evening"]["defaultTime"] == "19:00"


def test_system_stats(client):
    _create(client)
    stats = client.get("/api/system/stats").json()
    assert stats["success"]
    assert stats["data"]["dispatcher"] == "RecordingDispatcher"
    assert stats["data"]["transactions"]["byType"] == {"medication_creation": 1}
