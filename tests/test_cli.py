import json

import pytest
from typer.testing import CliRunner

from medsync.cli import app
from medsync.core.engine import set_engine
from medsync.models.preferences import Lifestyle
from medsync.models.requests import CreateEventRequest

from conftest import medication_request

runner = CliRunner()


@pytest.fixture(autouse=True)
def global_engine(engine):
    set_engine(engine)
    yield engine
    set_engine(None)


def test_daily_reset_needs_a_target():
    result = runner.invoke(app, ["daily-reset"])
    assert result.exit_code == 2


def test_daily_reset_uses_patient_timezone(engine):
    engine.time_buckets.create_time_preferences("patient-1", lifestyle=Lifestyle(timezone="UTC"))
    engine.events.create(
        CreateEventRequest(
            command_id="cmd_a",
            patient_id="patient-1",
            event_type="dose_scheduled",
            timing={"eventTimestamp": "2024-03-12T08:00:00Z"},
        )
    )

    result = runner.invoke(app, ["daily-reset", "--patient-id", "patient-1", "--dry-run"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["timezone"] == "UTC"
    assert payload["summaryDate"] == "2024-03-12"
    assert payload["dryRun"] is True


def test_daily_reset_invalid_timezone_fails():
    result = runner.invoke(app, ["daily-reset", "--patient-id", "patient-1", "--timezone", "Not/AZone"])
    assert result.exit_code == 1


def test_detect_missed(engine, clock):
    engine.commands.create(medication_request())
    result = runner.invoke(app, ["detect-missed"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["medicationsProcessed"] == 1


def test_regenerate_unknown_command():
    result = runner.invoke(app, ["regenerate-schedule", "cmd_missing"])
    assert result.exit_code == 1
    assert json.loads(result.stdout)["success"] is False


def test_regenerate_schedule(engine):
    command, _ = engine.commands.create(medication_request())
    result = runner.invoke(app, ["regenerate-schedule", command.id])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["created"] == 30
