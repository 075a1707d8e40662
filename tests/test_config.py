from medsync.config.loader import ConfigLoader
from medsync.config.settings import EngineSettings, NotificationSettings


def test_default_config_is_created(tmp_path):
    path = tmp_path / "config.toml"
    loader = ConfigLoader(str(path))
    config = loader.load()

    assert path.exists()
    assert config["engine"]["on_time_threshold_minutes"] == 30
    assert loader.get("database.path").endswith("medsync.db")


def test_env_placeholders_are_substituted(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text(
        '[notifications]\nwebhook_url = "${HOOK_URL:}"\n'
        '[daily_reset]\ndefault_timezone = "${TZ_NAME:America/Denver}"\n',
        encoding="utf-8",
    )
    monkeypatch.setenv("HOOK_URL", "https://hooks.example.test/notify")
    monkeypatch.delenv("TZ_NAME", raising=False)

    loader = ConfigLoader(str(path))
    loader.load()

    assert loader.get("notifications.webhook_url") == "https://hooks.example.test/notify"
    assert loader.get("daily_reset.default_timezone") == "America/Denver"


def test_yaml_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("engine:\n  undo_timeout_seconds: 45\n", encoding="utf-8")
    loader = ConfigLoader(str(path))
    loader.load()

    settings = EngineSettings.from_config(loader)
    assert settings.undo_timeout_seconds == 45
    assert settings.correction_window_hours == 24


def test_settings_collect_sections(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        "[engine]\non_time_threshold_minutes = 15\n"
        "[analytics]\nlow_risk_threshold = 95\n"
        "[daily_reset]\nbatch_size = 100\ndefault_timezone = \"Europe/Berlin\"\n"
        "[notifications]\nwebhook_url = \"\"\nmax_retries = 1\n",
        encoding="utf-8",
    )
    loader = ConfigLoader(str(path))
    loader.load()

    settings = EngineSettings.from_config(loader)
    assert settings.on_time_threshold_minutes == 15
    assert settings.low_risk_threshold == 95
    assert settings.archive_batch_size == 100
    assert settings.default_timezone == "Europe/Berlin"

    notifications = NotificationSettings.from_config(loader)
    assert notifications.webhook_url is None
    assert notifications.max_retries == 1


def test_set_persists_value(tmp_path):
    path = tmp_path / "config.toml"
    loader = ConfigLoader(str(path))
    loader.load()

    assert loader.set("engine.undo_timeout_seconds", 60)

    reloaded = ConfigLoader(str(path))
    reloaded.load()
    assert reloaded.get("engine.undo_timeout_seconds") == 60
