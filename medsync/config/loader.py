"""
Configuration loader
Supports loading configuration from TOML and YAML files, with environment variable override support
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import toml
import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "MEDSYNC_CONFIG_FILE"


class ConfigLoader:
    """Configuration loader class"""

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file or self._get_default_config_file()
        self._config: Dict[str, Any] = {}

    def _get_default_config_file(self) -> str:
        """Get default configuration file path

        Strategy:
        1. MEDSYNC_CONFIG_FILE environment variable, if set
        2. ~/.config/medsync/config.toml otherwise
        3. If the file doesn't exist, it is created from the default template during load()
        """
        env_file = os.getenv(CONFIG_ENV_VAR)
        if env_file:
            return env_file

        user_config_file = Path.home() / ".config" / "medsync" / "config.toml"
        logger.info(f"Using user configuration file: {user_config_file}")
        return str(user_config_file)

    @property
    def config_dir(self) -> Path:
        return Path(self.config_file).parent

    def load(self) -> Dict[str, Any]:
        """Load configuration, create default configuration if it doesn't exist"""
        config_path = Path(self.config_file)

        if not config_path.exists():
            logger.info(f"Configuration file doesn't exist: {self.config_file}")
            self._create_default_config(config_path)

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                config_content = f.read()

            config_content = self._replace_env_vars(config_content)

            if self.config_file.endswith((".yaml", ".yml")):
                self._config = yaml.safe_load(config_content) or {}
            else:
                self._config = toml.loads(config_content)

            logger.info(f"✓ Configuration file loaded successfully: {self.config_file}")
            return self._config

        except (yaml.YAMLError, toml.TomlDecodeError) as e:
            logger.error(f"Configuration file parsing error: {e}")
            raise
        except OSError as e:
            logger.error(f"Configuration loading failed: {e}")
            raise

    def _create_default_config(self, config_path: Path) -> None:
        """Create default configuration file"""
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(self._get_default_config_content(config_path.parent))
            logger.info(f"✓ Default configuration file created: {config_path}")
        except OSError as e:
            logger.error(f"Failed to create default configuration file: {e}")
            raise

    def _get_default_config_content(self, config_dir: Path) -> str:
        """Get default configuration content"""
        return f"""# medsync engine configuration file

[server]
host = "0.0.0.0"
port = 8000
debug = false

[database]
# SQLite document store
path = '{config_dir / "medsync.db"}'

[logging]
level = "INFO"
logs_dir = '{config_dir / "logs"}'
max_file_size = "10MB"
backup_count = 5
quiet_loggers = ["httpx", "httpcore", "uvicorn.access"]

[engine]
on_time_threshold_minutes = 30
very_late_threshold_minutes = 120
undo_timeout_seconds = 30
correction_window_hours = 24
schedule_horizon_days = 30
max_scheduled_events_per_run = 100
missed_window_before_minutes = 60
missed_window_after_minutes = 240
missed_lookback_hours = 24

[analytics]
low_risk_threshold = 90
medium_risk_threshold = 70
high_risk_threshold = 50

[daily_reset]
batch_size = 500
default_timezone = "${{MEDSYNC_DEFAULT_TIMEZONE:America/Chicago}}"

[notifications]
# Leave webhook_url empty to only log notifications
webhook_url = "${{MEDSYNC_NOTIFY_WEBHOOK:}}"
timeout = 10.0
max_retries = 3
retry_backoff = 1.0
"""

    def _replace_env_vars(self, content: str) -> str:
        """Replace environment variable placeholders"""

        def replace_var(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) else ""
            return os.getenv(var_name, default_value)

        # Match ${VAR_NAME} or ${VAR_NAME:default_value} format
        pattern = r"\$\{([^}:]+)(?::([^}]*))?\}"
        return re.sub(pattern, replace_var, content)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value, supports dot-separated nested keys"""
        keys = key.split(".")
        value: Any = self._config

        try:
            for k in keys:
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> bool:
        """Set configuration value, supports dot-separated nested keys"""
        keys = key.split(".")
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value
        return self.save()

    def save(self) -> bool:
        """Save configuration to file"""
        try:
            config_path = Path(self.config_file)
            config_path.parent.mkdir(parents=True, exist_ok=True)

            with open(self.config_file, "w", encoding="utf-8") as f:
                if self.config_file.endswith((".yaml", ".yml")):
                    yaml.safe_dump(self._config, f, sort_keys=False)
                else:
                    toml.dump(self._config, f)

            logger.info(f"✓ Configuration saved to: {self.config_file}")
            return True

        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            return False


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Convenience function for loading configuration"""
    loader = get_config(config_file)
    if loader._config:
        return loader._config
    return loader.load()


# Global configuration instance
_config_instance: Optional[ConfigLoader] = None


def get_config(config_file: Optional[str] = None) -> ConfigLoader:
    """Get global configuration instance"""
    global _config_instance
    if config_file is not None:
        _config_instance = ConfigLoader(config_file)
        _config_instance.load()
    elif _config_instance is None:
        _config_instance = ConfigLoader()
        _config_instance.load()
    return _config_instance


def reset_config() -> None:
    """Drop the global configuration instance (next get_config() reloads)"""
    global _config_instance
    _config_instance = None
