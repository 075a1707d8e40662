from .loader import ConfigLoader, get_config, load_config, reset_config
from .settings import EngineSettings, NotificationSettings

__all__ = [
    "ConfigLoader",
    "EngineSettings",
    "NotificationSettings",
    "get_config",
    "load_config",
    "reset_config",
]
