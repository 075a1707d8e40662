"""
Unified logging system
Console output plus rotating medsync.log / error.log files, configured from [logging]
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Dict, List, Optional

from medsync.config.loader import get_config

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"

# httpx/httpcore log every webhook request at INFO
DEFAULT_QUIET_LOGGERS = ["httpx", "httpcore", "uvicorn.access"]

_SIZE_UNITS = {"KB": 1024, "MB": 1024**2, "GB": 1024**3}


def parse_size(value) -> int:
    """"10MB" -> bytes; bare numbers are bytes"""
    text = str(value).strip().upper()
    for unit, factor in _SIZE_UNITS.items():
        if text.endswith(unit):
            return int(text[: -len(unit)]) * factor
    return int(text)


class LoggerManager:
    """Owns the handlers medsync installs on the root logger"""

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._handlers: List[logging.Handler] = []
        self._setup_root_logger()

    def _setup_root_logger(self):
        config = get_config()

        level_name = str(config.get("logging.level", "INFO")).upper()
        logs_dir = Path(config.get("logging.logs_dir") or config.config_dir / "logs")
        max_bytes = parse_size(config.get("logging.max_file_size", "10MB"))
        backup_count = int(config.get("logging.backup_count", 5))
        quiet = config.get("logging.quiet_loggers", DEFAULT_QUIET_LOGGERS)

        logs_dir.mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, level_name, logging.INFO))

        # Reconfiguring replaces only what a previous setup installed
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers = []

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        self._install(root_logger, console_handler)

        for filename, level in (("medsync.log", logging.DEBUG), ("error.log", logging.ERROR)):
            handler = logging.handlers.RotatingFileHandler(
                logs_dir / filename,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            handler.setLevel(level)
            handler.setFormatter(logging.Formatter(FILE_FORMAT))
            self._install(root_logger, handler)

        for name in quiet or []:
            logging.getLogger(name).setLevel(logging.WARNING)

    def _install(self, root_logger: logging.Logger, handler: logging.Handler) -> None:
        root_logger.addHandler(handler)
        self._handlers.append(handler)

    def get_logger(self, name: str) -> logging.Logger:
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]


# Created lazily so config/loader.py can be imported without logging side effects
_logger_manager: Optional[LoggerManager] = None


def get_logger(name: str) -> logging.Logger:
    """Convenience function to get logger"""
    global _logger_manager

    if _logger_manager is None:
        _logger_manager = LoggerManager()

    return _logger_manager.get_logger(name)


def setup_logging():
    """(Re)apply the [logging] section, e.g. after the CLI switched config files"""
    global _logger_manager

    if _logger_manager is None:
        _logger_manager = LoggerManager()
    else:
        _logger_manager._setup_root_logger()
