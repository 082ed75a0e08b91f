from __future__ import annotations

import logging
import os
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from openbio_desktop.config import settings

APP_DIR_NAME = "OpenBio"
CONFIG_FILENAME = "config.json"
DATA_SUBDIR = "data"
LOG_DIR_NAME = "logs"
SERVICE_DB_FILENAME = "openbio.db"
LICENSE_DB_FILENAME = "license.db"

LOGGER_NAME = "openbio_desktop"
_LOG_HANDLER: Optional[RotatingFileHandler] = None
_CONSOLE_HANDLER: Optional[logging.Handler] = None
_LOG_CONFIG_LOCK = threading.Lock()


def get_data_dir() -> Path:
    """
    Per-user application directory:
      %APPDATA%/OpenBio (Windows)
      ~/Library/Application Support/OpenBio (macOS)
      $XDG_DATA_HOME/OpenBio or ~/.local/share/OpenBio (others)
    OPENBIO_DATA_DIR overrides all of them.
    """
    if settings.DATA_DIR:
        return Path(settings.DATA_DIR).expanduser()
    if sys.platform.startswith("win"):
        base_dir = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif sys.platform == "darwin":
        base_dir = Path.home() / "Library" / "Application Support"
    else:
        base_dir = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base_dir / APP_DIR_NAME


def get_config_file_path() -> Path:
    return get_data_dir() / CONFIG_FILENAME


def get_service_database_path() -> Path:
    return get_data_dir() / DATA_SUBDIR / SERVICE_DB_FILENAME


def get_storage_locator() -> str:
    """SQLite URL for the embedded service; the parent directory is created on demand."""
    db_path = get_service_database_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def get_license_cache_url() -> str:
    db_path = get_data_dir() / DATA_SUBDIR / LICENSE_DB_FILENAME
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def get_logs_dir() -> Path:
    logs_dir = get_data_dir() / LOG_DIR_NAME
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    global _LOG_HANDLER, _CONSOLE_HANDLER

    with _LOG_CONFIG_LOCK:
        app_logger = logging.getLogger(LOGGER_NAME)
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        root_logger = logging.getLogger()

        if _LOG_HANDLER is None:
            handler = RotatingFileHandler(
                get_logs_dir() / "openbio.log",
                maxBytes=1_048_576,
                backupCount=5,
                encoding="utf-8",
            )
            handler.setFormatter(formatter)
            handler.setLevel(logging.DEBUG)
            root_logger.addHandler(handler)
            _LOG_HANDLER = handler

        if _CONSOLE_HANDLER is None:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(formatter)
            root_logger.addHandler(console_handler)
            _CONSOLE_HANDLER = console_handler
            logging.captureWarnings(True)

        if root_logger.level == logging.NOTSET or root_logger.level > logging.INFO:
            root_logger.setLevel(logging.INFO)
        app_logger.setLevel((level or settings.LOG_LEVEL).upper())
        return app_logger
