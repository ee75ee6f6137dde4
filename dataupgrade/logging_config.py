"""Logging setup for dataupgrade.

Two streams:
- the `dataupgrade` logger, written to <data_dir>/logs/local-YYYY-MM-DD.log
- the upgrade event log (`dataupgrade.events`), one line per finished sweep
  or cleanup, written to <data_dir>/logs/upgrade-events-YYYY-MM-DD.log

Nothing is written to disk until setup_upgrade_logging() is called; before
that, events go through the normal logging hierarchy only.
"""

import logging
from datetime import date
from pathlib import Path
from typing import Optional

from dataupgrade.config import UpgradeSettings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
EVENT_FORMAT = "%(asctime)s | %(message)s"

EVENT_LOGGER_NAME = "dataupgrade.events"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def get_log_dir(settings: Optional[UpgradeSettings] = None) -> Path:
    """Directory log files are written to."""
    settings = settings or UpgradeSettings()
    return settings.resolved_data_dir() / "logs"


def _has_file_handler(logger: logging.Logger, path: Path) -> bool:
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == path:
            return True
    return False


def setup_upgrade_logging(
    level: str = "INFO", settings: Optional[UpgradeSettings] = None
) -> logging.Logger:
    """Configure file logging for the dataupgrade package.

    Args:
        level: Level name, case-insensitive. Unknown names fall back to INFO.
        settings: Source of data_dir. Defaults to a fresh UpgradeSettings().

    Returns:
        The configured `dataupgrade` logger. Safe to call more than once.
    """
    log_dir = get_log_dir(settings)
    log_dir.mkdir(parents=True, exist_ok=True)
    today = date.today().isoformat()

    log_level = _LEVELS.get(level.upper(), logging.INFO)
    logger = logging.getLogger("dataupgrade")
    logger.setLevel(log_level)

    log_path = log_dir / f"local-{today}.log"
    if not _has_file_handler(logger, log_path):
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    if log_level == logging.DEBUG:
        has_console = any(
            isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
            for h in logger.handlers
        )
        if not has_console:
            console = logging.StreamHandler()
            console.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(console)

    events = logging.getLogger(EVENT_LOGGER_NAME)
    events.setLevel(logging.INFO)
    event_path = log_dir / f"upgrade-events-{today}.log"
    if not _has_file_handler(events, event_path):
        event_handler = logging.FileHandler(event_path, encoding="utf-8")
        event_handler.setFormatter(logging.Formatter(EVENT_FORMAT))
        events.addHandler(event_handler)

    return logger


def log_upgrade_event(event_type: str, details: str, entity_type: str = "default") -> None:
    """Emit one upgrade event line: `<event_type> | entity=<entity_type> | <details>`."""
    logging.getLogger(EVENT_LOGGER_NAME).info(f"{event_type} | entity={entity_type} | {details}")


def log_sweep(entity_type: str, upgrade: str, rows: int, errors: int = 0, converged: bool = False):
    log_upgrade_event(
        "sweep",
        f"upgrade={upgrade}, rows={rows}, errors={errors}, converged={converged}",
        entity_type=entity_type,
    )


def log_cleanup(entity_type: str, rows: int, errors: int = 0, completed: bool = False):
    log_upgrade_event(
        "cleanup",
        f"rows={rows}, errors={errors}, completed={completed}",
        entity_type=entity_type,
    )
