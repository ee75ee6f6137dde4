"""Tests for dataupgrade.logging_config module."""

import logging

import pytest

from dataupgrade.logging_config import (
    EVENT_LOGGER_NAME,
    get_log_dir,
    log_cleanup,
    log_sweep,
    log_upgrade_event,
    setup_upgrade_logging,
)

from conftest import make_settings


def _reset(logger: logging.Logger):
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def clean_upgrade_loggers():
    """Remove all handlers from the dataupgrade loggers before/after each test."""
    loggers = [logging.getLogger("dataupgrade"), logging.getLogger(EVENT_LOGGER_NAME)]
    for logger in loggers:
        _reset(logger)
    yield
    for logger in loggers:
        _reset(logger)


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    """Set DATAUPGRADE_DATA_DIR so logs go to a temp directory."""
    monkeypatch.setenv("DATAUPGRADE_DATA_DIR", str(tmp_path))
    return tmp_path / "logs"


def _file_handlers(logger):
    return [h for h in logger.handlers if isinstance(h, logging.FileHandler)]


class TestSetupUpgradeLogging:
    """Tests for setup_upgrade_logging."""

    def test_returns_logger(self, log_dir):
        logger = setup_upgrade_logging()
        assert isinstance(logger, logging.Logger)
        assert logger.name == "dataupgrade"

    def test_creates_log_directory(self, log_dir):
        assert not log_dir.exists()
        setup_upgrade_logging()
        assert log_dir.exists()

    def test_log_files_named_with_date(self, log_dir):
        setup_upgrade_logging()
        assert len(list(log_dir.glob("local-*.log"))) == 1
        assert len(list(log_dir.glob("upgrade-events-*.log"))) == 1

    def test_default_level_info(self, log_dir):
        assert setup_upgrade_logging().level == logging.INFO

    def test_custom_level_case_insensitive(self, log_dir):
        assert setup_upgrade_logging(level="warning").level == logging.WARNING

    def test_invalid_level_falls_back_to_info(self, log_dir):
        assert setup_upgrade_logging(level="LOUD").level == logging.INFO

    def test_debug_adds_console_handler(self, log_dir):
        logger = setup_upgrade_logging(level="DEBUG")
        console = [
            h
            for h in logger.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]
        assert len(console) == 1

    def test_no_duplicate_handlers(self, log_dir):
        """Calling setup twice should not stack file handlers."""
        setup_upgrade_logging()
        logger = setup_upgrade_logging()
        assert len(_file_handlers(logger)) == 1
        assert len(_file_handlers(logging.getLogger(EVENT_LOGGER_NAME))) == 1

    def test_settings_argument_overrides_env(self, log_dir, tmp_path):
        other = tmp_path / "elsewhere"
        setup_upgrade_logging(settings=make_settings(data_dir=other))
        assert (other / "logs").exists()
        assert not log_dir.exists()

    def test_get_log_dir_uses_env(self, log_dir):
        assert get_log_dir() == log_dir


class TestEventLog:
    """Tests for the upgrade event helpers."""

    def _read_events(self, log_dir):
        for logger in (logging.getLogger("dataupgrade"), logging.getLogger(EVENT_LOGGER_NAME)):
            for handler in logger.handlers:
                handler.flush()
        (path,) = log_dir.glob("upgrade-events-*.log")
        return path.read_text(encoding="utf-8")

    def test_log_upgrade_event_format(self, log_dir):
        setup_upgrade_logging()
        log_upgrade_event("custom", "key=value", entity_type="articles")
        content = self._read_events(log_dir)
        assert "custom | entity=articles | key=value" in content

    def test_log_sweep(self, log_dir):
        setup_upgrade_logging()
        log_sweep("articles", "splitHeadline", rows=12, errors=1, converged=False)
        content = self._read_events(log_dir)
        assert (
            "sweep | entity=articles | upgrade=splitHeadline, rows=12, errors=1, converged=False"
            in content
        )

    def test_log_cleanup(self, log_dir):
        setup_upgrade_logging()
        log_cleanup("articles", rows=3, completed=True)
        content = self._read_events(log_dir)
        assert "cleanup | entity=articles | rows=3, errors=0, completed=True" in content

    def test_events_propagate_without_setup(self, caplog):
        """Before setup, events only reach the normal logging hierarchy."""
        with caplog.at_level(logging.INFO, logger=EVENT_LOGGER_NAME):
            log_sweep("articles", "splitHeadline", rows=0, converged=True)
        assert "sweep | entity=articles" in caplog.text
