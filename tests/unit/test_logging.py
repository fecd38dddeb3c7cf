"""
Unit tests for logging setup (sbackup/__init__.py).
"""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from sbackup import configure_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)
    logging.getLogger('sbackup').setLevel(logging.NOTSET)
    logging.getLogger('apscheduler').setLevel(logging.NOTSET)


class TestConfigureLogging:
    """Test configure_logging function."""

    def test_level_from_argument(self, restore_logging):
        logger = configure_logging('debug')

        assert logger.name == 'sbackup'
        assert logger.level == logging.DEBUG
        assert logging.getLogger('apscheduler').level == logging.WARNING

    def test_level_from_environment(self, restore_logging, monkeypatch):
        monkeypatch.setenv('SB_LOG_LEVEL', 'ERROR')

        logger = configure_logging()

        assert logger.level == logging.ERROR
        assert logging.getLogger('apscheduler').level == logging.ERROR

    def test_unknown_level_falls_back_to_info(self, restore_logging):
        assert configure_logging('chatty').level == logging.INFO

    def test_log_file(self, restore_logging, tmp_path, monkeypatch):
        log_file = tmp_path / 'logs' / 'sbackup.log'
        monkeypatch.setenv('SB_LOG_FILE', str(log_file))

        logger = configure_logging('INFO')
        logger.info("hello from the test")

        file_handlers = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        file_handlers[0].flush()
        assert "hello from the test" in log_file.read_text()
