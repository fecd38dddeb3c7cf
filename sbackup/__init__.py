import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


__version__ = '0.1.0'


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Configure process-wide logging and return the sbackup logger"""

    # Level and file come from the environment unless given explicitly
    level_name = (level or os.environ.get('SB_LOG_LEVEL') or 'INFO').upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO
    log_file = log_file or os.environ.get('SB_LOG_FILE')

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # APScheduler logs every job submission at INFO
    logging.getLogger('apscheduler').setLevel(max(log_level, logging.WARNING))

    logger = logging.getLogger('sbackup')
    logger.setLevel(log_level)
    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger
