import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


__version__ = '0.4.0'

DEFAULT_LOG_DIR = os.path.join('~', '.local', 'state', 'cloudsnap', 'logs')


def configure_logging(level: str = 'INFO', log_dir: Optional[str] = None, debug: bool = False):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = os.path.expanduser(log_dir or DEFAULT_LOG_DIR)
    os.makedirs(log_dir, exist_ok=True)

    if debug:
        log_level = logging.DEBUG
    else:
        log_level = logging.getLevelName(str(level).upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'cloudsnap.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)

    # urllib3 is chatty at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")
