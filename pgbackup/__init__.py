import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


__version__ = '1.0.0'


def configure_logging(level='INFO', log_dir: Optional[str] = None):
    """Configure application logging"""

    log_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'pgbackup.log'),
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

    # boto's wire-level debug output would drown the backup log
    for noisy in ('botocore', 'boto3', 's3transfer', 'urllib3'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.INFO))

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")
