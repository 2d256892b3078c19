"""Process-wide logging configuration"""

import logging
import os
from typing import Optional

from config import Config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that drown service logs at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio")


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    """Configure the root logger once at process start"""
    resolved_level = getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO)

    handlers = [logging.StreamHandler()]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))

    logging.basicConfig(level=resolved_level, format=LOG_FORMAT, handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING if not Config.DATABASE_ECHO else logging.INFO)

    logging.getLogger(__name__).debug(f"Logging configured at {logging.getLevelName(resolved_level)}")
