"""
Shared logger for the payment collector.

Every module logs through the same named logger:

    from utils.logger import logger
"""

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(module)s:%(lineno)d | %(message)s"


def setup_logger(name: str = "autiv", level: Optional[str] = None) -> logging.Logger:
    """Create (or reconfigure) the collector logger"""
    log = logging.getLogger(name)

    if not log.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log.addHandler(handler)

    log.setLevel((level or os.environ.get("LOG_LEVEL", "INFO")).upper())
    return log


def set_log_level(level: str) -> None:
    logger.setLevel(level.upper())


logger = setup_logger()
