"""
Logging setup shared by the API process and the reconciliation scheduler.

Usage:
    from ledger_core.core.logging import setup_logging
    setup_logging("INFO")
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that log every query or request at INFO/DEBUG
NOISY_LOGGERS = [
    "aiosqlite",
    "sqlalchemy.engine",
    "httpcore",
    "httpx",
    "asyncio",
]


def setup_logging(level: str = "INFO") -> logging.Logger:
    """
    Configures the root logger with a single console handler.
    Existing handlers are replaced so repeated calls do not duplicate output.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    root_logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
