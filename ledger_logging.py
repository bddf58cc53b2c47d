"""
Logging setup shared by the ledger modules.

Every module gets its own named logger with a file handler under the log
directory and a console handler, using the same record format. Loggers are
created at import time from LEDGER_LOG_DIR / LEDGER_LOG_LEVEL; a service
re-targets all of them to its LedgerConfig with configure_ledger_logging().
"""

import logging
import os
from typing import Dict, Optional

LOG_FORMAT = '%(asctime)s [%(levelname)s] [%(filename)s:%(lineno)d] %(message)s'

_ledger_loggers: Dict[str, logging.Logger] = {}


def _attach_handlers(logger: logging.Logger, name: str, log_dir: str, console_level: str) -> None:
    for handler in getattr(logger, "_ledger_handlers", []):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = []

    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, f"{name}.log"))
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    except OSError as e:
        logger.warning(f"Could not create log file for {name}: {e}")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, console_level, logging.INFO))
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    for handler in handlers:
        logger.addHandler(handler)
    logger._ledger_handlers = handlers
    logger._ledger_target = (log_dir, console_level)


def get_ledger_logger(name: str, log_dir: Optional[str] = None,
                      console_level: Optional[str] = None) -> logging.Logger:
    """
    Return the named logger, attaching file and console handlers on first use.

    Args:
        name: Logger name, also used for the log file name
        log_dir: Directory for log files (defaults to LEDGER_LOG_DIR or "logs")
        console_level: Console handler level (defaults to LEDGER_LOG_LEVEL or INFO)

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    if name in _ledger_loggers:
        return logger

    logger.setLevel(logging.DEBUG)
    log_dir = log_dir or os.environ.get("LEDGER_LOG_DIR", "logs")
    console_level = (console_level or os.environ.get("LEDGER_LOG_LEVEL", "INFO")).upper()
    _attach_handlers(logger, name, log_dir, console_level)

    _ledger_loggers[name] = logger
    return logger


def configure_ledger_logging(log_dir: str, console_level: str) -> None:
    """Point every ledger logger at log_dir and set the console level."""
    console_level = console_level.upper()
    for name, logger in list(_ledger_loggers.items()):
        if getattr(logger, "_ledger_target", None) != (log_dir, console_level):
            _attach_handlers(logger, name, log_dir, console_level)
