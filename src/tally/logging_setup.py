"""Logging setup for tally.

Everything logs under the `tally` namespace. Besides the console/file
output, an optional audit file receives only money-moving events
(invoice creation and transitions, job outcomes, retainer balance
changes) so it can be kept longer than the rotated main log.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config, LoggingConfig

_DETAILED_FORMAT = "%(asctime)s %(levelname)-5s [%(name)-16s] %(message)s"
_SHORT_FORMAT = "%(levelname)-5s [%(name)-16s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

AUDIT_LOGGERS = ("tally.invoices", "tally.invoice_scheduler", "tally.retainers")

_initialized = False


class AuditFilter(logging.Filter):
    """Pass INFO and above from the loggers that record billing events."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno < logging.INFO:
            return False
        return any(
            record.name == name or record.name.startswith(name + ".")
            for name in AUDIT_LOGGERS
        )


def _file_handler(log_config: LoggingConfig, level: int) -> logging.Handler:
    file_path = Path(log_config.file)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if log_config.rotate:
        handler = RotatingFileHandler(
            file_path,
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
        )
    else:
        handler = logging.FileHandler(file_path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_DETAILED_FORMAT, datefmt=_DATE_FORMAT))
    return handler


def _audit_handler(path: str) -> logging.Handler:
    audit_path = Path(path)
    audit_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(audit_path)
    handler.setLevel(logging.INFO)
    handler.addFilter(AuditFilter())
    handler.setFormatter(logging.Formatter(_DETAILED_FORMAT, datefmt=_DATE_FORMAT))
    return handler


def setup_logging(
    config: Config,
    verbose: bool = False,
    daemon_mode: bool = False,
) -> None:
    """
    Configure the `tally` logger.

    Args:
        config: Application configuration with logging settings
        verbose: If True, override config level to DEBUG
        daemon_mode: If True, include timestamps in console output
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_config = config.logging
    level_str = "DEBUG" if verbose else log_config.level.upper()
    level = getattr(logging, level_str, logging.INFO)

    logger = logging.getLogger("tally")
    logger.handlers.clear()
    # The audit file wants INFO even when the console is quieter
    logger.setLevel(min(level, logging.INFO) if log_config.audit_file else level)

    if log_config.output in ("console", "both"):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        if daemon_mode:
            console_handler.setFormatter(logging.Formatter(_DETAILED_FORMAT, datefmt=_DATE_FORMAT))
        else:
            console_handler.setFormatter(logging.Formatter(_SHORT_FORMAT))
        logger.addHandler(console_handler)

    if log_config.output in ("file", "both") and log_config.file:
        logger.addHandler(_file_handler(log_config, level))

    if log_config.audit_file:
        logger.addHandler(_audit_handler(log_config.audit_file))

    # ntfy posts go through httpx, which logs every request at INFO
    for noisy_logger in ("httpx", "httpcore"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def reset_logging() -> None:
    """Reset logging state for testing purposes."""
    global _initialized
    _initialized = False
    logger = logging.getLogger("tally")
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
