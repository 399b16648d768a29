"""
Standardized logging for the asset workflow backends.

Every backend logs to $ASSETFLOW_LOG_DIR/assetflow-{module}.log (the temp dir
by default) with one shared line format, plus stdout while developing. Files
rotate at 5MB.

Usage:
    from shared.logging import setup_logging, get_logger

    # At startup:
    setup_logging('asset-workflow')

    # In your code:
    logger = get_logger(__name__)
    logger.info('Request 12 advanced to hod')
    logger.warning('Audit sink failed', exc_info=True)

Log format:
    2026-01-16T20:30:00 - INFO - [asset_workflow.approval] message
"""

import logging
import os
import sys
import tempfile
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_DIR = os.environ.get('ASSETFLOW_LOG_DIR', tempfile.gettempdir())

LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(name)s] %(message)s'
DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

# Modules that already have handlers attached
_initialized_modules: set[str] = set()


def get_log_path(module: str) -> str:
    """Get the log file path for a backend module.

    Args:
        module: Module name (e.g., 'asset-workflow')

    Returns:
        Path to the log file (e.g., '/tmp/assetflow-asset-workflow.log')
    """
    safe_module = ''.join(c for c in module if c.isalnum() or c == '-')
    return os.path.join(LOG_DIR, f'assetflow-{safe_module}.log')


def _level_from_env(default: int) -> int:
    name = os.environ.get('ASSETFLOW_LOG_LEVEL')
    if not name:
        return default
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else default


def setup_logging(
    module: str,
    level: int = logging.INFO,
    also_stdout: bool = True,
    max_bytes: int = MAX_LOG_BYTES,
) -> logging.Logger:
    """Set up logging for a backend module.

    Attaches a size-rotated file handler for the module's log file (keeping
    LOG_BACKUPS old files) and, optionally, a stdout handler.
    ASSETFLOW_LOG_LEVEL overrides ``level`` when set. Calling this twice for
    the same module is a no-op.

    Returns:
        The configured root logger
    """
    if module in _initialized_modules:
        return logging.getLogger()

    level = _level_from_env(level)
    log_path = get_log_path(module)

    handlers: list[logging.Handler] = []
    try:
        handlers.append(RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=LOG_BACKUPS, encoding='utf-8'
        ))
    except OSError as e:
        print(f"Warning: Could not create log file at {log_path}: {e}", file=sys.stderr)
    if also_stdout:
        handlers.append(logging.StreamHandler(sys.stdout))

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = handlers

    _initialized_modules.add(module)
    root_logger.info(f'Logging initialized for {module}')

    return root_logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger instance (typically ``get_logger(__name__)``)."""
    return logging.getLogger(name)
