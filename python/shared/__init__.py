"""Shared utilities for the asset workflow backends."""

from .logging import setup_logging, get_logger, LOG_DIR, get_log_path

__all__ = ['setup_logging', 'get_logger', 'LOG_DIR', 'get_log_path']
