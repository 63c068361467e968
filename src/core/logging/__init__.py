"""
Structured logging module.

Provides JSON logging with job/slice context propagation.

Components:
    - setup_logging: console + rotating JSON file handlers
    - JSONFormatter / ConsoleFormatter
    - log context (job_id, slice_key, stage, worker_id) via contextvars,
      so it follows each asyncio task
    - log_with_context / log_exception helpers
"""

from core.logging.context import (
    clear_log_context,
    get_log_context,
    log_context,
    set_log_context,
)
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.setup import LoggingConfig, get_log_file_path, setup_logging
from core.logging.utilities import log_exception, log_with_context

__all__ = [
    "setup_logging",
    "LoggingConfig",
    "get_log_file_path",
    "JSONFormatter",
    "ConsoleFormatter",
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    "log_context",
    "log_with_context",
    "log_exception",
]
