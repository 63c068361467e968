"""Helpers for logging with structured ``extra`` fields."""

import logging
from typing import Any

from core.security import sanitize_error_message


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log ``msg`` with keyword arguments attached as record attributes.

    Example:
        log_with_context(
            logger, logging.INFO, "Downloading object",
            job_id=str(restore_range.job_id),
            slice_key=restore_range.slice_key,
        )
    """
    logger.log(level, msg, extra=kwargs)


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log a failure with its category and a sanitized error message.

    error_category is taken from PipelineError subclasses unless passed
    explicitly. Set include_traceback=False for expected, handled failures.
    """
    if kwargs.get("error_category") is None and hasattr(exc, "category"):
        category = exc.category
        kwargs["error_category"] = getattr(category, "value", str(category))
    kwargs["error_message"] = sanitize_error_message(str(exc))

    logger.log(
        level,
        msg,
        exc_info=exc if include_traceback else None,
        extra=kwargs,
    )
