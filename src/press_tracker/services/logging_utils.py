"""Service layer logging utilities.

Every pressing and allocation operation logs one record per outcome under the
'press_tracker.services' logger namespace. The record message reads
"<operation>: <outcome>" followed by the identifying ids, and the full
context travels on the record itself (via 'extra') for structured handlers.

Usage:
    from press_tracker.services.logging_utils import get_service_logger, log_operation

    logger = get_service_logger(__name__)

    log_operation(
        logger,
        operation="complete_press_run",
        outcome="success",
        press_run_id=123,
        batches_created=2,
    )
"""

import logging
from typing import Any, Dict

LOGGER_NAMESPACE = "press_tracker.services"

# Attributes every LogRecord already has; context keys may not overwrite them
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}

# Context keys shown in the message text when present
_MESSAGE_KEYS = ("press_run_id", "load_id", "lot_id", "vessel_id", "batch_id", "target_batch_id")


def get_service_logger(name: str) -> logging.Logger:
    """
    Get the logger for a service module.

    Args:
        name: Module name, usually __name__; only its last component is kept

    Returns:
        Logger named 'press_tracker.services.<module>'

    Example:
        >>> get_service_logger("press_tracker.services.press_run_service").name
        'press_tracker.services.press_run_service'
    """
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name.rsplit('.', 1)[-1]}")


def _record_extra(operation: str, outcome: str, context: Dict[str, Any]) -> Dict[str, Any]:
    extra = {"operation": operation, "outcome": outcome}
    for key, value in context.items():
        if key in _RESERVED_ATTRS or key in extra:
            key = f"ctx_{key}"
        extra[key] = value
    return extra


def log_operation(
    logger: logging.Logger,
    operation: str,
    outcome: str,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """
    Log a service operation with structured context.

    Context keys that collide with LogRecord attributes (for example "name"
    or "msg") are stored with a "ctx_" prefix.

    Args:
        logger: Logger instance to use
        operation: Operation name (e.g., "add_load", "complete_press_run")
        outcome: Outcome description (e.g., "success", "rejected", "error")
        level: Log level (default: INFO)
        **context: Entity ids, volumes, error details

    Example:
        >>> log_operation(
        ...     logger,
        ...     operation="complete_press_run",
        ...     outcome="rejected",
        ...     level=logging.WARNING,
        ...     press_run_id=5,
        ...     vessel_id=3,
        ... )
        # message: "complete_press_run: rejected (press_run_id=5, vessel_id=3)"
    """
    ids = ", ".join(f"{key}={context[key]}" for key in _MESSAGE_KEYS if key in context)
    message = f"{operation}: {outcome}"
    if ids:
        message = f"{message} ({ids})"
    logger.log(level, message, extra=_record_extra(operation, outcome, context))


def log_rejection(
    logger: logging.Logger,
    operation: str,
    error: Exception,
    **context: Any,
) -> None:
    """
    Log a request refused by validation or a precondition, at WARNING.

    The exception class goes into "error_type" and its message into "error".
    """
    log_operation(
        logger,
        operation,
        "rejected",
        level=logging.WARNING,
        error_type=type(error).__name__,
        error=str(error),
        **context,
    )
