"""Service layer logging utilities.

Provides structured logging functions for service operations, enabling
consistent log format and context across lot allocation, lifecycle and
reconciliation operations.

Usage:
    from lot_tracker.services.logging_utils import get_service_logger, log_operation

    logger = get_service_logger(__name__)

    log_operation(
        logger,
        operation="start_production",
        outcome="success",
        order_id="ORD-1001",
        station="BH11",
        count=3,
    )

    log_operation(
        logger,
        operation="submit_quality_decision",
        outcome="routing_undefined",
        level=logging.WARNING,
        lot_number="402511499400001",
        station="BH99",
    )
"""

import logging
from typing import Any

SERVICE_LOGGER_PREFIX = "lot_tracker.services"


def get_service_logger(name: str) -> logging.Logger:
    """
    Get a logger configured for service operations.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Logger named '<prefix>.<module>', e.g.
        'lot_tracker.services.unit_lifecycle_service'
    """
    if "." in name:
        name = name.split(".")[-1]
    return logging.getLogger(f"{SERVICE_LOGGER_PREFIX}.{name}")


def log_operation(
    logger: logging.Logger,
    operation: str,
    outcome: str,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """
    Log a service operation with structured context.

    The context is passed via the 'extra' parameter, so handlers and
    formatters can read e.g. ``record.lot_number``.

    Args:
        logger: Logger instance to use
        operation: Operation name (e.g., "start_production")
        outcome: Outcome description (e.g., "success", "overflow", "error")
        level: Log level (default: INFO). Use DEBUG for frequent logs.
        **context: Additional context fields
            Common fields:
            - lot_number: Unit being processed
            - order_id: Order being updated
            - station: Station involved
            - error: Error message if outcome is "error"
    """
    extra = {
        "operation": operation,
        "outcome": outcome,
        **context,
    }
    logger.log(level, f"{operation}: {outcome}", extra=extra)
