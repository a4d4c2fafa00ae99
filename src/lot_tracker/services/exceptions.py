"""Service layer exception classes for Lot Tracker.

This module defines all custom exceptions used by the service layer to provide
consistent error handling across the application.

Exception Hierarchy:
    ServiceError (base)
    ├── ValidationError
    ├── UnitNotFound
    ├── OrderNotFound
    ├── UnitAlreadyTerminal
    ├── RoutingUndefined
    ├── AllocationCollision
    ├── CounterDesync
    └── PersistenceFailure
"""

from typing import Dict, Optional


class ServiceError(Exception):
    """Base exception for all service layer errors.

    All service-specific exceptions should inherit from this class.
    """

    pass


class ValidationError(ServiceError):
    """Raised when input validation fails.

    Args:
        errors: List of human-readable validation messages
    """

    def __init__(self, errors: list):
        self.errors = errors
        error_msg = "; ".join(errors)
        super().__init__(f"Validation failed: {error_msg}")


class UnitNotFound(ServiceError):
    """Raised when a production unit cannot be found by lot number.

    Example:
        >>> raise UnitNotFound("402511411400001")
        UnitNotFound: Production unit '402511411400001' not found
    """

    def __init__(self, lot_number: str):
        self.lot_number = lot_number
        super().__init__(f"Production unit '{lot_number}' not found")


class OrderNotFound(ServiceError):
    """Raised when an order cannot be found by order id."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order '{order_id}' not found")


class UnitAlreadyTerminal(ServiceError):
    """Raised when a decision is submitted for a completed or rejected unit."""

    def __init__(self, lot_number: str, status: str):
        self.lot_number = lot_number
        self.status = status
        super().__init__(
            f"Production unit '{lot_number}' is already {status} and accepts no further decisions"
        )


class RoutingUndefined(ServiceError):
    """Raised when no routing rule matches a station.

    Args:
        station: The (normalised) station id that has no rule
        item: Item descriptor that was routed
    """

    def __init__(self, station: str, item: Optional[str] = None):
        self.station = station
        self.item = item
        super().__init__(f"No routing rule for station '{station}'")


class AllocationCollision(ServiceError):
    """Raised when a lot number cannot be allocated without a duplicate."""

    def __init__(self, lot_number: str, attempts: int = 1):
        self.lot_number = lot_number
        self.attempts = attempts
        super().__init__(
            f"Lot number '{lot_number}' already exists (after {attempts} attempt(s))"
        )


class CounterDesync(ServiceError):
    """Raised when stored order counters disagree with the units on record.

    Args:
        order_id: The order whose counters are out of sync
        stored: Counters as stored, station -> count
        expected: Counters recomputed from units, station -> count
    """

    def __init__(self, order_id: str, stored: Dict[str, int], expected: Dict[str, int]):
        self.order_id = order_id
        self.stored = stored
        self.expected = expected
        stations = sorted(
            station
            for station in set(stored) | set(expected)
            if stored.get(station, 0) != expected.get(station, 0)
        )
        details = ", ".join(
            f"{station}: stored {stored.get(station, 0)}, expected {expected.get(station, 0)}"
            for station in stations
        )
        super().__init__(f"Counters for order '{order_id}' out of sync ({details})")


class PersistenceFailure(ServiceError):
    """Raised when a database operation fails."""

    def __init__(self, message: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(f"Database error: {message}")
