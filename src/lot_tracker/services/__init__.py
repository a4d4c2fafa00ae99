"""Services package - Business logic layer for Lot Tracker.

This package contains all service modules that provide business logic
and database operations for the lot tracking engine.

Architecture:
- Services: Stateless functions organized by domain
- Transactions: Managed via session_scope() context manager
- Exceptions: Consistent error handling via ServiceError hierarchy
- Validation: Input validation before database operations
- Change feed: Committed writes are published per collection

Service Modules:
- lot_number_service: Lot identifier derivation and allocation
- routing: Next-station resolution after an approved quality check
- unit_lifecycle_service: Start production, quality decisions, reassignment
- order_reconciler_service: Per-station started counters on orders
- overdue_rework_service: Reminders for units held in rework too long
- notification_service: Engine-generated notifications

Infrastructure:
- exceptions: Custom exception classes for service layer errors
- database: Session management and database utilities
- change_feed: Subscribe to committed changes
- logging_utils: Structured operation logging
"""

from . import (
    database,
    lot_number_service,
    routing,
    order_reconciler_service,
    notification_service,
    unit_lifecycle_service,
    overdue_rework_service,
)

from .change_feed import ChangeEvent, ChangeFeed, Subscription, get_change_feed
from .exceptions import (
    ServiceError,
    ValidationError,
    UnitNotFound,
    OrderNotFound,
    UnitAlreadyTerminal,
    RoutingUndefined,
    AllocationCollision,
    CounterDesync,
    PersistenceFailure,
)
from .unit_lifecycle_service import (
    start_production,
    submit_quality_decision,
    reassign_overproduced_unit,
    get_unit,
    list_units,
    get_unit_history,
)
from .order_reconciler_service import (
    create_order,
    get_order,
    record_start,
    rollback_start,
    get_started_counts,
    verify_order_counters,
    repair_order_counters,
)
from .overdue_rework_service import OverdueReworkMonitor, scan_overdue_rework

__all__ = [
    # Modules
    "database",
    "lot_number_service",
    "routing",
    "order_reconciler_service",
    "notification_service",
    "unit_lifecycle_service",
    "overdue_rework_service",
    # Change feed
    "ChangeEvent",
    "ChangeFeed",
    "Subscription",
    "get_change_feed",
    # Exceptions
    "ServiceError",
    "ValidationError",
    "UnitNotFound",
    "OrderNotFound",
    "UnitAlreadyTerminal",
    "RoutingUndefined",
    "AllocationCollision",
    "CounterDesync",
    "PersistenceFailure",
    # Lifecycle
    "start_production",
    "submit_quality_decision",
    "reassign_overproduced_unit",
    "get_unit",
    "list_units",
    "get_unit_history",
    # Orders
    "create_order",
    "get_order",
    "record_start",
    "rollback_start",
    "get_started_counts",
    "verify_order_counters",
    "repair_order_counters",
    # Monitoring
    "OverdueReworkMonitor",
    "scan_overdue_rework",
]
