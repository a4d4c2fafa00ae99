"""
Enumerations for lot tracking.

This module contains enums used across production-related models:
- LifecycleStage: Processing phase of a production unit
- UnitStatus: Coarse state of a production unit
- OrderStatus: State of a planned production order
- QualityDecision: Outcome of a quality gate
- NotificationKind: Types of notification events
- StationCapability: Role a station plays in routing
"""

from enum import Enum


class LifecycleStage(str, Enum):
    """
    Processing stage of a production unit.

    Values:
        ACTIVE: Initial production stage at the origin station
        HELD: Temporarily rejected, waiting for rework
        MAZAK: Queued for Mazak machining
        NABEWERKING: Queued for manual finishing (rework)
        EINDINSPECTIE: Queued for final inspection at BM01
        FINISHED: Released after final inspection (terminal)
        REJECTED: Definitively rejected (terminal)
    """

    ACTIVE = "Active"
    HELD = "Held"
    MAZAK = "Mazak"
    NABEWERKING = "Nabewerking"
    EINDINSPECTIE = "Eindinspectie"
    FINISHED = "Finished"
    REJECTED = "Rejected"


class UnitStatus(str, Enum):
    """
    Coarse state of a production unit.

    QUEUED is reserved for units registered ahead of production; units
    created by start_production begin ACTIVE.
    """

    QUEUED = "queued"
    ACTIVE = "active"
    HELD = "held"
    REJECTED = "rejected"
    COMPLETED = "completed"


TERMINAL_UNIT_STATUSES = frozenset({UnitStatus.REJECTED, UnitStatus.COMPLETED})


class OrderStatus(str, Enum):
    """Planned production order status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class QualityDecision(str, Enum):
    """
    Quality gate outcome submitted by an inspector.

    Values:
        APPROVED: Unit passes and moves on to the next station
        TEMP_REJECTED: Unit is held for rework at its current station
        REJECTED: Unit is scrapped and moved to the reject area
    """

    APPROVED = "Approved"
    TEMP_REJECTED = "TempRejected"
    REJECTED = "Rejected"


class NotificationKind(str, Enum):
    """Notification event types."""

    OVERPRODUCTION = "overproduction"
    OVERDUE_REWORK = "overdue_rework"


class StationCapability(str, Enum):
    """
    Role of a station in the routing graph.

    Values:
        FINISHING_DIRECT: Forming station whose output always goes to finishing
        PRIMARY_FORMING: Forming station whose output depends on the item
        POST_PROCESSING: Mazak or manual finishing
        FINAL_INSPECTION: Release station (BM01)
    """

    FINISHING_DIRECT = "finishing_direct"
    PRIMARY_FORMING = "primary_forming"
    POST_PROCESSING = "post_processing"
    FINAL_INSPECTION = "final_inspection"
