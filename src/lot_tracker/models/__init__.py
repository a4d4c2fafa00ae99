"""
Database models package.

This package contains all SQLAlchemy ORM models for the application.
"""

from .base import Base, BaseModel
from .enums import (
    LifecycleStage,
    UnitStatus,
    OrderStatus,
    QualityDecision,
    NotificationKind,
    StationCapability,
    TERMINAL_UNIT_STATUSES,
)
from .production_unit import ProductionUnit, UnitHistoryEntry
from .order import Order, OrderStationCounter
from .lot_sequence import LotSequence
from .notification import NotificationEvent

__all__ = [
    "Base",
    "BaseModel",
    # Enums
    "LifecycleStage",
    "UnitStatus",
    "OrderStatus",
    "QualityDecision",
    "NotificationKind",
    "StationCapability",
    "TERMINAL_UNIT_STATUSES",
    # Models
    "ProductionUnit",
    "UnitHistoryEntry",
    "Order",
    "OrderStationCounter",
    "LotSequence",
    "NotificationEvent",
]
