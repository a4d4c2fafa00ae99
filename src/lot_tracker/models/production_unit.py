"""
ProductionUnit model for tracking individual lots.

This module contains the ProductionUnit model, which represents one physical
lot moving through the manufacturing stations, and the UnitHistoryEntry
model holding its append-only audit trail.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import TERMINAL_UNIT_STATUSES, LifecycleStage, UnitStatus
from ..utils.constants import UNASSIGNED_ORDER_ID
from ..utils.datetime_utils import utc_now


class ProductionUnit(BaseModel):
    """
    ProductionUnit model for one physical lot.

    Attributes:
        lot_number: Unique lot identifier (allocation key)
        order_id: Owning order id, or UNASSIGNED_ORDER_ID for overproduction
        source_order_id: Order the unit was started for (never changes)
        item_code: Product code
        item: Product descriptor (drives Mazak routing)
        origin_station: Station where the unit was created (never changes)
        current_station: Current routing position
        last_station: Station before the most recent move
        lifecycle_stage: Current processing stage (LifecycleStage value)
        status: Coarse state (UnitStatus value)
        inspection_result: Last quality decision that held or rejected the unit
        inspection_reasons: Reasons given with that decision
        inspection_timestamp: When that decision was recorded
        is_overproduction: True when created beyond the planned quantity
        note: Free-text note (e.g. manual reassignment)
        reminder_sent: Guards the overdue rework notification
    """

    __tablename__ = "production_units"

    lot_number = Column(String(32), nullable=False, unique=True)
    order_id = Column(String(64), nullable=False)
    source_order_id = Column(String(64), nullable=False)
    item_code = Column(String(100), nullable=False, default="")
    item = Column(String(500), nullable=False, default="")

    origin_station = Column(String(50), nullable=False)
    current_station = Column(String(50), nullable=False)
    last_station = Column(String(50), nullable=True)

    lifecycle_stage = Column(String(20), nullable=False, default=LifecycleStage.ACTIVE.value)
    status = Column(String(20), nullable=False, default=UnitStatus.ACTIVE.value)

    inspection_result = Column(String(20), nullable=True)
    inspection_reasons = Column(JSON, nullable=True)
    inspection_timestamp = Column(DateTime, nullable=True)

    is_overproduction = Column(Boolean, nullable=False, default=False)
    note = Column(Text, nullable=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)

    history = relationship(
        "UnitHistoryEntry",
        back_populates="unit",
        order_by="UnitHistoryEntry.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_production_unit_order", "order_id"),
        Index("idx_production_unit_source_order", "source_order_id"),
        Index("idx_production_unit_station", "current_station"),
        Index("idx_production_unit_stage", "lifecycle_stage"),
        CheckConstraint("lot_number <> ''", name="ck_production_unit_lot_not_empty"),
    )

    @property
    def is_terminal(self) -> bool:
        """True once the unit is completed or rejected."""
        return UnitStatus(self.status) in TERMINAL_UNIT_STATUSES

    @property
    def is_unassigned(self) -> bool:
        """True while the unit carries the unassigned order sentinel."""
        return self.order_id == UNASSIGNED_ORDER_ID

    @property
    def inspection(self):
        """The last hold/reject inspection as a dict, or None."""
        if self.inspection_result is None:
            return None
        return {
            "result": self.inspection_result,
            "reasons": list(self.inspection_reasons or []),
            "timestamp": (
                self.inspection_timestamp.isoformat() if self.inspection_timestamp else None
            ),
        }

    def add_history(self, action: str, station: str, actor: str, notes=None):
        """Append one audit entry. Entries are never edited or removed."""
        entry = UnitHistoryEntry(
            action=action,
            station=station,
            actor=actor,
            notes=notes,
            timestamp=utc_now(),
        )
        self.history.append(entry)
        return entry

    def __repr__(self) -> str:
        return (
            f"ProductionUnit(lot_number='{self.lot_number}', order_id='{self.order_id}', "
            f"station='{self.current_station}', stage='{self.lifecycle_stage}')"
        )

    def to_dict(self, include_relationships: bool = False) -> dict:
        """
        Convert production unit to dictionary.

        History is always included, the inspection columns are folded
        into a nested "inspection" record.
        """
        result = super().to_dict(include_relationships=False)
        for key in ("inspection_result", "inspection_reasons", "inspection_timestamp"):
            result.pop(key, None)
        result["inspection"] = self.inspection
        result["history"] = [entry.to_dict() for entry in self.history]
        return result


class UnitHistoryEntry(BaseModel):
    """
    One audit entry in a production unit's history.

    Attributes:
        unit_id: FK to the owning ProductionUnit
        action: What happened (e.g. "Production started")
        station: Station where it happened
        actor: Who did it
        timestamp: When it happened
        notes: Optional operator notes
    """

    __tablename__ = "unit_history"

    unit_id = Column(
        Integer,
        ForeignKey("production_units.id", ondelete="CASCADE"),
        nullable=False,
    )
    action = Column(String(200), nullable=False)
    station = Column(String(50), nullable=True)
    actor = Column(String(200), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utc_now)
    notes = Column(Text, nullable=True)

    unit = relationship("ProductionUnit", back_populates="history")

    __table_args__ = (Index("idx_unit_history_unit", "unit_id"),)

    def to_dict(self, include_relationships: bool = False) -> dict:
        return {
            "action": self.action,
            "station": self.station,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "notes": self.notes,
        }
