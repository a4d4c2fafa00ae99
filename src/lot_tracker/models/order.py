"""
Order models for planned production jobs.

This module contains:
- Order: a planned production job imported from planning
- OrderStationCounter: how many units were started for an order at a station

Counters are stored one row per (order, station) so that the reconciler can
update them with single atomic UPDATE statements instead of rewriting a
mapping on the order.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import OrderStatus


class Order(BaseModel):
    """
    Order model for a planned production job.

    Attributes:
        order_id: Planning order number (unique)
        item_code: Product code to produce
        item: Product descriptor
        planned_quantity: Units planned per station
        status: OrderStatus value
        active_lot_number: Most recently started lot
        actual_start: When production first started
        station_counters: Per-station started counters
    """

    __tablename__ = "orders"

    order_id = Column(String(64), nullable=False, unique=True)
    item_code = Column(String(100), nullable=False, default="")
    item = Column(String(500), nullable=False, default="")
    planned_quantity = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    active_lot_number = Column(String(32), nullable=True)
    actual_start = Column(DateTime, nullable=True)

    station_counters = relationship(
        "OrderStationCounter",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStationCounter.station",
    )

    __table_args__ = (
        Index("idx_order_status", "status"),
        CheckConstraint("planned_quantity >= 0", name="ck_order_planned_non_negative"),
    )

    @property
    def started_at_station(self) -> dict:
        """Mapping of station -> number of units started there."""
        return {counter.station: counter.started for counter in self.station_counters}

    def __repr__(self) -> str:
        return (
            f"Order(order_id='{self.order_id}', planned_quantity={self.planned_quantity}, "
            f"status='{self.status}')"
        )

    def to_dict(self, include_relationships: bool = False) -> dict:
        result = super().to_dict(include_relationships=False)
        result["started_at_station"] = self.started_at_station
        return result


class OrderStationCounter(BaseModel):
    """
    Started-units counter for one (order, station) pair.

    Attributes:
        order_pk: FK to Order.id
        station: Station identifier
        started: Units started at the station for the order (never negative)
    """

    __tablename__ = "order_station_counters"

    order_pk = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    station = Column(String(50), nullable=False)
    started = Column(Integer, nullable=False, default=0)

    order = relationship("Order", back_populates="station_counters")

    __table_args__ = (
        UniqueConstraint("order_pk", "station", name="uq_order_station_counter"),
        CheckConstraint("started >= 0", name="ck_order_station_counter_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"OrderStationCounter(order_pk={self.order_pk}, station='{self.station}', "
            f"started={self.started})"
        )
