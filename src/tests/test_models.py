"""
Tests for the database models.

Covers dictionary conversion, computed properties and table constraints.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from lot_tracker.models import (
    LotSequence,
    Order,
    OrderStationCounter,
    ProductionUnit,
    UnitStatus,
)


def _unit(**overrides):
    values = dict(
        lot_number="402511411400001",
        order_id="ORD-1",
        source_order_id="ORD-1",
        origin_station="BH11",
        current_station="BH11",
    )
    values.update(overrides)
    return ProductionUnit(**values)


class TestProductionUnit:
    def test_defaults_after_insert(self, test_db):
        session = test_db()
        unit = _unit()
        session.add(unit)
        session.commit()

        assert unit.id is not None
        assert len(unit.uuid) == 36
        assert unit.status == "active"
        assert unit.lifecycle_stage == "Active"
        assert unit.is_overproduction is False
        assert unit.reminder_sent is False

    def test_to_dict_folds_inspection_and_history(self, test_db):
        session = test_db()
        unit = _unit(
            inspection_result="TempRejected",
            inspection_reasons=["Porosity"],
            inspection_timestamp=datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc),
        )
        unit.add_history("Production started", "BH11", "Operator")
        session.add(unit)
        session.commit()

        data = unit.to_dict()

        assert "inspection_result" not in data
        assert data["inspection"] == {
            "result": "TempRejected",
            "reasons": ["Porosity"],
            "timestamp": "2025-03-12T10:00:00+00:00",
        }
        [entry] = data["history"]
        assert entry["action"] == "Production started"
        assert entry["station"] == "BH11"
        assert entry["notes"] is None
        assert isinstance(data["created_at"], str)

    def test_inspection_is_none_until_decided(self):
        assert _unit().inspection is None

    @pytest.mark.parametrize(
        "status, terminal",
        [
            (UnitStatus.ACTIVE, False),
            (UnitStatus.HELD, False),
            (UnitStatus.COMPLETED, True),
            (UnitStatus.REJECTED, True),
        ],
    )
    def test_is_terminal(self, status, terminal):
        assert _unit(status=status.value).is_terminal is terminal

    def test_is_unassigned(self):
        assert _unit(order_id="NOG_TE_BEPALEN").is_unassigned
        assert not _unit().is_unassigned

    def test_lot_number_is_unique(self, test_db):
        session = test_db()
        session.add(_unit())
        session.commit()

        session.add(_unit())
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    def test_history_is_ordered(self, test_db):
        session = test_db()
        unit = _unit()
        for action in ["Production started", "Temporarily rejected", "Approved: BH11 -> MAZAK"]:
            unit.add_history(action, "BH11", "QA")
        session.add(unit)
        session.commit()
        session.expire_all()

        reloaded = session.query(ProductionUnit).one()
        assert [entry.action for entry in reloaded.history] == [
            "Production started",
            "Temporarily rejected",
            "Approved: BH11 -> MAZAK",
        ]


class TestOrder:
    def test_to_dict_includes_station_counters(self, test_db):
        session = test_db()
        order = Order(order_id="ORD-1", planned_quantity=5)
        order.station_counters.append(OrderStationCounter(station="BH11", started=3))
        order.station_counters.append(OrderStationCounter(station="BH16", started=1))
        session.add(order)
        session.commit()

        data = order.to_dict()
        assert data["order_id"] == "ORD-1"
        assert data["status"] == "pending"
        assert data["started_at_station"] == {"BH11": 3, "BH16": 1}

    def test_one_counter_per_station(self, test_db):
        session = test_db()
        order = Order(order_id="ORD-1", planned_quantity=5)
        order.station_counters.append(OrderStationCounter(station="BH11"))
        order.station_counters.append(OrderStationCounter(station="BH11"))
        session.add(order)
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    def test_counter_cannot_go_negative(self, test_db):
        session = test_db()
        order = Order(order_id="ORD-1", planned_quantity=5)
        order.station_counters.append(OrderStationCounter(station="BH11", started=-1))
        session.add(order)
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()


class TestLotSequence:
    def test_prefix_is_unique(self, test_db):
        session = test_db()
        session.add(LotSequence(prefix="40251141140"))
        session.add(LotSequence(prefix="40251141140"))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()
