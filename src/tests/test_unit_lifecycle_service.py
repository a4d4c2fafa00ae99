"""Tests for the unit lifecycle: start, quality decisions, reassignment."""

from datetime import timedelta

import pytest

from lot_tracker.models import LotSequence, NotificationEvent, ProductionUnit
from lot_tracker.services import unit_lifecycle_service
from lot_tracker.services.change_feed import get_change_feed
from lot_tracker.services.exceptions import (
    AllocationCollision,
    OrderNotFound,
    UnitAlreadyTerminal,
    UnitNotFound,
    ValidationError,
)
from lot_tracker.services.notification_service import list_notifications
from lot_tracker.services.order_reconciler_service import (
    create_order,
    get_order,
    get_started_counts,
    set_order_status,
    verify_order_counters,
)
from lot_tracker.services.routing import RoutingConfig
from lot_tracker.services.unit_lifecycle_service import (
    get_unit,
    get_unit_history,
    list_units,
    reassign_overproduced_unit,
    start_production,
    submit_quality_decision,
)


def _start_one(order_id, station, when, **kwargs):
    result = start_production(order_id, station, when=when, **kwargs)
    return result["units"][0]


class TestStartProduction:
    def test_start_creates_active_unit(self, test_db, flange_order, now):
        result = start_production("ORD-1001", "bh11", actor="J. Smit", when=now)

        [unit] = result["units"]
        assert unit["lot_number"] == "402511411400001"
        assert unit["order_id"] == "ORD-1001"
        assert unit["source_order_id"] == "ORD-1001"
        assert unit["origin_station"] == "BH11"
        assert unit["current_station"] == "BH11"
        assert unit["lifecycle_stage"] == "Active"
        assert unit["status"] == "active"
        assert unit["item"] == "FL-Flange-100"
        assert unit["is_overproduction"] is False
        assert [h["action"] for h in unit["history"]] == ["Production started"]
        assert unit["history"][0]["actor"] == "J. Smit"
        assert result["overproduced"] == []

    def test_start_updates_order(self, test_db, flange_order, now):
        result = start_production("ORD-1001", "BH11", count=2, when=now)

        order = result["order"]
        assert order["status"] == "in_progress"
        assert order["active_lot_number"] == "402511411400002"
        assert order["actual_start"] is not None
        assert order["started_at_station"] == {"BH11": 2}

    def test_sixth_start_is_overproduction(self, test_db, flange_order, now):
        for _ in range(5):
            assert start_production("ORD-1001", "BH11", when=now)["overproduced"] == []

        result = start_production("ORD-1001", "BH11", when=now)

        [unit] = result["units"]
        assert unit["is_overproduction"] is True
        assert unit["order_id"] == "NOG_TE_BEPALEN"
        assert unit["source_order_id"] == "ORD-1001"
        assert "6 started, 5 planned" in unit["history"][0]["notes"]
        assert result["overproduced"] == [unit["lot_number"]]
        assert get_started_counts("ORD-1001") == {"BH11": 6}

        [notification] = list_notifications(kind="overproduction")
        assert notification["related_order"] == "ORD-1001"
        assert notification["related_lot"] == unit["lot_number"]

    def test_batch_emits_one_notification(self, test_db, flange_order, now):
        result = start_production("ORD-1001", "BH11", count=7, when=now)

        flags = [unit["is_overproduction"] for unit in result["units"]]
        assert flags == [False] * 5 + [True] * 2
        assert len(result["overproduced"]) == 2
        assert len(list_notifications()) == 1
        assert len({unit["lot_number"] for unit in result["units"]}) == 7

    def test_counters_are_per_station(self, test_db, flange_order, now):
        start_production("ORD-1001", "BH11", count=5, when=now)
        result = start_production("ORD-1001", "BH16", count=5, when=now)
        assert result["overproduced"] == []
        assert get_started_counts("ORD-1001") == {"BH11": 5, "BH16": 5}

    def test_missing_order_raises(self, test_db, now):
        with pytest.raises(OrderNotFound):
            start_production("ORD-404", "BH11", when=now)

    @pytest.mark.parametrize("status", ["cancelled", "completed"])
    def test_closed_order_rejected(self, test_db, flange_order, now, status):
        set_order_status("ORD-1001", status)
        with pytest.raises(ValidationError, match=status):
            start_production("ORD-1001", "BH11", when=now)

    @pytest.mark.parametrize(
        "order_id, station, count",
        [
            ("", "BH11", 1),
            ("ORD-1001", "  ", 1),
            ("ORD-1001", "BH11", 0),
            ("ORD-1001", "BH11", "2"),
        ],
    )
    def test_invalid_input_rejected(self, test_db, flange_order, now, order_id, station, count):
        with pytest.raises(ValidationError):
            start_production(order_id, station, count, when=now)

    def test_manual_lot_number(self, test_db, flange_order, now):
        unit = _start_one("ORD-1001", "BH11", now, manual_lot_number=" MAN-001 ")
        assert unit["lot_number"] == "MAN-001"

        with pytest.raises(AllocationCollision):
            start_production("ORD-1001", "BH11", when=now, manual_lot_number="MAN-001")

    def test_manual_lot_number_requires_single_unit(self, test_db, flange_order, now):
        with pytest.raises(ValidationError):
            start_production("ORD-1001", "BH11", 2, when=now, manual_lot_number="MAN-002")

    def test_failure_rolls_back_whole_start(self, test_db, flange_order, now, monkeypatch):
        original = unit_lifecycle_service.record_start
        calls = []

        def failing_record_start(order_id, station, *, session):
            calls.append(station)
            if len(calls) == 2:
                raise RuntimeError("terminal lost connection")
            return original(order_id, station, session=session)

        monkeypatch.setattr(unit_lifecycle_service, "record_start", failing_record_start)
        received = []
        get_change_feed().subscribe("production_units", received.append)

        with pytest.raises(RuntimeError):
            start_production("ORD-1001", "BH11", count=3, when=now)

        session = test_db()
        assert session.query(ProductionUnit).count() == 0
        assert session.query(LotSequence).count() == 0
        assert get_started_counts("ORD-1001") == {}
        assert get_order("ORD-1001")["status"] == "pending"
        assert received == []


class TestApproval:
    def test_flange_route_to_finished(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH11", now)["lot_number"]

        unit = submit_quality_decision(lot, "Approved", actor="QA")
        assert (unit["current_station"], unit["lifecycle_stage"]) == ("MAZAK", "Mazak")
        assert unit["last_station"] == "BH11"

        unit = submit_quality_decision(lot, "Approved")
        assert (unit["current_station"], unit["lifecycle_stage"]) == ("BM01", "Eindinspectie")
        assert unit["status"] == "active"

        unit = submit_quality_decision(lot, "Approved")
        assert (unit["current_station"], unit["lifecycle_stage"]) == ("GEREED", "Finished")
        assert unit["status"] == "completed"

        actions = [entry["action"] for entry in unit["history"]]
        assert actions == [
            "Production started",
            "Approved: BH11 -> MAZAK",
            "Approved: MAZAK -> BM01",
            "Approved: BM01 -> GEREED",
        ]

        with pytest.raises(UnitAlreadyTerminal):
            submit_quality_decision(lot, "Approved")
        assert len(get_unit_history(lot)) == 4

    def test_finishing_group_routes_to_nabewerking(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH16", now)["lot_number"]
        unit = submit_quality_decision(lot, "Approved")
        assert unit["current_station"] == "NABEWERKING"
        assert unit["lifecycle_stage"] == "Nabewerking"

    def test_non_flange_item_routes_to_nabewerking(self, test_db, bracket_order, now):
        lot = _start_one("ORD-2002", "BH12", now)["lot_number"]
        assert submit_quality_decision(lot, "Approved")["current_station"] == "NABEWERKING"

    def test_unknown_station_keeps_unit_in_place(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH99", now)["lot_number"]

        unit = submit_quality_decision(lot, "Approved")

        assert unit["current_station"] == "BH99"
        assert unit["lifecycle_stage"] == "Active"
        assert unit["status"] == "active"
        last = unit["history"][-1]
        assert last["action"] == "Routing undefined"
        assert "BH99" in last["notes"]

    def test_injected_routing_config(self, test_db, flange_order, now):
        config = RoutingConfig.from_groups(finishing_direct=["BH99"])
        lot = _start_one("ORD-1001", "BH99", now)["lot_number"]
        unit = submit_quality_decision(lot, "Approved", routing_config=config)
        assert unit["current_station"] == "NABEWERKING"


class TestRejections:
    def test_temp_rejection_holds_unit(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH11", now)["lot_number"]
        later = now + timedelta(hours=2)

        unit = submit_quality_decision(
            lot, "TempRejected", reasons=["Porosity", " "], notes="check wall", when=later
        )

        assert unit["status"] == "held"
        assert unit["lifecycle_stage"] == "Held"
        assert unit["current_station"] == "BH11"
        assert unit["inspection"]["result"] == "TempRejected"
        assert unit["inspection"]["reasons"] == ["Porosity"]
        assert unit["history"][-1]["action"] == "Temporarily rejected"
        assert unit["history"][-1]["notes"] == "check wall"

    def test_held_unit_can_be_approved(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH11", now)["lot_number"]
        submit_quality_decision(lot, "TempRejected", reasons="Burr")

        unit = submit_quality_decision(lot, "Approved")

        assert unit["current_station"] == "MAZAK"
        assert unit["status"] == "active"

    def test_rejection_takes_start_back(self, test_db, flange_order, now):
        result = start_production("ORD-1001", "BH11", 3, when=now)
        lots = [u["lot_number"] for u in result["units"]]

        unit = submit_quality_decision(lots[0], "Rejected", reasons=["Crack"])

        assert unit["current_station"] == "AFKEUR"
        assert unit["last_station"] == "BH11"
        assert unit["lifecycle_stage"] == "Rejected"
        assert unit["status"] == "rejected"
        assert unit["inspection"]["reasons"] == ["Crack"]
        assert get_started_counts("ORD-1001") == {"BH11": 2}
        assert verify_order_counters("ORD-1001") == {"BH11": 2}

    def test_rejecting_held_unit_takes_start_back(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH11", now)["lot_number"]
        submit_quality_decision(lot, "Approved")
        submit_quality_decision(lot, "TempRejected")
        submit_quality_decision(lot, "Rejected")

        # The start is taken back at the origin station, not the current one
        assert get_started_counts("ORD-1001") == {"BH11": 0}

    def test_rejecting_overproduced_unit_keeps_counter(self, test_db, flange_order, now):
        result = start_production("ORD-1001", "BH11", count=6, when=now)
        extra = result["overproduced"][0]

        submit_quality_decision(extra, "Rejected")

        assert get_started_counts("ORD-1001") == {"BH11": 6}
        assert verify_order_counters("ORD-1001") == {"BH11": 6}

    def test_rejected_unit_is_terminal(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH11", now)["lot_number"]
        submit_quality_decision(lot, "Rejected")
        with pytest.raises(UnitAlreadyTerminal):
            submit_quality_decision(lot, "TempRejected")

    def test_one_history_entry_per_decision(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH11", now)["lot_number"]
        for decision in ["TempRejected", "Approved", "TempRejected", "Rejected"]:
            before = len(get_unit_history(lot))
            submit_quality_decision(lot, decision)
            assert len(get_unit_history(lot)) == before + 1

    def test_unknown_decision_rejected(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH11", now)["lot_number"]
        with pytest.raises(ValidationError, match="Unknown decision"):
            submit_quality_decision(lot, "Maybe")

    def test_unknown_lot_raises(self, test_db):
        with pytest.raises(UnitNotFound):
            submit_quality_decision("402511411409999", "Approved")


class TestReassignment:
    def test_reassign_overproduced_unit(self, test_db, flange_order, bracket_order, now):
        result = start_production("ORD-1001", "BH11", count=6, when=now)
        extra = result["overproduced"][0]

        unit = reassign_overproduced_unit(extra, " ord-2002 ", actor="Planner")

        assert unit["order_id"] == "ORD-2002"
        assert unit["source_order_id"] == "ORD-1001"
        assert unit["is_overproduction"] is False
        assert unit["note"] == "Manually reassigned from NOG_TE_BEPALEN to ORD-2002 by Planner"
        assert unit["history"][-1]["action"] == "Reassigned to order ORD-2002"

        assert get_started_counts("ORD-1001") == {"BH11": 5}
        assert get_started_counts("ORD-2002") == {"BH11": 1}
        assert verify_order_counters("ORD-1001") == {"BH11": 5}
        assert verify_order_counters("ORD-2002") == {"BH11": 1}

    def test_reassigned_unit_rejection_rolls_back_target(
        self, test_db, flange_order, bracket_order, now
    ):
        extra = start_production("ORD-1001", "BH11", count=6, when=now)["overproduced"][0]
        reassign_overproduced_unit(extra, "ORD-2002")

        submit_quality_decision(extra, "Rejected")

        assert get_started_counts("ORD-2002") == {"BH11": 0}
        assert verify_order_counters("ORD-2002") == {}

    def test_regular_unit_cannot_be_reassigned(self, test_db, flange_order, bracket_order, now):
        lot = _start_one("ORD-1001", "BH11", now)["lot_number"]
        with pytest.raises(ValidationError, match="not overproduced"):
            reassign_overproduced_unit(lot, "ORD-2002")

    def test_rejected_unit_cannot_be_reassigned(self, test_db, flange_order, bracket_order, now):
        extra = start_production("ORD-1001", "BH11", count=6, when=now)["overproduced"][0]
        submit_quality_decision(extra, "Rejected")
        with pytest.raises(ValidationError, match="rejected"):
            reassign_overproduced_unit(extra, "ORD-2002")

    def test_unknown_target_order(self, test_db, flange_order, now):
        extra = start_production("ORD-1001", "BH11", count=6, when=now)["overproduced"][0]
        with pytest.raises(OrderNotFound):
            reassign_overproduced_unit(extra, "ORD-404")
        assert get_unit(extra)["order_id"] == "NOG_TE_BEPALEN"
        assert get_started_counts("ORD-1001") == {"BH11": 6}

    @pytest.mark.parametrize("target", ["", "nog_te_bepalen"])
    def test_invalid_target_rejected(self, test_db, flange_order, now, target):
        extra = start_production("ORD-1001", "BH11", count=6, when=now)["overproduced"][0]
        with pytest.raises(ValidationError):
            reassign_overproduced_unit(extra, target)


class TestQueries:
    def test_list_units_filters(self, test_db, flange_order, bracket_order, now):
        start_production("ORD-1001", "BH11", count=6, when=now)
        start_production("ORD-2002", "BH16", count=2, when=now)
        lot = list_units(station="BH16")[0]["lot_number"]
        submit_quality_decision(lot, "TempRejected")

        assert len(list_units()) == 8
        assert len(list_units(station="bh11")) == 6
        assert len(list_units(order_id="ORD-1001")) == 5
        assert len(list_units(overproduction=True)) == 1
        assert [u["lot_number"] for u in list_units(status="held")] == [lot]
        assert len(list_units(stage="Active")) == 7
        assert len(list_units(limit=3)) == 3

    def test_get_unit_includes_history(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH11", now)["lot_number"]
        unit = get_unit(f" {lot} ")
        assert unit["lot_number"] == lot
        assert len(unit["history"]) == 1

    def test_notification_rows_match_overproduction(self, test_db, flange_order, now):
        start_production("ORD-1001", "BH11", count=5, when=now)
        start_production("ORD-1001", "BH11", count=1, when=now)
        start_production("ORD-1001", "BH11", count=1, when=now)

        session = test_db()
        assert session.query(NotificationEvent).count() == 2


class TestChangeEvents:
    def test_start_publishes_units_and_order(self, test_db, flange_order, now):
        units, orders = [], []
        feed = get_change_feed()
        feed.subscribe("production_units", units.append)
        feed.subscribe("orders", orders.append)

        start_production("ORD-1001", "BH11", count=2, when=now)

        assert [(c.action, c.key) for c in units] == [
            ("created", "402511411400001"),
            ("created", "402511411400002"),
        ]
        assert orders[-1].key == "ORD-1001"
        assert orders[-1].data["started_at_station"] == {"BH11": 2}

    def test_decision_publishes_update(self, test_db, flange_order, now):
        lot = _start_one("ORD-1001", "BH11", now)["lot_number"]
        units = []
        get_change_feed().subscribe("production_units", units.append)

        submit_quality_decision(lot, "Approved")

        [change] = units
        assert change.action == "updated"
        assert change.data["current_station"] == "MAZAK"


def test_create_order_then_start_with_lowercase_id(test_db, now):
    create_order("ord-77", 1)
    unit = _start_one("ord-77", "BH12", now)
    assert unit["order_id"] == "ORD-77"


class TestConcurrentStarts:
    """Several terminals starting on the same order and station at once."""

    @pytest.fixture
    def file_db(self, tmp_path, monkeypatch):
        from lot_tracker.services.database import close_connections, init_database

        monkeypatch.setenv("LOT_TRACKER_DATABASE_URL", f"sqlite:///{tmp_path / 'lots.db'}")
        close_connections()
        init_database()
        yield
        close_connections()

    def test_parallel_starts_keep_lots_unique_and_counter_exact(self, file_db, now):
        import threading

        create_order("ORD-1001", 5, item_code="FL100", item="FL-Flange-100")
        results, errors = [], []
        lock = threading.Lock()

        def terminal():
            try:
                for _ in range(5):
                    [unit] = start_production("ORD-1001", "BH11", when=now)["units"]
                    with lock:
                        results.append(unit)
            except Exception as exc:
                with lock:
                    errors.append(exc)

        threads = [threading.Thread(target=terminal) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        lots = [unit["lot_number"] for unit in results]
        assert len(lots) == 40
        assert len(set(lots)) == 40
        assert get_started_counts("ORD-1001") == {"BH11": 40}
        assert sum(unit["is_overproduction"] for unit in results) == 35
        verify_order_counters("ORD-1001")
