"""
Command-line entry point for the Lot Tracker.

Usage Examples:
    # Create the database tables
    lot-tracker init-db

    # Register an order planned for 5 units per station
    lot-tracker create-order ORD-1001 --planned 5 --item "FL-Flange-100"

    # Start 3 units at station BH11
    lot-tracker start ORD-1001 BH11 --count 3 --actor "J. Smit"

    # Submit quality decisions
    lot-tracker decide 402511411400001 Approved
    lot-tracker decide 402511411400002 TempRejected --reason "Porosity"

    # Assign an overproduced unit to another order
    lot-tracker reassign 402511411400006 ORD-1002

    # Send reminders for units held in rework too long
    lot-tracker scan-overdue --days 7

    # Check (and optionally repair) an order's counters
    lot-tracker verify-counters ORD-1001 --repair
"""

import argparse
import json
import logging
import sys
import time

from lot_tracker.models import NotificationKind, QualityDecision
from lot_tracker.services import (
    notification_service,
    order_reconciler_service,
    overdue_rework_service,
    unit_lifecycle_service,
)
from lot_tracker.services.database import initialize_app_database, reset_database
from lot_tracker.services.exceptions import CounterDesync, ServiceError
from lot_tracker.utils.config import get_config
from lot_tracker.utils.constants import DEFAULT_ACTOR

logger = logging.getLogger(__name__)


def init_db_cmd(reset: bool = False) -> int:
    """Create the database tables (optionally dropping all data first)."""
    if reset:
        reset_database(confirm=True)
        print("Database reset")
    print(f"Database ready: {get_config().database_url}")
    return 0


def create_order_cmd(order_id: str, planned: int, item_code: str, item: str) -> int:
    order = order_reconciler_service.create_order(order_id, planned, item_code, item)
    print(f"Created order {order['order_id']} (planned {order['planned_quantity']})")
    return 0


def start_cmd(order_id: str, station: str, count: int, actor: str, lot: str = None) -> int:
    result = unit_lifecycle_service.start_production(
        order_id, station, count, actor, manual_lot_number=lot
    )
    for unit in result["units"]:
        flag = "  OVERPRODUCTION" if unit["is_overproduction"] else ""
        print(f"{unit['lot_number']}  {unit['current_station']}  {unit['order_id']}{flag}")
    counts = result["order"]["started_at_station"]
    print(f"Order {result['order']['order_id']} started at stations: {counts}")
    if result["overproduced"]:
        print(f"WARNING: {len(result['overproduced'])} unit(s) exceeded the planned quantity")
    return 0


def decide_cmd(lot_number: str, decision: str, reasons, notes: str, actor: str) -> int:
    unit = unit_lifecycle_service.submit_quality_decision(
        lot_number, decision, reasons=reasons, notes=notes, actor=actor
    )
    print(
        f"{unit['lot_number']}: {unit['lifecycle_stage']} at {unit['current_station']} "
        f"({unit['status']})"
    )
    last = unit["history"][-1]
    if last["action"] == unit_lifecycle_service.ACTION_ROUTING_UNDEFINED:
        print(f"WARNING: {last['notes']}")
    return 0


def reassign_cmd(lot_number: str, order_id: str, actor: str) -> int:
    unit = unit_lifecycle_service.reassign_overproduced_unit(lot_number, order_id, actor)
    print(f"{unit['lot_number']} reassigned to {unit['order_id']}")
    return 0


def scan_overdue_cmd(days: int, station: str) -> int:
    reminded = overdue_rework_service.scan_overdue_rework(threshold_days=days, station=station)
    for entry in reminded:
        print(f"{entry['lot_number']}  {entry['station']}  held since {entry['held_since']}")
    print(f"{len(reminded)} reminder(s) sent")
    return 0


def monitor_cmd(interval: float, days: int, station: str) -> int:
    """Run the overdue rework monitor until interrupted."""
    monitor = overdue_rework_service.OverdueReworkMonitor(
        interval=interval, threshold_days=days, station=station
    )
    monitor.start()
    print("Monitoring overdue rework (Ctrl+C to stop)...")
    try:
        while monitor.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping monitor...")
    finally:
        monitor.stop()
    return 0


def verify_counters_cmd(order_id: str, repair: bool) -> int:
    try:
        expected = order_reconciler_service.verify_order_counters(order_id)
    except CounterDesync as e:
        print(f"ERROR: {e}")
        if not repair:
            return 2
        result = order_reconciler_service.repair_order_counters(order_id)
        print(f"Repaired stations {', '.join(result['changed'])}: {result['counters']}")
        return 0
    print(f"Counters for {order_id} in sync: {expected}")
    return 0


def show_unit_cmd(lot_number: str, as_json: bool) -> int:
    unit = unit_lifecycle_service.get_unit(lot_number)
    if as_json:
        print(json.dumps(unit, indent=2))
        return 0

    print(f"Lot:        {unit['lot_number']}")
    print(f"Order:      {unit['order_id']} (started for {unit['source_order_id']})")
    print(f"Item:       {unit['item_code']} {unit['item']}")
    print(f"Station:    {unit['current_station']} (origin {unit['origin_station']})")
    print(f"Stage:      {unit['lifecycle_stage']} / {unit['status']}")
    if unit["inspection"]:
        inspection = unit["inspection"]
        reasons = ", ".join(inspection["reasons"]) or "-"
        print(f"Inspection: {inspection['result']} at {inspection['timestamp']} ({reasons})")
    if unit["note"]:
        print(f"Note:       {unit['note']}")
    print("History:")
    for entry in unit["history"]:
        notes = f" - {entry['notes']}" if entry["notes"] else ""
        print(
            f"  {entry['timestamp']}  {entry['station']}  "
            f"{entry['action']} ({entry['actor']}){notes}"
        )
    return 0


def notifications_cmd(kind: str, limit: int) -> int:
    for notification in notification_service.list_notifications(kind=kind, limit=limit):
        print(f"{notification['created_at']}  [{notification['kind']}]  {notification['subject']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all commands."""
    parser = argparse.ArgumentParser(
        prog="lot-tracker",
        description="Production lot tracking for the shop floor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage Examples:", 1)[1],
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    init_parser = subparsers.add_parser("init-db", help="Create the database tables")
    init_parser.add_argument(
        "--reset", action="store_true", help="Drop all data and recreate the tables"
    )

    order_parser = subparsers.add_parser("create-order", help="Register a planned order")
    order_parser.add_argument("order_id", help="Order number")
    order_parser.add_argument(
        "--planned", type=int, required=True, help="Planned units per station"
    )
    order_parser.add_argument("--item-code", default="", help="Product code")
    order_parser.add_argument("--item", default="", help="Product descriptor")

    start_parser = subparsers.add_parser("start", help="Start production of units")
    start_parser.add_argument("order_id", help="Order number")
    start_parser.add_argument("station", help="Station id (e.g. BH11)")
    start_parser.add_argument("-n", "--count", type=int, default=1, help="Units to start")
    start_parser.add_argument("--actor", default=DEFAULT_ACTOR, help="Operator name")
    start_parser.add_argument("--lot", help="Manual lot number (single unit only)")

    decide_parser = subparsers.add_parser("decide", help="Submit a quality decision")
    decide_parser.add_argument("lot_number", help="Lot number")
    decide_parser.add_argument(
        "decision", choices=[d.value for d in QualityDecision], help="Quality decision"
    )
    decide_parser.add_argument(
        "-r", "--reason", dest="reasons", action="append", default=[], help="Reason (repeatable)"
    )
    decide_parser.add_argument("--notes", help="Inspector notes")
    decide_parser.add_argument("--actor", default=DEFAULT_ACTOR, help="Inspector name")

    reassign_parser = subparsers.add_parser(
        "reassign", help="Assign an overproduced unit to a real order"
    )
    reassign_parser.add_argument("lot_number", help="Lot number")
    reassign_parser.add_argument("order_id", help="Target order number")
    reassign_parser.add_argument("--actor", default=DEFAULT_ACTOR, help="Operator name")

    scan_parser = subparsers.add_parser(
        "scan-overdue", help="Send reminders for units held in rework too long"
    )
    scan_parser.add_argument("--days", type=int, help="Threshold in days (default: config)")
    scan_parser.add_argument("--station", help="Only scan this station")

    monitor_parser = subparsers.add_parser(
        "monitor", help="Scan for overdue rework periodically until interrupted"
    )
    monitor_parser.add_argument("--interval", type=float, help="Seconds between scans")
    monitor_parser.add_argument("--days", type=int, help="Threshold in days (default: config)")
    monitor_parser.add_argument("--station", help="Only scan this station")

    verify_parser = subparsers.add_parser(
        "verify-counters", help="Check an order's counters against its units"
    )
    verify_parser.add_argument("order_id", help="Order number")
    verify_parser.add_argument(
        "--repair", action="store_true", help="Overwrite counters that are out of sync"
    )

    show_parser = subparsers.add_parser("show-unit", help="Show a unit and its history")
    show_parser.add_argument("lot_number", help="Lot number")
    show_parser.add_argument("--json", action="store_true", help="Print as JSON")

    notifications_parser = subparsers.add_parser("notifications", help="List notifications")
    notifications_parser.add_argument(
        "--kind", choices=[k.value for k in NotificationKind], help="Notification type"
    )
    notifications_parser.add_argument("--limit", type=int, default=20, help="Maximum entries")

    return parser


def dispatch(args) -> int:
    """Execute the parsed command."""
    if args.command == "init-db":
        return init_db_cmd(args.reset)
    elif args.command == "create-order":
        return create_order_cmd(args.order_id, args.planned, args.item_code, args.item)
    elif args.command == "start":
        return start_cmd(args.order_id, args.station, args.count, args.actor, args.lot)
    elif args.command == "decide":
        return decide_cmd(args.lot_number, args.decision, args.reasons, args.notes, args.actor)
    elif args.command == "reassign":
        return reassign_cmd(args.lot_number, args.order_id, args.actor)
    elif args.command == "scan-overdue":
        return scan_overdue_cmd(args.days, args.station)
    elif args.command == "monitor":
        return monitor_cmd(args.interval, args.days, args.station)
    elif args.command == "verify-counters":
        return verify_counters_cmd(args.order_id, args.repair)
    elif args.command == "show-unit":
        return show_unit_cmd(args.lot_number, args.json)
    elif args.command == "notifications":
        return notifications_cmd(args.kind, args.limit)
    else:
        print(f"Unknown command: {args.command}")
        return 1


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 1

    # Initialize database (required for all operations)
    initialize_app_database()

    try:
        return dispatch(args)
    except ServiceError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"ERROR: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
