"""
Order Reconciler Service - per-station "started" counters on orders.

This module provides functions for:
- Creating and looking up orders (the planning import boundary)
- Counting a unit as started at a station (record_start), with overflow
  detection against the planned quantity
- Taking a start back when a unit is definitively rejected (rollback_start)
- Moving a start from one order to another when an overproduced unit is
  reassigned (transfer_start)
- Recomputing the counters from the units on record, to verify or repair

Counters live in order_station_counters, one row per (order, station), and
are only ever changed with single UPDATE statements, so concurrent terminals
cannot lose increments.
"""

import logging
from contextlib import nullcontext
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..models import Order, OrderStationCounter, OrderStatus, ProductionUnit, UnitStatus
from ..utils.constants import (
    ERROR_INVALID_NON_NEGATIVE,
    ERROR_REQUIRED_FIELD,
    ERROR_TOO_LONG,
    MAX_ITEM_CODE_LENGTH,
    MAX_ITEM_LENGTH,
    MAX_ORDER_ID_LENGTH,
    UNASSIGNED_ORDER_ID,
)
from .change_feed import ACTION_CREATED, ACTION_UPDATED, COLLECTION_ORDERS, publish_after_commit
from .database import insert_if_missing, session_scope
from .exceptions import CounterDesync, OrderNotFound, PersistenceFailure, ValidationError
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)


def normalize_order_id(order_id: Optional[str]) -> str:
    """Trim and upper-case an order id."""
    return (order_id or "").strip().upper()


def load_order(session, order_id: str) -> Order:
    """Load an Order by (normalised) order id, raising OrderNotFound."""
    order = session.query(Order).filter(Order.order_id == normalize_order_id(order_id)).first()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def queue_order_change(session, order: Order, action: str = ACTION_UPDATED) -> None:
    """Flush and queue the order snapshot for the change feed."""
    session.flush()
    session.expire(order, ["station_counters"])
    publish_after_commit(session, COLLECTION_ORDERS, action, order.order_id, order.to_dict())


def _validate_order_input(order_id: str, planned_quantity, item_code: str, item: str) -> List[str]:
    errors = []
    if not order_id:
        errors.append(f"Order id: {ERROR_REQUIRED_FIELD}")
    elif len(order_id) > MAX_ORDER_ID_LENGTH:
        errors.append(f"Order id: {ERROR_TOO_LONG} (max {MAX_ORDER_ID_LENGTH})")
    elif order_id == UNASSIGNED_ORDER_ID:
        errors.append(f"Order id '{UNASSIGNED_ORDER_ID}' is reserved for overproduction")

    if isinstance(planned_quantity, bool) or not isinstance(planned_quantity, int):
        errors.append("Planned quantity must be a whole number")
    elif planned_quantity < 0:
        errors.append(f"Planned quantity: {ERROR_INVALID_NON_NEGATIVE}")

    if item_code and len(item_code) > MAX_ITEM_CODE_LENGTH:
        errors.append(f"Item code: {ERROR_TOO_LONG} (max {MAX_ITEM_CODE_LENGTH})")
    if item and len(item) > MAX_ITEM_LENGTH:
        errors.append(f"Item: {ERROR_TOO_LONG} (max {MAX_ITEM_LENGTH})")
    return errors


# =============================================================================
# Order CRUD
# =============================================================================


def create_order(
    order_id: str,
    planned_quantity: int,
    item_code: str = "",
    item: str = "",
    *,
    session=None,
) -> Dict[str, Any]:
    """
    Create a planned order.

    Args:
        order_id: Planning order number (trimmed and upper-cased)
        planned_quantity: Units planned per station
        item_code: Product code
        item: Product descriptor
        session: Optional database session (uses session_scope if not provided)

    Returns:
        The order as a dict

    Raises:
        ValidationError: If the input is invalid or the order already exists
        PersistenceFailure: If the database write fails
    """
    order_id = normalize_order_id(order_id)
    errors = _validate_order_input(order_id, planned_quantity, item_code, item)
    if errors:
        raise ValidationError(errors)

    try:
        cm = nullcontext(session) if session is not None else session_scope()
        with cm as session:
            if session.query(Order.id).filter(Order.order_id == order_id).first() is not None:
                raise ValidationError([f"Order '{order_id}' already exists"])

            order = Order(
                order_id=order_id,
                planned_quantity=planned_quantity,
                item_code=(item_code or "").strip(),
                item=(item or "").strip(),
                status=OrderStatus.PENDING.value,
            )
            session.add(order)
            queue_order_change(session, order, ACTION_CREATED)
            result = order.to_dict()
    except IntegrityError as e:
        raise ValidationError([f"Order '{order_id}' already exists"]) from e
    except SQLAlchemyError as e:
        log_operation(
            logger, "create_order", "error", level=logging.ERROR, order_id=order_id, error=str(e)
        )
        raise PersistenceFailure(f"Failed to create order {order_id}: {e}", e) from e

    log_operation(
        logger, "create_order", "success", order_id=order_id, planned_quantity=planned_quantity
    )
    return result


def get_order(order_id: str, *, session=None) -> Dict[str, Any]:
    """
    Get an order by order id.

    Raises:
        OrderNotFound: If the order doesn't exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return load_order(session, order_id).to_dict()


def list_orders(*, status: Optional[OrderStatus] = None, session=None) -> List[Dict[str, Any]]:
    """List orders, optionally filtered by status, ordered by order id."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(Order)
        if status is not None:
            query = query.filter(Order.status == OrderStatus(status).value)
        return [order.to_dict() for order in query.order_by(Order.order_id).all()]


def set_order_status(order_id: str, status: OrderStatus, *, session=None) -> Dict[str, Any]:
    """
    Change the status of an order.

    Raises:
        ValidationError: If the status is unknown
        OrderNotFound: If the order doesn't exist
        PersistenceFailure: If the database write fails
    """
    try:
        status = OrderStatus(status)
    except ValueError:
        raise ValidationError([f"Unknown order status: {status}"])

    try:
        cm = nullcontext(session) if session is not None else session_scope()
        with cm as session:
            order = load_order(session, order_id)
            previous = order.status
            order.status = status.value
            queue_order_change(session, order)
            result = order.to_dict()
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"Failed to update order {order_id}: {e}", e) from e

    log_operation(
        logger,
        "set_order_status",
        "success",
        order_id=result["order_id"],
        previous_status=previous,
        new_status=status.value,
    )
    return result


# =============================================================================
# Counters
# =============================================================================


def _counter_filter(order: Order, station: str):
    return (OrderStationCounter.order_pk == order.id, OrderStationCounter.station == station)


def _read_counter(session, order: Order, station: str) -> int:
    value = session.execute(
        select(OrderStationCounter.started).where(*_counter_filter(order, station))
    ).scalar()
    return value or 0


def _increment(session, order: Order, station: str) -> int:
    insert_if_missing(
        session,
        OrderStationCounter,
        {"order_pk": order.id, "station": station, "started": 0},
        index_elements=["order_pk", "station"],
    )
    session.execute(
        update(OrderStationCounter)
        .where(*_counter_filter(order, station))
        .values(started=OrderStationCounter.started + 1)
        .execution_options(synchronize_session="fetch")
    )
    return _read_counter(session, order, station)


def _decrement(session, order: Order, station: str) -> int:
    session.execute(
        update(OrderStationCounter)
        .where(*_counter_filter(order, station))
        .values(
            started=case(
                (OrderStationCounter.started > 0, OrderStationCounter.started - 1),
                else_=0,
            )
        )
        .execution_options(synchronize_session="fetch")
    )
    return _read_counter(session, order, station)


def record_start(order_id: str, station: str, *, session) -> Dict[str, Any]:
    """
    Count one unit as started for an order at a station.

    The counter row is created on first use and incremented atomically.

    Args:
        order_id: Order the unit is started for
        station: Station the unit is started at
        session: Active database session (required)

    Returns:
        Dict with keys:
            - "started" (int): counter value after the increment
            - "overflow" (bool): True when started exceeds the planned quantity

    Raises:
        OrderNotFound: If the order doesn't exist
    """
    order = load_order(session, order_id)
    started = _increment(session, order, station)
    overflow = started > order.planned_quantity
    queue_order_change(session, order)

    log_operation(
        logger,
        "record_start",
        "overflow" if overflow else "success",
        level=logging.DEBUG,
        order_id=order.order_id,
        station=station,
        started=started,
        planned_quantity=order.planned_quantity,
    )
    return {"started": started, "overflow": overflow}


def rollback_start(order_id: str, station: str, *, session) -> int:
    """
    Take back one start for an order at a station, never going below zero.

    Args:
        order_id: Order the unit was started for
        station: Station the unit was started at
        session: Active database session (required)

    Returns:
        Counter value after the decrement

    Raises:
        OrderNotFound: If the order doesn't exist
    """
    order = load_order(session, order_id)
    before = _read_counter(session, order, station)
    started = _decrement(session, order, station)
    queue_order_change(session, order)

    if before == 0:
        log_operation(
            logger,
            "rollback_start",
            "already_zero",
            level=logging.WARNING,
            order_id=order.order_id,
            station=station,
        )
    else:
        log_operation(
            logger,
            "rollback_start",
            "success",
            level=logging.DEBUG,
            order_id=order.order_id,
            station=station,
            started=started,
        )
    return started


def transfer_start(
    from_order_id: str, to_order_id: str, station: str, *, session
) -> Dict[str, Any]:
    """
    Move one start at a station from one order to another.

    Used when an overproduced unit is reassigned to a real order.

    Returns:
        Dict with the counter values after the move:
            - "from_started" (int)
            - "to_started" (int)
            - "overflow" (bool): the target order is now over its plan
    """
    from_started = rollback_start(from_order_id, station, session=session)
    target = record_start(to_order_id, station, session=session)
    if target["overflow"]:
        log_operation(
            logger,
            "transfer_start",
            "target_overflow",
            level=logging.WARNING,
            from_order_id=from_order_id,
            to_order_id=to_order_id,
            station=station,
            started=target["started"],
        )
    return {
        "from_started": from_started,
        "to_started": target["started"],
        "overflow": target["overflow"],
    }


def get_started_counts(order_id: str, *, session=None) -> Dict[str, int]:
    """
    Get the started counters of an order.

    Returns:
        Mapping of station -> units started there

    Raises:
        OrderNotFound: If the order doesn't exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = load_order(session, order_id)
        rows = session.execute(
            select(OrderStationCounter.station, OrderStationCounter.started).where(
                OrderStationCounter.order_pk == order.id
            )
        ).all()
        return {station: started for station, started in rows}


# =============================================================================
# Verification
# =============================================================================


def compute_expected_counts(order_id: str, *, session) -> Dict[str, int]:
    """
    Recompute an order's counters from the units on record.

    A unit counts for an order at its origin station when:
    - it carries the order id and has not been rejected (a rejection takes
      the start back), or
    - it was started for the order, overflowed and still carries the
      unassigned sentinel (those starts are never taken back)
    """
    order = load_order(session, order_id)
    expected: Dict[str, int] = {}

    owned = (
        session.query(ProductionUnit.origin_station, func.count(ProductionUnit.id))
        .filter(
            ProductionUnit.order_id == order.order_id,
            ProductionUnit.status != UnitStatus.REJECTED.value,
        )
        .group_by(ProductionUnit.origin_station)
        .all()
    )
    overflowed = (
        session.query(ProductionUnit.origin_station, func.count(ProductionUnit.id))
        .filter(
            ProductionUnit.order_id == UNASSIGNED_ORDER_ID,
            ProductionUnit.source_order_id == order.order_id,
        )
        .group_by(ProductionUnit.origin_station)
        .all()
    )
    for station, count in list(owned) + list(overflowed):
        expected[station] = expected.get(station, 0) + count
    return expected


def _differences(stored: Dict[str, int], expected: Dict[str, int]) -> List[str]:
    return sorted(
        station
        for station in set(stored) | set(expected)
        if stored.get(station, 0) != expected.get(station, 0)
    )


def verify_order_counters(order_id: str, *, session=None) -> Dict[str, int]:
    """
    Check that an order's stored counters match its units.

    Returns:
        The expected counters (station -> count) when they match

    Raises:
        OrderNotFound: If the order doesn't exist
        CounterDesync: If any station differs
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        stored = get_started_counts(order_id, session=session)
        expected = compute_expected_counts(order_id, session=session)

    if _differences(stored, expected):
        log_operation(
            logger,
            "verify_order_counters",
            "desync",
            level=logging.WARNING,
            order_id=normalize_order_id(order_id),
            stored=stored,
            expected=expected,
        )
        raise CounterDesync(normalize_order_id(order_id), stored, expected)

    log_operation(
        logger, "verify_order_counters", "in_sync", order_id=normalize_order_id(order_id)
    )
    return expected


def repair_order_counters(order_id: str, *, session=None) -> Dict[str, Any]:
    """
    Overwrite an order's counters with the values recomputed from its units.

    Returns:
        Dict with keys:
            - "counters" (dict): station -> count after the repair
            - "changed" (list): stations whose counter was corrected

    Raises:
        OrderNotFound: If the order doesn't exist
        PersistenceFailure: If the database write fails
    """
    try:
        cm = nullcontext(session) if session is not None else session_scope()
        with cm as session:
            order = load_order(session, order_id)
            stored = get_started_counts(order_id, session=session)
            expected = compute_expected_counts(order_id, session=session)
            changed = _differences(stored, expected)

            for station in changed:
                insert_if_missing(
                    session,
                    OrderStationCounter,
                    {"order_pk": order.id, "station": station, "started": 0},
                    index_elements=["order_pk", "station"],
                )
                session.execute(
                    update(OrderStationCounter)
                    .where(*_counter_filter(order, station))
                    .values(started=expected.get(station, 0))
                    .execution_options(synchronize_session="fetch")
                )

            if changed:
                queue_order_change(session, order)
            stations = set(stored) | set(expected)
            counters = {station: expected.get(station, 0) for station in stations}
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"Failed to repair counters for {order_id}: {e}", e) from e

    log_operation(
        logger,
        "repair_order_counters",
        "repaired" if changed else "in_sync",
        order_id=normalize_order_id(order_id),
        changed=changed,
    )
    return {"counters": counters, "changed": changed}
