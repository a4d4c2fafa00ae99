"""
Unit Lifecycle Service - creation and quality-gate transitions of production units.

This module provides functions for:
- Starting production of one or more units for an order at a station
- Submitting quality decisions (Approved / TempRejected / Rejected)
- Reassigning overproduced units to a real order
- Querying units and their history

Every operation runs in a single transaction: the unit update, the order
counter update, the history entry and any notification commit or roll back
together. Change events reach subscribers only after the commit.

State machine:

    Active(stage) --Approved--> Active(next stage) | Finished (at BM01)
    Active(stage) --TempRejected--> Held
    Held --Approved--> Active(next stage)
    Active/Held --Rejected--> Rejected

Finished and Rejected are terminal.
"""

import logging
from contextlib import nullcontext
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..models import (
    LifecycleStage,
    NotificationKind,
    OrderStatus,
    ProductionUnit,
    QualityDecision,
    UnitHistoryEntry,
    UnitStatus,
)
from ..utils.constants import (
    DEFAULT_ACTOR,
    ERROR_INVALID_POSITIVE,
    ERROR_REQUIRED_FIELD,
    ERROR_TOO_LONG,
    MAX_NOTES_LENGTH,
    MAX_START_BATCH,
    MAX_STATION_LENGTH,
    STATION_REJECT_AREA,
    UNASSIGNED_ORDER_ID,
)
from ..utils.datetime_utils import utc_now
from .change_feed import (
    ACTION_CREATED,
    ACTION_UPDATED,
    COLLECTION_PRODUCTION_UNITS,
    publish_after_commit,
)
from .database import session_scope
from .exceptions import (
    PersistenceFailure,
    UnitAlreadyTerminal,
    UnitNotFound,
    ValidationError,
)
from .logging_utils import get_service_logger, log_operation
from .lot_number_service import allocate_lot_number, claim_manual_lot_number
from .notification_service import emit_notification
from .order_reconciler_service import (
    load_order,
    normalize_order_id,
    queue_order_change,
    record_start,
    rollback_start,
    transfer_start,
)
from .routing import RoutingConfig, normalize_station, resolve_route

logger = get_service_logger(__name__)

ACTION_PRODUCTION_STARTED = "Production started"
ACTION_APPROVED = "Approved"
ACTION_TEMP_REJECTED = "Temporarily rejected"
ACTION_REJECTED = "Rejected"
ACTION_ROUTING_UNDEFINED = "Routing undefined"
ACTION_REASSIGNED = "Reassigned"


# =============================================================================
# Helpers
# =============================================================================


def _load_unit(session, lot_number: str) -> ProductionUnit:
    lot_number = (lot_number or "").strip()
    unit = session.query(ProductionUnit).filter(ProductionUnit.lot_number == lot_number).first()
    if unit is None:
        raise UnitNotFound(lot_number)
    return unit


def _queue_unit_change(session, unit: ProductionUnit, action: str = ACTION_UPDATED) -> None:
    session.flush()
    publish_after_commit(
        session, COLLECTION_PRODUCTION_UNITS, action, unit.lot_number, unit.to_dict()
    )


def _clean_actor(actor: Optional[str]) -> str:
    return (actor or "").strip() or DEFAULT_ACTOR


def _clean_reasons(reasons) -> List[str]:
    if reasons is None:
        return []
    if isinstance(reasons, str):
        reasons = [reasons]
    return [str(reason).strip() for reason in reasons if str(reason).strip()]


def _check_notes(notes: Optional[str], errors: List[str]) -> None:
    if notes and len(notes) > MAX_NOTES_LENGTH:
        errors.append(f"Notes: {ERROR_TOO_LONG} (max {MAX_NOTES_LENGTH})")


def _persistence_failure(operation: str, error: SQLAlchemyError, **context) -> PersistenceFailure:
    log_operation(logger, operation, "error", level=logging.ERROR, error=str(error), **context)
    return PersistenceFailure(f"{operation} failed: {error}", error)


# =============================================================================
# Start production
# =============================================================================


def start_production(
    order_id: str,
    station: str,
    count: int = 1,
    actor: str = DEFAULT_ACTOR,
    *,
    manual_lot_number: Optional[str] = None,
    when: Optional[datetime] = None,
    session=None,
) -> Dict[str, Any]:
    """
    Start production of units for an order at a station.

    For each unit a lot number is allocated and the order's counter for the
    station is incremented. A unit whose start pushes the counter past the
    planned quantity is flagged as overproduction and carries the
    unassigned order sentinel instead of the order id. One overproduction
    notification is emitted per call when any unit overflowed.

    Args:
        order_id: Order to produce for
        station: Station where the units are created
        count: Number of units to start (default 1)
        actor: Operator starting production
        manual_lot_number: Operator-entered lot number (only with count=1)
        when: Moment of the start, drives the lot prefix (defaults to now, UTC)
        session: Optional database session (uses session_scope if not provided)

    Returns:
        Dict with keys:
            - "units" (List[Dict]): the created units
            - "overproduced" (List[str]): lot numbers flagged as overproduction
            - "order" (Dict): the order after the counters were updated

    Raises:
        ValidationError: If the input is invalid or the order is closed
        OrderNotFound: If the order doesn't exist
        AllocationCollision: If no unique lot number could be allocated
        PersistenceFailure: If the database write fails
    """
    station = normalize_station(station)
    actor = _clean_actor(actor)

    errors = []
    if not normalize_order_id(order_id):
        errors.append(f"Order id: {ERROR_REQUIRED_FIELD}")
    if not station:
        errors.append(f"Station: {ERROR_REQUIRED_FIELD}")
    elif len(station) > MAX_STATION_LENGTH:
        errors.append(f"Station: {ERROR_TOO_LONG} (max {MAX_STATION_LENGTH})")
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        errors.append(f"Count: {ERROR_INVALID_POSITIVE}")
    elif count > MAX_START_BATCH:
        errors.append(f"Count: at most {MAX_START_BATCH} units per start")
    elif manual_lot_number is not None and count != 1:
        errors.append("A manual lot number can only be used when starting a single unit")
    if errors:
        raise ValidationError(errors)

    when = when or utc_now()

    try:
        cm = nullcontext(session) if session is not None else session_scope()
        with cm as session:
            order = load_order(session, order_id)
            if order.status in (OrderStatus.CANCELLED.value, OrderStatus.COMPLETED.value):
                raise ValidationError(
                    [f"Order '{order.order_id}' is {order.status} and cannot start production"]
                )

            units = []
            overproduced = []
            for _ in range(count):
                if manual_lot_number is not None:
                    lot_number = claim_manual_lot_number(manual_lot_number, session=session)
                else:
                    lot_number = allocate_lot_number(station, when, session=session)

                counter = record_start(order.order_id, station, session=session)
                overflow = counter["overflow"]

                unit = ProductionUnit(
                    lot_number=lot_number,
                    order_id=UNASSIGNED_ORDER_ID if overflow else order.order_id,
                    source_order_id=order.order_id,
                    item_code=order.item_code,
                    item=order.item,
                    origin_station=station,
                    current_station=station,
                    lifecycle_stage=LifecycleStage.ACTIVE.value,
                    status=UnitStatus.ACTIVE.value,
                    is_overproduction=overflow,
                    reminder_sent=False,
                )
                note = None
                if overflow:
                    note = (
                        f"Overproduction on order {order.order_id}: "
                        f"{counter['started']} started, {order.planned_quantity} planned"
                    )
                    overproduced.append(lot_number)
                unit.add_history(ACTION_PRODUCTION_STARTED, station, actor, notes=note)
                session.add(unit)
                _queue_unit_change(session, unit, ACTION_CREATED)
                units.append(unit)

            if order.status == OrderStatus.PENDING.value:
                order.status = OrderStatus.IN_PROGRESS.value
            order.active_lot_number = units[-1].lot_number
            if order.actual_start is None:
                order.actual_start = when
            queue_order_change(session, order)

            if overproduced:
                emit_notification(
                    NotificationKind.OVERPRODUCTION,
                    f"Overproduction on order {order.order_id}",
                    (
                        f"{len(overproduced)} unit(s) started at {station} beyond the planned "
                        f"quantity of {order.planned_quantity}: {', '.join(overproduced)}. "
                        f"Reassign them to a real order."
                    ),
                    related_lot=overproduced[0],
                    related_order=order.order_id,
                    session=session,
                )

            result = {
                "units": [unit.to_dict() for unit in units],
                "overproduced": overproduced,
                "order": order.to_dict(),
            }
    except SQLAlchemyError as e:
        raise _persistence_failure(
            "start_production", e, order_id=order_id, station=station
        ) from e

    log_operation(
        logger,
        "start_production",
        "overproduction" if overproduced else "success",
        level=logging.WARNING if overproduced else logging.INFO,
        order_id=result["order"]["order_id"],
        station=station,
        count=count,
        lot_numbers=[unit["lot_number"] for unit in result["units"]],
        actor=actor,
    )
    return result


# =============================================================================
# Quality decisions
# =============================================================================


def _record_inspection(unit: ProductionUnit, decision: QualityDecision, reasons, when) -> None:
    unit.inspection_result = decision.value
    unit.inspection_reasons = list(reasons)
    unit.inspection_timestamp = when


def _move(unit: ProductionUnit, station: str, stage: LifecycleStage, status: UnitStatus) -> None:
    unit.last_station = unit.current_station
    unit.current_station = station
    unit.lifecycle_stage = stage.value
    unit.status = status.value


def _apply_approval(unit: ProductionUnit, actor: str, notes, routing_config) -> str:
    target = resolve_route(unit.current_station, unit.item, routing_config)
    if target is None:
        unit.add_history(
            ACTION_ROUTING_UNDEFINED,
            unit.current_station,
            actor,
            notes=f"No routing rule for station {unit.current_station}; unit kept in place",
        )
        log_operation(
            logger,
            "submit_quality_decision",
            "routing_undefined",
            level=logging.WARNING,
            lot_number=unit.lot_number,
            station=unit.current_station,
            item=unit.item,
        )
        return "routing_undefined"

    status = UnitStatus.COMPLETED if target.is_terminal else UnitStatus.ACTIVE
    from_station = unit.current_station
    _move(unit, target.station, target.stage, status)
    unit.add_history(
        f"{ACTION_APPROVED}: {from_station} -> {target.station}", from_station, actor, notes
    )
    return "completed" if target.is_terminal else "routed"


def _apply_temp_rejection(unit: ProductionUnit, actor: str, notes, reasons, when) -> str:
    unit.lifecycle_stage = LifecycleStage.HELD.value
    unit.status = UnitStatus.HELD.value
    unit.reminder_sent = False
    _record_inspection(unit, QualityDecision.TEMP_REJECTED, reasons, when)
    unit.add_history(ACTION_TEMP_REJECTED, unit.current_station, actor, notes)
    return "held"


def _apply_rejection(session, unit: ProductionUnit, actor: str, notes, reasons, when) -> str:
    from_station = unit.current_station
    _move(unit, STATION_REJECT_AREA, LifecycleStage.REJECTED, UnitStatus.REJECTED)
    _record_inspection(unit, QualityDecision.REJECTED, reasons, when)
    unit.add_history(ACTION_REJECTED, from_station, actor, notes)

    # Overproduced units were never counted on a real order's plan
    if not unit.is_unassigned:
        rollback_start(unit.order_id, unit.origin_station, session=session)
    return "rejected"


def submit_quality_decision(
    lot_number: str,
    decision: QualityDecision,
    reasons: Optional[List[str]] = None,
    notes: Optional[str] = None,
    actor: str = DEFAULT_ACTOR,
    *,
    routing_config: Optional[RoutingConfig] = None,
    when: Optional[datetime] = None,
    session=None,
) -> Dict[str, Any]:
    """
    Apply a quality gate decision to a unit.

    - Approved: the unit moves to the next station given by the routing
      rules (completed when it leaves final inspection). When no rule
      matches, the unit stays where it is and a "Routing undefined" history
      entry is written.
    - TempRejected: the unit is held for rework at its current station.
    - Rejected: the unit moves to the reject area; the start is taken back
      from its order's counter at the origin station (not for overproduced
      units still carrying the unassigned sentinel).

    Exactly one history entry is appended per call.

    Args:
        lot_number: Unit to decide on
        decision: Quality decision
        reasons: Reasons for a (temporary) rejection
        notes: Optional inspector notes
        actor: Inspector submitting the decision
        routing_config: Routing config override (defaults to the plant layout)
        when: Moment of the decision (defaults to now, UTC)
        session: Optional database session (uses session_scope if not provided)

    Returns:
        The unit as a dict after the decision

    Raises:
        ValidationError: If the decision is unknown or the notes too long
        UnitNotFound: If no unit has this lot number
        UnitAlreadyTerminal: If the unit is already completed or rejected
        PersistenceFailure: If the database write fails
    """
    try:
        decision = QualityDecision(decision)
    except ValueError:
        raise ValidationError(
            [
                f"Unknown decision '{decision}'. Expected one of: "
                + ", ".join(d.value for d in QualityDecision)
            ]
        )
    errors = []
    _check_notes(notes, errors)
    if errors:
        raise ValidationError(errors)

    reasons = _clean_reasons(reasons)
    actor = _clean_actor(actor)
    when = when or utc_now()

    try:
        cm = nullcontext(session) if session is not None else session_scope()
        with cm as session:
            unit = _load_unit(session, lot_number)
            if unit.is_terminal:
                raise UnitAlreadyTerminal(unit.lot_number, unit.status)

            if decision == QualityDecision.APPROVED:
                outcome = _apply_approval(unit, actor, notes, routing_config)
            elif decision == QualityDecision.TEMP_REJECTED:
                outcome = _apply_temp_rejection(unit, actor, notes, reasons, when)
            else:
                outcome = _apply_rejection(session, unit, actor, notes, reasons, when)

            _queue_unit_change(session, unit)
            result = unit.to_dict()
    except SQLAlchemyError as e:
        raise _persistence_failure(
            "submit_quality_decision", e, lot_number=lot_number, decision=decision.value
        ) from e

    log_operation(
        logger,
        "submit_quality_decision",
        outcome,
        lot_number=result["lot_number"],
        decision=decision.value,
        station=result["current_station"],
        actor=actor,
    )
    return result


# =============================================================================
# Reassignment
# =============================================================================


def reassign_overproduced_unit(
    lot_number: str,
    real_order_id: str,
    actor: str = DEFAULT_ACTOR,
    *,
    session=None,
) -> Dict[str, Any]:
    """
    Assign an overproduced unit to a real order.

    Clears the overproduction flag, sets the (trimmed, upper-cased) order id
    and records a note. One start at the unit's origin station moves from
    the order the unit was started for to the target order.

    Raises:
        ValidationError: If the target is missing or the unit is not
            reassignable (not overproduced, or rejected)
        UnitNotFound: If no unit has this lot number
        OrderNotFound: If the target order doesn't exist
        PersistenceFailure: If the database write fails
    """
    target_id = normalize_order_id(real_order_id)
    actor = _clean_actor(actor)
    if not target_id:
        raise ValidationError([f"Order id: {ERROR_REQUIRED_FIELD}"])
    if target_id == UNASSIGNED_ORDER_ID:
        raise ValidationError([f"Cannot reassign a unit to '{UNASSIGNED_ORDER_ID}'"])

    try:
        cm = nullcontext(session) if session is not None else session_scope()
        with cm as session:
            unit = _load_unit(session, lot_number)
            if not unit.is_overproduction and not unit.is_unassigned:
                raise ValidationError(
                    [f"Unit '{unit.lot_number}' is not overproduced (order {unit.order_id})"]
                )
            if unit.status == UnitStatus.REJECTED.value:
                raise ValidationError([f"Unit '{unit.lot_number}' is rejected"])

            target = load_order(session, target_id)
            counters = transfer_start(
                unit.source_order_id, target.order_id, unit.origin_station, session=session
            )

            previous = unit.order_id
            unit.order_id = target.order_id
            unit.is_overproduction = False
            unit.note = f"Manually reassigned from {previous} to {target.order_id} by {actor}"
            unit.add_history(
                f"{ACTION_REASSIGNED} to order {target.order_id}",
                unit.current_station,
                actor,
                notes=unit.note,
            )
            _queue_unit_change(session, unit)
            result = unit.to_dict()
    except SQLAlchemyError as e:
        raise _persistence_failure(
            "reassign_overproduced_unit", e, lot_number=lot_number, order_id=target_id
        ) from e

    log_operation(
        logger,
        "reassign_overproduced_unit",
        "target_overflow" if counters["overflow"] else "success",
        lot_number=result["lot_number"],
        order_id=target_id,
        actor=actor,
    )
    return result


# =============================================================================
# Queries
# =============================================================================


def get_unit(lot_number: str, *, session=None) -> Dict[str, Any]:
    """
    Get a unit by lot number, including its history.

    Raises:
        UnitNotFound: If no unit has this lot number
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return _load_unit(session, lot_number).to_dict()


def list_units(
    *,
    station: Optional[str] = None,
    status: Optional[UnitStatus] = None,
    stage: Optional[LifecycleStage] = None,
    order_id: Optional[str] = None,
    overproduction: Optional[bool] = None,
    limit: int = 500,
    session=None,
) -> List[Dict[str, Any]]:
    """
    List units with optional filters, oldest first.

    Args:
        station: Filter by current station
        status: Filter by unit status
        stage: Filter by lifecycle stage
        order_id: Filter by owning order id
        overproduction: Filter by overproduction flag
        limit: Maximum number of results (default 500)
        session: Optional database session
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(ProductionUnit)
        if station is not None:
            query = query.filter(ProductionUnit.current_station == normalize_station(station))
        if status is not None:
            query = query.filter(ProductionUnit.status == UnitStatus(status).value)
        if stage is not None:
            query = query.filter(ProductionUnit.lifecycle_stage == LifecycleStage(stage).value)
        if order_id is not None:
            query = query.filter(ProductionUnit.order_id == normalize_order_id(order_id))
        if overproduction is not None:
            query = query.filter(ProductionUnit.is_overproduction == overproduction)

        query = query.order_by(ProductionUnit.created_at, ProductionUnit.id).limit(limit)
        return [unit.to_dict() for unit in query.all()]


def get_unit_history(lot_number: str, *, session=None) -> List[Dict[str, Any]]:
    """
    Get the audit history of a unit, oldest entry first.

    Raises:
        UnitNotFound: If no unit has this lot number
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        unit = _load_unit(session, lot_number)
        entries = (
            session.query(UnitHistoryEntry)
            .filter(UnitHistoryEntry.unit_id == unit.id)
            .order_by(UnitHistoryEntry.id)
            .all()
        )
        return [entry.to_dict() for entry in entries]
