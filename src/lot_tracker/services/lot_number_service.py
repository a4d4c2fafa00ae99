"""
Lot Number Service - allocation of unique lot identifiers.

A lot number has the layout

    40 YY WW SSS 40 NNNN

where YY is the two-digit calendar year, WW the zero-padded ISO week, SSS a
three-digit code derived from the station id and NNNN the sequence within
that (year, week, station) prefix.

Two allocation modes are offered:
- generate_lot_number(): pure, counts an in-memory snapshot of existing
  identifiers. Useful for previews; not safe with concurrent writers.
- allocate_lot_number(): transactional, bumps a per-prefix counter in the
  lot_sequences table with one atomic UPDATE. This is what start_production
  uses.
"""

import logging
import re
from datetime import date, datetime
from typing import Iterable, Optional, Union

from sqlalchemy import func, select, update

from ..models import LotSequence, ProductionUnit
from ..utils.constants import (
    DEFAULT_STATION_CODE,
    LOT_PREFIX_LEAD,
    LOT_PREFIX_TAIL,
    LOT_SEQUENCE_DIGITS,
    MAX_ALLOCATION_ATTEMPTS,
    MAX_LOT_SEQUENCE,
    STATION_CODE_LENGTH,
)
from ..utils.datetime_utils import iso_week_info, utc_now
from .database import insert_if_missing
from .exceptions import AllocationCollision, ValidationError
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)

_DIGITS = re.compile(r"\d")


def derive_station_code(station_id: Optional[str]) -> str:
    """
    Derive the three-digit station code used in lot numbers.

    Rules (on the digits found in the station id):
    - exactly 3 digits: used as is ("BH120" -> "120")
    - 1 digit: prefixed with "40" ("BH1" -> "401")
    - 2 digits: prefixed with "4" ("BH11" -> "411")
    - more than 3 digits: "4" + the last two digits ("ST1234" -> "434")
    - no digits: the default code "400"

    The long-id rule deliberately differs from older terminals, which
    appended every digit ("ST1234" -> "41234") and so produced lot numbers
    longer than 15 characters. Keeping only the last two digits holds the
    code at three characters.

    Never raises; malformed ids fall back to the default.
    """
    digits = "".join(_DIGITS.findall(station_id or ""))

    if len(digits) == STATION_CODE_LENGTH:
        return digits
    if len(digits) == 1:
        return "40" + digits
    if len(digits) == 2:
        return "4" + digits
    if len(digits) > STATION_CODE_LENGTH:
        return "4" + digits[-2:]
    return DEFAULT_STATION_CODE


def build_lot_prefix(
    station_id: Optional[str], when: Optional[Union[date, datetime]] = None
) -> str:
    """
    Build the lot prefix for a station and moment.

    Args:
        station_id: Station the lot is started at
        when: Date of allocation (defaults to now, UTC)

    Returns:
        Prefix "40" + YY + WW + station code + "40"
    """
    when = when or utc_now()
    week, _iso_year = iso_week_info(when)
    return (
        f"{LOT_PREFIX_LEAD}{when.year % 100:02d}{week:02d}"
        f"{derive_station_code(station_id)}{LOT_PREFIX_TAIL}"
    )


def format_lot_number(prefix: str, sequence: int) -> str:
    """Append the zero-padded sequence to a lot prefix."""
    return f"{prefix}{sequence:0{LOT_SEQUENCE_DIGITS}d}"


def generate_lot_number(
    station_id: Optional[str],
    existing_lot_numbers: Iterable[str],
    when: Optional[Union[date, datetime]] = None,
) -> str:
    """
    Generate the next lot number from a snapshot of existing identifiers.

    Args:
        station_id: Station the lot is started at
        existing_lot_numbers: Identifiers already in use
        when: Date of allocation (defaults to now, UTC)

    Returns:
        Lot number whose sequence is one more than the number of existing
        identifiers sharing the prefix

    Raises:
        AllocationCollision: If the sequence range of the prefix is exhausted
    """
    prefix = build_lot_prefix(station_id, when)
    count = sum(1 for lot in existing_lot_numbers if lot and lot.startswith(prefix))
    sequence = count + 1
    if sequence > MAX_LOT_SEQUENCE:
        raise AllocationCollision(format_lot_number(prefix, sequence))
    return format_lot_number(prefix, sequence)


def _lot_exists(session, lot_number: str) -> bool:
    return (
        session.query(ProductionUnit.id).filter(ProductionUnit.lot_number == lot_number).first()
        is not None
    )


def _seed_sequence(session, prefix: str) -> None:
    """Create the sequence row for a prefix, seeded from units already on record."""
    existing = (
        session.query(func.count(ProductionUnit.id))
        .filter(ProductionUnit.lot_number.startswith(prefix, autoescape=True))
        .scalar()
    )
    insert_if_missing(
        session,
        LotSequence,
        {"prefix": prefix, "last_sequence": existing or 0},
        index_elements=["prefix"],
    )


def allocate_lot_number(
    station_id: Optional[str],
    when: Optional[Union[date, datetime]] = None,
    *,
    session,
) -> str:
    """
    Allocate a lot number inside the caller's transaction.

    The per-prefix counter is incremented with one UPDATE statement, so
    concurrent allocators on the same prefix serialize on the row and never
    receive the same sequence. A candidate that is already taken (e.g. by a
    manually entered lot number) is skipped.

    Args:
        station_id: Station the lot is started at
        when: Date of allocation (defaults to now, UTC)
        session: Active database session (required)

    Returns:
        The allocated lot number

    Raises:
        AllocationCollision: If no free identifier was found within the
            attempt limit or the sequence range is exhausted
    """
    prefix = build_lot_prefix(station_id, when)
    _seed_sequence(session, prefix)

    candidate = None
    for attempt in range(1, MAX_ALLOCATION_ATTEMPTS + 1):
        session.execute(
            update(LotSequence)
            .where(LotSequence.prefix == prefix)
            .values(last_sequence=LotSequence.last_sequence + 1)
            .execution_options(synchronize_session=False)
        )
        sequence = session.execute(
            select(LotSequence.last_sequence).where(LotSequence.prefix == prefix)
        ).scalar_one()

        candidate = format_lot_number(prefix, sequence)
        if sequence > MAX_LOT_SEQUENCE:
            log_operation(
                logger,
                "allocate_lot_number",
                "sequence_exhausted",
                level=logging.ERROR,
                prefix=prefix,
            )
            raise AllocationCollision(candidate, attempt)

        if not _lot_exists(session, candidate):
            log_operation(
                logger,
                "allocate_lot_number",
                "success",
                level=logging.DEBUG,
                lot_number=candidate,
                attempt=attempt,
            )
            return candidate

        log_operation(
            logger,
            "allocate_lot_number",
            "skipped_taken",
            level=logging.WARNING,
            lot_number=candidate,
            attempt=attempt,
        )

    raise AllocationCollision(candidate, MAX_ALLOCATION_ATTEMPTS)


def claim_manual_lot_number(lot_number: Optional[str], *, session) -> str:
    """
    Validate an operator-entered lot number.

    Args:
        lot_number: Lot number typed by the operator
        session: Active database session

    Returns:
        The trimmed lot number

    Raises:
        ValidationError: If the lot number is empty
        AllocationCollision: If a unit with this lot number already exists
    """
    lot_number = (lot_number or "").strip()
    if not lot_number:
        raise ValidationError(["Manual lot number is required"])
    if _lot_exists(session, lot_number):
        raise AllocationCollision(lot_number)
    return lot_number
