"""
LotSequence model for server-side lot number allocation.

One row per lot prefix (year, ISO week, station code). The allocator bumps
last_sequence with an atomic UPDATE, so two terminals starting production on
the same station in the same week never receive the same sequence number.
"""

from sqlalchemy import CheckConstraint, Column, Integer, String

from .base import BaseModel


class LotSequence(BaseModel):
    """
    Last issued sequence number for a lot prefix.

    Attributes:
        prefix: Lot prefix "40{YY}{WW}{station code}40"
        last_sequence: Highest sequence number handed out for the prefix
    """

    __tablename__ = "lot_sequences"

    prefix = Column(String(20), nullable=False, unique=True)
    last_sequence = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("last_sequence >= 0", name="ck_lot_sequence_non_negative"),
    )

    def __repr__(self) -> str:
        return f"LotSequence(prefix='{self.prefix}', last_sequence={self.last_sequence})"
