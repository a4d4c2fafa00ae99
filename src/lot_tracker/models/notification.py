"""
NotificationEvent model.

Notifications are written by the engine (overproduction, overdue rework) and
read by the notification inbox, which subscribes to the "notifications"
change feed.
"""

from sqlalchemy import Column, Index, String, Text

from .base import BaseModel


class NotificationEvent(BaseModel):
    """
    A notification emitted by the engine.

    Attributes:
        kind: NotificationKind value
        subject: Short headline
        body: Message text
        related_lot: Lot number the notification is about, if any
        related_order: Order id the notification is about, if any
    """

    __tablename__ = "notifications"

    kind = Column(String(30), nullable=False)
    subject = Column(String(200), nullable=False)
    body = Column(Text, nullable=False, default="")
    related_lot = Column(String(32), nullable=True)
    related_order = Column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_notification_kind", "kind"),
        Index("idx_notification_created", "created_at"),
    )

    def __repr__(self) -> str:
        return f"NotificationEvent(kind='{self.kind}', subject='{self.subject}')"
