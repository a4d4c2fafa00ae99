"""
Notification Service - engine-generated notifications.

Notifications are persisted as NotificationEvent rows and published on the
"notifications" change feed after commit, so a notification inbox sees them
as soon as the write that caused them is durable.
"""

import logging
from contextlib import nullcontext
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..models import NotificationEvent, NotificationKind
from .change_feed import ACTION_CREATED, COLLECTION_NOTIFICATIONS, publish_after_commit
from .database import session_scope
from .exceptions import PersistenceFailure, ValidationError
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)


def emit_notification(
    kind: NotificationKind,
    subject: str,
    body: str = "",
    *,
    related_lot: Optional[str] = None,
    related_order: Optional[str] = None,
    session=None,
) -> Dict[str, Any]:
    """
    Persist a notification and queue it for the change feed.

    Args:
        kind: Notification type
        subject: Short headline
        body: Message text
        related_lot: Lot number the notification is about
        related_order: Order id the notification is about
        session: Optional database session (uses session_scope if not provided)

    Returns:
        The notification as a dict

    Raises:
        ValidationError: If kind or subject is invalid
        PersistenceFailure: If the database write fails
    """
    try:
        kind = NotificationKind(kind)
    except ValueError:
        raise ValidationError([f"Unknown notification kind: {kind}"])
    if not subject or not subject.strip():
        raise ValidationError(["Notification subject is required"])

    try:
        cm = nullcontext(session) if session is not None else session_scope()
        with cm as session:
            notification = NotificationEvent(
                kind=kind.value,
                subject=subject.strip(),
                body=body or "",
                related_lot=related_lot,
                related_order=related_order,
            )
            session.add(notification)
            session.flush()

            data = _notification_to_dict(notification)
            publish_after_commit(
                session, COLLECTION_NOTIFICATIONS, ACTION_CREATED, notification.uuid, data
            )
    except SQLAlchemyError as e:
        log_operation(
            logger,
            "emit_notification",
            "error",
            level=logging.ERROR,
            kind=kind.value,
            error=str(e),
        )
        raise PersistenceFailure(f"Failed to store notification: {e}", e) from e

    log_operation(
        logger,
        "emit_notification",
        "success",
        kind=kind.value,
        related_lot=related_lot,
        related_order=related_order,
    )
    return data


def list_notifications(
    *,
    kind: Optional[NotificationKind] = None,
    related_lot: Optional[str] = None,
    related_order: Optional[str] = None,
    limit: int = 100,
    session=None,
) -> List[Dict[str, Any]]:
    """
    List notifications, newest first.

    Args:
        kind: Optional filter by notification type
        related_lot: Optional filter by lot number
        related_order: Optional filter by order id
        limit: Maximum number of results (default 100)
        session: Optional database session

    Returns:
        List of notification dicts
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(NotificationEvent)
        if kind is not None:
            query = query.filter(NotificationEvent.kind == NotificationKind(kind).value)
        if related_lot is not None:
            query = query.filter(NotificationEvent.related_lot == related_lot)
        if related_order is not None:
            query = query.filter(NotificationEvent.related_order == related_order)

        query = query.order_by(NotificationEvent.created_at.desc(), NotificationEvent.id.desc())
        return [_notification_to_dict(n) for n in query.limit(limit).all()]


def _notification_to_dict(notification: NotificationEvent) -> Dict[str, Any]:
    return {
        "uuid": notification.uuid,
        "kind": notification.kind,
        "subject": notification.subject,
        "body": notification.body,
        "related_lot": notification.related_lot,
        "related_order": notification.related_order,
        "created_at": (
            notification.created_at.isoformat() if notification.created_at else None
        ),
    }
