"""
Change feed for committed writes.

Terminal screens (station lists, order overview, notification inbox) register
a callback per collection and receive a ChangeEvent after every committed
write to that collection. Subscriptions are explicit: subscribe() returns a
Subscription whose unsubscribe() detaches the callback.

Services never publish directly. They queue events on the session with
publish_after_commit(); the queued events are delivered when the session
commits and discarded when it rolls back, so subscribers never observe a
write that did not persist.

Example usage:
    from lot_tracker.services.change_feed import get_change_feed

    subscription = get_change_feed().subscribe(
        "production_units", lambda change: print(change.key, change.action)
    )
    ...
    subscription.unsubscribe()
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from ..utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

COLLECTION_PRODUCTION_UNITS = "production_units"
COLLECTION_ORDERS = "orders"
COLLECTION_NOTIFICATIONS = "notifications"

COLLECTIONS = (
    COLLECTION_PRODUCTION_UNITS,
    COLLECTION_ORDERS,
    COLLECTION_NOTIFICATIONS,
)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"

PENDING_CHANGES_KEY = "pending_changes"

DEFAULT_LOG_SIZE = 500


@dataclass
class ChangeEvent:
    """
    One committed change to a record.

    Attributes:
        collection: Collection name (e.g. "production_units")
        action: "created" or "updated"
        key: Natural key of the record (lot number, order id, notification uuid)
        data: Snapshot of the record as returned by to_dict()
        timestamp: When the change was queued
    """

    collection: str
    action: str
    key: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    def __repr__(self) -> str:
        return f"ChangeEvent({self.collection}, {self.action}, key={self.key})"


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by ChangeFeed.subscribe()."""

    def __init__(self, feed: "ChangeFeed", collection: str, callback: ChangeCallback):
        self.feed = feed
        self.collection = collection
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        """Detach the callback. Calling it twice is harmless."""
        if self.active:
            self.feed.unsubscribe(self)


class ChangeFeed:
    """
    Publish/subscribe dispatcher keyed by collection.

    Callbacks run synchronously on the thread that committed the write. A
    callback that raises is logged and skipped; the remaining subscribers
    still receive the event.
    """

    def __init__(self, log_size: int = DEFAULT_LOG_SIZE):
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._event_log: Deque[ChangeEvent] = deque(maxlen=log_size)
        self._lock = threading.RLock()

    def subscribe(self, collection: str, callback: ChangeCallback) -> Subscription:
        """
        Subscribe to changes of one collection.

        Args:
            collection: One of COLLECTIONS
            callback: Called with each ChangeEvent after commit

        Returns:
            Subscription handle

        Raises:
            ValueError: If the collection is unknown
        """
        if collection not in COLLECTIONS:
            raise ValueError(
                f"Unknown collection '{collection}'. Expected one of: {', '.join(COLLECTIONS)}"
            )
        subscription = Subscription(self, collection, callback)
        with self._lock:
            self._subscribers.setdefault(collection, []).append(subscription)
        logger.debug(f"Subscribed to {collection}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.collection, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
        subscription.active = False
        logger.debug(f"Unsubscribed from {subscription.collection}")

    def subscriber_count(self, collection: str) -> int:
        with self._lock:
            return len(self._subscribers.get(collection, []))

    def publish(self, change: ChangeEvent) -> None:
        """
        Deliver a change to all subscribers of its collection.

        Args:
            change: Event to deliver
        """
        with self._lock:
            self._event_log.append(change)
            subscribers = list(self._subscribers.get(change.collection, []))

        for subscription in subscribers:
            try:
                subscription.callback(change)
            except Exception:
                logger.exception(
                    f"Change feed subscriber failed for {change.collection} ({change.key})"
                )

    def get_event_log(self) -> List[ChangeEvent]:
        """Recently published events, oldest first."""
        with self._lock:
            return list(self._event_log)

    def clear_log(self) -> None:
        with self._lock:
            self._event_log.clear()


_feed_instance: Optional[ChangeFeed] = None


def get_change_feed() -> ChangeFeed:
    """Get the global change feed instance."""
    global _feed_instance
    if _feed_instance is None:
        _feed_instance = ChangeFeed()
    return _feed_instance


def reset_change_feed() -> None:
    """
    Drop the global change feed and all its subscriptions.

    Useful for testing.
    """
    global _feed_instance
    _feed_instance = None


def publish_after_commit(
    session: Session,
    collection: str,
    action: str,
    key: str,
    data: Dict[str, Any],
) -> ChangeEvent:
    """
    Queue a change to be published once the session commits.

    The data snapshot is taken now, so callers should flush first when the
    record needs database-generated values (id, timestamps).
    """
    change = ChangeEvent(collection=collection, action=action, key=key, data=data)
    session.info.setdefault(PENDING_CHANGES_KEY, []).append(change)
    return change


def discard_pending_changes(session: Session) -> int:
    """
    Drop the changes queued on a session without publishing them.

    Session.rollback() fires no event when the transaction never emitted
    SQL, so callers that abandon a session must discard explicitly.

    Returns:
        Number of changes discarded
    """
    pending = session.info.pop(PENDING_CHANGES_KEY, None)
    if pending:
        logger.debug(f"Discarded {len(pending)} change(s) after rollback")
    return len(pending or ())


@event.listens_for(Session, "after_commit")
def _deliver_pending_changes(session):
    pending = session.info.pop(PENDING_CHANGES_KEY, None)
    if not pending:
        return
    feed = get_change_feed()
    for change in pending:
        feed.publish(change)


@event.listens_for(Session, "after_rollback")
def _discard_on_rollback(session):
    discard_pending_changes(session)
