"""
Overdue Rework Service - reminders for units held in rework too long.

scan_overdue_rework() finds units that were temporarily rejected more than
the configured number of days ago and have not been reminded about yet. Each
unit is claimed with a conditional UPDATE (reminder_sent false -> true), so
when several scanners run at once only the one whose update hits the row
emits the notification.

OverdueReworkMonitor runs the scan periodically on a daemon thread.

Example usage:
    from lot_tracker.services.overdue_rework_service import OverdueReworkMonitor

    monitor = OverdueReworkMonitor()
    monitor.start()  # scans every LOT_TRACKER_MONITOR_INTERVAL seconds
    # ... application runs ...
    monitor.stop()
"""

import logging
import threading
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..models import LifecycleStage, NotificationKind, ProductionUnit
from ..utils.config import get_config
from ..utils.datetime_utils import ensure_aware, utc_now
from .change_feed import ACTION_UPDATED, COLLECTION_PRODUCTION_UNITS, publish_after_commit
from .database import session_scope
from .exceptions import PersistenceFailure, ServiceError, ValidationError
from .logging_utils import get_service_logger, log_operation
from .notification_service import emit_notification
from .routing import normalize_station

logger = get_service_logger(__name__)


def _is_overdue(unit: ProductionUnit, now: datetime, threshold: timedelta) -> bool:
    if unit.inspection_timestamp is None:
        return False
    return now - ensure_aware(unit.inspection_timestamp) > threshold


def _claim(session, unit: ProductionUnit) -> bool:
    """Set reminder_sent on a unit unless another scanner already did."""
    result = session.execute(
        update(ProductionUnit)
        .where(ProductionUnit.id == unit.id, ProductionUnit.reminder_sent.is_(False))
        .values(reminder_sent=True)
        .execution_options(synchronize_session=False)
    )
    session.expire(unit, ["reminder_sent"])
    return result.rowcount == 1


def scan_overdue_rework(
    now: Optional[datetime] = None,
    threshold_days: Optional[int] = None,
    station: Optional[str] = None,
    *,
    session=None,
) -> List[Dict[str, Any]]:
    """
    Emit one reminder per unit held in rework longer than the threshold.

    A unit is overdue when it is in the Held stage, its reminder has not been
    sent and strictly more than threshold_days have passed since its
    inspection timestamp.

    Args:
        now: Moment of the scan (defaults to now, UTC)
        threshold_days: Days a unit may stay held (defaults to configuration)
        station: Only scan units at this station
        session: Optional database session (uses session_scope if not provided)

    Returns:
        List of dicts, one per reminded unit, with keys:
            - "lot_number" (str)
            - "station" (str)
            - "order_id" (str)
            - "held_since" (str): ISO timestamp of the inspection
            - "notification" (dict)

    Raises:
        ValidationError: If threshold_days is negative
        PersistenceFailure: If the database write fails
    """
    now = ensure_aware(now or utc_now())
    if threshold_days is None:
        threshold_days = get_config().overdue_rework_days
    if threshold_days < 0:
        raise ValidationError(["Threshold days must be zero or a positive number"])
    threshold = timedelta(days=threshold_days)

    reminded = []
    try:
        cm = nullcontext(session) if session is not None else session_scope()
        with cm as session:
            query = session.query(ProductionUnit).filter(
                ProductionUnit.lifecycle_stage == LifecycleStage.HELD.value,
                ProductionUnit.reminder_sent.is_(False),
                ProductionUnit.inspection_timestamp.isnot(None),
            )
            if station:
                query = query.filter(ProductionUnit.current_station == normalize_station(station))

            for unit in query.order_by(ProductionUnit.inspection_timestamp).all():
                if not _is_overdue(unit, now, threshold):
                    continue
                if not _claim(session, unit):
                    log_operation(
                        logger,
                        "scan_overdue_rework",
                        "already_claimed",
                        level=logging.DEBUG,
                        lot_number=unit.lot_number,
                    )
                    continue

                held_since = ensure_aware(unit.inspection_timestamp)
                days = (now - held_since).days
                notification = emit_notification(
                    NotificationKind.OVERDUE_REWORK,
                    f"Unit {unit.lot_number} overdue in rework",
                    (
                        f"Unit {unit.lot_number} has been held at {unit.current_station} "
                        f"for {days} day(s) (threshold {threshold_days})."
                    ),
                    related_lot=unit.lot_number,
                    related_order=unit.order_id,
                    session=session,
                )
                publish_after_commit(
                    session,
                    COLLECTION_PRODUCTION_UNITS,
                    ACTION_UPDATED,
                    unit.lot_number,
                    unit.to_dict(),
                )
                reminded.append(
                    {
                        "lot_number": unit.lot_number,
                        "station": unit.current_station,
                        "order_id": unit.order_id,
                        "held_since": held_since.isoformat(),
                        "notification": notification,
                    }
                )
    except SQLAlchemyError as e:
        log_operation(logger, "scan_overdue_rework", "error", level=logging.ERROR, error=str(e))
        raise PersistenceFailure(f"Overdue rework scan failed: {e}", e) from e

    log_operation(
        logger,
        "scan_overdue_rework",
        "success",
        level=logging.INFO if reminded else logging.DEBUG,
        reminded=len(reminded),
        threshold_days=threshold_days,
        station=station,
    )
    return reminded


class OverdueReworkMonitor:
    """
    Background service running scan_overdue_rework() periodically.

    The monitor runs on a daemon thread. A failed scan is logged and the
    next scan runs on schedule.

    Attributes:
        _interval: Seconds between scans
        _threshold_days: Days a unit may stay held
        _station: Optional station filter
        _stop_event: Threading event for signaling shutdown
        _thread: Background daemon thread
    """

    def __init__(
        self,
        interval: Optional[float] = None,
        threshold_days: Optional[int] = None,
        station: Optional[str] = None,
    ):
        """
        Initialize the monitor.

        Args:
            interval: Seconds between scans (default: configuration)
            threshold_days: Days a unit may stay held (default: configuration)
            station: Only scan units at this station
        """
        self._logger = logging.getLogger(__name__)
        config = get_config()
        self._interval = interval if interval is not None else config.monitor_interval
        self._threshold_days = (
            threshold_days if threshold_days is not None else config.overdue_rework_days
        )
        self._station = station
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.scan_count = 0
        self.last_result: List[Dict[str, Any]] = []

        self._logger.info(
            f"Overdue rework monitor initialized (interval: {self._interval}s, "
            f"threshold: {self._threshold_days} days)"
        )

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """
        Start scanning in the background.

        If the monitor is already running, this method does nothing.
        """
        if self.is_running:
            self._logger.warning("Overdue rework monitor is already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._monitor_loop,
            name="OverdueReworkMonitorThread",
            daemon=True,
        )
        self._thread.start()
        self._logger.info("Overdue rework monitor started")

    def stop(self, timeout: float = 2.0) -> None:
        """
        Stop the monitor and wait for the thread to finish.

        Args:
            timeout: Maximum seconds to wait for thread termination (default: 2.0)
        """
        if not self.is_running:
            self._logger.info("Overdue rework monitor is not running")
            return

        self._logger.info("Stopping overdue rework monitor...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            self._logger.warning("Overdue rework monitor thread did not stop within timeout")
        else:
            self._logger.info("Overdue rework monitor stopped")

    def run_once(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Run a single scan on the calling thread."""
        result = scan_overdue_rework(
            now=now, threshold_days=self._threshold_days, station=self._station
        )
        self.scan_count += 1
        self.last_result = result
        return result

    def _monitor_loop(self) -> None:
        # Scan immediately, then every interval until stopped
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except ServiceError as e:
                self._logger.error(f"Overdue rework scan failed: {e}")
            self._stop_event.wait(self._interval)
