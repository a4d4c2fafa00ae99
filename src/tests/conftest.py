"""Pytest configuration and fixtures for service layer tests."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import StaticPool

import lot_tracker.models  # noqa: F401  (registers all tables)
from lot_tracker.models.base import Base
from lot_tracker.services.change_feed import reset_change_feed
from lot_tracker.utils.config import reset_config


@pytest.fixture(scope="function")
def test_db():
    """Provide a clean test database for each test function.

    This fixture:
    1. Creates an in-memory SQLite database
    2. Creates all tables
    3. Provides the session factory to the test
    4. Drops all tables after the test completes

    The engine uses a StaticPool so that a background thread (the overdue
    rework monitor) sees the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(engine)

    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    Session = scoped_session(session_factory)

    # Monkey-patch the global session factory for tests
    import lot_tracker.services.database as db_module

    original_get_session = db_module.get_session_factory
    db_module.get_session_factory = lambda: Session

    yield Session

    Session.remove()
    Base.metadata.drop_all(engine)
    engine.dispose()

    db_module.get_session_factory = original_get_session


@pytest.fixture(autouse=True)
def fresh_globals(monkeypatch):
    """Reset the change feed and configuration singletons around every test."""
    for name in (
        "LOT_TRACKER_ENV",
        "LOT_TRACKER_DATABASE_URL",
        "LOT_TRACKER_OVERDUE_DAYS",
        "LOT_TRACKER_MONITOR_INTERVAL",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_change_feed()
    reset_config()
    yield
    reset_change_feed()
    reset_config()


@pytest.fixture
def now():
    """A fixed moment: Wednesday 12 March 2025 (ISO week 11)."""
    return datetime(2025, 3, 12, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def flange_order(test_db):
    """Order ORD-1001 for 5 flanges (Mazak item)."""
    from lot_tracker.services import order_reconciler_service

    return order_reconciler_service.create_order(
        "ORD-1001", 5, item_code="FL100", item="FL-Flange-100"
    )


@pytest.fixture
def bracket_order(test_db):
    """Order ORD-2002 for 3 brackets (not a Mazak item)."""
    from lot_tracker.services import order_reconciler_service

    return order_reconciler_service.create_order(
        "ORD-2002", 3, item_code="BR200", item="Bracket 200"
    )
