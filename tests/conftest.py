"""Pytest configuration and fixtures for service layer tests."""

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker

from press_tracker.models.base import Base


@pytest.fixture(scope="function")
def test_db():
    """Provide a clean test database for each test function.

    This fixture:
    1. Creates an in-memory SQLite database
    2. Creates all tables
    3. Provides the database to the test
    4. Drops all tables after the test completes
    """
    import press_tracker.models  # noqa: F401

    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)

    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    Session = scoped_session(session_factory)

    # Monkey-patch the global session factory for tests
    import press_tracker.services.database as db_module

    original_get_session_factory = db_module.get_session_factory
    db_module.get_session_factory = lambda: Session

    yield Session

    Session.remove()
    Base.metadata.drop_all(engine)
    engine.dispose()

    db_module.get_session_factory = original_get_session_factory


@pytest.fixture
def gravenstein_lot(test_db):
    """600 kg of Gravenstein from Hillside Orchard, $420."""
    from press_tracker.services import purchase_lot_service

    return purchase_lot_service.create_lot(
        "Hillside Orchard", "Gravenstein", 600.0, Decimal("420.00"), lot_code="HO-GRAV-01"
    )


@pytest.fixture
def golden_lot(test_db):
    """400 kg of Golden Delicious from Valley Fruit, $200."""
    from press_tracker.services import purchase_lot_service

    return purchase_lot_service.create_lot(
        "Valley Fruit", "Golden Delicious", 400.0, Decimal("200.00"), lot_code="VF-GD-07"
    )


@pytest.fixture
def tank(test_db):
    """1000 L tank coded TK03."""
    from press_tracker.services import vessel_service

    return vessel_service.create_vessel("Tank 3", 1000.0, code="TK03")


@pytest.fixture
def small_tank(test_db):
    """300 L tank coded TK01."""
    from press_tracker.services import vessel_service

    return vessel_service.create_vessel("Tank 1", 300.0, code="TK01")


@pytest.fixture
def loaded_press_run(test_db, gravenstein_lot, golden_lot):
    """In-progress press run with 600 kg Gravenstein and 400 kg Golden Delicious."""
    from press_tracker.services import press_run_service

    run = press_run_service.create_press_run(actor_id="tester")
    press_run_service.add_load(run["id"], gravenstein_lot["id"], 600.0, actor_id="tester")
    press_run_service.add_load(run["id"], golden_lot["id"], 400.0, actor_id="tester")
    return press_run_service.get_press_run(run["id"])
