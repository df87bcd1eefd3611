"""Shared pytest fixtures: in-memory DB, test employee, test work sessions."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Employee, WorkSession, Place


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db(engine):
    """Provide a DB session, closed after each test."""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def test_employee(db):
    employee = Employee(name="Test Technician", email="tech@example.com")
    db.add(employee)
    db.commit()
    db.refresh(employee)
    return employee


@pytest.fixture
def test_session(db, test_employee):
    """A completed (clocked-out) work session with no fixes yet."""
    from tests.gps_test_fixtures import _t

    session = WorkSession(
        employee_id=test_employee.id,
        status="completed",
        clocked_in_at=_t(0),
        clocked_out_at=_t(65),
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


@pytest.fixture
def active_session(db, test_employee):
    """A work session that is still clocked in."""
    from tests.gps_test_fixtures import _t

    session = WorkSession(employee_id=test_employee.id, status="active", clocked_in_at=_t(0))
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


@pytest.fixture
def populated_session(db, test_session):
    """A completed session populated with the office -> job site commute."""
    from tests.gps_test_fixtures import COMMUTE_TRACE, store_fixes

    store_fixes(db, test_session.id, COMMUTE_TRACE)
    return test_session


@pytest.fixture
def known_places(db):
    """Geofences around the office and the job site."""
    from tests.gps_test_fixtures import OFFICE_CENTER, SITE_CENTER

    office = Place(name="Head Office", radius_meters=100.0, **OFFICE_CENTER)
    site = Place(name="Job Site 14", radius_meters=100.0, **SITE_CENTER)
    db.add_all([office, site])
    db.commit()
    db.refresh(office)
    db.refresh(site)
    return office, site
