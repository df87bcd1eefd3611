#!/usr/bin/env python3
"""Seed the database with GPS test fixture data for development and API testing.

Usage:
    python seed_test_data.py

This creates a demo employee, geofences for the office and a job site, and a
work session holding the office -> job site commute trace, then clocks the
session out so its clusters and trips are detected.
"""

from database import init_db, SessionLocal
from models import Employee, Place, WorkSession
from processing import close_session
from tests.gps_test_fixtures import COMMUTE_TRACE, OFFICE_CENTER, SITE_CENTER, _t, store_fixes


def seed(db=None):
    """Insert the demo data. Returns the seeded work session id, or None if already seeded."""
    owns_db = db is None
    if owns_db:
        init_db()
        db = SessionLocal()

    try:
        existing = db.query(Employee).filter(Employee.email == "demo@example.com").first()
        if existing:
            print("Demo employee already exists. Skipping seed.")
            return None

        employee = Employee(name="Demo Technician", email="demo@example.com")
        db.add(employee)
        db.add(Place(name="Head Office", address="1 Avenue Principale, Rouyn-Noranda, QC", **OFFICE_CENTER))
        db.add(Place(name="Job Site 14", radius_meters=150.0, **SITE_CENTER))
        db.commit()
        db.refresh(employee)
        print(f"Created employee: {employee.name} (id={employee.id})")

        session = WorkSession(employee_id=employee.id, status="active", clocked_in_at=_t(0))
        db.add(session)
        db.commit()
        db.refresh(session)

        store_fixes(db, session.id, COMMUTE_TRACE)
        print(f"Inserted {len(COMMUTE_TRACE)} location fixes into session {session.id}")

        result = close_session(db, session.id, clocked_out_at=_t(65))
        print(f"Detected {len(result.clusters)} stationary clusters, {len(result.trips)} trips")

        for t in result.trips:
            print(f"  - {t.transport_mode}: {t.corrected_distance_km:.2f} km in {t.duration_minutes}m "
                  f"({t.started_at.strftime('%H:%M')}-{t.ended_at.strftime('%H:%M')})")
        return session.id
    finally:
        if owns_db:
            db.close()


if __name__ == "__main__":
    seed()
