"""Database setup and session management using SQLAlchemy + SQLite."""

import logging
import os

logger = logging.getLogger(__name__)

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///trips.db")

engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables and seed the default algorithm thresholds."""
    from models import (  # noqa: F401
        Employee, WorkSession, LocationFix, Place, StationaryCluster,
        MovementEvent, MovementEventPoint, Config, SegmentationRun,
    )

    logger.info("Initializing database at %s", DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    _seed_config()


# Default algorithm thresholds (must match the module-level constants in
# processing.py, segmentation.py and trips.py)
DEFAULT_THRESHOLDS = {
    "max_accuracy_m": "200.0",
    "default_accuracy_m": "20.0",
    "cluster_radius_m": "50.0",
    "cluster_confirm_s": "180",
    "gap_grace_s": "300",
    "road_correction_factor": "1.3",
    "min_trip_km": "0.2",
    "min_driving_km": "0.5",
    "min_driving_displacement_km": "0.05",
    "min_driving_straightness": "0.10",
    "min_walking_displacement_km": "0.1",
    "low_accuracy_m": "50.0",
}


def _seed_config():
    """Insert default algorithm thresholds if not present."""
    from models import Config

    db = SessionLocal()
    try:
        for key, value in DEFAULT_THRESHOLDS.items():
            if not db.query(Config).filter(Config.key == key).first():
                db.add(Config(key=key, value=value))
        db.commit()
    finally:
        db.close()
