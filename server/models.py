"""SQLAlchemy models for employees, work sessions, fixes, places, clusters and trips."""

import datetime
from sqlalchemy import Column, Integer, Float, String, DateTime, ForeignKey, Boolean, Text
from sqlalchemy.orm import relationship

from database import Base


class Employee(Base):
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    is_active = Column(Boolean, default=True)

    sessions = relationship("WorkSession", back_populates="employee", cascade="all, delete-orphan")


class WorkSession(Base):
    """One shift, from clock-in to clock-out. ``status`` is 'active' or 'completed'."""

    __tablename__ = "work_sessions"

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="active")
    clocked_in_at = Column(DateTime, nullable=False, default=datetime.datetime.utcnow)
    clocked_out_at = Column(DateTime, nullable=True)

    employee = relationship("Employee", back_populates="sessions")
    fixes = relationship("LocationFix", back_populates="session", cascade="all, delete-orphan")


class LocationFix(Base):
    __tablename__ = "location_fixes"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("work_sessions.id"), nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    horizontal_accuracy = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    captured_at = Column(DateTime, nullable=False, index=True)
    received_at = Column(DateTime, default=datetime.datetime.utcnow)
    batch_id = Column(String, nullable=True, index=True)
    stationary_cluster_id = Column(
        Integer, ForeignKey("stationary_clusters.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    session = relationship("WorkSession", back_populates="fixes")


class Place(Base):
    """A known workplace: a circular geofence that clusters and trip endpoints match against."""

    __tablename__ = "places"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    address = Column(Text, nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    radius_meters = Column(Float, nullable=False, default=100.0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)


class StationaryCluster(Base):
    """A confirmed dwell (>= 3 minutes within ~50m) during a work session."""

    __tablename__ = "stationary_clusters"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("work_sessions.id"), nullable=False, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    centroid_latitude = Column(Float, nullable=False)
    centroid_longitude = Column(Float, nullable=False)
    centroid_accuracy = Column(Float, nullable=True)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    point_count = Column(Integer, nullable=False)
    gap_seconds = Column(Integer, nullable=False, default=0)
    gap_episode_count = Column(Integer, nullable=False, default=0)
    matched_place_id = Column(Integer, ForeignKey("places.id", ondelete="SET NULL"), nullable=True)

    matched_place = relationship("Place")


class MovementEvent(Base):
    """A trip between two stationary clusters (either end may be open)."""

    __tablename__ = "movement_events"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("work_sessions.id"), nullable=False, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=False)
    start_latitude = Column(Float, nullable=False)
    start_longitude = Column(Float, nullable=False)
    end_latitude = Column(Float, nullable=False)
    end_longitude = Column(Float, nullable=False)
    great_circle_distance_km = Column(Float, nullable=False)
    corrected_distance_km = Column(Float, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    transport_mode = Column(String, nullable=False, default="unknown")
    transit_point_count = Column(Integer, nullable=False, default=0)
    low_accuracy_point_count = Column(Integer, nullable=False, default=0)
    confidence_score = Column(Float, nullable=True)
    has_coverage_gap = Column(Boolean, nullable=False, default=False)
    preceding_cluster_id = Column(
        Integer, ForeignKey("stationary_clusters.id", ondelete="SET NULL"), nullable=True,
    )
    following_cluster_id = Column(
        Integer, ForeignKey("stationary_clusters.id", ondelete="SET NULL"), nullable=True,
    )
    start_place_id = Column(Integer, ForeignKey("places.id", ondelete="SET NULL"), nullable=True)
    end_place_id = Column(Integer, ForeignKey("places.id", ondelete="SET NULL"), nullable=True)

    points = relationship(
        "MovementEventPoint",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="MovementEventPoint.sequence_order",
    )


class MovementEventPoint(Base):
    __tablename__ = "movement_event_points"

    event_id = Column(Integer, ForeignKey("movement_events.id", ondelete="CASCADE"), primary_key=True)
    fix_id = Column(Integer, ForeignKey("location_fixes.id", ondelete="CASCADE"), primary_key=True)
    sequence_order = Column(Integer, nullable=False)

    event = relationship("MovementEvent", back_populates="points")


class Config(Base):
    """Algorithm thresholds and settings, as string key/value pairs."""

    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


class SegmentationRun(Base):
    """Journal row for one engine run over a work session."""

    __tablename__ = "segmentation_runs"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("work_sessions.id"), nullable=False, index=True)
    mode = Column(String, nullable=False)
    status = Column(String, nullable=False, default="running")
    started_at = Column(DateTime, default=datetime.datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
    clusters_written = Column(Integer, default=0)
    events_written = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
