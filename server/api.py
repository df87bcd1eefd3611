"""REST API endpoints: work sessions, fix uploads, places, and detected clusters/trips."""

import datetime
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database import get_db
from errors import FixSourceUnavailableError, SegmentationError, SessionNotFoundError
from models import (
    Employee, LocationFix, MovementEvent, Place, SegmentationRun, StationaryCluster, WorkSession,
)
from processing import close_session, process_session, reprocess_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class SessionCreate(BaseModel):
    employee_id: int
    clocked_in_at: Optional[str] = Field(None, description="ISO 8601; defaults to now")


class SessionResponse(BaseModel):
    id: int
    employee_id: int
    status: str
    clocked_in_at: str
    clocked_out_at: Optional[str] = None


class FixPoint(BaseModel):
    latitude: float
    longitude: float
    horizontal_accuracy: Optional[float] = None
    speed: Optional[float] = None
    captured_at: str = Field(..., description="ISO 8601 timestamp from the device")


class FixBatch(BaseModel):
    fixes: list[FixPoint]


class BatchResponse(BaseModel):
    received: int
    batch_id: str
    trips_detected: int = 0


class CloseRequest(BaseModel):
    clocked_out_at: Optional[str] = None


class RunResponse(BaseModel):
    session_id: int
    clusters: int
    trips: int
    rejected_trips: int


class ClusterResponse(BaseModel):
    id: int
    centroid_latitude: float
    centroid_longitude: float
    centroid_accuracy: Optional[float] = None
    started_at: str
    ended_at: str
    duration_seconds: int
    point_count: int
    gap_seconds: int
    gap_episode_count: int
    matched_place_id: Optional[int] = None


class EventResponse(BaseModel):
    id: int
    started_at: str
    ended_at: str
    start_latitude: float
    start_longitude: float
    end_latitude: float
    end_longitude: float
    great_circle_distance_km: float
    corrected_distance_km: float
    duration_minutes: int
    transport_mode: str
    transit_point_count: int
    low_accuracy_point_count: int
    confidence_score: Optional[float] = None
    has_coverage_gap: bool
    preceding_cluster_id: Optional[int] = None
    following_cluster_id: Optional[int] = None
    start_place_id: Optional[int] = None
    end_place_id: Optional[int] = None


class PlaceCreate(BaseModel):
    name: str
    latitude: float
    longitude: float
    radius_meters: float = Field(100.0, ge=10, le=1000)
    address: Optional[str] = None


class PlaceResponse(BaseModel):
    id: int
    name: str
    latitude: float
    longitude: float
    radius_meters: float
    is_active: bool
    address: Optional[str] = None

    class Config:
        from_attributes = True


class RunJournalResponse(BaseModel):
    id: int
    mode: str
    status: str
    started_at: str
    finished_at: Optional[str] = None
    clusters_written: int
    events_written: int
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_session_or_404(db: Session, session_id: int) -> WorkSession:
    session = db.query(WorkSession).filter(WorkSession.id == session_id).first()
    if not session:
        raise HTTPException(status_code=404, detail="Work session not found")
    return session


def _run(fn, db: Session, session_id: int, **kwargs):
    """Call an engine entry point and map its failures to HTTP errors."""
    try:
        return fn(db, session_id, **kwargs)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Work session not found")
    except FixSourceUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except SegmentationError as e:
        raise HTTPException(status_code=500, detail=f"Segmentation failed: {e}")


def _iso(dt: datetime.datetime | None) -> Optional[str]:
    return dt.isoformat() if dt else None


def _session_response(s: WorkSession) -> SessionResponse:
    return SessionResponse(
        id=s.id,
        employee_id=s.employee_id,
        status=s.status,
        clocked_in_at=s.clocked_in_at.isoformat(),
        clocked_out_at=_iso(s.clocked_out_at),
    )


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------

@router.post("/sessions", response_model=SessionResponse, status_code=201)
def open_session(req: SessionCreate, db: Session = Depends(get_db)):
    employee = db.query(Employee).filter(Employee.id == req.employee_id).first()
    if not employee:
        raise HTTPException(status_code=404, detail="Employee not found")
    clocked_in_at = (
        datetime.datetime.fromisoformat(req.clocked_in_at) if req.clocked_in_at
        else datetime.datetime.utcnow()
    )
    session = WorkSession(employee_id=employee.id, status="active", clocked_in_at=clocked_in_at)
    db.add(session)
    db.commit()
    db.refresh(session)
    logger.info("Session %d opened for employee=%d", session.id, employee.id)
    return _session_response(session)


@router.post("/sessions/{session_id}/fixes", response_model=BatchResponse)
def upload_fixes(session_id: int, batch: FixBatch, db: Session = Depends(get_db)):
    session = _get_session_or_404(db, session_id)

    batch_id = uuid.uuid4().hex[:12]
    now = datetime.datetime.utcnow()

    for pt in batch.fixes:
        db.add(LocationFix(
            session_id=session.id,
            latitude=pt.latitude,
            longitude=pt.longitude,
            horizontal_accuracy=pt.horizontal_accuracy,
            speed=pt.speed,
            captured_at=datetime.datetime.fromisoformat(pt.captured_at),
            received_at=now,
            batch_id=batch_id,
        ))
    db.commit()

    logger.info(
        "Received %d fixes for session=%d batch=%s",
        len(batch.fixes), session.id, batch_id,
    )

    # Keep trip detection current while the shift is still running
    trips_detected = 0
    if session.status == "active":
        result = _run(process_session, db, session.id)
        trips_detected = len(result.trips)

    return BatchResponse(received=len(batch.fixes), batch_id=batch_id, trips_detected=trips_detected)


@router.post("/sessions/{session_id}/close", response_model=RunResponse)
def close(session_id: int, req: CloseRequest | None = None, db: Session = Depends(get_db)):
    clocked_out_at = None
    if req is not None and req.clocked_out_at:
        clocked_out_at = datetime.datetime.fromisoformat(req.clocked_out_at)
    result = _run(close_session, db, session_id, clocked_out_at=clocked_out_at)
    return RunResponse(
        session_id=session_id,
        clusters=len(result.clusters),
        trips=len(result.trips),
        rejected_trips=result.rejected_trips,
    )


@router.post("/sessions/{session_id}/segment", response_model=RunResponse)
def segment(session_id: int, db: Session = Depends(get_db)):
    """Recompute clusters and trips for a session from all of its fixes."""
    result = _run(reprocess_session, db, session_id)
    return RunResponse(
        session_id=session_id,
        clusters=len(result.clusters),
        trips=len(result.trips),
        rejected_trips=result.rejected_trips,
    )


@router.get("/sessions/{session_id}/clusters", response_model=list[ClusterResponse])
def get_clusters(session_id: int, db: Session = Depends(get_db)):
    _get_session_or_404(db, session_id)
    clusters = (
        db.query(StationaryCluster)
        .filter(StationaryCluster.session_id == session_id)
        .order_by(StationaryCluster.started_at.asc())
        .all()
    )
    return [
        ClusterResponse(
            id=c.id,
            centroid_latitude=c.centroid_latitude,
            centroid_longitude=c.centroid_longitude,
            centroid_accuracy=c.centroid_accuracy,
            started_at=c.started_at.isoformat(),
            ended_at=c.ended_at.isoformat(),
            duration_seconds=c.duration_seconds,
            point_count=c.point_count,
            gap_seconds=c.gap_seconds,
            gap_episode_count=c.gap_episode_count,
            matched_place_id=c.matched_place_id,
        )
        for c in clusters
    ]


@router.get("/sessions/{session_id}/events", response_model=list[EventResponse])
def get_events(session_id: int, db: Session = Depends(get_db)):
    _get_session_or_404(db, session_id)
    events = (
        db.query(MovementEvent)
        .filter(MovementEvent.session_id == session_id)
        .order_by(MovementEvent.started_at.asc())
        .all()
    )
    return [
        EventResponse(
            id=e.id,
            started_at=e.started_at.isoformat(),
            ended_at=e.ended_at.isoformat(),
            start_latitude=e.start_latitude,
            start_longitude=e.start_longitude,
            end_latitude=e.end_latitude,
            end_longitude=e.end_longitude,
            great_circle_distance_km=e.great_circle_distance_km,
            corrected_distance_km=e.corrected_distance_km,
            duration_minutes=e.duration_minutes,
            transport_mode=e.transport_mode,
            transit_point_count=e.transit_point_count,
            low_accuracy_point_count=e.low_accuracy_point_count,
            confidence_score=e.confidence_score,
            has_coverage_gap=e.has_coverage_gap,
            preceding_cluster_id=e.preceding_cluster_id,
            following_cluster_id=e.following_cluster_id,
            start_place_id=e.start_place_id,
            end_place_id=e.end_place_id,
        )
        for e in events
    ]


@router.get("/sessions/{session_id}/runs", response_model=list[RunJournalResponse])
def get_runs(session_id: int, limit: int = 20, db: Session = Depends(get_db)):
    _get_session_or_404(db, session_id)
    runs = (
        db.query(SegmentationRun)
        .filter(SegmentationRun.session_id == session_id)
        .order_by(SegmentationRun.id.desc())
        .limit(limit)
        .all()
    )
    return [
        RunJournalResponse(
            id=r.id,
            mode=r.mode,
            status=r.status,
            started_at=r.started_at.isoformat(),
            finished_at=_iso(r.finished_at),
            clusters_written=r.clusters_written or 0,
            events_written=r.events_written or 0,
            error_message=r.error_message,
        )
        for r in runs
    ]


# ---------------------------------------------------------------------------
# Place endpoints
# ---------------------------------------------------------------------------

@router.get("/places", response_model=list[PlaceResponse])
def get_places(db: Session = Depends(get_db)):
    places = db.query(Place).order_by(Place.name.asc()).all()
    return [PlaceResponse.model_validate(p) for p in places]


@router.post("/places", response_model=PlaceResponse, status_code=201)
def create_place(req: PlaceCreate, db: Session = Depends(get_db)):
    place = Place(
        name=req.name,
        latitude=req.latitude,
        longitude=req.longitude,
        radius_meters=req.radius_meters,
        address=req.address,
        is_active=True,
    )
    db.add(place)
    db.commit()
    db.refresh(place)
    logger.info("Place created: %s (id=%d, radius=%.0fm)", place.name, place.id, place.radius_meters)
    return PlaceResponse.model_validate(place)
