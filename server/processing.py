"""Trip detection engine: stationary clusters and movement events for a work session.

Processing pipeline (runs server-side at clock-out, and incrementally on each
batch upload while the session is still active):
1. Read the session's fixes in time order, dropping unusable accuracy (> 200m)
2. Track stationary clusters and the transit fixes between them
3. Synthesize a trip at each cluster promotion (and at end of stream) and
   drop ghost trips
4. Match clusters and trip endpoints to known places
5. Replace the session's stored clusters/trips in one transaction
"""

import contextlib
import datetime
import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import FixSourceUnavailableError, SegmentationError, SessionNotFoundError
from models import (
    Config, LocationFix, MovementEvent, MovementEventPoint, SegmentationRun,
    StationaryCluster, WorkSession,
)
from resolvers import GeofenceResolver, LocationResolver, SpeedTransportClassifier, TransportClassifier
from segmentation import (
    CLUSTER_CONFIRM_S, CLUSTER_RADIUS_M, GAP_GRACE_S,
    ClusterRecord, ClusterTracker, FixRecord, TripCandidate,
)
from trips import (
    LOW_ACCURACY_M, MIN_DRIVING_DISPLACEMENT_KM, MIN_DRIVING_KM, MIN_DRIVING_STRAIGHTNESS,
    MIN_TRIP_KM, MIN_WALKING_DISPLACEMENT_KM, ROAD_CORRECTION_FACTOR,
    TripRecord, apply_validity_filters, resolve_endpoints, safe_resolve, synthesize_trip,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MAX_ACCURACY_M = 200.0        # fixes worse than this are noise, never used
DEFAULT_ACCURACY_M = 20.0     # assumed when a fix reports no accuracy

COMPLETE = "complete"         # closed session: full replace of results
INCREMENTAL = "incremental"   # active session: only fixes newer than a cutoff

TAG_BATCH_SIZE = 500          # fix ids per UPDATE (SQLite bound-parameter limit)


def get_thresholds(db: Session) -> dict:
    """Read algorithm thresholds from the Config table, falling back to module defaults."""
    defaults = {
        "max_accuracy_m": MAX_ACCURACY_M,
        "default_accuracy_m": DEFAULT_ACCURACY_M,
        "cluster_radius_m": CLUSTER_RADIUS_M,
        "cluster_confirm_s": CLUSTER_CONFIRM_S,
        "gap_grace_s": GAP_GRACE_S,
        "road_correction_factor": ROAD_CORRECTION_FACTOR,
        "min_trip_km": MIN_TRIP_KM,
        "min_driving_km": MIN_DRIVING_KM,
        "min_driving_displacement_km": MIN_DRIVING_DISPLACEMENT_KM,
        "min_driving_straightness": MIN_DRIVING_STRAIGHTNESS,
        "min_walking_displacement_km": MIN_WALKING_DISPLACEMENT_KM,
        "low_accuracy_m": LOW_ACCURACY_M,
    }
    rows = db.query(Config).filter(Config.key.in_(defaults.keys())).all()
    for row in rows:
        defaults[row.key] = float(row.value)
    return defaults


@dataclass(frozen=True)
class SessionContext:
    """Everything a run needs to know about the session it processes."""

    session_id: int
    employee_id: int
    mode: str = COMPLETE
    cutoff: Optional[datetime.datetime] = None
    persist_clusters: bool = True


@dataclass
class SegmentationResult:
    clusters: list[ClusterRecord] = field(default_factory=list)
    trips: list[TripRecord] = field(default_factory=list)
    point_tags: dict = field(default_factory=dict)   # fix id -> cluster seq, None for transit
    rejected_trips: int = 0


def load_session_context(
    db: Session,
    session_id: int,
    mode: Optional[str] = None,
    cutoff: Optional[datetime.datetime] = None,
    persist_clusters: Optional[bool] = None,
) -> SessionContext:
    """Build the context for ``session_id`` from the session row.

    Completed sessions default to a complete run; active ones to an
    incremental run after the newest fix already used by a stored trip.
    """
    try:
        session = db.query(WorkSession).filter(WorkSession.id == session_id).first()
    except SQLAlchemyError as e:
        raise FixSourceUnavailableError(f"Cannot read work session {session_id}: {e}") from e
    if session is None:
        raise SessionNotFoundError(session_id)

    if mode is None:
        mode = INCREMENTAL if session.status == "active" else COMPLETE
    if mode == INCREMENTAL and cutoff is None:
        cutoff = incremental_cutoff(db, session_id)
    if persist_clusters is None:
        persist_clusters = mode == COMPLETE

    return SessionContext(
        session_id=session.id,
        employee_id=session.employee_id,
        mode=mode,
        cutoff=cutoff if mode == INCREMENTAL else None,
        persist_clusters=persist_clusters,
    )


def incremental_cutoff(db: Session, session_id: int) -> Optional[datetime.datetime]:
    """Capture time of the newest fix already attached to a stored trip."""
    return (
        db.query(func.max(LocationFix.captured_at))
        .join(MovementEventPoint, MovementEventPoint.fix_id == LocationFix.id)
        .join(MovementEvent, MovementEvent.id == MovementEventPoint.event_id)
        .filter(MovementEvent.session_id == session_id)
        .scalar()
    )


# ---------------------------------------------------------------------------
# Step 1: Point stream
# ---------------------------------------------------------------------------

def iter_session_fixes(
    db: Session,
    session_id: int,
    cutoff: Optional[datetime.datetime] = None,
    thresholds: dict | None = None,
) -> Iterator[FixRecord]:
    """Yield the session's usable fixes in capture order.

    Fixes with accuracy above max_accuracy_m are dropped silently; a missing
    accuracy becomes default_accuracy_m.
    """
    max_acc = (thresholds or {}).get("max_accuracy_m", MAX_ACCURACY_M)
    default_acc = (thresholds or {}).get("default_accuracy_m", DEFAULT_ACCURACY_M)

    query = db.query(LocationFix).filter(LocationFix.session_id == session_id)
    if cutoff is not None:
        query = query.filter(LocationFix.captured_at > cutoff)
    query = query.order_by(LocationFix.captured_at.asc(), LocationFix.id.asc())

    try:
        for loc in query.yield_per(500):
            acc = loc.horizontal_accuracy
            if acc is not None and acc > max_acc:
                continue
            yield FixRecord(
                id=loc.id,
                captured_at=loc.captured_at,
                latitude=loc.latitude,
                longitude=loc.longitude,
                accuracy=acc if acc is not None else default_acc,
                speed=loc.speed,
            )
    except SQLAlchemyError as e:
        raise FixSourceUnavailableError(f"Cannot read fixes for session {session_id}: {e}") from e


# ---------------------------------------------------------------------------
# Steps 2-4: Segmentation (no database access)
# ---------------------------------------------------------------------------

def segment_fixes(
    fixes: Iterable[FixRecord],
    mode: str = COMPLETE,
    thresholds: dict | None = None,
    classifier: TransportClassifier | None = None,
    resolver: LocationResolver | None = None,
) -> SegmentationResult:
    """Run the cluster tracker over ``fixes`` and synthesize the trips.

    In incremental mode the trailing movement is still in progress and is
    left for a later run.
    """
    tracker = ClusterTracker(thresholds)
    result = SegmentationResult()
    previous: Optional[TripRecord] = None

    for fix in fixes:
        result.point_tags[fix.id] = None
        candidate = tracker.feed(fix)
        if candidate is not None:
            previous = _emit_trip(candidate, result, previous, thresholds, classifier, resolver)

    trailing = tracker.finish()
    if trailing is not None and mode == COMPLETE:
        _emit_trip(trailing, result, previous, thresholds, classifier, resolver)

    for cluster in tracker.clusters:
        cluster.matched_place_id = match_cluster_place(resolver, cluster)
        for fix_id in cluster.fix_ids:
            result.point_tags[fix_id] = cluster.seq
    result.clusters = list(tracker.clusters)
    return result


def _emit_trip(
    candidate: TripCandidate,
    result: SegmentationResult,
    previous: Optional[TripRecord],
    thresholds: dict | None,
    classifier: TransportClassifier | None,
    resolver: LocationResolver | None,
) -> Optional[TripRecord]:
    """Synthesize, filter and resolve one trip. Returns the latest surviving trip."""
    trip = synthesize_trip(candidate, thresholds)
    if trip is None:
        return previous

    reason = apply_validity_filters(trip, candidate.transit, classifier, thresholds)
    if reason is not None:
        result.rejected_trips += 1
        logger.debug(
            "Dropped trip %s -> %s (%.3f km, %s): %s",
            trip.started_at.isoformat(), trip.ended_at.isoformat(),
            trip.corrected_distance_km, trip.transport_mode, reason,
        )
        return previous

    resolve_endpoints(trip, resolver, previous)
    result.trips.append(trip)
    return trip


def match_cluster_place(resolver: LocationResolver | None, cluster: ClusterRecord) -> Optional[int]:
    """Match by centroid first, then by point voting when the resolver supports it."""
    place_id = safe_resolve(
        resolver, cluster.centroid_latitude, cluster.centroid_longitude, cluster.centroid_accuracy,
    )
    if place_id is not None or resolver is None or not hasattr(resolver, "vote"):
        return place_id
    try:
        return resolver.vote(cluster.samples)
    except Exception as e:
        logger.warning("Point voting failed for cluster %d: %s", cluster.seq, e)
        return None


# ---------------------------------------------------------------------------
# Step 5: Persistence
# ---------------------------------------------------------------------------

def replace_session_results(db: Session, ctx: SessionContext, result: SegmentationResult) -> tuple[int, int]:
    """Atomically replace the stored clusters, trips and fix tags of a session.

    A complete run replaces everything. An incremental run replaces only rows
    that started after its cutoff. Returns (clusters_written, events_written).
    """
    try:
        _delete_previous_results(db, ctx)

        cluster_ids: dict[int, int] = {}
        if ctx.persist_clusters:
            for c in result.clusters:
                row = StationaryCluster(
                    session_id=ctx.session_id,
                    employee_id=ctx.employee_id,
                    centroid_latitude=c.centroid_latitude,
                    centroid_longitude=c.centroid_longitude,
                    centroid_accuracy=c.centroid_accuracy,
                    started_at=c.started_at,
                    ended_at=c.ended_at,
                    duration_seconds=c.duration_seconds,
                    point_count=c.point_count,
                    gap_seconds=c.gap_seconds,
                    gap_episode_count=c.gap_episode_count,
                    matched_place_id=c.matched_place_id,
                )
                db.add(row)
                db.flush()  # get the id
                cluster_ids[c.seq] = row.id
                for chunk in _chunks(c.fix_ids, TAG_BATCH_SIZE):
                    db.query(LocationFix).filter(LocationFix.id.in_(chunk)).update(
                        {LocationFix.stationary_cluster_id: row.id}, synchronize_session=False,
                    )

        for t in result.trips:
            event = MovementEvent(
                session_id=ctx.session_id,
                employee_id=ctx.employee_id,
                started_at=t.started_at,
                ended_at=t.ended_at,
                start_latitude=t.start_latitude,
                start_longitude=t.start_longitude,
                end_latitude=t.end_latitude,
                end_longitude=t.end_longitude,
                great_circle_distance_km=round(t.great_circle_distance_km, 3),
                corrected_distance_km=round(t.corrected_distance_km, 3),
                duration_minutes=t.duration_minutes,
                transport_mode=t.transport_mode,
                transit_point_count=t.transit_point_count,
                low_accuracy_point_count=t.low_accuracy_point_count,
                confidence_score=t.confidence_score,
                has_coverage_gap=t.has_coverage_gap,
                preceding_cluster_id=cluster_ids.get(t.preceding_cluster_seq),
                following_cluster_id=cluster_ids.get(t.following_cluster_seq),
                start_place_id=t.start_place_id,
                end_place_id=t.end_place_id,
            )
            event.points = [
                MovementEventPoint(fix_id=fix_id, sequence_order=i)
                for i, fix_id in enumerate(t.transit_fix_ids, start=1)
            ]
            db.add(event)

        db.commit()
    except Exception:
        db.rollback()
        raise

    return len(cluster_ids), len(result.trips)


def _chunks(ids: tuple, size: int):
    for i in range(0, len(ids), size):
        yield ids[i:i + size]


def _delete_previous_results(db: Session, ctx: SessionContext):
    events = db.query(MovementEvent).filter(MovementEvent.session_id == ctx.session_id)
    clusters = db.query(StationaryCluster).filter(StationaryCluster.session_id == ctx.session_id)
    if ctx.mode == INCREMENTAL and ctx.cutoff is not None:
        events = events.filter(MovementEvent.started_at > ctx.cutoff)
        clusters = clusters.filter(StationaryCluster.started_at > ctx.cutoff)

    event_ids = [e.id for e in events.all()]
    if event_ids:
        db.query(MovementEventPoint).filter(MovementEventPoint.event_id.in_(event_ids)).delete(
            synchronize_session=False,
        )
        db.query(MovementEvent).filter(MovementEvent.id.in_(event_ids)).delete(synchronize_session=False)

    if ctx.mode == COMPLETE or ctx.persist_clusters:
        cluster_ids = [c.id for c in clusters.all()]
        if cluster_ids:
            db.query(LocationFix).filter(LocationFix.stationary_cluster_id.in_(cluster_ids)).update(
                {LocationFix.stationary_cluster_id: None}, synchronize_session=False,
            )
            db.query(StationaryCluster).filter(StationaryCluster.id.in_(cluster_ids)).delete(
                synchronize_session=False,
            )


# ---------------------------------------------------------------------------
# Full pipeline: one run over one session
# ---------------------------------------------------------------------------

_session_locks: dict[int, threading.Lock] = {}
_session_locks_guard = threading.Lock()


@contextlib.contextmanager
def session_lock(session_id: int):
    """Serialize runs for the same session within this process."""
    with _session_locks_guard:
        lock = _session_locks.setdefault(session_id, threading.Lock())
    with lock:
        yield


def run_segmentation(
    db: Session,
    ctx: SessionContext,
    thresholds: dict | None = None,
    classifier: TransportClassifier | None = None,
    resolver: LocationResolver | None = None,
) -> SegmentationResult:
    """Segment one session and store the results, journaling the run.

    Either the session's results are fully replaced or they are left as they
    were; errors propagate to the caller, which owns any retry policy.
    """
    if thresholds is None:
        thresholds = get_thresholds(db)
    if classifier is None:
        classifier = SpeedTransportClassifier()
    if resolver is None:
        resolver = _default_resolver(db)

    job = SegmentationRun(session_id=ctx.session_id, mode=ctx.mode, status="running")
    db.add(job)
    db.commit()
    db.refresh(job)
    job_id = job.id

    try:
        with session_lock(ctx.session_id):
            fixes = iter_session_fixes(db, ctx.session_id, ctx.cutoff, thresholds)
            result = segment_fixes(fixes, ctx.mode, thresholds, classifier, resolver)
            clusters_written, events_written = replace_session_results(db, ctx, result)
    except Exception as e:
        db.rollback()
        _finish_job(db, job_id, "failed", error=str(e))
        if isinstance(e, SegmentationError):
            logger.error(
                "Segmentation failed for session=%d (retryable=%s): %s",
                ctx.session_id, e.retryable, e,
            )
        else:
            logger.exception("Segmentation crashed for session=%d", ctx.session_id)
        raise

    _finish_job(db, job_id, "completed", clusters=clusters_written, events=events_written)
    logger.info(
        "Segmented session=%d mode=%s: %d clusters, %d trips (%d dropped), %d fixes",
        ctx.session_id, ctx.mode, len(result.clusters), len(result.trips),
        result.rejected_trips, len(result.point_tags),
    )
    return result


def _default_resolver(db: Session) -> Optional[LocationResolver]:
    try:
        return GeofenceResolver(db)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Place geofences unavailable, places will be unmatched: %s", e)
        return None


def _finish_job(db: Session, job_id: int, status: str, clusters: int = 0, events: int = 0, error: str | None = None):
    job = db.query(SegmentationRun).filter(SegmentationRun.id == job_id).first()
    if job is None:
        return
    job.status = status
    job.finished_at = datetime.datetime.utcnow()
    job.clusters_written = clusters
    job.events_written = events
    job.error_message = error
    db.commit()


def process_session(db: Session, session_id: int, **kwargs) -> SegmentationResult:
    """Run the engine for a session in the mode its status calls for."""
    ctx = load_session_context(db, session_id)
    return run_segmentation(db, ctx, **kwargs)


def reprocess_session(db: Session, session_id: int, **kwargs) -> SegmentationResult:
    """Recompute a session from all of its fixes and replace every stored result."""
    ctx = load_session_context(db, session_id, mode=COMPLETE)
    return run_segmentation(db, ctx, **kwargs)


def close_session(
    db: Session, session_id: int, clocked_out_at: Optional[datetime.datetime] = None, **kwargs,
) -> SegmentationResult:
    """Clock the session out and run the complete segmentation."""
    session = db.query(WorkSession).filter(WorkSession.id == session_id).first()
    if session is None:
        raise SessionNotFoundError(session_id)
    session.status = "completed"
    session.clocked_out_at = clocked_out_at or datetime.datetime.utcnow()
    db.commit()
    logger.info("Session %d clocked out at %s", session_id, session.clocked_out_at.isoformat())
    return reprocess_session(db, session_id, **kwargs)
