"""Trip synthesizer: turns a TripCandidate into a movement event, or drops it.

Runs once per cluster promotion and once at the end of the stream. The
filters below suppress "ghost" trips: movements synthesized from GPS wander
around one place rather than from real displacement.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Optional

from geo import haversine_km, haversine_m
from resolvers import DRIVING, UNKNOWN, WALKING, LocationResolver, TransportClassifier
from segmentation import FixRecord, TripCandidate

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

ROAD_CORRECTION_FACTOR = 1.3           # great-circle → road distance
MIN_TRIP_KM = 0.2                      # corrected distance, any mode
MIN_DRIVING_KM = 0.5                   # corrected distance
MIN_DRIVING_DISPLACEMENT_KM = 0.05
MIN_DRIVING_STRAIGHTNESS = 0.10        # displacement / corrected distance
STRAIGHTNESS_MAX_POINTS = 10           # only short driving trips are checked
MIN_WALKING_DISPLACEMENT_KM = 0.1
LOW_ACCURACY_M = 50.0
COVERAGE_POINTS_PER_MINUTE = 0.5       # fewer transit fixes than this → coverage gap
ENDPOINT_REUSE_M = 100.0
NO_TRANSIT_CONFIDENCE = 0.80


@dataclass
class TripRecord:
    started_at: datetime.datetime
    ended_at: datetime.datetime
    start_latitude: float
    start_longitude: float
    start_accuracy: float
    end_latitude: float
    end_longitude: float
    end_accuracy: float
    great_circle_distance_km: float
    corrected_distance_km: float
    duration_minutes: int
    transit_point_count: int
    low_accuracy_point_count: int
    confidence_score: float
    has_coverage_gap: bool
    preceding_cluster_seq: Optional[int] = None
    following_cluster_seq: Optional[int] = None
    transport_mode: str = UNKNOWN
    start_place_id: Optional[int] = None
    end_place_id: Optional[int] = None
    transit_fix_ids: tuple = field(default_factory=tuple)


def synthesize_trip(candidate: TripCandidate, thresholds: dict | None = None) -> Optional[TripRecord]:
    """Build the movement event described by ``candidate``.

    Endpoints come from the departing/arriving cluster centroids; a missing
    cluster is replaced by the first/last transit fix. Returns None when the
    candidate has no usable endpoint on either side.
    """
    factor = (thresholds or {}).get("road_correction_factor", ROAD_CORRECTION_FACTOR)
    low_acc = (thresholds or {}).get("low_accuracy_m", LOW_ACCURACY_M)

    transit = candidate.transit
    dep, arr = candidate.departing, candidate.arriving

    if dep is not None:
        start = (dep.centroid_latitude, dep.centroid_longitude, dep.centroid_accuracy)
        started_at = dep.ended_at
    elif transit:
        start = _fix_endpoint(transit[0])
        started_at = transit[0].captured_at
    else:
        return None

    if arr is not None:
        end = (arr.centroid_latitude, arr.centroid_longitude, arr.centroid_accuracy)
        ended_at = arr.started_at
    elif transit:
        end = _fix_endpoint(transit[-1])
        ended_at = transit[-1].captured_at
    else:
        return None

    displacement_km = haversine_km(start[0], start[1], end[0], end[1])
    seconds = max((ended_at - started_at).total_seconds(), 0.0)
    point_count = len(transit)
    low_count = sum(1 for f in transit if f.accuracy > low_acc)

    if point_count > 0:
        confidence = round(max(0.0, 1.0 - low_count / point_count), 2)
    else:
        confidence = NO_TRANSIT_CONFIDENCE

    return TripRecord(
        started_at=started_at,
        ended_at=ended_at,
        start_latitude=start[0],
        start_longitude=start[1],
        start_accuracy=start[2],
        end_latitude=end[0],
        end_longitude=end[1],
        end_accuracy=end[2],
        great_circle_distance_km=displacement_km,
        corrected_distance_km=displacement_km * factor,
        duration_minutes=max(1, int(seconds / 60.0 + 0.5)),
        transit_point_count=point_count,
        low_accuracy_point_count=low_count,
        confidence_score=confidence,
        has_coverage_gap=_has_coverage_gap(candidate.gap_seconds, point_count, seconds),
        preceding_cluster_seq=dep.seq if dep is not None else None,
        following_cluster_seq=arr.seq if arr is not None else None,
        transit_fix_ids=tuple(f.id for f in transit),
    )


def _fix_endpoint(fix: FixRecord) -> tuple[float, float, float]:
    return fix.latitude, fix.longitude, fix.accuracy


def _has_coverage_gap(gap_seconds: float, point_count: int, seconds: float) -> bool:
    if gap_seconds <= 0:
        return False
    return point_count == 0 or point_count < (seconds / 60.0) * COVERAGE_POINTS_PER_MINUTE


# ---------------------------------------------------------------------------
# Validity filters
# ---------------------------------------------------------------------------

def apply_validity_filters(
    trip: TripRecord,
    transit: list[FixRecord],
    classifier: TransportClassifier | None,
    thresholds: dict | None = None,
) -> Optional[str]:
    """Classify ``trip`` and check it against the ghost-trip rules, in order.

    Sets ``trip.transport_mode``. Returns None when the trip survives,
    otherwise a short reason for the rejection.
    """
    t = thresholds or {}
    min_trip = t.get("min_trip_km", MIN_TRIP_KM)
    min_driving = t.get("min_driving_km", MIN_DRIVING_KM)
    min_driving_disp = t.get("min_driving_displacement_km", MIN_DRIVING_DISPLACEMENT_KM)
    min_straightness = t.get("min_driving_straightness", MIN_DRIVING_STRAIGHTNESS)
    min_walking_disp = t.get("min_walking_displacement_km", MIN_WALKING_DISPLACEMENT_KM)

    distance = trip.corrected_distance_km
    displacement = trip.great_circle_distance_km

    if distance < min_trip:
        return "below minimum distance"

    mode = classify_mode(classifier, trip, transit)
    trip.transport_mode = mode

    if mode == DRIVING:
        if distance < min_driving:
            return "driving below minimum distance"
        if displacement < min_driving_disp:
            return "driving with near-zero displacement"
        if trip.transit_point_count <= STRAIGHTNESS_MAX_POINTS and displacement / distance < min_straightness:
            return "short driving trip too winding"
    elif mode == WALKING:
        if displacement < min_walking_disp:
            return "walking below minimum displacement"
    return None


def classify_mode(classifier: TransportClassifier | None, trip: TripRecord, transit: list[FixRecord]) -> str:
    """Ask the classifier for a mode; an unavailable classifier means unknown."""
    if classifier is None:
        return UNKNOWN
    try:
        mode = classifier.classify(transit, trip.corrected_distance_km, trip.duration_minutes)
    except Exception as e:
        logger.warning("Transport classifier failed, using '%s': %s", UNKNOWN, e)
        return UNKNOWN
    return mode if mode in (DRIVING, WALKING) else UNKNOWN


# ---------------------------------------------------------------------------
# Endpoint matching
# ---------------------------------------------------------------------------

def safe_resolve(resolver: LocationResolver | None, lat: float, lon: float, accuracy: float) -> Optional[int]:
    """Resolve a place, treating resolver failures as no match."""
    if resolver is None:
        return None
    try:
        return resolver.resolve(lat, lon, accuracy or 0.0)
    except Exception as e:
        logger.warning("Location resolver failed for (%.6f, %.6f): %s", lat, lon, e)
        return None


def resolve_endpoints(
    trip: TripRecord,
    resolver: LocationResolver | None,
    previous: Optional[TripRecord] = None,
):
    """Fill ``start_place_id``/``end_place_id`` on a surviving trip.

    A trip that starts where the previous surviving trip ended (within
    ENDPOINT_REUSE_M) reuses that trip's end place so consecutive legs agree.
    """
    if (
        previous is not None
        and previous.end_place_id is not None
        and haversine_m(
            trip.start_latitude, trip.start_longitude,
            previous.end_latitude, previous.end_longitude,
        ) < ENDPOINT_REUSE_M
    ):
        trip.start_place_id = previous.end_place_id
    else:
        trip.start_place_id = safe_resolve(
            resolver, trip.start_latitude, trip.start_longitude, trip.start_accuracy,
        )
    trip.end_place_id = safe_resolve(resolver, trip.end_latitude, trip.end_longitude, trip.end_accuracy)
