"""Query collaborators used during a run: transport mode and place matching.

Both are injected into the engine so the segmentation core can be exercised
without a database. The defaults below are the heuristics the service ships
with; any object with the same method signature can replace them.
"""

import logging
from typing import Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from geo import haversine_km, haversine_m
from models import Place
from segmentation import FixRecord

logger = logging.getLogger(__name__)

DRIVING = "driving"
WALKING = "walking"
UNKNOWN = "unknown"

# Speed heuristic (km/h)
DRIVING_AVG_SPEED_KMH = 10.0     # faster than anyone walks a whole trip
WALKING_AVG_SPEED_KMH = 4.0
SLOW_SEGMENT_KMH = 5.0
GLITCH_SEGMENT_KMH = 200.0       # inter-fix speeds above this are GPS jumps
SPARSE_TIEBREAK_KMH = 6.0
SLOW_SEGMENT_RATIO = 0.8
WALKING_MAX_DISTANCE_KM = 1.0

# Point voting
VOTE_THRESHOLD = 0.30


class TransportClassifier(Protocol):
    def classify(
        self, transit: Sequence[FixRecord], distance_km: float, duration_minutes: int,
    ) -> str: ...


class LocationResolver(Protocol):
    def resolve(self, latitude: float, longitude: float, accuracy_m: float) -> Optional[int]: ...


# ---------------------------------------------------------------------------
# Transport mode
# ---------------------------------------------------------------------------

class SpeedTransportClassifier:
    """Classify a movement as walking or driving from its speeds.

    1. The trip's average speed decides clear cases (> 10 km/h driving,
       < 4 km/h walking).
    2. In the 4-10 km/h grey zone, look at the speed between consecutive
       transit fixes: mostly slow segments over a short distance is walking,
       anything else is city driving with stops.
    """

    def classify(self, transit, distance_km, duration_minutes):
        if distance_km is None or not duration_minutes or duration_minutes <= 0:
            return UNKNOWN

        avg_speed = distance_km / (duration_minutes / 60.0)
        if avg_speed > DRIVING_AVG_SPEED_KMH:
            return DRIVING
        if avg_speed < WALKING_AVG_SPEED_KMH:
            return WALKING

        speeds = _segment_speeds_kmh(transit)
        if len(speeds) < 2:
            return DRIVING if avg_speed >= SPARSE_TIEBREAK_KMH else WALKING

        slow_ratio = sum(1 for s in speeds if s < SLOW_SEGMENT_KMH) / len(speeds)
        if slow_ratio > SLOW_SEGMENT_RATIO and distance_km < WALKING_MAX_DISTANCE_KM:
            return WALKING
        return DRIVING


def _segment_speeds_kmh(transit: Sequence[FixRecord]) -> list[float]:
    speeds = []
    for prev, cur in zip(transit, transit[1:]):
        hours = (cur.captured_at - prev.captured_at).total_seconds() / 3600.0
        if hours <= 0:
            continue
        speed = haversine_km(prev.latitude, prev.longitude, cur.latitude, cur.longitude) / hours
        if speed < GLITCH_SEGMENT_KMH:
            speeds.append(speed)
    return speeds


# ---------------------------------------------------------------------------
# Place matching
# ---------------------------------------------------------------------------

class GeofenceResolver:
    """Match coordinates against the active Place geofences.

    Places are read once when the resolver is built, so one run sees one
    consistent set of geofences.
    """

    def __init__(self, db: Session):
        self.places = (
            db.query(Place)
            .filter(Place.is_active.is_(True))
            .order_by(Place.id.asc())
            .all()
        )

    def resolve(self, latitude, longitude, accuracy_m=0.0):
        """Nearest place whose radius plus ``accuracy_m`` contains the point."""
        best_id = None
        best_dist = float("inf")
        for p in self.places:
            d = haversine_m(latitude, longitude, p.latitude, p.longitude)
            if d <= p.radius_meters + (accuracy_m or 0.0) and d < best_dist:
                best_dist = d
                best_id = p.id
        return best_id

    def vote(self, samples: Sequence[tuple], threshold: float = VOTE_THRESHOLD) -> Optional[int]:
        """Match a cluster by the share of its raw fixes inside each geofence.

        Indoor fixes are biased toward the street, which can drag an
        accuracy-weighted centroid out of a building's geofence while many of
        the individual fixes are still inside it. A place wins with at least
        ``threshold`` of the fixes; ties go to the place nearest the plain mean.
        """
        if not samples:
            return None
        total = len(samples)
        mean_lat = sum(s[0] for s in samples) / total
        mean_lon = sum(s[1] for s in samples) / total

        best_key = None
        best_id = None
        for p in self.places:
            inside = sum(
                1 for lat, lon, acc in samples
                if haversine_m(lat, lon, p.latitude, p.longitude) <= p.radius_meters + (acc or 0.0)
            )
            ratio = inside / total
            if ratio < threshold:
                continue
            key = (-ratio, haversine_m(mean_lat, mean_lon, p.latitude, p.longitude))
            if best_key is None or key < best_key:
                best_key = key
                best_id = p.id
        return best_id
