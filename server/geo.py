"""Geo math shared by the cluster tracker and the trip synthesizer."""

import math
from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True, slots=True)
class Centroid:
    """Accuracy-weighted centre of a set of fixes."""

    latitude: float
    longitude: float
    accuracy: float


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    R = 6_371_000  # Earth radius in metres
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return R * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_m(lat1, lon1, lat2, lon2) / 1000.0


def adjusted_distance_m(
    centroid_lat: float,
    centroid_lon: float,
    lat: float,
    lon: float,
    accuracy_m: float,
) -> float:
    """Distance from a centroid to a fix, shrunk by the fix's accuracy radius.

    A noisy fix could plausibly be closer than it reads, never further, so the
    result is clamped at zero.
    """
    return max(haversine_m(centroid_lat, centroid_lon, lat, lon) - accuracy_m, 0.0)


def weighted_centroid(samples: Iterable[tuple[float, float, float]]) -> Centroid | None:
    """Closed-form accuracy-weighted centroid of ``(lat, lon, accuracy)`` samples.

    weight_i = 1 / max(acc_i, 1)
    accuracy = 1 / sqrt(sum(1 / max(acc_i^2, 1)))

    Returns None for an empty input.
    """
    sum_w = 0.0
    sum_lat = 0.0
    sum_lon = 0.0
    sum_inv_var = 0.0
    for lat, lon, acc in samples:
        w = 1.0 / max(acc, 1.0)
        sum_w += w
        sum_lat += lat * w
        sum_lon += lon * w
        sum_inv_var += 1.0 / max(acc * acc, 1.0)

    if sum_w == 0.0:
        return None
    return Centroid(
        latitude=sum_lat / sum_w,
        longitude=sum_lon / sum_w,
        accuracy=1.0 / math.sqrt(sum_inv_var),
    )
