"""Synthetic GPS traces for one work shift in Rouyn-Noranda, QC.

Traces (all times relative to 08:00):

COMMUTE_TRACE - office stay, a ~2.9 km drive, then a long stay at a job site:
1. OFFICE (33 pts, 0-18 min) - stationary at OFFICE_CENTER
2. DRIVE_TO_SITE (10 pts, 18:30-23:00) - moving ~31 km/h toward the site
3. SITE (40 pts, 23:30-62:30) - stationary near SITE_CENTER, +/-11m jitter

SCENARIO_TRACE - the short walk between two neighbouring buildings:
1. OFFICE (33 pts, 0-18 min)
2. WALK_TO_CLIENT (4 pts, 18:30-20:00) - ~330m in 66m steps
3. CLIENT (65 pts, 20:30-63:30) - stationary at CLIENT_CENTER

GAP_TRACE - one stay with a 50-minute hole in coverage.
GHOST_TRACE - two stays only ~60m apart.
ZERO_TRANSIT_TRACE - two stays 200m apart with an 8-minute hole between them
and no fix in transit.
"""

import datetime

from models import LocationFix
from segmentation import FixRecord

OFFICE_CENTER = {"latitude": 48.2393, "longitude": -79.0235}
CLIENT_CENTER = {"latitude": 48.2380, "longitude": -79.0195}
SITE_CENTER = {"latitude": 48.2600, "longitude": -79.0000}

_BASE = datetime.datetime(2024, 3, 4, 8, 0, 0)


def _t(minutes, seconds=0):
    return _BASE + datetime.timedelta(minutes=minutes, seconds=seconds)


def _stay(center, count, start_s, end_s, accuracy, jitter=None):
    step = (end_s - start_s) / (count - 1)
    jitter = jitter or [(0.0, 0.0)]
    points = []
    for i in range(count):
        dlat, dlon = jitter[i % len(jitter)]
        points.append({
            "latitude": center["latitude"] + dlat,
            "longitude": center["longitude"] + dlon,
            "horizontal_accuracy": accuracy,
            "speed": 0.0,
            "captured_at": _BASE + datetime.timedelta(seconds=start_s + i * step),
        })
    return points


def _path(origin, destination, count, start_s, step_s, accuracy, speed):
    """``count`` evenly spaced points strictly between origin and destination."""
    points = []
    for i in range(1, count + 1):
        f = i / (count + 1)
        points.append({
            "latitude": origin["latitude"] + (destination["latitude"] - origin["latitude"]) * f,
            "longitude": origin["longitude"] + (destination["longitude"] - origin["longitude"]) * f,
            "horizontal_accuracy": accuracy,
            "speed": speed,
            "captured_at": _BASE + datetime.timedelta(seconds=start_s + (i - 1) * step_s),
        })
    return points


_SITE_JITTER = [
    (0.0, 0.0),
    (0.0001, 0.00005),
    (-0.0001, -0.00005),
    (0.00005, -0.0001),
    (-0.00005, 0.0001),
]

# -- Shared: office stay (33 points over 18 minutes) --
OFFICE_SEGMENT = _stay(OFFICE_CENTER, 33, 0, 18 * 60, accuracy=10.0)

# -- Commute --
DRIVE_TO_SITE = _path(OFFICE_CENTER, SITE_CENTER, 10, 18 * 60 + 30, 30, accuracy=6.0, speed=8.7)
SITE_SEGMENT = _stay(SITE_CENTER, 40, 23 * 60 + 30, 62 * 60 + 30, accuracy=8.0, jitter=_SITE_JITTER)
COMMUTE_TRACE = OFFICE_SEGMENT + DRIVE_TO_SITE + SITE_SEGMENT

# -- Short walk scenario --
WALK_TO_CLIENT = _path(OFFICE_CENTER, CLIENT_CENTER, 4, 18 * 60 + 30, 30, accuracy=5.0, speed=2.2)
CLIENT_SEGMENT = _stay(CLIENT_CENTER, 65, 20 * 60 + 30, 63 * 60 + 30, accuracy=10.0)
SCENARIO_TRACE = OFFICE_SEGMENT + WALK_TO_CLIENT + CLIENT_SEGMENT

# -- 50-minute coverage hole inside one stay --
GAP_TRACE = (
    _stay(OFFICE_CENTER, 11, 0, 10 * 60, accuracy=10.0)
    + _stay(
        {"latitude": OFFICE_CENTER["latitude"] + 0.0002, "longitude": OFFICE_CENTER["longitude"]},
        11, 60 * 60, 70 * 60, accuracy=10.0,
    )
)

# -- Two stays ~60m apart (north), precise fixes --
GHOST_NEIGHBOUR = {"latitude": OFFICE_CENTER["latitude"] + 0.00054, "longitude": OFFICE_CENTER["longitude"]}
GHOST_TRACE = (
    _stay(OFFICE_CENTER, 10, 0, 9 * 60, accuracy=1.0)
    + _stay(GHOST_NEIGHBOUR, 10, 10 * 60, 19 * 60, accuracy=1.0)
)

# -- Two stays 200m apart (east) with nothing recorded in between --
EAST_NEIGHBOUR = {"latitude": OFFICE_CENTER["latitude"], "longitude": OFFICE_CENTER["longitude"] + 0.002702}
ZERO_TRANSIT_TRACE = (
    _stay(OFFICE_CENTER, 10, 0, 9 * 60, accuracy=10.0)
    + _stay(EAST_NEIGHBOUR, 10, 17 * 60, 26 * 60, accuracy=10.0)
)

# -- Points with errors (for reader testing) --
BAD_ACCURACY_POINT = {
    "latitude": 48.2500, "longitude": -79.0400,
    "horizontal_accuracy": 450.0, "speed": 0.0, "captured_at": _t(5, 10),
}

NO_ACCURACY_POINT = {
    "latitude": 48.2393, "longitude": -79.0235,
    "horizontal_accuracy": None, "speed": None, "captured_at": _t(5, 20),
}


def store_fixes(db, session_id, points):
    """Insert fixture dicts as LocationFix rows for a work session."""
    for pt in points:
        db.add(LocationFix(
            session_id=session_id,
            latitude=pt["latitude"],
            longitude=pt["longitude"],
            horizontal_accuracy=pt.get("horizontal_accuracy"),
            speed=pt.get("speed"),
            captured_at=pt["captured_at"],
        ))
    db.commit()


def as_fix_records(points, first_id=1):
    """Turn fixture dicts into FixRecords with sequential ids."""
    return [
        FixRecord(
            id=first_id + i,
            captured_at=p["captured_at"],
            latitude=p["latitude"],
            longitude=p["longitude"],
            accuracy=p["horizontal_accuracy"] if p["horizontal_accuracy"] is not None else 20.0,
            speed=p.get("speed"),
        )
        for i, p in enumerate(points)
    ]
