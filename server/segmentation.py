"""Cluster tracker: splits one work session's fixes into stationary clusters.

The tracker makes a single forward pass over accuracy-filtered, time-ordered
fixes and keeps at most two candidate areas alive:

- the *current* area, confirmed as a stationary cluster once it spans
  CLUSTER_CONFIRM_S;
- a *tentative* area started by the first fix that falls outside the current
  one, promoted to the new current cluster once it too spans CLUSTER_CONFIRM_S.

Fixes claimed by neither area collect in the transit buffer. Every promotion,
and the end of the stream, hands a TripCandidate to the trip synthesizer.

Time gaps never split a cluster (adaptive sampling slows fixes down while
stationary); the excess over GAP_GRACE_S is only accounted for.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Optional

from errors import FixOrderError
from geo import Centroid, adjusted_distance_m, weighted_centroid

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

CLUSTER_RADIUS_M = 50.0      # accuracy-adjusted membership radius
CLUSTER_CONFIRM_S = 180      # 3 minutes in one area confirms a cluster
GAP_GRACE_S = 300            # missing coverage tolerated without accounting


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class FixRecord:
    """One accepted location fix. ``accuracy`` is already defaulted."""

    id: int
    captured_at: datetime.datetime
    latitude: float
    longitude: float
    accuracy: float
    speed: Optional[float] = None


@dataclass
class ClusterRecord:
    """A confirmed stationary cluster, refreshed in place until finalized.

    ``seq`` is the cluster's 0-based position within the run; persistence maps
    it to a database id.
    """

    seq: int
    started_at: datetime.datetime
    ended_at: datetime.datetime
    centroid_latitude: float
    centroid_longitude: float
    centroid_accuracy: float
    point_count: int = 0
    gap_seconds: int = 0
    gap_episode_count: int = 0
    fix_ids: tuple = ()
    samples: tuple = ()
    matched_place_id: Optional[int] = None

    @property
    def duration_seconds(self) -> int:
        return int((self.ended_at - self.started_at).total_seconds())


@dataclass
class TripCandidate:
    """What the tracker knows about one movement between two areas."""

    departing: Optional[ClusterRecord]
    arriving: Optional[ClusterRecord]
    transit: list[FixRecord]
    gap_seconds: float = 0.0


class PointAccumulator:
    """Fixes retained for one candidate area.

    The centroid is recomputed from every retained fix on each call rather
    than maintained as a running approximation.
    """

    def __init__(self, fixes=()):
        self._fixes: list[FixRecord] = []
        self.gap_seconds = 0.0
        self.gap_episodes = 0
        for fix in fixes:
            self.add(fix)

    def __len__(self) -> int:
        return len(self._fixes)

    def add(self, fix: FixRecord):
        self._fixes.append(fix)

    def record_gap(self, excess_seconds: float):
        self.gap_seconds += excess_seconds
        self.gap_episodes += 1

    @property
    def fixes(self) -> list[FixRecord]:
        return list(self._fixes)

    @property
    def started_at(self) -> datetime.datetime:
        return self._fixes[0].captured_at

    @property
    def last_at(self) -> datetime.datetime:
        return self._fixes[-1].captured_at

    def span_seconds(self) -> float:
        if not self._fixes:
            return 0.0
        return (self.last_at - self.started_at).total_seconds()

    def centroid(self) -> Optional[Centroid]:
        return weighted_centroid((f.latitude, f.longitude, f.accuracy) for f in self._fixes)


@dataclass
class TransitBuffer:
    fixes: list[FixRecord] = field(default_factory=list)
    gap_seconds: float = 0.0

    def absorb(self, area: PointAccumulator):
        """Take over the fixes and gap time of an abandoned area."""
        self.fixes.extend(area.fixes)
        self.gap_seconds += area.gap_seconds

    def clear(self):
        self.fixes = []
        self.gap_seconds = 0.0


class GapAccumulator:
    """Measures the time between consecutive fixes.

    Also guards the ordering contract: a fix older than its predecessor is a
    programmer error upstream and fails the run.
    """

    def __init__(self, grace_seconds: float = GAP_GRACE_S):
        self.grace_seconds = grace_seconds
        self._last_at: Optional[datetime.datetime] = None

    def observe(self, fix: FixRecord) -> float:
        """Return the excess over the grace period before ``fix`` (0 if none)."""
        previous = self._last_at
        if previous is not None and fix.captured_at < previous:
            raise FixOrderError(previous, fix.captured_at, fix.id)
        self._last_at = fix.captured_at
        if previous is None:
            return 0.0
        elapsed = (fix.captured_at - previous).total_seconds()
        if elapsed > self.grace_seconds:
            return elapsed - self.grace_seconds
        return 0.0


# ---------------------------------------------------------------------------
# Tracker state
# ---------------------------------------------------------------------------

@dataclass
class NoCurrent:
    """Nothing seen yet."""


@dataclass
class HasCurrent:
    current: PointAccumulator
    cluster: Optional[ClusterRecord] = None    # set once ``current`` is confirmed
    tentative: Optional[PointAccumulator] = None


class ClusterTracker:
    def __init__(self, thresholds: dict | None = None):
        thresholds = thresholds or {}
        self.radius_m = float(thresholds.get("cluster_radius_m", CLUSTER_RADIUS_M))
        self.confirm_s = float(thresholds.get("cluster_confirm_s", CLUSTER_CONFIRM_S))
        self.gaps = GapAccumulator(float(thresholds.get("gap_grace_s", GAP_GRACE_S)))
        self.state: NoCurrent | HasCurrent = NoCurrent()
        self.transit = TransitBuffer()
        self.clusters: list[ClusterRecord] = []

    def feed(self, fix: FixRecord) -> Optional[TripCandidate]:
        """Classify one fix. Returns a TripCandidate when it triggers a promotion."""
        excess = self.gaps.observe(fix)
        state = self.state

        if isinstance(state, NoCurrent):
            self.state = HasCurrent(current=PointAccumulator([fix]))
            return None

        if self._within(state.current, fix):
            state.current.add(fix)
            if excess:
                state.current.record_gap(excess)
            if state.tentative is not None:
                # Moved away and came back: the excursion was transit.
                self.transit.absorb(state.tentative)
                state.tentative = None
            self._maybe_confirm(state)
            return None

        if state.tentative is None:
            state.tentative = PointAccumulator([fix])
            self._charge_transit(excess)
            return None

        if self._within(state.tentative, fix):
            state.tentative.add(fix)
            if excess:
                state.tentative.record_gap(excess)
            if state.tentative.span_seconds() >= self.confirm_s:
                return self._promote(state)
            return None

        # Outside both areas: the tentative one never settled.
        self.transit.absorb(state.tentative)
        self._charge_transit(excess)
        state.tentative = PointAccumulator([fix])
        return None

    def finish(self) -> Optional[TripCandidate]:
        """Finalize the live cluster and return the trailing, still-open movement."""
        state = self.state
        if isinstance(state, NoCurrent):
            return None

        trailing = list(self.transit.fixes)
        gap_seconds = self.transit.gap_seconds
        if state.tentative is not None:
            trailing.extend(state.tentative.fixes)
            gap_seconds += state.tentative.gap_seconds

        departing = None
        if state.cluster is not None:
            departing = self._finalize(state.cluster, state.current)
        else:
            trailing.extend(state.current.fixes)
            gap_seconds += state.current.gap_seconds

        self.state = NoCurrent()
        self.transit.clear()

        if not trailing:
            return None
        if departing is None and len(trailing) < 2:
            return None
        return TripCandidate(
            departing=departing,
            arriving=None,
            transit=_chronological(trailing),
            gap_seconds=gap_seconds,
        )

    def live_cluster(self) -> Optional[ClusterRecord]:
        if isinstance(self.state, HasCurrent):
            return self.state.cluster
        return None

    # -----------------------------------------------------------------------

    def _within(self, area: PointAccumulator, fix: FixRecord) -> bool:
        c = area.centroid()
        d = adjusted_distance_m(c.latitude, c.longitude, fix.latitude, fix.longitude, fix.accuracy)
        return d <= self.radius_m

    def _charge_transit(self, excess: float):
        if excess:
            self.transit.gap_seconds += excess

    def _maybe_confirm(self, state: HasCurrent):
        if state.cluster is None and state.current.span_seconds() >= self.confirm_s:
            state.cluster = self._confirm(state.current)

    def _confirm(self, area: PointAccumulator) -> ClusterRecord:
        c = area.centroid()
        record = ClusterRecord(
            seq=len(self.clusters),
            started_at=area.started_at,
            ended_at=area.last_at,
            centroid_latitude=c.latitude,
            centroid_longitude=c.longitude,
            centroid_accuracy=c.accuracy,
        )
        self.clusters.append(record)
        logger.debug("Cluster %d confirmed at %s", record.seq, record.started_at.isoformat())
        return self._finalize(record, area)

    def _finalize(self, record: ClusterRecord, area: PointAccumulator) -> ClusterRecord:
        c = area.centroid()
        fixes = area.fixes
        record.centroid_latitude = c.latitude
        record.centroid_longitude = c.longitude
        record.centroid_accuracy = c.accuracy
        record.ended_at = area.last_at
        record.point_count = len(fixes)
        record.gap_seconds = int(round(area.gap_seconds))
        record.gap_episode_count = area.gap_episodes
        record.fix_ids = tuple(f.id for f in fixes)
        record.samples = tuple((f.latitude, f.longitude, f.accuracy) for f in fixes)
        return record

    def _promote(self, state: HasCurrent) -> TripCandidate:
        transit = list(self.transit.fixes)
        gap_seconds = self.transit.gap_seconds

        if state.cluster is not None:
            departing = self._finalize(state.cluster, state.current)
        else:
            # The session started on the move: the first area never confirmed.
            departing = None
            transit.extend(state.current.fixes)
            gap_seconds += state.current.gap_seconds

        arriving = self._confirm(state.tentative)
        self.state = HasCurrent(current=state.tentative, cluster=arriving)
        self.transit.clear()

        return TripCandidate(
            departing=departing,
            arriving=arriving,
            transit=_chronological(transit),
            gap_seconds=gap_seconds,
        )


def _chronological(fixes: list[FixRecord]) -> list[FixRecord]:
    return sorted(fixes, key=lambda f: f.captured_at)
