"""Tests for the geo helpers and the cluster tracker (no database)."""

import datetime

import pytest

from errors import FixOrderError
from geo import adjusted_distance_m, haversine_km, haversine_m, weighted_centroid
from segmentation import (
    CLUSTER_RADIUS_M,
    ClusterTracker,
    FixRecord,
    GapAccumulator,
    PointAccumulator,
)
from tests.gps_test_fixtures import (
    COMMUTE_TRACE,
    GAP_TRACE,
    OFFICE_CENTER,
    SCENARIO_TRACE,
    as_fix_records,
)

_BASE = datetime.datetime(2024, 3, 4, 8, 0, 0)
_M_LAT = 1 / 111_195.0   # degrees of latitude per metre


def _fix(fix_id, seconds, north_m=0.0, accuracy=10.0):
    return FixRecord(
        id=fix_id,
        captured_at=_BASE + datetime.timedelta(seconds=seconds),
        latitude=OFFICE_CENTER["latitude"] + north_m * _M_LAT,
        longitude=OFFICE_CENTER["longitude"],
        accuracy=accuracy,
    )


def _run(tracker, fixes):
    candidates = [c for c in (tracker.feed(f) for f in fixes) if c is not None]
    return candidates, tracker.finish()


# =====================================================================
# Haversine tests
# =====================================================================

class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_m(48.2393, -79.0235, 48.2393, -79.0235) == 0.0

    def test_known_distance(self):
        # Rouyn-Noranda to Val-d'Or is roughly 95 km as the crow flies
        d = haversine_km(48.2393, -79.0235, 48.0975, -77.7828)
        assert 85 < d < 105

    def test_short_distance(self):
        # Two points ~100m apart
        d = haversine_m(48.2393, -79.0235, 48.2402, -79.0235)
        assert 90 < d < 110


class TestAdjustedDistance:
    def test_subtracts_accuracy(self):
        raw = haversine_m(48.2393, -79.0235, 48.2402, -79.0235)
        adjusted = adjusted_distance_m(48.2393, -79.0235, 48.2402, -79.0235, 30.0)
        assert adjusted == pytest.approx(raw - 30.0)

    def test_clamps_at_zero(self):
        assert adjusted_distance_m(48.2393, -79.0235, 48.2402, -79.0235, 500.0) == 0.0


# =====================================================================
# Centroid tests
# =====================================================================

class TestWeightedCentroid:
    def test_empty_input(self):
        assert weighted_centroid([]) is None

    def test_single_sample(self):
        c = weighted_centroid([(48.2393, -79.0235, 12.0)])
        assert c.latitude == pytest.approx(48.2393)
        assert c.longitude == pytest.approx(-79.0235)
        assert c.accuracy == pytest.approx(12.0)

    def test_closed_form(self):
        c = weighted_centroid([(48.0, -79.0, 10.0), (48.001, -79.002, 20.0)])
        # weights 0.1 and 0.05
        assert c.latitude == pytest.approx((48.0 * 0.1 + 48.001 * 0.05) / 0.15)
        assert c.longitude == pytest.approx((-79.0 * 0.1 + -79.002 * 0.05) / 0.15)
        assert c.accuracy == pytest.approx(1 / (0.01 + 0.0025) ** 0.5)

    def test_precise_fixes_dominate(self):
        c = weighted_centroid([(48.0, -79.0, 2.0), (48.01, -79.0, 100.0)])
        assert abs(c.latitude - 48.0) < abs(c.latitude - 48.01)

    def test_sub_metre_accuracy_is_clamped(self):
        c = weighted_centroid([(48.0, -79.0, 0.0), (48.0, -79.0, 0.5)])
        assert c.accuracy == pytest.approx(1 / 2 ** 0.5)

    def test_more_fixes_tighten_accuracy(self):
        one = weighted_centroid([(48.0, -79.0, 10.0)])
        four = weighted_centroid([(48.0, -79.0, 10.0)] * 4)
        assert four.accuracy == pytest.approx(one.accuracy / 2)


# =====================================================================
# Accumulator tests
# =====================================================================

class TestPointAccumulator:
    def test_span_and_bounds(self):
        area = PointAccumulator([_fix(1, 0), _fix(2, 90), _fix(3, 200)])
        assert len(area) == 3
        assert area.span_seconds() == 200
        assert area.started_at == _BASE
        assert area.last_at == _BASE + datetime.timedelta(seconds=200)

    def test_empty_area(self):
        area = PointAccumulator()
        assert area.span_seconds() == 0.0
        assert area.centroid() is None

    def test_centroid_uses_every_fix(self):
        area = PointAccumulator([_fix(1, 0, north_m=0), _fix(2, 60, north_m=20)])
        c = area.centroid()
        expected = OFFICE_CENTER["latitude"] + 10 * _M_LAT
        assert c.latitude == pytest.approx(expected)

    def test_record_gap(self):
        area = PointAccumulator([_fix(1, 0)])
        area.record_gap(120.0)
        area.record_gap(30.0)
        assert area.gap_seconds == 150.0
        assert area.gap_episodes == 2


class TestGapAccumulator:
    def test_first_fix_has_no_gap(self):
        assert GapAccumulator(300).observe(_fix(1, 0)) == 0.0

    def test_within_grace(self):
        gaps = GapAccumulator(300)
        gaps.observe(_fix(1, 0))
        assert gaps.observe(_fix(2, 300)) == 0.0

    def test_excess_over_grace(self):
        gaps = GapAccumulator(300)
        gaps.observe(_fix(1, 0))
        assert gaps.observe(_fix(2, 1000)) == 700.0

    def test_equal_timestamps_are_allowed(self):
        gaps = GapAccumulator(300)
        gaps.observe(_fix(1, 60))
        assert gaps.observe(_fix(2, 60)) == 0.0

    def test_out_of_order_fix_raises(self):
        gaps = GapAccumulator(300)
        gaps.observe(_fix(1, 120))
        with pytest.raises(FixOrderError) as exc:
            gaps.observe(_fix(2, 60))
        assert exc.value.fix_id == 2
        assert exc.value.retryable is False


# =====================================================================
# Cluster tracker tests
# =====================================================================

class TestClusterTracker:
    def test_confirms_after_three_minutes(self):
        tracker = ClusterTracker()
        for i, s in enumerate([0, 60, 120]):
            tracker.feed(_fix(i + 1, s))
        assert tracker.live_cluster() is None

        tracker.feed(_fix(4, 180))
        cluster = tracker.live_cluster()
        assert cluster is not None
        assert cluster.seq == 0
        assert cluster.point_count == 4
        assert cluster.started_at == _BASE

    def test_accuracy_extends_membership(self):
        tracker = ClusterTracker()
        tracker.feed(_fix(1, 0))
        # 70m away but +/-25m: adjusted 45m, inside
        tracker.feed(_fix(2, 30, north_m=70, accuracy=25.0))
        assert tracker.state.tentative is None
        assert len(tracker.state.current) == 2

    def test_fix_outside_radius_starts_tentative_area(self):
        tracker = ClusterTracker()
        tracker.feed(_fix(1, 0))
        tracker.feed(_fix(2, 30, north_m=70, accuracy=10.0))
        assert tracker.state.tentative is not None
        assert len(tracker.state.current) == 1

    def test_excursion_and_return_is_transit(self):
        tracker = ClusterTracker()
        for i, s in enumerate([0, 60, 120, 180]):
            tracker.feed(_fix(i + 1, s))
        tracker.feed(_fix(5, 200, north_m=300))
        tracker.feed(_fix(6, 220))

        assert tracker.state.tentative is None
        assert [f.id for f in tracker.transit.fixes] == [5]
        assert len(tracker.state.current) == 5

    def test_promotion_emits_candidate(self):
        tracker = ClusterTracker()
        fixes = [_fix(i + 1, i * 60) for i in range(4)]                    # A: 0-180s
        fixes.append(_fix(5, 240, north_m=150))                             # transit
        fixes += [_fix(6 + i, 300 + i * 60, north_m=400) for i in range(4)] # B: 300-480s

        candidates = [c for c in (tracker.feed(f) for f in fixes) if c is not None]
        assert len(candidates) == 1
        c = candidates[0]
        assert c.departing.seq == 0
        assert c.arriving.seq == 1
        assert [f.id for f in c.transit] == [5]
        assert c.departing.fix_ids == (1, 2, 3, 4)
        assert c.arriving.started_at == _BASE + datetime.timedelta(seconds=300)

    def test_unconfirmed_head_becomes_transit(self):
        tracker = ClusterTracker()
        fixes = [_fix(1, 0), _fix(2, 60)]                                   # never confirmed
        fixes += [_fix(3 + i, 120 + i * 60, north_m=400) for i in range(4)]

        candidates = [c for c in (tracker.feed(f) for f in fixes) if c is not None]
        assert len(candidates) == 1
        c = candidates[0]
        assert c.departing is None
        assert [f.id for f in c.transit] == [1, 2]
        assert len(tracker.clusters) == 1
        assert tracker.clusters[0].seq == 0

    def test_finish_returns_trailing_movement(self):
        tracker = ClusterTracker()
        fixes = [_fix(i + 1, i * 60) for i in range(4)]
        fixes += [_fix(5, 260, north_m=200), _fix(6, 290, north_m=400)]

        candidates, trailing = _run(tracker, fixes)
        assert candidates == []
        assert trailing.departing.seq == 0
        assert trailing.arriving is None
        assert [f.id for f in trailing.transit] == [5, 6]

    def test_finish_without_movement(self):
        tracker = ClusterTracker()
        candidates, trailing = _run(tracker, [_fix(i + 1, i * 60) for i in range(5)])
        assert candidates == []
        assert trailing is None
        assert len(tracker.clusters) == 1

    def test_single_stray_fix_is_not_a_trip(self):
        tracker = ClusterTracker()
        assert _run(tracker, [_fix(1, 0)]) == ([], None)

    def test_empty_stream(self):
        tracker = ClusterTracker()
        assert tracker.finish() is None
        assert tracker.clusters == []

    def test_out_of_order_fix_fails_run(self):
        tracker = ClusterTracker()
        tracker.feed(_fix(1, 120))
        with pytest.raises(FixOrderError):
            tracker.feed(_fix(2, 60))

    def test_gap_ending_outside_is_charged_to_transit(self):
        tracker = ClusterTracker()
        fixes = [_fix(i + 1, i * 60) for i in range(4)]                      # A: 0-180s
        fixes += [_fix(5 + i, 1080 + i * 60, north_m=400) for i in range(4)] # 15 min hole

        candidates = [c for c in (tracker.feed(f) for f in fixes) if c is not None]
        assert len(candidates) == 1
        assert candidates[0].transit == []
        assert candidates[0].gap_seconds == 600.0
        assert candidates[0].departing.gap_seconds == 0

    def test_thresholds_override_defaults(self):
        tracker = ClusterTracker({"cluster_radius_m": 100.0, "cluster_confirm_s": 60})
        tracker.feed(_fix(1, 0))
        tracker.feed(_fix(2, 60, north_m=80, accuracy=5.0))
        assert tracker.live_cluster() is not None
        assert tracker.live_cluster().point_count == 2


# =====================================================================
# Whole-trace tests
# =====================================================================

class TestTraces:
    def test_walk_between_buildings(self):
        tracker = ClusterTracker()
        candidates, trailing = _run(tracker, as_fix_records(SCENARIO_TRACE))

        assert len(tracker.clusters) == 2
        assert len(candidates) == 1
        assert trailing is None
        assert len(candidates[0].transit) == 4
        assert tracker.clusters[0].point_count == 33
        assert tracker.clusters[1].point_count == 65

    def test_gap_does_not_split_cluster(self):
        tracker = ClusterTracker()
        candidates, trailing = _run(tracker, as_fix_records(GAP_TRACE))

        assert candidates == []
        assert trailing is None
        assert len(tracker.clusters) == 1
        cluster = tracker.clusters[0]
        assert cluster.point_count == 22
        assert cluster.gap_seconds == 2700
        assert cluster.gap_episode_count == 1
        assert cluster.duration_seconds == 70 * 60

    def test_clusters_respect_radius(self):
        fixes = as_fix_records(COMMUTE_TRACE)
        by_id = {f.id: f for f in fixes}
        tracker = ClusterTracker()
        _run(tracker, fixes)

        assert len(tracker.clusters) == 2
        for cluster in tracker.clusters:
            for fix_id in cluster.fix_ids:
                f = by_id[fix_id]
                d = adjusted_distance_m(
                    cluster.centroid_latitude, cluster.centroid_longitude,
                    f.latitude, f.longitude, f.accuracy,
                )
                assert d <= CLUSTER_RADIUS_M

    def test_clusters_do_not_overlap(self):
        tracker = ClusterTracker()
        candidates, _ = _run(tracker, as_fix_records(COMMUTE_TRACE))

        for a, b in zip(tracker.clusters, tracker.clusters[1:]):
            assert a.ended_at < b.started_at

        clustered = [i for c in tracker.clusters for i in c.fix_ids]
        transit = [f.id for c in candidates for f in c.transit]
        assert len(set(clustered)) == len(clustered)
        assert not set(clustered) & set(transit)
        assert len(clustered) + len(transit) == len(COMMUTE_TRACE)
