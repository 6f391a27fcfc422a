"""Tests for the haversine distance, the radius filter and the nearby search."""

from datetime import timedelta

import pytest

from conftest import T0, make_dog, make_request, make_user
from mofumofu.errors import MissingPrecondition, PermissionDenied
from mofumofu.geo import NearbyDogSearch, find_within, haversine_km, is_request_blocking
from mofumofu.location import ReportedLocation
from mofumofu.models import Coordinate

SHIBUYA = Coordinate(35.6595, 139.7005)
# one degree of latitude is ~111.195 km on a 6371 km sphere
KM_PER_DEGREE = 111.19492664455873


def north_of(origin, km):
    return Coordinate(origin.latitude + km / KM_PER_DEGREE, origin.longitude)


class TestHaversine:
    def test_zero_for_same_point(self):
        assert haversine_km(SHIBUYA, SHIBUYA) == 0

    def test_symmetric(self):
        other = Coordinate(35.6812, 139.7671)
        assert haversine_km(SHIBUYA, other) == pytest.approx(haversine_km(other, SHIBUYA))

    def test_one_degree_of_latitude(self):
        assert haversine_km(Coordinate(0, 0), Coordinate(1, 0)) == pytest.approx(KM_PER_DEGREE, rel=1e-9)

    def test_antipodal_points_do_not_blow_up(self):
        d = haversine_km(Coordinate(0, 0), Coordinate(0, 180))
        assert d == pytest.approx(3.141592653589793 * 6371.0, rel=1e-9)


class TestFindWithin:
    def test_filters_by_radius_and_sorts_nearest_first(self):
        far = north_of(SHIBUYA, 6)
        mid = north_of(SHIBUYA, 4)
        near = north_of(SHIBUYA, 1)
        hits = find_within(SHIBUYA, [(far, "far"), (mid, "mid"), (near, "near")], 5)
        assert [payload for payload, _ in hits] == ["near", "mid"]
        assert hits[0][1] < hits[1][1]

    def test_boundary_is_inclusive(self):
        point = north_of(SHIBUYA, 5)
        exact = haversine_km(SHIBUYA, point)
        hits = find_within(SHIBUYA, [(point, "edge")], exact)
        assert hits == [("edge", exact)]

    def test_candidates_without_coordinates_are_excluded(self):
        hits = find_within(SHIBUYA, [(None, "nowhere"), (SHIBUYA, "here")], 5)
        assert hits == [("here", 0.0)]

    def test_every_result_respects_radius(self):
        candidates = [(north_of(SHIBUYA, km / 2), km) for km in range(0, 20)]
        for payload, distance in find_within(SHIBUYA, candidates, 3.3):
            assert distance <= 3.3
            assert distance == haversine_km(SHIBUYA, north_of(SHIBUYA, payload / 2))


class TestRequestBlocking:
    def test_rejected_never_blocks(self):
        assert not is_request_blocking({"status": "rejected", "appliedAt": T0}, T0)

    def test_recent_pending_blocks(self):
        assert is_request_blocking({"status": "pending", "appliedAt": T0}, T0 + timedelta(minutes=119))

    def test_old_request_stops_blocking(self):
        assert not is_request_blocking({"status": "accepted", "appliedAt": T0}, T0 + timedelta(hours=2))

    def test_missing_applied_at_blocks(self):
        assert is_request_blocking({"status": "pending"}, T0)


class TestNearbyDogSearch:
    @pytest.fixture
    def owner(self, store):
        return make_user(store, "Owner")

    @pytest.fixture
    def searcher(self, store):
        return make_user(store, "Searcher")

    def _walking_dog(self, store, mirror, owner_id, name, coordinate):
        dog_id = make_dog(store, owner_id, name, isWalking=True, lastWalkingStatusUpdate=T0,
                          latitude=coordinate.latitude, longitude=coordinate.longitude)
        mirror.set(f"locations/dogs/{dog_id}", coordinate.to_json())
        return dog_id

    def test_dog_four_km_away_is_found_with_its_distance(self, store, mirror, clock, owner, searcher):
        spot = north_of(SHIBUYA, 4)
        dog_id = self._walking_dog(store, mirror, owner.user_id, "Mochi", spot)
        location = ReportedLocation(True, SHIBUYA)

        results = NearbyDogSearch(searcher, store, mirror, location, 5.0, clock).search()

        assert [r["id"] for r in results] == [dog_id]
        assert results[0]["distanceKm"] == pytest.approx(haversine_km(SHIBUYA, spot), abs=1e-9)
        assert results[0]["distanceKm"] == pytest.approx(4.0, abs=1e-6)
        assert results[0]["applied"] is False

    def test_skips_idle_own_and_unmirrored_dogs(self, store, mirror, clock, owner, searcher):
        self._walking_dog(store, mirror, searcher.user_id, "Mine", SHIBUYA)
        make_dog(store, owner.user_id, "Sleeping", latitude=SHIBUYA.latitude, longitude=SHIBUYA.longitude)
        make_dog(store, owner.user_id, "Ghost", isWalking=True, lastWalkingStatusUpdate=T0)
        far = self._walking_dog(store, mirror, owner.user_id, "Far", north_of(SHIBUYA, 7))

        results = NearbyDogSearch(searcher, store, mirror, ReportedLocation(True, SHIBUYA), 5.0, clock).search()
        assert results == []

        wide = NearbyDogSearch(searcher, store, mirror, ReportedLocation(True, SHIBUYA), 5.0, clock).search(10)
        assert [r["id"] for r in wide] == [far]

    def test_marks_dogs_with_a_recent_request(self, store, mirror, clock, owner, searcher):
        dog_id = self._walking_dog(store, mirror, owner.user_id, "Mochi", north_of(SHIBUYA, 1))
        make_request(store, searcher.user_id, dog_id, owner.user_id, applied_at=clock() - timedelta(minutes=30))

        results = NearbyDogSearch(searcher, store, mirror, ReportedLocation(True, SHIBUYA), 5.0, clock).search()
        assert results[0]["applied"] is True

    def test_mirrors_searcher_position(self, store, mirror, clock, searcher):
        NearbyDogSearch(searcher, store, mirror, ReportedLocation(True, SHIBUYA), 5.0, clock).search()
        saved = mirror.get(f"locations/users/{searcher.user_id}")
        assert saved["latitude"] == SHIBUYA.latitude

    def test_permission_denied(self, store, mirror, clock, searcher):
        with pytest.raises(PermissionDenied):
            NearbyDogSearch(searcher, store, mirror, ReportedLocation(False, SHIBUYA), 5.0, clock).search()

    def test_no_fix(self, store, mirror, clock, searcher):
        with pytest.raises(MissingPrecondition):
            NearbyDogSearch(searcher, store, mirror, ReportedLocation(True, None), 5.0, clock).search()
