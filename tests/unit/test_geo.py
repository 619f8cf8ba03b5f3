import pytest
from urllib.parse import parse_qs, urlparse

from delivery_dispatch.geo import build_maps_url, haversine_km, nearest

pytestmark = pytest.mark.unit


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_km((-3.1, -60.0), (-3.1, -60.0)) == 0.0

    def test_one_degree_latitude_is_about_111_km(self):
        assert haversine_km((0.0, 0.0), (1.0, 0.0)) == pytest.approx(111.19, abs=0.05)

    def test_symmetric(self):
        a, b = (-3.11, -60.03), (-3.05, -59.98)
        assert haversine_km(a, b) == pytest.approx(haversine_km(b, a))


class TestNearest:
    def test_picks_closest(self):
        points = [(0.0, 0.3), (0.0, 0.1), (0.0, 0.2)]
        assert nearest((0.0, 0.0), points, lambda p: p) == (0.0, 0.1)

    def test_first_occurrence_wins_ties(self):
        points = [("a", (0.0, 0.1)), ("b", (0.0, -0.1)), ("c", (0.1, 0.0))]
        assert nearest((0.0, 0.0), points, lambda p: p[1])[0] == "a"


class TestMapsUrl:
    def test_empty_stops(self):
        assert build_maps_url((0.0, 0.0), []) == ""

    def test_origin_waypoints_destination_in_order(self):
        url = build_maps_url((1.0, 2.0), [(3.0, 4.0), (5.0, 6.0), (7.0, 8.0)])
        q = parse_qs(urlparse(url).query)
        assert q["origin"] == ["1.0,2.0"]
        assert q["destination"] == ["7.0,8.0"]
        assert q["waypoints"] == ["3.0,4.0|5.0,6.0"]

    def test_single_stop_has_no_waypoints(self):
        q = parse_qs(urlparse(build_maps_url((1.0, 2.0), [(3.0, 4.0)])).query)
        assert "waypoints" not in q
