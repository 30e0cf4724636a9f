"""Tests for shared coordinate helpers."""

import math

import pytest

from shared.geo_math import (
    GeoPoint,
    destination_point,
    haversine_m,
    offset_point,
)


class TestGeoPoint:
    def test_from_lnglat_swaps_axes(self):
        p = GeoPoint.from_lnglat([106.8456, -6.2088])
        assert p.lat == -6.2088
        assert p.lon == 106.8456

    def test_to_lnglat(self):
        assert GeoPoint(-6.2088, 106.8456).to_lnglat() == [106.8456, -6.2088]

    def test_finite(self):
        assert GeoPoint(1.0, 2.0).is_finite
        assert not GeoPoint(math.nan, 2.0).is_finite
        assert not GeoPoint(1.0, math.inf).is_finite

    def test_in_range(self):
        assert GeoPoint(89.0, 179.0).in_range
        assert not GeoPoint(91.0, 0.0).in_range


class TestHaversine:
    def test_zero_distance(self):
        p = GeoPoint(52.52, 13.405)
        assert haversine_m(p, p) == 0.0

    def test_one_degree_latitude(self):
        d = haversine_m(GeoPoint(0.0, 0.0), GeoPoint(1.0, 0.0))
        assert d == pytest.approx(111_195, rel=1e-3)

    def test_symmetric(self):
        a = GeoPoint(-6.2088, 106.8456)
        b = GeoPoint(-6.9, 107.6)
        assert haversine_m(a, b) == pytest.approx(haversine_m(b, a))


class TestDestinationPoint:
    def test_distance_preserved(self):
        origin = GeoPoint(-6.2088, 106.8456)
        for bearing in (0, 45, 90, 180, 270):
            p = destination_point(origin, bearing, 1500.0)
            assert haversine_m(origin, p) == pytest.approx(1500.0, abs=0.01)

    def test_north_increases_lat(self):
        p = destination_point(GeoPoint(10.0, 20.0), 0.0, 1000.0)
        assert p.lat > 10.0
        assert p.lon == pytest.approx(20.0)

    def test_longitude_wraps(self):
        p = destination_point(GeoPoint(0.0, 179.999), 90.0, 1000.0)
        assert -180.0 <= p.lon <= 180.0
        assert p.lon < 0


class TestOffsetPoint:
    def test_offset_close_to_geodesic(self):
        origin = GeoPoint(52.52, 13.405)
        p = offset_point(origin, north_m=300.0, east_m=400.0)
        assert haversine_m(origin, p) == pytest.approx(500.0, rel=0.01)
