import math

import pytest
from core.geometry import (
    GeometryError,
    PlanarGeometryProvider,
    circle_ring,
    close_ring,
    envelope_ring,
    haversine_m,
    offset_point_m,
)

SQUARE = ((36.80, -1.30), (36.82, -1.30), (36.82, -1.28), (36.80, -1.28), (36.80, -1.30))


@pytest.fixture
def geometry():
    return PlanarGeometryProvider()


def test_haversine_one_degree_latitude():
    assert haversine_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(111195, rel=1e-3)


def test_offset_point_round_trip_distance():
    lat, lon = offset_point_m(-1.29, 36.82, 0.0, 1500.0)
    assert haversine_m(-1.29, 36.82, lat, lon) == pytest.approx(1500.0, rel=1e-3)


def test_close_ring():
    ring = close_ring([(0, 0), (1, 0), (1, 1)])
    assert ring[0] == ring[-1]
    assert len(ring) == 4
    assert close_ring(ring) == ring


def test_circle_ring_radius():
    ring = circle_ring(36.8, -1.3, 500.0, sides=12)
    assert len(ring) == 13
    for lon, lat in ring[:-1]:
        assert haversine_m(-1.3, 36.8, lat, lon) == pytest.approx(500.0, rel=0.01)


def test_envelope_ring_padded():
    ring = envelope_ring((36.80, -1.30), (36.82, -1.30), 200.0)
    assert len(ring) == 5
    lats = [pt[1] for pt in ring]
    assert max(lats) > -1.30
    assert min(lats) < -1.30


def test_point_in_polygon(geometry):
    assert geometry.point_in_polygon((36.81, -1.29), SQUARE)
    assert not geometry.point_in_polygon((36.83, -1.29), SQUARE)


def test_point_on_boundary_counts_inside(geometry):
    assert geometry.point_in_polygon((36.82, -1.29), SQUARE)
    assert geometry.point_in_polygon((36.80, -1.30), SQUARE)


def test_buffer_zero_returns_ring(geometry):
    assert geometry.buffer(SQUARE, 0.0) == SQUARE


def test_buffer_covers_distance(geometry):
    """Points just inside the buffer distance are covered, points well beyond are not."""
    ring = geometry.buffer(SQUARE, 1000.0)
    assert ring[0] == ring[-1]

    near_lat, near_lon = offset_point_m(-1.29, 36.82, 0.0, 990.0)
    far_lat, far_lon = offset_point_m(-1.29, 36.82, 0.0, 1100.0)
    assert geometry.point_in_polygon((near_lon, near_lat), ring)
    assert not geometry.point_in_polygon((far_lon, far_lat), ring)


def test_buffer_covers_corners(geometry):
    ring = geometry.buffer(SQUARE, 1000.0)
    # 990 m diagonally out from the north-east corner
    step = 990.0 / math.sqrt(2)
    lat, lon = offset_point_m(-1.28, 36.82, step, step)
    assert geometry.point_in_polygon((lon, lat), ring)


def test_buffer_monotone_in_distance(geometry):
    small = geometry.buffer(SQUARE, 500.0)
    large = geometry.buffer(SQUARE, 1500.0)
    for vertex in small:
        assert geometry.point_in_polygon(vertex, large)


@pytest.mark.parametrize("ring,distance", [
    (((0, 0), (1, 1), (0, 0)), 100.0),
    (SQUARE, -5.0),
    (((0, 0), (float("nan"), 1), (1, 1), (0, 0)), 100.0),
    (((0, 89.9999999), (1, 90.0), (2, 90.0), (0, 89.9999999)), 100.0),
])
def test_buffer_rejects_bad_input(geometry, ring, distance):
    with pytest.raises(GeometryError):
        geometry.buffer(ring, distance)


def test_geometry_error_is_value_error():
    assert issubclass(GeometryError, ValueError)


def test_buffer_line_corridor(geometry):
    ring = geometry.buffer_line([(36.80, -1.30), (36.82, -1.30)], 200.0)
    assert ring[0] == ring[-1]
    assert geometry.point_in_polygon((36.81, -1.30), ring)

    lat, lon = offset_point_m(-1.30, 36.81, 300.0, 0.0)
    assert not geometry.point_in_polygon((lon, lat), ring)


def test_buffer_line_bend(geometry):
    ring = geometry.buffer_line([(36.80, -1.30), (36.82, -1.30), (36.82, -1.28)], 100.0)
    assert geometry.point_in_polygon((36.82, -1.29), ring)
    # Inside the elbow but well away from both legs
    assert not geometry.point_in_polygon((36.81, -1.29), ring)


def test_buffer_line_doubling_back(geometry):
    ring = geometry.buffer_line([(36.80, -1.30), (36.82, -1.30), (36.80, -1.30)], 200.0)
    assert geometry.point_in_polygon((36.81, -1.30), ring)
    lat, lon = offset_point_m(-1.30, 36.81, 300.0, 0.0)
    assert not geometry.point_in_polygon((lon, lat), ring)


def test_buffer_line_single_point_fails(geometry):
    with pytest.raises(GeometryError):
        geometry.buffer_line([(36.80, -1.30), (36.80, -1.30)], 200.0)


def test_buffer_follows_concave_outline(geometry):
    """The buffer of an L-shaped ring does not fill the open corner."""
    ring = ((36.80, -1.30), (36.84, -1.30), (36.84, -1.29), (36.81, -1.29),
            (36.81, -1.26), (36.80, -1.26), (36.80, -1.30))
    buffered = geometry.buffer(ring, 500.0)

    # About 1.1 km from the nearest edge, inside the ring's convex hull
    assert not geometry.point_in_polygon((36.82, -1.28), buffered)
    lat, lon = offset_point_m(-1.27, 36.81, 0.0, 400.0)
    assert geometry.point_in_polygon((lon, lat), buffered)


def test_point_in_concave_polygon(geometry):
    ring = ((36.80, -1.30), (36.84, -1.30), (36.84, -1.29), (36.81, -1.29),
            (36.81, -1.26), (36.80, -1.26), (36.80, -1.30))
    assert geometry.point_in_polygon((36.805, -1.27), ring)
    assert not geometry.point_in_polygon((36.82, -1.28), ring)
