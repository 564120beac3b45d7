"""
Geometry provider for zone buffering and containment.

Rings are closed sequences of (lon, lat) vertices in decimal degrees.
Buffering runs in a local equirectangular frame (planar offsets scaled by
latitude), which is adequate for caution perimeters of a few kilometres but
is not true geodesic buffering.
"""

import math
import logging
from functools import lru_cache
from typing import Iterable, Protocol, Sequence, Tuple

import numpy as np
import shapely
from shapely import affinity
from shapely.errors import GEOSException
from shapely.geometry import LineString, Point, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.validation import make_valid

from core.models import EARTH_RADIUS_M, Coordinate, Ring

log = logging.getLogger(__name__)

METERS_PER_DEGREE = EARTH_RADIUS_M * math.pi / 180.0


class GeometryError(ValueError):
    """Raised when a geometry operation cannot produce a valid ring."""


class GeometryProvider(Protocol):
    """Minimal capability interface the evaluators depend on."""

    def buffer(self, ring: Sequence[Coordinate], distance_m: float) -> Ring:
        """Return a closed ring lying at least distance_m outside the input."""
        ...

    def point_in_polygon(self, point: Coordinate, ring: Sequence[Coordinate]) -> bool:
        """Return True if the (lon, lat) point lies inside or on the ring."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════
def close_ring(coords: Iterable[Sequence[float]]) -> Ring:
    """Return coords as a tuple ring whose last vertex repeats the first."""
    ring = [(float(c[0]), float(c[1])) for c in coords]
    if ring and ring[0] != ring[-1]:
        ring.append(ring[0])
    return tuple(ring)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_many(lat: float, lon: float, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """Great-circle distances in meters from one point to many."""
    phi1 = np.radians(lat)
    phi2 = np.radians(lats)
    dphi = phi2 - phi1
    dlmb = np.radians(lons - lon)
    a = np.sin(dphi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def offset_point_m(lat: float, lon: float, north_m: float, east_m: float) -> Tuple[float, float]:
    """Shift a point by metric offsets. Returns (lat, lon)."""
    dlat = math.degrees(north_m / EARTH_RADIUS_M)
    dlon = math.degrees(east_m / EARTH_RADIUS_M) / math.cos(math.radians(lat))
    return (lat + dlat, lon + dlon)


def circle_ring(lon: float, lat: float, radius_m: float, sides: int = 12) -> Ring:
    """Regular polygon approximating a circle around (lon, lat)."""
    if sides < 3:
        raise GeometryError(f"A polygon needs at least 3 sides, got {sides}")
    if radius_m <= 0:
        raise GeometryError("Circle radius must be positive")
    angles = np.linspace(0.0, 2 * np.pi, sides, endpoint=False)
    dlat = math.degrees(radius_m / EARTH_RADIUS_M)
    dlon = dlat / math.cos(math.radians(lat))
    lons = lon + dlon * np.cos(angles)
    lats = lat + dlat * np.sin(angles)
    return close_ring(zip(lons.tolist(), lats.tolist()))


def envelope_ring(start: Coordinate, end: Coordinate, distance_m: float) -> Ring:
    """Rectangle around two endpoints, padded by distance_m on every side."""
    min_lon, max_lon = sorted((float(start[0]), float(end[0])))
    min_lat, max_lat = sorted((float(start[1]), float(end[1])))
    dlat = math.degrees(max(distance_m, 0.0) / EARTH_RADIUS_M)
    widest = min(max(abs(min_lat), abs(max_lat)) + dlat, 89.9)
    dlon = dlat / math.cos(math.radians(widest))
    min_lon -= dlon
    max_lon += dlon
    min_lat -= dlat
    max_lat += dlat
    if min_lon == max_lon or min_lat == max_lat:
        raise GeometryError("Envelope is degenerate")
    return (
        (min_lon, min_lat),
        (max_lon, min_lat),
        (max_lon, max_lat),
        (min_lon, max_lat),
        (min_lon, min_lat),
    )


def _as_points(coords: Sequence[Sequence[float]]) -> np.ndarray:
    try:
        pts = np.asarray(coords, dtype=float)
    except (TypeError, ValueError) as e:
        raise GeometryError(f"Coordinates are not numeric: {e}") from e
    if pts.ndim != 2 or pts.shape[1] < 2:
        raise GeometryError(f"Expected a sequence of (lon, lat) pairs, got shape {pts.shape}")
    pts = pts[:, :2]
    if not np.all(np.isfinite(pts)):
        raise GeometryError("Coordinates contain non-finite values")
    return pts


# ═══════════════════════════════════════════════════════════════════════════
# PROVIDER
# ═══════════════════════════════════════════════════════════════════════════
def _frame_scale(pts: np.ndarray) -> float:
    """cos(latitude) of the local equirectangular frame centred on pts."""
    cos0 = math.cos(math.radians(float(pts[:, 1].mean())))
    if cos0 < 1e-6:
        raise GeometryError("Cannot buffer geometry at the poles")
    return cos0


def _to_metres(geom, cos0: float):
    return affinity.scale(geom, xfact=METERS_PER_DEGREE * cos0, yfact=METERS_PER_DEGREE, origin=(0, 0))


def _to_degrees(geom, cos0: float):
    return affinity.scale(geom, xfact=1.0 / (METERS_PER_DEGREE * cos0), yfact=1.0 / METERS_PER_DEGREE, origin=(0, 0))


def _valid_polygon(coords) -> BaseGeometry:
    polygon = Polygon(coords)
    if not polygon.is_valid:
        polygon = make_valid(polygon)
    return polygon


@lru_cache(maxsize=4096)
def _prepared_polygon(ring: Ring) -> BaseGeometry:
    polygon = _valid_polygon(ring)
    shapely.prepare(polygon)
    return polygon


def _exterior_ring(geom, what: str) -> Ring:
    if geom.is_empty:
        raise GeometryError(f"{what} is empty")
    if geom.geom_type != "Polygon":
        raise GeometryError(f"{what} produced a {geom.geom_type}, expected one Polygon")
    if geom.interiors:
        log.debug(f"{what} has {len(geom.interiors)} interior holes, keeping the outline only")
    return close_ring(geom.exterior.coords)


class PlanarGeometryProvider:
    """
    shapely implementation of GeometryProvider.

    Geometry is projected into a local equirectangular frame (metres, scaled
    by the cosine of the mean latitude), buffered there with shapely and
    projected back. Round joins use `segments` sides per full circle with the
    radius enlarged so the polygon circumscribes the true circle; the result
    contains every point within distance_m of the input ring and nothing far
    beyond it, concavities included.
    """

    def __init__(self, segments: int = 32):
        if segments < 8:
            raise ValueError("segments must be >= 8")
        self.segments = segments
        self.quad_segs = segments // 4
        self._circumscribe = 1.0 / math.cos(math.pi / (4 * self.quad_segs))

    def _validate_ring(self, ring: Sequence[Coordinate]) -> np.ndarray:
        pts = _as_points(ring)
        if len(np.unique(pts, axis=0)) < 3:
            raise GeometryError("Ring needs at least 3 distinct vertices")
        return pts

    def buffer(self, ring: Sequence[Coordinate], distance_m: float) -> Ring:
        pts = self._validate_ring(ring)
        if not math.isfinite(distance_m) or distance_m < 0:
            raise GeometryError(f"Invalid buffer distance: {distance_m}")
        if distance_m == 0:
            return close_ring(pts.tolist())

        cos0 = _frame_scale(pts)
        try:
            body = _to_metres(_valid_polygon(pts.tolist()), cos0)
            buffered = body.buffer(distance_m * self._circumscribe, quad_segs=self.quad_segs)
        except (GEOSException, ValueError) as e:
            raise GeometryError(f"Buffer computation failed: {e}") from e
        return _exterior_ring(_to_degrees(buffered, cos0), "Buffer")

    def point_in_polygon(self, point: Coordinate, ring: Sequence[Coordinate]) -> bool:
        pts = self._validate_ring(ring)
        polygon = _prepared_polygon(close_ring(pts.tolist()))
        # covers(): boundary counts as inside
        return polygon.covers(Point(float(point[0]), float(point[1])))

    def buffer_line(self, coords: Sequence[Coordinate], distance_m: float) -> Ring:
        """
        Build a corridor polygon around a polyline.

        Square caps and mitred joins in the local metric frame. Raises
        GeometryError for degenerate lines or when no single polygon results.
        """
        pts = _as_points(coords)
        if not math.isfinite(distance_m) or distance_m <= 0:
            raise GeometryError(f"Corridor width must be positive, got {distance_m}")

        moved = np.ones(len(pts), dtype=bool)
        moved[1:] = np.any(np.diff(pts, axis=0) != 0, axis=1)
        pts = pts[moved]
        if len(pts) < 2:
            raise GeometryError("Line needs at least 2 distinct vertices")

        cos0 = _frame_scale(pts)
        try:
            line = _to_metres(LineString(pts.tolist()), cos0)
            corridor = line.buffer(distance_m, cap_style="square", join_style="mitre")
        except (GEOSException, ValueError) as e:
            raise GeometryError(f"Corridor computation failed: {e}") from e
        return _exterior_ring(_to_degrees(corridor, cos0), "Corridor")
