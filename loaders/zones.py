"""
Restricted Zones Loader - ingest GeoJSON zone datasets.

Features are classified by name keywords and OSM tags, normalised to a single
closed (lon, lat) ring and turned into immutable RestrictedZone records.
Sources are tried in priority order; when none yields data a small set of
well-known Kenyan zones is used instead.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import requests
from tenacity import retry, stop_after_attempt, wait_exponential

from core.config import EngineSettings, get_settings
from core.geometry import (
    GeometryError,
    GeometryProvider,
    PlanarGeometryProvider,
    circle_ring,
    close_ring,
    envelope_ring,
)
from core.models import (
    ZONE_BUFFER_METERS,
    RestrictedZone,
    Ring,
    ZoneSource,
    ZoneType,
    is_valid_coordinate,
)

log = logging.getLogger(__name__)


class NoRestrictionDataError(RuntimeError):
    """Raised when no dataset source and no fallback produced any zone."""


# ═══════════════════════════════════════════════════════════════════════════
# CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════════
# Tag matcher: tag key -> accepted values (None = any value)
TagMatcher = Dict[str, Optional[Tuple[str, ...]]]

# Ordered rules, first match wins
ZONE_RULES: List[Tuple[ZoneType, Tuple[str, ...], TagMatcher]] = [
    (
        ZoneType.AIRPORT,
        ("airport", "aerodrome", "airstrip", "airfield"),
        {"aeroway": None},
    ),
    (
        ZoneType.PROTECTED_AREA,
        ("national park", "reserve", "protected", "conservancy", "wildlife", "sanctuary", "forest"),
        {
            "boundary": ("national_park", "protected_area"),
            "leisure": ("nature_reserve",),
            "tourism": ("national_park",),
        },
    ),
    (
        ZoneType.WATER_BODY,
        ("lake", "river", "water", "reservoir", "swamp", "creek"),
        {"natural": ("water", "wetland"), "waterway": None, "water": None},
    ),
    (
        ZoneType.TRANSPORTATION_CORRIDOR,
        ("highway", "railway", "expressway", "bypass", "railroad"),
        {"highway": None, "railway": None},
    ),
]


def _tags_match(tags: Dict[str, Any], matcher: TagMatcher) -> bool:
    lowered = {str(k).lower(): str(v).lower() for k, v in tags.items() if v is not None}
    for key, values in matcher.items():
        if key not in lowered:
            continue
        if values is None or lowered[key] in values:
            return True
    return False


def classify_zone(name: Optional[str], tags: Optional[Dict[str, Any]] = None) -> ZoneType:
    """
    Classify a feature by its name and tags.

    Rules are checked in ZONE_RULES order, so "Lake View Airport" is an
    Airport. Anything unmatched is Other.
    """
    text = (name or "").lower()
    tags = tags or {}
    for zone_type, keywords, matcher in ZONE_RULES:
        if any(k in text for k in keywords) or _tags_match(tags, matcher):
            return zone_type
    return ZoneType.OTHER


# ═══════════════════════════════════════════════════════════════════════════
# INGESTION
# ═══════════════════════════════════════════════════════════════════════════
def _check_points(coords: Sequence[Sequence[float]]) -> List[Tuple[float, float]]:
    points = []
    for pt in coords:
        if len(pt) < 2:
            raise ValueError(f"Malformed position {pt!r}")
        lon, lat = pt[0], pt[1]
        if not is_valid_coordinate(lat, lon):
            raise ValueError(f"Invalid position ({lon}, {lat})")
        points.append((float(lon), float(lat)))
    return points


class ZoneIngestor:
    """
    Turns GeoJSON features into RestrictedZone records.

    Usage:
        ingestor = ZoneIngestor()
        zones = await ingestor.ingest(features)
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        geometry: Optional[GeometryProvider] = None
    ):
        self.settings = settings or get_settings()
        self.geometry = geometry or PlanarGeometryProvider(self.settings.buffer_segments)

    def _simplify(self, ring: List[Tuple[float, float]]) -> List[Tuple[float, float]]:
        if len(ring) <= self.settings.simplify_threshold:
            return ring
        return ring[::self.settings.simplify_step]

    def _line_to_ring(self, coords: Sequence[Sequence[float]], distance_m: float) -> Ring:
        points = _check_points(coords)
        if len(points) < 2:
            raise ValueError("LineString needs at least 2 positions")
        buffer_line: Optional[Callable] = getattr(self.geometry, "buffer_line", None)
        if buffer_line is not None:
            try:
                return buffer_line(points, distance_m)
            except GeometryError as e:
                log.debug(f"Line buffer failed, using endpoint envelope: {e}")
        return envelope_ring(points[0], points[-1], distance_m)

    def normalize_geometry(self, geometry: Dict[str, Any], zone_type: ZoneType) -> Ring:
        """
        Reduce a GeoJSON geometry to one closed ring.

        Raises:
            ValueError: unsupported geometry type or malformed coordinates
        """
        geom_type = geometry.get("type")
        coords = geometry.get("coordinates")
        if coords is None:
            raise ValueError("Geometry has no coordinates")

        if geom_type == "MultiPolygon":
            if not coords:
                raise ValueError("Empty MultiPolygon")
            # First member only
            geom_type, coords = "Polygon", coords[0]

        if geom_type == "Polygon":
            if not coords:
                raise ValueError("Empty Polygon")
            outer = _check_points(coords[0])
            return close_ring(self._simplify(outer))

        if geom_type == "Point":
            (lon, lat), = _check_points([coords])
            return circle_ring(lon, lat, self.settings.point_zone_radius_m, self.settings.point_zone_sides)

        if geom_type == "LineString":
            return self._line_to_ring(coords, ZONE_BUFFER_METERS[zone_type])

        raise ValueError(f"Unsupported geometry type: {geom_type}")

    def build_zone(self, feature: Dict[str, Any], index: int) -> Optional[RestrictedZone]:
        """Build a zone from a feature, or None for features without a name or geometry."""
        properties = feature.get("properties") or {}
        name = properties.get("name")
        if not isinstance(name, str) or not name.strip():
            log.debug(f"Skipping unnamed feature #{index}")
            return None

        geometry = feature.get("geometry")
        if not geometry:
            log.debug(f"Skipping feature '{name}' without geometry")
            return None

        zone_type = classify_zone(name, properties)
        ring = self.normalize_geometry(geometry, zone_type)
        zone_id = feature.get("id")

        return RestrictedZone(
            id=str(zone_id) if zone_id is not None else f"zone-{index}",
            name=name.strip(),
            zone_type=zone_type,
            ring=ring,
            buffer_distance_m=ZONE_BUFFER_METERS[zone_type],
            source=ZoneSource.INGESTED,
        )

    async def ingest(self, features: Sequence[Dict[str, Any]]) -> List[RestrictedZone]:
        """
        Ingest features in batches, yielding to the event loop between batches.

        A failing feature is logged and skipped.
        """
        zones: List[RestrictedZone] = []
        batch_size = max(1, self.settings.ingest_batch_size)
        skipped = 0

        for start in range(0, len(features), batch_size):
            for index in range(start, min(start + batch_size, len(features))):
                try:
                    zone = self.build_zone(features[index], index)
                except Exception as e:
                    log.warning(f"Skipping feature #{index}: {e}")
                    zone = None
                if zone is None:
                    skipped += 1
                else:
                    zones.append(zone)

            if start + batch_size < len(features):
                await asyncio.sleep(0)

        log.info(f"Ingested {len(zones)} zones from {len(features)} features ({skipped} skipped)")
        return zones


# ═══════════════════════════════════════════════════════════════════════════
# DATASET SOURCES
# ═══════════════════════════════════════════════════════════════════════════
def extract_features(payload: Any) -> List[Dict[str, Any]]:
    """Features from a FeatureCollection, a single Feature or a bare list."""
    if isinstance(payload, list):
        return [f for f in payload if isinstance(f, dict)]
    if isinstance(payload, dict):
        if payload.get("type") == "Feature":
            return [payload]
        features = payload.get("features")
        if isinstance(features, list):
            return [f for f in features if isinstance(f, dict)]
    raise ValueError("Payload is not a GeoJSON FeatureCollection")


class FileZoneSource:
    """GeoJSON dataset on the local filesystem."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.name = str(path)

    def fetch(self) -> Any:
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)


class HttpZoneSource:
    """GeoJSON dataset served over HTTP."""

    def __init__(self, url: str, timeout: int = 15):
        self.url = url
        self.name = url
        self.timeout = timeout
        self.session = requests.Session()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=5), reraise=True)
    def fetch(self) -> Any:
        response = self.session.get(self.url, timeout=self.timeout)
        response.raise_for_status()
        return response.json()


def make_zone_source(location: str, timeout: int = 15):
    """Source for a path or http(s) URL."""
    if location.startswith(("http://", "https://")):
        return HttpZoneSource(location, timeout=timeout)
    return FileZoneSource(location)


# ═══════════════════════════════════════════════════════════════════════════
# FALLBACK ZONES
# ═══════════════════════════════════════════════════════════════════════════
# (id, name, type, (min_lon, min_lat, max_lon, max_lat)), approximate extents
FALLBACK_ZONES = [
    ("fallback-1", "Nairobi National Park", ZoneType.PROTECTED_AREA, (36.75, -1.40, 36.95, -1.20)),
    ("fallback-2", "Jomo Kenyatta International Airport", ZoneType.AIRPORT, (36.92, -1.33, 36.98, -1.30)),
    ("fallback-3", "Moi International Airport", ZoneType.AIRPORT, (39.585, -4.045, 39.615, -4.022)),
    ("fallback-4", "Arabuko Sokoke Forest Reserve", ZoneType.PROTECTED_AREA, (39.78, -3.45, 39.95, -3.20)),
    ("fallback-5", "Lake Naivasha", ZoneType.WATER_BODY, (36.28, -0.86, 36.42, -0.70)),
]


def build_fallback_zones() -> List[RestrictedZone]:
    zones = []
    for zone_id, name, zone_type, (min_lon, min_lat, max_lon, max_lat) in FALLBACK_ZONES:
        zones.append(RestrictedZone(
            id=zone_id,
            name=name,
            zone_type=zone_type,
            ring=close_ring([
                (min_lon, min_lat),
                (max_lon, min_lat),
                (max_lon, max_lat),
                (min_lon, max_lat),
            ]),
            buffer_distance_m=ZONE_BUFFER_METERS[zone_type],
            source=ZoneSource.FALLBACK,
        ))
    return zones


# ═══════════════════════════════════════════════════════════════════════════
# DATASET LOADER
# ═══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class ZoneDataset:
    """Zone store produced by one load; replaced wholesale on reload."""
    zones: Tuple[RestrictedZone, ...]
    source_name: str
    used_fallback: bool = False

    def __len__(self) -> int:
        return len(self.zones)


class ZoneDatasetLoader:
    """
    Resolve the zone dataset from prioritized sources.

    The first source that parses with at least one feature wins. If all
    sources fail, or the winner yields no usable zone, the fallback zones are
    returned; with no fallback configured NoRestrictionDataError is raised.

    Usage:
        loader = ZoneDatasetLoader.from_settings(get_settings())
        dataset = await loader.load()
    """

    def __init__(
        self,
        sources: Sequence[Any],
        ingestor: Optional[ZoneIngestor] = None,
        fallback_zones: Optional[Sequence[RestrictedZone]] = None
    ):
        self.sources = list(sources)
        self.ingestor = ingestor or ZoneIngestor()
        self.fallback_zones = tuple(fallback_zones or ())
        self.errors: List[str] = []

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "ZoneDatasetLoader":
        sources = [make_zone_source(s, timeout=settings.http_timeout) for s in settings.zone_sources]
        fallback = build_fallback_zones() if settings.use_fallback_zones else None
        return cls(sources, ZoneIngestor(settings), fallback)

    async def load(self) -> ZoneDataset:
        self.errors = []

        for source in self.sources:
            try:
                payload = await asyncio.to_thread(source.fetch)
                features = extract_features(payload)
            except Exception as e:
                log.warning(f"Zone source {source.name} failed: {e}")
                self.errors.append(f"{source.name}: {e}")
                continue

            if not features:
                log.warning(f"Zone source {source.name} has no features")
                self.errors.append(f"{source.name}: no features")
                continue

            zones = await self.ingestor.ingest(features)
            if zones:
                log.info(f"Loaded {len(zones)} restricted zones from {source.name}")
                return ZoneDataset(zones=tuple(zones), source_name=source.name)

            log.warning(f"Zone source {source.name} produced no usable zones")
            self.errors.append(f"{source.name}: no usable zones")
            break

        if self.fallback_zones:
            log.warning(f"Using {len(self.fallback_zones)} fallback restricted zones")
            return ZoneDataset(zones=self.fallback_zones, source_name="fallback", used_fallback=True)

        log.error(f"No restriction data available: {'; '.join(self.errors) or 'no sources configured'}")
        raise NoRestrictionDataError("no restriction data available")

    def load_sync(self) -> ZoneDataset:
        """Blocking wrapper around load() for callers without an event loop."""
        return asyncio.run(self.load())
