import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from core.config import EngineSettings
from core.geometry import GeometryError, PlanarGeometryProvider, circle_ring, haversine_m
from core.models import ZoneSource, ZoneType
from loaders.zones import (
    FileZoneSource,
    HttpZoneSource,
    NoRestrictionDataError,
    ZoneDatasetLoader,
    ZoneIngestor,
    build_fallback_zones,
    classify_zone,
    extract_features,
    make_zone_source,
)

SQUARE = [[36.80, -1.30], [36.82, -1.30], [36.82, -1.28], [36.80, -1.28], [36.80, -1.30]]


def _feature(name, geometry=None, fid=None, **props):
    feature = {
        "type": "Feature",
        "properties": dict(props, name=name) if name else dict(props),
        "geometry": geometry or {"type": "Polygon", "coordinates": [SQUARE]},
    }
    if fid is not None:
        feature["id"] = fid
    return feature


@pytest.fixture
def ingestor():
    return ZoneIngestor(EngineSettings())


# ─────────────────────────────────────────────────────────────────────────
# Classification
# ─────────────────────────────────────────────────────────────────────────
@pytest.mark.parametrize("name,tags,expected", [
    ("Jomo Kenyatta International Airport", {}, ZoneType.AIRPORT),
    ("Wilson Aerodrome", {}, ZoneType.AIRPORT),
    ("Nairobi National Park", {}, ZoneType.PROTECTED_AREA),
    ("Karura Forest Reserve", {}, ZoneType.PROTECTED_AREA),
    ("Lake Naivasha", {}, ZoneType.WATER_BODY),
    ("Athi River", {}, ZoneType.WATER_BODY),
    ("Thika Highway", {}, ZoneType.TRANSPORTATION_CORRIDOR),
    ("Central Market", {}, ZoneType.OTHER),
    ("Runway 06", {"aeroway": "runway"}, ZoneType.AIRPORT),
    ("Kitengela", {"boundary": "national_park"}, ZoneType.PROTECTED_AREA),
    ("Ngong", {"leisure": "nature_reserve"}, ZoneType.PROTECTED_AREA),
    ("Pond", {"natural": "water"}, ZoneType.WATER_BODY),
    ("Mombasa Road", {"highway": "trunk"}, ZoneType.TRANSPORTATION_CORRIDOR),
    ("SGR", {"railway": "rail"}, ZoneType.TRANSPORTATION_CORRIDOR),
])
def test_classify_zone(name, tags, expected):
    assert classify_zone(name, tags) is expected


def test_classification_priority():
    assert classify_zone("Lake View Airport") is ZoneType.AIRPORT
    assert classify_zone("River Reserve") is ZoneType.PROTECTED_AREA
    assert classify_zone("Lakeside", {"aeroway": "aerodrome"}) is ZoneType.AIRPORT


def test_classification_case_insensitive():
    assert classify_zone("NAIROBI NATIONAL PARK") is ZoneType.PROTECTED_AREA
    assert classify_zone("Strip", {"AEROWAY": "Runway"}) is ZoneType.AIRPORT


# ─────────────────────────────────────────────────────────────────────────
# Geometry normalisation
# ─────────────────────────────────────────────────────────────────────────
def test_polygon_kept_and_closed(ingestor):
    ring = ingestor.normalize_geometry({"type": "Polygon", "coordinates": [SQUARE[:-1]]}, ZoneType.OTHER)
    assert len(ring) == 5
    assert ring[0] == ring[-1]


def test_large_polygon_simplified(ingestor):
    """Rings over 50 vertices keep every 3rd vertex."""
    big = [list(pt) for pt in circle_ring(36.8, -1.3, 1000.0, sides=60)]
    ring = ingestor.normalize_geometry({"type": "Polygon", "coordinates": [big]}, ZoneType.OTHER)
    assert len(big) == 61
    assert len(ring) == 21
    assert ring[0] == ring[-1]
    assert ring[1] == tuple(big[3])


def test_multipolygon_uses_first_member(ingestor):
    other = [[37.0, -1.0], [37.1, -1.0], [37.1, -0.9], [37.0, -1.0]]
    ring = ingestor.normalize_geometry(
        {"type": "MultiPolygon", "coordinates": [[SQUARE], [other]]}, ZoneType.OTHER
    )
    assert ring == tuple(tuple(pt) for pt in SQUARE)


def test_point_becomes_circle(ingestor):
    ring = ingestor.normalize_geometry({"type": "Point", "coordinates": [36.8, -1.3]}, ZoneType.OTHER)
    assert len(ring) == 13
    for lon, lat in ring[:-1]:
        assert haversine_m(-1.3, 36.8, lat, lon) == pytest.approx(500.0, rel=0.01)


def test_linestring_becomes_corridor(ingestor):
    ring = ingestor.normalize_geometry(
        {"type": "LineString", "coordinates": [[36.80, -1.30], [36.82, -1.30]]},
        ZoneType.TRANSPORTATION_CORRIDOR,
    )
    assert ring[0] == ring[-1]
    assert ingestor.geometry.point_in_polygon((36.81, -1.30), ring)


def test_linestring_falls_back_to_envelope():
    geometry = PlanarGeometryProvider()
    ingestor = ZoneIngestor(EngineSettings(), geometry)
    with patch.object(geometry, "buffer_line", side_effect=GeometryError("corridor failed")):
        ring = ingestor.normalize_geometry(
            {"type": "LineString", "coordinates": [[36.80, -1.30], [36.82, -1.30], [36.82, -1.28]]},
            ZoneType.TRANSPORTATION_CORRIDOR,
        )
    # Rectangle around the endpoints
    assert len(ring) == 5
    assert geometry.point_in_polygon((36.81, -1.29), ring)


@pytest.mark.parametrize("geometry", [
    {"type": "GeometryCollection", "geometries": []},
    {"type": "Polygon"},
    {"type": "Polygon", "coordinates": [[[36.8, 95.0], [36.9, -1.0], [36.9, -1.1], [36.8, 95.0]]]},
    {"type": "LineString", "coordinates": [[36.8, -1.3]]},
])
def test_unsupported_or_malformed_geometry(ingestor, geometry):
    with pytest.raises(ValueError):
        ingestor.normalize_geometry(geometry, ZoneType.OTHER)


# ─────────────────────────────────────────────────────────────────────────
# Zone building and ingestion
# ─────────────────────────────────────────────────────────────────────────
def test_build_zone_fields(ingestor):
    zone = ingestor.build_zone(_feature("Nairobi National Park", fid="way/123"), 7)
    assert zone.id == "way/123"
    assert zone.zone_type is ZoneType.PROTECTED_AREA
    assert zone.buffer_distance_m == 2000.0
    assert zone.source is ZoneSource.INGESTED


def test_build_zone_generated_id(ingestor):
    assert ingestor.build_zone(_feature("Lake Nakuru"), 7).id == "zone-7"


@pytest.mark.parametrize("name,buffer_m", [
    ("JKIA Airport", 3000.0),
    ("Karura Reserve", 2000.0),
    ("Lake Nakuru", 500.0),
    ("Some Plot", 1000.0),
])
def test_buffer_by_type(ingestor, name, buffer_m):
    assert ingestor.build_zone(_feature(name), 0).buffer_distance_m == buffer_m


def test_unnamed_feature_skipped(ingestor):
    assert ingestor.build_zone(_feature(None), 0) is None
    assert ingestor.build_zone(_feature("   "), 0) is None


def test_ingest_skips_bad_features(ingestor):
    features = [
        _feature("Good Park"),
        _feature("Broken", geometry={"type": "Polygon", "coordinates": "bad"}),
        _feature(None),
        _feature("Unsupported", geometry={"type": "Circle", "coordinates": [0, 0]}),
        _feature("Lake Two"),
    ]
    zones = asyncio.run(ingestor.ingest(features))
    assert [z.name for z in zones] == ["Good Park", "Lake Two"]


def test_ingest_yields_between_batches(ingestor):
    features = [_feature(f"Zone {i}") for i in range(120)]
    with patch("loaders.zones.asyncio.sleep", new=AsyncMock()) as sleep:
        zones = asyncio.run(ingestor.ingest(features))
    assert len(zones) == 120
    # 3 batches of up to 50, yielding between them
    assert sleep.await_count == 2


# ─────────────────────────────────────────────────────────────────────────
# Sources and dataset loader
# ─────────────────────────────────────────────────────────────────────────
def test_extract_features():
    feature = _feature("A")
    assert extract_features({"type": "FeatureCollection", "features": [feature]}) == [feature]
    assert extract_features([feature, "junk"]) == [feature]
    assert extract_features(feature) == [feature]
    with pytest.raises(ValueError):
        extract_features({"type": "Topology"})


def test_make_zone_source():
    assert isinstance(make_zone_source("https://example.org/zones.geojson"), HttpZoneSource)
    assert isinstance(make_zone_source("data/zones.geojson"), FileZoneSource)


def test_http_source_fetch():
    with patch("requests.Session") as mock_session:
        source = HttpZoneSource("https://example.org/zones.geojson")
        source.session = mock_session.return_value
        response = MagicMock()
        response.json.return_value = {"type": "FeatureCollection", "features": []}
        source.session.get.return_value = response

        assert source.fetch() == {"type": "FeatureCollection", "features": []}
        source.session.get.assert_called_once_with("https://example.org/zones.geojson", timeout=15)


def _write_collection(path, features):
    path.write_text(json.dumps({"type": "FeatureCollection", "features": features}))
    return str(path)


def test_loader_first_working_source_wins(tmp_path):
    good = _write_collection(tmp_path / "zones.geojson", [_feature("Lake Nakuru")])
    other = _write_collection(tmp_path / "other.geojson", [_feature("Other Park")])
    loader = ZoneDatasetLoader(
        [FileZoneSource(tmp_path / "missing.geojson"), FileZoneSource(good), FileZoneSource(other)],
        ZoneIngestor(EngineSettings()),
        build_fallback_zones(),
    )

    dataset = loader.load_sync()
    assert dataset.source_name == good
    assert not dataset.used_fallback
    assert [z.name for z in dataset.zones] == ["Lake Nakuru"]
    assert len(loader.errors) == 1


def test_loader_falls_back_when_all_sources_fail(tmp_path):
    (tmp_path / "broken.geojson").write_text("{not json")
    loader = ZoneDatasetLoader(
        [FileZoneSource(tmp_path / "broken.geojson"), FileZoneSource(tmp_path / "missing.geojson")],
        ZoneIngestor(EngineSettings()),
        build_fallback_zones(),
    )

    dataset = loader.load_sync()
    assert dataset.used_fallback
    assert len(dataset) == 5
    assert all(z.source is ZoneSource.FALLBACK for z in dataset.zones)


def test_loader_falls_back_when_winner_has_no_usable_zones(tmp_path):
    unnamed = _write_collection(tmp_path / "unnamed.geojson", [_feature(None)])
    loader = ZoneDatasetLoader(
        [FileZoneSource(unnamed)], ZoneIngestor(EngineSettings()), build_fallback_zones()
    )
    assert loader.load_sync().used_fallback


def test_loader_without_fallback_raises(tmp_path):
    loader = ZoneDatasetLoader([FileZoneSource(tmp_path / "missing.geojson")], ZoneIngestor(EngineSettings()))
    with pytest.raises(NoRestrictionDataError, match="no restriction data available"):
        loader.load_sync()


def test_loader_from_settings(tmp_path):
    path = _write_collection(tmp_path / "zones.geojson", [_feature("Wilson Airport")])
    loader = ZoneDatasetLoader.from_settings(EngineSettings(zone_sources=[path], use_fallback_zones=False))
    dataset = loader.load_sync()
    assert dataset.zones[0].zone_type is ZoneType.AIRPORT


def test_fallback_zones():
    zones = build_fallback_zones()
    names = {z.name for z in zones}
    assert "Nairobi National Park" in names
    assert "Jomo Kenyatta International Airport" in names
    for zone in zones:
        assert zone.ring[0] == zone.ring[-1]
        assert zone.bounding_box.min_lon < zone.bounding_box.max_lon
