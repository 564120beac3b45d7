import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from loaders.supply import SupplySiteLoader, filter_supply_sites, parse_supply_record

SURVEY_RECORD = {
    "id": "1",
    "questionnaireNo": "1",
    "researchAssistantNo": "002/B1",
    "name": "Local blocks, Kokoto",
    "type": ["Blocks", "Kokoto"],
    "location": {
        "name": "Mwachanda",
        "latitude": -4.170327,
        "longitude": 39.246377,
        "county": "Kilifi",
        "subCounty": "Kaloleni",
        "ward": "Mwanamwinga",
    },
    "challenges": ["Poor roads esp during the rainy season"],
}


@pytest.fixture
def mock_loader(tmp_path):
    fallback = tmp_path / "materials.json"
    fallback.write_text(json.dumps([SURVEY_RECORD]))
    with patch('requests.Session') as mock_session:
        loader = SupplySiteLoader(
            api_url="https://example.org/api/materials",
            fallback_path=str(fallback),
        )
        loader.session = mock_session.return_value
        yield loader


def test_parse_survey_record():
    site = parse_supply_record(SURVEY_RECORD, 0)
    assert site.id == "1"
    assert site.name == "Local blocks, Kokoto"
    assert site.categories == frozenset({"Blocks", "Kokoto"})
    assert site.lat == -4.170327
    assert site.lon == 39.246377
    assert site.location_name == "Mwachanda"
    assert site.metadata["county"] == "Kilifi"
    assert site.metadata["sub_county"] == "Kaloleni"
    assert site.metadata["challenges"] == ["Poor roads esp during the rainy season"]


def test_parse_flat_record_with_comma_materials():
    site = parse_supply_record({
        "_id": "abc",
        "material": "River Sand, Pit Sand",
        "materialLocation": "Maweu river",
        "latitude": "-4.05",
        "longitude": "39.60",
    }, 3)
    assert site.id == "abc"
    assert site.name == "River Sand, Pit Sand"
    assert site.categories == frozenset({"River Sand", "Pit Sand"})
    assert site.location_name == "Maweu river"
    assert site.lat == -4.05


def test_parse_record_id_fallbacks():
    site = parse_supply_record({"questionnaireNo": "42", "lat": -1.0, "lng": 36.0}, 0)
    assert site.id == "42"
    assert parse_supply_record({"lat": -1.0, "lon": 36.0}, 9).id == "supply-9"


@pytest.mark.parametrize("record", [
    {"name": "No coords"},
    {"name": "NaN", "latitude": float("nan"), "longitude": 36.0},
    {"name": "Out of range", "latitude": -100.0, "longitude": 36.0},
    {"name": "Text", "latitude": "north", "longitude": "east"},
    {"name": "Nested bad", "location": {"latitude": None, "longitude": 39.2}},
    "not a record",
])
def test_invalid_records_excluded(record):
    assert parse_supply_record(record, 0) is None


def test_load_from_api(mock_loader):
    mock_response = MagicMock()
    mock_response.json.return_value = [SURVEY_RECORD, {"name": "Bad"}]
    mock_loader.session.get.return_value = mock_response

    sites = mock_loader.load()
    assert [s.id for s in sites] == ["1"]
    assert not mock_loader.used_fallback


def test_load_from_wrapped_payload(mock_loader):
    mock_response = MagicMock()
    mock_response.json.return_value = {"data": [SURVEY_RECORD]}
    mock_loader.session.get.return_value = mock_response
    assert len(mock_loader.load()) == 1


def test_api_failure_uses_fallback_file(mock_loader):
    with patch.object(mock_loader, "_fetch_records", side_effect=requests.ConnectionError("down")):
        sites = mock_loader.load()
    assert mock_loader.used_fallback
    assert [s.name for s in sites] == ["Local blocks, Kokoto"]


def test_both_sources_fail(tmp_path):
    loader = SupplySiteLoader(api_url=None, fallback_path=str(tmp_path / "missing.json"))
    assert loader.load() == []
    assert SupplySiteLoader().load() == []


def test_filter_supply_sites():
    blocks = parse_supply_record(SURVEY_RECORD, 0)
    sand = parse_supply_record({
        "id": "2", "type": ["River Sand"], "latitude": -4.0, "longitude": 39.6,
        "location": {"name": "Kisauni", "county": "Mombasa"},
    }, 1)
    sites = [blocks, sand]

    assert filter_supply_sites(sites, category="sand") == [sand]
    assert filter_supply_sites(sites, county="KILIFI") == [blocks]
    assert filter_supply_sites(sites, name_query="kisauni") == [sand]
    assert filter_supply_sites(sites, category="blocks", county="mombasa") == []
    assert filter_supply_sites(sites) == sites
