"""
Supply Sites Loader - raw construction material sources.

Fetches survey records from the materials API, falling back to a local JSON
export, and keeps only records with usable coordinates.
"""

import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests
from tenacity import retry, stop_after_attempt, wait_exponential

from core.models import SupplySite, is_valid_coordinate

log = logging.getLogger(__name__)

# Record keys carried into SupplySite.metadata (source key -> metadata key)
METADATA_FIELDS = {
    "questionnaireNo": "questionnaire_no",
    "researchAssistantNo": "research_assistant_no",
    "challenges": "challenges",
    "recommendations": "recommendations",
    "timestamp": "timestamp",
}
LOCATION_FIELDS = {
    "county": "county",
    "subCounty": "sub_county",
    "ward": "ward",
}


def _first(record: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def _split_categories(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = [str(v) for v in value if v is not None]
    else:
        items = [str(value)]
    return [item.strip() for item in items if item.strip()]


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_supply_record(raw: Dict[str, Any], index: int = 0) -> Optional[SupplySite]:
    """
    Parse one survey record into a SupplySite.

    Returns:
        SupplySite, or None when the record has no usable coordinates
    """
    if not isinstance(raw, dict):
        log.debug(f"Skipping supply record #{index}: not an object")
        return None

    location = raw.get("location") if isinstance(raw.get("location"), dict) else {}

    lat = _to_float(_first(raw, "latitude", "lat"))
    lon = _to_float(_first(raw, "longitude", "lon", "lng"))
    if lat is None or lon is None:
        lat = _to_float(_first(location, "latitude", "lat"))
        lon = _to_float(_first(location, "longitude", "lon", "lng"))

    if lat is None or lon is None or not is_valid_coordinate(lat, lon):
        log.debug(f"Excluding supply record #{index}: invalid coordinates ({lat}, {lon})")
        return None

    categories = _split_categories(_first(raw, "type", "material", "materials", "categories"))
    name = _first(raw, "name")
    if not name:
        name = ", ".join(categories) if categories else f"Supply site {index + 1}"

    site_id = _first(raw, "_id", "id", "questionnaireNo")
    location_name = _first(raw, "materialLocation") or _first(location, "name") or ""

    metadata = {}
    for key, meta_key in METADATA_FIELDS.items():
        if raw.get(key) not in (None, ""):
            metadata[meta_key] = raw[key]
    for key, meta_key in LOCATION_FIELDS.items():
        value = _first(location, key) or _first(raw, key)
        if value:
            metadata[meta_key] = value

    return SupplySite(
        id=str(site_id) if site_id is not None else f"supply-{index}",
        name=str(name).strip(),
        categories=frozenset(categories),
        lat=lat,
        lon=lon,
        location_name=str(location_name),
        metadata=metadata,
    )


def parse_supply_records(records: Iterable[Dict[str, Any]]) -> List[SupplySite]:
    sites = []
    total = 0
    for index, raw in enumerate(records):
        total += 1
        site = parse_supply_record(raw, index)
        if site is not None:
            sites.append(site)
    if total != len(sites):
        log.info(f"Parsed {len(sites)} supply sites, excluded {total - len(sites)} records")
    return sites


def _records_from_payload(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data", "materials", "results"):
            if isinstance(payload.get(key), list):
                return payload[key]
    raise ValueError("Supply payload is not a list of records")


class SupplySiteLoader:
    """
    Loads supply sites from the materials API with a local file fallback.

    Usage:
        loader = SupplySiteLoader(api_url="https://example.org/api/materials",
                                  fallback_path="data/materials.json")
        sites = loader.load()
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        fallback_path: Optional[str] = None,
        timeout: int = 15
    ):
        self.api_url = api_url
        self.fallback_path = fallback_path
        self.timeout = timeout
        self.session = requests.Session()
        self.used_fallback = False

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=5), reraise=True)
    def _fetch_records(self) -> List[Dict[str, Any]]:
        response = self.session.get(self.api_url, timeout=self.timeout)
        response.raise_for_status()
        return _records_from_payload(response.json())

    def _read_fallback(self) -> List[Dict[str, Any]]:
        with open(Path(self.fallback_path), "r", encoding="utf-8") as f:
            return _records_from_payload(json.load(f))

    def load(self) -> List[SupplySite]:
        """Valid supply sites, or an empty list when every source fails."""
        self.used_fallback = False

        if self.api_url:
            try:
                records = self._fetch_records()
                log.info(f"Fetched {len(records)} supply records from {self.api_url}")
                return parse_supply_records(records)
            except Exception as e:
                log.warning(f"Supply API request failed: {e}")

        if self.fallback_path:
            try:
                records = self._read_fallback()
                self.used_fallback = True
                log.info(f"Loaded {len(records)} supply records from {self.fallback_path}")
                return parse_supply_records(records)
            except Exception as e:
                log.error(f"Supply fallback file failed: {e}")
                return []

        log.error("No supply source available")
        return []


def filter_supply_sites(
    sites: Iterable[SupplySite],
    category: Optional[str] = None,
    county: Optional[str] = None,
    name_query: Optional[str] = None
) -> List[SupplySite]:
    """Case-insensitive filter by material category, county and name/location text."""
    category = category.lower() if category else None
    county = county.lower() if county else None
    name_query = name_query.lower() if name_query else None

    result = []
    for site in sites:
        if category and not any(category in c.lower() for c in site.categories):
            continue
        if county and str(site.metadata.get("county", "")).lower() != county:
            continue
        if name_query and name_query not in site.name.lower() and name_query not in site.location_name.lower():
            continue
        result.append(site)
    return result
