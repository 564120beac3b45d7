"""
Data loaders for the Site Suitability Engine.

Includes:
- Restricted zones (GeoJSON files or URLs, with built-in fallback zones)
- Material supply sites (materials API, with local JSON fallback)
"""

from loaders.zones import (
    ZoneIngestor,
    ZoneDataset,
    ZoneDatasetLoader,
    NoRestrictionDataError,
    classify_zone,
    build_fallback_zones,
)
from loaders.supply import SupplySiteLoader, parse_supply_record, filter_supply_sites

__all__ = [
    # Zones
    "ZoneIngestor",
    "ZoneDataset",
    "ZoneDatasetLoader",
    "NoRestrictionDataError",
    "classify_zone",
    "build_fallback_zones",
    # Supply
    "SupplySiteLoader",
    "parse_supply_record",
    "filter_supply_sites",
]
