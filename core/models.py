"""
Core data models for the Site Suitability Engine.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

EARTH_RADIUS_M = 6371000.0

# A ring is a closed sequence of (lon, lat) vertices
Coordinate = Tuple[float, float]
Ring = Tuple[Coordinate, ...]


class ZoneType(Enum):
    """Regulated zone classifications, in classification priority order."""
    AIRPORT = "Airport"
    PROTECTED_AREA = "Protected Area"
    WATER_BODY = "Water Body"
    TRANSPORTATION_CORRIDOR = "Transportation Corridor"
    OTHER = "Other"


ZONE_BUFFER_METERS = {
    ZoneType.AIRPORT: 3000.0,
    ZoneType.PROTECTED_AREA: 2000.0,
    ZoneType.WATER_BODY: 500.0,
    ZoneType.TRANSPORTATION_CORRIDOR: 200.0,
    ZoneType.OTHER: 1000.0,
}


class ZoneSource(Enum):
    INGESTED = "ingested"
    FALLBACK = "fallback"


class Severity(Enum):
    INSIDE = "Inside"
    BUFFERED = "Buffered"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def is_valid_coordinate(lat: Any, lon: Any) -> bool:
    """True for finite numeric coordinates inside WGS84 ranges."""
    if isinstance(lat, bool) or isinstance(lon, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in decimal degrees (WGS84)."""
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def contains(self, lon: float, lat: float) -> bool:
        """Inclusive point test."""
        return (self.min_lon <= lon <= self.max_lon and
                self.min_lat <= lat <= self.max_lat)

    def expanded(self, distance_m: float) -> "BoundingBox":
        """Pad the box outward by a metric distance (small-angle approximation)."""
        if distance_m <= 0:
            return self
        dlat = math.degrees(distance_m / EARTH_RADIUS_M)
        # Use the latitude furthest from the equator so longitude padding never falls short
        widest_lat = min(max(abs(self.min_lat), abs(self.max_lat)) + dlat, 89.9)
        dlon = dlat / math.cos(math.radians(widest_lat))
        return BoundingBox(
            min_lon=self.min_lon - dlon,
            min_lat=self.min_lat - dlat,
            max_lon=self.max_lon + dlon,
            max_lat=self.max_lat + dlat,
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "min_lon": self.min_lon,
            "min_lat": self.min_lat,
            "max_lon": self.max_lon,
            "max_lat": self.max_lat,
        }

    @classmethod
    def from_ring(cls, ring: Ring) -> "BoundingBox":
        lons = [pt[0] for pt in ring]
        lats = [pt[1] for pt in ring]
        return cls(min(lons), min(lats), max(lons), max(lats))


@dataclass(frozen=True)
class RestrictedZone:
    """
    A regulated area with a caution buffer.

    Immutable once created. The body ring must be closed (first vertex equals
    last) and the bounding boxes are always derived from it.
    """
    id: str
    name: str
    zone_type: ZoneType
    ring: Ring
    buffer_distance_m: float
    source: ZoneSource = ZoneSource.INGESTED
    bounding_box: BoundingBox = field(init=False)
    search_box: BoundingBox = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        ring = tuple((float(pt[0]), float(pt[1])) for pt in self.ring)
        if len(ring) < 4:
            raise ValueError(f"Zone {self.id} ring needs at least 4 vertices, got {len(ring)}")
        if ring[0] != ring[-1]:
            raise ValueError(f"Zone {self.id} ring is not closed")
        if self.buffer_distance_m < 0:
            raise ValueError(f"Zone {self.id} buffer distance must be >= 0")

        bbox = BoundingBox.from_ring(ring)
        object.__setattr__(self, "ring", ring)
        object.__setattr__(self, "bounding_box", bbox)
        # Rejection box: a Buffered hit can only lie within body bbox + buffer
        object.__setattr__(self, "search_box", bbox.expanded(self.buffer_distance_m))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.zone_type.value,
            "ring": [list(pt) for pt in self.ring],
            "buffer_distance_m": self.buffer_distance_m,
            "source": self.source.value,
            "bounding_box": self.bounding_box.to_dict(),
        }


@dataclass(frozen=True)
class CandidateSite:
    """A site selected for analysis."""
    lat: float
    lon: float

    @property
    def is_valid(self) -> bool:
        return is_valid_coordinate(self.lat, self.lon)

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lon": self.lon}


@dataclass(frozen=True)
class SupplySite:
    """A source of raw construction material."""
    id: str
    name: str
    categories: FrozenSet[str]
    lat: float
    lon: float
    location_name: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "categories": sorted(self.categories),
            "lat": self.lat,
            "lon": self.lon,
            "location_name": self.location_name,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class RestrictionFinding:
    """A conflict between a candidate site and a zone."""
    zone_id: str
    zone_name: str
    zone_type: ZoneType
    severity: Severity
    buffer_distance_m: float = 0.0

    def describe(self) -> str:
        if self.severity is Severity.INSIDE:
            return f"Site is inside {self.zone_name} ({self.zone_type.value})"
        return (f"Site is within the {self.buffer_distance_m:.0f}m buffer of "
                f"{self.zone_name} ({self.zone_type.value})")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zone_id": self.zone_id,
            "zone_name": self.zone_name,
            "zone_type": self.zone_type.value,
            "severity": self.severity.value,
            "buffer_distance_m": self.buffer_distance_m,
        }


@dataclass(frozen=True)
class ProximityResult:
    """Distance and travel time from a candidate site to a supply site."""
    supply_site: SupplySite
    distance_m: float
    travel_time_min: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "supply_site": self.supply_site.to_dict(),
            "distance_m": round(self.distance_m, 1),
            "travel_time_min": round(self.travel_time_min, 1),
        }


@dataclass(frozen=True)
class AlternativeLocation:
    lat: float
    lng: float
    reason: str
    distance_m: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "reason": self.reason,
            "distance_m": self.distance_m,
        }


@dataclass(frozen=True)
class SiteAdvice:
    """
    Narrative advice for a site, from the AI collaborator or the rule-based
    fallback. Both produce the same structure.
    """
    summary: str
    recommendation: str
    risk_level: RiskLevel
    confidence: float
    key_factors: Tuple[str, ...] = ()
    next_steps: Tuple[str, ...] = ()
    alternative_location: Optional[AlternativeLocation] = None
    source: str = "rules"  # "model" or "rules"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "recommendation": self.recommendation,
            "risk_level": self.risk_level.value,
            "confidence": self.confidence,
            "key_factors": list(self.key_factors),
            "next_steps": list(self.next_steps),
            "alternative_location": (
                self.alternative_location.to_dict() if self.alternative_location else None
            ),
            "source": self.source,
        }


@dataclass(frozen=True)
class AnalysisReport:
    """
    The output of a site analysis.

    The base report (advice is None) is what the session cache stores;
    advice is an optional enrichment attached afterwards.
    """
    site: CandidateSite
    findings: Tuple[RestrictionFinding, ...]
    proximities: Tuple[ProximityResult, ...]
    recommendations: Tuple[str, ...]
    cache_key: str
    advice: Optional[SiteAdvice] = None

    @property
    def is_compliant(self) -> bool:
        return len(self.findings) == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "site": self.site.to_dict(),
            "is_compliant": self.is_compliant,
            "findings": [f.to_dict() for f in self.findings],
            "proximities": [p.to_dict() for p in self.proximities],
            "recommendations": list(self.recommendations),
            "cache_key": self.cache_key,
            "advice": self.advice.to_dict() if self.advice else None,
        }
