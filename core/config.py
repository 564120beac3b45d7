"""
Engine settings.

Defaults live in module constants; deployment overrides come from environment
variables read when the settings object is created.
"""

import os
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)

# Zone ingestion
INGEST_BATCH_SIZE = 50
SIMPLIFY_THRESHOLD = 50     # rings with more vertices are thinned
SIMPLIFY_STEP = 3           # keep every Nth vertex
POINT_ZONE_RADIUS_M = 500.0
POINT_ZONE_SIDES = 12

# Geometry
BUFFER_SEGMENTS = 32

# Nearest supply
MAX_SUPPLY_RESULTS = 5
MAX_SUPPLY_RADIUS_M = 50000.0
AVERAGE_SPEED_KMH = 40.0

# Session
DEBOUNCE_SECONDS = 0.5
CACHE_PRECISION = 4         # decimal degrees, ~11 m cell

# External collaborators
DEFAULT_ZONE_SOURCES = ["data/restricted-zones.geojson", "data/geojson.geojson"]
DEFAULT_ADVISOR_URL = "http://localhost:11434/api/generate"
DEFAULT_ADVISOR_MODEL = "llama3"
HTTP_TIMEOUT_SECONDS = 15


def _split_env_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


@dataclass
class EngineSettings:
    """
    Tunables for ingestion, evaluation and the session controller.

    Environment overrides:
        ZONE_DATASET_SOURCES       comma-separated paths/URLs, tried in order
        SUPPLY_API_URL             supply-site JSON endpoint
        SUPPLY_FALLBACK_PATH       local JSON file used when the API fails
        ADVISOR_URL / ADVISOR_MODEL / ADVISOR_TIMEOUT
        ANALYSIS_DEBOUNCE_SECONDS
    """
    zone_sources: List[str] = field(default_factory=lambda: list(DEFAULT_ZONE_SOURCES))
    use_fallback_zones: bool = True
    ingest_batch_size: int = INGEST_BATCH_SIZE
    simplify_threshold: int = SIMPLIFY_THRESHOLD
    simplify_step: int = SIMPLIFY_STEP
    point_zone_radius_m: float = POINT_ZONE_RADIUS_M
    point_zone_sides: int = POINT_ZONE_SIDES
    buffer_segments: int = BUFFER_SEGMENTS

    max_supply_results: int = MAX_SUPPLY_RESULTS
    max_supply_radius_m: float = MAX_SUPPLY_RADIUS_M
    average_speed_kmh: float = AVERAGE_SPEED_KMH

    debounce_seconds: float = DEBOUNCE_SECONDS
    cache_precision: int = CACHE_PRECISION
    cache_max_entries: Optional[int] = None  # None = unbounded for the session

    supply_api_url: Optional[str] = None
    supply_fallback_path: Optional[str] = None
    advisor_url: Optional[str] = DEFAULT_ADVISOR_URL
    advisor_model: str = DEFAULT_ADVISOR_MODEL
    advisor_timeout: float = 20.0
    advisor_top_n: int = 5
    http_timeout: int = HTTP_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> "EngineSettings":
        settings = cls()
        sources = _split_env_list(os.getenv("ZONE_DATASET_SOURCES"))
        if sources:
            settings.zone_sources = sources
        settings.supply_api_url = os.getenv("SUPPLY_API_URL") or settings.supply_api_url
        settings.supply_fallback_path = os.getenv("SUPPLY_FALLBACK_PATH") or settings.supply_fallback_path
        settings.advisor_url = os.getenv("ADVISOR_URL", settings.advisor_url) or None
        settings.advisor_model = os.getenv("ADVISOR_MODEL") or settings.advisor_model
        settings.advisor_timeout = _env_float("ADVISOR_TIMEOUT", settings.advisor_timeout)
        settings.debounce_seconds = _env_float("ANALYSIS_DEBOUNCE_SECONDS", settings.debounce_seconds)
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineSettings":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


# Singleton
_settings: Optional[EngineSettings] = None

def get_settings() -> EngineSettings:
    """Get singleton settings, read from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = EngineSettings.from_env()
    return _settings
