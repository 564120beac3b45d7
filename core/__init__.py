"""
Core module for the Site Suitability Engine.
Contains data models, geometry, evaluators and the session controller.
"""

from core.models import (
    ZoneType,
    ZoneSource,
    Severity,
    RiskLevel,
    BoundingBox,
    RestrictedZone,
    CandidateSite,
    SupplySite,
    RestrictionFinding,
    ProximityResult,
    SiteAdvice,
    AnalysisReport,
)
from core.config import EngineSettings, get_settings
from core.geometry import GeometryError, PlanarGeometryProvider
from core.restrictions import RestrictionEvaluator
from core.proximity import NearestSupplyFinder
from core.recommendations import synthesize_recommendations
from core.analyzer import SiteAnalyzer
from core.session import AnalysisCache, SiteSession, make_cache_key

__all__ = [
    # Models
    "ZoneType",
    "ZoneSource",
    "Severity",
    "RiskLevel",
    "BoundingBox",
    "RestrictedZone",
    "CandidateSite",
    "SupplySite",
    "RestrictionFinding",
    "ProximityResult",
    "SiteAdvice",
    "AnalysisReport",
    # Settings
    "EngineSettings",
    "get_settings",
    # Evaluation
    "GeometryError",
    "PlanarGeometryProvider",
    "RestrictionEvaluator",
    "NearestSupplyFinder",
    "synthesize_recommendations",
    "SiteAnalyzer",
    # Session
    "AnalysisCache",
    "SiteSession",
    "make_cache_key",
]
