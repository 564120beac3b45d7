"""
Site analyzer - composes restriction evaluation, supply ranking and the
recommendation rules into a single report.
"""

import logging
from typing import Optional, Sequence

from core.models import AnalysisReport, CandidateSite, RestrictedZone, SupplySite
from core.proximity import NearestSupplyFinder
from core.recommendations import synthesize_recommendations
from core.restrictions import RestrictionEvaluator

log = logging.getLogger(__name__)


class SiteAnalyzer:
    """
    Produces the base AnalysisReport for a site.

    Usage:
        analyzer = SiteAnalyzer()
        report = analyzer.analyze(site, zones, supply_sites, cache_key="-1.3200,36.9300")
    """

    def __init__(
        self,
        evaluator: Optional[RestrictionEvaluator] = None,
        finder: Optional[NearestSupplyFinder] = None
    ):
        self.evaluator = evaluator or RestrictionEvaluator()
        self.finder = finder or NearestSupplyFinder()

    def analyze(
        self,
        site: CandidateSite,
        zones: Sequence[RestrictedZone],
        supply_sites: Sequence[SupplySite],
        cache_key: str
    ) -> AnalysisReport:
        findings = self.evaluator.evaluate(site, zones)
        proximities = self.finder.find(site, supply_sites)
        recommendations = synthesize_recommendations(findings, proximities)

        log.debug(
            f"Analyzed ({site.lat:.4f}, {site.lon:.4f}): "
            f"{len(findings)} findings, {len(proximities)} sources"
        )

        return AnalysisReport(
            site=site,
            findings=tuple(findings),
            proximities=tuple(proximities),
            recommendations=tuple(recommendations),
            cache_key=cache_key,
        )
