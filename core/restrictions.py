"""
Restriction Evaluator - tests a candidate site against every restricted zone.
"""

import logging
from typing import Dict, List, Optional, Sequence

from core.geometry import GeometryError, GeometryProvider, PlanarGeometryProvider
from core.models import CandidateSite, RestrictedZone, RestrictionFinding, Ring, Severity

log = logging.getLogger(__name__)


class RestrictionEvaluator:
    """
    Bounding-box filtered containment test of a site against all zones.

    Buffer rings are computed lazily and memoised per zone; a zone whose
    buffer cannot be computed is remembered as having none, so only its body
    test runs from then on.

    Usage:
        evaluator = RestrictionEvaluator()
        findings = evaluator.evaluate(CandidateSite(-1.32, 36.93), zones)
    """

    def __init__(self, geometry: Optional[GeometryProvider] = None):
        self.geometry = geometry or PlanarGeometryProvider()
        self._buffers: Dict[tuple, Optional[Ring]] = {}

    def clear(self) -> None:
        """Forget memoised buffers (call when the zone store is replaced)."""
        self._buffers.clear()

    def buffer_for(self, zone: RestrictedZone) -> Optional[Ring]:
        """Buffer ring for a zone, or None when unavailable."""
        key = (zone.id, zone.buffer_distance_m, zone.ring)
        if key in self._buffers:
            return self._buffers[key]
        try:
            ring = self.geometry.buffer(zone.ring, zone.buffer_distance_m)
        except GeometryError as e:
            log.warning(f"No buffer for zone {zone.name} ({zone.id}): {e}")
            ring = None
        self._buffers[key] = ring
        return ring

    def evaluate(self, site: CandidateSite, zones: Sequence[RestrictedZone]) -> List[RestrictionFinding]:
        """
        Find the zones a site conflicts with.

        Returns:
            Findings in zone order; Inside for a body hit, Buffered for a hit
            inside the caution perimeter only.
        """
        if not site.is_valid:
            log.warning(f"Ignoring invalid site coordinates ({site.lat}, {site.lon})")
            return []

        point = (site.lon, site.lat)
        findings: List[RestrictionFinding] = []

        for zone in zones:
            # O(1) rejection: outside body bbox padded by the buffer distance
            if not zone.search_box.contains(site.lon, site.lat):
                continue

            severity = self._classify(point, zone)
            if severity is not None:
                findings.append(RestrictionFinding(
                    zone_id=zone.id,
                    zone_name=zone.name,
                    zone_type=zone.zone_type,
                    severity=severity,
                    buffer_distance_m=zone.buffer_distance_m,
                ))

        return findings

    def _classify(self, point, zone: RestrictedZone) -> Optional[Severity]:
        try:
            if (zone.bounding_box.contains(point[0], point[1])
                    and self.geometry.point_in_polygon(point, zone.ring)):
                return Severity.INSIDE
        except GeometryError as e:
            log.warning(f"Containment test failed for zone {zone.name} ({zone.id}): {e}")
            return None

        if zone.buffer_distance_m <= 0:
            return None

        buffer_ring = self.buffer_for(zone)
        if buffer_ring is None:
            return None
        try:
            if self.geometry.point_in_polygon(point, buffer_ring):
                return Severity.BUFFERED
        except GeometryError as e:
            log.warning(f"Buffer containment failed for zone {zone.name} ({zone.id}): {e}")
        return None
