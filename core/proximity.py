"""
Nearest-Supply Finder - ranks material sources by great-circle distance.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from core.config import AVERAGE_SPEED_KMH, MAX_SUPPLY_RADIUS_M, MAX_SUPPLY_RESULTS
from core.geometry import haversine_many
from core.models import CandidateSite, ProximityResult, SupplySite, is_valid_coordinate

log = logging.getLogger(__name__)


def travel_time_minutes(distance_m: float, speed_kmh: float = AVERAGE_SPEED_KMH) -> float:
    """Travel time at a fixed average speed."""
    return (distance_m / 1000.0) / speed_kmh * 60.0


class NearestSupplyFinder:
    """
    Distance/travel-time ranking of supply sites relative to a site.

    Results are sorted ascending by distance with a stable sort, so exact
    distance ties keep their input order.
    """

    def __init__(
        self,
        max_results: int = MAX_SUPPLY_RESULTS,
        max_radius_m: float = MAX_SUPPLY_RADIUS_M,
        speed_kmh: float = AVERAGE_SPEED_KMH
    ):
        if max_results < 0:
            raise ValueError("max_results must be >= 0")
        if speed_kmh <= 0:
            raise ValueError("speed_kmh must be positive")
        self.max_results = max_results
        self.max_radius_m = max_radius_m
        self.speed_kmh = speed_kmh

    def find(
        self,
        site: CandidateSite,
        supply_sites: Sequence[SupplySite],
        k: Optional[int] = None,
        max_radius_m: Optional[float] = None
    ) -> List[ProximityResult]:
        """
        Rank supply sites by distance from a candidate site.

        Args:
            site: Candidate site
            supply_sites: Supply sites in input order
            k: Maximum results (default: max_results)
            max_radius_m: Search radius in meters (default: max_radius_m)

        Returns:
            At most k results, ascending by distance, none beyond the radius
        """
        k = self.max_results if k is None else k
        radius = self.max_radius_m if max_radius_m is None else max_radius_m

        if not site.is_valid or k <= 0:
            return []

        candidates = [s for s in supply_sites if is_valid_coordinate(s.lat, s.lon)]
        skipped = len(supply_sites) - len(candidates)
        if skipped:
            log.debug(f"Skipped {skipped} supply sites with invalid coordinates")
        if not candidates:
            return []

        lats = np.array([s.lat for s in candidates], dtype=float)
        lons = np.array([s.lon for s in candidates], dtype=float)
        distances = haversine_many(site.lat, site.lon, lats, lons)

        order = np.argsort(distances, kind="stable")
        results: List[ProximityResult] = []
        for idx in order:
            distance = float(distances[idx])
            if distance > radius:
                break
            results.append(ProximityResult(
                supply_site=candidates[idx],
                distance_m=distance,
                travel_time_min=travel_time_minutes(distance, self.speed_kmh),
            ))
            if len(results) >= k:
                break

        return results
