"""
Result cache and session controller.

The session owns the zone and supply stores, an analysis cache keyed by
quantized coordinates, and the asyncio tasks for debounced evaluation and the
optional AI stage. Everything here is single-session state; nothing is global.
"""

import asyncio
import dataclasses
import logging
from collections import OrderedDict
from typing import Optional, Sequence

from core.analyzer import SiteAnalyzer
from core.config import CACHE_PRECISION, EngineSettings, get_settings
from core.geometry import GeometryProvider, PlanarGeometryProvider
from core.models import (
    AnalysisReport,
    CandidateSite,
    RestrictedZone,
    SiteAdvice,
    SupplySite,
    is_valid_coordinate,
)
from core.proximity import NearestSupplyFinder
from core.restrictions import RestrictionEvaluator

log = logging.getLogger(__name__)


def make_cache_key(lat: float, lon: float, precision: int = CACHE_PRECISION) -> str:
    """Coordinates quantized to `precision` decimal degrees, e.g. "-1.3192,36.9278"."""
    # + 0.0 turns -0.0 into 0.0 so both sides of zero share a cell key
    lat_q = round(lat, precision) + 0.0
    lon_q = round(lon, precision) + 0.0
    return f"{lat_q:.{precision}f},{lon_q:.{precision}f}"


class AnalysisCache:
    """
    Session-scoped map of cache key -> base AnalysisReport.

    Unbounded unless max_entries is set, in which case the least recently
    used entry is evicted first.
    """

    def __init__(self, max_entries: Optional[int] = None):
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive or None")
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, AnalysisReport]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[AnalysisReport]:
        report = self._entries.get(key)
        if report is None:
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return report

    def put(self, key: str, report: AnalysisReport) -> None:
        self._entries[key] = report
        self._entries.move_to_end(key)
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                log.debug(f"Evicted cached analysis {evicted}")

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


class SiteSession:
    """
    Coordinates site selection, cached evaluation and AI augmentation.

    Must be driven from a running event loop: select() schedules work and
    returns immediately.

    Usage:
        session = SiteSession(dataset.zones, supply_sites, advisor=advisor)
        session.select(-1.3192, 36.9278)
        await session.settle()
        print(session.enriched_report.to_dict())
    """

    def __init__(
        self,
        zones: Sequence[RestrictedZone],
        supply_sites: Sequence[SupplySite],
        settings: Optional[EngineSettings] = None,
        geometry: Optional[GeometryProvider] = None,
        advisor=None
    ):
        self.settings = settings or get_settings()
        self.geometry = geometry or PlanarGeometryProvider(self.settings.buffer_segments)
        self.evaluator = RestrictionEvaluator(self.geometry)
        self.finder = NearestSupplyFinder(
            max_results=self.settings.max_supply_results,
            max_radius_m=self.settings.max_supply_radius_m,
            speed_kmh=self.settings.average_speed_kmh,
        )
        self.analyzer = SiteAnalyzer(self.evaluator, self.finder)
        self.advisor = advisor
        self.cache = AnalysisCache(self.settings.cache_max_entries)

        self._zones = tuple(zones)
        self._supply_sites = tuple(supply_sites)

        self._generation = 0
        self._selected_site: Optional[CandidateSite] = None
        self._report: Optional[AnalysisReport] = None
        self._advice: Optional[SiteAdvice] = None
        self._advice_error: Optional[str] = None
        self._eval_task: Optional[asyncio.Task] = None
        self._advice_task: Optional[asyncio.Task] = None

    # ─────────────────────────────────────────────────────────────────────
    # Read-only state
    # ─────────────────────────────────────────────────────────────────────
    @property
    def zones(self):
        return self._zones

    @property
    def supply_sites(self):
        return self._supply_sites

    @property
    def selected_site(self) -> Optional[CandidateSite]:
        return self._selected_site

    @property
    def report(self) -> Optional[AnalysisReport]:
        """Base report for the current selection (identical to the cached one)."""
        return self._report

    @property
    def advice(self) -> Optional[SiteAdvice]:
        return self._advice

    @property
    def advice_error(self) -> Optional[str]:
        return self._advice_error

    @property
    def enriched_report(self) -> Optional[AnalysisReport]:
        """Base report with advice attached, or the base report while none exists."""
        if self._report is None or self._advice is None:
            return self._report
        return dataclasses.replace(self._report, advice=self._advice)

    @property
    def is_analyzing(self) -> bool:
        return self._eval_task is not None and not self._eval_task.done()

    @property
    def is_advising(self) -> bool:
        return self._advice_task is not None and not self._advice_task.done()

    # ─────────────────────────────────────────────────────────────────────
    # Selection
    # ─────────────────────────────────────────────────────────────────────
    def select(self, lat: float, lon: float) -> Optional[asyncio.Task]:
        """
        Select a site. Evaluation is debounced (trailing) and runs in its own
        task; a newer selection supersedes this one.

        Returns:
            The scheduled evaluation task, or None for invalid coordinates
        """
        if not is_valid_coordinate(lat, lon):
            log.warning(f"Ignoring selection with invalid coordinates ({lat}, {lon})")
            return None

        self._generation += 1
        self._selected_site = CandidateSite(lat=lat, lon=lon)
        self._report = None
        self._advice = None
        self._advice_error = None

        if self._eval_task is not None and not self._eval_task.done():
            self._eval_task.cancel()

        loop = asyncio.get_running_loop()
        self._eval_task = loop.create_task(self._debounced_evaluate(self._generation, self._selected_site))
        return self._eval_task

    def evaluate_now(self, site: CandidateSite) -> AnalysisReport:
        """Synchronous cached evaluation, bypassing debounce and the AI stage."""
        key = make_cache_key(site.lat, site.lon, self.settings.cache_precision)
        report = self.cache.get(key)
        if report is None:
            report = self.analyzer.analyze(site, self._zones, self._supply_sites, key)
            self.cache.put(key, report)
        return report

    async def _debounced_evaluate(self, generation: int, site: CandidateSite) -> None:
        # Never evaluate in the same turn as the selection
        await asyncio.sleep(max(self.settings.debounce_seconds, 0.0))
        if generation != self._generation:
            return

        report = self.evaluate_now(site)
        self._report = report

        if self.advisor is not None:
            self._advice_task = asyncio.get_running_loop().create_task(
                self._run_advisor(generation, report)
            )

    async def _run_advisor(self, generation: int, report: AnalysisReport) -> None:
        # Deferred: inference.advisor imports core
        from inference.advisor import rule_based_advice

        error = None
        try:
            advice = await asyncio.wait_for(
                asyncio.to_thread(self.advisor.advise, report),
                timeout=self.settings.advisor_timeout,
            )
        except asyncio.TimeoutError:
            error = f"AI advisor timed out after {self.settings.advisor_timeout}s"
            advice = rule_based_advice(report)
        except Exception as e:
            error = f"AI advisor failed: {e}"
            advice = rule_based_advice(report)

        if generation != self._generation:
            log.debug(f"Discarding advice for superseded selection {report.cache_key}")
            return

        if error:
            log.warning(error)
            self._advice_error = error
        self._advice = advice

    async def settle(self) -> None:
        """Wait for pending evaluation and AI tasks to finish."""
        while True:
            pending = [t for t in (self._eval_task, self._advice_task) if t is not None and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ─────────────────────────────────────────────────────────────────────
    # Store replacement and lifecycle
    # ─────────────────────────────────────────────────────────────────────
    def replace_zones(self, zones: Sequence[RestrictedZone]) -> None:
        """Swap the zone store wholesale. Cached analyses are dropped."""
        self._zones = tuple(zones)
        self.cache.clear()
        self.evaluator.clear()
        log.info(f"Zone store replaced ({len(self._zones)} zones), analysis cache cleared")

    def replace_supply_sites(self, supply_sites: Sequence[SupplySite]) -> None:
        """Swap the supply store wholesale. Cached analyses are dropped."""
        self._supply_sites = tuple(supply_sites)
        self.cache.clear()
        log.info(f"Supply store replaced ({len(self._supply_sites)} sites), analysis cache cleared")

    def reset(self) -> None:
        """Forget the current selection; cached analyses are kept."""
        self._generation += 1
        if self._eval_task is not None and not self._eval_task.done():
            self._eval_task.cancel()
        self._selected_site = None
        self._report = None
        self._advice = None
        self._advice_error = None

    def close(self) -> None:
        """Tear down the session: cancel tasks, drop the cache and all selection state."""
        self.reset()
        if self._advice_task is not None and not self._advice_task.done():
            self._advice_task.cancel()
        self._eval_task = None
        self._advice_task = None
        self.cache.clear()
        self.evaluator.clear()
        log.info("Session closed")
