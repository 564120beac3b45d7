import argparse
import asyncio
import json
import logging
import sys

from core.config import EngineSettings
from core.session import SiteSession
from inference.advisor import SiteAdvisor
from loaders.supply import SupplySiteLoader, filter_supply_sites
from loaders.zones import NoRestrictionDataError, ZoneDatasetLoader

log = logging.getLogger("main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Construction site suitability and material proximity check")
    parser.add_argument("lat", type=float, help="Site latitude (decimal degrees)")
    parser.add_argument("lon", type=float, help="Site longitude (decimal degrees)")
    parser.add_argument("--zones", action="append", help="Zone dataset path or URL (repeatable, tried in order)")
    parser.add_argument("--no-fallback-zones", action="store_true", help="Fail instead of using built-in zones")
    parser.add_argument("--supply-api", help="Materials API URL")
    parser.add_argument("--supply-file", help="Local materials JSON file")
    parser.add_argument("--material", help="Only consider sources of this material")
    parser.add_argument("--no-ai", action="store_true", help="Skip the AI advisor, use rule-based advice")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def print_report(report) -> None:
    site = report.site
    print(f"\n=== SITE ANALYSIS ({site.lat:.4f}, {site.lon:.4f}) ===")
    print("Status: " + ("COMPLIANT" if report.is_compliant else "RESTRICTED"))

    print("\nRestrictions:")
    if not report.findings:
        print("  none")
    for finding in report.findings:
        print(f"  [{finding.severity.value}] {finding.describe()}")

    print("\nNearest materials:")
    if not report.proximities:
        print("  none within range")
    for p in report.proximities:
        materials = ", ".join(sorted(p.supply_site.categories)) or "unspecified"
        print(f"  {p.supply_site.name} ({materials}): {p.distance_m:.0f} m, ~{p.travel_time_min:.0f} min")

    print("\nRecommendations:")
    for line in report.recommendations:
        print(f"  - {line}")

    advice = report.advice
    if advice:
        print(f"\nAdvice ({advice.source}, risk {advice.risk_level.value}, confidence {advice.confidence:.2f}):")
        print(f"  {advice.summary}")
        print(f"  {advice.recommendation}")
        for step in advice.next_steps:
            print(f"  > {step}")
        if advice.alternative_location:
            alt = advice.alternative_location
            print(f"  Alternative: {alt.lat:.4f}, {alt.lng:.4f} ({alt.reason})")


async def analyze_site(settings: EngineSettings, lat: float, lon: float, material=None, use_ai: bool = True):
    dataset = await ZoneDatasetLoader.from_settings(settings).load()
    log.info(f"Using {len(dataset)} zones from {dataset.source_name}")

    supply_loader = SupplySiteLoader(settings.supply_api_url, settings.supply_fallback_path, settings.http_timeout)
    supply = await asyncio.to_thread(supply_loader.load)
    if material:
        supply = filter_supply_sites(supply, category=material)

    advisor = None
    if use_ai and settings.advisor_url:
        advisor = SiteAdvisor(settings.advisor_url, settings.advisor_model,
                              settings.advisor_timeout, settings.advisor_top_n)

    session = SiteSession(dataset.zones, supply, settings=settings, advisor=advisor)
    try:
        if session.select(lat, lon) is None:
            raise ValueError(f"Invalid coordinates ({lat}, {lon})")
        await session.settle()
        return session.enriched_report
    finally:
        session.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s │ %(name)-20s │ %(levelname)-8s │ %(message)s',
        datefmt='%H:%M:%S',
    )

    settings = EngineSettings.from_env()
    settings.debounce_seconds = 0.0
    if args.zones:
        settings.zone_sources = args.zones
    if args.no_fallback_zones:
        settings.use_fallback_zones = False
    settings.supply_api_url = args.supply_api or settings.supply_api_url
    settings.supply_fallback_path = args.supply_file or settings.supply_fallback_path

    try:
        report = asyncio.run(analyze_site(settings, args.lat, args.lon, args.material, not args.no_ai))
    except (NoRestrictionDataError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print_report(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
