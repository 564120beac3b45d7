"""
Recommendation Synthesizer - deterministic rule engine for site advisories.

Pure functions only: the same findings and proximities always produce the
same list of recommendations.
"""

from typing import Dict, List, Sequence

from core.models import ProximityResult, RestrictionFinding, ZoneType

EXCELLENT_ACCESS_M = 2000.0
GOOD_ACCESS_M = 5000.0

# One compliance requirement per zone type found
ZONE_REQUIREMENTS: Dict[ZoneType, str] = {
    ZoneType.PROTECTED_AREA: "Protected area nearby - wildlife and environmental impact assessment required",
    ZoneType.WATER_BODY: "Water body nearby - flood risk and water table assessment required",
    ZoneType.AIRPORT: "Airport nearby - aviation clearance required (height and noise restrictions apply)",
    ZoneType.TRANSPORTATION_CORRIDOR: "Transport corridor nearby - traffic management plan required",
}

# Notes for materials among the ranked sources, in this order
MATERIAL_NOTES = (
    ("sand", "Consider water requirements for sand-based materials"),
    ("blocks", "Block materials suitable for foundation work"),
    ("ballast", "Ballast suitable for road construction and foundations"),
)


def _compliance_lines(findings: Sequence[RestrictionFinding]) -> List[str]:
    if findings:
        return [
            "Site has regulatory restrictions - consider an alternative location",
            "Required: environmental impact assessment and permits",
        ]
    return [
        "Site appears regulatory compliant",
        "Proceed with standard construction approval process",
    ]


def _supply_lines(proximities: Sequence[ProximityResult]) -> List[str]:
    if not proximities:
        return [
            "No material sources found nearby",
            "Expand the search radius or consider alternative materials",
        ]

    nearest = proximities[0]
    if nearest.distance_m < EXCELLENT_ACCESS_M:
        tier = "Excellent material accessibility (< 2km)"
    elif nearest.distance_m < GOOD_ACCESS_M:
        tier = "Good material availability (2-5km)"
    else:
        tier = "Factor in transportation costs for distant materials"

    lines = [
        tier,
        f"Nearest source: {nearest.supply_site.name} "
        f"({nearest.distance_m:.0f}m, ~{nearest.travel_time_min:.0f} min)",
    ]

    categories = {c.lower() for p in proximities for c in p.supply_site.categories}
    for category, note in MATERIAL_NOTES:
        if any(category in c for c in categories):
            lines.append(note)
    return lines


def _requirement_lines(findings: Sequence[RestrictionFinding]) -> List[str]:
    lines = []
    seen = set()
    for finding in findings:
        if finding.zone_type in seen:
            continue
        seen.add(finding.zone_type)
        requirement = ZONE_REQUIREMENTS.get(finding.zone_type)
        if requirement:
            lines.append(requirement)
    return lines


def synthesize_recommendations(
    findings: Sequence[RestrictionFinding],
    proximities: Sequence[ProximityResult]
) -> List[str]:
    """
    Turn findings and proximities into an ordered list of advisories.

    Order: compliance status, material access, material notes, then one
    requirement per distinct zone type in order of first appearance.
    """
    return (
        _compliance_lines(findings)
        + _supply_lines(proximities)
        + _requirement_lines(findings)
    )
