"""
Site Advisor - optional AI augmentation of a base analysis report.

Sends the site context to a local LLM (Ollama /api/generate) and validates
the JSON answer. Any failure (no endpoint, HTTP error, timeout, malformed
JSON) yields a deterministic rule-based answer with the same structure, so
callers never need to branch on where the advice came from.
"""

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional

import requests
from tenacity import retry, stop_after_attempt, wait_exponential

from core.config import DEFAULT_ADVISOR_MODEL
from core.geometry import offset_point_m
from core.models import (
    AlternativeLocation,
    AnalysisReport,
    RiskLevel,
    SiteAdvice,
    ZoneType,
)

log = logging.getLogger(__name__)

CLOSE_SUPPLY_M = 5000.0
MAX_LIST_ITEMS = 3
MIN_ALTERNATIVE_M = 100.0
MAX_ALTERNATIVE_M = 10000.0

_FENCE_RE = re.compile(r"```(?:json)?\s*|\s*```")
_JSON_RE = re.compile(r"\{[\s\S]*\}")

KEY_FACTORS = {
    ZoneType.PROTECTED_AREA: "Environmental conservation",
    ZoneType.WATER_BODY: "Water resource management",
    ZoneType.AIRPORT: "Aviation safety",
    ZoneType.TRANSPORTATION_CORRIDOR: "Infrastructure access",
}

DEFAULT_KEY_FACTORS = ["Regulatory compliance", "Material accessibility", "Site suitability"]
DEFAULT_NEXT_STEPS = ["Site assessment", "Permit applications", "Material planning"]


# ═══════════════════════════════════════════════════════════════════════════
# RULE-BASED FALLBACK
# ═══════════════════════════════════════════════════════════════════════════
def _alternative(report: AnalysisReport, distance_m: float, reason: str) -> AlternativeLocation:
    # Simple displacement due east of the site
    lat, lng = offset_point_m(report.site.lat, report.site.lon, 0.0, distance_m)
    return AlternativeLocation(
        lat=lat,
        lng=max(-180.0, min(180.0, lng)),
        reason=reason,
        distance_m=distance_m,
    )


def rule_based_advice(report: AnalysisReport) -> SiteAdvice:
    """Deterministic advice derived from findings severity and supply proximity."""
    zone_types = [f.zone_type for f in report.findings]
    has_findings = bool(zone_types)
    nearest = report.proximities[0] if report.proximities else None
    has_close_supply = nearest is not None and nearest.distance_m < CLOSE_SUPPLY_M

    alternative = None
    if ZoneType.PROTECTED_AREA in zone_types:
        risk = RiskLevel.HIGH
        recommendation = "Site within or near a protected area. Relocate at least 2km away from the boundary."
        alternative = _alternative(report, 2000.0, "Away from protected area boundary")
    elif ZoneType.WATER_BODY in zone_types:
        risk = RiskLevel.MEDIUM
        recommendation = "Proximity to a water body requires a flood risk assessment and environmental permits."
        alternative = _alternative(report, 500.0, "Higher ground with better drainage")
    elif ZoneType.AIRPORT in zone_types:
        risk = RiskLevel.MEDIUM
        recommendation = "Airport proximity may impose height restrictions and requires aviation clearance."
    elif has_findings:
        risk = RiskLevel.MEDIUM
        recommendation = "Site touches a regulated zone. Confirm permitting requirements before design."
    elif not has_close_supply:
        risk = RiskLevel.MEDIUM
        recommendation = ("Limited material access may increase construction costs. "
                          "Consider material import or alternative construction methods.")
    else:
        risk = RiskLevel.LOW
        recommendation = "Site appears suitable with good material access. Proceed with standard approvals."

    if not has_findings and has_close_supply:
        summary = "Favorable construction site with good material access and no major restrictions"
    elif has_findings and not has_close_supply:
        summary = "Challenging site with regulatory constraints and limited material access"
    elif has_findings:
        summary = "Site has regulatory considerations but good material accessibility"
    else:
        summary = "Generally suitable site with material transportation considerations"

    factors: List[str] = []
    for zone_type in zone_types:
        factor = KEY_FACTORS.get(zone_type)
        if factor and factor not in factors:
            factors.append(factor)
    if not factors:
        factors.append("Material accessibility")

    steps: List[str] = []
    if risk is RiskLevel.HIGH:
        steps += ["Immediate relocation recommended", "Consult with the environmental authority"]
    elif risk is RiskLevel.MEDIUM:
        steps += ["Conduct detailed site assessment", "Apply for necessary permits"]
    if not has_close_supply:
        steps.append("Develop material transportation plan")
    steps.append("Review with construction team")

    return SiteAdvice(
        summary=summary,
        recommendation=recommendation,
        risk_level=risk,
        confidence=0.8,
        key_factors=tuple(factors[:MAX_LIST_ITEMS]),
        next_steps=tuple(steps[:MAX_LIST_ITEMS]),
        alternative_location=alternative,
        source="rules",
    )


# ═══════════════════════════════════════════════════════════════════════════
# RESPONSE VALIDATION
# ═══════════════════════════════════════════════════════════════════════════
def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _string_list(value: Any, default: List[str]) -> tuple:
    if not isinstance(value, list):
        return tuple(default[:MAX_LIST_ITEMS])
    items = [str(v).strip() for v in value if str(v).strip()]
    return tuple(items[:MAX_LIST_ITEMS])


def extract_json(text: str) -> Dict[str, Any]:
    """Pull the first JSON object out of model output."""
    if not isinstance(text, str):
        raise ValueError("Model output is not text")
    cleaned = _FENCE_RE.sub("", text).strip()
    match = _JSON_RE.search(cleaned)
    if not match:
        raise ValueError("No JSON object found in model output")
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("Model output JSON is not an object")
    return data


def validate_advice(data: Dict[str, Any]) -> SiteAdvice:
    """Sanitise a parsed model answer into a SiteAdvice."""
    alternative = None
    raw_alt = data.get("alternativeLocation")
    if isinstance(raw_alt, dict):
        lat = _as_float(raw_alt.get("lat"))
        lng = _as_float(raw_alt.get("lng", raw_alt.get("lon")))
        if lat is not None and lng is not None:
            distance = _as_float(raw_alt.get("distanceMeters", raw_alt.get("distance")))
            alternative = AlternativeLocation(
                lat=_clamp(lat, -90.0, 90.0),
                lng=_clamp(lng, -180.0, 180.0),
                reason=str(raw_alt.get("reason") or "Better location suggested by AI"),
                distance_m=_clamp(distance if distance is not None else 1000.0,
                                  MIN_ALTERNATIVE_M, MAX_ALTERNATIVE_M),
            )

    try:
        risk = RiskLevel(str(data.get("riskLevel", "")).lower())
    except ValueError:
        risk = RiskLevel.MEDIUM

    confidence = _as_float(data.get("confidence"))
    # Model sometimes misspells the key
    recommendation = data.get("recommendation") or data.get("recomendation")

    return SiteAdvice(
        summary=str(data.get("summary") or "AI analysis completed"),
        recommendation=str(recommendation or "Consider professional site assessment"),
        risk_level=risk,
        confidence=_clamp(confidence if confidence is not None else 0.7, 0.0, 1.0),
        key_factors=_string_list(data.get("keyFactors"), DEFAULT_KEY_FACTORS),
        next_steps=_string_list(data.get("nextSteps"), DEFAULT_NEXT_STEPS),
        alternative_location=alternative,
        source="model",
    )


# ═══════════════════════════════════════════════════════════════════════════
# ADVISOR CLIENT
# ═══════════════════════════════════════════════════════════════════════════
class SiteAdvisor:
    """
    Client for the AI augmentation collaborator.

    Usage:
        advisor = SiteAdvisor("http://localhost:11434/api/generate")
        advice = advisor.advise(report)   # never raises
    """

    def __init__(
        self,
        endpoint_url: Optional[str],
        model: str = DEFAULT_ADVISOR_MODEL,
        timeout: float = 20.0,
        top_n: int = 5
    ):
        self.endpoint_url = endpoint_url
        self.model = model
        self.timeout = timeout
        self.top_n = top_n
        self.session = requests.Session()

    def build_prompt(self, report: AnalysisReport) -> str:
        """Prompt carrying the site, findings, top-N sources and base advisories."""
        site = report.site
        if report.findings:
            restrictions = "\n".join(f"- {f.describe()}" for f in report.findings)
        else:
            restrictions = "- No major restrictions detected"

        top = report.proximities[:self.top_n]
        if top:
            materials = "\n".join(
                f"- {p.supply_site.name} ({', '.join(sorted(p.supply_site.categories)) or 'unspecified'}) - "
                f"{p.distance_m:.0f}m away ({p.travel_time_min:.0f} min travel)"
                for p in top
            )
        else:
            materials = "- No material sources within the search radius"

        base = "\n".join(f"- {r}" for r in report.recommendations)
        status = "Generally suitable" if report.is_compliant else "Has regulatory issues"

        return f"""You are a construction site planning expert. Analyze this site and provide specific, actionable recommendations.

SITE: {site.lat:.4f}, {site.lon:.4f}
SUITABILITY: {status}

RESTRICTIONS:
{restrictions}

NEAREST MATERIAL SOURCES:
{materials}

BASE RECOMMENDATIONS:
{base}

Respond with JSON only, in this format:
{{
  "summary": "Brief overall assessment",
  "recommendation": "Specific actionable advice",
  "alternativeLocation": {{"lat": 0.0, "lng": 0.0, "reason": "Why it is better", "distanceMeters": 1500}},
  "riskLevel": "low|medium|high",
  "confidence": 0.85,
  "keyFactors": ["factor1", "factor2", "factor3"],
  "nextSteps": ["step1", "step2", "step3"]
}}"""

    @retry(stop=stop_after_attempt(2), wait=wait_exponential(multiplier=1, min=1, max=4), reraise=True)
    def _generate(self, prompt: str) -> str:
        response = self.session.post(
            self.endpoint_url,
            json={
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {"temperature": 0.3, "top_p": 0.9, "num_predict": 500},
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        text = data.get("response") if isinstance(data, dict) else None
        if not text:
            raise ValueError("Model returned no text")
        return text

    def advise(self, report: AnalysisReport) -> SiteAdvice:
        """Advice from the model, or the rule-based fallback on any failure."""
        if not self.endpoint_url:
            return rule_based_advice(report)

        try:
            text = self._generate(self.build_prompt(report))
            return validate_advice(extract_json(text))
        except (requests.RequestException, ValueError) as e:
            log.warning(f"AI advisor unavailable, using rule-based advice: {e}")
            return rule_based_advice(report)
