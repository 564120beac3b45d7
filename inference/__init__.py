"""
Inference module for the Site Suitability Engine.
Provides the optional AI site advisor and its rule-based fallback.
"""

from inference.advisor import SiteAdvisor, rule_based_advice

__all__ = [
    "SiteAdvisor",
    "rule_based_advice",
]
