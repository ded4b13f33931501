"""Analyzer modules for m365guard."""

from .blocking import BlockingRuleEvaluator
from .fingerprint import FingerprintMatch, FingerprintMatcher
from .page import PageSnapshot
from .ruleset import RuleLoadFailure, RuleSet, parse_ruleset
from .ruleset_loader import RuleSetLoader
from .scoring import LegitimacyScorer
from .trust import TrustEvaluator, TrustResult

__all__ = [
    "BlockingRuleEvaluator",
    "FingerprintMatch",
    "FingerprintMatcher",
    "LegitimacyScorer",
    "PageSnapshot",
    "RuleLoadFailure",
    "RuleSet",
    "RuleSetLoader",
    "TrustEvaluator",
    "TrustResult",
    "parse_ruleset",
]
