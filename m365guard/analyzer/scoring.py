"""Weighted legitimacy scoring."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from soupsieve import SelectorSyntaxError

from ..utils.origins import url_has_prefix, wildcard_search
from .metrics import metrics
from .page import PageSnapshot
from .rules import ConditionCheck, RuleEvaluationError, RuleRef, ScoreResult
from .ruleset import (
    ContentCondition,
    DomSelectorCondition,
    FormActionContainsCondition,
    HeaderCondition,
    NetworkCondition,
    ScoringKind,
    ScoringRule,
    UrlCondition,
)

logger = logging.getLogger(__name__)


class UrlMatchCheck:
    kind = ScoringKind.URL_MATCH

    def check(self, rule_id: str, condition: UrlCondition, snapshot: PageSnapshot) -> Optional[str]:
        hostname = snapshot.hostname
        if hostname and hostname in condition.domains:
            return f"Hostname {hostname} is expected"
        return None


class FormActionContainsCheck:
    kind = ScoringKind.FORM_ACTION_CONTAINS

    def check(self, rule_id: str, condition: FormActionContainsCondition, snapshot: PageSnapshot) -> Optional[str]:
        try:
            forms = snapshot.forms_matching(condition.form_selector)
        except SelectorSyntaxError as exc:
            raise RuleEvaluationError(rule_id, f"bad form selector {condition.form_selector!r}: {exc}") from exc
        for form in forms:
            if condition.contains in form.action:
                return f"Form posts to {form.action}"
        return None


class DomSelectorCheck:
    """Any one of the selectors present is enough."""

    kind = ScoringKind.DOM_SELECTOR_PRESENT

    def check(self, rule_id: str, condition: DomSelectorCondition, snapshot: PageSnapshot) -> Optional[str]:
        for selector in condition.selectors:
            try:
                if snapshot.soup.select_one(selector) is not None:
                    return f"Element {selector} present"
            except SelectorSyntaxError as exc:
                logger.debug("Rule %s: ignoring bad selector %r: %s", rule_id, selector, exc)
        return None


class ContentContainsCheck:
    kind = ScoringKind.CONTENT_CONTAINS

    def check(self, rule_id: str, condition: ContentCondition, snapshot: PageSnapshot) -> Optional[str]:
        if condition.contains in snapshot.html:
            return f"Page contains {condition.contains!r}"
        return None


class NetworkResourceOriginCheck:
    """Resources matching a pattern exist and all come from the required domain."""

    kind = ScoringKind.NETWORK_RESOURCE_ORIGIN

    def check(self, rule_id: str, condition: NetworkCondition, snapshot: PageSnapshot) -> Optional[str]:
        matching = [url for url in snapshot.resource_urls if wildcard_search(condition.network_pattern, url)]
        if matching and all(url_has_prefix(url, condition.required_domain) for url in matching):
            return f"{len(matching)} resource(s) served from {condition.required_domain}"
        return None


class ResponseHeaderCheck:
    kind = ScoringKind.RESPONSE_HEADER_PATTERN

    def check(self, rule_id: str, condition: HeaderCondition, snapshot: PageSnapshot) -> Optional[str]:
        value = snapshot.header(condition.header)
        if not value:
            return None

        if condition.required_domains:
            found = sum(1 for domain in condition.required_domains if wildcard_search(domain, value))
            if found / len(condition.required_domains) >= condition.min_ratio:
                return f"{condition.header} lists {found}/{len(condition.required_domains)} required domains"

        for prefix in condition.allowed_referrers:
            if value == prefix or value.startswith(prefix):
                return f"{condition.header} matches allowed prefix {prefix}"
        return None


DEFAULT_SCORING_CHECKS: tuple[ConditionCheck, ...] = (
    UrlMatchCheck(),
    FormActionContainsCheck(),
    DomSelectorCheck(),
    ContentContainsCheck(),
    NetworkResourceOriginCheck(),
    ResponseHeaderCheck(),
)


class LegitimacyScorer:
    """Sums the weights of every scoring rule whose condition holds."""

    def __init__(self, checks: Iterable[ConditionCheck] = DEFAULT_SCORING_CHECKS):
        self._checks = {check.kind: check for check in checks}

    def evaluate(self, snapshot: PageSnapshot, rules: Iterable[ScoringRule], threshold: float) -> ScoreResult:
        score: float = 0
        triggered: list[RuleRef] = []
        skipped: list[str] = []

        for rule in rules:
            check = self._checks.get(rule.kind)
            if check is None:
                logger.warning("Unknown rule type: %s", rule.kind)
                skipped.append(rule.id)
                continue

            try:
                detail = check.check(rule.id, rule.condition, snapshot)
            except RuleEvaluationError as exc:
                logger.warning("Skipping rule %s: %s", rule.id, exc)
                metrics.record_rule_error(rule.id)
                skipped.append(rule.id)
                continue
            except (ValueError, TypeError, AttributeError, ZeroDivisionError) as exc:
                logger.warning("Error processing rule %s: %s", rule.id, exc)
                metrics.record_rule_error(rule.id)
                skipped.append(rule.id)
                continue

            if detail:
                score += rule.weight
                triggered.append(
                    RuleRef(
                        id=rule.id,
                        type=rule.kind.value,
                        description=rule.description or detail,
                        weight=rule.weight,
                    )
                )
                metrics.record_rule_hit(rule.id)
                logger.debug("Rule triggered: %s (weight: %s)", rule.id, rule.weight)

        logger.info(
            "Detection rules: score=%s, threshold=%s, triggered=%s rules",
            score,
            threshold,
            len(triggered),
        )
        return ScoreResult(
            score=score,
            threshold=threshold,
            triggered_rules=tuple(triggered),
            skipped_rules=tuple(skipped),
        )
