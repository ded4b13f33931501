"""Blocking rules: fast-path checks that mark a page hostile outright."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from soupsieve import SelectorSyntaxError

from ..constants import Severity
from ..utils.origins import url_has_prefix, url_origin, wildcard_search
from .metrics import metrics
from .page import PageSnapshot
from .rules import BlockResult, ConditionCheck, RuleEvaluationError, RuleRef
from .ruleset import BlockingKind, BlockingRule, FormActionCondition, ResourceOriginCondition

logger = logging.getLogger(__name__)


class FormActionValidationCheck:
    """Password-bearing forms must post to the expected Microsoft endpoint."""

    kind = BlockingKind.FORM_ACTION_VALIDATION

    def check(self, rule_id: str, condition: FormActionCondition, snapshot: PageSnapshot) -> Optional[str]:
        try:
            forms = snapshot.forms_matching(condition.form_selector)
        except SelectorSyntaxError as exc:
            raise RuleEvaluationError(rule_id, f"bad form selector {condition.form_selector!r}: {exc}") from exc

        for form in forms:
            if condition.has_password_field and not form.has_password_field:
                continue
            action = form.action
            if condition.action_must_contain and condition.action_must_contain not in action:
                return f'Form action "{action}" does not contain {condition.action_must_contain}'
            if condition.required_origin and url_origin(action) != condition.required_origin:
                return f'Form action "{action}" does not post to {condition.required_origin}'
        return None


class ResourceOriginValidationCheck:
    """Subresources matching a pattern must come from the required origin."""

    kind = BlockingKind.RESOURCE_ORIGIN_VALIDATION

    def check(self, rule_id: str, condition: ResourceOriginCondition, snapshot: PageSnapshot) -> Optional[str]:
        for url in snapshot.resource_urls:
            if not wildcard_search(condition.resource_pattern, url):
                continue
            if not url_has_prefix(url, condition.required_origin):
                return f'Resource "{url}" does not come from required origin "{condition.required_origin}"'
        return None


DEFAULT_BLOCKING_CHECKS: tuple[ConditionCheck, ...] = (
    FormActionValidationCheck(),
    ResourceOriginValidationCheck(),
)


class BlockingRuleEvaluator:
    """Evaluates blocking rules in document order; the first trigger wins."""

    def __init__(self, checks: Iterable[ConditionCheck] = DEFAULT_BLOCKING_CHECKS):
        self._checks = {check.kind: check for check in checks}

    def evaluate(self, snapshot: PageSnapshot, rules: Iterable[BlockingRule]) -> BlockResult:
        skipped: list[str] = []
        try:
            for rule in rules:
                check = self._checks.get(rule.kind)
                if check is None:
                    logger.warning("Unknown blocking rule type: %s", rule.kind)
                    skipped.append(rule.id)
                    continue

                try:
                    reason = check.check(rule.id, rule.condition, snapshot)
                except RuleEvaluationError as exc:
                    logger.warning("Skipping blocking rule %s: %s", rule.id, exc)
                    metrics.record_rule_error(rule.id)
                    skipped.append(rule.id)
                    continue
                except (ValueError, TypeError, AttributeError) as exc:
                    logger.warning("Error processing blocking rule %s: %s", rule.id, exc)
                    metrics.record_rule_error(rule.id)
                    skipped.append(rule.id)
                    continue

                if reason:
                    logger.warning("BLOCKING RULE TRIGGERED: %s - %s", rule.id, reason)
                    metrics.record_rule_hit(rule.id)
                    return BlockResult(
                        should_block=True,
                        reason=reason,
                        rule=RuleRef(id=rule.id, type=rule.kind.value, description=rule.description),
                        severity=rule.severity,
                        skipped_rules=tuple(skipped),
                    )
        except Exception as exc:
            # Evaluator itself is broken (e.g. corrupted rules): fail closed.
            logger.error("Blocking rules check failed: %s", exc)
            return BlockResult(
                should_block=True,
                reason="Blocking rules check failed - blocking for safety",
                severity=Severity.HIGH,
                error=str(exc),
                skipped_rules=tuple(skipped),
            )

        return BlockResult(
            should_block=False,
            reason="No blocking rules triggered",
            skipped_rules=tuple(skipped),
        )
