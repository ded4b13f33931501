"""Detection rule set model and document validation.

A rule set is parsed from a declarative document (JSON or YAML) with the
keys ``trusted_origins``, ``m365_detection_requirements``,
``blocking_rules``, ``rules`` and ``thresholds``. Parsing is all-or-nothing:
any schema violation raises :class:`RuleLoadFailure` and no partially
populated :class:`RuleSet` is ever returned.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Optional, Union

from ..constants import DEFAULT_LEGITIMATE_THRESHOLD, DEFAULT_MINIMUM_REQUIRED, Severity
from ..utils.origins import url_origin

logger = logging.getLogger(__name__)


class RuleLoadFailure(Exception):
    """The rule document could not be fetched, parsed or validated."""

    def __init__(self, message: str, source: str = ""):
        super().__init__(message)
        self.source = source


class ElementKind(str, Enum):
    SOURCE_PATTERN = "source_content"


class BlockingKind(str, Enum):
    FORM_ACTION_VALIDATION = "form_action_validation"
    RESOURCE_ORIGIN_VALIDATION = "resource_validation"


class ScoringKind(str, Enum):
    URL_MATCH = "url"
    FORM_ACTION_CONTAINS = "form_action"
    DOM_SELECTOR_PRESENT = "dom"
    CONTENT_CONTAINS = "content"
    NETWORK_RESOURCE_ORIGIN = "network"
    RESPONSE_HEADER_PATTERN = "header"


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile (once) a case-insensitive fingerprint pattern."""
    return re.compile(pattern, re.I)


@dataclass(frozen=True)
class RequiredElement:
    id: str
    pattern: str
    kind: ElementKind = ElementKind.SOURCE_PATTERN

    @property
    def regex(self) -> re.Pattern[str]:
        return compile_pattern(self.pattern)


@dataclass(frozen=True)
class FingerprintRequirement:
    elements: tuple[RequiredElement, ...] = ()
    all_must_be_present: bool = False
    minimum_required: int = DEFAULT_MINIMUM_REQUIRED


# Blocking rule conditions


@dataclass(frozen=True)
class FormActionCondition:
    """Forms (optionally only password-bearing ones) must post to Microsoft."""

    form_selector: str = "form"
    has_password_field: bool = False
    action_must_contain: str = ""
    required_origin: str = ""


@dataclass(frozen=True)
class ResourceOriginCondition:
    """Subresources matching a pattern must be served from an origin."""

    resource_pattern: str
    required_origin: str


# Scoring rule conditions


@dataclass(frozen=True)
class UrlCondition:
    domains: tuple[str, ...]


@dataclass(frozen=True)
class FormActionContainsCondition:
    contains: str
    form_selector: str = "form"


@dataclass(frozen=True)
class DomSelectorCondition:
    selectors: tuple[str, ...]


@dataclass(frozen=True)
class ContentCondition:
    contains: str


@dataclass(frozen=True)
class NetworkCondition:
    network_pattern: str
    required_domain: str


@dataclass(frozen=True)
class HeaderCondition:
    header: str
    required_domains: tuple[str, ...] = ()
    min_ratio: float = 0.8
    allowed_referrers: tuple[str, ...] = ()


BlockingCondition = Union[FormActionCondition, ResourceOriginCondition]
ScoringCondition = Union[
    UrlCondition,
    FormActionContainsCondition,
    DomSelectorCondition,
    ContentCondition,
    NetworkCondition,
    HeaderCondition,
]


@dataclass(frozen=True)
class BlockingRule:
    id: str
    kind: BlockingKind
    condition: BlockingCondition
    severity: Severity = Severity.HIGH
    description: str = ""


@dataclass(frozen=True)
class ScoringRule:
    id: str
    kind: ScoringKind
    condition: ScoringCondition
    weight: float
    description: str = ""


@dataclass(frozen=True)
class RuleSet:
    """Validated, immutable detection rules."""

    trusted_origins: frozenset[str] = frozenset()
    fingerprint: FingerprintRequirement = field(default_factory=FingerprintRequirement)
    blocking_rules: tuple[BlockingRule, ...] = ()
    scoring_rules: tuple[ScoringRule, ...] = ()
    legitimacy_threshold: float = DEFAULT_LEGITIMATE_THRESHOLD
    version: Optional[str] = None


def _fail(message: str) -> RuleLoadFailure:
    return RuleLoadFailure(f"Invalid rule document: {message}")


def _require_str(raw: dict, key: str, where: str, default: Optional[str] = None) -> str:
    value = raw.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise _fail(f"{where}: '{key}' must be a non-empty string")
    return value.strip()


def _optional_str(raw: dict, key: str, where: str, default: str = "") -> str:
    value = raw.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise _fail(f"{where}: '{key}' must be a string")
    return value.strip()


def _str_list(raw: dict, key: str, where: str, required: bool = True) -> tuple[str, ...]:
    value = raw.get(key)
    if value is None and not required:
        return ()
    if not isinstance(value, list) or (required and not value):
        raise _fail(f"{where}: '{key}' must be a non-empty list")
    items: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise _fail(f"{where}: '{key}' entries must be non-empty strings")
        items.append(item.strip())
    return tuple(items)


def _number(value: Any, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _fail(f"{where} must be a number")
    return value


def _condition(raw: dict, where: str) -> dict:
    condition = raw.get("condition")
    if not isinstance(condition, dict):
        raise _fail(f"{where}: 'condition' must be an object")
    return condition


def parse_trusted_origins(raw: Any) -> frozenset[str]:
    if not isinstance(raw, list):
        raise _fail("'trusted_origins' must be a list")
    origins: set[str] = set()
    for entry in raw:
        origin = url_origin(entry) if isinstance(entry, str) else ""
        if not origin:
            raise _fail(f"trusted origin {entry!r} is not a valid http(s) origin")
        origins.add(origin)
    return frozenset(origins)


def parse_fingerprint(raw: Any) -> FingerprintRequirement:
    if not isinstance(raw, dict):
        raise _fail("'m365_detection_requirements' must be an object")
    raw_elements = raw.get("required_elements")
    if not isinstance(raw_elements, list) or not raw_elements:
        raise _fail("'required_elements' must be a non-empty list")

    elements: list[RequiredElement] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_elements):
        where = f"required_elements[{index}]"
        if not isinstance(item, dict):
            raise _fail(f"{where} must be an object")
        element_id = _require_str(item, "id", where)
        if element_id in seen:
            raise _fail(f"{where}: duplicate id '{element_id}'")
        seen.add(element_id)
        try:
            kind = ElementKind(item.get("type", ElementKind.SOURCE_PATTERN.value))
        except ValueError:
            raise _fail(f"{where}: unsupported type {item.get('type')!r}") from None
        pattern = _require_str(item, "pattern", where)
        try:
            compile_pattern(pattern)
        except re.error as exc:
            raise _fail(f"{where}: pattern does not compile ({exc})") from exc
        elements.append(RequiredElement(id=element_id, pattern=pattern, kind=kind))

    all_present = raw.get("all_must_be_present", False)
    if not isinstance(all_present, bool):
        raise _fail("'all_must_be_present' must be a boolean")
    minimum = raw.get("minimum_required", DEFAULT_MINIMUM_REQUIRED)
    if isinstance(minimum, bool) or not isinstance(minimum, int) or minimum < 1:
        raise _fail("'minimum_required' must be a positive integer")
    if minimum > len(elements):
        raise _fail("'minimum_required' exceeds the number of required elements")

    return FingerprintRequirement(
        elements=tuple(elements),
        all_must_be_present=all_present,
        minimum_required=minimum,
    )


def parse_blocking_condition(kind: BlockingKind, raw: dict, where: str) -> BlockingCondition:
    if kind is BlockingKind.FORM_ACTION_VALIDATION:
        has_password = raw.get("has_password_field", False)
        if not isinstance(has_password, bool):
            raise _fail(f"{where}: 'has_password_field' must be a boolean")
        # "action_must_not_contain" is the legacy name; it always meant "must contain".
        must_contain = _optional_str(raw, "action_must_contain", where) or _optional_str(
            raw, "action_must_not_contain", where
        )
        required_origin = _optional_str(raw, "required_origin", where)
        if required_origin:
            required_origin = url_origin(required_origin)
            if not required_origin:
                raise _fail(f"{where}: 'required_origin' is not a valid origin")
        if not must_contain and not required_origin:
            raise _fail(f"{where}: needs 'action_must_contain' or 'required_origin'")
        return FormActionCondition(
            form_selector=_optional_str(raw, "form_selector", where, "form") or "form",
            has_password_field=has_password,
            action_must_contain=must_contain,
            required_origin=required_origin,
        )

    required = _require_str(raw, "required_origin", where)
    if not url_origin(required):
        raise _fail(f"{where}: 'required_origin' is not a valid origin")
    return ResourceOriginCondition(
        resource_pattern=_require_str(raw, "resource_pattern", where),
        required_origin=required,
    )


def parse_scoring_condition(kind: ScoringKind, raw: dict, where: str) -> ScoringCondition:
    if kind is ScoringKind.URL_MATCH:
        return UrlCondition(domains=tuple(d.lower() for d in _str_list(raw, "domains", where)))
    if kind is ScoringKind.FORM_ACTION_CONTAINS:
        return FormActionContainsCondition(
            contains=_require_str(raw, "contains", where),
            form_selector=_optional_str(raw, "form_selector", where, "form") or "form",
        )
    if kind is ScoringKind.DOM_SELECTOR_PRESENT:
        return DomSelectorCondition(selectors=_str_list(raw, "selectors", where))
    if kind is ScoringKind.CONTENT_CONTAINS:
        return ContentCondition(contains=_require_str(raw, "contains", where))
    if kind is ScoringKind.NETWORK_RESOURCE_ORIGIN:
        required = _require_str(raw, "required_domain", where)
        if not url_origin(required):
            raise _fail(f"{where}: 'required_domain' must be an origin such as https://host")
        return NetworkCondition(
            network_pattern=_require_str(raw, "network_pattern", where),
            required_domain=required,
        )

    required_domains = _str_list(raw, "required_domains", where, required=False)
    allowed_referrers = _str_list(raw, "allowed_referrers", where, required=False)
    if not required_domains and not allowed_referrers:
        raise _fail(f"{where}: needs 'required_domains' or 'allowed_referrers'")
    min_ratio = _number(raw.get("min_ratio", 0.8), f"{where}: 'min_ratio'")
    if not 0 < min_ratio <= 1:
        raise _fail(f"{where}: 'min_ratio' must be in (0, 1]")
    return HeaderCondition(
        header=_require_str(raw, "header", where).lower(),
        required_domains=required_domains,
        min_ratio=float(min_ratio),
        allowed_referrers=allowed_referrers,
    )


def parse_blocking_rules(raw: Any) -> tuple[BlockingRule, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise _fail("'blocking_rules' must be a list")
    rules: list[BlockingRule] = []
    seen: set[str] = set()
    for index, item in enumerate(raw):
        where = f"blocking_rules[{index}]"
        if not isinstance(item, dict):
            raise _fail(f"{where} must be an object")
        rule_id = _require_str(item, "id", where)
        if rule_id in seen:
            raise _fail(f"{where}: duplicate id '{rule_id}'")
        seen.add(rule_id)
        try:
            kind = BlockingKind(item.get("type"))
        except ValueError:
            raise _fail(f"{where}: unsupported type {item.get('type')!r}") from None
        severity = item.get("severity")
        if severity is not None and not isinstance(severity, str):
            raise _fail(f"{where}: 'severity' must be a string")
        rules.append(
            BlockingRule(
                id=rule_id,
                kind=kind,
                condition=parse_blocking_condition(kind, _condition(item, where), where),
                severity=Severity.from_string(severity),
                description=_optional_str(item, "description", where),
            )
        )
    return tuple(rules)


def parse_scoring_rules(raw: Any) -> tuple[ScoringRule, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise _fail("'rules' must be a list")
    rules: list[ScoringRule] = []
    seen: set[str] = set()
    for index, item in enumerate(raw):
        where = f"rules[{index}]"
        if not isinstance(item, dict):
            raise _fail(f"{where} must be an object")
        rule_id = _require_str(item, "id", where)
        if rule_id in seen:
            raise _fail(f"{where}: duplicate id '{rule_id}'")
        seen.add(rule_id)
        try:
            kind = ScoringKind(item.get("type"))
        except ValueError:
            raise _fail(f"{where}: unsupported type {item.get('type')!r}") from None
        rules.append(
            ScoringRule(
                id=rule_id,
                kind=kind,
                condition=parse_scoring_condition(kind, _condition(item, where), where),
                weight=_number(item.get("weight"), f"{where}: 'weight'"),
                description=_optional_str(item, "description", where),
            )
        )
    return tuple(rules)


def parse_ruleset(data: Any) -> RuleSet:
    """Validate a decoded rule document and build a :class:`RuleSet`."""
    if not isinstance(data, dict):
        raise _fail("document root must be an object")

    thresholds = data.get("thresholds", {})
    if not isinstance(thresholds, dict):
        raise _fail("'thresholds' must be an object")
    threshold = _number(
        thresholds.get("legitimate", DEFAULT_LEGITIMATE_THRESHOLD), "'thresholds.legitimate'"
    )

    version = data.get("version")
    return RuleSet(
        trusted_origins=parse_trusted_origins(data.get("trusted_origins")),
        fingerprint=parse_fingerprint(data.get("m365_detection_requirements")),
        blocking_rules=parse_blocking_rules(data.get("blocking_rules")),
        scoring_rules=parse_scoring_rules(data.get("rules")),
        legitimacy_threshold=threshold,
        version=str(version) if version is not None else None,
    )
