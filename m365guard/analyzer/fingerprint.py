"""Structural fingerprint of a Microsoft sign-in page."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .page import PageSnapshot
from .ruleset import ElementKind, FingerprintRequirement, RequiredElement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FingerprintMatch:
    is_match: bool
    found_ids: tuple[str, ...] = ()
    missing_ids: tuple[str, ...] = ()


class FingerprintMatcher:
    """Checks serialized page markup against the required sign-in elements.

    Every element is checked, so found/missing lists are complete. An
    element whose pattern cannot be evaluated counts as missing.
    """

    def _element_found(self, element: RequiredElement, markup: str) -> bool:
        if element.kind is not ElementKind.SOURCE_PATTERN:
            logger.warning("Unsupported fingerprint element type for %s: %s", element.id, element.kind)
            return False
        try:
            return element.regex.search(markup) is not None
        except (re.error, RecursionError, TypeError) as exc:
            logger.warning("Error checking element %s: %s", element.id, exc)
            return False

    def matches_markup(self, markup: str, requirement: FingerprintRequirement) -> FingerprintMatch:
        found: list[str] = []
        missing: list[str] = []
        for element in requirement.elements:
            if self._element_found(element, markup):
                found.append(element.id)
                logger.debug("Found required element: %s", element.id)
            else:
                missing.append(element.id)
                logger.debug("Missing required element: %s", element.id)

        total = len(requirement.elements)
        if requirement.all_must_be_present:
            is_match = total > 0 and len(found) == total
        else:
            is_match = len(found) >= requirement.minimum_required

        logger.info(
            "M365 logon detection: %s/%s elements found (need %s) -> %s",
            len(found),
            total,
            total if requirement.all_must_be_present else requirement.minimum_required,
            "match" if is_match else "no match",
        )
        return FingerprintMatch(is_match=is_match, found_ids=tuple(found), missing_ids=tuple(missing))

    def matches(self, snapshot: PageSnapshot, requirement: FingerprintRequirement) -> FingerprintMatch:
        return self.matches_markup(snapshot.html, requirement)
