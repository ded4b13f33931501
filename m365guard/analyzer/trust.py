"""Trusted-origin classification."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ..utils.origins import url_origin
from .page import PageSnapshot


@dataclass(frozen=True)
class TrustResult:
    is_trusted_origin: bool
    is_trusted_referrer: bool


class TrustEvaluator:
    """Classifies a page origin and its referrer against trusted origins.

    Both checks are pure set lookups on normalized origins; anything that
    fails to normalize becomes "" and never matches.
    """

    def __init__(self, trusted_origins: Iterable[str], extra_origins: Iterable[str] = ()):
        origins = {url_origin(o) for o in trusted_origins}
        origins.update(url_origin(o) for o in extra_origins)
        origins.discard("")
        self.trusted_origins = frozenset(origins)

    def is_trusted(self, url: str) -> bool:
        origin = url_origin(url)
        return bool(origin) and origin in self.trusted_origins

    def evaluate(
        self,
        origin: str,
        referrer_origin: str,
        has_password_field: bool = False,
    ) -> TrustResult:
        # A post-login redirect from a trusted origin is not itself a login page,
        # so the referrer only counts when no password field is shown.
        return TrustResult(
            is_trusted_origin=self.is_trusted(origin),
            is_trusted_referrer=self.is_trusted(referrer_origin) and not has_password_field,
        )

    def evaluate_snapshot(self, snapshot: PageSnapshot) -> TrustResult:
        return self.evaluate(snapshot.url, snapshot.referrer, snapshot.has_password_field)
