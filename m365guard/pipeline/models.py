"""Pipeline data models."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..analyzer.rules import RuleRef
from ..constants import Classification, Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Verdict:
    """Classification output of one evaluation pass."""

    classification: Classification
    reason: str
    severity: Severity = Severity.NONE
    score: Optional[float] = None
    threshold: Optional[float] = None
    triggered_rules: tuple[RuleRef, ...] = ()
    blocking_rule: Optional[RuleRef] = None
    trusted_by_referrer: bool = False
    found_elements: tuple[str, ...] = ()
    missing_elements: tuple[str, ...] = ()
    skipped_rules: tuple[str, ...] = ()

    @property
    def is_terminal(self) -> bool:
        """True when no further scanning of the page is useful."""
        return self.classification is Classification.BLOCKED

    def to_dict(self) -> dict[str, Any]:
        return {
            "classification": self.classification.value,
            "severity": str(self.severity),
            "reason": self.reason,
            "score": self.score,
            "threshold": self.threshold,
            "triggeredRules": [r.to_dict() for r in self.triggered_rules],
            "blockingRule": self.blocking_rule.to_dict() if self.blocking_rule else None,
            "trustedByReferrer": self.trusted_by_referrer,
            "foundElements": list(self.found_elements),
            "missingElements": list(self.missing_elements),
            "skippedRules": list(self.skipped_rules),
        }


@dataclass
class ScanSession:
    """Per page-load scan state, mutated only by the active scan."""

    started_at: float
    active: bool = False
    scan_count: int = 0
    last_scan_at: Optional[float] = None
    observer_handle: Optional[Callable[[], None]] = None
    closed: bool = False
    close_reason: str = ""

    def rescan_refusal(
        self,
        now: float,
        max_scans: int,
        cooldown: float,
        window: Optional[float],
    ) -> Optional[str]:
        """Return why a rescan must be dropped, or None when allowed."""
        if self.closed:
            return f"session closed ({self.close_reason})"
        if self.scan_count >= max_scans:
            return f"max scans reached ({max_scans})"
        if self.last_scan_at is not None and now - self.last_scan_at < cooldown:
            return "cooldown"
        if window is not None and now - self.started_at >= window:
            return "observation window elapsed"
        return None

    def attach_observer(self, handle: Callable[[], None]) -> None:
        self.detach_observer()
        self.observer_handle = handle

    def detach_observer(self) -> None:
        handle, self.observer_handle = self.observer_handle, None
        if handle is None:
            return
        try:
            handle()
        except Exception as exc:
            logger.warning("Failed to stop DOM monitoring: %s", exc)

    def close(self, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self.detach_observer()
        logger.info("Scan session closed after %s scan(s): %s", self.scan_count, reason)


@dataclass(frozen=True)
class StructuralChange:
    """One added node reported by the page observer."""

    tag: str = ""
    text: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StructuralChange":
        return cls(tag=str(data.get("tag") or "").lower(), text=str(data.get("text") or ""))
