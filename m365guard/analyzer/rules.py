"""Shared result types for rule evaluation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from ..constants import SEVERE_SCORE_RATIO, Severity
from .page import PageSnapshot


class RuleEvaluationError(Exception):
    """A single rule's condition could not be evaluated."""

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"{rule_id}: {message}")
        self.rule_id = rule_id


@dataclass(frozen=True)
class RuleRef:
    """Reference to a rule that contributed to a verdict."""

    id: str
    type: str
    description: str = ""
    weight: Optional[float] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"id": self.id, "type": self.type}
        if self.description:
            data["description"] = self.description
        if self.weight is not None:
            data["weight"] = self.weight
        return data


@dataclass(frozen=True)
class BlockResult:
    """Outcome of the blocking rule pass."""

    should_block: bool
    reason: str
    rule: Optional[RuleRef] = None
    severity: Severity = Severity.NONE
    error: Optional[str] = None
    skipped_rules: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScoreResult:
    """Outcome of the legitimacy scoring pass."""

    score: float
    threshold: float
    triggered_rules: tuple[RuleRef, ...] = ()
    skipped_rules: tuple[str, ...] = ()

    @property
    def is_legitimate(self) -> bool:
        return self.score >= self.threshold

    @property
    def severity(self) -> Severity:
        if self.is_legitimate:
            return Severity.NONE
        if self.score < self.threshold * SEVERE_SCORE_RATIO:
            return Severity.HIGH
        return Severity.MEDIUM


class ConditionCheck(Protocol):
    """Interface for per-kind condition checks.

    ``check`` returns a truthy description when the condition holds and
    raises :class:`RuleEvaluationError` when it cannot be evaluated.
    """

    kind: Any

    def check(self, rule_id: str, condition: Any, snapshot: PageSnapshot) -> Optional[str]:  # pragma: no cover - interface
        ...

