"""UI directives sent to the rendering collaborator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..constants import UiAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UiDirective:
    action: UiAction
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action.value, "payload": dict(self.payload)}


class DirectiveSink(Protocol):
    """Applies UI directives (badge, banner, blocking page, input locks)."""

    def apply(self, directive: UiDirective) -> None:  # pragma: no cover - interface
        ...


class LoggingDirectiveSink:
    def apply(self, directive: UiDirective) -> None:
        logger.info("UI directive: %s %s", directive.action.value, directive.payload.get("reason", ""))


class RecordingDirectiveSink:
    """Keeps directives in memory (CLI output and tests)."""

    def __init__(self) -> None:
        self.directives: list[UiDirective] = []

    def apply(self, directive: UiDirective) -> None:
        self.directives.append(directive)

    @property
    def actions(self) -> list[UiAction]:
        return [d.action for d in self.directives]
