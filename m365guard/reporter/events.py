"""Protection events sent to the reporting collaborator.

Delivery is fire-and-forget: a failing sink is logged and never affects
protection of the page.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import httpx

from ..constants import EventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtectionEvent:
    """A single outbound protection event."""

    type: EventType
    url: str
    origin: str
    reason: str
    score: Optional[float] = None
    threshold: Optional[float] = None
    triggered_rules: tuple[dict, ...] = ()
    severity: Optional[str] = None
    rule: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "url": self.url,
            "origin": self.origin,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.score is not None:
            data["score"] = self.score
        if self.threshold is not None:
            data["threshold"] = self.threshold
        if self.triggered_rules:
            data["triggeredRules"] = list(self.triggered_rules)
        if self.severity:
            data["severity"] = self.severity
        if self.rule:
            data["rule"] = self.rule
        return data


class EventSink(Protocol):
    """Receives protection events."""

    def emit(self, event: ProtectionEvent) -> None:  # pragma: no cover - interface
        ...


class LoggingEventSink:
    """Writes events to the log."""

    def emit(self, event: ProtectionEvent) -> None:
        logger.info("Protection event %s: %s (%s)", event.type.value, event.reason, event.url)


class RecordingEventSink:
    """Keeps events in memory (CLI output and tests)."""

    def __init__(self) -> None:
        self.events: list[ProtectionEvent] = []

    def emit(self, event: ProtectionEvent) -> None:
        self.events.append(event)


class WebhookEventSink:
    """POSTs events as JSON to a reporting endpoint.

    - Requests run as background tasks on the running loop
    - Failures are logged, never raised
    """

    def __init__(self, endpoint: str, timeout_seconds: float = 10.0):
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None
        self._pending: set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def send(self, event: ProtectionEvent) -> bool:
        try:
            client = await self._get_client()
            resp = await client.post(self.endpoint, json=event.to_dict())
            resp.raise_for_status()
            return True
        except httpx.TimeoutException:
            logger.warning("Event delivery to %s timed out", self.endpoint)
        except httpx.HTTPError as exc:
            logger.warning("Event delivery to %s failed: %s", self.endpoint, exc)
        return False

    def emit(self, event: ProtectionEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; dropping event %s", event.type.value)
            return
        task = loop.create_task(self.send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None
