"""Debounced rescans triggered by structural page changes.

Sign-in kits often render the credential form after the initial load, so
the first scan can see an empty shell. The scheduler watches for
structural mutations and re-runs the orchestrator, bounded by the session
limits (max scans, cooldown, observation window).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from ..analyzer.metrics import metrics
from ..constants import RESCAN_DEBOUNCE_SECONDS, RESCAN_KEYWORDS, STRUCTURAL_TAGS
from .models import StructuralChange
from .orchestrator import ProtectionOrchestrator, SnapshotSource

logger = logging.getLogger(__name__)


def is_structural(change: StructuralChange) -> bool:
    """True when a change can plausibly alter the verdict."""
    if change.tag.lower() in STRUCTURAL_TAGS:
        return True
    return any(keyword in change.text for keyword in RESCAN_KEYWORDS)


ChangeCallback = Callable[[Iterable[StructuralChange]], Any]
Unsubscribe = Callable[[], Any]
Subscribe = Callable[[ChangeCallback], Union[Unsubscribe, Awaitable[Unsubscribe]]]


class RescanScheduler:
    """Coalesces structural changes into bounded rescans.

    A change arriving while a rescan is already pending is folded into it;
    the pending timer is not reset. Timers are armed to fire after the scan
    cooldown, so a coalesced change is always rescanned.
    """

    def __init__(
        self,
        orchestrator: ProtectionOrchestrator,
        subscribe: Subscribe,
        source: SnapshotSource,
        debounce: float = RESCAN_DEBOUNCE_SECONDS,
        on_stop: Optional[Callable[[], None]] = None,
    ):
        self.orchestrator = orchestrator
        self.subscribe = subscribe
        self.source = source
        self.debounce = debounce
        self.on_stop = on_stop

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._pending: Optional[asyncio.TimerHandle] = None
        self._window_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    async def start(self) -> None:
        """Subscribe to page changes and arm the observation window."""
        if self._running:
            return
        session = self.orchestrator.session
        if session.closed:
            logger.debug("Not monitoring: session already closed (%s)", session.close_reason)
            return

        self._loop = asyncio.get_running_loop()
        unsubscribe = self.subscribe(self.notify)
        if inspect.isawaitable(unsubscribe):
            unsubscribe = await unsubscribe
        self._unsubscribe = unsubscribe
        self._running = True
        session.attach_observer(self.stop)

        window = self.orchestrator.observation_window
        if window is not None:
            elapsed = self.orchestrator.clock() - session.started_at
            self._window_timer = self._loop.call_later(max(window - elapsed, 0.0), self._window_elapsed)
        logger.info("Setting up DOM monitoring for delayed content")

    def notify(self, changes: Iterable[StructuralChange]) -> bool:
        """Handle a batch of page changes. Returns True if a rescan was scheduled."""
        if not self._running or self._loop is None:
            return False
        if not any(is_structural(c) for c in changes):
            return False

        if self._pending is not None:
            logger.debug("Rescan already pending; coalescing change")
            return False

        now = self.orchestrator.clock()
        delay = max(self.debounce, self._cooldown_remaining(now))
        session = self.orchestrator.session
        refusal = session.rescan_refusal(
            now + delay,
            self.orchestrator.max_scans,
            0.0,
            self.orchestrator.observation_window,
        )
        if refusal:
            logger.debug("Ignoring page change: %s", refusal)
            metrics.record_rescan_dropped()
            return False

        logger.debug("Significant DOM changes detected, scheduling re-scan")
        self._pending = self._loop.call_later(delay, self._fire)
        return True

    def _cooldown_remaining(self, now: float) -> float:
        last = self.orchestrator.session.last_scan_at
        if last is None:
            return 0.0
        return max(last + self.orchestrator.scan_cooldown - now, 0.0)

    def _fire(self) -> None:
        self._pending = None
        if not self._running or self._loop is None:
            return
        # Timers can fire marginally early, and a scan may still be running
        session = self.orchestrator.session
        remaining = self._cooldown_remaining(self.orchestrator.clock())
        if session.active or remaining > 0:
            self._pending = self._loop.call_later(max(remaining, self.debounce), self._fire)
            return
        task = asyncio.ensure_future(self.orchestrator.scan(self.source, is_rerun=True))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Rescan failed: %s", exc)

    def _window_elapsed(self) -> None:
        self._window_timer = None
        self.orchestrator.stop_monitoring("observation window elapsed")

    def stop(self) -> None:
        """Stop watching the page. Idempotent; in-flight rescans finish."""
        if not self._running:
            return
        self._running = False
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self._window_timer is not None:
            self._window_timer.cancel()
            self._window_timer = None

        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            try:
                result = unsubscribe()
                if inspect.isawaitable(result) and self._loop is not None:
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception as exc:
                logger.warning("Failed to unsubscribe from page changes: %s", exc)
        if self.on_stop is not None:
            self.on_stop()
        logger.info("DOM monitoring stopped")

    def shutdown(self, reason: str = "page unloaded") -> None:
        """Close the scan session (stops monitoring through the session)."""
        self.orchestrator.stop_monitoring(reason)
        self.stop()

    async def wait_idle(self) -> None:
        """Wait for in-flight rescans to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
