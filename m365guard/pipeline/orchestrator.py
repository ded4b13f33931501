"""Verdict state machine for one page.

Evaluation order, each step short-circuiting the next:

1. trusted origin                     -> TRUSTED
2. trusted referrer, no password      -> TRUSTED (by referrer)
3. no Microsoft sign-in fingerprint   -> NOT_APPLICABLE
4. blocking rule fires                -> BLOCKED
5. legitimacy score vs threshold      -> SAFE / SUSPICIOUS / BLOCKED
"""

from __future__ import annotations

import inspect
import logging
import time
from typing import Awaitable, Callable, Iterable, Optional, Union

from ..analyzer.blocking import BlockingRuleEvaluator
from ..analyzer.fingerprint import FingerprintMatcher
from ..analyzer.metrics import metrics
from ..analyzer.page import PageSnapshot
from ..analyzer.ruleset import RuleLoadFailure, RuleSet
from ..analyzer.ruleset_loader import RuleSetLoader
from ..analyzer.scoring import LegitimacyScorer
from ..analyzer.trust import TrustEvaluator
from ..config import ProtectionPolicy
from ..constants import (
    FALLBACK_MARKER_SELECTORS,
    FALLBACK_TRUSTED_DOMAINS,
    MAX_SCANS,
    OBSERVATION_WINDOW_SECONDS,
    SCAN_COOLDOWN_SECONDS,
    Classification,
    EventType,
    Severity,
    UiAction,
)
from ..reporter.directives import DirectiveSink, LoggingDirectiveSink, UiDirective
from ..reporter.events import EventSink, LoggingEventSink, ProtectionEvent
from ..utils.origins import registered_domain
from .models import ScanSession, Verdict

logger = logging.getLogger(__name__)

SnapshotSource = Callable[[], Union[PageSnapshot, Awaitable[PageSnapshot]]]


class ClassificationError(Exception):
    """The orchestrator failed while classifying a page."""


class ProtectionOrchestrator:
    """Runs the detection pipeline for one page and reacts to the verdict."""

    def __init__(
        self,
        loader: Optional[RuleSetLoader] = None,
        ruleset: Optional[RuleSet] = None,
        policy: Optional[ProtectionPolicy] = None,
        event_sinks: Iterable[EventSink] = (),
        directive_sink: Optional[DirectiveSink] = None,
        max_scans: int = MAX_SCANS,
        scan_cooldown: float = SCAN_COOLDOWN_SECONDS,
        observation_window: Optional[float] = OBSERVATION_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if loader is None and ruleset is None:
            raise ValueError("Either a rule set loader or a rule set is required")
        self.loader = loader
        self.policy = policy or ProtectionPolicy()
        self.event_sinks = list(event_sinks) or [LoggingEventSink()]
        self.directive_sink = directive_sink or LoggingDirectiveSink()
        self.max_scans = max_scans
        self.scan_cooldown = scan_cooldown
        self.observation_window = observation_window
        self.clock = clock

        self.fingerprint = FingerprintMatcher()
        self.blocking = BlockingRuleEvaluator()
        self.scorer = LegitimacyScorer()

        self._ruleset = ruleset
        self._trust: Optional[TrustEvaluator] = None
        self._last_verdict: Optional[Verdict] = None
        self.session = ScanSession(started_at=self.clock())

    # ------------------------------------------------------------------
    # Rule set
    # ------------------------------------------------------------------

    async def ensure_rules(self) -> RuleSet:
        """Return the rule set, loading it on first use."""
        if self._ruleset is None:
            if self.loader is None:
                raise RuleLoadFailure("No rule set loaded and no loader configured")
            self._ruleset = await self.loader.get()
            self._trust = None
        return self._ruleset

    def reset_rules(self, ruleset: Optional[RuleSet] = None) -> None:
        """Swap in a reloaded rule set (or force a reload on next scan)."""
        self._ruleset = ruleset
        self._trust = None

    def _trust_for(self, ruleset: RuleSet) -> TrustEvaluator:
        if self._trust is None:
            self._trust = TrustEvaluator(ruleset.trusted_origins, self.policy.extra_trusted_origins)
        return self._trust

    # ------------------------------------------------------------------
    # Query interface
    # ------------------------------------------------------------------

    def get_last_verdict(self) -> Optional[Verdict]:
        return self._last_verdict

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, snapshot: PageSnapshot, ruleset: RuleSet) -> Verdict:
        """Classify a snapshot. Pure: no reactions, no session changes.

        Raises :class:`ClassificationError` when steps 3-5 fail unexpectedly.
        """
        trust = self._trust_for(ruleset).evaluate_snapshot(snapshot)
        if trust.is_trusted_origin:
            return Verdict(
                classification=Classification.TRUSTED,
                reason="Trusted Microsoft origin",
            )
        if trust.is_trusted_referrer:
            return Verdict(
                classification=Classification.TRUSTED,
                reason=f"Redirected from trusted origin {snapshot.referrer_origin}",
                trusted_by_referrer=True,
            )

        try:
            return self._classify_untrusted(snapshot, ruleset)
        except Exception as exc:
            raise ClassificationError(f"Classification failed for {snapshot.url}: {exc}") from exc

    def _classify_untrusted(self, snapshot: PageSnapshot, ruleset: RuleSet) -> Verdict:
        match = self.fingerprint.matches(snapshot, ruleset.fingerprint)
        if not match.is_match:
            return Verdict(
                classification=Classification.NOT_APPLICABLE,
                reason="Not a Microsoft sign-in page",
                found_elements=match.found_ids,
                missing_elements=match.missing_ids,
            )

        logger.warning("Microsoft sign-in page on non-trusted origin %s - analyzing", snapshot.origin)

        block = self.blocking.evaluate(snapshot, ruleset.blocking_rules)
        if block.should_block:
            return Verdict(
                classification=Classification.BLOCKED,
                reason=block.reason,
                severity=block.severity,
                blocking_rule=block.rule,
                found_elements=match.found_ids,
                missing_elements=match.missing_ids,
                skipped_rules=block.skipped_rules,
            )

        result = self.scorer.evaluate(snapshot, ruleset.scoring_rules, ruleset.legitimacy_threshold)
        severity = result.severity
        if result.is_legitimate:
            classification = Classification.SAFE
            reason = f"Legitimacy score acceptable: {result.score}/{result.threshold}"
        else:
            classification = Classification.BLOCKED if severity >= Severity.HIGH else Classification.SUSPICIOUS
            reason = f"Low legitimacy score: {result.score}/{result.threshold}"

        return Verdict(
            classification=classification,
            reason=reason,
            severity=severity,
            score=result.score,
            threshold=result.threshold,
            triggered_rules=result.triggered_rules,
            found_elements=match.found_ids,
            missing_elements=match.missing_ids,
            skipped_rules=block.skipped_rules + result.skipped_rules,
        )

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def scan(self, source: SnapshotSource, is_rerun: bool = False) -> Optional[Verdict]:
        """Run one protection pass.

        Returns the new verdict, or None when the pass was refused (rate
        limit, overlap, closed session) or no verdict could be produced.
        """
        session = self.session
        if not self.policy.enabled:
            logger.debug("Protection disabled by policy")
            return None

        now = self.clock()
        if is_rerun:
            if session.active:
                refusal = "scan already in progress"
            else:
                refusal = session.rescan_refusal(now, self.max_scans, self.scan_cooldown, self.observation_window)
            if refusal:
                logger.debug("Rescan dropped: %s", refusal)
                metrics.record_rescan_dropped()
                return None
        elif session.active or session.closed or session.scan_count >= self.max_scans:
            logger.debug("Protection already active")
            return None

        session.active = True
        try:
            session.scan_count += 1
            session.last_scan_at = now
            metrics.record_scan()
            logger.info("Starting rule-driven Microsoft 365 protection (scan #%s)", session.scan_count)

            try:
                snapshot = source()
                if inspect.isawaitable(snapshot):
                    snapshot = await snapshot
            except Exception as exc:
                logger.error("Failed to capture page snapshot: %s", exc)
                return None

            try:
                ruleset = await self.ensure_rules()
            except RuleLoadFailure as exc:
                logger.error("Protection unavailable, no valid rules: %s", exc)
                metrics.record_load_failure()
                self._fallback_check(snapshot)
                return None

            try:
                verdict = self.evaluate(snapshot, ruleset)
            except ClassificationError as exc:
                logger.error("Protection failed: %s", exc)
                self._fallback_check(snapshot, ruleset)
                return None

            self._last_verdict = verdict
            metrics.record_classification(verdict.classification.value)
            logger.info(
                "Verdict for %s: %s (%s) - %s",
                snapshot.url,
                verdict.classification.value,
                verdict.severity,
                verdict.reason,
            )
            self._react(snapshot, verdict)
            if verdict.is_terminal:
                self.stop_monitoring("blocked")
            return verdict
        finally:
            session.active = False

    def stop_monitoring(self, reason: str) -> None:
        """Tear down the session; no further rescans are accepted."""
        self.session.close(reason)

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    def _fallback_check(self, snapshot: PageSnapshot, ruleset: Optional[RuleSet] = None) -> bool:
        """Warn when basic sign-in markers appear on a non-trusted host.

        Only ever warns; never blocks and never records a verdict.
        """
        metrics.record_fallback()
        try:
            has_markers = any(snapshot.soup.select_one(sel) is not None for sel in FALLBACK_MARKER_SELECTORS)
            trusted_domains = set(FALLBACK_TRUSTED_DOMAINS)
            if ruleset is not None:
                trusted_domains.update(registered_domain(o) for o in ruleset.trusted_origins)
            is_trusted_host = registered_domain(snapshot.hostname) in trusted_domains
        except Exception as exc:
            logger.error("Even fallback protection failed: %s", exc)
            has_markers, is_trusted_host = True, False

        if not has_markers or is_trusted_host:
            return False

        logger.warning("Fallback warning: sign-in markers on %s without full rule evaluation", snapshot.hostname)
        self._direct(
            UiAction.SHOW_WARNING_BANNER,
            reason="Microsoft sign-in elements detected on an unverified site",
            fallback=True,
        )
        return True

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    def _react(self, snapshot: PageSnapshot, verdict: Verdict) -> None:
        classification = verdict.classification

        if classification is Classification.TRUSTED:
            if verdict.trusted_by_referrer:
                self._emit(snapshot, verdict, EventType.TRUSTED_BY_REFERRER)
                return
            if self.policy.show_valid_badge:
                self._direct(UiAction.SHOW_BADGE, reason=verdict.reason)
            self._emit(snapshot, verdict, EventType.LEGITIMATE_ACCESS)
            return

        if classification is Classification.BLOCKED:
            if self.policy.enable_page_blocking:
                self._direct(UiAction.SHOW_BLOCKING_PAGE, reason=verdict.reason, verdict=verdict.to_dict())
                self._direct(UiAction.PREVENT_FORM_SUBMISSION, reason=verdict.reason)
                self._direct(UiAction.LOCK_CREDENTIAL_INPUTS, reason=verdict.reason)
            else:
                self._direct(UiAction.SHOW_WARNING_BANNER, reason=verdict.reason, verdict=verdict.to_dict())
            event_type = EventType.THREAT_BLOCKED if verdict.blocking_rule else EventType.THREAT_DETECTED
            self._emit(snapshot, verdict, event_type)
            return

        if classification is Classification.SUSPICIOUS:
            self._direct(UiAction.SHOW_WARNING_BANNER, reason=verdict.reason, verdict=verdict.to_dict())
            self._emit(snapshot, verdict, EventType.THREAT_DETECTED)

    def _direct(self, action: UiAction, **payload) -> None:
        try:
            self.directive_sink.apply(UiDirective(action=action, payload=payload))
        except Exception as exc:
            logger.warning("Failed to apply UI directive %s: %s", action.value, exc)

    def _emit(self, snapshot: PageSnapshot, verdict: Verdict, event_type: EventType) -> None:
        event = ProtectionEvent(
            type=event_type,
            url=snapshot.url,
            origin=snapshot.origin,
            reason=verdict.reason,
            score=verdict.score,
            threshold=verdict.threshold,
            triggered_rules=tuple(r.to_dict() for r in verdict.triggered_rules),
            severity=str(verdict.severity) if verdict.severity else None,
            rule=verdict.blocking_rule.id if verdict.blocking_rule else None,
        )
        for sink in self.event_sinks:
            try:
                sink.emit(event)
            except Exception as exc:
                logger.warning("Failed to log protection event: %s", exc)
