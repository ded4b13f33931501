"""Command line entry point for m365guard.

Commands:
  m365guard scan URL                       load a live page and protect it
  m365guard evaluate FILE --url URL        classify saved markup
  m365guard check-rules [SOURCE]           validate a rule document
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from .analyzer.browser import BrowserSession
from .analyzer.metrics import metrics
from .analyzer.page import PageSnapshot
from .analyzer.ruleset import RuleLoadFailure
from .analyzer.ruleset_loader import RuleSetLoader
from .config import Config, describe, load_config, validate_config
from .monitoring.status import StatusServer
from .pipeline.orchestrator import ProtectionOrchestrator
from .pipeline.rescan import RescanScheduler
from .reporter.directives import LoggingDirectiveSink, RecordingDirectiveSink
from .reporter.events import LoggingEventSink, RecordingEventSink, WebhookEventSink

# Logs go to stderr; stdout carries command output
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stderr),
    ],
)
logger = logging.getLogger(__name__)


def _loader_for(config: Config, source: Optional[str] = None) -> RuleSetLoader:
    return RuleSetLoader(source or config.rules_source, timeout=config.rules_load_timeout)


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


async def run_scan(config: Config, url: str) -> int:
    """Load a live page, protect it and watch it for the observation window."""
    webhook = WebhookEventSink(config.event_webhook_url) if config.event_webhook_url else None
    event_sinks = [LoggingEventSink()] + ([webhook] if webhook else [])

    orchestrator = ProtectionOrchestrator(
        loader=_loader_for(config),
        policy=config.policy(),
        event_sinks=event_sinks,
        directive_sink=LoggingDirectiveSink(),
        max_scans=config.max_scans,
        scan_cooldown=config.scan_cooldown,
        observation_window=config.observation_window,
    )
    status_server = StatusServer(
        host=config.status_host,
        port=config.status_port,
        orchestrator_provider=lambda: orchestrator,
        config_summary=describe(config),
        enabled=config.status_enabled,
    )
    browser = BrowserSession(timeout=config.browser_timeout, headless=config.browser_headless)
    capture = None
    scheduler: Optional[RescanScheduler] = None

    try:
        await status_server.start()
        capture = await browser.open(url)
        await orchestrator.scan(capture.snapshot)

        if not orchestrator.session.closed:
            finished = asyncio.Event()
            scheduler = RescanScheduler(
                orchestrator,
                subscribe=capture.subscribe_to_structural_changes,
                source=capture.snapshot,
                debounce=config.rescan_debounce,
                on_stop=finished.set,
            )
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, scheduler.shutdown, "interrupted")
            await scheduler.start()
            if scheduler.running:
                await finished.wait()
            await scheduler.wait_idle()
    finally:
        if capture is not None:
            await capture.close()
        await browser.stop()
        await status_server.stop()
        if webhook is not None:
            await webhook.close()

    verdict = orchestrator.get_last_verdict()
    _print_json(
        {
            "url": url,
            "verdict": verdict.to_dict() if verdict else None,
            "scans": orchestrator.session.scan_count,
            "metrics": metrics.get_summary(),
        }
    )
    return 0


async def run_evaluate(config: Config, path: Path, url: str, referrer: str = "", source: Optional[str] = None) -> int:
    """Classify saved markup as if it had been served from ``url``."""
    loader = _loader_for(config, source)
    try:
        await loader.load()
    except RuleLoadFailure as exc:
        logger.error("Cannot evaluate without rules: %s", exc)
        return 1

    snapshot = PageSnapshot.from_html(url=url, html=path.read_text(encoding="utf-8", errors="replace"), referrer=referrer)
    events = RecordingEventSink()
    directives = RecordingDirectiveSink()
    orchestrator = ProtectionOrchestrator(
        loader=loader,
        policy=config.policy(),
        event_sinks=[events],
        directive_sink=directives,
    )
    verdict = await orchestrator.scan(lambda: snapshot)
    _print_json(
        {
            "url": url,
            "verdict": verdict.to_dict() if verdict else None,
            "directives": [d.action.value for d in directives.directives],
            "events": [e.to_dict() for e in events.events],
        }
    )
    return 0


async def run_check_rules(config: Config, source: Optional[str] = None) -> int:
    """Load and validate a rule document, printing a short summary."""
    loader = _loader_for(config, source)
    try:
        ruleset = await loader.load()
    except RuleLoadFailure as exc:
        print(f"Invalid rules ({exc.source or loader.source}): {exc}", file=sys.stderr)
        return 1

    _print_json(
        {
            "source": loader.source,
            "version": ruleset.version,
            "trusted_origins": sorted(ruleset.trusted_origins),
            "required_elements": [e.id for e in ruleset.fingerprint.elements],
            "minimum_required": ruleset.fingerprint.minimum_required,
            "blocking_rules": [r.id for r in ruleset.blocking_rules],
            "scoring_rules": [r.id for r in ruleset.scoring_rules],
            "legitimacy_threshold": ruleset.legitimacy_threshold,
        }
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="m365guard", description="Microsoft 365 sign-in phishing protection")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Load a live page and protect it")
    scan.add_argument("url")

    evaluate = sub.add_parser("evaluate", help="Classify saved page markup")
    evaluate.add_argument("file", type=Path)
    evaluate.add_argument("--url", required=True, help="URL the markup was served from")
    evaluate.add_argument("--referrer", default="", help="Referring URL, if any")
    evaluate.add_argument("--rules", default=None, help="Rule document path or URL")

    check = sub.add_parser("check-rules", help="Validate a rule document")
    check.add_argument("source", nargs="?", default=None, help="Rule document path or URL")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)
    config = load_config()

    if args.command == "scan":
        errors = validate_config(config)
        if errors:
            for err in errors:
                logger.error(err)
            return 1
        return asyncio.run(run_scan(config, args.url))
    if args.command == "evaluate":
        if not args.file.is_file():
            logger.error("File not found: %s", args.file)
            return 1
        return asyncio.run(run_evaluate(config, args.file, args.url, args.referrer, args.rules))
    return asyncio.run(run_check_rules(config, args.source))


if __name__ == "__main__":
    sys.exit(main())
