"""Local status server: health, last verdict and detection metrics."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from aiohttp import web

from ..analyzer.metrics import metrics
from ..pipeline.orchestrator import ProtectionOrchestrator

logger = logging.getLogger(__name__)


def orchestrator_status(orchestrator: Optional[ProtectionOrchestrator]) -> dict:
    """Snapshot of the orchestrator's query interface."""
    if orchestrator is None:
        return {"verdict": None, "session": None}
    verdict = orchestrator.get_last_verdict()
    session = orchestrator.session
    return {
        "verdict": verdict.to_dict() if verdict else None,
        "session": {
            "scan_count": session.scan_count,
            "active": session.active,
            "closed": session.closed,
            "close_reason": session.close_reason or None,
        },
    }


class StatusServer:
    """Serves /healthz, /status and /metrics."""

    def __init__(
        self,
        host: str,
        port: int,
        orchestrator_provider: Callable[[], Optional[ProtectionOrchestrator]],
        config_summary: Optional[dict] = None,
        enabled: bool = True,
    ):
        self.host = host
        self.port = port
        self.orchestrator_provider = orchestrator_provider
        self.config_summary = config_summary or {}
        self.enabled = enabled
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_get("/status", self._handle_status)
        app.router.add_get("/metrics", self._handle_metrics)
        return app

    async def start(self):
        """Start the status server."""
        if not self.enabled:
            logger.info("Status server disabled")
            return

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info("Status server listening on %s:%s", self.host, self.port)

    async def stop(self):
        """Stop the status server."""
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._runner = None
        self._site = None

    async def _handle_health(self, request):  # noqa: ANN001
        return web.json_response({"status": "ok"}, headers={"Access-Control-Allow-Origin": "*"})

    async def _handle_status(self, request):  # noqa: ANN001
        try:
            payload = orchestrator_status(self.orchestrator_provider())
            payload["status"] = "ok"
        except Exception as exc:
            logger.warning("Status provider failed: %s", exc)
            payload = {"status": "error", "message": str(exc)}
        payload["config"] = self.config_summary
        return web.json_response(payload, headers={"Access-Control-Allow-Origin": "*"})

    async def _handle_metrics(self, request):  # noqa: ANN001
        """Expose detection counters in Prometheus text format."""
        data = metrics.get_summary()
        lines = []
        for key in ("uptime_seconds", "scans", "rescans_dropped", "rule_load_failures", "fallback_checks"):
            lines.append(f"m365guard_{key} {data[key]}")
        for classification, count in sorted(data["classifications"].items()):
            lines.append(f'm365guard_classifications{{classification="{classification}"}} {count}')
        for rule_id, rule in sorted(data["rules"].items()):
            lines.append(f'm365guard_rule_hits{{rule="{rule_id}"}} {rule["hits"]}')
            lines.append(f'm365guard_rule_errors{{rule="{rule_id}"}} {rule["errors"]}')
        return web.Response(text="\n".join(lines) + "\n")
