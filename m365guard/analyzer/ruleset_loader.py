"""Rule set loader: fetch, parse and cache the detection rule document."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Union

import httpx
import yaml

from ..constants import RULES_LOAD_TIMEOUT_SECONDS
from .ruleset import RuleLoadFailure, RuleSet, parse_ruleset

logger = logging.getLogger(__name__)


def _is_url(source: str) -> bool:
    return source.lower().startswith(("http://", "https://"))


class RuleSetLoader:
    """Loads and manages the detection rule set.

    Unlike a best-effort config file, a missing or invalid rule document is
    fatal: ``load()`` raises :class:`RuleLoadFailure` instead of falling back
    to defaults.
    """

    def __init__(
        self,
        source: Union[str, Path],
        timeout: float = RULES_LOAD_TIMEOUT_SECONDS,
    ):
        self.source = str(source)
        self.timeout = timeout
        self._ruleset: Optional[RuleSet] = None

    async def _fetch(self) -> tuple[str, str]:
        """Return (raw text, format hint) for the configured source."""
        if _is_url(self.source):
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                resp = await client.get(self.source, headers={"Cache-Control": "no-cache"})
                resp.raise_for_status()
                content_type = resp.headers.get("content-type", "")
                hint = "yaml" if "yaml" in content_type or self.source.endswith((".yaml", ".yml")) else "json"
                return resp.text, hint

        path = Path(self.source)
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        hint = "yaml" if path.suffix.lower() in (".yaml", ".yml") else "json"
        return text, hint

    @staticmethod
    def parse(text: str, hint: str = "json") -> RuleSet:
        """Decode and validate a rule document."""
        try:
            data = yaml.safe_load(text) if hint == "yaml" else json.loads(text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise RuleLoadFailure(f"Rule document is not valid {hint}: {exc}") from exc
        return parse_ruleset(data)

    async def load(self) -> RuleSet:
        """Load the rule set from its source, replacing any cached copy."""
        try:
            text, hint = await asyncio.wait_for(self._fetch(), timeout=self.timeout)
            ruleset = self.parse(text, hint)
        except RuleLoadFailure as exc:
            exc.source = self.source
            logger.error("CRITICAL: Failed to load detection rules from %s: %s", self.source, exc)
            raise
        except asyncio.TimeoutError as exc:
            logger.error("CRITICAL: Timed out loading detection rules from %s", self.source)
            raise RuleLoadFailure(
                f"Timed out after {self.timeout}s loading rules", source=self.source
            ) from exc
        except (OSError, UnicodeDecodeError, httpx.HTTPError) as exc:
            logger.error("CRITICAL: Failed to load detection rules from %s: %s", self.source, exc)
            raise RuleLoadFailure(f"Could not read rules: {exc}", source=self.source) from exc

        self._ruleset = ruleset
        logger.info(
            "Loaded detection rules%s: %s trusted origins, %s blocking rules, %s scoring rules",
            f" v{ruleset.version}" if ruleset.version else "",
            len(ruleset.trusted_origins),
            len(ruleset.blocking_rules),
            len(ruleset.scoring_rules),
        )
        return ruleset

    async def get(self) -> RuleSet:
        """Get the loaded rule set, loading if necessary."""
        if self._ruleset is None:
            return await self.load()
        return self._ruleset

    async def reload(self) -> RuleSet:
        """Force reload from the source.

        The previous rule set stays cached if the reload fails.
        """
        return await self.load()

    @property
    def cached(self) -> Optional[RuleSet]:
        return self._ruleset
