"""Configuration management for m365guard."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Set

import yaml
from dotenv import load_dotenv

from .constants import (
    MAX_SCANS,
    OBSERVATION_WINDOW_SECONDS,
    RESCAN_DEBOUNCE_SECONDS,
    RULES_LOAD_TIMEOUT_SECONDS,
    SCAN_COOLDOWN_SECONDS,
)
from .utils.origins import url_origin

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtectionPolicy:
    """Read-only policy consumed by the orchestrator."""

    enabled: bool = True
    enable_page_blocking: bool = True
    show_valid_badge: bool = True
    extra_trusted_origins: frozenset = frozenset()


@dataclass
class Config:
    """Application configuration loaded from environment and managed policy."""

    config_dir: Path = field(default_factory=lambda: Path("./config"))
    rules_source: str = ""
    rules_load_timeout: float = RULES_LOAD_TIMEOUT_SECONDS

    # Managed policy
    protection_enabled: bool = True
    enable_page_blocking: bool = True
    show_valid_badge: bool = True
    extra_trusted_origins: Set[str] = field(default_factory=set)

    # Rescan limits
    max_scans: int = MAX_SCANS
    scan_cooldown: float = SCAN_COOLDOWN_SECONDS
    rescan_debounce: float = RESCAN_DEBOUNCE_SECONDS
    observation_window: float = OBSERVATION_WINDOW_SECONDS

    # Reporting (optional)
    event_webhook_url: str = ""

    # Status server
    status_host: str = "127.0.0.1"
    status_port: int = 8081
    status_enabled: bool = False

    # Page capture
    browser_timeout: int = 30
    browser_headless: bool = True

    def __post_init__(self):
        self.config_dir = Path(self.config_dir)
        if not self.rules_source:
            self.rules_source = str(self.config_dir / "detection-rules.json")
        self.extra_trusted_origins = {
            url_origin(o) or o.strip().lower() for o in self.extra_trusted_origins if o and o.strip()
        }

    def policy(self) -> ProtectionPolicy:
        return ProtectionPolicy(
            enabled=self.protection_enabled,
            enable_page_blocking=self.enable_page_blocking,
            show_valid_badge=self.show_valid_badge,
            extra_trusted_origins=frozenset(o for o in self.extra_trusted_origins if url_origin(o)),
        )


# Managed policy keys (enterprise deployments) -> Config attribute
POLICY_KEYS: dict[str, str] = {
    "ExtensionEnabled": "protection_enabled",
    "EnablePageBlocking": "enable_page_blocking",
    "EnableValidPageBadge": "show_valid_badge",
    "ExtraWhitelist": "extra_trusted_origins",
    "CustomRulesUrl": "rules_source",
    "ReportingServerUrl": "event_webhook_url",
}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _split_list(value: str) -> set[str]:
    return {item.strip() for item in (value or "").split(",") if item.strip()}


def _load_policy(config_dir: Path) -> dict:
    """Load managed policy overrides from config/policy.yaml (optional)."""
    path = Path(config_dir or ".") / "policy.yaml"
    if not path.exists():
        return {}

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except Exception as exc:
        logger.warning("Failed to parse policy.yaml: %s", exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring policy.yaml: expected a mapping")
        return {}

    overrides: dict = {}
    for key, attr in POLICY_KEYS.items():
        if key not in data or data[key] is None:
            continue
        value = data[key]
        if attr == "extra_trusted_origins":
            if isinstance(value, str):
                value = _split_list(value)
            elif isinstance(value, list):
                value = {str(v).strip() for v in value if str(v).strip()}
            else:
                logger.warning("Ignoring policy %s: expected a list", key)
                continue
        elif attr in ("protection_enabled", "enable_page_blocking", "show_valid_badge"):
            if not isinstance(value, bool):
                logger.warning("Ignoring policy %s: expected a boolean", key)
                continue
        else:
            value = str(value).strip()
        overrides[attr] = value
    return overrides


def load_config() -> Config:
    """Load configuration from environment variables, then managed policy."""
    load_dotenv()

    config_dir = Path(os.getenv("CONFIG_DIR", "./config"))
    values: dict = {
        "config_dir": config_dir,
        "rules_source": os.getenv("RULES_SOURCE", ""),
        "rules_load_timeout": float(os.getenv("RULES_LOAD_TIMEOUT", str(RULES_LOAD_TIMEOUT_SECONDS))),
        "protection_enabled": _env_bool("PROTECTION_ENABLED", True),
        "enable_page_blocking": _env_bool("ENABLE_PAGE_BLOCKING", True),
        "show_valid_badge": _env_bool("SHOW_VALID_BADGE", True),
        "extra_trusted_origins": _split_list(os.getenv("EXTRA_TRUSTED_ORIGINS", "")),
        "max_scans": int(os.getenv("MAX_SCANS", str(MAX_SCANS))),
        "scan_cooldown": float(os.getenv("SCAN_COOLDOWN", str(SCAN_COOLDOWN_SECONDS))),
        "rescan_debounce": float(os.getenv("RESCAN_DEBOUNCE", str(RESCAN_DEBOUNCE_SECONDS))),
        "observation_window": float(os.getenv("OBSERVATION_WINDOW", str(OBSERVATION_WINDOW_SECONDS))),
        "event_webhook_url": os.getenv("EVENT_WEBHOOK_URL", ""),
        "status_host": os.getenv("STATUS_HOST", "127.0.0.1"),
        "status_port": int(os.getenv("STATUS_PORT", "8081")),
        "status_enabled": _env_bool("STATUS_ENABLED", False),
        "browser_timeout": int(os.getenv("BROWSER_TIMEOUT", "30")),
        "browser_headless": _env_bool("BROWSER_HEADLESS", True),
    }

    # Enterprise policy takes precedence over local settings
    policy = _load_policy(config_dir)
    if policy:
        logger.info("Managed policy applied: %s", ", ".join(sorted(policy)))
    values.update(policy)

    return Config(**values)


def validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of error messages."""
    errors: list[str] = []
    if config.max_scans < 1:
        errors.append("MAX_SCANS must be at least 1")
    if config.scan_cooldown < 0:
        errors.append("SCAN_COOLDOWN must not be negative")
    if config.rescan_debounce < 0:
        errors.append("RESCAN_DEBOUNCE must not be negative")
    if config.observation_window <= 0:
        errors.append("OBSERVATION_WINDOW must be positive")
    if config.rules_load_timeout <= 0:
        errors.append("RULES_LOAD_TIMEOUT must be positive")

    source = config.rules_source or ""
    if not source.lower().startswith(("http://", "https://")) and not Path(source).is_file():
        errors.append(f"Rules file not found: {source}")

    for origin in sorted(config.extra_trusted_origins):
        if not url_origin(origin):
            errors.append(f"Extra trusted origin is not a valid http(s) origin: {origin}")

    if not config.event_webhook_url:
        logger.info("No EVENT_WEBHOOK_URL configured; protection events will only be logged")

    return errors


def describe(config: Optional[Config]) -> dict:
    """Non-secret summary for the status endpoint."""
    if config is None:
        return {}
    return {
        "rules_source": config.rules_source,
        "protection_enabled": config.protection_enabled,
        "page_blocking": config.enable_page_blocking,
        "valid_badge": config.show_valid_badge,
        "extra_trusted_origins": sorted(config.extra_trusted_origins),
    }
