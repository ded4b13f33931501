"""Centralized constants for m365guard.

Enums and tuning values shared by the analyzer and pipeline modules so the
rate limits and severity cut-offs live in one reviewable place.
"""

from enum import Enum, IntEnum


class Classification(str, Enum):
    """Outcome of a single evaluation pass."""

    TRUSTED = "trusted"
    NOT_APPLICABLE = "not_applicable"
    SAFE = "safe"
    SUSPICIOUS = "suspicious"
    BLOCKED = "blocked"

    def __str__(self) -> str:
        return self.value


class Severity(IntEnum):
    """Severity levels with ranking for comparison."""

    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @classmethod
    def from_string(cls, value: str | None) -> "Severity":
        """Convert a rule document severity to the enum, defaulting to HIGH."""
        if not value:
            return cls.HIGH
        mapping = {
            "none": cls.NONE,
            "low": cls.LOW,
            "medium": cls.MEDIUM,
            "high": cls.HIGH,
            "critical": cls.CRITICAL,
        }
        return mapping.get(str(value).lower(), cls.HIGH)

    def __str__(self) -> str:
        return self.name.lower()


class EventType(str, Enum):
    """Outbound event types sent to the reporting collaborator."""

    LEGITIMATE_ACCESS = "legitimate_access"
    THREAT_DETECTED = "threat_detected"
    THREAT_BLOCKED = "threat_blocked"
    TRUSTED_BY_REFERRER = "trusted_by_referrer"


class UiAction(str, Enum):
    """Directives sent to the rendering collaborator."""

    SHOW_BADGE = "show_badge"
    SHOW_WARNING_BANNER = "show_warning_banner"
    SHOW_BLOCKING_PAGE = "show_blocking_page"
    LOCK_CREDENTIAL_INPUTS = "lock_credential_inputs"
    PREVENT_FORM_SUBMISSION = "prevent_form_submission"


# Score below threshold * SEVERE_SCORE_RATIO escalates a suspicious page to
# high severity (blocked).
SEVERE_SCORE_RATIO = 0.3

DEFAULT_LEGITIMATE_THRESHOLD = 85
DEFAULT_MINIMUM_REQUIRED = 2

# Rescan limits per scan session
MAX_SCANS = 10
SCAN_COOLDOWN_SECONDS = 1.0
RESCAN_DEBOUNCE_SECONDS = 0.5
OBSERVATION_WINDOW_SECONDS = 30.0

RULES_LOAD_TIMEOUT_SECONDS = 10.0

# Minimal sign-in markers checked when full rule evaluation is unavailable
FALLBACK_MARKER_SELECTORS: tuple[str, ...] = (
    'input[name="loginfmt"]',
    "#i0116",
)

# Registrable domains never warned about by the fallback check
FALLBACK_TRUSTED_DOMAINS: frozenset[str] = frozenset(
    {
        "microsoftonline.com",
        "microsoftonline.us",
        "microsoftonline.cn",
        "microsoft.com",
        "live.com",
        "windows.net",
    }
)

# Mutations that justify a rescan
STRUCTURAL_TAGS: frozenset[str] = frozenset({"form", "input", "script"})
RESCAN_KEYWORDS: tuple[str, ...] = (
    "loginfmt",
    "idPartnerPL",
    "Microsoft",
    "Office 365",
)
