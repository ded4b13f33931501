"""Detection metrics tracking.

Counts which rules fire or fail and how pages are classified, for tuning
the rule document without touching code.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class RuleMetrics:
    """Metrics for a single rule."""

    hits: int = 0
    errors: int = 0
    last_hit: Optional[datetime] = None

    def record_hit(self) -> None:
        self.hits += 1
        self.last_hit = datetime.now()


class DetectionMetrics:
    """Thread-safe metrics collector for detection analysis."""

    _instance: Optional["DetectionMetrics"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "DetectionMetrics":
        """Singleton pattern for global metrics access."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        self._lock = threading.Lock()
        self._rules: dict[str, RuleMetrics] = defaultdict(RuleMetrics)
        self._classifications: dict[str, int] = defaultdict(int)
        self._scans: int = 0
        self._rescans_dropped: int = 0
        self._load_failures: int = 0
        self._fallbacks: int = 0
        self._started: datetime = datetime.now()

    def record_rule_hit(self, rule_id: str) -> None:
        with self._lock:
            self._rules[rule_id].record_hit()

    def record_rule_error(self, rule_id: str) -> None:
        with self._lock:
            self._rules[rule_id].errors += 1

    def record_scan(self) -> None:
        with self._lock:
            self._scans += 1

    def record_rescan_dropped(self) -> None:
        with self._lock:
            self._rescans_dropped += 1

    def record_load_failure(self) -> None:
        with self._lock:
            self._load_failures += 1

    def record_fallback(self) -> None:
        with self._lock:
            self._fallbacks += 1

    def record_classification(self, classification: str) -> None:
        with self._lock:
            self._classifications[classification] += 1

    def get_summary(self) -> dict:
        """Get a summary of all metrics."""
        with self._lock:
            uptime = datetime.now() - self._started
            top_rules = sorted(self._rules.items(), key=lambda x: x[1].hits, reverse=True)[:10]
            return {
                "uptime_seconds": int(uptime.total_seconds()),
                "scans": self._scans,
                "rescans_dropped": self._rescans_dropped,
                "rule_load_failures": self._load_failures,
                "fallback_checks": self._fallbacks,
                "classifications": dict(self._classifications),
                "rules": {
                    rule_id: {
                        "hits": m.hits,
                        "errors": m.errors,
                        "last_hit": m.last_hit.isoformat() if m.last_hit else None,
                    }
                    for rule_id, m in top_rules
                },
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._rules.clear()
            self._classifications.clear()
            self._scans = 0
            self._rescans_dropped = 0
            self._load_failures = 0
            self._fallbacks = 0
            self._started = datetime.now()


# Global instance
metrics = DetectionMetrics()
