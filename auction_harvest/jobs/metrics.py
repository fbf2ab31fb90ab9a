"""Per-phase counters with throughput and ETA reporting."""
import logging
import time
from collections import Counter
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SUMMARY_COUNTERS = ("ok", "skipped", "failed")


def format_duration(seconds: float) -> str:
    """Format seconds as 'Xh Ym Zs'."""
    seconds = int(max(seconds, 0))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}h {minutes}m {secs}s"


def _compact(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


class Metrics:
    """Counters for one phase.

    ``processed`` drives rate and ETA; ``ok``/``skipped``/``failed`` are the
    per-unit outcomes shown on every progress line. Any other counter
    (``lots``, ``images``, ``bytes``...) is free-form.
    """

    def __init__(self, total: int = 0, label: str = "items"):
        self.total = total
        self.label = label
        self.counters: Counter = Counter()
        self.start_time = time.time()
        self._last_report = (self.start_time, 0)

    def increment(self, key: str, amount: int = 1) -> None:
        self.counters[key] += amount

    @property
    def processed(self) -> int:
        return self.counters["processed"]

    @property
    def elapsed(self) -> float:
        return time.time() - self.start_time

    def get_rate(self) -> float:
        """Units per second since the phase started."""
        elapsed = self.elapsed
        return self.processed / elapsed if elapsed > 0 else 0.0

    def get_eta(self) -> float:
        """Seconds left at the average rate; 0 when unknown."""
        rate = self.get_rate()
        if rate <= 0 or self.total <= 0:
            return 0.0
        return max(self.total - self.processed, 0) / rate

    def format_eta(self) -> str:
        return _compact(self.get_eta())

    def report(self, extra: Optional[str] = None) -> None:
        """Log one progress line and start a new 'recent rate' interval."""
        now = time.time()
        last_time, last_count = self._last_report
        interval = now - last_time
        recent_rate = (self.processed - last_count) / interval if interval > 0 else 0.0
        percent = f" ({self.processed * 100 // self.total}%)" if self.total > 0 else ""

        parts = [
            f"Progress [{self.label}]: {self.processed}/{self.total}{percent}",
            f"Rate: {self.get_rate():.2f}/s (recent: {recent_rate:.2f}/s)",
            f"ETA: {self.format_eta()}",
        ]
        parts.extend(f"{name.capitalize()}: {self.counters[name]}" for name in SUMMARY_COUNTERS)
        if extra:
            parts.append(extra)
        logger.info(" | ".join(parts))
        self._last_report = (now, self.processed)

    def get_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "label": self.label,
            "total": self.total,
            "processed": self.processed,
        }
        summary.update({name: self.counters[name] for name in SUMMARY_COUNTERS})
        summary.update(
            rate=self.get_rate(),
            eta_seconds=self.get_eta(),
            elapsed_seconds=self.elapsed,
        )
        return summary
