"""Run control: cooperative cancellation and stop conditions."""
import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class RunControl:
    """Cancellation token shared by every long-running loop.

    Loops check ``should_stop()`` at unit boundaries only; nothing in flight is
    interrupted. A signal, the time budget or the error budget all end the run
    the same way: stop admitting work, save the checkpoint, exit cleanly.
    """

    stop_after_minutes: Optional[float] = None
    max_errors: Optional[int] = None
    max_consecutive_errors: Optional[int] = None

    # Internal state
    start_time: float = field(default_factory=time.time)
    error_count: int = 0
    consecutive_errors: int = 0
    cancel_reason: Optional[str] = None
    _signals_installed: list = field(default_factory=list, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_reason is not None

    def cancel(self, reason: str = "cancelled") -> None:
        """Request a cooperative stop. The first reason wins."""
        if self.cancel_reason is None:
            self.cancel_reason = reason
            logger.warning(f"{reason}. Finishing current operation and shutting down...")

    def should_stop(self) -> tuple[bool, Optional[str]]:
        """Check if run should stop. Returns (should_stop, reason)."""
        if self.cancel_reason is not None:
            return True, self.cancel_reason

        elapsed_minutes = (time.time() - self.start_time) / 60
        if self.stop_after_minutes and elapsed_minutes >= self.stop_after_minutes:
            self.cancel(f"Reached stop_after_minutes={self.stop_after_minutes}")
            return True, self.cancel_reason

        if self.max_errors and self.error_count >= self.max_errors:
            self.cancel(f"Reached max_errors={self.max_errors}")
            return True, self.cancel_reason

        if self.max_consecutive_errors and self.consecutive_errors >= self.max_consecutive_errors:
            self.cancel(f"Reached max_consecutive_errors={self.max_consecutive_errors}")
            return True, self.cancel_reason

        return False, None

    def record_error(self) -> None:
        self.error_count += 1
        self.consecutive_errors += 1

    def record_success(self) -> None:
        self.consecutive_errors = 0

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGINT/SIGTERM to ``cancel`` instead of raising in the loop."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.cancel, f"{sig.name} received")
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler
                signal.signal(sig, lambda signum, frame: self.cancel(f"{signal.Signals(signum).name} received"))
            self._signals_installed.append(sig)

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in self._signals_installed:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, signal.SIG_DFL)
        self._signals_installed.clear()

    def get_summary(self) -> dict:
        """Get summary statistics."""
        elapsed_minutes = (time.time() - self.start_time) / 60
        return {
            "elapsed_minutes": round(elapsed_minutes, 2),
            "error_count": self.error_count,
            "consecutive_errors": self.consecutive_errors,
            "cancel_reason": self.cancel_reason,
        }
