"""Shared skeleton for resumable phases."""
import logging
import time
from typing import Any, Optional

from auction_harvest.config import config
from auction_harvest.errors import PersistenceError
from auction_harvest.jobs.metrics import Metrics, format_duration
from auction_harvest.jobs.metrics_exporter import MetricsExporter
from auction_harvest.jobs.run_control import RunControl
from auction_harvest.models import FailureRecord
from auction_harvest.store.checkpoint import CheckpointState, CheckpointStore
from auction_harvest.store.failures import FailureLedger
from auction_harvest.store.records import RecordStore

logger = logging.getLogger(__name__)


class PhaseRunner:
    """Load checkpoint, process units, checkpoint periodically, always flush.

    Subclasses implement ``_run``. Each unit of work ends with
    ``_after_unit()``; per-unit failures go through ``_record_failure`` and
    never escape the unit boundary.
    """

    phase = "phase"
    unit_label = "units"

    def __init__(
        self,
        records: RecordStore,
        checkpoints: CheckpointStore,
        run_control: Optional[RunControl] = None,
        ledger: Optional[FailureLedger] = None,
        exporter: Optional[MetricsExporter] = None,
        checkpoint_every: int = config.CHECKPOINT_EVERY,
        log_every: int = config.LOG_EVERY,
    ):
        self.records = records
        self.checkpoints = checkpoints
        self.run_control = run_control or RunControl()
        self.ledger = ledger
        self.exporter = exporter
        self.checkpoint_every = max(checkpoint_every, 1)
        self.log_every = max(log_every, 1)
        self.metrics = Metrics(0, self.unit_label)
        self.state: CheckpointState = checkpoints.fresh()
        self._since_save = 0
        self.stopped_reason: Optional[str] = None

    async def run(self) -> dict[str, Any]:
        """Run the phase to completion or cancellation."""
        self.state = self.checkpoints.load()
        started = time.time()
        logger.info("=" * 60)
        logger.info(f"Phase '{self.phase}' starting")
        try:
            await self._run()
        finally:
            await self._save_checkpoint()
            await self._export()
            self._final_report(time.time() - started)
        return self.summary()

    async def _run(self) -> None:
        raise NotImplementedError

    def _should_stop(self) -> bool:
        stop, reason = self.run_control.should_stop()
        if stop and self.stopped_reason is None:
            self.stopped_reason = reason
            logger.warning(f"Stopping phase '{self.phase}': {reason}. Saving checkpoint...")
        return stop

    async def _save_checkpoint(self) -> None:
        try:
            await self.checkpoints.save(self.state)
            self._since_save = 0
        except PersistenceError as e:
            logger.error(str(e))
            self.metrics.increment("checkpoint_errors")

    async def _after_unit(self) -> None:
        """Count a finished unit; checkpoint and report on cadence."""
        self.metrics.increment("processed")
        self._since_save += 1
        if self._since_save >= self.checkpoint_every:
            await self._save_checkpoint()
        if self.metrics.processed % self.log_every == 0:
            self.metrics.report(self._progress_extra())
            await self._export()

    def _progress_extra(self) -> Optional[str]:
        return None

    async def _export(self) -> None:
        if not self.exporter:
            return
        try:
            await self.exporter.export_metrics(self.phase, self.metrics.get_summary())
        except OSError as e:
            logger.warning(f"Metrics export failed: {e}")

    async def _record_failure(
        self,
        key: str,
        error: Any,
        source: Optional[str] = None,
        parent_id: Optional[str] = None,
        listing_id: Optional[str] = None,
    ) -> None:
        """Log, count and remember a per-unit failure."""
        failure = FailureRecord(
            key=key,
            error=str(error),
            source=source,
            parent_id=parent_id,
            listing_id=listing_id,
        )
        logger.error(f"[{self.phase}] {key} failed: {error}")
        self.state.record_failure(failure, self.checkpoints.max_failures)
        self.state.increment("errors")
        self.metrics.increment("failed")
        self.run_control.record_error()
        if self.ledger:
            await self.ledger.record(self.phase, failure)

    def _final_report(self, elapsed: float) -> None:
        summary = self.metrics.get_summary()
        logger.info("=" * 60)
        logger.info(f"PHASE '{self.phase}' {'STOPPED' if self.stopped_reason else 'COMPLETE'}")
        if self.stopped_reason:
            logger.info(f"Reason: {self.stopped_reason}")
        logger.info(f"Processed: {summary['processed']}/{summary['total']} {self.unit_label}")
        logger.info(f"OK: {summary['ok']} | Skipped: {summary['skipped']} | Errors: {summary['failed']}")
        for line in self._report_lines():
            logger.info(line)
        logger.info(f"Duration: {format_duration(elapsed)}")
        logger.info(f"Checkpoint: {self.checkpoints.path}")
        logger.info("=" * 60)

    def _report_lines(self) -> list[str]:
        return []

    def summary(self) -> dict[str, Any]:
        summary = self.metrics.get_summary()
        summary["phase"] = self.phase
        summary["stopped"] = self.stopped_reason
        summary["counters"] = dict(self.state.counters)
        return summary
