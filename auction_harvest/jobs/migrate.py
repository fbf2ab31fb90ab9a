"""Copy every collected lot image into the object store."""
import logging
from pathlib import Path
from typing import Any, Iterator, Optional

import httpx
import orjson
from pydantic import ValidationError

from auction_harvest.config import config
from auction_harvest.jobs.base import PhaseRunner
from auction_harvest.jobs.transfer import TransferEngine, units_from_images_record
from auction_harvest.models import TransferUnit
from auction_harvest.store.object_store import ObjectStore

logger = logging.getLogger(__name__)

GROUP_UNITS = "group_units"


class MigrationRunner(PhaseRunner):
    """Feeds every images file (one group per file) through the TransferEngine.

    A group is marked done once all its units reach a terminal state, so a
    restart skips finished files without reading them again; partially done
    files fall back to per-unit skip-if-exists.
    """

    phase = "migration"
    unit_label = "images"

    def __init__(
        self,
        store: ObjectStore,
        source: httpx.AsyncClient,
        *args: Any,
        concurrency: int = config.CONCURRENT_UPLOADS,
        prefix: str = config.S3_KEY_PREFIX,
        engine_options: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("checkpoint_every", config.CHECKPOINT_EVERY_N_IMAGES)
        kwargs.setdefault("log_every", config.LOG_EVERY_N_IMAGES)
        super().__init__(*args, **kwargs)
        self.store = store
        self.source = source
        self.concurrency = concurrency
        self.prefix = prefix
        self.engine_options = engine_options or {}
        self.engine: Optional[TransferEngine] = None
        self.unreadable = 0

    def _load_units(self, path: Path, group: str) -> Optional[list[TransferUnit]]:
        try:
            record = orjson.loads(path.read_bytes())
            return units_from_images_record(record, group, self.prefix)
        except (OSError, orjson.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Skipping unreadable images file {group}: {e}")
            self.unreadable += 1
            return None

    def count_units(self) -> int:
        """Units left in groups that are not done yet.

        Per-group counts are cached in the checkpoint, so a resumed run only
        reads images files it has not counted before (new files included).
        """
        cached = self.state.extra.get(GROUP_UNITS)
        cached = cached if isinstance(cached, dict) else {}
        counts: dict[str, int] = {}
        read = 0
        for path in self.records.iter_images_files():
            group = self.records.relative(path)
            if self.state.is_done(group):
                continue
            if isinstance(cached.get(group), int):
                counts[group] = cached[group]
                continue
            units = self._load_units(path, group)
            if units is not None:
                counts[group] = len(units)
                read += 1
        self.unreadable = 0
        self.state.extra[GROUP_UNITS] = counts
        total = sum(counts.values())
        logger.info(f"Found {total} images in {len(counts)} pending files ({read} newly counted)")
        return total

    def iter_units(self) -> Iterator[TransferUnit]:
        """Units of every images file whose group is not done yet."""
        for path in self.records.iter_images_files():
            group = self.records.relative(path)
            if self.state.is_done(group):
                continue
            units = self._load_units(path, group)
            if units is None:
                continue
            if not units:
                self.state.mark_done(group)
                self.state.increment("groups")
                continue
            yield from units

    async def _run(self) -> None:
        self.metrics.total = self.count_units()
        already = self.state.count("succeeded") + self.state.count("skipped") + self.state.count("failed")
        if already:
            logger.info(f"Resuming: {already} images settled in earlier runs")
        self.engine = TransferEngine(
            self.store,
            self.source,
            self.state,
            checkpoints=self.checkpoints,
            run_control=self.run_control,
            concurrency=self.concurrency,
            checkpoint_every=self.checkpoint_every,
            log_every=self.log_every,
            max_failures=self.checkpoints.max_failures,
            ledger=self.ledger,
            metrics=self.metrics,
            phase=self.phase,
            **self.engine_options,
        )
        await self.engine.transfer(self.iter_units())
        if self.engine.stopped_reason and self.stopped_reason is None:
            self.stopped_reason = self.engine.stopped_reason

    def _progress_extra(self) -> Optional[str]:
        return self.engine._progress_extra() if self.engine else None

    def _report_lines(self) -> list[str]:
        lines = []
        if self.engine:
            summary = self.engine.summary
            lines.append(
                f"Succeeded: {summary.succeeded} | Skipped: {summary.skipped} | "
                f"Failed: {summary.failed} | Abandoned: {summary.abandoned}"
            )
            lines.append(f"Data transferred: {summary.bytes / (1024 * 1024 * 1024):.2f} GB")
            lines.append(f"Peak concurrent transfers: {self.engine.max_in_flight}/{self.concurrency}")
        lines.append(f"Files completed: {self.state.count('groups')}")
        if self.unreadable:
            lines.append(f"Unreadable images files: {self.unreadable}")
        return lines

    def summary(self) -> dict[str, Any]:
        summary = super().summary()
        if self.engine:
            summary["transfer"] = self.engine.get_summary()
        return summary
