"""Phase 1: collect auctions window by window."""
import logging
from collections import Counter
from contextlib import aclosing
from datetime import date
from typing import Any, Optional

from auction_harvest.config import config
from auction_harvest.errors import PersistenceError
from auction_harvest.fetch.client import ApiClient
from auction_harvest.jobs.base import PhaseRunner
from auction_harvest.jobs.windows import (
    Window,
    WindowResult,
    WindowTraverser,
    generate_windows,
    resume_offset,
)
from auction_harvest.models import Auction

logger = logging.getLogger(__name__)

FAILED_WINDOWS = "failed_windows"


class AuctionCollector(PhaseRunner):
    """Walks the windows in order and persists each auction once.

    Resume cursor: end date of the last completed window. Windows that failed
    after retries are remembered and fetched again on the next run.
    """

    phase = "auctions"
    unit_label = "windows"

    def __init__(
        self,
        api: ApiClient,
        *args: Any,
        start: Optional[date] = None,
        end: Optional[date] = None,
        chunk_days: int = config.CHUNK_DAYS,
        traverser: Optional[WindowTraverser] = None,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.api = api
        self.start = start or config.start_date()
        self.end = end or config.end_date()
        self.chunk_days = chunk_days
        self.traverser = traverser or WindowTraverser(api)
        self.auctions: dict[str, Auction] = {}

    def plan(self) -> list[Window]:
        """Windows still to fetch: previously failed ones, then the rest."""
        windows = list(generate_windows(self.start, self.end, self.chunk_days))
        offset = resume_offset(windows, self.state.last_processed_key)
        failed = set(self.state.extra.get(FAILED_WINDOWS, []))
        retry = [w for w in windows[:offset] if w.key in failed]
        self.metrics.total = len(windows)
        self.metrics.increment("skipped", offset - len(retry))
        self.metrics.increment("processed", offset - len(retry))
        if offset:
            logger.info(
                f"Resuming after {self.state.last_processed_key}: {offset} windows done, "
                f"{len(retry)} failed windows to retry"
            )
        return retry + windows[offset:]

    async def _run(self) -> None:
        todo = self.plan()
        logger.info(
            f"Date range {self.start}..{self.end} in {self.chunk_days}-day windows: "
            f"{len(todo)} to fetch"
        )
        if self._should_stop():
            return
        async with aclosing(self.traverser.traverse(todo, self.auctions)) as stream:
            async for result, new_auctions in stream:
                await self._store_window(result, new_auctions)
                await self._after_unit()
                if self._should_stop():
                    break

    async def _store_window(self, result: WindowResult, new_auctions: list[Auction]) -> None:
        window = result.window
        failed = set(self.state.extra.get(FAILED_WINDOWS, []))

        saved = 0
        for auction in new_auctions:
            if self.records.auction_exists(auction.key):
                self.metrics.increment("auctions_existing")
                continue
            try:
                self.records.save_auction(auction)
            except PersistenceError as e:
                await self._record_failure(auction.key, e, source=window.key)
                continue
            saved += 1
            self.state.increment("auctions")
        self.metrics.increment("auctions_saved", saved)

        if result.error:
            failed.add(window.key)
            await self._record_failure(window.key, result.error, source="search")
        else:
            failed.discard(window.key)
            self.metrics.increment("ok")
            self.run_control.record_success()
        self.state.extra[FAILED_WINDOWS] = sorted(failed)
        self.state.processed_keys.add(window.key)
        if self.state.last_processed_key is None or window.end.isoformat() > self.state.last_processed_key:
            self.state.last_processed_key = window.end.isoformat()
        self.state.increment("windows")

        logger.info(
            f"{window.label} ({window.key}): found {result.collected} | "
            f"API reported {result.reported} | new {len(new_auctions)} | saved {saved} | "
            f"total unique {len(self.auctions)}"
        )

    def _report_lines(self) -> list[str]:
        stats = self.traverser.stats
        lines = [
            f"Windows fetched: {stats.windows} (perfect {stats.perfect}, partial {stats.partial}, failed {stats.failed})",
            f"Unique auctions this run: {len(self.auctions)} "
            f"(saved {self.metrics.counters.get('auctions_saved', 0)}, "
            f"already on disk {self.metrics.counters.get('auctions_existing', 0)}, "
            f"duplicates across windows {stats.duplicates})",
            f"Items collected/reported: {stats.collected}/{stats.reported} "
            f"(efficiency {stats.efficiency * 100:.1f}%)",
        ]
        statuses = Counter(
            "unknown" if a.status in (None, "") else str(a.status) for a in self.auctions.values()
        )
        for status, count in statuses.most_common():
            lines.append(f"  status {status}: {count}")
        return lines
