"""Windowed traversal of the date-filtered auction search.

The search endpoint's ``total``/``perpage`` metadata undercounts, so instead
of paging through one big result set the date range is cut into windows
narrow enough that a single page holds everything in each of them.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import AsyncIterator, Iterable, Iterator, Optional, Sequence

from pydantic import ValidationError

from auction_harvest.config import config
from auction_harvest.errors import ExhaustedRetries
from auction_harvest.fetch.client import NOT_FOUND, ApiClient
from auction_harvest.models import Auction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Window:
    """Date interval ``[start, end)``; the last window of a range is closed."""

    start: date
    end: date

    @property
    def key(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"

    @property
    def label(self) -> str:
        return f"Week of {self.start:%b} {self.start.day}"


def generate_windows(start: date, end: date, chunk_days: int) -> Iterator[Window]:
    """Contiguous, non-overlapping windows exactly covering ``[start, end]``.

    A zero-length range yields a single ``[start, start]`` window so the day
    itself is still searched.
    """
    if chunk_days <= 0:
        raise ValueError("chunk_days must be positive")
    if start > end:
        raise ValueError(f"start {start} is after end {end}")
    if start == end:
        yield Window(start, end)
        return
    step = timedelta(days=chunk_days)
    current = start
    while current < end:
        window_end = min(current + step, end)
        yield Window(current, window_end)
        current = window_end


def resume_offset(windows: Sequence[Window], cursor: Optional[str]) -> int:
    """Index of the first window not fully covered by ``cursor``.

    ``cursor`` is the end date of the last completed window. Windows ending on
    or before it are done; a window straddling it is fetched again.
    """
    if not cursor:
        return 0
    cursor_date = date.fromisoformat(cursor)
    for index, window in enumerate(windows):
        if window.end > cursor_date:
            return index
    return len(windows)


def _as_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class WindowResult:
    """What one window produced."""

    window: Window
    items: list[Auction] = field(default_factory=list)
    reported: int = 0
    pages: int = 0
    malformed: int = 0
    error: Optional[str] = None

    @property
    def collected(self) -> int:
        return len(self.items)

    @property
    def matched(self) -> bool:
        return self.collected == self.reported


@dataclass
class TraversalStats:
    """Aggregate observability across windows."""

    windows: int = 0
    collected: int = 0
    reported: int = 0
    perfect: int = 0
    partial: int = 0
    failed: int = 0
    duplicates: int = 0

    def record(self, result: WindowResult) -> None:
        self.windows += 1
        self.collected += result.collected
        self.reported += result.reported
        if result.error:
            self.failed += 1
        elif result.matched:
            self.perfect += 1
        elif result.collected > 0:
            self.partial += 1

    @property
    def efficiency(self) -> float:
        """itemsCollected / itemsReported (1.0 when nothing was reported)."""
        if self.reported <= 0:
            return 1.0
        return self.collected / self.reported


class WindowTraverser:
    """Fetches windows through the API client and merges them by auction id."""

    def __init__(
        self,
        api: ApiClient,
        continuation: bool = config.WINDOW_PAGE_CONTINUATION,
        full_page_threshold: int = config.FULL_PAGE_THRESHOLD,
        max_pages: int = config.WINDOW_MAX_PAGES,
    ):
        self.api = api
        self.continuation = continuation
        self.full_page_threshold = full_page_threshold
        self.max_pages = max(max_pages, 1)
        self.stats = TraversalStats()

    def _page_looks_full(self, payload: dict, page_items: list) -> bool:
        """Heuristic for 'this window was truncated'."""
        perpage = _as_int(payload.get("perpage"))
        if perpage > 0:
            return len(page_items) >= perpage
        return len(page_items) >= self.full_page_threshold

    async def fetch_window(self, window: Window) -> WindowResult:
        """Fetch page 1 of a window (more pages only when continuation is on).

        Failures never raise: the window is returned with zero new items and
        ``error`` set, and the traversal moves on.
        """
        result = WindowResult(window)
        page = 1
        while True:
            try:
                payload = await self.api.search_auctions(window.start, window.end, page)
            except ExhaustedRetries as e:
                result.error = str(e)
                logger.error(f"Window {window.key} failed: {e}")
                break
            result.pages = page

            if payload is NOT_FOUND or not isinstance(payload, dict):
                logger.warning(f"No data for {window.label} ({window.key}), page {page}")
                break
            page_items = payload.get("data") or []
            if not isinstance(page_items, list):
                logger.warning(f"Unexpected 'data' shape for {window.key}: {type(page_items).__name__}")
                break

            if page == 1:
                result.reported = _as_int(payload.get("total"), default=len(page_items))
            for raw in page_items:
                try:
                    result.items.append(Auction.model_validate(raw))
                except ValidationError as e:
                    result.malformed += 1
                    logger.warning(f"Skipping malformed auction in {window.key}: {e.errors()[0]['msg']}")

            if not (self.continuation and page_items and self._page_looks_full(payload, page_items)):
                break
            if page >= self.max_pages:
                logger.warning(f"Window {window.key} hit the {self.max_pages} page cap")
                break
            page += 1

        if not result.error and result.collected != result.reported:
            logger.warning(
                f"{window.label} ({window.key}): collected {result.collected}, "
                f"API reported {result.reported}"
            )
        self.stats.record(result)
        return result

    def merge(self, result: WindowResult, seen: dict[str, Auction]) -> list[Auction]:
        """Merge a window into the identity map; returns first-seen auctions."""
        new_items = []
        for auction in result.items:
            if auction.key in seen:
                self.stats.duplicates += 1
                continue
            seen[auction.key] = auction
            new_items.append(auction)
        return new_items

    async def traverse(
        self, windows: Iterable[Window], seen: Optional[dict[str, Auction]] = None
    ) -> AsyncIterator[tuple[WindowResult, list[Auction]]]:
        """Yield ``(result, new_auctions)`` per window, lazily."""
        seen = {} if seen is None else seen
        for window in windows:
            result = await self.fetch_window(window)
            yield result, self.merge(result, seen)

    async def collect(self, windows: Iterable[Window]) -> dict[str, Auction]:
        """Traverse every window and return the deduplicated auction map."""
        seen: dict[str, Auction] = {}
        async for _result, _new in self.traverse(windows, seen):
            pass
        return seen
