"""Phase 2: collect lots for every persisted auction."""
import logging
from typing import Any, Optional

from pydantic import ValidationError

from auction_harvest.config import config
from auction_harvest.errors import ExhaustedRetries, PersistenceError
from auction_harvest.fetch.client import NOT_FOUND, ApiClient
from auction_harvest.jobs.base import PhaseRunner
from auction_harvest.jobs.windows import _as_int
from auction_harvest.models import Auction, Lot
from auction_harvest.store.url_log import ImageUrlLog, extract_lot_image_urls

logger = logging.getLogger(__name__)


class LotCollector(PhaseRunner):
    """For each auction (ascending id) page through its lots and store them.

    An auction is skipped only when the checkpoint marks it done and its lot
    manifest is on disk. This endpoint's ``total``/``total_pages`` are trusted.
    """

    phase = "lots"
    unit_label = "auctions"

    def __init__(
        self,
        api: ApiClient,
        *args: Any,
        max_pages: int = config.LOTS_MAX_PAGES,
        url_log: Optional[ImageUrlLog] = None,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.api = api
        self.max_pages = max(max_pages, 1)
        self.url_log = url_log

    async def fetch_lots(self, auction_id: str) -> list[dict]:
        """All lot dicts for one auction. Raises ExhaustedRetries."""
        all_lots: list[dict] = []
        page = 1
        while True:
            payload = await self.api.list_lots(auction_id, page)
            if payload is NOT_FOUND or not isinstance(payload, dict):
                break
            page_items = payload.get("data")
            if not isinstance(page_items, list) or not page_items:
                logger.debug(f"No more items for auction {auction_id}")
                break
            all_lots.extend(page_items)

            total = _as_int(payload.get("total"))
            if total and len(all_lots) >= total:
                logger.debug(f"Collected all {total} items for auction {auction_id}")
                break
            total_pages = _as_int(payload.get("total_pages"))
            if total_pages and page >= total_pages:
                break
            if page >= self.max_pages:
                logger.warning(
                    f"Hit safety limit of {self.max_pages} pages for auction {auction_id}. "
                    f"Collected {len(all_lots)} items."
                )
                break
            page += 1
        return all_lots

    async def _run(self) -> None:
        auctions = self.records.iter_auctions()
        self.metrics.total = len(auctions)
        logger.info(f"Found {len(auctions)} auctions to process")
        if self.url_log is not None:
            self.url_log.load()

        for index, auction in enumerate(auctions, start=1):
            if self._should_stop():
                break
            logger.debug(f"[{index}/{len(auctions)}] Auction {auction.key} - {auction.title or 'N/A'}")
            await self._process_auction(auction)
            await self._after_unit()

    async def _process_auction(self, auction: Auction) -> None:
        auction_id = auction.key
        if self.state.is_done(auction_id):
            if self.records.lots_complete(auction_id):
                self.metrics.increment("skipped")
                return
            logger.info(f"Auction {auction_id} is checkpointed but its lots are missing, refetching")

        try:
            raw_lots = await self.fetch_lots(auction_id)
        except ExhaustedRetries as e:
            await self._record_failure(auction_id, e, source="items", listing_id=auction_id)
            return

        saved_ids = []
        write_failed = False
        for raw in raw_lots:
            try:
                lot = Lot.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed lot in auction {auction_id}: {e.errors()[0]['msg']}")
                self.metrics.increment("malformed")
                continue
            try:
                self.records.save_lot(auction_id, lot)
            except PersistenceError as e:
                write_failed = True
                await self._record_failure(
                    f"{auction_id}/{lot.key}", e, parent_id=auction_id, listing_id=auction_id
                )
                continue
            saved_ids.append(lot.key)
        # A lot repeated across pages is listed once.
        saved_ids = list(dict.fromkeys(saved_ids))

        if self.url_log is not None:
            urls = [url for raw in raw_lots if isinstance(raw, dict) for url in extract_lot_image_urls(raw)]
            try:
                new_urls = await self.url_log.append(urls)
                self.metrics.increment("image_urls", new_urls)
            except OSError as e:
                logger.warning(f"Could not append image URLs for auction {auction_id}: {e}")

        self.state.increment("lots", len(saved_ids))
        self.metrics.increment("lots", len(saved_ids))
        if write_failed:
            return
        try:
            self.records.save_lots_manifest(auction_id, saved_ids)
        except PersistenceError as e:
            await self._record_failure(auction_id, e, source="manifest", listing_id=auction_id)
            return
        self.state.mark_done(auction_id)
        self.state.increment("auctions")
        self.metrics.increment("ok")
        self.run_control.record_success()
        if saved_ids:
            logger.info(f"Auction {auction_id}: {len(saved_ids)} lots")
        else:
            logger.info(f"No lots found for auction {auction_id}")

    def _progress_extra(self) -> Optional[str]:
        return f"Lots: {self.metrics.counters.get('lots', 0)}"

    def _report_lines(self) -> list[str]:
        lines = [f"Total lots collected: {self.metrics.counters.get('lots', 0)}"]
        if self.url_log is not None:
            lines.append(
                f"Image URLs seen: {self.url_log.total_seen} | "
                f"new unique: {self.metrics.counters.get('image_urls', 0)} | "
                f"log: {self.url_log.path}"
            )
        return lines
