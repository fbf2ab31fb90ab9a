"""Phase 3: fetch the images sub-resource for every persisted lot."""
import logging
from typing import Any

from auction_harvest.errors import ExhaustedRetries, PersistenceError
from auction_harvest.fetch.client import NOT_FOUND, ApiClient
from auction_harvest.jobs.base import PhaseRunner
from auction_harvest.models import utcnow_iso
from auction_harvest.store.records import LotFile

logger = logging.getLogger(__name__)


class ImageCollector(PhaseRunner):
    """Scans the lot tree (not an in-memory list) and fetches each lot's images.

    The checkpoint is the authority on what is done; an existing images file
    is the fast path checked first. A 404 or a failed fetch still writes a
    zero-item file so the lot is not refetched forever.
    """

    phase = "images"
    unit_label = "lots"

    def __init__(self, api: ApiClient, *args: Any, refetch_missing: bool = False, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.api = api
        self.refetch_missing = refetch_missing

    async def _run(self) -> None:
        lot_files = list(self.records.iter_lot_files())
        self.metrics.total = len(lot_files)
        logger.info(f"Found {len(lot_files)} lot files to process")

        for lot_file in lot_files:
            if self._should_stop():
                break
            await self._process_lot(lot_file)
            await self._after_unit()

    async def _process_lot(self, lot_file: LotFile) -> None:
        key = f"{lot_file.auction_id}/{lot_file.lot_id}"

        if lot_file.images_path.exists():
            self.state.processed_keys.add(key)
            self.metrics.increment("skipped")
            return
        if self.state.is_done(key):
            if not self.refetch_missing:
                logger.warning(f"Checkpoint marks lot {key} done but {lot_file.images_path.name} is missing")
                self.metrics.increment("skipped")
                return
            logger.info(f"Refetching images for lot {key}: file missing")

        error = None
        try:
            payload = await self.api.fetch_lot_images(lot_file.auction_id, lot_file.lot_id)
        except ExhaustedRetries as e:
            payload = None
            error = str(e)

        if payload is NOT_FOUND:
            output: dict[str, Any] = {"result": "not_found", "data": []}
        elif isinstance(payload, dict):
            output = dict(payload)
            images = output.get("data")
            output["data"] = images if isinstance(images, list) else []
            output.setdefault("result", "success")
        else:
            if error is None:
                error = f"Unexpected images payload: {type(payload).__name__}"
            output = {"result": "error", "data": [], "error": error}

        output.update(
            {
                "lotId": lot_file.lot_id,
                "auctionId": lot_file.auction_id,
                "collectedAt": utcnow_iso(),
            }
        )

        try:
            self.records.save_lot_images(lot_file, output)
        except PersistenceError as e:
            await self._record_failure(key, e, parent_id=lot_file.lot_id, listing_id=lot_file.auction_id)
            return

        self.state.mark_done(key)
        image_count = len(output["data"])
        self.state.increment("images", image_count)
        self.metrics.increment("images", image_count)
        if error:
            await self._record_failure(
                key, error, source="images", parent_id=lot_file.lot_id, listing_id=lot_file.auction_id
            )
        else:
            self.metrics.increment("ok")
            self.run_control.record_success()

    def _progress_extra(self) -> str:
        return f"Images: {self.metrics.counters.get('images', 0)}"

    def _report_lines(self) -> list[str]:
        images = self.metrics.counters.get("images", 0)
        ok = self.metrics.counters.get("ok", 0)
        lines = [f"Total images collected: {images}"]
        if ok:
            lines.append(f"Average images per lot: {images / ok:.1f}")
        return lines
