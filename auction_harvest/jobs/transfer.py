"""Bounded-concurrency copy of lot images into the object store."""
import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence
from urllib.parse import urlparse

import httpx

from auction_harvest.config import config
from auction_harvest.errors import (
    NotFound,
    PersistenceError,
    StoreError,
    TransientNetworkError,
    UpstreamHTTPError,
)
from auction_harvest.fetch.retry import build_retrying
from auction_harvest.jobs.metrics import Metrics
from auction_harvest.jobs.run_control import RunControl
from auction_harvest.models import FailureRecord, LotImages, TransferUnit
from auction_harvest.store.checkpoint import CheckpointState, CheckpointStore
from auction_harvest.store.failures import FailureLedger
from auction_harvest.store.object_store import ObjectStore

logger = logging.getLogger(__name__)

SOURCE_PREFIX = "/auctionimages/"

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"


def destination_key(url: str, prefix: str = config.S3_KEY_PREFIX) -> str:
    """Map a source image URL to its object key.

    ``https://host/auctionimages/123/photo.jpg`` -> ``{prefix}123/photo.jpg``;
    any other URL keeps its path without the leading slash.
    """
    path = urlparse(url).path
    index = path.find(SOURCE_PREFIX)
    if index != -1:
        return f"{prefix}{path[index + len(SOURCE_PREFIX):]}"
    return path.lstrip("/")


def units_from_images_record(
    record: dict, group: Optional[str] = None, prefix: str = config.S3_KEY_PREFIX
) -> list[TransferUnit]:
    """Full-size and thumbnail units for every image in a lot images record."""
    images = LotImages.model_validate(record)
    lot_id = str(images.lot_id) if images.lot_id is not None else None
    auction_id = str(images.auction_id) if images.auction_id is not None else None
    units = []
    seen = set()
    for entry in images.data:
        for kind, url in (("full", entry.image_url), ("thumb", entry.thumb_url)):
            if not url:
                continue
            key = destination_key(url, prefix)
            if not key or key in seen:
                continue
            seen.add(key)
            units.append(
                TransferUnit(
                    source_url=url,
                    destination_key=key,
                    lot_id=lot_id,
                    auction_id=auction_id,
                    kind=kind,
                    group=group,
                )
            )
    return units


@dataclass
class TransferSummary:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    bytes: int = 0
    abandoned: int = 0

    @property
    def terminal(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class UnitOutcome:
    unit: TransferUnit
    status: str
    nbytes: int = 0
    error: Optional[str] = None
    attempts: int = 0


class TransferEngine:
    """Copies units from an HTTP source to an ObjectStore, at most ``concurrency`` at a time.

    Tasks only perform I/O and return an outcome; every counter and checkpoint
    update happens in the scheduling loop, so each unit is counted exactly once
    whatever order completions arrive in.
    """

    def __init__(
        self,
        store: ObjectStore,
        source: httpx.AsyncClient,
        state: CheckpointState,
        checkpoints: Optional[CheckpointStore] = None,
        run_control: Optional[RunControl] = None,
        concurrency: int = config.CONCURRENT_UPLOADS,
        max_retries: int = config.MAX_UPLOAD_RETRIES,
        backoff: Sequence[float] = config.UPLOAD_RETRY_BACKOFF,
        download_timeout: float = config.DOWNLOAD_TIMEOUT,
        checkpoint_every: int = config.CHECKPOINT_EVERY_N_IMAGES,
        log_every: int = config.LOG_EVERY_N_IMAGES,
        drain_timeout: float = config.DRAIN_TIMEOUT,
        max_failures: int = config.MAX_FAILURES,
        ledger: Optional[FailureLedger] = None,
        metrics: Optional[Metrics] = None,
        phase: str = "migration",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.store = store
        self.source = source
        self.state = state
        self.checkpoints = checkpoints
        self.run_control = run_control or RunControl()
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.backoff = tuple(backoff)
        self.download_timeout = download_timeout
        self.checkpoint_every = max(checkpoint_every, 1)
        self.log_every = max(log_every, 1)
        self.drain_timeout = drain_timeout
        self.max_failures = max_failures
        self.ledger = ledger
        self.metrics = metrics or Metrics(0, "images")
        self.phase = phase
        self.sleep = sleep

        self.summary = TransferSummary()
        self.in_flight = 0
        self.max_in_flight = 0
        self.stopped_reason: Optional[str] = None
        self._since_save = 0
        self._group_pending: dict[str, int] = {}
        self._group_sealed: set[str] = set()

    async def transfer(self, units: Iterable[TransferUnit]) -> TransferSummary:
        """Transfer ``units`` and return the cumulative summary."""
        pending: set[asyncio.Task] = set()
        iterator = iter(units)
        current_group: Optional[str] = None
        accepting = True
        try:
            while True:
                while accepting and len(pending) < self.concurrency:
                    if self._should_stop():
                        accepting = False
                        break
                    unit = next(iterator, None)
                    if unit is None:
                        accepting = False
                        await self._seal_group(current_group)
                        break
                    if unit.group != current_group:
                        await self._seal_group(current_group)
                        current_group = unit.group
                    if unit.group is not None:
                        self._group_pending[unit.group] = self._group_pending.get(unit.group, 0) + 1
                    if unit.destination_key in self.state.completed_units:
                        await self._settle(UnitOutcome(unit, SKIPPED))
                        continue
                    pending.add(asyncio.create_task(self._run_unit(unit)))

                if not pending:
                    break
                if self._should_stop():
                    await self._drain(pending)
                    pending = set()
                    break
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    await self._settle(task.result())
        finally:
            for task in pending:
                task.cancel()
            await self._save_checkpoint()
        return self.summary

    def _should_stop(self) -> bool:
        stop, reason = self.run_control.should_stop()
        if stop and self.stopped_reason is None:
            self.stopped_reason = reason
            logger.warning(f"Stopping transfers: {reason}. No new units will be started")
        return stop

    async def _drain(self, pending: set[asyncio.Task]) -> None:
        """Let in-flight units finish for up to ``drain_timeout``, then abandon the rest."""
        logger.info(f"Waiting up to {self.drain_timeout}s for {len(pending)} in-flight transfers")
        done, still_running = await asyncio.wait(pending, timeout=self.drain_timeout)
        for task in done:
            await self._settle(task.result())
        if still_running:
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
            self.summary.abandoned += len(still_running)
            logger.warning(f"Abandoned {len(still_running)} in-flight transfers after drain timeout")

    async def _run_unit(self, unit: TransferUnit) -> UnitOutcome:
        """Existence check, fetch and store with retries. Never raises."""
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        attempts = 0
        try:
            retrying = build_retrying(
                self.max_retries,
                self.backoff,
                f"transfer {unit.source_url}",
                sleep=self.sleep,
                retry_on=(TransientNetworkError, StoreError),
            )
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    return await self._copy(unit, attempts)
        except NotFound as e:
            return UnitOutcome(unit, FAILED, error=str(e), attempts=attempts)
        except (TransientNetworkError, StoreError) as e:
            return UnitOutcome(unit, FAILED, error=f"Failed after {attempts} attempts: {e}", attempts=attempts)
        except Exception as e:
            logger.exception(f"Unexpected error transferring {unit.source_url}")
            return UnitOutcome(unit, FAILED, error=f"{type(e).__name__}: {e}", attempts=attempts)
        finally:
            self.in_flight -= 1

    async def _copy(self, unit: TransferUnit, attempt: int) -> UnitOutcome:
        if await self.store.exists(unit.destination_key):
            return UnitOutcome(unit, SKIPPED, attempts=attempt)
        try:
            async with self.source.stream("GET", unit.source_url, timeout=self.download_timeout) as response:
                if response.status_code == 404:
                    raise NotFound(unit.source_url)
                if response.status_code >= 400:
                    raise UpstreamHTTPError(response.status_code, unit.source_url)
                content_type = response.headers.get("content-type", "application/octet-stream")
                length = response.headers.get("content-length")
                content_length = None
                if length and length.isdigit() and "content-encoding" not in response.headers:
                    content_length = int(length)
                nbytes = await self.store.put_stream(
                    unit.destination_key, response.aiter_bytes(), content_type, content_length
                )
        except httpx.RequestError as e:
            raise TransientNetworkError(f"{type(e).__name__} fetching {unit.source_url}: {e}") from e
        return UnitOutcome(unit, SUCCEEDED, nbytes=nbytes, attempts=attempt)

    async def _settle(self, outcome: UnitOutcome) -> None:
        """Apply one terminal outcome to the summary, checkpoint and metrics."""
        unit = outcome.unit
        if outcome.status == SUCCEEDED:
            self.summary.succeeded += 1
            self.summary.bytes += outcome.nbytes
            self.state.completed_units.add(unit.destination_key)
            self.state.increment("bytes", outcome.nbytes)
            self.metrics.increment("ok")
            self.metrics.increment("bytes", outcome.nbytes)
            self.run_control.record_success()
            logger.debug(f"Stored {unit.destination_key} ({outcome.nbytes} bytes)")
        elif outcome.status == SKIPPED:
            self.summary.skipped += 1
            self.state.completed_units.add(unit.destination_key)
            self.metrics.increment("skipped")
        else:
            self.summary.failed += 1
            self.metrics.increment("failed")
            await self._record_failure(outcome)
        self.state.increment(outcome.status)
        self.metrics.increment("processed")

        if unit.group is not None:
            self._group_pending[unit.group] -= 1
            await self._maybe_complete_group(unit.group)

        self._since_save += 1
        if self._since_save >= self.checkpoint_every:
            await self._save_checkpoint()
        if self.metrics.processed % self.log_every == 0:
            self.metrics.report(self._progress_extra())

    async def _record_failure(self, outcome: UnitOutcome) -> None:
        unit = outcome.unit
        failure = FailureRecord(
            key=unit.destination_key,
            error=outcome.error or "unknown error",
            source=unit.source_url,
            parent_id=unit.lot_id,
            listing_id=unit.auction_id,
        )
        logger.error(f"Transfer failed {unit.source_url} -> {unit.destination_key}: {failure.error}")
        self.state.record_failure(failure, self.max_failures)
        self.run_control.record_error()
        if self.ledger:
            await self.ledger.record(self.phase, failure)

    async def _seal_group(self, group: Optional[str]) -> None:
        """No more units of ``group`` will be admitted."""
        if group is None:
            return
        self._group_sealed.add(group)
        self._group_pending.setdefault(group, 0)
        await self._maybe_complete_group(group)

    async def _maybe_complete_group(self, group: str) -> None:
        if group in self._group_sealed and self._group_pending.get(group) == 0:
            self._group_sealed.discard(group)
            del self._group_pending[group]
            self.state.mark_done(group)
            self.state.increment("groups")

    async def _save_checkpoint(self) -> None:
        if not self.checkpoints:
            return
        try:
            await self.checkpoints.save(self.state)
            self._since_save = 0
        except PersistenceError as e:
            logger.error(str(e))
            self.metrics.increment("checkpoint_errors")

    def _progress_extra(self) -> str:
        return f"Bytes: {self.summary.bytes / (1024 * 1024):.1f} MiB | In flight: {self.in_flight}"

    def get_summary(self) -> dict[str, Any]:
        summary = self.summary.as_dict()
        summary["max_in_flight"] = self.max_in_flight
        summary["stopped"] = self.stopped_reason
        return summary
