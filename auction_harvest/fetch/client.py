"""HTTP client with rate limiting, retries and status-aware handling."""
import asyncio
import logging
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

import httpx

from auction_harvest.config import config
from auction_harvest.errors import (
    ExhaustedRetries,
    RateLimited,
    TransientNetworkError,
    UpstreamHTTPError,
)
from auction_harvest.fetch.endpoints import (
    get_auction_items_url,
    get_auctions_url,
    get_lot_images_url,
)
from auction_harvest.fetch.rate_limit import RateLimiter
from auction_harvest.fetch.retry import build_retrying
from auction_harvest.models import Identifier

logger = logging.getLogger(__name__)


class _NotFoundResult:
    """Sentinel for a 404: the upstream legitimately has nothing here."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = _NotFoundResult()

JSONResult = Union[dict[str, Any], list[Any], _NotFoundResult]


def parse_retry_after(value: Optional[str], default: float) -> float:
    """Parse a Retry-After header given as seconds or an HTTP date."""
    if not value:
        return default
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class RequestExecutor:
    """Executes one logical request with spacing, retries and backoff.

    - 404 returns ``NOT_FOUND`` (not an error)
    - 429 sleeps for Retry-After and retries without using an attempt, up to
      ``max_rate_limit_waits`` times in a row
    - 5xx, other non-2xx, network errors and bad JSON are retried with the
      configured backoff; when exhausted ``ExhaustedRetries`` is raised
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        rate_limiter: Optional[RateLimiter] = None,
        max_retries: int = config.MAX_RETRIES,
        backoff: Sequence[float] = config.RETRY_BACKOFF,
        retry_after_default: float = config.RETRY_AFTER_DEFAULT,
        max_rate_limit_waits: int = config.MAX_RATE_LIMIT_WAITS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.rate_limiter = rate_limiter or RateLimiter(config.REQUEST_DELAY, sleep=sleep)
        self.max_retries = max_retries
        self.backoff = tuple(backoff)
        self.retry_after_default = retry_after_default
        self.max_rate_limit_waits = max_rate_limit_waits
        self._sleep = sleep
        self.request_count = 0
        self.rate_limited_count = 0
        self.failed_count = 0

    async def execute(
        self,
        method: str,
        url: str,
        data: Optional[dict[str, str]] = None,
        description: Optional[str] = None,
    ) -> JSONResult:
        """Run the request to completion or raise ExhaustedRetries."""
        description = description or f"{method} {url}"
        retrying = build_retrying(self.max_retries, self.backoff, description, sleep=self._sleep)
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._attempt(method, url, data, description)
        except TransientNetworkError as e:
            self.failed_count += 1
            attempts = retrying.statistics.get("attempt_number", self.max_retries + 1)
            logger.error(f"Failed after {attempts} attempts: {description}: {e}")
            raise ExhaustedRetries(description, attempts, e) from e

    async def _attempt(
        self,
        method: str,
        url: str,
        data: Optional[dict[str, str]],
        description: str,
    ) -> JSONResult:
        """One counted attempt; 429 waits loop here without consuming attempts."""
        rate_limit_waits = 0
        while True:
            await self.rate_limiter.acquire()
            self.request_count += 1
            logger.debug(f"{description} (request #{self.request_count})")
            try:
                response = await self.client.request(method, url, data=data)
            except httpx.RequestError as e:
                raise TransientNetworkError(f"Network error for {url}: {e!r}") from e

            if response.status_code == 404:
                logger.warning(f"404 Not Found: {description}")
                return NOT_FOUND

            if response.status_code == 429:
                retry_after = parse_retry_after(
                    response.headers.get("retry-after"), self.retry_after_default
                )
                self.rate_limited_count += 1
                rate_limit_waits += 1
                if rate_limit_waits > self.max_rate_limit_waits:
                    raise RateLimited(url, retry_after)
                logger.warning(f"Rate limited (429). Waiting {retry_after:.0f}s: {description}")
                await self._sleep(retry_after)
                continue

            if not response.is_success:
                raise UpstreamHTTPError(response.status_code, url)

            try:
                return response.json()
            except ValueError as e:
                raise TransientNetworkError(f"Invalid JSON from {url}: {e}") from e


class ApiClient:
    """Auction API client sharing one executor (and one rate-limit clock)."""

    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        request_delay: float = config.REQUEST_DELAY,
        timeout: float = config.TIMEOUT,
        past_sales: bool = config.PAST_SALES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **executor_kwargs: Any,
    ):
        self.base_url = base_url.rstrip("/")
        self.past_sales = past_sales
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=limits,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self.rate_limiter = RateLimiter(request_delay, sleep=sleep)
        self.executor = RequestExecutor(
            self.client, rate_limiter=self.rate_limiter, sleep=sleep, **executor_kwargs
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def search_auctions(self, start: date, end: date, page: int = 1) -> JSONResult:
        """One page of the date-filtered auction search."""
        form = {
            "filters[startDate]": start.isoformat(),
            "filters[endDate]": end.isoformat(),
            "filters[or_closed]": "true",
            "past_sales": "true" if self.past_sales else "false",
            "meta_also": "true",
            "page": str(page),
        }
        return await self.executor.execute(
            "POST",
            get_auctions_url(self.base_url),
            data=form,
            description=f"Fetching auctions {start}..{end} (page {page})",
        )

    async def list_lots(self, auction_id: Identifier, page: int = 1) -> JSONResult:
        """One page of lots for an auction."""
        return await self.executor.execute(
            "POST",
            get_auction_items_url(auction_id, self.base_url),
            data={"page": str(page)},
            description=f"Fetching items for auction {auction_id} (page {page})",
        )

    async def fetch_lot_images(self, auction_id: Identifier, lot_id: Identifier) -> JSONResult:
        """Image sub-resource for one lot; 404 means the lot has no images."""
        return await self.executor.execute(
            "GET",
            get_lot_images_url(auction_id, lot_id, self.base_url),
            description=f"Fetching images for lot {lot_id} (auction {auction_id})",
        )
