"""Shared fixtures: fake upstream API, in-memory object store."""
import asyncio
from typing import Optional

import httpx
import pytest

from auction_harvest.errors import StoreError
from auction_harvest.fetch.client import ApiClient

API_BASE = "https://api.test"


async def no_sleep(seconds: float) -> None:
    return None


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeObjectStore:
    """In-memory ObjectStore that tracks concurrent uploads."""

    def __init__(self, existing=(), delay: float = 0.0, fail_puts: int = 0):
        self.objects: dict[str, bytes] = {key: b"" for key in existing}
        self.content_types: dict[str, str] = {}
        self.delay = delay
        self.fail_puts = fail_puts
        self.exists_calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.after_put = None

    async def exists(self, key: str) -> bool:
        self.exists_calls.append(key)
        return key in self.objects

    async def put_stream(self, key, chunks, content_type, content_length: Optional[int] = None) -> int:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.fail_puts:
                self.fail_puts -= 1
                raise StoreError(f"simulated upload failure for {key}")
            body = bytearray()
            async for chunk in chunks:
                body.extend(chunk)
            await asyncio.sleep(self.delay)
            self.objects[key] = bytes(body)
            self.content_types[key] = content_type
        finally:
            self.active -= 1
        if self.after_put:
            self.after_put(key)
        return len(body)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def make_api():
    """Build an ApiClient whose requests go to ``handler`` instead of the network."""

    def _make(handler, **kwargs) -> ApiClient:
        kwargs.setdefault("request_delay", 0)
        kwargs.setdefault("sleep", no_sleep)
        return ApiClient(base_url=API_BASE, transport=httpx.MockTransport(handler), **kwargs)

    return _make


@pytest.fixture
def fake_store():
    return FakeObjectStore()


@pytest.fixture
def store_factory():
    return FakeObjectStore
