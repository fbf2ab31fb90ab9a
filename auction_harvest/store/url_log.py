"""Append-only log of image URLs seen while collecting lots.

Best-effort side channel: the images phase is the authoritative source.
"""
import logging
from pathlib import Path
from typing import Iterable, Optional

import aiofiles

from auction_harvest.config import config

logger = logging.getLogger(__name__)


class ImageUrlLog:
    """Deduplicated, newline-delimited URL file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or config.DATA_DIR / "lot-images.txt")
        self._seen: set[str] = set()
        self.total_seen = 0

    def load(self) -> int:
        """Read existing URLs for deduplication; returns how many were loaded."""
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                self._seen = {line.strip() for line in f if line.strip()}
            logger.info(f"Loaded {len(self._seen)} existing image URLs from {self.path}")
        return len(self._seen)

    async def append(self, urls: Iterable[str]) -> int:
        """Append URLs not seen before; returns the number written."""
        new_urls = []
        for url in urls:
            self.total_seen += 1
            if url and url not in self._seen:
                self._seen.add(url)
                new_urls.append(url)
        if not new_urls:
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
            await f.write("".join(f"{url}\n" for url in new_urls))
        return len(new_urls)


def extract_lot_image_urls(lot: dict) -> list[str]:
    """Pull any image-like URLs embedded in a lot record."""
    urls = []
    for field in ("thumb_url", "image_url", "large_image_url"):
        value = lot.get(field)
        if isinstance(value, str) and value:
            urls.append(value)
    for field in ("images", "gallery"):
        entries = lot.get(field)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, str) and entry:
                urls.append(entry)
            elif isinstance(entry, dict) and isinstance(entry.get("url"), str):
                urls.append(entry["url"])
    return urls
