"""Hierarchical JSON record tree for auctions, lots and lot images."""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

import orjson
from pydantic import ValidationError

from auction_harvest.config import config
from auction_harvest.errors import PersistenceError
from auction_harvest.models import Auction, Identifier, Lot, utcnow_iso

logger = logging.getLogger(__name__)

IMAGES_SUFFIX = "_images.json"
MANIFEST_NAME = "manifest.json"


def id_sort_key(value: str) -> tuple[int, int, str]:
    """Numeric ids sort numerically, anything else after them lexically."""
    if value.isdigit():
        return (0, int(value), "")
    return (1, 0, value)


@dataclass(frozen=True)
class LotFile:
    """A persisted lot record located by scanning the tree."""

    auction_id: str
    lot_id: str
    path: Path

    @property
    def images_path(self) -> Path:
        return self.path.with_name(f"lot_{self.lot_id}{IMAGES_SUFFIX}")


class RecordStore:
    """Owns the on-disk layout of every domain record."""

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir or config.DATA_DIR)
        self.auctions_dir = self.data_dir / "auctions"
        self.lots_dir = self.data_dir / "lots"

    # -- generic -----------------------------------------------------------

    def write_json(self, path: Path, data: Any) -> None:
        """Write one record file; a reader never sees a half-written file."""
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2))
            os.replace(tmp_path, path)
        except (OSError, TypeError) as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    def read_json(self, path: Path) -> Any:
        try:
            return orjson.loads(path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e

    # -- auctions ----------------------------------------------------------

    def auction_path(self, auction: Auction) -> Path:
        return self.auctions_dir / auction.date_bucket / f"auction_{auction.key}.json"

    def find_auction_files(self, auction_id: Identifier) -> list[Path]:
        if not self.auctions_dir.exists():
            return []
        return sorted(self.auctions_dir.glob(f"*/auction_{auction_id}.json"))

    def auction_exists(self, auction_id: Identifier) -> bool:
        return bool(self.find_auction_files(auction_id))

    def save_auction(self, auction: Auction) -> Path:
        path = self.auction_path(auction)
        self.write_json(path, auction.to_storage())
        logger.debug(f"Saved auction {auction.key} to {path}")
        return path

    def iter_auctions(self) -> list[Auction]:
        """All persisted auctions in ascending id order."""
        auctions: dict[str, Auction] = {}
        if not self.auctions_dir.exists():
            return []
        for path in self.auctions_dir.glob("*/auction_*.json"):
            if path.name.startswith("."):
                continue
            try:
                auction = Auction.model_validate(self.read_json(path))
            except (PersistenceError, ValidationError) as e:
                logger.warning(f"Skipping unreadable auction file {path}: {e}")
                continue
            auctions[auction.key] = auction
        return [auctions[key] for key in sorted(auctions, key=id_sort_key)]

    # -- lots --------------------------------------------------------------

    def lot_dir(self, auction_id: Identifier) -> Path:
        return self.lots_dir / str(auction_id)

    def lot_path(self, auction_id: Identifier, lot_id: Identifier) -> Path:
        return self.lot_dir(auction_id) / f"lot_{lot_id}.json"

    def save_lot(self, auction_id: Identifier, lot: Lot) -> Path:
        path = self.lot_path(auction_id, lot.key)
        data = lot.to_storage()
        data.setdefault("auction_id", auction_id)
        self.write_json(path, data)
        return path

    def save_lots_manifest(self, auction_id: Identifier, lot_ids: list[str]) -> Path:
        """Mark the auction's lot listing as fully collected."""
        path = self.lot_dir(auction_id) / MANIFEST_NAME
        self.write_json(
            path,
            {
                "auctionId": str(auction_id),
                "lotCount": len(lot_ids),
                "lotIds": lot_ids,
                "collectedAt": utcnow_iso(),
            },
        )
        return path

    def lots_complete(self, auction_id: Identifier) -> bool:
        return (self.lot_dir(auction_id) / MANIFEST_NAME).exists()

    def iter_lot_files(self) -> Iterator[LotFile]:
        """Scan the tree for lot records, ordered by auction id then lot id."""
        if not self.lots_dir.exists():
            return
        auction_dirs = [p for p in self.lots_dir.iterdir() if p.is_dir()]
        for auction_dir in sorted(auction_dirs, key=lambda p: id_sort_key(p.name)):
            lot_files = []
            for path in auction_dir.glob("lot_*.json"):
                if path.name.endswith(IMAGES_SUFFIX):
                    continue
                lot_files.append(LotFile(auction_dir.name, path.stem[len("lot_"):], path))
            yield from sorted(lot_files, key=lambda f: id_sort_key(f.lot_id))

    # -- lot images --------------------------------------------------------

    def save_lot_images(self, lot_file: LotFile, payload: dict[str, Any]) -> Path:
        self.write_json(lot_file.images_path, payload)
        return lot_file.images_path

    def iter_images_files(self) -> Iterator[Path]:
        """All lot image records, in deterministic order."""
        if not self.lots_dir.exists():
            return
        auction_dirs = [p for p in self.lots_dir.iterdir() if p.is_dir()]
        for auction_dir in sorted(auction_dirs, key=lambda p: id_sort_key(p.name)):
            files = auction_dir.glob(f"lot_*{IMAGES_SUFFIX}")
            yield from sorted(
                files, key=lambda p: id_sort_key(p.name[len("lot_"):-len(IMAGES_SUFFIX)])
            )

    def relative(self, path: Path) -> str:
        """Stable identifier for a file, independent of the data dir location."""
        try:
            return path.relative_to(self.data_dir).as_posix()
        except ValueError:
            return path.as_posix()
