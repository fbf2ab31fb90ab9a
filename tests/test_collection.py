"""End-to-end tests of the three collection phases and their resume behaviour."""
import asyncio
import re
from datetime import date
from urllib.parse import parse_qs

import httpx
import orjson
import pytest

from auction_harvest.jobs.auctions import AuctionCollector
from auction_harvest.jobs.images import ImageCollector
from auction_harvest.jobs.lots import LotCollector
from auction_harvest.jobs.run_control import RunControl
from auction_harvest.models import Auction, Lot
from auction_harvest.store.checkpoint import checkpoint_for
from auction_harvest.store.records import RecordStore
from auction_harvest.store.url_log import ImageUrlLog

AUCTIONS = {
    "2024-10-07": [
        {"id": 101, "title": "Tools", "starts": "2024-10-08T10:00:00", "status": "closed"},
        {"id": 102, "title": "Boats", "status": "closed"},
    ],
    "2024-10-14": [
        {"id": 102, "title": "Boats", "status": "closed"},
        {"id": 103, "title": "Cars", "startTimestamp": 1729000000, "status": "open"},
    ],
}
LOTS = {
    "101": [
        {"id": 1, "title": "Drill", "images": ["https://img.test/drill.jpg"]},
        {"id": 2, "title": "Saw"},
    ],
    "102": [],
    "103": [{"id": 3, "title": "Sedan", "thumb_url": "https://img.test/sedan.jpg"}],
}
IMAGES = {
    ("101", "1"): {
        "result": "success",
        "data": [
            {
                "image_url": "https://cdn.test/auctionimages/101/1/full.jpg",
                "thumb_url": "https://cdn.test/auctionimages/101/1/thumb.jpg",
            }
        ],
    },
    ("103", "3"): {"result": "success", "data": [{"image_url": "https://cdn.test/auctionimages/103/3/a.jpg"}]},
}


class Upstream:
    """Fake auction API."""

    def __init__(self):
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        if path == "/auctions":
            form = parse_qs(request.content.decode())
            items = AUCTIONS.get(form["filters[startDate]"][0], [])
            return httpx.Response(200, json={"data": items, "total": len(items)})
        match = re.fullmatch(r"/auctions/(\w+)/items", path)
        if match:
            lots = LOTS.get(match.group(1), [])
            return httpx.Response(200, json={"data": lots, "total": len(lots), "total_pages": 1})
        match = re.fullmatch(r"/auctions/(\w+)/items/(\w+)/images", path)
        if match and match.groups() in IMAGES:
            return httpx.Response(200, json=IMAGES[match.groups()])
        return httpx.Response(404)


class CountingRecordStore(RecordStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.writes = 0

    def write_json(self, path, data):
        self.writes += 1
        super().write_json(path, data)


@pytest.fixture
def upstream():
    return Upstream()


def run_auctions(make_api, upstream, records, tmp_path, run_control=None):
    async def run():
        async with make_api(upstream) as api:
            collector = AuctionCollector(
                api,
                records,
                checkpoint_for("auctions", tmp_path / "checkpoints"),
                run_control=run_control,
                start=date(2024, 10, 7),
                end=date(2024, 10, 21),
                chunk_days=7,
            )
            return await collector.run()

    return asyncio.run(run())


def run_lots(make_api, upstream, records, tmp_path):
    async def run():
        async with make_api(upstream) as api:
            collector = LotCollector(
                api,
                records,
                checkpoint_for("lots", tmp_path / "checkpoints"),
                url_log=ImageUrlLog(tmp_path / "lot-images.txt"),
            )
            return await collector.run()

    return asyncio.run(run())


def run_images(make_api, upstream, records, tmp_path, **kwargs):
    async def run():
        async with make_api(upstream) as api:
            collector = ImageCollector(api, records, checkpoint_for("images", tmp_path / "checkpoints"), **kwargs)
            return await collector.run()

    return asyncio.run(run())


def test_auction_phase_persists_each_auction_once(make_api, upstream, tmp_path):
    records = CountingRecordStore(tmp_path)
    summary = run_auctions(make_api, upstream, records, tmp_path)

    assert summary["processed"] == 2
    assert summary["ok"] == 2
    assert summary["counters"]["auctions"] == 3
    assert records.writes == 3
    assert (tmp_path / "auctions" / "2024-10-08" / "auction_101.json").exists()
    assert (tmp_path / "auctions" / "unknown" / "auction_102.json").exists()
    assert (tmp_path / "auctions" / "2024-10-15" / "auction_103.json").exists()
    assert len(records.find_auction_files(102)) == 1

    checkpoint = orjson.loads((tmp_path / "checkpoints" / "auctions.json").read_bytes())
    assert checkpoint["last_processed_key"] == "2024-10-21"


def test_auction_phase_rerun_is_all_skipped(make_api, upstream, tmp_path):
    run_auctions(make_api, upstream, RecordStore(tmp_path), tmp_path)
    upstream.requests.clear()

    records = CountingRecordStore(tmp_path)
    summary = run_auctions(make_api, upstream, records, tmp_path)
    assert records.writes == 0
    assert upstream.requests == []
    assert summary["skipped"] == summary["total"] == 2


def test_cancelled_run_saves_checkpoint_and_resumes(make_api, upstream, tmp_path):
    """Stopping after the first window resumes at the second one."""
    records = RecordStore(tmp_path)
    run_control = RunControl()
    original = records.save_auction

    def save_and_cancel(auction):
        run_control.cancel("SIGINT received")
        return original(auction)

    records.save_auction = save_and_cancel
    summary = run_auctions(make_api, upstream, records, tmp_path, run_control=run_control)
    assert summary["stopped"] == "SIGINT received"
    assert summary["processed"] == 1

    upstream.requests.clear()
    summary = run_auctions(make_api, upstream, RecordStore(tmp_path), tmp_path)
    assert len(upstream.requests) == 1
    assert summary["skipped"] == 1
    assert summary["counters"]["auctions"] == 3


def test_failed_window_is_fetched_again_next_run(make_api, upstream, tmp_path):
    records = RecordStore(tmp_path)

    def first_window_down(request):
        if parse_qs(request.content.decode())["filters[startDate]"][0] == "2024-10-07":
            return httpx.Response(502)
        return upstream(request)

    summary = run_auctions(make_api, first_window_down, records, tmp_path)
    assert summary["failed"] == 1
    assert not records.auction_exists(101)
    checkpoint = orjson.loads((tmp_path / "checkpoints" / "auctions.json").read_bytes())
    assert checkpoint["extra"]["failed_windows"] == ["2024-10-07..2024-10-14"]
    assert checkpoint["last_processed_key"] == "2024-10-21"

    upstream.requests.clear()
    summary = run_auctions(make_api, upstream, records, tmp_path)
    assert upstream.requests == ["/auctions"]
    assert summary["ok"] == 1
    assert summary["skipped"] == 1
    assert records.auction_exists(101)
    checkpoint = orjson.loads((tmp_path / "checkpoints" / "auctions.json").read_bytes())
    assert checkpoint["extra"]["failed_windows"] == []


def test_lot_phase_collects_lots_and_manifests(make_api, upstream, tmp_path):
    records = RecordStore(tmp_path)
    run_auctions(make_api, upstream, records, tmp_path)
    summary = run_lots(make_api, upstream, records, tmp_path)

    assert summary["ok"] == 3
    assert summary["counters"]["lots"] == 3
    lot = orjson.loads((tmp_path / "lots" / "101" / "lot_1.json").read_bytes())
    assert lot["title"] == "Drill"
    assert lot["auction_id"] == "101"
    assert records.lots_complete("102")
    manifest = orjson.loads((tmp_path / "lots" / "101" / "manifest.json").read_bytes())
    assert manifest["lotIds"] == ["1", "2"]
    urls = (tmp_path / "lot-images.txt").read_text().splitlines()
    assert urls == ["https://img.test/drill.jpg", "https://img.test/sedan.jpg"]

    upstream.requests.clear()
    summary = run_lots(make_api, upstream, records, tmp_path)
    assert upstream.requests == []
    assert summary["skipped"] == 3


def test_lot_phase_refetches_when_manifest_is_missing(make_api, upstream, tmp_path):
    records = RecordStore(tmp_path)
    run_auctions(make_api, upstream, records, tmp_path)
    run_lots(make_api, upstream, records, tmp_path)
    (tmp_path / "lots" / "103" / "manifest.json").unlink()

    upstream.requests.clear()
    run_lots(make_api, upstream, records, tmp_path)
    assert upstream.requests == ["/auctions/103/items"]


def test_lot_pagination_stops_at_total(make_api, tmp_path):
    pages = {
        1: {"data": [{"id": 1}, {"id": 2}], "total": 3, "total_pages": 2},
        2: {"data": [{"id": 3}], "total": 3, "total_pages": 2},
    }
    requested = []

    def handler(request):
        page = int(parse_qs(request.content.decode())["page"][0])
        requested.append(page)
        return httpx.Response(200, json=pages.get(page, {"data": []}))

    async def run():
        async with make_api(handler) as api:
            collector = LotCollector(api, RecordStore(tmp_path), checkpoint_for("lots", tmp_path))
            return await collector.fetch_lots("5")

    lots = asyncio.run(run())
    assert [lot["id"] for lot in lots] == [1, 2, 3]
    assert requested == [1, 2]


def test_image_phase_writes_every_lot_once(make_api, upstream, tmp_path):
    records = RecordStore(tmp_path)
    run_auctions(make_api, upstream, records, tmp_path)
    run_lots(make_api, upstream, records, tmp_path)
    summary = run_images(make_api, upstream, records, tmp_path)

    assert summary["processed"] == 3
    assert summary["counters"]["images"] == 2
    found = orjson.loads((tmp_path / "lots" / "101" / "lot_1_images.json").read_bytes())
    assert found["lotId"] == "1"
    assert found["auctionId"] == "101"
    assert len(found["data"]) == 1
    assert "collectedAt" in found

    missing = orjson.loads((tmp_path / "lots" / "101" / "lot_2_images.json").read_bytes())
    assert missing["result"] == "not_found"
    assert missing["data"] == []

    upstream.requests.clear()
    summary = run_images(make_api, upstream, records, tmp_path)
    assert upstream.requests == []
    assert summary["skipped"] == 3


def test_image_phase_trusts_checkpoint_over_missing_file(make_api, upstream, tmp_path):
    """A deleted images file is not refetched unless asked to."""
    records = RecordStore(tmp_path)
    run_auctions(make_api, upstream, records, tmp_path)
    run_lots(make_api, upstream, records, tmp_path)
    run_images(make_api, upstream, records, tmp_path)
    (tmp_path / "lots" / "103" / "lot_3_images.json").unlink()

    upstream.requests.clear()
    run_images(make_api, upstream, records, tmp_path)
    assert upstream.requests == []

    run_images(make_api, upstream, records, tmp_path, refetch_missing=True)
    assert upstream.requests == ["/auctions/103/items/3/images"]


def test_image_fetch_failure_still_writes_empty_record(make_api, tmp_path):
    records = RecordStore(tmp_path)
    records.save_lot("9", Lot(id=4))

    def handler(request):
        return httpx.Response(502)

    async def run():
        async with make_api(handler, max_retries=1) as api:
            collector = ImageCollector(api, records, checkpoint_for("images", tmp_path / "checkpoints"))
            return await collector.run()

    summary = asyncio.run(run())
    stored = orjson.loads((tmp_path / "lots" / "9" / "lot_4_images.json").read_bytes())
    assert stored["result"] == "error"
    assert stored["data"] == []
    assert summary["failed"] == 1
    assert summary["counters"]["errors"] == 1


def run_lots_with(make_api, handler, records, tmp_path, **kwargs):
    async def run():
        async with make_api(handler, **kwargs) as api:
            collector = LotCollector(api, records, checkpoint_for("lots", tmp_path / "checkpoints"))
            return await collector.run()

    return asyncio.run(run())


def test_corrupt_response_fails_one_auction_only(make_api, tmp_path):
    """A body that cannot be decoded is retried, recorded, and the run goes on."""
    records = RecordStore(tmp_path)
    for auction_id in (1, 2):
        records.save_auction(Auction(id=auction_id))

    def handler(request):
        if request.url.path == "/auctions/1/items":
            return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not gzip")
        return httpx.Response(200, json={"data": [{"id": 7}], "total": 1, "total_pages": 1})

    summary = run_lots_with(make_api, handler, records, tmp_path, max_retries=1)
    assert summary["failed"] == 1
    assert summary["ok"] == 1
    assert (tmp_path / "lots" / "2" / "lot_7.json").exists()
    assert not records.lots_complete("1")
    checkpoint = orjson.loads((tmp_path / "checkpoints" / "lots.json").read_bytes())
    assert [f["key"] for f in checkpoint["failures"]] == ["1"]


def test_loosely_typed_fields_do_not_drop_records(make_api, tmp_path):
    records = RecordStore(tmp_path)
    records.save_auction(Auction.model_validate({"id": 9, "status": 3, "title": None, "starts": 1729000000}))

    def handler(request):
        return httpx.Response(
            200,
            json={"data": [{"id": 5, "links": None}, {"id": 6, "status": 3, "title": 12}], "total": 2},
        )

    summary = run_lots_with(make_api, handler, records, tmp_path)
    assert summary["ok"] == 1
    assert [a.key for a in records.iter_auctions()] == ["9"]
    lot = orjson.loads((tmp_path / "lots" / "9" / "lot_5.json").read_bytes())
    assert lot["links"] is None
    lot = orjson.loads((tmp_path / "lots" / "9" / "lot_6.json").read_bytes())
    assert lot["status"] == 3
    assert lot["title"] == 12
    manifest = orjson.loads((tmp_path / "lots" / "9" / "manifest.json").read_bytes())
    assert manifest["lotIds"] == ["5", "6"]


def test_lot_repeated_across_pages_is_listed_once(make_api, tmp_path):
    records = RecordStore(tmp_path)
    records.save_auction(Auction(id=4))
    pages = {
        1: {"data": [{"id": 5}, {"id": 6}], "total_pages": 2},
        2: {"data": [{"id": 6}, {"id": 7}], "total_pages": 2},
    }

    def handler(request):
        page = int(parse_qs(request.content.decode())["page"][0])
        return httpx.Response(200, json=pages[page])

    summary = run_lots_with(make_api, handler, records, tmp_path)
    assert summary["counters"]["lots"] == 3
    manifest = orjson.loads((tmp_path / "lots" / "4" / "manifest.json").read_bytes())
    assert manifest["lotIds"] == ["5", "6", "7"]
    assert manifest["lotCount"] == 3
