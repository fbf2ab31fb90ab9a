"""Main entry point with CLI."""
import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Optional

import httpx

from auction_harvest.config import Config, config
from auction_harvest.errors import ConfigurationError, StoreError
from auction_harvest.fetch.client import ApiClient
from auction_harvest.jobs.auctions import AuctionCollector
from auction_harvest.jobs.images import ImageCollector
from auction_harvest.jobs.lots import LotCollector
from auction_harvest.jobs.metrics_exporter import MetricsExporter
from auction_harvest.jobs.migrate import MigrationRunner
from auction_harvest.jobs.run_control import RunControl
from auction_harvest.logging_conf import setup_logging
from auction_harvest.store.checkpoint import checkpoint_for
from auction_harvest.store.failures import FailureLedger
from auction_harvest.store.object_store import S3ObjectStore
from auction_harvest.store.records import RecordStore
from auction_harvest.store.url_log import ImageUrlLog

logger = logging.getLogger(__name__)

PHASES = ("auctions", "lots", "images", "migrate")
CHECKPOINT_NAMES = {"auctions": "auctions", "lots": "lots", "images": "images", "migrate": "migration"}


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help=f"Output directory (default: {config.DATA_DIR})",
    )
    common.add_argument(
        "--log-level",
        default=None,
        help=f"Console log level (default: {config.LOG_LEVEL})",
    )
    common.add_argument(
        "--stop-after-minutes",
        type=float,
        default=None,
        help="Stop cleanly after M minutes",
    )
    common.add_argument(
        "--max-errors",
        type=int,
        default=None,
        help="Stop cleanly once N errors were recorded",
    )
    common.add_argument(
        "--max-consecutive-errors",
        type=int,
        default=None,
        help="Stop cleanly after N errors in a row",
    )
    common.add_argument(
        "--reset",
        action="store_true",
        help="Delete the checkpoints of the selected phases before running",
    )

    window_args = argparse.ArgumentParser(add_help=False)
    window_args.add_argument("--start", default=None, help=f"First day, YYYY-MM-DD (default: {config.START_DATE})")
    window_args.add_argument("--end", default=None, help="Last day, YYYY-MM-DD (default: today)")
    window_args.add_argument(
        "--chunk-days",
        type=int,
        default=None,
        help=f"Window size in days (default: {config.CHUNK_DAYS})",
    )

    transfer_args = argparse.ArgumentParser(add_help=False)
    transfer_args.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help=f"Concurrent image transfers (default: {config.CONCURRENT_UPLOADS})",
    )

    parser = argparse.ArgumentParser(description="Auction Harvest: collect auctions, lots and lot images")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("auctions", parents=[common, window_args], help="Phase 1: collect auctions by date window")
    commands.add_parser("lots", parents=[common], help="Phase 2: collect lots of every stored auction")
    commands.add_parser("images", parents=[common], help="Phase 3: collect image records of every stored lot")
    commands.add_parser("migrate", parents=[common, transfer_args], help="Copy lot images into S3")
    commands.add_parser(
        "all", parents=[common, window_args, transfer_args], help="Run phases 1-3, then migrate"
    )
    commands.add_parser("setup-bucket", parents=[common], help="Create the S3 bucket if it does not exist")

    failures = commands.add_parser("failures", parents=[common], help="Show recorded failures")
    failures.add_argument("--phase", default=None, help="Only show this phase")
    failures.add_argument("--limit", type=int, default=50, help="Number of failures to show (default: 50)")
    failures.add_argument("--clear", action="store_true", help="Delete the failures of --phase")

    return parser.parse_args(argv)


def apply_overrides(args: argparse.Namespace) -> None:
    """Override config from args."""
    if args.data_dir is not None:
        Config.DATA_DIR = args.data_dir
    if args.log_level:
        Config.LOG_LEVEL = args.log_level
    if getattr(args, "start", None):
        Config.START_DATE = args.start
    if getattr(args, "end", None):
        Config.END_DATE = args.end
    if getattr(args, "chunk_days", None) is not None:
        Config.CHUNK_DAYS = args.chunk_days
    if getattr(args, "concurrency", None) is not None:
        Config.CONCURRENT_UPLOADS = args.concurrency


def phases_for(command: str) -> tuple[str, ...]:
    if command == "all":
        return PHASES
    if command in PHASES:
        return (command,)
    return ()


def reset_checkpoints(phases: tuple[str, ...]) -> None:
    for name in phases:
        checkpoint_for(CHECKPOINT_NAMES[name]).reset()


async def run_phase(
    name: str,
    api: ApiClient,
    records: RecordStore,
    shared: dict[str, Any],
) -> dict[str, Any]:
    """Build and run one phase."""
    if name == "auctions":
        runner = AuctionCollector(
            api,
            records,
            checkpoint_for("auctions"),
            start=Config.start_date(),
            end=Config.end_date(),
            chunk_days=Config.CHUNK_DAYS,
            **shared,
        )
        return await runner.run()
    if name == "lots":
        url_log = ImageUrlLog(Config.DATA_DIR / "lot-images.txt") if Config.RECORD_LOT_IMAGE_URLS else None
        runner = LotCollector(api, records, checkpoint_for("lots"), url_log=url_log, **shared)
        return await runner.run()
    if name == "images":
        runner = ImageCollector(api, records, checkpoint_for("images"), **shared)
        return await runner.run()

    limits = httpx.Limits(
        max_connections=Config.CONCURRENT_UPLOADS * 2,
        max_keepalive_connections=Config.CONCURRENT_UPLOADS,
    )
    async with httpx.AsyncClient(timeout=Config.DOWNLOAD_TIMEOUT, limits=limits, follow_redirects=True) as source:
        runner = MigrationRunner(
            S3ObjectStore(max_pool_connections=Config.CONCURRENT_UPLOADS * 2),
            source,
            records,
            checkpoint_for(CHECKPOINT_NAMES["migrate"]),
            concurrency=Config.CONCURRENT_UPLOADS,
            **shared,
        )
        return await runner.run()


async def run_phases(phases: tuple[str, ...], args: argparse.Namespace) -> list[dict[str, Any]]:
    """Run phases in order, sharing one run control and API client."""
    run_control = RunControl(
        stop_after_minutes=args.stop_after_minutes,
        max_errors=args.max_errors,
        max_consecutive_errors=args.max_consecutive_errors,
    )
    if args.reset:
        reset_checkpoints(phases)
    run_control.install_signal_handlers()
    run_id = uuid.uuid4().hex[:12]
    shared = {
        "run_control": run_control,
        "ledger": FailureLedger(Config.DATA_DIR / "failures.db"),
        "exporter": MetricsExporter(run_id, Config.DATA_DIR / "metrics.jsonl"),
    }
    records = RecordStore(Config.DATA_DIR)
    summaries = []
    logger.info(f"Run {run_id}: phases {', '.join(phases)}")
    try:
        async with ApiClient() as api:
            for name in phases:
                stop, reason = run_control.should_stop()
                if stop:
                    logger.warning(f"Skipping phase '{name}': {reason}")
                    continue
                summaries.append(await run_phase(name, api, records, shared))
    finally:
        run_control.remove_signal_handlers()

    logger.info("=" * 60)
    logger.info("RUN SUMMARY")
    for summary in summaries:
        logger.info(
            f"{summary['phase']}: processed {summary['processed']} | ok {summary['ok']} | "
            f"skipped {summary['skipped']} | errors {summary['failed']}"
            + (f" | stopped: {summary['stopped']}" if summary["stopped"] else "")
        )
    logger.info(f"Elapsed: {run_control.get_summary()['elapsed_minutes']} min")
    logger.info("=" * 60)
    return summaries


async def setup_bucket() -> bool:
    store = S3ObjectStore()
    return await store.ensure_bucket(enable_versioning=Config.S3_ENABLE_VERSIONING)


async def show_failures(args: argparse.Namespace) -> None:
    ledger = FailureLedger(Config.DATA_DIR / "failures.db")
    if args.clear:
        if not args.phase:
            raise ConfigurationError("--clear requires --phase")
        removed = await ledger.clear(args.phase)
        print(f"Cleared {removed} failures for phase '{args.phase}'")
        return
    counts = await ledger.counts()
    if not counts:
        print("No failures recorded")
        return
    for phase, count in sorted(counts.items()):
        print(f"{phase}: {count}")
    print()
    for row in await ledger.recent(args.phase, args.limit):
        parents = "/".join(str(p) for p in (row["listing_id"], row["parent_id"]) if p)
        print(f"[{row['failed_at']}] {row['phase']} {row['key']} ({parents or '-'}): {row['error']}")


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    apply_overrides(args)
    setup_logging(Config.LOG_LEVEL, Config.DATA_DIR / "collection.log")

    phases = phases_for(args.command)
    needs_bucket = "migrate" in phases or args.command == "setup-bucket"
    try:
        Config.validate(require_bucket=needs_bucket)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    logger.info("=" * 60)
    logger.info("Auction Harvest Starting")
    logger.info(f"Command: {args.command}")
    logger.info(f"API: {Config.API_BASE_URL}")
    logger.info(f"Data dir: {Config.DATA_DIR}")
    if "auctions" in phases:
        logger.info(f"Date range: {Config.start_date()} - {Config.end_date()} ({Config.CHUNK_DAYS}-day windows)")
    if needs_bucket:
        logger.info(f"Bucket: {Config.S3_BUCKET_NAME} ({Config.AWS_REGION}), prefix {Config.S3_KEY_PREFIX}")
    if "migrate" in phases:
        logger.info(f"Concurrency: {Config.CONCURRENT_UPLOADS}")
    logger.info("=" * 60)

    try:
        if args.command == "setup-bucket":
            asyncio.run(setup_bucket())
        elif args.command == "failures":
            asyncio.run(show_failures(args))
        else:
            asyncio.run(run_phases(phases, args))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except StoreError as e:
        logger.error(f"Object store error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
