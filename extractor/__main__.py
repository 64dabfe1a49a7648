"""Extractor entry point.

Designed to run as a single-purpose container (one tick per invocation from
Cloud Scheduler) or as a long-running worker with its own interval.

Usage:
    python -m extractor run              # stage the current batch once
    python -m extractor prune [--dry-run]
    python -m extractor serve [--interval 900]
"""

import argparse
import asyncio
import signal
import sys
from datetime import timedelta

from extractor.retention import prune_staged
from extractor.staging import Extractor
from utils.config import Settings
from utils.gcs import GCSClient, RAW_PREFIX
from utils.logging import configure_logging
from utils.schedule import run_every

logger = configure_logging(service_name="extractor")


async def tick(extractor: Extractor, gcs: GCSClient, settings: Settings) -> None:
    """One scheduled pass: stage new files, then prune expired ones."""
    result = await extractor.run_once()
    await asyncio.to_thread(
        prune_staged,
        gcs,
        settings.gcs_bucket,
        prefix=RAW_PREFIX,
        retention=timedelta(hours=settings.raw_retention_hours),
    )
    if result["failed"]:
        raise RuntimeError(f"{result['failed']} file(s) failed to stage")


async def serve(extractor: Extractor, gcs: GCSClient, settings: Settings, interval: int) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(f"[ExtractorMain] Serving every {interval}s")
    await run_every(
        lambda: tick(extractor, gcs, settings),
        interval_seconds=interval,
        stop_event=stop_event,
        name="extract",
    )
    return 0


async def main() -> int:
    parser = argparse.ArgumentParser(description="Stage GDELT files in GCS and prune expired ones.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Stage the current batch once")
    prune = sub.add_parser("prune", help="Delete staged raw objects past retention")
    prune.add_argument("--dry-run", action="store_true", help="Report without deleting")
    serve_parser = sub.add_parser("serve", help="Stage and prune on a fixed interval")
    serve_parser.add_argument("--interval", type=int, default=None, help="Seconds between ticks")
    args = parser.parse_args()

    settings = Settings.load()
    gcs = GCSClient(project_id=settings.gcp_project_id)

    if args.command == "prune":
        result = prune_staged(
            gcs,
            settings.gcs_bucket,
            prefix=RAW_PREFIX,
            retention=timedelta(hours=settings.raw_retention_hours),
            dry_run=args.dry_run,
        )
        return 1 if result["errors"] else 0

    extractor = Extractor(settings, gcs)
    if args.command == "run":
        result = await extractor.run_once()
        return 1 if result["failed"] else 0

    return await serve(extractor, gcs, settings, args.interval or settings.extract_interval_seconds)


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("[ExtractorMain] Interrupted by user.")
    except Exception as e:
        logger.error(f"[ExtractorMain] Extractor failed: {e}", exc_info=True)
        sys.exit(1)
