"""Cluster manager entry point.

Runs the transform workflow on its own schedule, independent of the
extractor. SIGINT/SIGTERM set the cancellation token, which still routes
through cluster teardown.

Usage:
    python -m cluster package
    python -m cluster run [--no-load]
    python -m cluster serve [--interval 3600] [--no-load]

This long-running worker is the only process that leases clusters: a run
can outlast any Cloud Functions timeout, and teardown must happen here.
"""

import argparse
import asyncio
import signal
import sys

from cluster.package import upload_job_package
from cluster.provider import DataprocClusterProvider
from cluster.workflow import run_transform_tick
from etl.load import load_aggregates
from utils.config import Settings
from utils.gcs import GCSClient
from utils.logging import configure_logging
from utils.schedule import run_every

logger = configure_logging(service_name="cluster")


async def tick(
    settings: Settings,
    gcs: GCSClient,
    provider: DataprocClusterProvider,
    cancel_event: asyncio.Event,
    load: bool,
) -> dict:
    result = await run_transform_tick(settings, gcs, provider, cancel_event=cancel_event)
    if load and result["status"] == "succeeded":
        loaded = await asyncio.to_thread(load_aggregates, settings, result["output_uri"])
        result["loaded_rows"] = loaded["output_rows"]
    logger.info(f"[ClusterMain] Tick result: status={result['status']} inputs={result['inputs']}")
    return result


async def main() -> int:
    parser = argparse.ArgumentParser(description="Lease a cluster and run the GKG transform.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("package", help="Build the etl/utils zip and upload it to TRANSFORM_PY_FILES")
    for command in ("run", "serve"):
        p = sub.add_parser(command)
        p.add_argument("--no-load", action="store_true", help="Leave output in GCS; skip BigQuery load")
        if command == "serve":
            p.add_argument("--interval", type=int, default=None, help="Seconds between runs")
    args = parser.parse_args()

    settings = Settings.load()
    gcs = GCSClient(project_id=settings.gcp_project_id)

    if args.command == "package":
        await asyncio.to_thread(upload_job_package, settings, gcs)
        return 0

    provider = DataprocClusterProvider(settings)

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel_event.set)

    if args.command == "run":
        await tick(settings, gcs, provider, cancel_event, load=not args.no_load)
        return 0

    interval = args.interval or settings.transform_interval_seconds
    logger.info(f"[ClusterMain] Serving every {interval}s")
    failures = await run_every(
        lambda: tick(settings, gcs, provider, cancel_event, load=not args.no_load),
        interval_seconds=interval,
        stop_event=cancel_event,
        name="transform",
    )
    return 1 if failures else 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except Exception as e:
        logger.error(f"[ClusterMain] Workflow failed: {e}", exc_info=True)
        sys.exit(1)
