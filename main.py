"""Cloud Function entry points.

This file is required by Cloud Functions deployment.
The function name MUST match the --entry-point parameter.

    extract_gdelt        Cloud Scheduler (Pub/Sub), every 15 minutes
    prune_staging        Cloud Scheduler (Pub/Sub), hourly
    load_aggregates_gcs  GCS object finalize on aggregates/**/_MANIFEST

The transform is not a function: a cluster lease can outlast any function
timeout, and a killed instance would leave the cluster running. It runs in
the `python -m cluster serve` worker.
"""

import asyncio
import logging
from datetime import timedelta
from pathlib import PurePosixPath

from cluster.ledger import MANIFEST_NAME
from etl.load import load_aggregates
from extractor.retention import prune_staged
from extractor.staging import Extractor
from utils.config import Settings
from utils.gcs import AGGREGATES_PREFIX, GCSClient, RAW_PREFIX
from utils.logging import configure_logging

logger = logging.getLogger(__name__)


def extract_gdelt(event: dict, context) -> str:
    """Stage the current GDELT batch in GCS."""
    configure_logging(service_name="extract-gdelt", to_file=False)
    settings = Settings.load()

    try:
        gcs = GCSClient(project_id=settings.gcp_project_id)
        result = asyncio.run(Extractor(settings, gcs).run_once())
    except Exception as e:
        logger.error(f"[Extractor] Tick failed: {e}", exc_info=True)
        raise

    if result["failed"]:
        # Raising makes the invocation count as failed, so it shows up in
        # error reporting; staged files are kept and the next tick retries.
        raise RuntimeError(f"{result['failed']}/{result['published']} files failed to stage")
    return f"✓ Staged {result['staged']}, skipped {result['skipped']} of {result['published']} published files"


def prune_staging(event: dict, context) -> str:
    """Delete raw objects past the retention window."""
    configure_logging(service_name="prune-staging", to_file=False)
    settings = Settings.load()
    gcs = GCSClient(project_id=settings.gcp_project_id)

    result = prune_staged(
        gcs,
        settings.gcs_bucket,
        prefix=RAW_PREFIX,
        retention=timedelta(hours=settings.raw_retention_hours),
    )
    if result["errors"]:
        raise RuntimeError(f"{result['errors']} object(s) could not be deleted")
    return f"✓ Pruned {result['deleted']} of {result['examined']} objects (cutoff {result['cutoff']})"


def load_aggregates_gcs(event: dict, context) -> str:
    """Load a finished transform run into BigQuery.

    Triggered by the _MANIFEST marker the cluster worker writes after the
    run's inputs are committed to the transform ledger. Spark's own
    _SUCCESS marker is ignored: output of a run that lost a ledger race
    must never be loaded.
    """
    configure_logging(service_name="load-aggregates", to_file=False)

    bucket = event.get("bucket")
    name = event.get("name", "")
    path = PurePosixPath(name)

    if not name.startswith(AGGREGATES_PREFIX) or path.name != MANIFEST_NAME:
        logger.info(f"[Load] Ignoring gs://{bucket}/{name}")
        return f"SKIP: not a run marker: {name}"

    settings = Settings.load()
    result = load_aggregates(settings, f"gs://{bucket}/{path.parent}/")
    return f"✓ Loaded {result['output_rows']} rows from gs://{bucket}/{path.parent}/"
