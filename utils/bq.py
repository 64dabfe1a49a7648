"""BigQuery helpers for the persistent aggregate store.

- Dataset and table creation (idempotent, partitioned and clustered)
- Append loads of newline-delimited JSON written by the transform

Ensure calls are retried; load jobs are not, since BigQuery retries a
job's internal failures itself and a blind resubmission could append twice.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from google.cloud import bigquery
from google.cloud.exceptions import NotFound

from utils.config import Settings
from utils.retry import RetryPolicy, retry_call


logger = logging.getLogger(__name__)

T = TypeVar("T")

_ENSURE_POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=1.0)


def bq_client(settings: Settings) -> bigquery.Client:
    """Create a BigQuery client for the configured project."""
    return bigquery.Client(project=settings.gcp_project_id)


def _retried(func: Callable[[], T], what: str) -> T:
    return retry_call(
        func,
        policy=_ENSURE_POLICY,
        on_retry=lambda attempt, exc: logger.warning(f"[BQ] Retry {attempt} for {what}: {exc}"),
    )


def ensure_dataset(
    client: bigquery.Client,
    dataset_id: str,
    location: str,
    description: Optional[str] = None,
) -> bigquery.Dataset:
    """Get the dataset, creating it in `location` if missing."""
    dataset_ref = f"{client.project}.{dataset_id}"

    def _ensure() -> bigquery.Dataset:
        try:
            return client.get_dataset(dataset_ref)
        except NotFound:
            dataset = bigquery.Dataset(dataset_ref)
            dataset.location = location
            dataset.description = description
            logger.info(f"[BQ] Creating dataset {dataset_ref} in {location}")
            return client.create_dataset(dataset, exists_ok=True)

    return _retried(_ensure, f"ensure_dataset({dataset_id})")


def ensure_table(
    client: bigquery.Client,
    dataset_id: str,
    table_id: str,
    schema: List[bigquery.SchemaField],
    partition_field: Optional[str] = None,
    clustering_fields: Optional[List[str]] = None,
    description: Optional[str] = None,
) -> bigquery.Table:
    """Get the table, creating it with `schema` if missing.

    An existing table is never altered. Columns of `schema` it lacks are
    logged, since the next load would fail on them.

    Args:
        partition_field: DATE/TIMESTAMP column for daily partitioning
        clustering_fields: Up to four columns to cluster by
    """
    table_ref = f"{client.project}.{dataset_id}.{table_id}"

    def _ensure() -> bigquery.Table:
        try:
            table = client.get_table(table_ref)
        except NotFound:
            table = bigquery.Table(table_ref, schema=schema)
            if partition_field:
                table.time_partitioning = bigquery.TimePartitioning(
                    type_=bigquery.TimePartitioningType.DAY,
                    field=partition_field,
                )
            table.clustering_fields = clustering_fields
            table.description = description
            table = client.create_table(table, exists_ok=True)
            logger.info(f"[BQ] ✓ Created table {table_ref} ({len(schema)} fields)")
            return table

        existing = {field.name for field in table.schema or []}
        missing = [field.name for field in schema if field.name not in existing]
        if missing:
            logger.warning(f"[BQ] Table {table_ref} lacks columns {missing}")
        return table

    return _retried(_ensure, f"ensure_table({table_id})")


def load_gcs_jsonl_to_bq(
    client: bigquery.Client,
    source_uris: str | List[str],
    dataset_id: str,
    table_id: str,
    schema: List[bigquery.SchemaField],
    timeout_seconds: float = 600.0,
) -> Dict[str, Any]:
    """Append newline-delimited JSON from GCS to a table with one load job.

    Args:
        source_uris: One URI or a list; wildcards such as
            gs://b/aggregates/<run>/*.json* are allowed
        schema: Explicit schema (no autodetect)
        timeout_seconds: How long to wait for the job

    Returns:
        Dict with job_id, output_rows, source_uris
    """
    table_ref = f"{client.project}.{dataset_id}.{table_id}"
    job_config = bigquery.LoadJobConfig(
        source_format=bigquery.SourceFormat.NEWLINE_DELIMITED_JSON,
        write_disposition=bigquery.WriteDisposition.WRITE_APPEND,
        schema=schema,
    )

    logger.info(f"[BQ] Loading {source_uris} into {table_ref}")
    load_job = client.load_table_from_uri(source_uris, table_ref, job_config=job_config)
    load_job.result(timeout=timeout_seconds)

    output_rows = int(load_job.output_rows or 0)
    logger.info(f"[BQ] ✓ Load job {load_job.job_id} complete: {output_rows} rows")
    return {
        "job_id": load_job.job_id,
        "output_rows": output_rows,
        "source_uris": source_uris,
    }
