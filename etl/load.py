"""Load transform output from GCS into the BigQuery aggregate table.

The table is the persistent spatial store: partitioned by `date`, clustered
by geohash and theme. Spatial queries decode the key in SQL, e.g.

    SELECT ST_GEOGPOINTFROMGEOHASH(geohash) AS point, theme, SUM(sentiment)
    FROM `project.dataset.theme_sentiment`
    WHERE date = '2024-01-01'
    GROUP BY point, theme
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from google.cloud import bigquery

from utils.bq import bq_client, ensure_dataset, ensure_table, load_gcs_jsonl_to_bq
from utils.bq_schemas import aggregate_sentiment_schema
from utils.config import Settings

logger = logging.getLogger(__name__)


def ensure_aggregate_table(client: bigquery.Client, settings: Settings) -> bigquery.Table:
    ensure_dataset(
        client,
        settings.bigquery_dataset_id,
        location=settings.gcp_region,
        description="GDELT theme sentiment by geohash",
    )
    return ensure_table(
        client,
        settings.bigquery_dataset_id,
        settings.aggregate_table_id,
        aggregate_sentiment_schema(),
        partition_field="date",
        clustering_fields=["geohash", "theme"],
        description="Summed GKG theme/emotion scores per geohash cell and day",
    )


def load_aggregates(
    settings: Settings,
    source_uri: str,
    client: Optional[bigquery.Client] = None,
) -> Dict[str, Any]:
    """Append one transform run's output to the aggregate table.

    Args:
        settings: Configuration settings
        source_uri: Output directory (gs://bucket/aggregates/<run>/) or a glob
        client: Optional BigQuery client (created from settings if omitted)
    """
    if source_uri.endswith("/"):
        source_uri += "*.json*"

    client = client or bq_client(settings)
    ensure_aggregate_table(client, settings)

    result = load_gcs_jsonl_to_bq(
        client,
        source_uri,
        settings.bigquery_dataset_id,
        settings.aggregate_table_id,
        aggregate_sentiment_schema(),
    )
    logger.info(f"[Load] {result['output_rows']} aggregate rows loaded from {source_uri}")
    return result
