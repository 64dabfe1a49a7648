"""Spark transform job: staged GKG files → aggregate sentiment rows.

Runs on the leased Dataproc cluster, either submitted as a Livy statement
(see `cluster.workflow.build_statement`) or directly:

    spark-submit --py-files gs://bucket/jobs/gdelt_pipeline.zip etl/spark_job.py \\
        --input gs://bucket/raw/gkg/20240101001500/20240101001500.gkg.csv.gz \\
        --output gs://bucket/aggregates/20240101T010000Z/ \\
        --precision 7

Parsing and explosion reuse `etl.transform.explode_line`, so the cluster
and the local runner apply identical record semantics. Grouping happens in
Spark; any partitioning is valid since the aggregate is a sum per key.
"""

from __future__ import annotations

import argparse
import logging
import math
from typing import Dict, Sequence

from pyspark.sql import DataFrame, SparkSession
from pyspark.sql import functions as F
from pyspark.sql.types import ArrayType, DoubleType, StringType, StructField, StructType

from etl.gkg import FIELD_GCAM, ThemeFieldSpec
from etl.transform import DEFAULT_PRECISION, explode_line
from utils.logging import configure_logging

logger = logging.getLogger(__name__)

EXPLODED_TYPE = ArrayType(
    StructType([
        StructField("geohash", StringType(), nullable=False),
        StructField("theme", StringType(), nullable=False),
        StructField("date", StringType(), nullable=False),
        StructField("score", DoubleType(), nullable=False),
    ])
)


def build_aggregates(
    lines: DataFrame,
    precision: int = DEFAULT_PRECISION,
    theme_field: ThemeFieldSpec = ThemeFieldSpec(),
) -> DataFrame:
    """Explode a single-column text DataFrame and sum per (geohash, theme, date)."""
    explode_udf = F.udf(lambda line: explode_line(line, precision, theme_field), EXPLODED_TYPE)

    exploded = (
        lines
        .select(F.explode(explode_udf(F.col("value"))).alias("row"))
        .select("row.geohash", "row.theme", "row.date", "row.score")
    )
    # fsum over the collected scores keeps the total independent of
    # partition layout and shuffle order.
    fsum_udf = F.udf(lambda scores: math.fsum(scores), DoubleType())
    return (
        exploded
        .groupBy("geohash", "theme", "date")
        .agg(fsum_udf(F.collect_list("score")).alias("sentiment"))
    )


def run_job(
    spark: SparkSession,
    input_uris: Sequence[str],
    output_uri: str,
    precision: int = DEFAULT_PRECISION,
    field_index: int = FIELD_GCAM,
    token_separator: str = ",",
    score_separator: str = ":",
    skip_count_tags: bool = True,
) -> Dict[str, int]:
    """Read staged GKG files, aggregate, and write JSON to `output_uri`.

    Returns:
        Dict with input_lines and aggregate_rows counts
    """
    if not input_uris:
        raise ValueError("run_job needs at least one input URI")

    theme_field = ThemeFieldSpec(field_index, token_separator, score_separator, skip_count_tags)
    logger.info(f"[Transform] Spark job over {len(input_uris)} files → {output_uri}")

    lines = spark.read.text(list(input_uris))
    aggregates = build_aggregates(lines, precision, theme_field).cache()

    (
        aggregates
        .write
        .mode("overwrite")
        .option("compression", "gzip")
        .json(output_uri)
    )

    result = {
        "input_lines": lines.count(),
        "aggregate_rows": aggregates.count(),
    }
    aggregates.unpersist()
    logger.info(f"[Transform] Spark job complete: {result}")
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description="Aggregate GKG theme sentiment by geohash.")
    parser.add_argument("--input", action="append", required=True, help="Input URI (repeatable)")
    parser.add_argument("--output", required=True, help="Output directory URI")
    parser.add_argument("--precision", type=int, default=DEFAULT_PRECISION)
    parser.add_argument("--field-index", type=int, default=FIELD_GCAM)
    parser.add_argument("--token-separator", default=",")
    parser.add_argument("--score-separator", default=":")
    parser.add_argument(
        "--keep-count-tags", action="store_true", help="Also sum GCAM wc/cD.N count entries"
    )
    args = parser.parse_args()

    configure_logging(service_name="spark-job", to_file=False)
    spark = SparkSession.builder.appName("gdelt-theme-sentiment").getOrCreate()
    try:
        run_job(
            spark,
            args.input,
            args.output,
            precision=args.precision,
            field_index=args.field_index,
            token_separator=args.token_separator,
            score_separator=args.score_separator,
            skip_count_tags=not args.keep_count_tags,
        )
    finally:
        spark.stop()


if __name__ == "__main__":
    main()
