"""Transformer / loader entry point.

Usage:
    python -m etl local data/20240101001500.gkg.csv --output out/aggregates.json.gz
    python -m etl load gs://bucket/aggregates/20240101T010000Z/
"""

import argparse
import sys

from etl.gkg import ThemeFieldSpec
from etl.load import load_aggregates
from etl.transform import run_local
from utils.config import Settings
from utils.logging import configure_logging

logger = configure_logging(service_name="etl")


def main() -> int:
    parser = argparse.ArgumentParser(description="GKG transform and BigQuery load.")
    sub = parser.add_subparsers(dest="command", required=True)

    local = sub.add_parser("local", help="Transform local GKG files without a cluster")
    local.add_argument("inputs", nargs="+", help="GKG files (.csv or .csv.gz)")
    local.add_argument("--output", required=True, help="Output JSONL path (.gz to compress)")
    local.add_argument("--precision", type=int, default=None, help="Geohash precision")

    load = sub.add_parser("load", help="Load aggregate output from GCS into BigQuery")
    load.add_argument("source_uri", help="gs:// output directory or glob")

    args = parser.parse_args()

    try:
        settings = Settings.load()
    except ValueError as e:
        if args.command == "load":
            logger.error(f"[ETL] {e}")
            return 2
        # Local runs only need the transform tunables; fall back to defaults.
        settings = None

    try:
        if args.command == "local":
            theme_field = ThemeFieldSpec()
            precision = args.precision or 7
            if settings is not None:
                theme_field = ThemeFieldSpec(
                    settings.theme_field_index,
                    settings.theme_token_separator,
                    settings.theme_score_separator,
                    settings.theme_skip_count_tags,
                )
                precision = args.precision or settings.geohash_precision
            stats = run_local(args.inputs, args.output, theme_field=theme_field, precision=precision)
            logger.info(f"[ETL] Local transform complete: {stats}")
        else:
            result = load_aggregates(settings, args.source_uri)
            logger.info(f"[ETL] Load complete: {result['output_rows']} rows")
    except Exception as e:
        logger.error(f"[ETL] {args.command} failed: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
