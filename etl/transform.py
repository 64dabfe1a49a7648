"""GKG → aggregate sentiment transformation (core ETL logic).

This module contains the transformation shared by the local runner and the
Spark job:
1. Parse each GKG record and its multi-valued theme/emotion field
2. Explode into one row per (record, tag)
3. Derive a geohash bucket key from the record's coordinates
4. Sum scores per (geohash, theme, date)

Summation uses `math.fsum`, which is exactly rounded and therefore gives the
same total for any input order or partitioning.
"""

from __future__ import annotations

import gzip
import logging
import math
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from etl import geohash
from etl.gkg import DEFAULT_THEME_FIELD, MalformedRecordError, ThemeFieldSpec, iter_records, parse_record
from utils.schemas import AggregateRow, ExplodedRecord, GkgRecord

logger = logging.getLogger(__name__)

DEFAULT_PRECISION = 7

GroupKey = Tuple[str, str, object]  # (geohash, theme, date)


def explode(record: GkgRecord) -> List[ExplodedRecord]:
    """One row per theme tag, carrying the record's location and date."""
    return [
        ExplodedRecord(
            record_id=record.record_id,
            theme=theme,
            score=score,
            date=record.date,
            latitude=record.latitude,
            longitude=record.longitude,
        )
        for theme, score in record.themes
    ]


def bucket_key(row: ExplodedRecord, precision: int = DEFAULT_PRECISION) -> GroupKey:
    return (geohash.encode(row.latitude, row.longitude, precision), row.theme, row.date)


def aggregate(rows: Iterable[ExplodedRecord], precision: int = DEFAULT_PRECISION) -> List[AggregateRow]:
    """Sum exploded scores per (geohash, theme, date).

    Output is sorted by key so identical inputs give identical output files.
    """
    groups: Dict[GroupKey, List[float]] = defaultdict(list)
    for row in rows:
        groups[bucket_key(row, precision)].append(row.score)

    return [
        AggregateRow(geohash=key[0], theme=key[1], date=key[2], sentiment=math.fsum(scores))
        for key, scores in sorted(groups.items(), key=lambda item: (item[0][0], item[0][1], item[0][2]))
    ]


def transform_records(
    records: Iterable[GkgRecord],
    precision: int = DEFAULT_PRECISION,
    stats: Optional[dict] = None,
) -> List[AggregateRow]:
    """Explode and aggregate already-parsed records."""
    def _exploded() -> Iterator[ExplodedRecord]:
        for record in records:
            rows = explode(record)
            if stats is not None:
                stats["parsed"] = stats.get("parsed", 0) + 1
                stats["exploded"] = stats.get("exploded", 0) + len(rows)
            yield from rows

    result = aggregate(_exploded(), precision)
    if stats is not None:
        stats["groups"] = len(result)
    return result


def transform_lines(
    lines: Iterable[str],
    theme_field: ThemeFieldSpec = DEFAULT_THEME_FIELD,
    precision: int = DEFAULT_PRECISION,
) -> Tuple[List[AggregateRow], Dict[str, int]]:
    """Parse raw GKG lines and aggregate them.

    Returns:
        (aggregate rows, stats) where stats has total, parsed, malformed,
        exploded and groups counters
    """
    stats: Dict[str, int] = {"total": 0, "parsed": 0, "malformed": 0, "exploded": 0, "groups": 0}
    rows = transform_records(iter_records(lines, theme_field, stats), precision, stats)

    if stats["malformed"]:
        logger.warning(f"[Transform] Skipped {stats['malformed']}/{stats['total']} malformed records")
    logger.info(
        f"[Transform] {stats['parsed']} records → {stats['exploded']} theme rows "
        f"→ {stats['groups']} aggregate rows (precision={precision})"
    )
    return rows, stats


def explode_line(
    line: str,
    precision: int = DEFAULT_PRECISION,
    theme_field: ThemeFieldSpec = DEFAULT_THEME_FIELD,
) -> List[Tuple[str, str, str, float]]:
    """Parse and explode one line into (geohash, theme, date, score) tuples.

    Used by the Spark UDF; malformed lines yield no rows, matching
    `iter_records`.
    """
    try:
        record = parse_record(line, theme_field)
    except MalformedRecordError:
        return []
    return [
        (*_stringify(bucket_key(row, precision)), row.score)
        for row in explode(record)
    ]


def _stringify(key: GroupKey) -> Tuple[str, str, str]:
    return key[0], key[1], key[2].isoformat()


# =============================================================================
# Local I/O
# =============================================================================

def read_lines(path: str | Path) -> Iterator[str]:
    """Yield lines from a plain or gzipped GKG file.

    GDELT files are mostly UTF-8 but carry stray bytes from source articles.
    """
    path = Path(path)
    opener = gzip.open if path.suffix == ".gz" else open
    with opener(path, "rt", encoding="utf-8", errors="replace") as f:
        yield from f


def aggregates_to_frame(rows: Sequence[AggregateRow]) -> pd.DataFrame:
    """Aggregate rows as a DataFrame with the table's column order."""
    return pd.DataFrame(
        [row.to_dict() for row in rows],
        columns=["geohash", "theme", "date", "sentiment"],
    )


def write_aggregates(rows: Sequence[AggregateRow], output_path: str | Path) -> Path:
    """Write rows as newline-delimited JSON (gzipped if the path ends in .gz)."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    compression = "gzip" if output_path.suffix == ".gz" else None
    aggregates_to_frame(rows).to_json(
        output_path,
        orient="records",
        lines=True,
        force_ascii=False,
        double_precision=15,
        compression=compression,
    )
    logger.info(f"[Transform] Wrote {len(rows)} aggregate rows to {output_path}")
    return output_path


def run_local(
    input_paths: Sequence[str | Path],
    output_path: str | Path,
    theme_field: ThemeFieldSpec = DEFAULT_THEME_FIELD,
    precision: int = DEFAULT_PRECISION,
) -> Dict[str, int]:
    """Transform local GKG files into one aggregate file (no cluster)."""
    def _all_lines() -> Iterator[str]:
        for path in input_paths:
            logger.info(f"[Transform] Reading {path}")
            yield from read_lines(path)

    rows, stats = transform_lines(_all_lines(), theme_field, precision)
    write_aggregates(rows, output_path)
    return stats
