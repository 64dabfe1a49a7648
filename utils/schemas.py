"""Schema contracts for pipeline records.

**SINGLE SOURCE OF TRUTH**: All record types are defined here.
The BigQuery schema of the aggregate table is auto-generated from
`AggregateRow` (see `utils.bq_schemas`). This module is shipped in the
Spark job package, so it imports nothing beyond the standard library.

To add/remove/modify fields:
1. Update the dataclass below
2. BigQuery schemas update automatically
3. Recreate or migrate the table if it already exists
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True, slots=True)
class StagedObject:
    """An object in the staging bucket."""

    name: str  # Blob name, e.g. raw/gkg/20240101001500/20240101001500.gkg.csv.gz
    gs_uri: str
    size: int
    created: Optional[dt.datetime]  # Server-side creation time (UTC)


@dataclass(frozen=True, slots=True)
class GkgRecord:
    """One parsed Global Knowledge Graph record."""

    record_id: str
    date: dt.date
    latitude: float
    longitude: float
    themes: Tuple[Tuple[str, float], ...]  # (tag, score) in source order


@dataclass(frozen=True, slots=True)
class ExplodedRecord:
    """One (record, theme tag) pair."""

    record_id: str
    theme: str
    score: float
    date: dt.date
    latitude: float
    longitude: float


@dataclass(frozen=True, slots=True)
class AggregateRow:
    """Summed sentiment per spatial bucket, theme and day.

    This is the SINGLE SOURCE OF TRUTH for the aggregate table schema.
    """

    geohash: str
    theme: str
    date: dt.date
    sentiment: float

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready row (date as ISO string) for NEWLINE_DELIMITED_JSON output."""
        return {
            "geohash": self.geohash,
            "theme": self.theme,
            "date": self.date.isoformat(),
            "sentiment": self.sentiment,
        }
