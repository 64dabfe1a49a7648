"""Parse GDELT 2.1 Global Knowledge Graph (GKG) records.

A GKG file is tab-delimited with 27 fields per line and no header.
Only a few fields are used here:

    0   GKGRECORDID     e.g. 20240101001500-42
    1   DATE            YYYYMMDDHHMMSS (publication batch)
    9   Locations       V1 locations, '#'-delimited, lat/lon at positions 4/5
    10  V2Locations     V2 locations, '#'-delimited, lat/lon at positions 5/6
    17  GCAM            comma-separated "dimension:score" emotion tags

The multi-valued theme field is configurable via `ThemeFieldSpec` so the
same parser can read GCAM (default) or any other "tag<sep>score" list.

GCAM mixes two kinds of entries: `wc` (the article word count) and `cD.N`
(how many words matched dimension N of dictionary D) are counts, while
`vD.N` entries are scores. Count tags are dropped by default so they never
reach the sentiment sum.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import re
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Tuple

from utils.schemas import GkgRecord

logger = logging.getLogger(__name__)

GKG_FIELD_COUNT = 27

FIELD_RECORD_ID = 0
FIELD_DATE = 1
FIELD_V1_LOCATIONS = 9
FIELD_V2_LOCATIONS = 10
FIELD_GCAM = 17

LOCATION_SEPARATOR = ";"
LOCATION_PART_SEPARATOR = "#"

# GCAM word count and per-dimension match counts
COUNT_TAG = re.compile(r"^(wc|c\d+\.\d+)$")


class MalformedRecordError(ValueError):
    """Raised when a GKG line cannot be parsed into a complete record."""


@dataclass(frozen=True, slots=True)
class ThemeFieldSpec:
    """Where the theme/emotion list lives and how it is delimited.

    With `skip_count_tags`, GCAM count entries (`wc`, `cD.N`) are parsed
    and validated but not returned as themes.
    """

    index: int = FIELD_GCAM
    token_separator: str = ","
    score_separator: str = ":"
    skip_count_tags: bool = True

    def __post_init__(self) -> None:
        if not 0 <= self.index < GKG_FIELD_COUNT:
            raise ValueError(f"Theme field index must be 0..{GKG_FIELD_COUNT - 1}, got {self.index}")
        if not self.token_separator or not self.score_separator:
            raise ValueError("Theme separators must be non-empty")
        if self.token_separator == self.score_separator:
            raise ValueError("Token and score separators must differ")


DEFAULT_THEME_FIELD = ThemeFieldSpec()


def parse_themes(value: str, theme_field: ThemeFieldSpec = DEFAULT_THEME_FIELD) -> Tuple[Tuple[str, float], ...]:
    """Split a theme field into (tag, score) pairs, preserving order and repeats.

    Empty tokens (e.g. a trailing separator) are not tags and are ignored.

    Raises:
        MalformedRecordError: A token has no score, an empty tag, or a
            non-numeric / non-finite score.
    """
    themes: List[Tuple[str, float]] = []
    for token in value.split(theme_field.token_separator):
        token = token.strip()
        if not token:
            continue

        tag, sep, raw_score = token.rpartition(theme_field.score_separator)
        tag = tag.strip()
        if not sep or not tag:
            raise MalformedRecordError(f"Theme token without score: {token!r}")
        try:
            score = float(raw_score)
        except ValueError:
            raise MalformedRecordError(f"Non-numeric theme score: {token!r}") from None
        if not math.isfinite(score):
            raise MalformedRecordError(f"Non-finite theme score: {token!r}")

        if theme_field.skip_count_tags and COUNT_TAG.match(tag):
            continue
        themes.append((tag, score))
    return tuple(themes)


def _first_coordinates(value: str, lat_pos: int, lon_pos: int) -> Optional[Tuple[float, float]]:
    for entry in value.split(LOCATION_SEPARATOR):
        parts = entry.split(LOCATION_PART_SEPARATOR)
        if len(parts) <= max(lat_pos, lon_pos):
            continue
        try:
            latitude = float(parts[lat_pos])
            longitude = float(parts[lon_pos])
        except ValueError:
            continue
        if -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0:
            return latitude, longitude
    return None


def parse_location(v2_locations: str, v1_locations: str = "") -> Optional[Tuple[float, float]]:
    """Return the first usable (lat, lon), preferring V2Locations over V1."""
    return (
        _first_coordinates(v2_locations, 5, 6)
        or _first_coordinates(v1_locations, 4, 5)
    )


def parse_date(value: str) -> dt.date:
    """Parse the GKG DATE field (YYYYMMDDHHMMSS) to a calendar day."""
    try:
        return dt.datetime.strptime(value.strip(), "%Y%m%d%H%M%S").date()
    except ValueError:
        raise MalformedRecordError(f"Invalid GKG date: {value!r}") from None


def parse_record(line: str, theme_field: ThemeFieldSpec = DEFAULT_THEME_FIELD) -> GkgRecord:
    """Parse one tab-delimited GKG line.

    Raises:
        MalformedRecordError: Wrong field count, bad date, no usable
            coordinates, or an unparsable theme token.
    """
    fields = line.rstrip("\r\n").split("\t")
    if len(fields) != GKG_FIELD_COUNT:
        raise MalformedRecordError(f"Expected {GKG_FIELD_COUNT} fields, got {len(fields)}")

    record_id = fields[FIELD_RECORD_ID].strip()
    if not record_id:
        raise MalformedRecordError("Missing GKGRECORDID")

    date = parse_date(fields[FIELD_DATE])

    coordinates = parse_location(fields[FIELD_V2_LOCATIONS], fields[FIELD_V1_LOCATIONS])
    if coordinates is None:
        raise MalformedRecordError(f"Record {record_id} has no usable coordinates")

    themes = parse_themes(fields[theme_field.index], theme_field)

    return GkgRecord(
        record_id=record_id,
        date=date,
        latitude=coordinates[0],
        longitude=coordinates[1],
        themes=themes,
    )


def iter_records(
    lines: Iterable[str],
    theme_field: ThemeFieldSpec = DEFAULT_THEME_FIELD,
    stats: Optional[dict] = None,
) -> Iterator[GkgRecord]:
    """Yield parsed records, skipping (and counting) malformed lines.

    A malformed record is dropped whole, never partially exploded.
    If `stats` is given, its "total" and "malformed" counters are updated.
    """
    if stats is not None:
        stats.setdefault("total", 0)
        stats.setdefault("malformed", 0)

    for line_num, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        if stats is not None:
            stats["total"] += 1
        try:
            yield parse_record(line, theme_field)
        except MalformedRecordError as e:
            if stats is not None:
                stats["malformed"] += 1
            logger.debug(f"[Transform] Line {line_num}: skipping malformed record: {e}")
