"""Geohash bucket keys for the spatial aggregate.

Thin wrapper over `pygeohash` that validates its inputs, so a bad
coordinate raises instead of producing a key at the edge of the map.
Nearby points share a prefix, and every point inside one cell encodes to
the same key at that precision.

Approximate cell size by precision (width x height at the equator):

    5   4.9 km x 4.9 km
    6   1.2 km x 610 m
    7   153 m x 153 m      <- default, roughly street level
    8   38 m x 19 m
"""

from __future__ import annotations

from typing import Tuple

import pygeohash

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"

MAX_PRECISION = 12


def encode(latitude: float, longitude: float, precision: int = 7) -> str:
    """Encode a coordinate as a geohash of `precision` characters.

    Raises:
        ValueError: If coordinates are out of range or precision is invalid.
    """
    if not 1 <= precision <= MAX_PRECISION:
        raise ValueError(f"Geohash precision must be 1..{MAX_PRECISION}, got {precision}")
    if not -90.0 <= latitude <= 90.0:
        raise ValueError(f"Latitude out of range: {latitude}")
    if not -180.0 <= longitude <= 180.0:
        raise ValueError(f"Longitude out of range: {longitude}")
    return pygeohash.encode(latitude, longitude, precision=precision)


def _validated(geohash: str) -> str:
    geohash = geohash.lower()
    if not geohash:
        raise ValueError("Empty geohash")
    for char in geohash:
        if char not in BASE32:
            raise ValueError(f"Invalid geohash character {char!r} in {geohash!r}")
    return geohash


def bounds(geohash: str) -> Tuple[float, float, float, float]:
    """Return the cell of `geohash` as (lat_min, lat_max, lon_min, lon_max)."""
    latitude, longitude, lat_err, lon_err = pygeohash.decode_exactly(_validated(geohash))
    return latitude - lat_err, latitude + lat_err, longitude - lon_err, longitude + lon_err


def decode(geohash: str) -> Tuple[float, float]:
    """Return the (latitude, longitude) centre of a geohash cell."""
    latitude, longitude, _, _ = pygeohash.decode_exactly(_validated(geohash))
    return latitude, longitude
