"""Geohash bucket key tests."""

import pytest

from etl import geohash


def test_known_values():
    """Reference hashes from the original geohash.org examples."""
    assert geohash.encode(57.64911, 10.40744, 11) == "u4pruydqqvj"
    assert geohash.encode(42.6, -5.6, 5) == "ezs42"


def test_precision_controls_length_and_prefix():
    full = geohash.encode(40.7128, -74.0060, 12)
    for precision in range(1, 13):
        key = geohash.encode(40.7128, -74.0060, precision)
        assert len(key) == precision
        assert full.startswith(key)


def test_deterministic():
    keys = {geohash.encode(51.5074, -0.1278, 7) for _ in range(50)}
    assert len(keys) == 1


def test_points_inside_one_cell_share_key():
    key = geohash.encode(40.7128, -74.0060, 7)
    lat_min, lat_max, lon_min, lon_max = geohash.bounds(key)

    # Corners nudged inward and the centre all map back to the same cell
    eps = 1e-9
    for lat, lon in [
        (lat_min + eps, lon_min + eps),
        (lat_max - eps, lon_max - eps),
        (lat_min + eps, lon_max - eps),
        geohash.decode(key),
    ]:
        assert geohash.encode(lat, lon, 7) == key


def test_cell_size_is_street_level_at_precision_7():
    lat_min, lat_max, lon_min, lon_max = geohash.bounds(geohash.encode(0.0, 0.0, 7))
    # ~153 m per side at the equator (1 degree ≈ 111 km)
    assert (lat_max - lat_min) * 111_000 == pytest.approx(153, rel=0.05)
    assert (lon_max - lon_min) * 111_000 == pytest.approx(153, rel=0.05)


def test_distant_points_differ():
    assert geohash.encode(40.7128, -74.0060, 7) != geohash.encode(40.7306, -73.9352, 7)


def test_extremes_are_valid():
    assert geohash.encode(90.0, 180.0, 6) == "zzzzzz"
    assert geohash.encode(-90.0, -180.0, 6) == "000000"


@pytest.mark.parametrize(
    "lat,lon,precision",
    [(91.0, 0.0, 7), (-90.5, 0.0, 7), (0.0, 180.1, 7), (0.0, 0.0, 0), (0.0, 0.0, 13)],
)
def test_invalid_input_raises(lat, lon, precision):
    with pytest.raises(ValueError):
        geohash.encode(lat, lon, precision)


def test_bounds_rejects_bad_characters():
    with pytest.raises(ValueError):
        geohash.bounds("u4pa")  # 'a' is not in the geohash alphabet


def test_bounds_contain_decoded_centre():
    lat_min, lat_max, lon_min, lon_max = geohash.bounds("ezs42")
    lat, lon = geohash.decode("ezs42")
    assert lat_min < lat < lat_max
    assert lon_min < lon < lon_max
    assert lat == pytest.approx(42.605, abs=0.03)
    assert lon == pytest.approx(-5.603, abs=0.03)


def test_empty_geohash_rejected():
    with pytest.raises(ValueError):
        geohash.decode("")
