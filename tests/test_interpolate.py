from __future__ import annotations

import math

from barrel_volume.domain.interpolate import calculate_volume
from barrel_volume.domain.models import (
    STATUS_EXACT,
    STATUS_INTERPOLATED,
    STATUS_INVALID_INPUT,
    STATUS_NEAREST,
    STATUS_NON_NUMERIC,
    STATUS_NOT_FOUND,
    STATUS_UNAVAILABLE,
)

from conftest import make_dataset

COL = "390L_Diam80"


def test_exact_match_returns_table_value():
    data = make_dataset([{"Mouillé": 24, COL: 210}, {"Mouillé": 25, COL: 220}])

    result = calculate_volume(data, COL, 25)

    assert result.status == STATUS_EXACT
    assert result.value == 220
    assert result.note == "Exact value found in table."


def test_linear_interpolation_between_floor_and_ceil_rows():
    data = make_dataset([{"Mouillé": 20, COL: 200}, {"Mouillé": 21, COL: 210}])

    result = calculate_volume(data, COL, 20.5)

    assert result.status == STATUS_INTERPOLATED
    assert result.value == 205.0
    assert result.display == "205.00"
    assert (result.lower, result.upper) == (20.0, 21.0)
    assert result.note == "Interpolated between 20 and 21."


def test_interpolation_rounds_to_two_decimals():
    data = make_dataset([{"Mouillé": 20, COL: 200}, {"Mouillé": 21, COL: 201.3}])

    result = calculate_volume(data, COL, 20.5)

    assert result.status == STATUS_INTERPOLATED
    assert result.value == 200.65
    assert result.display == "200.65"


def test_height_strings_accept_decimal_comma():
    data = make_dataset([{"Mouillé": 20, COL: 200}, {"Mouillé": 21, COL: 210}])

    assert calculate_volume(data, COL, "20,25").value == 202.5


def test_nearest_neighbour_when_no_bounding_rows():
    data = make_dataset([{"Mouillé": 10, COL: 100}, {"Mouillé": 50, COL: 500}])

    result = calculate_volume(data, COL, 12)

    assert result.status == STATUS_NEAREST
    assert result.value == 100
    assert result.used_height == 10.0
    assert "closest height: 10" in result.note


def test_integral_query_between_rows_falls_back_to_nearest():
    data = make_dataset([{"Mouillé": 20, COL: 200}, {"Mouillé": 30, COL: 300}])

    result = calculate_volume(data, COL, 25)

    # Bounds are floor(25) == ceil(25) == 25, which has no row, so this is the
    # same case as heights {10, 50} queried at 12: nearest wins, not 250.
    # The 20/30 tie goes to the first row scanned.
    assert result.status == STATUS_NEAREST
    assert result.used_height == 20.0


def test_nearest_tie_goes_to_first_row_scanned():
    data = make_dataset([{"Mouillé": 14, COL: 140}, {"Mouillé": 10, COL: 100}])

    result = calculate_volume(data, COL, 12)

    assert result.status == STATUS_NEAREST
    assert result.value == 140


def test_non_numeric_bound_blocks_interpolation():
    data = make_dataset([{"Mouillé": 20, COL: "illegible"}, {"Mouillé": 21, COL: 210}])

    result = calculate_volume(data, COL, 20.5)

    assert result.status == STATUS_NON_NUMERIC
    assert result.value is None
    assert result.display == "Data not numeric"


def test_empty_bound_is_not_numeric():
    data = make_dataset([{"Mouillé": 20, COL: None}, {"Mouillé": 21, COL: 210}])

    assert calculate_volume(data, COL, 20.5).status == STATUS_NON_NUMERIC


def test_invalid_height_input():
    data = make_dataset([{"Mouillé": 20, COL: 200}])

    for raw in ("abc", "", None, float("nan"), math.inf):
        result = calculate_volume(data, COL, raw)
        assert result.status == STATUS_INVALID_INPUT
        assert result.value is None


def test_unavailable_without_data_or_column():
    data = make_dataset([{"Mouillé": 20, COL: 200}])

    assert calculate_volume([], COL, 25).status == STATUS_UNAVAILABLE
    assert calculate_volume(data, "999L_Diam1", 20).status == STATUS_UNAVAILABLE
    assert calculate_volume(data, "", 20).display == "N/A"


def test_not_found_when_no_numeric_heights():
    data = make_dataset([{"Mouillé": "n/a", COL: 200}, {"Mouillé": None, COL: 210}])

    result = calculate_volume(data, COL, 5)

    assert result.status == STATUS_NOT_FOUND
    assert result.value is None


def test_height_column_is_not_a_lookup_target():
    data = make_dataset([{"Mouillé": 20, COL: 200}])

    result = calculate_volume(data, "Mouillé", 20)

    assert result.status == STATUS_UNAVAILABLE
    assert result.value is None
