from __future__ import annotations

import math
from typing import Any, Dict, Optional

from ..logging import get_logger
from .models import (
    CalculationResult,
    Dataset,
    Row,
    STATUS_EXACT,
    STATUS_INTERPOLATED,
    STATUS_INVALID_INPUT,
    STATUS_NEAREST,
    STATUS_NON_NUMERIC,
    STATUS_NOT_FOUND,
    STATUS_UNAVAILABLE,
    primary_key_column,
)
from .normalize import coerce_number, parse_height, round_half_up

LOG = get_logger("barreldb-interpolate")


def _fmt_height(h: float) -> str:
    return str(int(h)) if h.is_integer() else str(h)


def _height_index(dataset: Dataset, height_column: str) -> Dict[float, Row]:
    index: Dict[float, Row] = {}
    for row in dataset:
        cell = row.get(height_column)
        h = cell.number if cell is not None else None
        if h is not None:
            index[h] = row
    return index


def _target_value(row: Row, column: str) -> Any:
    cell = row.get(column)
    return cell.value if cell is not None else None


def calculate_volume(dataset: Dataset, target_column: str, query_height: Any) -> CalculationResult:
    """Look up the volume for a wet height in one barrel column.

    Resolution order: exact row, linear interpolation between the
    floor(height) and ceil(height) rows, then the nearest known height.
    Every outcome is reported through ``CalculationResult.status``.
    """
    height_column = primary_key_column(dataset)
    if (
        height_column is None
        or not target_column
        or target_column == height_column
        or target_column not in dataset[0]
    ):
        return CalculationResult(STATUS_UNAVAILABLE, note="No data available for this column.")

    height = parse_height(query_height)
    if height is None:
        return CalculationResult(STATUS_INVALID_INPUT, note="Wet height must be a number.")

    index = _height_index(dataset, height_column)

    exact = index.get(height)
    if exact is not None:
        return CalculationResult(
            STATUS_EXACT,
            value=_target_value(exact, target_column),
            note="Exact value found in table.",
            used_height=height,
        )

    lower_h = float(math.floor(height))
    upper_h = float(math.ceil(height))
    lower_row = index.get(lower_h)
    upper_row = index.get(upper_h)
    if lower_row is not None and upper_row is not None:
        lower_v = coerce_number(_target_value(lower_row, target_column))
        upper_v = coerce_number(_target_value(upper_row, target_column))
        if lower_v is None or upper_v is None:
            return CalculationResult(
                STATUS_NON_NUMERIC,
                note="Cannot interpolate non-numeric values.",
                lower=lower_h,
                upper=upper_h,
            )
        fraction = height - lower_h
        volume = lower_v + (upper_v - lower_v) * fraction
        return CalculationResult(
            STATUS_INTERPOLATED,
            value=round_half_up(volume, 2),
            note=f"Interpolated between {_fmt_height(lower_h)} and {_fmt_height(upper_h)}.",
            lower=lower_h,
            upper=upper_h,
        )

    nearest_row: Optional[Row] = None
    nearest_h: Optional[float] = None
    min_diff = math.inf
    for row in dataset:
        cell = row.get(height_column)
        row_h = cell.number if cell is not None else None
        if row_h is None:
            continue
        diff = abs(row_h - height)
        if diff < min_diff:
            min_diff = diff
            nearest_row = row
            nearest_h = row_h

    if nearest_row is None or nearest_h is None:
        return CalculationResult(STATUS_NOT_FOUND, note="No row has a numeric height.")

    LOG.debug("No bounding rows for %s; nearest height is %s", height, nearest_h)
    return CalculationResult(
        STATUS_NEAREST,
        value=_target_value(nearest_row, target_column),
        note=f"No exact match. Showing value for closest height: {_fmt_height(nearest_h)}.",
        used_height=nearest_h,
    )
