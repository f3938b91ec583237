from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ..domain.models import (
    CONFIDENCE_CHOICES,
    CONFIDENCE_LOW,
    Cell,
    Dataset,
    Row,
    dataset_columns,
    empty_cell,
    primary_key_column,
)
from ..domain.normalize import coerce_number, is_blank_marker
from ..logging import get_logger


LOG = get_logger("barreldb-parser")


class JsonValidationError(Exception):
    pass


def _normalize_confidence(value: Any) -> str:
    if isinstance(value, str):
        candidate = value.strip().lower()
        if candidate in CONFIDENCE_CHOICES:
            return candidate
    return CONFIDENCE_LOW


def _normalize_value(value: Any, where: str) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        raise JsonValidationError(f"{where}: boolean is not a table value")
    if isinstance(value, (int, float)):
        if coerce_number(value) is None:
            raise JsonValidationError(f"{where}: non-finite number")
        return value
    if isinstance(value, str):
        if is_blank_marker(value):
            return None
        number = coerce_number(value)
        if number is None:
            return value.strip()
        return int(number) if number.is_integer() else number
    raise JsonValidationError(f"{where}: value must be a number, string or null")


def _normalize_cell(raw: Any, where: str) -> Cell:
    if isinstance(raw, dict):
        if "value" not in raw:
            raise JsonValidationError(f"{where}: cell object needs a 'value' key")
        return Cell(_normalize_value(raw.get("value"), where), _normalize_confidence(raw.get("confidence")))
    # Models occasionally drop the cell wrapper; keep the reading but do not trust it.
    return Cell(_normalize_value(raw, where), CONFIDENCE_LOW)


def parse_and_validate_batch(payload: Any) -> Dataset:
    """Validate a model reply and turn it into a Dataset.

    Expected input shape (from the extraction/verification prompts):
    - a JSON array, one object per table row
    - each row maps column name -> {"value": number|string|null, "confidence": tier}

    Rows are padded to the batch's common column set with empty high
    confidence cells, so every row carries the same columns.
    """
    if not isinstance(payload, list):
        raise JsonValidationError("Batch must be a JSON array of row objects")

    rows: Dataset = []
    for idx, item in enumerate(payload):
        if not isinstance(item, dict):
            raise JsonValidationError(f"rows[{idx}] must be an object")
        row: Row = {}
        for column, raw in item.items():
            name = str(column).strip()
            if not name:
                raise JsonValidationError(f"rows[{idx}] has an empty column name")
            row[name] = _normalize_cell(raw, f"rows[{idx}].{name}")
        rows.append(row)

    columns = dataset_columns(rows)
    padded = 0
    aligned: Dataset = []
    for row in rows:
        if len(row) != len(columns):
            padded += 1
        aligned.append({c: row.get(c) or empty_cell() for c in columns})

    LOG.debug("Parsed batch with %d rows and %d columns (%d padded)", len(aligned), len(columns), padded)
    return aligned


def series_family(column: str) -> Optional[str]:
    """Capacity prefix of a volume column ("390L_Diam80" -> "390L")."""
    if "_" not in column:
        return None
    family = column.split("_", 1)[0].strip()
    return family or None


def find_series_gaps(dataset: Dataset) -> List[Tuple[Any, str]]:
    """Return (row key value, column) pairs that break the no-gap rule.

    Within one row and one capacity family, once a cell is empty every later
    cell of that family must be empty too. This is a diagnostic only; the
    verification stage is responsible for upholding it.
    """
    primary = primary_key_column(dataset)
    gaps: List[Tuple[Any, str]] = []
    for row in dataset:
        key_cell = row.get(primary) if primary else None
        key_value = key_cell.value if key_cell is not None else None
        seen_empty: Dict[str, bool] = {}
        for column, cell in row.items():
            if column == primary:
                continue
            family = series_family(column)
            if family is None:
                continue
            if cell.value is None:
                seen_empty[family] = True
            elif seen_empty.get(family):
                gaps.append((key_value, column))
    return gaps
