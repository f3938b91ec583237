from __future__ import annotations

from typing import Dict, Optional, Tuple

from ..logging import get_logger
from .models import Cell, Dataset, Row, primary_key_column
from .normalize import coerce_number

LOG = get_logger("barreldb-reconcile")

# Canonical row key: ("number", 25.0) for heights, ("text", "abc") otherwise.
RowKey = Tuple[str, object]


def row_key(cell: Optional[Cell]) -> Optional[RowKey]:
    """Canonical merge key for a primary-key cell, or None if it has no value.

    Numeric-coercible values collapse to one float key so 10, 10.0 and "10"
    address the same row.
    """
    if cell is None or cell.value is None:
        return None
    number = coerce_number(cell.value)
    if number is not None:
        return ("number", number)
    text = str(cell.value).strip()
    if not text:
        return None
    return ("text", text)


def _sort_key(key: RowKey) -> Tuple[int, float]:
    # Non-numeric keys compare equal to each other and sort after all heights.
    if key[0] == "number":
        return (0, float(key[1]))  # type: ignore[arg-type]
    return (1, 0.0)


def _merge_row(existing: Row, incoming: Row) -> Row:
    merged = dict(existing)
    for column, cell in incoming.items():
        if cell.value is not None:
            merged[column] = cell
    return merged


def merge_datasets(existing: Dataset, incoming: Dataset) -> Dataset:
    """Merge a confirmed batch into the dataset, keyed by the height column.

    - Incoming non-null cells overwrite existing ones; null cells never do.
    - Rows without a primary-key value are dropped from both sides.
    - The result is sorted by numeric height (stable for non-numeric keys).

    Neither argument is mutated; rows that change are copied.
    """
    if not incoming:
        return list(existing or [])
    if not existing:
        return list(incoming)

    primary = primary_key_column(existing)
    if primary is None:
        LOG.warning("Existing dataset has no columns; replacing it with the incoming batch")
        return list(incoming)

    index: Dict[RowKey, Row] = {}
    dropped = 0
    for row in existing:
        key = row_key(row.get(primary))
        if key is None:
            dropped += 1
            continue
        index[key] = row

    inserted = updated = skipped = 0
    for row in incoming:
        key = row_key(row.get(primary))
        if key is None:
            skipped += 1
            continue
        current = index.get(key)
        if current is None:
            index[key] = dict(row)
            inserted += 1
        else:
            index[key] = _merge_row(current, row)
            updated += 1

    merged = [index[k] for k in sorted(index, key=_sort_key)]
    LOG.debug(
        "Merged on %r: %d inserted, %d updated, %d skipped (no key), %d dropped from existing; %d rows total",
        primary, inserted, updated, skipped, dropped, len(merged),
    )
    return merged
