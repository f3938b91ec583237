from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .normalize import coerce_number

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"
CONFIDENCE_USER = "user"

CONFIDENCE_CHOICES = (
    CONFIDENCE_HIGH,
    CONFIDENCE_MEDIUM,
    CONFIDENCE_LOW,
    CONFIDENCE_USER,
)

KIND_NUMBER = "number"
KIND_TEXT = "text"
KIND_EMPTY = "empty"

CellValue = Union[int, float, str, None]

STATUS_EXACT = "exact"
STATUS_INTERPOLATED = "interpolated"
STATUS_NEAREST = "nearest"
STATUS_NON_NUMERIC = "non-numeric"
STATUS_NOT_FOUND = "not-found"
STATUS_INVALID_INPUT = "invalid-input"
STATUS_UNAVAILABLE = "unavailable"

_STATUS_PLACEHOLDERS = {
    STATUS_NON_NUMERIC: "Data not numeric",
    STATUS_NOT_FOUND: "No match found",
    STATUS_INVALID_INPUT: "Invalid input",
    STATUS_UNAVAILABLE: "N/A",
}


@dataclass(frozen=True)
class Cell:
    """One table cell: the transcribed value and how much we trust it.

    ``value`` keeps whatever the source produced (number, text or None).
    Numeric interpretation goes through ``kind``/``number`` so callers never
    rely on implicit coercion.
    """

    value: CellValue
    confidence: str = CONFIDENCE_HIGH

    @property
    def kind(self) -> str:
        if self.value is None:
            return KIND_EMPTY
        if isinstance(self.value, str) and not self.value.strip():
            return KIND_EMPTY
        return KIND_NUMBER if self.number is not None else KIND_TEXT

    @property
    def number(self) -> Optional[float]:
        return coerce_number(self.value)

    @property
    def is_empty(self) -> bool:
        return self.value is None


Row = Dict[str, Cell]
Dataset = List[Row]


def empty_cell() -> Cell:
    """A confidently empty cell, used to pad rows to a common column set."""
    return Cell(None, CONFIDENCE_HIGH)


def user_cell(value: CellValue) -> Cell:
    return Cell(value, CONFIDENCE_USER)


def primary_key_column(dataset: Dataset) -> Optional[str]:
    """Name of the first column of the first row, or None."""
    if not dataset:
        return None
    for column in dataset[0]:
        return column
    return None


def dataset_columns(dataset: Dataset) -> List[str]:
    """Union of all row columns in first-seen order."""
    seen: Dict[str, None] = {}
    for row in dataset:
        for column in row:
            seen.setdefault(column, None)
    return list(seen)


def volume_columns(dataset: Dataset) -> List[str]:
    """Columns a volume can be looked up in (everything but the height column)."""
    height = primary_key_column(dataset)
    if height is None:
        return []
    return [c for c in dataset[0] if c != height]


def cell_to_dict(cell: Cell) -> Dict[str, Any]:
    return {"value": cell.value, "confidence": cell.confidence}


def row_to_dict(row: Row) -> Dict[str, Dict[str, Any]]:
    return {column: cell_to_dict(cell) for column, cell in row.items()}


def dataset_to_json_obj(dataset: Dataset) -> List[Dict[str, Dict[str, Any]]]:
    """JSON-serializable form, identical to the extraction reply shape."""
    return [row_to_dict(row) for row in dataset]


def cell_from_dict(data: Dict[str, Any]) -> Cell:
    """Inverse of ``cell_to_dict`` for trusted data (e.g. our own store)."""
    confidence = data.get("confidence")
    if confidence not in CONFIDENCE_CHOICES:
        confidence = CONFIDENCE_LOW
    return Cell(data.get("value"), confidence)


def dataset_from_json_obj(data: List[Dict[str, Dict[str, Any]]]) -> Dataset:
    return [{column: cell_from_dict(cell) for column, cell in row.items()} for row in data]


@dataclass(frozen=True)
class CalculationResult:
    """Outcome of a volume lookup.

    ``status`` is one of the STATUS_* constants above.
    ``value`` is None whenever the status carries no volume.
    """

    status: str
    value: CellValue = None
    note: Optional[str] = None
    lower: Optional[float] = None
    upper: Optional[float] = None
    used_height: Optional[float] = None

    @property
    def display(self) -> str:
        if self.value is None:
            return _STATUS_PLACEHOLDERS.get(self.status, "-")
        if self.status == STATUS_INTERPOLATED and isinstance(self.value, float):
            return f"{self.value:.2f}"
        return str(self.value)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "value": self.value,
            "display": self.display,
            "note": self.note,
            "lower": self.lower,
            "upper": self.upper,
            "used_height": self.used_height,
        }
