import math
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from ..logging import get_logger

_LOG = get_logger("normalize")

# Printed tables mark missing cells with a dot or a dash.
BLANK_MARKERS = frozenset({"", ".", "-", "--", "–", "—"})

_NUMBER_RE = re.compile(r"^[+-]?(\d+([.,]\d*)?|[.,]\d+)$")


def coerce_number(value: Any) -> Optional[float]:
    """Return the numeric reading of a cell value, or None.

    - None and booleans are never numbers.
    - int/float pass through unless NaN or infinite.
    - Strings are trimmed; a single decimal comma is accepted ("25,5").
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return f if math.isfinite(f) else None
    if isinstance(value, str):
        s = value.strip().replace(" ", "")
        if not _NUMBER_RE.match(s):
            return None
        return float(s.replace(",", "."))
    return None


def parse_height(raw: Any) -> Optional[float]:
    """Parse a user-entered wet height; None when it is not a usable number."""
    h = coerce_number(raw)
    if h is None:
        _LOG.debug(f"Rejected height input: {raw!r}")
    return h


def is_blank_marker(text: str) -> bool:
    return text.strip() in BLANK_MARKERS


def parse_user_value(raw: Any) -> Any:
    """Turn a manually typed cell value into a number when possible.

    Blank input (or a printed blank marker) clears the cell.
    """
    if raw is None:
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return raw
    text = str(raw).strip()
    if is_blank_marker(text):
        return None
    number = coerce_number(text)
    if number is None:
        return text
    return int(number) if number.is_integer() and "." not in text and "," not in text else number


def round_half_up(value: float, places: int = 2) -> float:
    """Round like a printed table does (0.005 goes up), not banker's rounding."""
    quantum = Decimal(1).scaleb(-places)
    try:
        return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return value
