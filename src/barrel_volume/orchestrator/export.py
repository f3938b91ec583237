from __future__ import annotations

import csv
import io
import json

from ..domain.models import Dataset, dataset_columns, dataset_to_json_obj


def dataset_to_csv(dataset: Dataset) -> str:
    """One header line, one line per row, raw cell values (empty for null)."""
    if not dataset:
        return ""
    columns = dataset_columns(dataset)
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(columns)
    for row in dataset:
        out = []
        for column in columns:
            cell = row.get(column)
            out.append("" if cell is None or cell.value is None else cell.value)
        writer.writerow(out)
    return buf.getvalue()


def dataset_to_json(dataset: Dataset) -> str:
    return json.dumps(dataset_to_json_obj(dataset), ensure_ascii=False, indent=2)
