from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from barrel_volume.domain.models import Cell, Dataset
from barrel_volume.orchestrator.extraction import VisionServiceError


def make_dataset(rows: List[Dict[str, Any]]) -> Dataset:
    """Build a Dataset from {column: value} dicts; tuples give (value, confidence)."""
    out: Dataset = []
    for raw in rows:
        row = {}
        for column, value in raw.items():
            if isinstance(value, tuple):
                row[column] = Cell(value[0], value[1])
            else:
                row[column] = Cell(value, "high")
        out.append(row)
    return out


class FakeVisionClient:
    """Returns queued replies in order; exceptions in the queue are raised."""

    model_name = "fake/vision-model"

    def __init__(self, replies: List[Union[str, Exception]], on_call: Optional[Callable[[int], None]] = None) -> None:
        self.replies = list(replies)
        self.calls: List[Dict[str, Any]] = []
        self.on_call = on_call

    def complete(self, prompt: str, image_data_url: str, *, followup: Optional[str] = None) -> str:
        self.calls.append({"prompt": prompt, "image": image_data_url, "followup": followup})
        if self.on_call is not None:
            self.on_call(len(self.calls))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def reply_for(rows: List[Dict[str, Any]]) -> str:
    return json.dumps(
        [{k: {"value": v, "confidence": "high"} for k, v in row.items()} for row in rows],
        ensure_ascii=False,
    )


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    (tmp_path / "README.md").write_text("test marker", encoding="utf-8")
    return tmp_path


@pytest.fixture
def page_image(tmp_path: Path) -> Path:
    path = tmp_path / "page.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 32)
    return path


@pytest.fixture
def service_error() -> VisionServiceError:
    return VisionServiceError("HTTP 503 from upstream")
