from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import load_analyzer_settings
from ..domain.interpolate import calculate_volume
from ..domain.models import CalculationResult, Dataset, Row, dataset_columns, user_cell, volume_columns
from ..domain.normalize import parse_user_value
from ..domain.reconcile import merge_datasets
from ..logging import get_logger
from .constants import RUN_STATUS_CANCELLED, RUN_STATUS_ERROR, RUN_STATUS_OK, STAGE_CANCELLED, STAGE_FAILED
from .export import dataset_to_csv, dataset_to_json
from .extraction import build_vision_client
from .pipeline import AnalysisOutcome, AnalysisPipeline
from .store import DatasetStore


LOG = get_logger("barreldb-service")


def _edit_cell(dataset: Dataset, row_index: int, column: str, raw_value: Any) -> Tuple[Dataset, Row, bool]:
    """Return (new dataset, edited row, changed) without touching ``dataset``."""
    if row_index < 0 or row_index >= len(dataset):
        raise IndexError(f"Row {row_index} does not exist")
    if column not in dataset_columns(dataset):
        raise KeyError(column)
    value = parse_user_value(raw_value)
    current = dataset[row_index].get(column)
    if current is not None and current.value == value and type(current.value) is type(value):
        return dataset, dataset[row_index], False
    row = dict(dataset[row_index])
    row[column] = user_cell(value)
    edited = list(dataset)
    edited[row_index] = row
    return edited, row, True


class BarrelDataService:
    """Owns the current dataset and the pending (unconfirmed) batch.

    Mutations (confirm, edit, clear) run under one lock: each reads the
    current snapshot, saves the replacement and swaps it in before the next
    reader sees it. Engines stay pure; this class does the bookkeeping.
    """

    def __init__(
        self,
        store: Optional[DatasetStore] = None,
        *,
        root_dir: Optional[str] = None,
        pipeline_factory: Optional[Callable[[], AnalysisPipeline]] = None,
    ) -> None:
        self.root_dir = root_dir
        self.store = store or DatasetStore(root_dir=root_dir)
        self._pipeline_factory = pipeline_factory or self._default_pipeline
        self._lock = threading.Lock()
        self._dataset: Dataset = self.store.load()
        self._pending: Optional[Dataset] = None
        self._active: Optional[AnalysisPipeline] = None

    def _default_pipeline(self) -> AnalysisPipeline:
        settings = load_analyzer_settings(self.root_dir)
        return AnalysisPipeline(build_vision_client(settings), root_dir=self.root_dir)

    # ---- read side --------------------------------------------------------------
    @property
    def dataset(self) -> Dataset:
        return list(self._dataset)

    @property
    def pending(self) -> Optional[Dataset]:
        return list(self._pending) if self._pending is not None else None

    def columns(self) -> List[str]:
        return dataset_columns(self._dataset)

    def volume_columns(self) -> List[str]:
        return volume_columns(self._dataset)

    def calculate(self, column: str, height: Any) -> CalculationResult:
        result = calculate_volume(self._dataset, column, height)
        LOG.info("Volume lookup column=%s height=%r -> %s %s", column, height, result.status, result.display)
        return result

    def export_csv(self) -> str:
        return dataset_to_csv(self._dataset)

    def export_json(self) -> str:
        return dataset_to_json(self._dataset)

    def runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self.store.fetch_runs(limit)

    # ---- analysis ---------------------------------------------------------------
    def analyze(self, image_path: str) -> AnalysisOutcome:
        """Run extract→verify; a successful batch becomes the pending batch.

        Only one analysis runs at a time; a second call while one is active
        raises ``RuntimeError``.
        """
        pipeline = self._pipeline_factory()
        with self._lock:
            if self._active is not None:
                raise RuntimeError("An analysis is already running")
            self._active = pipeline
            self._pending = None
        try:
            outcome = pipeline.run(image_path)
        finally:
            with self._lock:
                self._active = None

        if outcome.stage == STAGE_FAILED:
            status = RUN_STATUS_ERROR
        elif outcome.stage == STAGE_CANCELLED:
            status = RUN_STATUS_CANCELLED
        else:
            status = RUN_STATUS_OK
            with self._lock:
                self._pending = outcome.batch
        run_id = self.store.record_run(
            {
                "filename": outcome.facts.filename,
                "sha256": outcome.facts.sha256,
                "model_name": outcome.model_name,
                "status": status,
                "failed_stage": outcome.failed_stage,
                "row_count": len(outcome.batch or []),
                "notes": outcome.error,
            }
        )
        LOG.info("Analysis run %s finished with status %s", run_id, status)
        return outcome

    def cancel_analysis(self) -> bool:
        """Ask the running analysis to stop at its next stage boundary."""
        with self._lock:
            pipeline = self._active
        if pipeline is None:
            return False
        pipeline.cancel()
        LOG.info("Cancellation requested for the running analysis")
        return True

    def discard(self) -> None:
        with self._lock:
            self._pending = None
        LOG.info("Pending batch discarded")

    def edit_pending_cell(self, row_index: int, column: str, raw_value: Any) -> Row:
        """Correct one cell of the unconfirmed batch before it is merged."""
        with self._lock:
            if self._pending is None:
                raise LookupError("No pending batch to edit")
            self._pending, row, _ = _edit_cell(self._pending, row_index, column, raw_value)
        return row

    # ---- mutations --------------------------------------------------------------
    def confirm(self, batch: Optional[Dataset] = None) -> Dataset:
        """Merge a batch (default: the pending one) into the saved dataset."""
        with self._lock:
            incoming = batch if batch is not None else self._pending
            if incoming is None:
                raise LookupError("No batch to confirm")
            merged = merge_datasets(self._dataset, incoming)
            if not self.store.save(merged):
                LOG.warning("Merged dataset could not be saved; keeping it in memory only")
            self._dataset = merged
            self._pending = None
        LOG.info("Confirmed %d rows; dataset now has %d rows", len(incoming), len(merged))
        return list(merged)

    def edit_cell(self, row_index: int, column: str, raw_value: Any) -> Row:
        """Manually correct one saved cell; its confidence becomes ``user``."""
        with self._lock:
            edited, row, changed = _edit_cell(self._dataset, row_index, column, raw_value)
            if changed:
                self.store.save(edited)
                self._dataset = edited
        if changed:
            LOG.info("Edited row %d column %s -> %r", row_index, column, row[column].value)
        return row

    def clear_all(self) -> None:
        with self._lock:
            self.store.clear()
            self._dataset = []
            self._pending = None
        LOG.info("All saved data cleared")
