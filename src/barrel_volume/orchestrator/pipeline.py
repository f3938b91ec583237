from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..domain.models import Dataset, dataset_to_json_obj
from ..logging import get_logger
from .constants import (
    STAGE_CANCELLED,
    STAGE_DONE,
    STAGE_EXTRACTING,
    STAGE_FAILED,
    STAGE_IDLE,
    STAGE_LABELS,
    STAGE_VERIFYING,
)
from .extraction import (
    AnalysisFailure,
    ImageFacts,
    ModelResponseStore,
    VisionClient,
    extract_table_from_image,
    image_facts,
    verify_table_data,
)
from .parser import find_series_gaps

LOG = get_logger("barreldb-pipeline")


@dataclass
class AnalysisOutcome:
    """Result of one extract→verify attempt.

    ``batch`` is only set when ``stage`` is done; failed and cancelled runs
    never expose partial rows.
    """

    stage: str
    facts: ImageFacts
    model_name: str
    batch: Optional[Dataset] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    series_gaps: List[Tuple[Any, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.stage == STAGE_DONE and self.batch is not None

    @property
    def message(self) -> Optional[str]:
        if self.stage == STAGE_FAILED:
            label = STAGE_LABELS.get(self.failed_stage or "", "analysis")
            return f"An error occurred during the AI {label} step: {self.error}"
        if self.stage == STAGE_CANCELLED:
            return "Analysis cancelled; intermediate results were discarded."
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "ok": self.ok,
            "message": self.message,
            "failed_stage": self.failed_stage,
            "model": self.model_name,
            "image": self.facts.as_dict(),
            "row_count": len(self.batch) if self.batch else 0,
            "series_gaps": [{"key": k, "column": c} for k, c in self.series_gaps],
            "batch": dataset_to_json_obj(self.batch) if self.batch else None,
        }


class AnalysisPipeline:
    """Two dependent stages: extract, then verify using the extraction output.

    States: idle -> extracting -> verifying -> done | failed(stage) | cancelled.
    ``cancel()`` may be called from another thread; it takes effect at the
    next stage boundary.
    """

    def __init__(self, client: VisionClient, *, root_dir: Optional[str] = None, keep_responses: bool = True) -> None:
        self.client = client
        self.root_dir = root_dir
        self.keep_responses = keep_responses
        self.stage = STAGE_IDLE
        self._cancel = threading.Event()

    def cancel(self) -> None:
        LOG.info("Cancellation requested during stage '%s'", self.stage)
        self._cancel.set()

    def _cancelled(self, facts: ImageFacts) -> AnalysisOutcome:
        self.stage = STAGE_CANCELLED
        return AnalysisOutcome(stage=STAGE_CANCELLED, facts=facts, model_name=self.client.model_name)

    def run(self, image_path: str) -> AnalysisOutcome:
        self._cancel.clear()
        facts = image_facts(image_path)
        responses = ModelResponseStore(root_dir=self.root_dir, facts=facts) if self.keep_responses else None
        LOG.info("Analyzing %s (sha256=%s)", facts.filename, (facts.sha256 or "?")[:12])

        try:
            self.stage = STAGE_EXTRACTING
            extracted = extract_table_from_image(image_path, self.client, responses=responses)
            if self._cancel.is_set():
                return self._cancelled(facts)

            self.stage = STAGE_VERIFYING
            verified = verify_table_data(image_path, extracted, self.client, responses=responses)
            if self._cancel.is_set():
                return self._cancelled(facts)
        except AnalysisFailure as exc:
            failed = exc.stage or self.stage
            LOG.error("AI %s step failed for %s: %s", exc.stage_label, facts.filename, exc.message)
            self.stage = STAGE_FAILED
            return AnalysisOutcome(
                stage=STAGE_FAILED,
                facts=facts,
                model_name=self.client.model_name,
                failed_stage=failed,
                error=exc.message,
            )

        gaps = find_series_gaps(verified)
        if gaps:
            LOG.warning("Verified batch still has %d series gap(s): %s", len(gaps), gaps[:5])
        self.stage = STAGE_DONE
        return AnalysisOutcome(
            stage=STAGE_DONE,
            facts=facts,
            model_name=self.client.model_name,
            batch=verified,
            series_gaps=gaps,
        )
