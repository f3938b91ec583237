from __future__ import annotations

from pathlib import Path

from barrel_volume.config import AnalyzerSettings
from barrel_volume.orchestrator import extraction
from barrel_volume.orchestrator.constants import STAGE_CANCELLED, STAGE_DONE, STAGE_FAILED
from barrel_volume.orchestrator.extraction import OpenRouterClient
from barrel_volume.orchestrator.pipeline import AnalysisPipeline

from conftest import FakeVisionClient, reply_for


def test_successful_run_returns_verified_batch(page_image: Path, project_root: Path):
    client = FakeVisionClient(
        [
            reply_for([{"Mouillé": 10, "390L_Diam80": 100}]),
            reply_for([{"Mouillé": 10, "390L_Diam80": 101}]),
        ]
    )
    pipeline = AnalysisPipeline(client, root_dir=str(project_root))

    outcome = pipeline.run(str(page_image))

    assert outcome.stage == STAGE_DONE
    assert outcome.ok
    assert outcome.batch[0]["390L_Diam80"].value == 101
    assert outcome.facts.filename == "page.png"
    assert pipeline.stage == STAGE_DONE
    assert list((project_root / "var" / "model_responses").iterdir())


def test_extraction_failure_stops_before_verification(page_image: Path, service_error):
    client = FakeVisionClient([service_error])

    outcome = AnalysisPipeline(client, keep_responses=False).run(str(page_image))

    assert outcome.stage == STAGE_FAILED
    assert outcome.failed_stage == "extracting"
    assert outcome.batch is None
    assert len(client.calls) == 1
    assert outcome.message.startswith("An error occurred during the AI extraction step")


def test_verification_failure_discards_extracted_rows(page_image: Path):
    client = FakeVisionClient([reply_for([{"Mouillé": 10, "A_1": 1}]), "sorry, I cannot help"])

    outcome = AnalysisPipeline(client, keep_responses=False).run(str(page_image))

    assert outcome.stage == STAGE_FAILED
    assert outcome.failed_stage == "verifying"
    assert outcome.batch is None
    assert "verification" in outcome.message
    assert outcome.as_dict()["batch"] is None


def test_cancel_between_stages_discards_everything(page_image: Path):
    holder = {}
    client = FakeVisionClient(
        [reply_for([{"Mouillé": 10, "A_1": 1}]), reply_for([{"Mouillé": 10, "A_1": 1}])],
        on_call=lambda n: holder["pipeline"].cancel() if n == 1 else None,
    )
    pipeline = AnalysisPipeline(client, keep_responses=False)
    holder["pipeline"] = pipeline

    outcome = pipeline.run(str(page_image))

    assert outcome.stage == STAGE_CANCELLED
    assert outcome.batch is None
    assert len(client.calls) == 1


def test_series_gaps_are_reported_not_fixed(page_image: Path):
    rows = [{"Mouillé": 86, "390L_Diam80": None, "390L_Diam82": 388}]
    client = FakeVisionClient([reply_for(rows), reply_for(rows)])

    outcome = AnalysisPipeline(client, keep_responses=False).run(str(page_image))

    assert outcome.ok
    assert outcome.series_gaps == [(86, "390L_Diam82")]
    assert outcome.batch[0]["390L_Diam82"].value == 388


def test_content_parts_reply_is_a_failed_extraction(monkeypatch, page_image: Path):
    class _Response:
        status_code = 200
        text = ""

        def json(self):
            return {"choices": [{"message": {"content": [{"type": "text", "text": "[]"}]}}]}

    monkeypatch.setattr(extraction.requests, "post", lambda *a, **k: _Response())
    settings = AnalyzerSettings(backend="openrouter", model_name="google/gemini-2.5-pro", api_key="sk-test")

    outcome = AnalysisPipeline(OpenRouterClient(settings), keep_responses=False).run(str(page_image))

    assert outcome.stage == STAGE_FAILED
    assert outcome.failed_stage == "extracting"
    assert "not text" in outcome.message
