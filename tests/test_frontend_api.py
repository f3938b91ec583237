from __future__ import annotations

from pathlib import Path

from starlette.testclient import TestClient

from barrel_volume.orchestrator import BarrelDataService, DatasetStore, create_app
from barrel_volume.orchestrator.pipeline import AnalysisPipeline

from conftest import FakeVisionClient, reply_for

BATCH = [
    {"Mouillé": {"value": 21, "confidence": "high"}, "390L_Diam80": {"value": 210, "confidence": "high"}},
    {"Mouillé": {"value": 20, "confidence": "high"}, "390L_Diam80": {"value": 200, "confidence": "medium"}},
]


def _client(root: Path, replies=None) -> TestClient:
    fake = FakeVisionClient(replies or [])
    svc = BarrelDataService(
        DatasetStore(root_dir=str(root)),
        root_dir=str(root),
        pipeline_factory=lambda: AnalysisPipeline(fake, keep_responses=False),
    )
    app = create_app(root_dir=str(root), service=svc, serve_static=False, allow_origins=["*"])
    return TestClient(app)


def test_confirm_calculate_edit_export_clear(project_root: Path) -> None:
    client = _client(project_root)

    assert client.get("/api/health").json()["status"] == "ok"

    confirmed = client.post("/api/batches/confirm", json=BATCH)
    assert confirmed.status_code == 200
    payload = confirmed.json()
    assert payload["row_count"] == 2
    assert payload["volume_columns"] == ["390L_Diam80"]
    assert payload["rows"][0]["Mouillé"]["value"] == 20

    calc = client.get("/api/calculate", params={"column": "390L_Diam80", "height": "20.5"})
    assert calc.json()["status"] == "interpolated"
    assert calc.json()["display"] == "205.00"

    bad = client.get("/api/calculate", params={"column": "390L_Diam80", "height": "abc"})
    assert bad.status_code == 200
    assert bad.json()["status"] == "invalid-input"

    edited = client.patch("/api/dataset/rows/0", json={"column": "390L_Diam80", "value": "199"})
    assert edited.status_code == 200
    assert edited.json()["row"]["390L_Diam80"] == {"value": 199, "confidence": "user"}
    assert client.patch("/api/dataset/rows/9", json={"column": "390L_Diam80", "value": "1"}).status_code == 404
    assert client.patch("/api/dataset/rows/0", json={"column": "nope", "value": "1"}).status_code == 400

    csv_text = client.get("/api/export/csv").text
    assert csv_text.splitlines()[1] == "20,199"
    assert client.get("/api/export/json").json()[1]["390L_Diam80"]["value"] == 210

    cleared = client.delete("/api/dataset")
    assert cleared.json()["row_count"] == 0


def test_confirm_rejects_malformed_batch(project_root: Path) -> None:
    client = _client(project_root)

    assert client.post("/api/batches/confirm", json={"rows": "nope"}).status_code == 400
    assert client.post("/api/batches/confirm").status_code == 409


def test_analyze_then_confirm_pending(project_root: Path, page_image: Path) -> None:
    rows = [{"Mouillé": 10, "390L_Diam80": 100}]
    client = _client(project_root, [reply_for(rows), reply_for(rows)])

    analyzed = client.post("/api/analyze", json={"image_path": str(page_image)})
    assert analyzed.status_code == 200
    assert analyzed.json()["row_count"] == 1

    confirmed = client.post("/api/batches/confirm")
    assert confirmed.json()["row_count"] == 1
    assert client.get("/api/runs").json()["items"][0]["status"] == "OK"


def test_analyze_failure_is_reported_with_stage(project_root: Path, page_image: Path, service_error) -> None:
    client = _client(project_root, [service_error])

    response = client.post(
        "/api/analyze",
        content=page_image.read_bytes(),
        headers={"content-type": "image/png"},
    )

    assert response.status_code == 502
    body = response.json()
    assert body["failed_stage"] == "extracting"
    assert "extraction" in body["message"]
    assert client.get("/api/dataset").json()["row_count"] == 0
    assert not any((project_root / "var" / "uploads").iterdir())


def test_pending_batch_can_be_corrected_before_confirm(project_root: Path, page_image: Path) -> None:
    rows = [{"Mouillé": 10, "390L_Diam80": 100}]
    client = _client(project_root, [reply_for(rows), reply_for(rows)])

    assert client.get("/api/batches/pending").json()["rows"] is None
    missing = client.patch("/api/batches/pending/rows/0", json={"column": "390L_Diam80", "value": "1"})
    assert missing.status_code == 409

    client.post("/api/analyze", json={"image_path": str(page_image)})
    assert client.get("/api/batches/pending").json()["row_count"] == 1

    edited = client.patch("/api/batches/pending/rows/0", json={"column": "390L_Diam80", "value": "104"})
    assert edited.status_code == 200
    assert edited.json()["row"]["390L_Diam80"] == {"value": 104, "confidence": "user"}
    assert client.patch("/api/batches/pending/rows/5", json={"column": "390L_Diam80", "value": "1"}).status_code == 404
    assert client.patch("/api/batches/pending/rows/0", json={"column": "nope", "value": "1"}).status_code == 400

    confirmed = client.post("/api/batches/confirm").json()
    assert confirmed["rows"][0]["390L_Diam80"] == {"value": 104, "confidence": "user"}


def test_cancel_without_running_analysis(project_root: Path) -> None:
    client = _client(project_root)

    response = client.post("/api/analyze/cancel")

    assert response.status_code == 200
    assert response.json() == {"cancelled": False}
