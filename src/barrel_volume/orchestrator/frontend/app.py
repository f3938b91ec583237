from __future__ import annotations

import mimetypes
import os
import tempfile
from typing import Any, List, Optional

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route
from starlette.staticfiles import StaticFiles

from ...domain.models import dataset_to_json_obj, row_to_dict
from ...logging import get_logger
from ...paths import find_project_root, var_dir
from ..parser import JsonValidationError, parse_and_validate_batch
from ..pipeline import AnalysisOutcome
from ..service import BarrelDataService


LOG = get_logger("barreldb-frontend")

DEFAULT_STATIC_SUBDIR = os.path.join("frontend", "barrel-ui", "dist")


def _parse_int(value: Optional[str], *, default: int, minimum: int, maximum: int) -> int:
    try:
        parsed = int(value) if value is not None else default
    except (TypeError, ValueError):
        parsed = default
    if parsed < minimum:
        return minimum
    if parsed > maximum:
        return maximum
    return parsed


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body must be JSON") from exc


def create_app(
    root_dir: Optional[str] = None,
    *,
    service: Optional[BarrelDataService] = None,
    static_dir: Optional[str] = None,
    allow_origins: Optional[List[str]] = None,
    serve_static: bool = True,
) -> Starlette:
    """Create a Starlette app exposing the barrel dataset API and optional frontend."""

    project_root = find_project_root(root_dir)
    svc = service or BarrelDataService(root_dir=project_root)

    resolved_static_dir: Optional[str] = None
    if serve_static:
        candidate = os.path.abspath(os.path.join(project_root, static_dir or DEFAULT_STATIC_SUBDIR))
        if os.path.isdir(candidate):
            resolved_static_dir = candidate
            LOG.info("Serving static frontend from %s", resolved_static_dir)
        else:
            LOG.warning("Frontend build not found at %s; API will run without static assets.", candidate)
    else:
        LOG.info("Static frontend serving disabled (API only mode).")

    def _dataset_payload() -> dict:
        data = svc.dataset
        return {
            "rows": dataset_to_json_obj(data),
            "columns": svc.columns(),
            "volume_columns": svc.volume_columns(),
            "row_count": len(data),
        }

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "db_path": svc.store.db_path})

    async def get_dataset(_: Request) -> JSONResponse:
        return JSONResponse(_dataset_payload())

    async def clear_dataset(_: Request) -> JSONResponse:
        await run_in_threadpool(svc.clear_all)
        return JSONResponse(_dataset_payload())

    async def edit_row(request: Request) -> JSONResponse:
        index = int(request.path_params["index"])
        body = await _json_body(request)
        if not isinstance(body, dict) or not isinstance(body.get("column"), str):
            raise HTTPException(status_code=400, detail="Body must be {column, value}")
        try:
            row = await run_in_threadpool(svc.edit_cell, index, body["column"], body.get("value"))
        except IndexError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except KeyError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown column: {exc.args[0]}") from exc
        return JSONResponse({"index": index, "row": row_to_dict(row)})

    async def _run_analysis(image_path: str) -> AnalysisOutcome:
        try:
            return await run_in_threadpool(svc.analyze, image_path)
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    async def cancel_analysis(_: Request) -> JSONResponse:
        cancelled = await run_in_threadpool(svc.cancel_analysis)
        return JSONResponse({"cancelled": cancelled})

    async def get_pending(_: Request) -> JSONResponse:
        pending = svc.pending
        if pending is None:
            return JSONResponse({"rows": None, "row_count": 0})
        return JSONResponse({"rows": dataset_to_json_obj(pending), "row_count": len(pending)})

    async def edit_pending_row(request: Request) -> JSONResponse:
        index = int(request.path_params["index"])
        body = await _json_body(request)
        if not isinstance(body, dict) or not isinstance(body.get("column"), str):
            raise HTTPException(status_code=400, detail="Body must be {column, value}")
        try:
            row = await run_in_threadpool(svc.edit_pending_cell, index, body["column"], body.get("value"))
        except IndexError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except KeyError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown column: {exc.args[0]}") from exc
        except LookupError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return JSONResponse({"index": index, "row": row_to_dict(row)})

    async def analyze(request: Request) -> JSONResponse:
        content_type = (request.headers.get("content-type") or "").split(";")[0].strip().lower()
        if content_type.startswith("image/"):
            data = await request.body()
            if not data:
                raise HTTPException(status_code=400, detail="Empty image body")
            upload_dir = os.path.join(var_dir(project_root), "uploads")
            os.makedirs(upload_dir, exist_ok=True)
            suffix = mimetypes.guess_extension(content_type) or ".img"
            with tempfile.NamedTemporaryFile(dir=upload_dir, suffix=suffix, delete=False) as handle:
                handle.write(data)
                image_path = handle.name
            try:
                outcome = await _run_analysis(image_path)
            finally:
                os.unlink(image_path)
        else:
            body = await _json_body(request)
            image_path = body.get("image_path") if isinstance(body, dict) else None
            if not isinstance(image_path, str) or not image_path.strip():
                raise HTTPException(status_code=400, detail="Provide image bytes or {image_path}")
            outcome = await _run_analysis(image_path)
        status_code = 200 if outcome.ok else 502
        return JSONResponse(outcome.as_dict(), status_code=status_code)

    async def confirm_batch(request: Request) -> JSONResponse:
        raw = await request.body()
        batch = None
        if raw.strip():
            body = await _json_body(request)
            try:
                batch = parse_and_validate_batch(body)
            except JsonValidationError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            await run_in_threadpool(svc.confirm, batch)
        except LookupError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return JSONResponse(_dataset_payload())

    async def discard_batch(_: Request) -> JSONResponse:
        svc.discard()
        return JSONResponse({"pending": None})

    async def calculate(request: Request) -> JSONResponse:
        qp = request.query_params
        column = qp.get("column") or ""
        result = svc.calculate(column, qp.get("height"))
        return JSONResponse(result.as_dict())

    async def export_csv(_: Request) -> Response:
        return PlainTextResponse(
            svc.export_csv(),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="barrel_data.csv"'},
        )

    async def export_json(_: Request) -> Response:
        return Response(svc.export_json(), media_type="application/json")

    async def runs(request: Request) -> JSONResponse:
        limit = _parse_int(request.query_params.get("limit"), default=20, minimum=1, maximum=200)
        return JSONResponse({"items": svc.runs(limit)})

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/dataset", get_dataset, methods=["GET"]),
        Route("/api/dataset", clear_dataset, methods=["DELETE"]),
        Route("/api/dataset/rows/{index:int}", edit_row, methods=["PATCH"]),
        Route("/api/analyze", analyze, methods=["POST"]),
        Route("/api/analyze/cancel", cancel_analysis, methods=["POST"]),
        Route("/api/batches/confirm", confirm_batch, methods=["POST"]),
        Route("/api/batches/pending", get_pending, methods=["GET"]),
        Route("/api/batches/pending/rows/{index:int}", edit_pending_row, methods=["PATCH"]),
        Route("/api/batches/discard", discard_batch, methods=["POST"]),
        Route("/api/calculate", calculate, methods=["GET"]),
        Route("/api/export/csv", export_csv, methods=["GET"]),
        Route("/api/export/json", export_json, methods=["GET"]),
        Route("/api/runs", runs, methods=["GET"]),
    ]

    app = Starlette(debug=False, routes=routes)

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    cors_allow_origins = ["*"] if "*" in origins else origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if resolved_static_dir:
        app.mount("/", StaticFiles(directory=resolved_static_dir, html=True), name="frontend")
    else:
        async def api_only(_: Request) -> JSONResponse:
            return JSONResponse({"detail": "Barrel dataset API is running. No static frontend is being served."})

        app.add_route("/", api_only, methods=["GET"])

    return app


__all__ = ["create_app"]
