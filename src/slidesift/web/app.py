from __future__ import annotations

import logging
import threading
from typing import Any

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from slidesift.application.services.batch_service import BatchService, BatchRunSummary, build_batch_service
from slidesift.core.cancellation import CancellationToken
from slidesift.core.config import AppPaths
from slidesift.core.errors import BatchError, SlidesiftError

logger = logging.getLogger(__name__)


class BatchRunRequest(BaseModel):
    start_page: int | None = None
    end_page: int | None = None


class _RunState:
    """The one background batch run this app may have in flight."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.thread: threading.Thread | None = None
        self.token: CancellationToken | None = None
        self.last_summary: BatchRunSummary | None = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


def _status_for(exc: SlidesiftError) -> int:
    detail = str(exc).lower()
    if isinstance(exc, BatchError) and "not found" in detail:
        return 404
    if isinstance(exc, BatchError):
        return 409
    return 400


def _summary_dict(summary: BatchRunSummary | None) -> dict[str, Any] | None:
    if summary is None:
        return None
    return {
        "total": summary.total,
        "completed": summary.completed,
        "failed": summary.failed,
        "cancelled": summary.cancelled,
        "elapsed_seconds": round(summary.elapsed_seconds, 3),
        "item_ids": list(summary.item_ids),
    }


def create_app(
    paths: AppPaths,
    batch_service: BatchService | None = None,
    *,
    kind: str = "presentation",
    analyze_url: str | None = None,
) -> FastAPI:
    app = FastAPI(title="Slidesift", version="0.1.0")
    service = batch_service or build_batch_service(paths, kind=kind, analyze_url=analyze_url)
    run_state = _RunState()
    app.state.batch_service = service
    app.state.run_state = run_state

    def _get_item(item_id: str) -> dict[str, Any]:
        try:
            return service.get(item_id).to_dict(include_result=True)
        except SlidesiftError as exc:
            raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {"ok": True, "running": run_state.running}

    @app.get("/api/batch")
    def api_batch() -> dict[str, Any]:
        snapshot = service.snapshot()
        snapshot["running"] = run_state.running
        snapshot["last_run"] = _summary_dict(run_state.last_summary)
        snapshot["last_error"] = run_state.last_error
        return snapshot

    @app.post("/api/batch/items")
    async def api_batch_add(file: UploadFile = File(...)) -> dict[str, Any]:
        content = await file.read()
        filename = file.filename or "upload.pdf"
        # PDF parsing is blocking; keep it off the event loop.
        item = await run_in_threadpool(service.add_document, filename, content)
        return {"ok": True, "item": item.to_dict()}

    @app.get("/api/batch/items/{item_id}")
    def api_batch_item(item_id: str) -> dict[str, Any]:
        return {"ok": True, "item": _get_item(item_id)}

    @app.post("/api/batch/items/{item_id}/retry")
    def api_batch_retry(item_id: str) -> dict[str, Any]:
        try:
            item = service.retry(item_id)
        except SlidesiftError as exc:
            raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
        return {"ok": True, "item": item.to_dict()}

    @app.delete("/api/batch/items/{item_id}")
    def api_batch_remove(item_id: str) -> dict[str, Any]:
        try:
            service.remove(item_id)
        except SlidesiftError as exc:
            raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
        return {"ok": True, "removed": item_id}

    @app.delete("/api/batch")
    def api_batch_clear() -> dict[str, Any]:
        try:
            service.clear()
        except SlidesiftError as exc:
            raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
        return {"ok": True}

    @app.post("/api/batch/run")
    def api_batch_run(req: BatchRunRequest | None = None) -> dict[str, Any]:
        page_range: tuple[int, int] | None = None
        if req is not None and (req.start_page is not None or req.end_page is not None):
            if req.start_page is None or req.end_page is None:
                raise HTTPException(status_code=400, detail="Both start_page and end_page are required.")
            page_range = (req.start_page, req.end_page)
            if page_range[0] < 1 or page_range[0] > page_range[1]:
                raise HTTPException(
                    status_code=400,
                    detail=f"Requested page range {page_range[0]}-{page_range[1]} is empty or inverted.",
                )

        with run_state.lock:
            if run_state.running:
                raise HTTPException(status_code=409, detail="A batch run is already in progress.")
            token = CancellationToken()

            def worker() -> None:
                try:
                    run_state.last_summary = service.run(page_range=page_range, cancel_token=token)
                    run_state.last_error = None
                except SlidesiftError as exc:
                    logger.error("Batch run failed: %s", exc)
                    run_state.last_error = str(exc)

            run_state.token = token
            run_state.thread = threading.Thread(target=worker, name="batch-run", daemon=True)
            run_state.thread.start()
        return {"ok": True, "started": True}

    @app.post("/api/batch/cancel")
    def api_batch_cancel() -> dict[str, Any]:
        with run_state.lock:
            if not run_state.running or run_state.token is None:
                return {"ok": True, "cancelled": False}
            run_state.token.cancel()
        return {"ok": True, "cancelled": True}

    @app.on_event("shutdown")
    def _shutdown_batch_run() -> None:
        if run_state.token is not None:
            run_state.token.cancel()

    return app
