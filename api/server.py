"""
Check-in Engine - Status API

FastAPI application for a dashboard:
  GET  /health                   - liveness
  GET  /v1/status                - personnel statistics, ledger size, current run
  POST /v1/runs                  - start a run in the background (409 if one is active)
  GET  /v1/runs/current          - latest progress event or final summary
  POST /v1/runs/current/stop     - cooperative cancellation between requests

Usage:
    uvicorn api.server:create_app --factory --host 0.0.0.0 --port 8080
    checkin serve --port 8080

Requires: pip install fastapi uvicorn
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Sequence

from fastapi import Request

from checkin.config import Settings, load_settings
from checkin.remote import RemoteRegistry, http_registry

logger = logging.getLogger("checkin.api")

RegistryFactory = Callable[[Settings], RemoteRegistry]


def create_app(
    settings: Settings | None = None,
    registry_factory: RegistryFactory | None = None,
) -> Any:
    """
    Create and configure the FastAPI application.

    Separated from module-level creation so tests can create fresh
    instances with their own settings and a fixture registry.
    """
    from fastapi import FastAPI, HTTPException
    from fastapi.responses import JSONResponse

    from api.models import RunResponse, RunSubmission
    from api.worker import RunAlreadyActive, RunWorker
    from checkin.allocator import PersonnelAllocator
    from checkin.errors import IntakeError
    from checkin.intake import read_csv
    from checkin.progress import LatestProgress
    from checkin.runner import RunResult, execute_run
    from checkin.store import CheckpointStore
    from checkin.types import RegistrationRequest

    settings = settings or load_settings()
    registry_factory = registry_factory or http_registry

    app = FastAPI(
        title="Check-in Engine API",
        version="0.1.0",
        description="Resumable batch registration engine",
    )

    # ── Run execution ────────────────────────────────────────

    def run_batch(requests: Sequence[RegistrationRequest], sink: LatestProgress,
                  stop_event: threading.Event, run_id: str) -> RunResult:
        registry = registry_factory(settings)
        try:
            with CheckpointStore(settings.storage.checkpoint_path) as store:
                return execute_run(settings, requests, registry, store, sink=sink,
                                   stop_event=stop_event, run_id=run_id)
        finally:
            close = getattr(registry, "close", None)
            if close:
                close()

    worker = RunWorker(run_batch)
    app.state.worker = worker
    app.state.settings = settings

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        worker.shutdown()

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    # ── Status ────────────────────────────────────────────────

    @app.get("/v1/status")
    def get_status():
        try:
            with CheckpointStore(settings.storage.checkpoint_path) as store:
                allocator = PersonnelAllocator(store, settings.limits())
                personnel = allocator.stats()
                ledger_size = store.ledger_size()
        except Exception as e:
            return JSONResponse(status_code=503,
                                content={"status": "fail", "error": str(e)[:200]})
        current = worker.current()
        return JSONResponse(content={
            "status": "ok",
            "personnel": personnel,
            "ledger_size": ledger_size,
            "run": current.to_dict() if current else None,
        })

    # ── Runs ──────────────────────────────────────────────────

    @app.post("/v1/runs", response_model=None)
    async def start_run(request: Request):
        try:
            body = await request.json()
        except ValueError:
            body = {}
        submission = RunSubmission.from_body(body)
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        if submission.csv_path:
            try:
                encoding = submission.encoding or settings.intake.encoding
                requests = read_csv(submission.csv_path, encoding=encoding).requests
            except (OSError, IntakeError) as e:
                return JSONResponse(status_code=422, content={"errors": [str(e)]})
        else:
            requests = submission.to_requests()

        try:
            record = worker.start(requests)
        except RunAlreadyActive as e:
            return JSONResponse(status_code=409, content={
                "error": "a run is already active",
                "run_id": e.run_id,
            })

        response = RunResponse(
            run_id=record.run_id,
            status=record.status.value,
            total=record.total,
            message=f"Run started with {record.total} requests",
        )
        return JSONResponse(status_code=202, content=response.to_dict())

    @app.get("/v1/runs/current")
    async def get_current_run():
        current = worker.current()
        if current is None:
            raise HTTPException(status_code=404, detail="No run has been started")
        return JSONResponse(content=current.to_dict())

    @app.post("/v1/runs/current/stop")
    async def stop_current_run():
        current = worker.current()
        if current is None:
            raise HTTPException(status_code=404, detail="No run has been started")
        if not worker.stop():
            return JSONResponse(status_code=409, content={
                "error": f"run is {current.status.value}",
                "run_id": current.run_id,
            })
        return JSONResponse(status_code=202, content={
            "run_id": current.run_id,
            "stopping": True,
        })

    return app
