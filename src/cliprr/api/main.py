from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from cliprr.catalog import LibraryCatalog
from cliprr.config import configure_logging, resolve_config
from cliprr.errors import DuplicateJobError, JobBusyError, JobNotFoundError
from cliprr.processing import ProcessingService
from cliprr.queue.models import ResourceClass

logger = logging.getLogger(__name__)

# --- CONFIG ---
LIBRARY_ENV = "CLIPRR_LIBRARY"
SSE_KEEPALIVE_S = 15.0


def build_service() -> ProcessingService:
    """Service from resolved config and the library directory in $CLIPRR_LIBRARY."""
    config = resolve_config()
    configure_logging(config.logging.level)
    library = os.getenv(LIBRARY_ENV)
    if not library:
        raise RuntimeError(f"Set {LIBRARY_ENV} to the TV library directory")
    return ProcessingService(config, LibraryCatalog.from_directory(library))


# --- Pydantic Models for Requests ---
class ScanRequest(BaseModel):
    episodeIds: List[int] = Field(..., min_length=1)  # noqa: N815
    queueName: Optional[str] = None  # noqa: N815


class ShowScanRequest(BaseModel):
    showIds: List[int] = Field(..., min_length=1)  # noqa: N815
    queueName: Optional[str] = None  # noqa: N815


class DeleteJobsRequest(BaseModel):
    jobIds: List[int] = Field(..., min_length=1)  # noqa: N815


class RetryRequest(BaseModel):
    queueName: Optional[str] = None  # noqa: N815
    maxAttempts: Optional[int] = Field(default=None, ge=1)  # noqa: N815


def _resource_class(value: str) -> ResourceClass:
    try:
        return ResourceClass(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown resource class: {value}")


def create_app(service: Optional[ProcessingService] = None, start_workers: bool = True) -> FastAPI:
    """Build the HTTP surface around a ProcessingService.

    Args:
        service: Service to expose (default: built from config on startup)
        start_workers: Start the worker pool with the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            app.state.service = build_service()
        if start_workers:
            await asyncio.to_thread(app.state.service.start)
        yield
        await asyncio.to_thread(app.state.service.stop)

    app = FastAPI(title="cliprr", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- ERROR MAPPING ---
    @app.exception_handler(DuplicateJobError)
    async def duplicate_job_handler(request: Request, exc: DuplicateJobError):
        return JSONResponse(
            status_code=409,
            content={"detail": {"code": "DUPLICATE_JOB", "message": str(exc)}},
        )

    @app.exception_handler(JobBusyError)
    async def job_busy_handler(request: Request, exc: JobBusyError):
        return JSONResponse(
            status_code=409,
            content={"detail": {"code": "JOB_BUSY", "message": str(exc), "jobIds": exc.job_ids}},
        )

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request: Request, exc: JobNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    def svc() -> ProcessingService:
        return app.state.service

    # --- HEALTH ---
    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.get("/health/status")
    async def health_status():
        service = svc()
        pool_running = service.workers_running
        return {
            "status": "healthy",
            "workers": service.pool.worker_counts() if pool_running else {"cpu": 0, "gpu": 0},
            "invalidTransitions": service.pool.invalid_transition_count if pool_running else 0,
            "subscribers": service.broadcaster.subscriber_count,
        }

    # --- PROCESSING ---
    @app.post("/processing/scan")
    async def submit_scan(data: ScanRequest):
        return await asyncio.to_thread(svc().submit_scan, data.episodeIds, data.queueName)

    @app.post("/processing/retry")
    async def retry_failed(data: RetryRequest):
        return await asyncio.to_thread(svc().retry_failed, data.queueName, data.maxAttempts)

    @app.post("/processing/jobs/delete")
    async def delete_jobs(data: DeleteJobsRequest):
        return await asyncio.to_thread(svc().delete_jobs, data.jobIds)

    @app.delete("/processing/shows/{show_id}/jobs")
    async def delete_show_jobs(show_id: int):
        return await asyncio.to_thread(svc().delete_by_show, show_id)

    @app.get("/processing/jobs")
    async def list_jobs(queueName: Optional[str] = None, state: Optional[str] = None):  # noqa: N803
        if state is not None and state not in {"queued", "active", "completed", "failed"}:
            raise HTTPException(status_code=400, detail=f"Unknown job state: {state}")
        jobs = await asyncio.to_thread(svc().list_jobs, queueName, state)
        return [job.model_dump(mode="json") for job in jobs]

    @app.get("/processing/queue/status")
    async def queue_status(queueName: Optional[str] = None):  # noqa: N803
        service = svc()
        if queueName:
            return service.get_queue_status(queueName).model_dump()
        return {name: snap.model_dump() for name, snap in service.get_all_queue_status().items()}

    @app.get("/processing/status")
    async def processing_status():
        service = svc()
        budget = await asyncio.to_thread(service.get_budget)
        return {
            "budget": budget.model_dump(),
            "queues": {name: snap.model_dump() for name, snap in service.get_all_queue_status().items()},
        }

    @app.post("/processing/cleanup-temp-files")
    async def cleanup_temp_files():
        return await asyncio.to_thread(svc().cleanup_temp_files)

    # --- HARDWARE ---
    @app.get("/hardware/info")
    async def hardware_info():
        profile = await asyncio.to_thread(svc().get_hardware_info)
        return profile.model_dump(mode="json")

    @app.post("/hardware/detect")
    async def hardware_detect():
        profile = await asyncio.to_thread(svc().detect_hardware)
        return profile.model_dump(mode="json")

    @app.post("/hardware/benchmark")
    async def hardware_benchmark():
        profile = await asyncio.to_thread(svc().run_benchmark)
        return profile.model_dump(mode="json")

    @app.get("/hardware/benchmark/results")
    async def benchmark_results():
        profile = await asyncio.to_thread(svc().get_hardware_info)
        if profile.benchmarked_at is None:
            raise HTTPException(status_code=404, detail="No benchmark has been run")
        return profile.model_dump(mode="json")

    # --- SETTINGS ---
    @app.post("/settings/queue/pause-{resource_class}")
    async def pause_queue(resource_class: str):
        rc = _resource_class(resource_class)
        budget = await asyncio.to_thread(svc().pause, rc)
        return {"paused": rc.value, "budget": budget.model_dump()}

    @app.post("/settings/queue/resume-{resource_class}")
    async def resume_queue(resource_class: str):
        rc = _resource_class(resource_class)
        budget = await asyncio.to_thread(svc().resume, rc)
        return {"resumed": rc.value, "budget": budget.model_dump()}

    # --- SHOWS ---
    @app.post("/shows/scan")
    async def scan_shows(data: ShowScanRequest):
        return await asyncio.to_thread(svc().submit_show_scan, data.showIds, data.queueName)

    @app.post("/shows/rescan")
    async def rescan_shows(data: ShowScanRequest):
        return await asyncio.to_thread(
            svc().submit_show_scan, data.showIds, data.queueName, True
        )

    # --- RESULTS ---
    @app.get("/shows/{show_id}/segments")
    async def show_segments(show_id: int, season: Optional[int] = None):
        matches = await asyncio.to_thread(svc().get_segments, show_id, season)
        return [m.model_dump() for m in matches]

    # --- EVENTS ---
    @app.get("/processing/events")
    async def processing_events(request: Request):
        return StreamingResponse(
            event_generator(svc(), request), media_type="text/event-stream"
        )

    return app


def format_sse(event: dict) -> str:
    return f"event: {event['type']}\ndata: {json.dumps(event, default=str)}\n\n"


async def event_generator(
    service: ProcessingService, request: Request, keepalive_s: float = SSE_KEEPALIVE_S
) -> AsyncGenerator[str, None]:
    """
    SSE generator fed by the status broadcaster.

    Starts with the current status of every queue, then relays events. The
    broadcaster calls back on worker threads, so events are handed to the
    event loop with call_soon_threadsafe.
    """
    loop = asyncio.get_running_loop()
    events: asyncio.Queue = asyncio.Queue()
    unsubscribe = service.subscribe(lambda event: loop.call_soon_threadsafe(events.put_nowait, event))

    try:
        for name, snapshot in service.get_all_queue_status().items():
            yield format_sse({"type": "queue_status", "queue_name": name, "snapshot": snapshot.model_dump()})

        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(events.get(), timeout=keepalive_s)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
    finally:
        unsubscribe()


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8484)
