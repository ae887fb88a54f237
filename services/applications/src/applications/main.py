from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import asynccontextmanager

from common.utils import now_utc_iso
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from applications.directories import (
    HttpProfileDirectory,
    JobDirectory,
    ProfileDirectory,
    StoredJobDirectory,
)
from applications.errors import ServiceError, Unauthorized
from applications.events import EventBus, EventRelay, HttpEventBus, InMemoryEventBus
from applications.lifecycle import ApplicationLifecycle
from applications.models import (
    Application,
    ApplicationPage,
    ApplicationStats,
    Feedback,
    FeedbackRequest,
    MetricsSnapshot,
    ProfileChangeEvent,
    ProfileEventAccepted,
    RecommendationPage,
    RefreshResult,
    SavedJob,
    SavedJobPage,
    SubmitApplicationRequest,
    UpdateStatusRequest,
)
from applications.recommendations import RecommendationService
from applications.repository import ApplicationRepository
from applications.saved_jobs import SavedJobs
from applications.worker import ProfileChangeWorker

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "application-service", "applications.sqlite3")
DEFAULT_PROFILE_SERVICE_URL = "http://localhost:8083"
DEFAULT_PROFILE_SERVICE_TIMEOUT_SECONDS = 5.0
LOGGER = logging.getLogger("application_service.api")


class MetricsStore:
    """Request counters and latency, keyed by method and route template."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, route: str, status_code: int, duration_ms: float) -> None:
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            stats = self._endpoints.setdefault(
                f"{method} {route}",
                {"count": 0, "2xx": 0, "4xx": 0, "5xx": 0, "latency_ms_sum": 0.0, "latency_ms_max": 0.0},
            )
            stats["count"] = int(stats["count"]) + 1
            status_class = f"{status_code // 100}xx"
            if status_class in stats:
                stats[status_class] = int(stats[status_class]) + 1
            stats["latency_ms_sum"] = float(stats["latency_ms_sum"]) + duration_ms
            stats["latency_ms_max"] = max(float(stats["latency_ms_max"]), duration_ms)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            endpoints = {}
            for key, stats in self._endpoints.items():
                entry = dict(stats)
                entry["latency_ms_avg"] = round(float(stats["latency_ms_sum"]) / int(stats["count"]), 3)
                endpoints[key] = entry
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints=endpoints,
            )


def caller_id(x_user_id: str | None = Header(default=None)) -> str:
    """Identity injected by the gateway after authentication."""
    if x_user_id is None or not x_user_id.strip():
        raise Unauthorized("Missing caller identity header x-user-id")
    return x_user_id.strip()


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


def create_app(
    *,
    database_path: str | None = None,
    profile_directory: ProfileDirectory | None = None,
    job_directory: JobDirectory | None = None,
    event_bus: EventBus | None = None,
    profile_service_url: str | None = None,
    profile_service_timeout: float | None = None,
    event_bus_url: str | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("APPLICATIONS_DB_PATH", DEFAULT_DB_PATH)
    resolved_profile_url = profile_service_url or os.getenv(
        "PROFILE_SERVICE_URL", DEFAULT_PROFILE_SERVICE_URL
    )
    resolved_timeout = profile_service_timeout or float(
        os.getenv("PROFILE_SERVICE_TIMEOUT_SECONDS", DEFAULT_PROFILE_SERVICE_TIMEOUT_SECONDS)
    )
    resolved_bus_url = (event_bus_url or os.getenv("EVENT_BUS_URL", "")).strip() or None

    repository = ApplicationRepository(database_path=resolved_path)
    jobs = job_directory or StoredJobDirectory(repository)
    profiles = profile_directory or HttpProfileDirectory(resolved_profile_url, timeout=resolved_timeout)
    if event_bus is not None:
        bus = event_bus
    elif resolved_bus_url:
        bus = HttpEventBus(resolved_bus_url, timeout=resolved_timeout)
    else:
        bus = InMemoryEventBus()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        relay = EventRelay(bus)
        recommendations = RecommendationService(repository, profiles, jobs)
        worker = ProfileChangeWorker(recommendations.handle_profile_event)

        app.state.repository = repository
        app.state.event_bus = bus
        app.state.relay = relay
        app.state.lifecycle = ApplicationLifecycle(repository, jobs, relay)
        app.state.saved_jobs = SavedJobs(repository, jobs)
        app.state.recommendations = recommendations
        app.state.worker = worker
        app.state.metrics = MetricsStore()

        worker_task = asyncio.create_task(worker.run())
        try:
            yield
        finally:
            worker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker_task
            await run_in_threadpool(relay.close)
            await run_in_threadpool(repository.close)

    app = FastAPI(title="Application Service", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                route=_route_template(request),
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_failed",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_ERROR",
                    "message": "Internal Server Error",
                    "timestamp": now_utc_iso(),
                    "request_id": request_id,
                },
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            route=_route_template(request),
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                    "user_id": request.headers.get("x-user-id"),
                }
            )
        )
        return response

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        log = LOGGER.error if exc.status_code >= 500 else LOGGER.warning
        log(
            json.dumps(
                {
                    "event": "request_rejected",
                    "request_id": request_id,
                    "path": request.url.path,
                    "code": exc.code,
                    "message": exc.message,
                }
            )
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.code,
                "message": exc.message,
                "timestamp": now_utc_iso(),
                "request_id": request_id,
            },
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "applications"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    # Applications

    @app.post("/api/v1/applications", response_model=Application, status_code=201)
    async def submit_application(
        payload: SubmitApplicationRequest,
        request: Request,
        user_id: str = Depends(caller_id),
    ) -> Application:
        return await run_in_threadpool(
            request.app.state.lifecycle.submit,
            payload.job_id,
            user_id,
            payload,
        )

    @app.get("/api/v1/applications", response_model=ApplicationPage)
    async def list_applications(
        request: Request,
        user_id: str = Depends(caller_id),
        job_id: str | None = Query(default=None),
        status: str | None = Query(default=None),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        sort_by: str = Query(default="created_at"),
        sort_order: str = Query(default="desc"),
    ) -> ApplicationPage:
        lifecycle: ApplicationLifecycle = request.app.state.lifecycle
        if job_id:
            return await run_in_threadpool(
                lambda: lifecycle.list_for_job(
                    job_id,
                    user_id,
                    status=status,
                    page=page,
                    limit=limit,
                    sort_by=sort_by,
                    sort_order=sort_order,
                )
            )
        return await run_in_threadpool(
            lambda: lifecycle.list_for_applicant(
                user_id,
                status=status,
                page=page,
                limit=limit,
                sort_by=sort_by,
                sort_order=sort_order,
            )
        )

    @app.get("/api/v1/applications/stats", response_model=ApplicationStats)
    async def application_stats(request: Request, user_id: str = Depends(caller_id)) -> ApplicationStats:
        return await run_in_threadpool(request.app.state.lifecycle.stats, user_id)

    @app.get("/api/v1/applications/{application_id}", response_model=Application)
    async def get_application(
        application_id: str,
        request: Request,
        user_id: str = Depends(caller_id),
    ) -> Application:
        return await run_in_threadpool(
            request.app.state.lifecycle.get_application,
            application_id,
            user_id,
        )

    @app.put("/api/v1/applications/{application_id}/withdraw", response_model=Application)
    async def withdraw_application(
        application_id: str,
        request: Request,
        user_id: str = Depends(caller_id),
    ) -> Application:
        return await run_in_threadpool(
            request.app.state.lifecycle.withdraw,
            application_id,
            user_id,
        )

    @app.put("/api/v1/applications/{application_id}/status", response_model=Application)
    async def update_application_status(
        application_id: str,
        payload: UpdateStatusRequest,
        request: Request,
        user_id: str = Depends(caller_id),
    ) -> Application:
        return await run_in_threadpool(
            request.app.state.lifecycle.update_status,
            application_id,
            user_id,
            payload.status,
            payload.reason,
        )

    @app.get("/api/v1/applications/{application_id}/resume")
    async def download_resume(
        application_id: str,
        request: Request,
        user_id: str = Depends(caller_id),
    ) -> Response:
        resume = await run_in_threadpool(
            request.app.state.lifecycle.view_resume,
            application_id,
            user_id,
        )
        return Response(
            content=resume.data,
            media_type=resume.content_type,
            headers={"content-disposition": f'attachment; filename="{resume.file_name}"'},
        )

    # Saved jobs

    @app.post("/api/v1/jobs/{job_id}/save", response_model=SavedJob, status_code=201)
    async def save_job(job_id: str, request: Request, user_id: str = Depends(caller_id)) -> SavedJob:
        return await run_in_threadpool(request.app.state.saved_jobs.save, user_id, job_id)

    @app.delete("/api/v1/jobs/{job_id}/unsave")
    async def unsave_job(
        job_id: str,
        request: Request,
        user_id: str = Depends(caller_id),
    ) -> dict[str, str | bool]:
        await run_in_threadpool(request.app.state.saved_jobs.unsave, user_id, job_id)
        return {"success": True, "message": "Job removed from saved list"}

    @app.get("/api/v1/jobs/saved", response_model=SavedJobPage)
    async def list_saved_jobs(
        request: Request,
        user_id: str = Depends(caller_id),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        sort_order: str = Query(default="desc"),
    ) -> SavedJobPage:
        saved_jobs: SavedJobs = request.app.state.saved_jobs
        return await run_in_threadpool(
            lambda: saved_jobs.list_saved(user_id, page=page, limit=limit, sort_order=sort_order)
        )

    @app.get("/api/v1/jobs/saved/count")
    async def count_saved_jobs(request: Request, user_id: str = Depends(caller_id)) -> dict[str, int]:
        count = await run_in_threadpool(request.app.state.saved_jobs.count, user_id)
        return {"count": count}

    # Recommendations

    @app.get("/api/v1/jobs/recommendations", response_model=RecommendationPage)
    async def get_recommendations(
        request: Request,
        user_id: str = Depends(caller_id),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=50),
        refresh: bool = Query(default=False),
    ) -> RecommendationPage:
        recommendations: RecommendationService = request.app.state.recommendations
        return await run_in_threadpool(
            lambda: recommendations.get_recommendations(
                user_id,
                page=page,
                limit=limit,
                refresh=refresh,
            )
        )

    @app.get("/api/v1/jobs/recommendations/refresh", response_model=RefreshResult)
    async def refresh_recommendations(
        request: Request,
        user_id: str = Depends(caller_id),
    ) -> RefreshResult:
        return await run_in_threadpool(request.app.state.recommendations.refresh, user_id)

    @app.post("/api/v1/jobs/recommendations/feedback", response_model=Feedback, status_code=201)
    async def recommendation_feedback(
        payload: FeedbackRequest,
        request: Request,
        user_id: str = Depends(caller_id),
    ) -> Feedback:
        return await run_in_threadpool(
            request.app.state.recommendations.record_feedback,
            user_id,
            payload.job_id,
            payload.feedback,
            payload.reason,
        )

    # Profile-change intake

    @app.post("/internal/profile-events", response_model=ProfileEventAccepted, status_code=202)
    async def accept_profile_event(payload: ProfileChangeEvent, request: Request) -> ProfileEventAccepted:
        queued = await request.app.state.worker.enqueue(payload)
        return ProfileEventAccepted(status="queued", queued_events=queued, received_at=now_utc_iso())

    return app


app = create_app()
