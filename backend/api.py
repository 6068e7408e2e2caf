"""
api.py
──────
FastAPI application factory.

Owns the HTTP layer: job submission and tracking, result downloads, ZIP
export, API key settings and the provider proxy passthroughs used by the
browser to dodge cross-origin restrictions.

Usage:
    uvicorn api:create_app --factory --port 8000
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

import settings_store
from archive import archive_filename, build_archive, decode_result, exportable, result_extension
from auth import verify_api_key
from config import APP_VERSION, JOB_TYPES_SCHEMA
from dispatch import JobDispatcher
from job_queue import JobQueue, QueueClosedError
from providers import PhotoRoomProvider, ProviderError, SeedDreamProvider
from schemas import (
    ApiKeys,
    ApiKeysPublic,
    ArchiveRequest,
    ClearResponse,
    ErrorResponse,
    HealthResponse,
    Job,
    JobBatchRequest,
    JobCreatedResponse,
    JobListResponse,
    JobRequest,
    JobStats,
    JobStatus,
    JobSummary,
    JobTypesResponse,
    ProxyResultResponse,
    RemoveBackgroundProxyRequest,
    SeedDreamProxyRequest,
)

logger = logging.getLogger("api")


# ─── Error helpers ────────────────────────────────────────────────────────────

_ERROR_CODE_BY_STATUS = {
    400: "bad_request", 401: "unauthorized", 403: "forbidden",
    404: "not_found", 405: "method_not_allowed", 409: "conflict",
    422: "validation_error", 429: "rate_limited",
    500: "internal_error", 502: "upstream_error", 503: "service_unavailable",
}
_USER_ACTION_BY_STATUS = {
    400: "Check request parameters and retry.",
    401: "Re-authenticate and retry.",
    403: "Check credentials and retry.",
    404: "Verify the identifier and retry.",
    409: "Wait for the job to finish and retry.",
    422: "Fix request fields and retry.",
    429: "Retry after a short delay.",
    500: "Retry later.", 502: "Retry shortly.", 503: "Retry later.",
}


def _error_payload(code: str, detail: str, user_action: str) -> dict:
    return ErrorResponse(code=code, detail=detail, user_action=user_action).model_dump()


def _as_api_error(status_code: int, detail: object) -> dict:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _ERROR_CODE_BY_STATUS.get(status_code, "request_failed"))
        message = str(detail.get("detail") or "Request failed.")
        action = str(detail.get("user_action") or _USER_ACTION_BY_STATUS.get(status_code, "Retry later."))
        return _error_payload(code=code, detail=message, user_action=action)
    return _error_payload(
        code=_ERROR_CODE_BY_STATUS.get(status_code, "request_failed"),
        detail=detail if isinstance(detail, str) else "Request failed.",
        user_action=_USER_ACTION_BY_STATUS.get(status_code, "Retry later."),
    )


def _job_not_found(job_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=_error_payload("job_not_found", f"Job {job_id} not found.", "Verify job id and retry."),
    )


def _provider_http_error(exc: ProviderError) -> HTTPException:
    code = exc.status_code if exc.status_code and 400 <= exc.status_code < 600 else status.HTTP_502_BAD_GATEWAY
    return HTTPException(
        status_code=code,
        detail=_error_payload(
            _ERROR_CODE_BY_STATUS.get(code, "upstream_error"),
            str(exc),
            _USER_ACTION_BY_STATUS.get(code, "Retry shortly."),
        ),
    )


def _missing_key(provider: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=_error_payload(
            "api_key_missing",
            f"{provider} API key is missing",
            "Save the key in Settings or pass apiKey in the request.",
        ),
    )


# ─── Application factory ──────────────────────────────────────────────────────

def create_app(
    queue: Optional[JobQueue] = None,
    load_keys: Optional[Callable[[], ApiKeys]] = None,
    *,
    photo_room: Optional[PhotoRoomProvider] = None,
    seed_dream: Optional[SeedDreamProvider] = None,
) -> FastAPI:
    """
    Build and return the configured FastAPI application.
    Pass `queue` / `load_keys` / providers to run against stubs in tests.
    """
    settings_store.init_settings_table()
    keys_loader = load_keys or settings_store.load_api_keys

    dispatcher: Optional[JobDispatcher] = None
    if queue is None:
        dispatcher = JobDispatcher(keys_loader)
        queue = JobQueue(dispatcher)
    photo_room = photo_room or (dispatcher.photo_room if dispatcher else PhotoRoomProvider())
    seed_dream = seed_dream or (dispatcher.seed_dream if dispatcher else SeedDreamProvider())

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        queue.shutdown()
        if dispatcher is not None:
            dispatcher.close()

    enable_docs = (os.environ.get("ENABLE_DOCS", "1").strip().lower() in {"1", "true", "yes", "on"})

    api = FastAPI(
        title="NC Tool Backend",
        description="Queued image/video generation over Gemini, Seed Dream and PhotoRoom",
        version=APP_VERSION,
        docs_url="/docs" if enable_docs else None,
        redoc_url="/redoc" if enable_docs else None,
        lifespan=lifespan,
    )
    api.state.queue = queue

    # CORS
    env_origins = [o.strip() for o in os.environ.get("FRONTEND_ORIGINS", "").split(",") if o.strip()]
    default_origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
    api.add_middleware(
        CORSMiddleware,
        allow_origins=sorted(set(default_origins + env_origins)),
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Exception handlers ────────────────────────────────────────────────────

    @api.exception_handler(HTTPException)
    async def _http_exception_handler(_: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_as_api_error(exc.status_code, exc.detail),
            headers=exc.headers,
        )

    @api.exception_handler(RequestValidationError)
    async def _validation_exception_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                **_error_payload("validation_error", "Request validation failed.", "Fix request fields and retry."),
                "metadata": {"errors": [{"loc": e.get("loc"), "msg": e.get("msg")} for e in exc.errors()]},
            },
        )

    # ── Meta ──────────────────────────────────────────────────────────────────

    @api.get("/health", response_model=HealthResponse, tags=["Meta"])
    async def health():
        return HealthResponse()

    @api.get("/job-types", response_model=JobTypesResponse, tags=["Meta"])
    async def job_types(_: str = Depends(verify_api_key)):
        return JobTypesResponse(job_types=JOB_TYPES_SCHEMA)

    # ── Settings ──────────────────────────────────────────────────────────────

    @api.get("/settings", response_model=ApiKeysPublic, tags=["Settings"])
    def get_settings(_: str = Depends(verify_api_key)):
        return settings_store.to_public(keys_loader())

    @api.put("/settings", response_model=ApiKeysPublic, tags=["Settings"])
    def put_settings(keys: ApiKeys, _: str = Depends(verify_api_key)):
        try:
            settings_store.save_api_keys(keys)
        except RuntimeError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=_error_payload(
                    "server_misconfigured",
                    str(exc),
                    "Set SETTINGS_ENCRYPT_KEY to a Fernet key and restart.",
                ),
            ) from exc
        return settings_store.to_public(keys_loader())

    # ── Jobs ──────────────────────────────────────────────────────────────────

    def _enqueue(requests: list[JobRequest]) -> JobCreatedResponse:
        try:
            jobs = queue.add_jobs([(r.type, r.payload) for r in requests])
        except QueueClosedError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=_error_payload("queue_closed", str(exc), "Restart the service and retry."),
            ) from exc
        return JobCreatedResponse(jobs=[JobSummary.from_job(j) for j in jobs])

    @api.post("/jobs", response_model=JobCreatedResponse, status_code=status.HTTP_202_ACCEPTED, tags=["Jobs"])
    async def create_job(req: JobRequest, _: str = Depends(verify_api_key)):
        return _enqueue([req])

    @api.post("/jobs/batch", response_model=JobCreatedResponse, status_code=status.HTTP_202_ACCEPTED, tags=["Jobs"])
    async def create_jobs(req: JobBatchRequest, _: str = Depends(verify_api_key)):
        return _enqueue(req.jobs)

    @api.get("/jobs", response_model=JobListResponse, tags=["Jobs"])
    async def list_jobs(_: str = Depends(verify_api_key)):
        jobs = queue.list_jobs()
        return JobListResponse(
            items=[JobSummary.from_job(j) for j in jobs],
            total=len(jobs),
            stats=queue.stats(),
        )

    @api.get("/jobs/stats", response_model=JobStats, tags=["Jobs"])
    async def job_stats(_: str = Depends(verify_api_key)):
        return queue.stats()

    @api.delete("/jobs/finished", response_model=ClearResponse, tags=["Jobs"])
    async def clear_finished(_: str = Depends(verify_api_key)):
        return ClearResponse(removed=queue.clear_finished())

    @api.post("/jobs/archive", tags=["Jobs"])
    def archive_jobs(req: ArchiveRequest, _: str = Depends(verify_api_key)):
        jobs = exportable(queue.get_jobs(req.job_ids))
        if not jobs:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=_error_payload(
                    "nothing_to_export",
                    "None of the selected jobs has a completed result.",
                    "Select completed jobs and retry.",
                ),
            )
        content = build_archive(jobs)
        return Response(
            content=content,
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{archive_filename()}"'},
        )

    @api.get("/jobs/{job_id}", response_model=Job, tags=["Jobs"])
    async def get_job(job_id: str, _: str = Depends(verify_api_key)):
        job = queue.get_job(job_id)
        if job is None:
            raise _job_not_found(job_id)
        return job

    @api.get("/jobs/{job_id}/result", tags=["Jobs"])
    def get_job_result(job_id: str, _: str = Depends(verify_api_key)):
        job = queue.get_job(job_id)
        if job is None:
            raise _job_not_found(job_id)
        if job.status != JobStatus.completed or not job.result:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=_error_payload(
                    "result_not_ready",
                    f"Job {job_id} is {job.status.value}.",
                    "Wait for the job to complete and retry.",
                ),
            )
        try:
            mime, content = decode_result(job.result)
        except ValueError as exc:
            logger.warning("result_decode_failed job_id=%s error=%s", job.id, exc)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=_error_payload(
                    "result_corrupt",
                    f"Result of job {job_id} could not be decoded.",
                    "Resubmit the job.",
                ),
            ) from exc
        filename = f"result-{job.id}.{result_extension(job.type)}"
        return Response(
            content=content,
            media_type=mime,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # ── Provider proxies ──────────────────────────────────────────────────────

    @api.post("/api/remove-bg", response_model=ProxyResultResponse, tags=["Proxy"])
    def proxy_remove_background(req: RemoveBackgroundProxyRequest, _: str = Depends(verify_api_key)):
        key = (req.api_key or keys_loader().photo_room or "").strip()
        if not key:
            raise _missing_key("PhotoRoom")
        try:
            return ProxyResultResponse(result=photo_room.remove_background(key, req.image_base64))
        except ProviderError as exc:
            logger.warning("proxy_remove_bg_failed status=%s error=%s", exc.status_code, exc)
            raise _provider_http_error(exc) from exc

    @api.post("/api/seed-dream-generate", response_model=ProxyResultResponse, tags=["Proxy"])
    def proxy_seed_dream(req: SeedDreamProxyRequest, _: str = Depends(verify_api_key)):
        if not req.prompt.strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=_error_payload("prompt_required", "prompt is required", "Enter a prompt and retry."),
            )
        stored = keys_loader()
        key = (req.api_key or stored.seed_dream or "").strip()
        if not key:
            raise _missing_key("Seed Dream")
        try:
            result = seed_dream.generate_image(
                key,
                req.prompt,
                req.aspect_ratio,
                base_url=req.base_url or stored.seed_dream_base_url,
                callback_url=req.callback_url,
            )
        except ProviderError as exc:
            logger.warning("proxy_seed_dream_failed status=%s error=%s", exc.status_code, exc)
            raise _provider_http_error(exc) from exc
        return ProxyResultResponse(result=result)

    return api


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    uvicorn.run(create_app(), host=os.environ.get("HOST", "127.0.0.1"), port=int(os.environ.get("PORT", "8000")))
