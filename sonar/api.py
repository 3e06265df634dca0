"""
HTTP surface.

    POST /scan            {"monitorId": 42}
    GET  /scan/status     ?monitorId=42

The caller's identity comes from the X-User-Id header set by the upstream
identity proxy. Eligibility rejections map to status codes:

    200 started | 409 already scanning | 429 rate limited (Retry-After)
    400 cooldown, inactive or outside schedule window | 404 unknown monitor
"""

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .errors import MonitorNotFound, RateLimited, ScanInProgress, ScanRejected
from .models import ScanTrigger

if TYPE_CHECKING:
    from .service import SonarService

logger = logging.getLogger("sonar.api")

router = APIRouter()


class ScanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    monitor_id: int = Field(alias="monitorId")


def get_service(request: Request) -> "SonarService":
    return request.app.state.service


def get_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    if not x_user_id:
        raise HTTPException(401, "Missing X-User-Id header")
    return x_user_id


def _status_code(error: ScanRejected) -> int:
    if isinstance(error, ScanInProgress):
        return 409
    if isinstance(error, RateLimited):
        return 429
    if isinstance(error, MonitorNotFound):
        return 404
    return 400


@router.post("/scan")
async def start_scan(
    payload: ScanRequest,
    user_id: str = Depends(get_user_id),
    service: "SonarService" = Depends(get_service),
):
    """
    Request a manual scan of one of the caller's monitors.

    The scan is queued for the worker pool; poll /scan/status for progress.
    """
    outcome = await service.scheduler.request_scan(payload.monitor_id, ScanTrigger.MANUAL, user_id=user_id)
    if outcome.error is None:
        return JSONResponse(outcome.to_dict())

    headers = {}
    if isinstance(outcome.error, RateLimited):
        headers["Retry-After"] = str(outcome.error.retry_after)
    return JSONResponse(outcome.to_dict(), status_code=_status_code(outcome.error), headers=headers)


@router.get("/scan/status")
async def scan_status(
    monitor_id: int = Query(alias="monitorId"),
    user_id: str = Depends(get_user_id),
    service: "SonarService" = Depends(get_service),
):
    """Current scan state and cooldown of one of the caller's monitors."""
    limit = await service.rate_limiter.check(user_id, "read")
    if not limit.allowed:
        return JSONResponse(
            {"error": "rate_limited", "retryAfter": limit.retry_after},
            status_code=429,
            headers={"Retry-After": str(limit.retry_after)},
        )
    try:
        return service.scheduler.scan_status(monitor_id, user_id)
    except MonitorNotFound as e:
        return JSONResponse(e.to_dict(), status_code=404)


@router.get("/health")
async def health(service: "SonarService" = Depends(get_service)):
    return {
        "status": "ok",
        "pendingJobs": service.store.pending_job_count(),
        "cache": service.cache.stats().to_dict(),
    }


def create_app(service: "SonarService", manage_lifecycle: bool = False) -> FastAPI:
    """
    Build the FastAPI app around a service.

    Args:
        service: The composed Sonar service.
        manage_lifecycle: Start background workers with the app and shut them
            down with it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.shutdown()

    app = FastAPI(title="Sonar API", version="0.1.0", lifespan=lifespan)
    app.state.service = service
    app.include_router(router, tags=["scan"])
    return app
