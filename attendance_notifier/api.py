"""
FastAPI application factory and HTTP schemas for the attendance notifier.

The module exposes a `create_app` function that builds the small REST API
used to inspect and nudge the worker.  Authentication is enforced through a
configurable API token carried in the ``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Literal, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Query, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import NotificationCore

app = FastAPI(title="Attendance Notifier")
service: NotificationCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

JobStatus = Literal["pending", "processing", "sent", "failed"]


async def require_token(request_token: str | None = Depends(api_key_scheme)) -> None:
    """Reject requests whose ``X-API-Token`` does not match the configured token.

    When no token is configured the dependency is a no-op.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not request_token or request_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    """Connection state of the WhatsApp session and queue depth."""
    connection: str
    qr_pending: bool = False
    pending_jobs: int = 0
    groups: int = 0


class EnqueuePayload(BaseModel):
    """Notification job accepted by ``/commands/enqueue``."""
    recipient: str = Field(min_length=1)
    message: str = ""
    fileData: Optional[str] = None
    fileMimetype: Optional[str] = None
    fileName: Optional[str] = None
    type: str = "attendance"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EnqueueResponse(CommandStatus):
    id: Optional[str] = None


class MonthlyRecapPayload(BaseModel):
    """Manual monthly recap request; ``month`` is zero based (0 = January)."""
    year: int
    month: int = Field(ge=0, le=11)
    target: str = Field(min_length=1)


class RefreshGroupsResponse(CommandStatus):
    groups: int = 0


class JobRecord(BaseModel):
    """Queued notification as stored by the worker."""
    id: str
    status: JobStatus
    type: Optional[str] = None
    payload: Dict[str, Any]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error_message: str = ""
    created_at: int
    updated_at: int


class JobsResponse(CommandStatus):
    jobs: List[JobRecord]


def create_app(
    svc: NotificationCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`attendance_notifier.core.NotificationCore` serving the
        commands.
    api_token:
        Optional secret required in the ``X-API-Token`` header.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Attendance Notifier", lifespan=lifespan)
    else:
        api = app

    app.state.api_token = api_token
    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Report the session state and whether a QR code awaits scanning."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("status", {})
        return StatusResponse.model_validate(result)

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/enqueue", response_model=EnqueueResponse, response_model_exclude_none=True)
    async def enqueue(payload: EnqueuePayload):
        """Insert a notification job into the queue."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("enqueue", payload.model_dump(exclude_none=True))
        if result.get("ok") is not True:
            raise HTTPException(status_code=400, detail={"error": result.get("error")})
        return EnqueueResponse.model_validate(result)

    @router.post("/trigger-monthly-recap", response_model=EnqueueResponse, response_model_exclude_none=True)
    async def trigger_monthly_recap(payload: MonthlyRecapPayload):
        """Request a monthly recap for a grade, every grade or one class."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("triggerMonthlyRecap", payload.model_dump())
        return EnqueueResponse.model_validate(result)

    @router.post("/refresh-groups", response_model=RefreshGroupsResponse, response_model_exclude_none=True)
    async def refresh_groups():
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("refreshGroups", {})
        if result.get("ok") is not True:
            raise HTTPException(status_code=409, detail={"error": result.get("error")})
        return RefreshGroupsResponse.model_validate(result)

    @api.get("/jobs", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_jobs(job_status: Optional[JobStatus] = Query(default=None, alias="status")):
        """List queued jobs, newest first, without attachment bytes."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("listJobs", {"status": job_status})
        return JobsResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the worker."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
