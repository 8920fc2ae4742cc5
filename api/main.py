"""
FastAPI Application — Administrative surface for the programs scheduler.

Provides:
- CRM sync enqueue and triage listing
- Manual "run now" for any scheduler job
- Session reminder integration updates
- Availability replacement and scheduling match
- Health check

Every /internal/admin route requires the x-admin-user-id header.
Core errors map to {"error": code} with their HTTP status; body validation
errors are FastAPI's own 422.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from config.settings import Settings, get_settings
from core.availability import AvailabilityService
from core.errors import ForbiddenError, NotFoundError, ProgramsError
from core.orchestrator import SchedulerOrchestrator
from database.session import close_db, init_db
from database.store_base import BaseProgramsStore
from database.store_factory import create_store
from gateway.notifications import NotificationGateway, create_notification_gateway
from models.schemas import (
    AvailabilityWindow, CrmSyncJobStatus, CrmSyncPayload, SchedulerJobName,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request bodies
# ──────────────────────────────────────────────────────────────

class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CrmSyncCreateRequest(_Body):
    reason: str = Field(min_length=1, max_length=500)
    payload: Optional[CrmSyncPayload] = None
    max_attempts: Optional[int] = Field(default=None, ge=1, le=50)


class RunJobRequest(_Body):
    job: SchedulerJobName
    limit: Optional[int] = Field(default=None, ge=1, le=1000)
    age_minutes: Optional[int] = Field(default=None, ge=1)
    horizon_minutes: Optional[int] = Field(default=None, ge=1)
    lookback_minutes: Optional[int] = Field(default=None, ge=0)


class SessionIntegrationUpdateRequest(_Body):
    provider: Optional[str] = Field(default=None, max_length=64)
    meeting_url: Optional[str] = None
    recording_url: Optional[str] = None
    reminder_offsets_minutes: Optional[list[int]] = Field(default=None, max_length=10)

    @model_validator(mode="after")
    def _check_offsets(self):
        for minutes in self.reminder_offsets_minutes or []:
            if minutes < 1 or minutes > 7 * 24 * 60:
                raise ValueError("reminder offsets must be between 1 and 10080 minutes")
        return self


class AvailabilityWindowIn(_Body):
    id: Optional[str] = None
    user_id: str = Field(min_length=1)
    starts_at: datetime
    ends_at: datetime

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self


class AvailabilityReplaceRequest(_Body):
    windows: list[AvailabilityWindowIn] = Field(max_length=500)


class SchedulingMatchRequest(_Body):
    attendee_user_ids: list[str] = Field(min_length=1, max_length=50)
    duration_minutes: int = Field(ge=1, le=24 * 60)


# ──────────────────────────────────────────────────────────────
#  Dependencies
# ──────────────────────────────────────────────────────────────

async def require_admin(x_admin_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_admin_user_id:
        raise ForbiddenError("forbidden")
    return x_admin_user_id


def _orchestrator(request: Request) -> SchedulerOrchestrator:
    return request.app.state.orchestrator


def _availability(request: Request) -> AvailabilityService:
    return request.app.state.availability


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


router = APIRouter(prefix="/internal/admin/programs")


# ══════════════════════════════════════════════════════════════
#  CRM SYNC
# ══════════════════════════════════════════════════════════════

@router.post("/{program_id}/crm-sync", status_code=202)
async def enqueue_crm_sync(
    program_id: str,
    body: CrmSyncCreateRequest,
    request: Request,
    admin_user_id: str = Depends(require_admin),
    orchestrator: SchedulerOrchestrator = Depends(_orchestrator),
):
    settings: Settings = request.app.state.settings
    job = await orchestrator.queue.enqueue(
        program_id, admin_user_id, body.reason,
        payload=body.payload,
        max_attempts=body.max_attempts or settings.crm.default_max_attempts,
    )
    return {"job": _dump(job)}


@router.get("/{program_id}/crm-sync")
async def list_crm_sync(
    program_id: str,
    status: Optional[CrmSyncJobStatus] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _admin: str = Depends(require_admin),
    orchestrator: SchedulerOrchestrator = Depends(_orchestrator),
):
    jobs = await orchestrator.queue.list_jobs(program_id, status=status, limit=limit, offset=offset)
    return {"jobs": [_dump(j) for j in jobs]}


# ══════════════════════════════════════════════════════════════
#  SCHEDULER
# ══════════════════════════════════════════════════════════════

@router.post("/jobs/run")
async def run_job(
    body: RunJobRequest,
    admin_user_id: str = Depends(require_admin),
    orchestrator: SchedulerOrchestrator = Depends(_orchestrator),
):
    logger.info("scheduler_job_manual_run", scheduler_job=body.job.value, admin_user_id=admin_user_id)
    result = await orchestrator.run_job(
        body.job,
        limit=body.limit,
        age_minutes=body.age_minutes,
        horizon_minutes=body.horizon_minutes,
        lookback_minutes=body.lookback_minutes,
    )
    return {"result": _dump(result)}


# ══════════════════════════════════════════════════════════════
#  SESSIONS
# ══════════════════════════════════════════════════════════════

@router.patch("/{program_id}/sessions/{session_id}/integration")
async def update_session_integration(
    program_id: str,
    session_id: str,
    body: SessionIntegrationUpdateRequest,
    _admin: str = Depends(require_admin),
    orchestrator: SchedulerOrchestrator = Depends(_orchestrator),
):
    integration = await orchestrator.store.update_session_integration(
        program_id, session_id, **body.model_dump(exclude_unset=True))
    if integration is None:
        raise NotFoundError("session_not_found")
    return {"integration": _dump(integration)}


# ══════════════════════════════════════════════════════════════
#  AVAILABILITY & MATCHING
# ══════════════════════════════════════════════════════════════

@router.post("/{program_id}/availability")
async def replace_availability(
    program_id: str,
    body: AvailabilityReplaceRequest,
    _admin: str = Depends(require_admin),
    availability: AvailabilityService = Depends(_availability),
):
    windows = [
        AvailabilityWindow(**w.model_dump(exclude_none=True))
        for w in body.windows
    ]
    saved = await availability.replace_windows(program_id, windows)
    return {"windows": [_dump(w) for w in saved]}


@router.post("/{program_id}/scheduling/match")
async def scheduling_match(
    program_id: str,
    body: SchedulingMatchRequest,
    _admin: str = Depends(require_admin),
    availability: AvailabilityService = Depends(_availability),
):
    match = await availability.match(program_id, body.attendee_user_ids, body.duration_minutes)
    return {"match": _dump(match)}


# ══════════════════════════════════════════════════════════════
#  ANALYTICS
# ══════════════════════════════════════════════════════════════

@router.get("/{program_id}/analytics")
async def program_analytics(
    program_id: str,
    _admin: str = Depends(require_admin),
    orchestrator: SchedulerOrchestrator = Depends(_orchestrator),
):
    summary = await orchestrator.store.get_program_analytics(program_id)
    if summary is None:
        raise NotFoundError("program_not_found")
    return {"summary": summary}


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(
    store: BaseProgramsStore = None,
    gateway: NotificationGateway = None,
    settings: Settings = None,
) -> FastAPI:
    settings = settings or get_settings()
    uses_sql = store is None and settings.database.store_backend == "sql"
    store = store or create_store({"store_backend": settings.database.store_backend})
    gateway = gateway or create_notification_gateway(settings.notifications)

    orchestrator = SchedulerOrchestrator(store, gateway, config=settings.scheduler)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if uses_sql:
            await init_db(settings.database.url, echo=settings.debug)
        handle = await orchestrator.start()
        logger.info("programs_scheduler_api_started",
                    store=type(store).__name__, gateway=type(gateway).__name__,
                    scheduler_running=handle.running)
        yield

        await handle.stop()
        await gateway.close()
        if uses_sql:
            await close_db()
        logger.info("programs_scheduler_api_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Programs job scheduler and CRM sync queue",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.gateway = gateway
    app.state.orchestrator = orchestrator
    app.state.availability = AvailabilityService(store)

    @app.exception_handler(ProgramsError)
    async def programs_error_handler(request: Request, exc: ProgramsError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.code})

    @app.get("/health")
    async def health():
        return {
            "status": "healthy" if await store.health_check() else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scheduler_running": orchestrator.running,
        }

    app.include_router(router)
    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
