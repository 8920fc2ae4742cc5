"""
CRM sync job queue and its dispatcher.

State machine (per job):

    queued ──claim──▶ running ──complete──▶ succeeded
                         │
                         └──fail──▶ failed ──claim──▶ running …
                                  └▶ dead_letter   (attempts >= max_attempts)

succeeded and dead_letter are terminal: complete/fail on them are no-ops.
A failed job becomes claimable again at next_attempt_at = now + backoff,
backoff = min(1h, 30s × attempts).
"""
from __future__ import annotations

import structlog
from typing import Any, Optional, Union

from core.errors import NotFoundError
from database.store_base import BaseProgramsStore
from gateway.notifications import NotificationGateway
from models.schemas import (
    CrmSyncJob, CrmSyncJobStatus, CrmSyncPayload, CrmSyncRequestedPayload,
    NotificationEvent, SchedulerJobName, SchedulerJobResult,
    CRM_SYNC_DEFAULT_MAX_ATTEMPTS,
)

logger = structlog.get_logger()

CRM_SYNC_EVENT_TYPE = "program_crm_sync_requested"
CRM_SYNC_RESOURCE_TYPE = "program_crm_job"


class CrmSyncJobQueue:
    """Thin, logged facade over the store's CRM sync operations."""

    def __init__(self, store: BaseProgramsStore):
        self.store = store

    async def enqueue(
        self,
        program_id: str,
        admin_user_id: str,
        reason: str,
        payload: Union[CrmSyncPayload, dict[str, Any], None] = None,
        max_attempts: int = CRM_SYNC_DEFAULT_MAX_ATTEMPTS,
    ) -> CrmSyncJob:
        if isinstance(payload, dict):
            payload = CrmSyncPayload.model_validate(payload)
        job = await self.store.queue_crm_sync_job(
            program_id, admin_user_id, reason, payload=payload, max_attempts=max_attempts,
        )
        if job is None:
            raise NotFoundError("program_or_admin_not_found")
        logger.info("crm_sync_job_queued", job_id=job.id, program_id=program_id,
                    admin_user_id=admin_user_id, max_attempts=max_attempts)
        return job

    async def claim_next(self) -> Optional[CrmSyncJob]:
        return await self.store.claim_next_crm_sync_job()

    async def complete(self, job_id: str) -> Optional[CrmSyncJob]:
        job = await self.store.complete_crm_sync_job(job_id)
        if job:
            logger.info("crm_sync_job_succeeded", job_id=job_id, attempts=job.attempts)
        return job

    async def fail(self, job_id: str, error_message: str) -> Optional[CrmSyncJob]:
        job = await self.store.fail_crm_sync_job(job_id, error_message)
        if job is None:
            return None
        if job.status == CrmSyncJobStatus.DEAD_LETTER:
            logger.error("crm_sync_job_dead_lettered", job_id=job_id,
                         attempts=job.attempts, error=error_message)
        else:
            logger.warning("crm_sync_job_failed", job_id=job_id, attempts=job.attempts,
                           next_attempt_at=job.next_attempt_at.isoformat(), error=error_message)
        return job

    async def list_jobs(
        self, program_id: str, status: Optional[CrmSyncJobStatus] = None,
        limit: int = 100, offset: int = 0,
    ) -> list[CrmSyncJob]:
        return await self.store.list_crm_sync_jobs(program_id, status=status, limit=limit, offset=offset)


class CrmSyncDispatcher:
    """
    The crm_sync_dispatcher job: drain up to `limit` due jobs per run.

    Each claimed job becomes one program_crm_sync_requested event addressed
    to the admin who queued it. Any exception while publishing fails the job
    with the error text; the next claim picks it up after its backoff.
    """

    def __init__(self, queue: CrmSyncJobQueue, gateway: NotificationGateway):
        self.queue = queue
        self.gateway = gateway

    async def run(self, limit: int = 50) -> SchedulerJobResult:
        result = SchedulerJobResult(job=SchedulerJobName.CRM_SYNC_DISPATCHER)

        while result.scanned < limit:
            job = await self.queue.claim_next()
            if job is None:
                break
            result.scanned += 1
            try:
                await self.gateway.publish(self._build_event(job))
                await self.queue.complete(job.id)
                result.processed += 1
            except Exception as e:
                await self.queue.fail(job.id, str(e))
                result.failed += 1
                result.errors.append(str(e))

        return result

    @staticmethod
    def _build_event(job: CrmSyncJob) -> NotificationEvent:
        payload = CrmSyncRequestedPayload(
            program_id=job.program_id,
            reason=job.reason,
            payload=job.payload.model_dump(mode="json"),
            attempts=job.attempts,
            max_attempts=job.max_attempts,
        )
        return NotificationEvent(
            event_type=CRM_SYNC_EVENT_TYPE,
            actor_user_id=job.triggered_by_user_id,
            target_user_id=job.triggered_by_user_id,
            resource_type=CRM_SYNC_RESOURCE_TYPE,
            resource_id=job.id,
            payload=payload.model_dump(mode="json", by_alias=True),
        )
