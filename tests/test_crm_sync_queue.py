"""
Tests for the CRM sync queue and its dispatcher (in-memory store).

Covers:
  - Enqueue / claim / complete / fail state machine
  - Linear capped backoff and dead-lettering
  - Exclusive claims under concurrency
  - CrmSyncDispatcher success and failure paths
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from core.errors import NotFoundError
from gateway.notifications import NotificationDeliveryError
from job_queue.crm_sync import CrmSyncDispatcher, CrmSyncJobQueue
from models.schemas import CrmSyncJobStatus, CrmSyncPayload, SchedulerJobName, crm_sync_backoff


@pytest.fixture
def queue(memory_store):
    return CrmSyncJobQueue(memory_store)


# ──────────────────────────────────────────────────────────────
#  State machine
# ──────────────────────────────────────────────────────────────

class TestCrmSyncJobQueue:
    @pytest.mark.asyncio
    async def test_enqueue_creates_queued_job(self, queue, clock):
        job = await queue.enqueue("program_1", "admin_01", "Sync accepted cohort",
                                  payload={"user_ids": ["writer_01"], "source": "cohort_review"})
        assert job.status == CrmSyncJobStatus.QUEUED
        assert job.attempts == 0
        assert job.max_attempts == 5
        assert job.next_attempt_at == clock.now
        assert job.id.startswith("program_crm_sync_")
        assert job.payload.user_ids == ["writer_01"]
        # Unknown keys survive for forward compatibility
        assert job.payload.model_dump()["source"] == "cohort_review"

    @pytest.mark.asyncio
    async def test_enqueue_unknown_program_or_admin(self, queue):
        with pytest.raises(NotFoundError) as exc:
            await queue.enqueue("program_missing", "admin_01", "x")
        assert exc.value.code == "program_or_admin_not_found"
        with pytest.raises(NotFoundError):
            await queue.enqueue("program_1", "ghost_admin", "x")

    @pytest.mark.asyncio
    async def test_enqueue_then_claim_is_running_with_one_attempt(self, queue):
        job = await queue.enqueue("program_1", "admin_01", "Sync")
        claimed = await queue.claim_next()
        assert claimed is not None
        assert claimed.id == job.id
        assert claimed.status == CrmSyncJobStatus.RUNNING
        assert claimed.attempts == 1
        assert await queue.claim_next() is None

    @pytest.mark.asyncio
    async def test_claim_orders_by_next_attempt_then_created(self, queue, clock):
        first = await queue.enqueue("program_1", "admin_01", "first")
        clock.advance(seconds=1)
        second = await queue.enqueue("program_1", "admin_01", "second")

        # Push the first job behind the second via a failure
        await queue.claim_next()
        await queue.fail(first.id, "boom")
        clock.advance(minutes=5)

        claimed = await queue.claim_next()
        assert claimed.id == second.id
        claimed = await queue.claim_next()
        assert claimed.id == first.id

    @pytest.mark.asyncio
    async def test_complete_sets_succeeded(self, queue, clock):
        job = await queue.enqueue("program_1", "admin_01", "Sync")
        await queue.claim_next()
        done = await queue.complete(job.id)
        assert done.status == CrmSyncJobStatus.SUCCEEDED
        assert done.processed_at == clock.now
        assert done.last_error == ""

    @pytest.mark.asyncio
    async def test_complete_unknown_job_is_noop(self, queue):
        assert await queue.complete("program_crm_sync_missing") is None
        assert await queue.fail("program_crm_sync_missing", "boom") is None

    @pytest.mark.asyncio
    async def test_fail_schedules_retry_with_backoff(self, queue, clock):
        job = await queue.enqueue("program_1", "admin_01", "Sync")
        await queue.claim_next()
        failed = await queue.fail(job.id, "notification_failed:503:unavailable")

        assert failed.status == CrmSyncJobStatus.FAILED
        assert failed.last_error == "notification_failed:503:unavailable"
        assert failed.next_attempt_at == clock.now + timedelta(seconds=30)
        assert failed.next_attempt_at > clock.now
        assert failed.processed_at is None

        # Not eligible until the backoff elapses
        assert await queue.claim_next() is None
        clock.advance(seconds=30)
        retried = await queue.claim_next()
        assert retried.id == job.id
        assert retried.attempts == 2

    @pytest.mark.asyncio
    async def test_max_attempts_one_dead_letters_on_first_failure(self, queue, clock):
        job = await queue.enqueue("program_1", "admin_01", "Sync", max_attempts=1)
        await queue.claim_next()
        dead = await queue.fail(job.id, "boom")

        assert dead.status == CrmSyncJobStatus.DEAD_LETTER
        assert dead.processed_at == clock.now
        jobs = await queue.list_jobs("program_1")
        assert [j.status for j in jobs] == [CrmSyncJobStatus.DEAD_LETTER]
        assert await queue.list_jobs("program_1", status=CrmSyncJobStatus.FAILED) == []

    @pytest.mark.asyncio
    async def test_attempts_never_exceed_max_before_dead_letter(self, queue, clock):
        job = await queue.enqueue("program_1", "admin_01", "Sync", max_attempts=3)
        statuses = []
        while True:
            claimed = await queue.claim_next()
            if claimed is None:
                break
            assert claimed.attempts <= claimed.max_attempts
            result = await queue.fail(job.id, "boom")
            statuses.append(result.status)
            clock.advance(hours=1)

        assert statuses == [CrmSyncJobStatus.FAILED, CrmSyncJobStatus.FAILED, CrmSyncJobStatus.DEAD_LETTER]
        final = (await queue.list_jobs("program_1"))[0]
        assert final.attempts == 3

    @pytest.mark.asyncio
    async def test_terminal_jobs_are_immutable(self, queue):
        job = await queue.enqueue("program_1", "admin_01", "Sync")
        await queue.claim_next()
        await queue.complete(job.id)

        assert await queue.fail(job.id, "late failure") is None
        assert await queue.complete(job.id) is None
        stored = (await queue.list_jobs("program_1"))[0]
        assert stored.status == CrmSyncJobStatus.SUCCEEDED
        assert stored.last_error == ""

    @pytest.mark.asyncio
    async def test_list_jobs_newest_first_with_paging(self, queue, clock):
        ids = []
        for i in range(3):
            job = await queue.enqueue("program_1", "admin_01", f"sync {i}")
            ids.append(job.id)
            clock.advance(seconds=1)

        jobs = await queue.list_jobs("program_1")
        assert [j.id for j in jobs] == list(reversed(ids))
        page = await queue.list_jobs("program_1", limit=1, offset=1)
        assert [j.id for j in page] == [ids[1]]

    @pytest.mark.asyncio
    async def test_concurrent_claims_get_distinct_jobs(self, queue):
        await queue.enqueue("program_1", "admin_01", "only one")
        results = await asyncio.gather(queue.claim_next(), queue.claim_next())
        claimed = [r for r in results if r is not None]
        assert len(claimed) == 1
        assert results.count(None) == 1

    @pytest.mark.asyncio
    async def test_concurrent_claims_many_jobs(self, queue):
        for i in range(3):
            await queue.enqueue("program_1", "admin_01", f"job {i}")
        results = await asyncio.gather(*[queue.claim_next() for _ in range(5)])
        claimed_ids = [r.id for r in results if r is not None]
        assert len(claimed_ids) == 3
        assert len(set(claimed_ids)) == 3


class TestBackoff:
    def test_linear(self):
        assert crm_sync_backoff(1) == timedelta(seconds=30)
        assert crm_sync_backoff(4) == timedelta(seconds=120)

    def test_capped_at_one_hour(self):
        assert crm_sync_backoff(120) == timedelta(seconds=3600)
        assert crm_sync_backoff(500) == timedelta(seconds=3600)


# ──────────────────────────────────────────────────────────────
#  Dispatcher
# ──────────────────────────────────────────────────────────────

class TestCrmSyncDispatcher:
    @pytest.mark.asyncio
    async def test_publishes_and_completes(self, queue, gateway):
        job = await queue.enqueue("program_1", "admin_01", "Placement signed",
                                  payload=CrmSyncPayload(outcome_type="placement"))
        result = await CrmSyncDispatcher(queue, gateway).run(limit=10)

        assert result.job == SchedulerJobName.CRM_SYNC_DISPATCHER
        assert (result.scanned, result.processed, result.failed) == (1, 1, 0)
        event = gateway.published[0]
        assert event.event_type == "program_crm_sync_requested"
        assert event.resource_type == "program_crm_job"
        assert event.resource_id == job.id
        assert event.target_user_id == "admin_01"
        assert event.payload["programId"] == "program_1"
        assert event.payload["attempts"] == 1
        assert event.payload["maxAttempts"] == 5
        assert event.payload["payload"]["outcome_type"] == "placement"

        stored = (await queue.list_jobs("program_1"))[0]
        assert stored.status == CrmSyncJobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_failure_feeds_fail(self, queue):
        failing = AsyncMock()
        failing.publish.side_effect = NotificationDeliveryError(503, "unavailable")
        await queue.enqueue("program_1", "admin_01", "Sync")

        result = await CrmSyncDispatcher(queue, failing).run(limit=10)

        assert (result.scanned, result.processed, result.failed) == (1, 0, 1)
        assert result.errors == ["notification_failed:503:unavailable"]
        stored = (await queue.list_jobs("program_1"))[0]
        assert stored.status == CrmSyncJobStatus.FAILED
        assert stored.last_error == "notification_failed:503:unavailable"

    @pytest.mark.asyncio
    async def test_respects_limit(self, queue, gateway):
        for i in range(3):
            await queue.enqueue("program_1", "admin_01", f"job {i}")
        result = await CrmSyncDispatcher(queue, gateway).run(limit=2)
        assert result.scanned == 2
        assert len(gateway.published) == 2

        queued = await queue.list_jobs("program_1", status=CrmSyncJobStatus.QUEUED)
        assert len(queued) == 1

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue, gateway):
        result = await CrmSyncDispatcher(queue, gateway).run(limit=5)
        assert (result.scanned, result.processed, result.failed) == (0, 0, 0)
