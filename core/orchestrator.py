"""
Scheduler Orchestrator — Ticks every scheduler job on an interval.

Each tick runs, in order:
    crm_sync_dispatcher → application_sla_reminder → session_reminder
    → cohort_transition → kpi_aggregation

Job kinds are isolated: an exception in one is logged and recorded in its
result, and the tick moves on to the next kind. There is no in-process lock;
replicas and manual run_job() calls may overlap with the ticker, and the
store's claim semantics keep that safe.

stop() never interrupts a tick: it signals the loop and waits for the tick
in flight to finish, so claimed jobs always reach a recorded outcome.

Usage:
    orchestrator = SchedulerOrchestrator(store, gateway)
    handle = await orchestrator.start()          # ticks immediately, then every interval
    result = await orchestrator.run_job("session_reminder", limit=10)
    await handle.stop()
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from config.settings import SchedulerConfig, get_settings
from core.cohorts import CohortTransitionJob
from core.kpi import KpiAggregationJob
from core.reminders import ReminderDispatcher
from database.store_base import BaseProgramsStore
from gateway.notifications import NotificationGateway
from job_queue.crm_sync import CrmSyncDispatcher, CrmSyncJobQueue
from models.schemas import SchedulerJobName, SchedulerJobResult, utcnow

logger = structlog.get_logger()

TICK_ORDER = (
    SchedulerJobName.CRM_SYNC_DISPATCHER,
    SchedulerJobName.APPLICATION_SLA_REMINDER,
    SchedulerJobName.SESSION_REMINDER,
    SchedulerJobName.COHORT_TRANSITION,
    SchedulerJobName.KPI_AGGREGATION,
)


class SchedulerHandle:
    """Stop handle returned by SchedulerOrchestrator.start()."""

    def __init__(self, orchestrator: Optional[SchedulerOrchestrator] = None):
        self._orchestrator = orchestrator

    @property
    def running(self) -> bool:
        return self._orchestrator is not None and self._orchestrator.running

    async def stop(self) -> None:
        if self._orchestrator is not None:
            await self._orchestrator.stop()


class SchedulerOrchestrator:

    def __init__(
        self,
        store: BaseProgramsStore,
        gateway: NotificationGateway,
        config: SchedulerConfig = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config or get_settings().scheduler

        self.queue = CrmSyncJobQueue(store)
        self.crm_dispatcher = CrmSyncDispatcher(self.queue, gateway)
        self.reminders = ReminderDispatcher(store, gateway, clock=clock)
        self.cohorts = CohortTransitionJob(store)
        self.kpis = KpiAggregationJob(store, clock=clock)

        self.last_results: dict[str, SchedulerJobResult] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._interval_s: float = self.config.interval_ms / 1000

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self, enabled: Optional[bool] = None, interval_ms: Optional[int] = None) -> SchedulerHandle:
        """Launch the ticker as a background task. Disabled → inert handle."""
        enabled = self.config.enabled if enabled is None else enabled
        if not enabled:
            logger.info("scheduler_disabled")
            return SchedulerHandle()
        if self.running:
            return SchedulerHandle(self)

        self._interval_s = (interval_ms if interval_ms is not None else self.config.interval_ms) / 1000
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._tick_loop(self._stop_event), name="programs_scheduler")
        logger.info("scheduler_started", interval_ms=int(self._interval_s * 1000))
        return SchedulerHandle(self)

    async def stop(self) -> None:
        """
        Stop ticking after the current tick completes.

        Safe before start() and when called repeatedly.
        """
        task, self._task = self._task, None
        stop_event, self._stop_event = self._stop_event, None
        if task is None:
            return
        stop_event.set()
        await task
        logger.info("scheduler_stopped")

    async def _tick_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("scheduler_tick_error", error=str(e))

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval_s)
            except asyncio.TimeoutError:
                pass

    # ── Jobs ──────────────────────────────────────────────

    async def tick(self) -> dict[str, SchedulerJobResult]:
        """Run every job kind once, each isolated from the others' failures."""
        results: dict[str, SchedulerJobResult] = {}
        for name in TICK_ORDER:
            try:
                result = await self.run_job(name)
            except Exception as e:
                logger.error("scheduler_job_error", scheduler_job=name.value, error=str(e))
                result = SchedulerJobResult(job=name, failed=1, errors=[str(e)])
            results[name.value] = result
            logger.info("scheduler_job_complete",
                        scheduler_job=name.value, scanned=result.scanned,
                        processed=result.processed, skipped=result.skipped, failed=result.failed)
        self.last_results = results
        return results

    async def run_job(self, name: SchedulerJobName | str, **opts: Any) -> SchedulerJobResult:
        """
        Run one named job now, bypassing the ticker.

        opts: limit, age_minutes, horizon_minutes, lookback_minutes; each
        falls back to the scheduler config when omitted or None.
        """
        try:
            job = SchedulerJobName(name)
        except ValueError:
            raise ValueError(f"unknown scheduler job: {name}") from None

        limit = opts.get("limit")
        cfg = self.config

        if job == SchedulerJobName.CRM_SYNC_DISPATCHER:
            return await self.crm_dispatcher.run(limit=limit if limit is not None else cfg.crm_batch_size)

        if job == SchedulerJobName.APPLICATION_SLA_REMINDER:
            return await self.reminders.run(
                job,
                limit=limit if limit is not None else cfg.application_reminder_limit,
                age_minutes=_pick(opts, "age_minutes", cfg.application_reminder_age_minutes),
            )

        if job == SchedulerJobName.SESSION_REMINDER:
            return await self.reminders.run(
                job,
                limit=limit if limit is not None else cfg.session_reminder_limit,
                horizon_minutes=_pick(opts, "horizon_minutes", cfg.session_reminder_horizon_minutes),
                lookback_minutes=_pick(opts, "lookback_minutes", cfg.session_reminder_lookback_minutes),
            )

        if job == SchedulerJobName.COHORT_TRANSITION:
            return await self.cohorts.run()

        return await self.kpis.run()


def _pick(opts: dict[str, Any], key: str, default: int) -> int:
    value = opts.get(key)
    return default if value is None else value
