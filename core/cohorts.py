"""Cohort lifecycle: close out memberships of cohorts that have ended."""
from __future__ import annotations

import structlog

from database.store_base import BaseProgramsStore
from models.schemas import SchedulerJobName, SchedulerJobResult

logger = structlog.get_logger()


class CohortTransitionJob:
    """
    Moves every active membership of an ended cohort to completed.
    Idempotent: a second run over unchanged data transitions nothing.
    """

    def __init__(self, store: BaseProgramsStore):
        self.store = store

    async def run(self) -> SchedulerJobResult:
        transitioned = await self.store.run_cohort_transition_job()
        if transitioned:
            logger.info("cohort_memberships_completed", count=transitioned)
        return SchedulerJobResult(
            job=SchedulerJobName.COHORT_TRANSITION,
            scanned=transitioned,
            processed=transitioned,
        )
