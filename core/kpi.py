"""KPI aggregation: one analytics snapshot per program per UTC day."""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable

from database.store_base import BaseProgramsStore
from models.schemas import SchedulerJobName, SchedulerJobResult, utcnow

logger = structlog.get_logger()


class KpiAggregationJob:

    def __init__(self, store: BaseProgramsStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    async def run(self) -> SchedulerJobResult:
        result = SchedulerJobResult(job=SchedulerJobName.KPI_AGGREGATION)
        program_ids = await self.store.list_program_ids()
        result.scanned = len(program_ids)
        snapshot_date = self._clock().date()

        for program_id in program_ids:
            try:
                analytics = await self.store.get_program_analytics(program_id)
                if analytics is None:
                    result.skipped += 1
                    continue
                await self.store.upsert_program_kpi_snapshot(program_id, snapshot_date, analytics)
                result.processed += 1
            except Exception as e:
                logger.warning("kpi_snapshot_failed", program_id=program_id, error=str(e))
                result.failed += 1
                result.errors.append(str(e))

        return result
