#!/usr/bin/env python3
"""
Run Job — Execute one scheduler job now, outside the ticker.

Uses the configured store and notification gateway, exactly like the
ticker inside the API process would.

Usage:
    python scripts/run_job.py crm_sync_dispatcher --limit 20
    python scripts/run_job.py session_reminder --horizon-minutes 120 --lookback-minutes 15
    python scripts/run_job.py application_sla_reminder --age-minutes 2880
    python scripts/run_job.py kpi_aggregation
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

JOB_NAMES = [
    "crm_sync_dispatcher",
    "application_sla_reminder",
    "session_reminder",
    "cohort_transition",
    "kpi_aggregation",
]


async def run(args: argparse.Namespace) -> int:
    from config.settings import load_settings
    settings = load_settings(args.config)

    from core.orchestrator import SchedulerOrchestrator
    from database.session import close_db, init_db
    from database.store_factory import create_store
    from gateway.notifications import create_notification_gateway

    uses_sql = settings.database.store_backend == "sql"
    if uses_sql:
        await init_db(settings.database.url, echo=settings.debug)
    store = create_store({"store_backend": settings.database.store_backend})
    gateway = create_notification_gateway(settings.notifications)
    orchestrator = SchedulerOrchestrator(store, gateway, config=settings.scheduler)

    try:
        result = await orchestrator.run_job(
            args.job,
            limit=args.limit,
            age_minutes=args.age_minutes,
            horizon_minutes=args.horizon_minutes,
            lookback_minutes=args.lookback_minutes,
        )
    finally:
        await gateway.close()
        if uses_sql:
            await close_db()

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 1 if result.failed else 0


def main():
    parser = argparse.ArgumentParser(description="Run one programs scheduler job")
    parser.add_argument("job", choices=JOB_NAMES, help="Job to run")
    parser.add_argument("--limit", type=int, default=None, help="Max items to process")
    parser.add_argument("--age-minutes", type=int, default=None,
                        help="application_sla_reminder: minimum application age")
    parser.add_argument("--horizon-minutes", type=int, default=None,
                        help="session_reminder: how far ahead to look")
    parser.add_argument("--lookback-minutes", type=int, default=None,
                        help="session_reminder: grace period after the reminder point")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
