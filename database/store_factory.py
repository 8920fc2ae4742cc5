"""
Store Factory — Build a programs store backend from configuration.

Configuration in settings.yaml:
    database:
      url: "sqlite:///./programs.db"
      # "sql"      Durable store on the database above (default)
      # "memory"   Process-local dicts; development and tests only
      store_backend: "sql"

Every call builds a fresh store. Callers own the instance they get back:
the API passes it to its orchestrator, scripts create one per run.

Usage:
    from database.store_factory import create_store
    store = create_store({"store_backend": "sql"})
    store = create_store({"store_backend": "memory"}, clock=fake_clock)
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.store_base import BaseProgramsStore
from models.schemas import utcnow

logger = structlog.get_logger()

STORE_BACKENDS = ("sql", "memory")


def create_store(
    config: dict = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    clock: Callable[[], datetime] = utcnow,
) -> BaseProgramsStore:
    """
    Create a new programs store.

    Args:
        config: dict with key store_backend: "sql" | "memory" (default: "sql")
        session_factory: SQL only; defaults to the process-wide engine
        clock: time source handed to the store

    Raises:
        ValueError: unknown store_backend
    """
    backend = (config or {}).get("store_backend") or "sql"

    if backend == "sql":
        from database.store import SqlProgramsStore
        store = SqlProgramsStore(session_factory=session_factory, clock=clock)

    elif backend == "memory":
        from database.store_memory import InMemoryProgramsStore
        store = InMemoryProgramsStore(clock=clock)
        logger.warning("memory_store_selected", detail="jobs and markers are lost on restart")

    else:
        raise ValueError(f"unknown store_backend {backend!r}, expected one of {STORE_BACKENDS}")

    logger.info("store_created", backend=backend)
    return store
