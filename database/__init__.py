"""
Database layer — Multi-backend persistence for the programs scheduler.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "sql"})
  job = await store.claim_next_crm_sync_job()
"""
from database.models import (
    Base, ProgramCrmSyncJobRow, ProgramNotificationLogRow,
    ProgramKpiSnapshotRow, ProgramAvailabilityWindowRow,
)
from database.session import (
    get_engine, get_session, get_session_factory, configure_engine,
    init_db, close_db, create_engine_for, create_session_factory, create_tables,
)
from database.store_base import BaseProgramsStore
from database.store import SqlProgramsStore
from database.store_memory import InMemoryProgramsStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "ProgramCrmSyncJobRow", "ProgramNotificationLogRow",
    "ProgramKpiSnapshotRow", "ProgramAvailabilityWindowRow",
    # Session management
    "get_engine", "get_session", "get_session_factory", "configure_engine",
    "init_db", "close_db",
    "create_engine_for", "create_session_factory", "create_tables",
    # Store interface
    "BaseProgramsStore",
    # Store backends
    "SqlProgramsStore", "InMemoryProgramsStore",
    # Factory
    "create_store",
]
