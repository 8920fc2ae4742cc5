"""
Abstract Programs Store — Interface for all storage backends.

Implementations:
  - SqlProgramsStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryProgramsStore (dict-based, single-process, no persistence)

The queue, dispatchers and jobs only ever talk to this interface. Every
method that reads "now" uses the store's clock, so the in-memory backend
and the SQL backend agree on time in tests.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Optional

from models.schemas import (
    ApplicationReminderCandidate, AvailabilityWindow, CrmSyncJob,
    CrmSyncJobStatus, CrmSyncPayload, ProgramKpiSnapshot,
    SessionIntegration, SessionReminderCandidate,
)


class BaseProgramsStore(ABC):
    """Interface that all programs store backends must implement."""

    # ── CRM sync queue ────────────────────────────────────────

    @abstractmethod
    async def queue_crm_sync_job(
        self, program_id: str, admin_user_id: str, reason: str,
        payload: Optional[CrmSyncPayload] = None, max_attempts: int = 5,
    ) -> Optional[CrmSyncJob]:
        """Insert a queued job. Returns None when program or admin is unknown."""
        ...

    @abstractmethod
    async def list_crm_sync_jobs(
        self, program_id: str, status: Optional[CrmSyncJobStatus] = None,
        limit: int = 100, offset: int = 0,
    ) -> list[CrmSyncJob]:
        ...

    @abstractmethod
    async def get_crm_sync_job(self, job_id: str) -> Optional[CrmSyncJob]:
        ...

    @abstractmethod
    async def claim_next_crm_sync_job(self) -> Optional[CrmSyncJob]:
        """
        Atomically move the earliest eligible job to running.

        Eligible: status queued or failed, next_attempt_at <= now. Two
        concurrent callers never receive the same job.
        """
        ...

    @abstractmethod
    async def complete_crm_sync_job(self, job_id: str) -> Optional[CrmSyncJob]:
        ...

    @abstractmethod
    async def fail_crm_sync_job(self, job_id: str, error_message: str) -> Optional[CrmSyncJob]:
        ...

    # ── Reminder dedupe ───────────────────────────────────────

    @abstractmethod
    async def list_application_reminder_candidates(
        self, age_minutes: int, limit: int,
    ) -> list[ApplicationReminderCandidate]:
        ...

    @abstractmethod
    async def has_application_reminder_been_sent(self, program_id: str, application_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_application_reminder_sent(
        self, program_id: str, application_id: str, user_id: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Record the marker. Returns False if it already existed."""
        ...

    @abstractmethod
    async def list_session_reminder_candidates(
        self, horizon_minutes: int, lookback_minutes: int, limit: int,
    ) -> list[SessionReminderCandidate]:
        ...

    @abstractmethod
    async def has_session_reminder_been_sent(
        self, program_id: str, session_id: str, user_id: str, reminder_offset_minutes: int,
    ) -> bool:
        ...

    @abstractmethod
    async def mark_session_reminder_sent(
        self, program_id: str, session_id: str, user_id: str, reminder_offset_minutes: int,
        payload: Optional[dict[str, Any]] = None,
    ) -> bool:
        ...

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def get_session_integration(self, program_id: str, session_id: str) -> Optional[SessionIntegration]:
        ...

    @abstractmethod
    async def update_session_integration(
        self, program_id: str, session_id: str, **changes: Any,
    ) -> Optional[SessionIntegration]:
        """Apply provider / meeting_url / recording_url / reminder_offsets_minutes changes."""
        ...

    # ── Cohorts & KPIs ────────────────────────────────────────

    @abstractmethod
    async def run_cohort_transition_job(self) -> int:
        """Complete active memberships of ended cohorts. Returns rows changed."""
        ...

    @abstractmethod
    async def list_program_ids(self) -> list[str]:
        ...

    @abstractmethod
    async def get_program_analytics(self, program_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def upsert_program_kpi_snapshot(
        self, program_id: str, snapshot_date: date, metrics: dict[str, Any],
    ) -> ProgramKpiSnapshot:
        ...

    @abstractmethod
    async def get_program_kpi_snapshot(self, program_id: str, snapshot_date: date) -> Optional[ProgramKpiSnapshot]:
        ...

    # ── Availability ──────────────────────────────────────────

    @abstractmethod
    async def replace_availability_windows(
        self, program_id: str, windows: list[AvailabilityWindow],
    ) -> Optional[list[AvailabilityWindow]]:
        """Replace all windows of a program. Returns None for an unknown program."""
        ...

    @abstractmethod
    async def list_availability_windows(self, program_id: str) -> list[AvailabilityWindow]:
        """Windows ordered by starts_at ascending."""
        ...

    # ── Health ────────────────────────────────────────────────

    @abstractmethod
    async def health_check(self) -> bool:
        ...
