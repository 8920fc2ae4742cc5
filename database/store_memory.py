"""
InMemoryProgramsStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlProgramsStore
  - Safe under asyncio: a claim selects and mutates without awaiting in
    between, so concurrent claimants on one event loop never share a job
  - All data lost on process restart

Also carries seed helpers (add_program, add_session, ...) for the
collaborator-owned records that the SQL backend reads from real tables.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

from database.store import build_program_analytics
from database.store_base import BaseProgramsStore
from models.schemas import (
    ApplicationReminderCandidate, AvailabilityWindow, CohortMembershipStatus,
    CrmSyncJob, CrmSyncJobStatus, CrmSyncPayload, NotificationDedupeRecord,
    NotificationType, ProgramKpiSnapshot, SessionIntegration,
    SessionReminderCandidate, CLAIMABLE_CRM_STATUSES,
    REMINDABLE_APPLICATION_STATUSES, application_dedupe_key, as_utc,
    crm_sync_backoff, session_dedupe_key, utcnow,
)

logger = structlog.get_logger()


@dataclass
class _Application:
    id: str
    program_id: str
    user_id: str
    status: str
    created_at: datetime


@dataclass
class _Session:
    id: str
    program_id: str
    starts_at: datetime
    ends_at: datetime
    provider: str = ""
    meeting_url: Optional[str] = None
    attendees: dict[str, str] = field(default_factory=dict)   # user_id → attendance status


@dataclass
class _Cohort:
    id: str
    program_id: str
    ends_at: datetime
    members: dict[str, str] = field(default_factory=dict)     # user_id → membership status


class InMemoryProgramsStore(BaseProgramsStore):
    """
    Full-featured in-memory store with the same interface as SqlProgramsStore.
    Hands out copies so callers can never mutate stored state behind its back.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._users: set[str] = set()
        self._programs: set[str] = set()
        self._applications: dict[str, _Application] = {}
        self._sessions: dict[str, _Session] = {}
        self._cohorts: dict[str, _Cohort] = {}
        self._integrations: dict[str, SessionIntegration] = {}        # session_id → integration
        self._jobs: dict[str, CrmSyncJob] = {}                        # id → job
        self._notification_log: dict[str, NotificationDedupeRecord] = {}  # dedupe_key → record
        self._kpi_snapshots: dict[tuple[str, date], ProgramKpiSnapshot] = {}
        self._availability: dict[str, list[AvailabilityWindow]] = {}  # program_id → windows
        logger.info("inmemory_store_initialized")

    # ── Seeding (collaborator-owned records) ──────────────

    def add_user(self, user_id: str) -> None:
        self._users.add(user_id)

    def add_program(self, program_id: str) -> None:
        self._programs.add(program_id)

    def add_application(self, application_id: str, program_id: str, user_id: str,
                        status: str = "submitted", created_at: Optional[datetime] = None) -> None:
        self._applications[application_id] = _Application(
            id=application_id, program_id=program_id, user_id=user_id,
            status=str(getattr(status, "value", status)),
            created_at=as_utc(created_at or self._clock()),
        )

    def add_session(self, session_id: str, program_id: str, starts_at: datetime,
                    ends_at: Optional[datetime] = None, provider: str = "",
                    meeting_url: Optional[str] = None) -> None:
        starts_at = as_utc(starts_at)
        self._sessions[session_id] = _Session(
            id=session_id, program_id=program_id, starts_at=starts_at,
            ends_at=as_utc(ends_at) if ends_at else starts_at + timedelta(hours=1),
            provider=provider, meeting_url=meeting_url,
        )

    def add_session_attendee(self, session_id: str, user_id: str, status: str = "invited") -> None:
        self._sessions[session_id].attendees[user_id] = status

    def add_cohort(self, cohort_id: str, program_id: str, ends_at: datetime) -> None:
        self._cohorts[cohort_id] = _Cohort(id=cohort_id, program_id=program_id, ends_at=as_utc(ends_at))

    def add_cohort_member(self, cohort_id: str, user_id: str,
                          status: str = CohortMembershipStatus.ACTIVE.value) -> None:
        self._cohorts[cohort_id].members[user_id] = status

    def cohort_member_status(self, cohort_id: str, user_id: str) -> Optional[str]:
        cohort = self._cohorts.get(cohort_id)
        return cohort.members.get(user_id) if cohort else None

    # ── CRM sync queue ────────────────────────────────────

    async def queue_crm_sync_job(
        self, program_id: str, admin_user_id: str, reason: str,
        payload: Optional[CrmSyncPayload] = None, max_attempts: int = 5,
    ) -> Optional[CrmSyncJob]:
        if program_id not in self._programs or admin_user_id not in self._users:
            return None
        now = self._clock()
        job = CrmSyncJob(
            program_id=program_id,
            reason=reason,
            payload=payload or CrmSyncPayload(),
            max_attempts=max_attempts,
            triggered_by_user_id=admin_user_id,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        self._jobs[job.id] = job
        return job.model_copy(deep=True)

    async def list_crm_sync_jobs(
        self, program_id: str, status: Optional[CrmSyncJobStatus] = None,
        limit: int = 100, offset: int = 0,
    ) -> list[CrmSyncJob]:
        jobs = [j for j in self._jobs.values() if j.program_id == program_id]
        if status is not None:
            jobs = [j for j in jobs if j.status == CrmSyncJobStatus(status)]
        jobs.sort(key=lambda j: (j.created_at, j.id), reverse=True)
        return [j.model_copy(deep=True) for j in jobs[offset:offset + limit]]

    async def get_crm_sync_job(self, job_id: str) -> Optional[CrmSyncJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def claim_next_crm_sync_job(self) -> Optional[CrmSyncJob]:
        now = self._clock()
        eligible = [
            j for j in self._jobs.values()
            if j.status in CLAIMABLE_CRM_STATUSES and j.next_attempt_at <= now
        ]
        if not eligible:
            return None
        job = min(eligible, key=lambda j: (j.next_attempt_at, j.created_at))
        job.status = CrmSyncJobStatus.RUNNING
        job.attempts += 1
        job.updated_at = now
        logger.debug("crm_sync_job_claimed", job_id=job.id, attempts=job.attempts)
        return job.model_copy(deep=True)

    async def complete_crm_sync_job(self, job_id: str) -> Optional[CrmSyncJob]:
        job = self._mutable_job(job_id)
        if job is None:
            return None
        now = self._clock()
        job.status = CrmSyncJobStatus.SUCCEEDED
        job.processed_at = now
        job.last_error = ""
        job.updated_at = now
        return job.model_copy(deep=True)

    async def fail_crm_sync_job(self, job_id: str, error_message: str) -> Optional[CrmSyncJob]:
        job = self._mutable_job(job_id)
        if job is None:
            return None
        now = self._clock()
        if job.attempts >= job.max_attempts:
            job.status = CrmSyncJobStatus.DEAD_LETTER
            job.processed_at = now
        else:
            job.status = CrmSyncJobStatus.FAILED
            job.next_attempt_at = now + crm_sync_backoff(job.attempts)
        job.last_error = error_message
        job.updated_at = now
        return job.model_copy(deep=True)

    def _mutable_job(self, job_id: str) -> Optional[CrmSyncJob]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if job.is_terminal:
            logger.warning("crm_sync_job_already_terminal", job_id=job_id, status=job.status.value)
            return None
        return job

    # ── Reminder dedupe ───────────────────────────────────

    async def list_application_reminder_candidates(
        self, age_minutes: int, limit: int,
    ) -> list[ApplicationReminderCandidate]:
        cutoff = self._clock() - timedelta(minutes=age_minutes)
        remindable = {s.value for s in REMINDABLE_APPLICATION_STATUSES}
        apps = sorted(
            (a for a in self._applications.values()
             if a.status in remindable
             and a.created_at <= cutoff
             and application_dedupe_key(a.program_id, a.id) not in self._notification_log),
            key=lambda a: (a.created_at, a.id),
        )
        return [
            ApplicationReminderCandidate(
                program_id=a.program_id, application_id=a.id, user_id=a.user_id,
                status=a.status, application_created_at=a.created_at,
            )
            for a in apps[:limit]
        ]

    async def has_application_reminder_been_sent(self, program_id: str, application_id: str) -> bool:
        return application_dedupe_key(program_id, application_id) in self._notification_log

    async def mark_application_reminder_sent(
        self, program_id: str, application_id: str, user_id: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> bool:
        return self._insert_marker(NotificationDedupeRecord(
            dedupe_key=application_dedupe_key(program_id, application_id),
            notification_type=NotificationType.APPLICATION_SLA_REMINDER,
            program_id=program_id,
            resource_id=application_id,
            user_id=user_id,
            payload=payload or {},
            sent_at=self._clock(),
        ))

    async def list_session_reminder_candidates(
        self, horizon_minutes: int, lookback_minutes: int, limit: int,
    ) -> list[SessionReminderCandidate]:
        now = self._clock()
        min_time = now - timedelta(minutes=lookback_minutes)
        max_time = now + timedelta(minutes=horizon_minutes)

        results: list[SessionReminderCandidate] = []
        sessions = sorted(self._sessions.values(), key=lambda s: (s.starts_at, s.id))
        for session in sessions:
            if session.starts_at < min_time or session.starts_at > max_time:
                continue
            integration = self._integration_for(session)
            for user_id in sorted(session.attendees):
                for offset in sorted(integration.effective_offsets):
                    key = session_dedupe_key(session.program_id, session.id, user_id, offset)
                    if key in self._notification_log:
                        continue
                    results.append(SessionReminderCandidate(
                        program_id=session.program_id,
                        session_id=session.id,
                        user_id=user_id,
                        starts_at=session.starts_at,
                        provider=integration.provider,
                        meeting_url=integration.meeting_url,
                        reminder_offset_minutes=offset,
                    ))
        return results[:limit]

    async def has_session_reminder_been_sent(
        self, program_id: str, session_id: str, user_id: str, reminder_offset_minutes: int,
    ) -> bool:
        key = session_dedupe_key(program_id, session_id, user_id, reminder_offset_minutes)
        return key in self._notification_log

    async def mark_session_reminder_sent(
        self, program_id: str, session_id: str, user_id: str, reminder_offset_minutes: int,
        payload: Optional[dict[str, Any]] = None,
    ) -> bool:
        return self._insert_marker(NotificationDedupeRecord(
            dedupe_key=session_dedupe_key(program_id, session_id, user_id, reminder_offset_minutes),
            notification_type=NotificationType.SESSION_REMINDER,
            program_id=program_id,
            resource_id=session_id,
            user_id=user_id,
            reminder_offset_minutes=reminder_offset_minutes,
            payload=payload or {},
            sent_at=self._clock(),
        ))

    def _insert_marker(self, record: NotificationDedupeRecord) -> bool:
        if record.dedupe_key in self._notification_log:
            return False
        self._notification_log[record.dedupe_key] = record
        return True

    # ── Sessions ──────────────────────────────────────────

    def _integration_for(self, session: _Session) -> SessionIntegration:
        existing = self._integrations.get(session.id)
        if existing is not None:
            return existing
        return SessionIntegration(
            session_id=session.id, provider=session.provider, meeting_url=session.meeting_url,
        )

    async def get_session_integration(self, program_id: str, session_id: str) -> Optional[SessionIntegration]:
        session = self._sessions.get(session_id)
        if session is None or session.program_id != program_id:
            return None
        return self._integration_for(session).model_copy(deep=True)

    async def update_session_integration(
        self, program_id: str, session_id: str, **changes: Any,
    ) -> Optional[SessionIntegration]:
        session = self._sessions.get(session_id)
        if session is None or session.program_id != program_id:
            return None
        current = self._integration_for(session)
        update: dict[str, Any] = {"updated_at": self._clock()}
        for name in ("provider", "meeting_url", "recording_url"):
            if name in changes:
                update[name] = changes[name]
        if changes.get("reminder_offsets_minutes") is not None:
            update["reminder_offsets_minutes"] = sorted(set(changes["reminder_offsets_minutes"]))
        integration = current.model_copy(update=update, deep=True)
        self._integrations[session_id] = integration
        return integration.model_copy(deep=True)

    # ── Cohorts & KPIs ────────────────────────────────────

    async def run_cohort_transition_job(self) -> int:
        now = self._clock()
        changed = 0
        for cohort in self._cohorts.values():
            if cohort.ends_at >= now:
                continue
            for user_id, status in cohort.members.items():
                if status == CohortMembershipStatus.ACTIVE.value:
                    cohort.members[user_id] = CohortMembershipStatus.COMPLETED.value
                    changed += 1
        return changed

    async def list_program_ids(self) -> list[str]:
        return sorted(self._programs)

    async def get_program_analytics(self, program_id: str) -> Optional[dict[str, Any]]:
        if program_id not in self._programs:
            return None
        now = self._clock()

        app_counts: dict[str, int] = {}
        for a in self._applications.values():
            if a.program_id == program_id:
                app_counts[a.status] = app_counts.get(a.status, 0) + 1

        cohorts = [c for c in self._cohorts.values() if c.program_id == program_id]
        members_active = sum(
            1 for c in cohorts for s in c.members.values()
            if s == CohortMembershipStatus.ACTIVE.value
        )

        sessions = [s for s in self._sessions.values() if s.program_id == program_id]
        attendance_counts: dict[str, int] = {}
        for s in sessions:
            for status in s.attendees.values():
                attendance_counts[status] = attendance_counts.get(status, 0) + 1

        return build_program_analytics(
            app_counts,
            len(cohorts),
            members_active,
            len(sessions),
            sum(1 for s in sessions if s.ends_at < now),
            attendance_counts,
        )

    async def upsert_program_kpi_snapshot(
        self, program_id: str, snapshot_date: date, metrics: dict[str, Any],
    ) -> ProgramKpiSnapshot:
        snapshot = ProgramKpiSnapshot(
            program_id=program_id, snapshot_date=snapshot_date,
            metrics=dict(metrics), updated_at=self._clock(),
        )
        self._kpi_snapshots[(program_id, snapshot_date)] = snapshot
        return snapshot.model_copy(deep=True)

    async def get_program_kpi_snapshot(self, program_id: str, snapshot_date: date) -> Optional[ProgramKpiSnapshot]:
        snapshot = self._kpi_snapshots.get((program_id, snapshot_date))
        return snapshot.model_copy(deep=True) if snapshot else None

    # ── Availability ──────────────────────────────────────

    async def replace_availability_windows(
        self, program_id: str, windows: list[AvailabilityWindow],
    ) -> Optional[list[AvailabilityWindow]]:
        if program_id not in self._programs:
            return None
        self._availability[program_id] = [w.model_copy(deep=True) for w in windows]
        return await self.list_availability_windows(program_id)

    async def list_availability_windows(self, program_id: str) -> list[AvailabilityWindow]:
        windows = self._availability.get(program_id, [])
        return [w.model_copy(deep=True) for w in sorted(windows, key=lambda w: (as_utc(w.starts_at), w.id))]

    # ── Health ────────────────────────────────────────────

    async def health_check(self) -> bool:
        return True
