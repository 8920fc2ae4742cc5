"""
SqlProgramsStore — Portable SQL queries for PostgreSQL and SQLite.

Notes on portability:
  - Claims pick candidates with SELECT … FOR UPDATE SKIP LOCKED, then move the
    row to running with a conditional UPDATE that must hit exactly one row.
    SQLite renders no lock clause, so the UPDATE alone decides the winner.
  - Datetimes come back naive from SQLite; every row passes through as_utc().
  - "Already reminded" filters are correlated NOT EXISTS subqueries against
    program_notification_log, so candidates never leave the database.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import select, update, delete, and_, func, literal, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    AppUserRow, ProgramRow, ProgramApplicationRow, ProgramCohortRow,
    ProgramCohortMemberRow, ProgramSessionRow, ProgramSessionAttendeeRow,
    ProgramSessionIntegrationRow, ProgramSessionReminderOffsetRow,
    ProgramCrmSyncJobRow, ProgramNotificationLogRow, ProgramKpiSnapshotRow,
    ProgramAvailabilityWindowRow,
)
from database.session import get_session
from database.store_base import BaseProgramsStore
from models.schemas import (
    ApplicationReminderCandidate, ApplicationStatus, AvailabilityWindow,
    CohortMembershipStatus, CrmSyncJob, CrmSyncJobStatus, CrmSyncPayload,
    NotificationType, ProgramKpiSnapshot, SessionIntegration,
    SessionReminderCandidate, CLAIMABLE_CRM_STATUSES,
    DEFAULT_REMINDER_OFFSETS_MINUTES, REMINDABLE_APPLICATION_STATUSES,
    application_dedupe_key, as_utc, crm_sync_backoff, session_dedupe_key, utcnow,
)

logger = structlog.get_logger()

_INTEGRATION_FIELDS = ("provider", "meeting_url", "recording_url")

# Due jobs tried per claim before giving up to concurrent claimants
_CLAIM_CANDIDATES = 5


class SqlProgramsStore(BaseProgramsStore):
    """
    Persistent programs store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    def _session(self):
        return get_session(self._session_factory)

    # ── CRM sync queue ─────────────────────────────────────

    async def queue_crm_sync_job(
        self, program_id: str, admin_user_id: str, reason: str,
        payload: Optional[CrmSyncPayload] = None, max_attempts: int = 5,
    ) -> Optional[CrmSyncJob]:
        async with self._session() as db:
            program = await db.get(ProgramRow, program_id)
            admin = await db.get(AppUserRow, admin_user_id)
            if program is None or admin is None:
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
            db.add(ProgramCrmSyncJobRow(
                id=job.id,
                program_id=job.program_id,
                status=job.status.value,
                reason=job.reason,
                payload=job.payload.model_dump(mode="json"),
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                next_attempt_at=job.next_attempt_at,
                last_error=job.last_error,
                triggered_by_user_id=job.triggered_by_user_id,
                created_at=job.created_at,
                updated_at=job.updated_at,
            ))
            return job

    async def list_crm_sync_jobs(
        self, program_id: str, status: Optional[CrmSyncJobStatus] = None,
        limit: int = 100, offset: int = 0,
    ) -> list[CrmSyncJob]:
        async with self._session() as db:
            stmt = select(ProgramCrmSyncJobRow).where(ProgramCrmSyncJobRow.program_id == program_id)
            if status is not None:
                stmt = stmt.where(ProgramCrmSyncJobRow.status == CrmSyncJobStatus(status).value)
            stmt = (
                stmt.order_by(ProgramCrmSyncJobRow.created_at.desc(), ProgramCrmSyncJobRow.id.desc())
                .limit(limit)
                .offset(offset)
            )
            result = await db.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars()]

    async def get_crm_sync_job(self, job_id: str) -> Optional[CrmSyncJob]:
        async with self._session() as db:
            row = await db.get(ProgramCrmSyncJobRow, job_id)
            return self._row_to_job(row) if row else None

    async def claim_next_crm_sync_job(self) -> Optional[CrmSyncJob]:
        async with self._session() as db:
            now = self._clock()
            claimable = [s.value for s in CLAIMABLE_CRM_STATUSES]
            stmt = (
                select(ProgramCrmSyncJobRow.id)
                .where(and_(
                    ProgramCrmSyncJobRow.status.in_(claimable),
                    ProgramCrmSyncJobRow.next_attempt_at <= now,
                ))
                .order_by(
                    ProgramCrmSyncJobRow.next_attempt_at.asc(),
                    ProgramCrmSyncJobRow.created_at.asc(),
                )
                .limit(_CLAIM_CANDIDATES)
                .with_for_update(skip_locked=True)
            )
            candidate_ids = list((await db.execute(stmt)).scalars())

            for job_id in candidate_ids:
                # Compare-and-set: only the claimant whose UPDATE still sees a
                # claimable status wins; SQLite ignores the row lock above.
                won = await db.execute(
                    update(ProgramCrmSyncJobRow)
                    .where(and_(
                        ProgramCrmSyncJobRow.id == job_id,
                        ProgramCrmSyncJobRow.status.in_(claimable),
                        ProgramCrmSyncJobRow.next_attempt_at <= now,
                    ))
                    .values(
                        status=CrmSyncJobStatus.RUNNING.value,
                        attempts=ProgramCrmSyncJobRow.attempts + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if won.rowcount != 1:
                    logger.debug("crm_sync_claim_lost", job_id=job_id)
                    continue

                row = await db.get(ProgramCrmSyncJobRow, job_id, populate_existing=True)
                logger.debug("crm_sync_job_claimed", job_id=row.id, attempts=row.attempts)
                return self._row_to_job(row)

            return None

    async def complete_crm_sync_job(self, job_id: str) -> Optional[CrmSyncJob]:
        async with self._session() as db:
            row = await self._lock_job(db, job_id)
            if row is None:
                return None
            now = self._clock()
            row.status = CrmSyncJobStatus.SUCCEEDED.value
            row.processed_at = now
            row.last_error = ""
            row.updated_at = now
            await db.flush()
            return self._row_to_job(row)

    async def fail_crm_sync_job(self, job_id: str, error_message: str) -> Optional[CrmSyncJob]:
        async with self._session() as db:
            row = await self._lock_job(db, job_id)
            if row is None:
                return None
            now = self._clock()
            if row.attempts >= row.max_attempts:
                row.status = CrmSyncJobStatus.DEAD_LETTER.value
                row.processed_at = now
            else:
                row.status = CrmSyncJobStatus.FAILED.value
                row.next_attempt_at = now + crm_sync_backoff(row.attempts)
            row.last_error = error_message
            row.updated_at = now
            await db.flush()
            return self._row_to_job(row)

    async def _lock_job(self, db: AsyncSession, job_id: str) -> Optional[ProgramCrmSyncJobRow]:
        """Row-lock a job for a state change; None if unknown or terminal."""
        stmt = (
            select(ProgramCrmSyncJobRow)
            .where(ProgramCrmSyncJobRow.id == job_id)
            .with_for_update()
        )
        result = await db.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        if row.status in (CrmSyncJobStatus.SUCCEEDED.value, CrmSyncJobStatus.DEAD_LETTER.value):
            logger.warning("crm_sync_job_already_terminal", job_id=job_id, status=row.status)
            return None
        return row

    # ── Reminder dedupe ────────────────────────────────────

    async def list_application_reminder_candidates(
        self, age_minutes: int, limit: int,
    ) -> list[ApplicationReminderCandidate]:
        cutoff = self._clock() - timedelta(minutes=age_minutes)
        app = ProgramApplicationRow
        log = ProgramNotificationLogRow
        already_sent = (
            select(log.id)
            .where(and_(
                log.notification_type == NotificationType.APPLICATION_SLA_REMINDER.value,
                log.program_id == app.program_id,
                log.resource_id == app.id,
            ))
            .exists()
        )
        stmt = (
            select(app)
            .where(and_(
                app.status.in_([s.value for s in REMINDABLE_APPLICATION_STATUSES]),
                app.created_at <= cutoff,
                ~already_sent,
            ))
            .order_by(app.created_at.asc(), app.id.asc())
            .limit(limit)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            return [
                ApplicationReminderCandidate(
                    program_id=r.program_id,
                    application_id=r.id,
                    user_id=r.user_id,
                    status=r.status,
                    application_created_at=as_utc(r.created_at),
                )
                for r in result.scalars()
            ]

    async def has_application_reminder_been_sent(self, program_id: str, application_id: str) -> bool:
        return await self._has_marker(application_dedupe_key(program_id, application_id))

    async def mark_application_reminder_sent(
        self, program_id: str, application_id: str, user_id: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> bool:
        return await self._insert_marker(ProgramNotificationLogRow(
            dedupe_key=application_dedupe_key(program_id, application_id),
            notification_type=NotificationType.APPLICATION_SLA_REMINDER.value,
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

        sess = ProgramSessionRow
        att = ProgramSessionAttendeeRow
        integ = ProgramSessionIntegrationRow
        off = ProgramSessionReminderOffsetRow
        log = ProgramNotificationLogRow

        offset_col = func.coalesce(off.offset_minutes, literal(DEFAULT_REMINDER_OFFSETS_MINUTES[0]))
        already_sent = (
            select(log.id)
            .where(and_(
                log.notification_type == NotificationType.SESSION_REMINDER.value,
                log.program_id == sess.program_id,
                log.resource_id == sess.id,
                log.user_id == att.user_id,
                log.reminder_offset_minutes == offset_col,
            ))
            .exists()
        )
        stmt = (
            select(
                sess.program_id,
                sess.id,
                att.user_id,
                sess.starts_at,
                func.coalesce(integ.provider, sess.provider),
                func.coalesce(integ.meeting_url, sess.meeting_url),
                offset_col,
            )
            .select_from(sess)
            .join(att, att.session_id == sess.id)
            .outerjoin(integ, integ.session_id == sess.id)
            .outerjoin(off, off.session_id == sess.id)
            .where(and_(
                sess.starts_at >= min_time,
                sess.starts_at <= max_time,
                ~already_sent,
            ))
            .order_by(sess.starts_at.asc(), sess.id.asc(), att.user_id.asc(), offset_col.asc())
            .limit(limit)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            return [
                SessionReminderCandidate(
                    program_id=program_id,
                    session_id=session_id,
                    user_id=user_id,
                    starts_at=as_utc(starts_at),
                    provider=provider or "",
                    meeting_url=meeting_url,
                    reminder_offset_minutes=int(offset),
                )
                for program_id, session_id, user_id, starts_at, provider, meeting_url, offset in result.all()
            ]

    async def has_session_reminder_been_sent(
        self, program_id: str, session_id: str, user_id: str, reminder_offset_minutes: int,
    ) -> bool:
        return await self._has_marker(
            session_dedupe_key(program_id, session_id, user_id, reminder_offset_minutes))

    async def mark_session_reminder_sent(
        self, program_id: str, session_id: str, user_id: str, reminder_offset_minutes: int,
        payload: Optional[dict[str, Any]] = None,
    ) -> bool:
        return await self._insert_marker(ProgramNotificationLogRow(
            dedupe_key=session_dedupe_key(program_id, session_id, user_id, reminder_offset_minutes),
            notification_type=NotificationType.SESSION_REMINDER.value,
            program_id=program_id,
            resource_id=session_id,
            user_id=user_id,
            reminder_offset_minutes=reminder_offset_minutes,
            payload=payload or {},
            sent_at=self._clock(),
        ))

    async def _has_marker(self, dedupe_key: str) -> bool:
        async with self._session() as db:
            stmt = select(ProgramNotificationLogRow.id).where(
                ProgramNotificationLogRow.dedupe_key == dedupe_key)
            result = await db.execute(stmt)
            return result.first() is not None

    async def _insert_marker(self, row: ProgramNotificationLogRow) -> bool:
        async with self._session() as db:
            existing = await db.execute(
                select(ProgramNotificationLogRow.id).where(
                    ProgramNotificationLogRow.dedupe_key == row.dedupe_key))
            if existing.first() is not None:
                return False
            db.add(row)
            try:
                await db.flush()
            except IntegrityError:
                # Lost the race to a concurrent scan; the marker exists either way
                await db.rollback()
                logger.info("notification_marker_exists", dedupe_key=row.dedupe_key)
                return False
            return True

    # ── Sessions ───────────────────────────────────────────

    async def get_session_integration(self, program_id: str, session_id: str) -> Optional[SessionIntegration]:
        async with self._session() as db:
            session_row = await db.get(ProgramSessionRow, session_id)
            if session_row is None or session_row.program_id != program_id:
                return None
            return await self._load_integration(db, session_row)

    async def update_session_integration(
        self, program_id: str, session_id: str, **changes: Any,
    ) -> Optional[SessionIntegration]:
        async with self._session() as db:
            session_row = await db.get(ProgramSessionRow, session_id)
            if session_row is None or session_row.program_id != program_id:
                return None

            row = await db.get(ProgramSessionIntegrationRow, session_id)
            if row is None:
                row = ProgramSessionIntegrationRow(
                    session_id=session_id,
                    provider=session_row.provider,
                    meeting_url=session_row.meeting_url,
                )
                db.add(row)
            for name in _INTEGRATION_FIELDS:
                if name in changes:
                    setattr(row, name, changes[name])
            row.updated_at = self._clock()

            offsets = changes.get("reminder_offsets_minutes")
            if offsets is not None:
                await db.execute(
                    delete(ProgramSessionReminderOffsetRow)
                    .where(ProgramSessionReminderOffsetRow.session_id == session_id))
                for minutes in sorted(set(offsets)):
                    db.add(ProgramSessionReminderOffsetRow(session_id=session_id, offset_minutes=minutes))
            await db.flush()
            return await self._load_integration(db, session_row)

    async def _load_integration(self, db: AsyncSession, session_row: ProgramSessionRow) -> SessionIntegration:
        row = await db.get(ProgramSessionIntegrationRow, session_row.id)
        offsets = await db.execute(
            select(ProgramSessionReminderOffsetRow.offset_minutes)
            .where(ProgramSessionReminderOffsetRow.session_id == session_row.id)
            .order_by(ProgramSessionReminderOffsetRow.offset_minutes.asc()))
        offset_list = [int(m) for m in offsets.scalars()]
        if row is None:
            return SessionIntegration(
                session_id=session_row.id,
                provider=session_row.provider or "",
                meeting_url=session_row.meeting_url,
                reminder_offsets_minutes=offset_list,
            )
        return SessionIntegration(
            session_id=row.session_id,
            provider=row.provider or "",
            meeting_url=row.meeting_url,
            recording_url=row.recording_url,
            reminder_offsets_minutes=offset_list,
            updated_at=as_utc(row.updated_at),
        )

    # ── Cohorts & KPIs ─────────────────────────────────────

    async def run_cohort_transition_job(self) -> int:
        now = self._clock()
        ended_cohorts = select(ProgramCohortRow.id).where(ProgramCohortRow.ends_at < now)
        stmt = (
            update(ProgramCohortMemberRow)
            .where(and_(
                ProgramCohortMemberRow.status == CohortMembershipStatus.ACTIVE.value,
                ProgramCohortMemberRow.cohort_id.in_(ended_cohorts),
            ))
            .values(status=CohortMembershipStatus.COMPLETED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            return result.rowcount or 0

    async def list_program_ids(self) -> list[str]:
        async with self._session() as db:
            result = await db.execute(select(ProgramRow.id).order_by(ProgramRow.id.asc()))
            return list(result.scalars())

    async def get_program_analytics(self, program_id: str) -> Optional[dict[str, Any]]:
        now = self._clock()
        async with self._session() as db:
            if await db.get(ProgramRow, program_id) is None:
                return None

            app_counts = dict((await db.execute(
                select(ProgramApplicationRow.status, func.count())
                .where(ProgramApplicationRow.program_id == program_id)
                .group_by(ProgramApplicationRow.status)
            )).all())

            cohorts_total = await db.scalar(
                select(func.count()).select_from(ProgramCohortRow)
                .where(ProgramCohortRow.program_id == program_id)) or 0

            members_active = await db.scalar(
                select(func.count()).select_from(ProgramCohortMemberRow)
                .join(ProgramCohortRow, ProgramCohortRow.id == ProgramCohortMemberRow.cohort_id)
                .where(and_(
                    ProgramCohortRow.program_id == program_id,
                    ProgramCohortMemberRow.status == CohortMembershipStatus.ACTIVE.value,
                ))) or 0

            sessions_scheduled = await db.scalar(
                select(func.count()).select_from(ProgramSessionRow)
                .where(ProgramSessionRow.program_id == program_id)) or 0
            sessions_completed = await db.scalar(
                select(func.count()).select_from(ProgramSessionRow)
                .where(and_(
                    ProgramSessionRow.program_id == program_id,
                    ProgramSessionRow.ends_at < now,
                ))) or 0

            attendance_counts = dict((await db.execute(
                select(ProgramSessionAttendeeRow.status, func.count())
                .join(ProgramSessionRow, ProgramSessionRow.id == ProgramSessionAttendeeRow.session_id)
                .where(ProgramSessionRow.program_id == program_id)
                .group_by(ProgramSessionAttendeeRow.status)
            )).all())

        return build_program_analytics(
            app_counts, cohorts_total, members_active,
            sessions_scheduled, sessions_completed, attendance_counts,
        )

    async def upsert_program_kpi_snapshot(
        self, program_id: str, snapshot_date: date, metrics: dict[str, Any],
    ) -> ProgramKpiSnapshot:
        now = self._clock()
        async with self._session() as db:
            row = await db.get(ProgramKpiSnapshotRow, (program_id, snapshot_date))
            if row is None:
                row = ProgramKpiSnapshotRow(program_id=program_id, snapshot_date=snapshot_date)
                db.add(row)
            row.metrics = dict(metrics)
            row.updated_at = now
            await db.flush()
            return ProgramKpiSnapshot(
                program_id=program_id, snapshot_date=snapshot_date,
                metrics=dict(metrics), updated_at=now,
            )

    async def get_program_kpi_snapshot(self, program_id: str, snapshot_date: date) -> Optional[ProgramKpiSnapshot]:
        async with self._session() as db:
            row = await db.get(ProgramKpiSnapshotRow, (program_id, snapshot_date))
            if row is None:
                return None
            return ProgramKpiSnapshot(
                program_id=row.program_id,
                snapshot_date=row.snapshot_date,
                metrics=row.metrics or {},
                updated_at=as_utc(row.updated_at),
            )

    # ── Availability ───────────────────────────────────────

    async def replace_availability_windows(
        self, program_id: str, windows: list[AvailabilityWindow],
    ) -> Optional[list[AvailabilityWindow]]:
        async with self._session() as db:
            if await db.get(ProgramRow, program_id) is None:
                return None
            await db.execute(
                delete(ProgramAvailabilityWindowRow)
                .where(ProgramAvailabilityWindowRow.program_id == program_id))
            for w in windows:
                db.add(ProgramAvailabilityWindowRow(
                    id=w.id, program_id=program_id, user_id=w.user_id,
                    starts_at=as_utc(w.starts_at), ends_at=as_utc(w.ends_at),
                ))
            await db.flush()
        return sorted(windows, key=lambda w: as_utc(w.starts_at))

    async def list_availability_windows(self, program_id: str) -> list[AvailabilityWindow]:
        async with self._session() as db:
            stmt = (
                select(ProgramAvailabilityWindowRow)
                .where(ProgramAvailabilityWindowRow.program_id == program_id)
                .order_by(ProgramAvailabilityWindowRow.starts_at.asc(), ProgramAvailabilityWindowRow.id.asc())
            )
            result = await db.execute(stmt)
            return [
                AvailabilityWindow(
                    id=r.id, user_id=r.user_id,
                    starts_at=as_utc(r.starts_at), ends_at=as_utc(r.ends_at),
                )
                for r in result.scalars()
            ]

    # ── Health ─────────────────────────────────────────────

    async def health_check(self) -> bool:
        try:
            async with self._session() as db:
                await db.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("store_health_check_failed", error=str(e))
            return False

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_job(row: ProgramCrmSyncJobRow) -> CrmSyncJob:
        return CrmSyncJob(
            id=row.id,
            program_id=row.program_id,
            status=CrmSyncJobStatus(row.status),
            reason=row.reason or "",
            payload=CrmSyncPayload.model_validate(row.payload or {}),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            next_attempt_at=as_utc(row.next_attempt_at),
            last_error=row.last_error or "",
            triggered_by_user_id=row.triggered_by_user_id,
            processed_at=as_utc(row.processed_at) if row.processed_at else None,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


def build_program_analytics(
    application_counts: dict[str, int],
    cohorts_total: int,
    cohort_members_active: int,
    sessions_scheduled: int,
    sessions_completed: int,
    attendance_counts: dict[str, int],
) -> dict[str, Any]:
    """Shape raw per-status counts into the KPI metrics map."""
    invited = sum(attendance_counts.values())
    attended = attendance_counts.get("attended", 0)
    return {
        "applications_submitted": sum(application_counts.values()),
        "applications_under_review": application_counts.get(ApplicationStatus.UNDER_REVIEW.value, 0),
        "applications_accepted": application_counts.get(ApplicationStatus.ACCEPTED.value, 0),
        "applications_waitlisted": application_counts.get(ApplicationStatus.WAITLISTED.value, 0),
        "applications_rejected": application_counts.get(ApplicationStatus.REJECTED.value, 0),
        "cohorts_total": cohorts_total,
        "cohort_members_active": cohort_members_active,
        "sessions_scheduled": sessions_scheduled,
        "sessions_completed": sessions_completed,
        "attendance_invited": invited,
        "attendance_marked": invited - attendance_counts.get("invited", 0),
        "attendance_attended": attended,
        "attendance_rate": attended / invited if invited > 0 else 0.0,
    }
