"""
Core data models for the programs scheduler.
These are the universal types shared across the queue, dispatchers and stores.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite hands them back without tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class CrmSyncJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


TERMINAL_CRM_STATUSES = {CrmSyncJobStatus.SUCCEEDED, CrmSyncJobStatus.DEAD_LETTER}
CLAIMABLE_CRM_STATUSES = {CrmSyncJobStatus.QUEUED, CrmSyncJobStatus.FAILED}


class SchedulerJobName(str, Enum):
    CRM_SYNC_DISPATCHER = "crm_sync_dispatcher"
    APPLICATION_SLA_REMINDER = "application_sla_reminder"
    SESSION_REMINDER = "session_reminder"
    COHORT_TRANSITION = "cohort_transition"
    KPI_AGGREGATION = "kpi_aggregation"


class NotificationType(str, Enum):
    APPLICATION_SLA_REMINDER = "application_sla_reminder"
    SESSION_REMINDER = "session_reminder"


class ApplicationStatus(str, Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    ACCEPTED = "accepted"
    WAITLISTED = "waitlisted"
    REJECTED = "rejected"


class CohortMembershipStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


REMINDABLE_APPLICATION_STATUSES = (ApplicationStatus.SUBMITTED, ApplicationStatus.UNDER_REVIEW)
DEFAULT_REMINDER_OFFSETS_MINUTES = [60]


# ──────────────────────────────────────────────────────────────
#  CRM sync jobs
# ──────────────────────────────────────────────────────────────

CRM_SYNC_DEFAULT_MAX_ATTEMPTS = 5
CRM_SYNC_BACKOFF_STEP_SECONDS = 30
CRM_SYNC_BACKOFF_CAP_SECONDS = 3600


def crm_sync_backoff(attempts: int) -> timedelta:
    """Linear retry delay, capped at one hour."""
    return timedelta(seconds=min(CRM_SYNC_BACKOFF_CAP_SECONDS, CRM_SYNC_BACKOFF_STEP_SECONDS * attempts))


class CrmSyncPayload(BaseModel):
    """
    What the admin asked to push to the CRM.

    Only the keys below are understood by this service; anything else is
    kept verbatim and forwarded so newer callers are not truncated.
    """
    model_config = ConfigDict(extra="allow")

    user_ids: list[str] = []                  # participants whose records should sync
    outcome_type: Optional[str] = None        # e.g. "placement", "signed_with_rep"
    notes: str = ""


class CrmSyncJob(BaseModel):
    id: str = Field(default_factory=lambda: f"program_crm_sync_{uuid.uuid4()}")
    program_id: str
    status: CrmSyncJobStatus = CrmSyncJobStatus.QUEUED
    reason: str
    payload: CrmSyncPayload = Field(default_factory=CrmSyncPayload)
    attempts: int = 0
    max_attempts: int = CRM_SYNC_DEFAULT_MAX_ATTEMPTS
    next_attempt_at: datetime = Field(default_factory=utcnow)
    last_error: str = ""
    triggered_by_user_id: str
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CRM_STATUSES


# ──────────────────────────────────────────────────────────────
#  Notifications
# ──────────────────────────────────────────────────────────────

def application_dedupe_key(program_id: str, application_id: str) -> str:
    return f"application:{program_id}:{application_id}"


def session_dedupe_key(program_id: str, session_id: str, user_id: str, reminder_offset_minutes: int) -> str:
    return f"session:{program_id}:{session_id}:{user_id}:{reminder_offset_minutes}"


class NotificationDedupeRecord(BaseModel):
    dedupe_key: str
    notification_type: NotificationType
    program_id: str
    resource_id: str
    user_id: Optional[str] = None
    reminder_offset_minutes: Optional[int] = None
    payload: dict[str, Any] = {}
    sent_at: datetime = Field(default_factory=utcnow)


class _WirePayload(BaseModel):
    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)


class ApplicationReminderPayload(_WirePayload):
    program_id: str
    status: str
    application_created_at: datetime


class SessionReminderPayload(_WirePayload):
    program_id: str
    starts_at: datetime
    provider: str = ""
    meeting_url: Optional[str] = None
    reminder_offset_minutes: int


class CrmSyncRequestedPayload(_WirePayload):
    program_id: str
    reason: str
    payload: dict[str, Any] = {}
    attempts: int
    max_attempts: int


class NotificationEvent(BaseModel):
    """Event body POSTed to the notification service's /internal/events."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_id: str = Field(default_factory=lambda: f"event_{uuid.uuid4()}")
    event_type: str
    occurred_at: datetime = Field(default_factory=utcnow)
    actor_user_id: Optional[str] = None
    target_user_id: str
    resource_type: str
    resource_id: str
    payload: dict[str, Any] = {}

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ──────────────────────────────────────────────────────────────
#  Reminder candidates
# ──────────────────────────────────────────────────────────────

class ApplicationReminderCandidate(BaseModel):
    program_id: str
    application_id: str
    user_id: str
    status: str
    application_created_at: datetime


class SessionReminderCandidate(BaseModel):
    program_id: str
    session_id: str
    user_id: str
    starts_at: datetime
    provider: str = ""
    meeting_url: Optional[str] = None
    reminder_offset_minutes: int


class SessionIntegration(BaseModel):
    session_id: str
    provider: str = ""
    meeting_url: Optional[str] = None
    recording_url: Optional[str] = None
    reminder_offsets_minutes: list[int] = []
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def effective_offsets(self) -> list[int]:
        return list(self.reminder_offsets_minutes) or list(DEFAULT_REMINDER_OFFSETS_MINUTES)


# ──────────────────────────────────────────────────────────────
#  Availability
# ──────────────────────────────────────────────────────────────

class AvailabilityWindow(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    user_id: str
    starts_at: datetime
    ends_at: datetime


class SchedulingMatchResult(BaseModel):
    starts_at: datetime
    ends_at: datetime
    attendee_user_ids: list[str]


# ──────────────────────────────────────────────────────────────
#  KPI snapshots
# ──────────────────────────────────────────────────────────────

class ProgramKpiSnapshot(BaseModel):
    program_id: str
    snapshot_date: date
    metrics: dict[str, Any] = {}
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Job results
# ──────────────────────────────────────────────────────────────

class SchedulerJobResult(BaseModel):
    job: SchedulerJobName
    scanned: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = []
