"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL (production) and SQLite (tests, local development).

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on SQLite it serializes to TEXT.
  - Reminder offsets are normalized into their own table so the candidate
    query can cross sessions × attendees × offsets in SQL.
  - The notification log carries structured key columns next to the unique
    dedupe_key, which lets NOT EXISTS filters match without string building.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Date, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Collaborator-owned tables (read here, written by the CRUD services)
# ──────────────────────────────────────────────────────────────

class AppUserRow(Base):
    __tablename__ = "app_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    display_name: Mapped[str] = mapped_column(String(256), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ProgramRow(Base):
    __tablename__ = "programs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    slug: Mapped[str] = mapped_column(String(128), default="")
    title: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(32), default="open")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ProgramApplicationRow(Base):
    __tablename__ = "program_applications"

    id: Mapped[str] = mapped_column(String(96), primary_key=True, default=_new_id)
    program_id: Mapped[str] = mapped_column(String(64), ForeignKey("programs.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("app_users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="submitted")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_program_applications_status_created", "status", "created_at"),
    )


class ProgramCohortRow(Base):
    __tablename__ = "program_cohorts"

    id: Mapped[str] = mapped_column(String(96), primary_key=True, default=_new_id)
    program_id: Mapped[str] = mapped_column(String(64), ForeignKey("programs.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ProgramCohortMemberRow(Base):
    __tablename__ = "program_cohort_members"

    cohort_id: Mapped[str] = mapped_column(String(96), ForeignKey("program_cohorts.id"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("app_users.id"), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), default="active")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_program_cohort_members_status", "status"),
    )


class ProgramSessionRow(Base):
    __tablename__ = "program_sessions"

    id: Mapped[str] = mapped_column(String(96), primary_key=True, default=_new_id)
    program_id: Mapped[str] = mapped_column(String(64), ForeignKey("programs.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(256), default="")
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    provider: Mapped[str] = mapped_column(String(64), default="")
    meeting_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_program_sessions_starts_at", "starts_at"),
    )


class ProgramSessionAttendeeRow(Base):
    __tablename__ = "program_session_attendees"

    session_id: Mapped[str] = mapped_column(String(96), ForeignKey("program_sessions.id"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("app_users.id"), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), default="invited")


# ──────────────────────────────────────────────────────────────
#  Scheduler-owned tables
# ──────────────────────────────────────────────────────────────

class ProgramSessionIntegrationRow(Base):
    __tablename__ = "program_session_integrations"

    session_id: Mapped[str] = mapped_column(String(96), ForeignKey("program_sessions.id"), primary_key=True)
    provider: Mapped[str] = mapped_column(String(64), default="")
    meeting_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recording_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ProgramSessionReminderOffsetRow(Base):
    __tablename__ = "program_session_reminder_offsets"

    session_id: Mapped[str] = mapped_column(String(96), ForeignKey("program_sessions.id"), primary_key=True)
    offset_minutes: Mapped[int] = mapped_column(Integer, primary_key=True)


class ProgramCrmSyncJobRow(Base):
    __tablename__ = "program_crm_sync_jobs"

    id: Mapped[str] = mapped_column(String(96), primary_key=True)
    program_id: Mapped[str] = mapped_column(String(64), ForeignKey("programs.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="queued")
    reason: Mapped[str] = mapped_column(Text, default="")
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_error: Mapped[str] = mapped_column(Text, default="")
    triggered_by_user_id: Mapped[str] = mapped_column(String(64), ForeignKey("app_users.id"), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_program_crm_sync_jobs_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_program_crm_sync_jobs_program_created", "program_id", "created_at"),
    )


class ProgramNotificationLogRow(Base):
    __tablename__ = "program_notification_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    dedupe_key: Mapped[str] = mapped_column(String(512), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    program_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(96), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reminder_offset_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_program_notification_log_dedupe_key"),
        Index("ix_program_notification_log_program_type", "program_id", "notification_type"),
    )


class ProgramKpiSnapshotRow(Base):
    __tablename__ = "program_kpi_snapshots"

    program_id: Mapped[str] = mapped_column(String(64), ForeignKey("programs.id"), primary_key=True)
    snapshot_date: Mapped[date] = mapped_column(Date, primary_key=True)
    metrics: Mapped[Any] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ProgramAvailabilityWindowRow(Base):
    __tablename__ = "program_availability_windows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    program_id: Mapped[str] = mapped_column(String(64), ForeignKey("programs.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_program_availability_program_starts", "program_id", "starts_at"),
    )
