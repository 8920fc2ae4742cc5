"""
Reminder Dispatcher — Time-bound notifications with dedupe markers.

Two jobs share this module:

  application_sla_reminder
      Applications still submitted / under_review after `age_minutes`
      get one reminder, ever.

  session_reminder
      Each (session, attendee, offset) gets one reminder once the session
      is within `offset` minutes of starting, for a grace period of
      `lookback_minutes` after that point.

Per candidate the order is: send, then write the marker. A send failure
leaves no marker, so the candidate comes back on the next run. A crash
between send and marker can produce one duplicate; that window is accepted.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable, Optional

from database.store_base import BaseProgramsStore
from gateway.notifications import NotificationGateway
from models.schemas import (
    ApplicationReminderCandidate, ApplicationReminderPayload, NotificationEvent,
    SchedulerJobName, SchedulerJobResult, SessionReminderCandidate,
    SessionReminderPayload, utcnow,
)

logger = structlog.get_logger()

APPLICATION_EVENT_TYPE = "program_application_sla_reminder"
SESSION_EVENT_TYPE = "program_session_reminder"

DEFAULT_APPLICATION_AGE_MINUTES = 24 * 60
DEFAULT_APPLICATION_LIMIT = 100
DEFAULT_SESSION_HORIZON_MINUTES = 24 * 60
DEFAULT_SESSION_LOOKBACK_MINUTES = 15
DEFAULT_SESSION_LIMIT = 250


def is_session_reminder_due(candidate: SessionReminderCandidate, now: datetime, lookback_minutes: int) -> bool:
    """True while minutes-until-start lies in [offset - lookback, offset]."""
    minutes_until = (candidate.starts_at - now).total_seconds() / 60
    offset = candidate.reminder_offset_minutes
    return offset - lookback_minutes <= minutes_until <= offset


class ReminderDispatcher:

    def __init__(
        self,
        store: BaseProgramsStore,
        gateway: NotificationGateway,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self._clock = clock

    async def run(
        self,
        kind: SchedulerJobName | str,
        limit: Optional[int] = None,
        age_minutes: Optional[int] = None,
        horizon_minutes: Optional[int] = None,
        lookback_minutes: Optional[int] = None,
    ) -> SchedulerJobResult:
        kind = SchedulerJobName(kind)
        if kind == SchedulerJobName.APPLICATION_SLA_REMINDER:
            return await self.run_application_reminders(
                age_minutes=age_minutes if age_minutes is not None else DEFAULT_APPLICATION_AGE_MINUTES,
                limit=limit if limit is not None else DEFAULT_APPLICATION_LIMIT,
            )
        if kind == SchedulerJobName.SESSION_REMINDER:
            return await self.run_session_reminders(
                horizon_minutes=horizon_minutes if horizon_minutes is not None else DEFAULT_SESSION_HORIZON_MINUTES,
                lookback_minutes=lookback_minutes if lookback_minutes is not None else DEFAULT_SESSION_LOOKBACK_MINUTES,
                limit=limit if limit is not None else DEFAULT_SESSION_LIMIT,
            )
        raise ValueError(f"not a reminder job: {kind.value}")

    # ── Applications ──────────────────────────────────────

    async def run_application_reminders(self, age_minutes: int, limit: int) -> SchedulerJobResult:
        result = SchedulerJobResult(job=SchedulerJobName.APPLICATION_SLA_REMINDER)
        candidates = await self.store.list_application_reminder_candidates(age_minutes, limit)
        result.scanned = len(candidates)

        for candidate in candidates:
            try:
                if await self.store.has_application_reminder_been_sent(
                        candidate.program_id, candidate.application_id):
                    result.skipped += 1
                    continue
                event = self._application_event(candidate)
                await self.gateway.publish(event)
                await self.store.mark_application_reminder_sent(
                    candidate.program_id, candidate.application_id, candidate.user_id,
                    payload=event.payload,
                )
                result.processed += 1
            except Exception as e:
                logger.warning("application_reminder_failed",
                               application_id=candidate.application_id, error=str(e))
                result.failed += 1
                result.errors.append(str(e))

        return result

    @staticmethod
    def _application_event(candidate: ApplicationReminderCandidate) -> NotificationEvent:
        payload = ApplicationReminderPayload(
            program_id=candidate.program_id,
            status=candidate.status,
            application_created_at=candidate.application_created_at,
        )
        return NotificationEvent(
            event_type=APPLICATION_EVENT_TYPE,
            target_user_id=candidate.user_id,
            resource_type="program_application",
            resource_id=candidate.application_id,
            payload=payload.model_dump(mode="json", by_alias=True),
        )

    # ── Sessions ──────────────────────────────────────────

    async def run_session_reminders(
        self, horizon_minutes: int, lookback_minutes: int, limit: int,
    ) -> SchedulerJobResult:
        result = SchedulerJobResult(job=SchedulerJobName.SESSION_REMINDER)
        candidates = await self.store.list_session_reminder_candidates(
            horizon_minutes, lookback_minutes, limit)
        result.scanned = len(candidates)

        now = self._clock()
        for candidate in candidates:
            if not is_session_reminder_due(candidate, now, lookback_minutes):
                result.skipped += 1
                continue
            try:
                if await self.store.has_session_reminder_been_sent(
                        candidate.program_id, candidate.session_id,
                        candidate.user_id, candidate.reminder_offset_minutes):
                    result.skipped += 1
                    continue
                event = self._session_event(candidate)
                await self.gateway.publish(event)
                await self.store.mark_session_reminder_sent(
                    candidate.program_id, candidate.session_id,
                    candidate.user_id, candidate.reminder_offset_minutes,
                    payload=event.payload,
                )
                result.processed += 1
            except Exception as e:
                logger.warning("session_reminder_failed", session_id=candidate.session_id,
                               user_id=candidate.user_id, offset=candidate.reminder_offset_minutes,
                               error=str(e))
                result.failed += 1
                result.errors.append(str(e))

        return result

    @staticmethod
    def _session_event(candidate: SessionReminderCandidate) -> NotificationEvent:
        payload = SessionReminderPayload(
            program_id=candidate.program_id,
            starts_at=candidate.starts_at,
            provider=candidate.provider,
            meeting_url=candidate.meeting_url,
            reminder_offset_minutes=candidate.reminder_offset_minutes,
        )
        return NotificationEvent(
            event_type=SESSION_EVENT_TYPE,
            target_user_id=candidate.user_id,
            resource_type="program_session",
            resource_id=candidate.session_id,
            payload=payload.model_dump(mode="json", by_alias=True),
        )
