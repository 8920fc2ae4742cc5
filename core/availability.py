"""
Availability matching across N attendees.

The search walks the FIRST attendee's windows in start order and returns the
first one that every other attendee can overlap for the full duration. It is
not a global earliest-slot search: the first attendee's ordering wins, and
callers rely on that tie-break.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Optional

from core.errors import NotFoundError
from database.store_base import BaseProgramsStore
from models.schemas import AvailabilityWindow, SchedulingMatchResult, as_utc

logger = structlog.get_logger()


def find_common_slot(
    windows: list[AvailabilityWindow],
    attendee_user_ids: list[str],
    duration_minutes: int,
) -> SchedulingMatchResult:
    """
    Raises:
        NotFoundError("availability_not_found") if any attendee has no windows.
        NotFoundError("no_common_slot") if no candidate window works for everyone.
    """
    ordered = sorted(windows, key=lambda w: as_utc(w.starts_at))
    per_attendee = [
        [(as_utc(w.starts_at), as_utc(w.ends_at)) for w in ordered if w.user_id == user_id]
        for user_id in attendee_user_ids
    ]
    if not per_attendee or any(not spans for spans in per_attendee):
        raise NotFoundError("availability_not_found")

    duration = timedelta(minutes=duration_minutes)
    for candidate_start, candidate_end in per_attendee[0]:
        overlap = _narrow(candidate_start, candidate_end, per_attendee[1:], duration)
        if overlap is not None and overlap[1] - overlap[0] >= duration:
            starts_at = overlap[0]
            return SchedulingMatchResult(
                starts_at=starts_at,
                ends_at=starts_at + duration,
                attendee_user_ids=list(attendee_user_ids),
            )

    raise NotFoundError("no_common_slot")


def _narrow(
    start: datetime,
    end: datetime,
    others: list[list[tuple[datetime, datetime]]],
    duration: timedelta,
) -> Optional[tuple[datetime, datetime]]:
    # Each attendee contributes the first window that keeps the overlap long enough
    for spans in others:
        for s, e in spans:
            merged_start, merged_end = max(start, s), min(end, e)
            if merged_end - merged_start >= duration:
                start, end = merged_start, merged_end
                break
        else:
            return None
    return start, end


class AvailabilityService:
    """Stores per-program windows and answers scheduling-match requests."""

    def __init__(self, store: BaseProgramsStore):
        self.store = store

    async def replace_windows(self, program_id: str, windows: list[AvailabilityWindow]) -> list[AvailabilityWindow]:
        saved = await self.store.replace_availability_windows(program_id, windows)
        if saved is None:
            raise NotFoundError("program_not_found")
        logger.info("availability_replaced", program_id=program_id, windows=len(saved))
        return saved

    async def list_windows(self, program_id: str) -> list[AvailabilityWindow]:
        return await self.store.list_availability_windows(program_id)

    async def match(self, program_id: str, attendee_user_ids: list[str], duration_minutes: int) -> SchedulingMatchResult:
        windows = await self.store.list_availability_windows(program_id)
        result = find_common_slot(windows, attendee_user_ids, duration_minutes)
        logger.info("scheduling_match_found", program_id=program_id,
                    starts_at=result.starts_at.isoformat(), attendees=len(attendee_user_ids))
        return result
