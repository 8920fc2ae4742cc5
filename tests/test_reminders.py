"""Tests for the reminder dispatcher: candidates, dedupe markers and due windows."""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from core.reminders import ReminderDispatcher, is_session_reminder_due
from gateway.notifications import NotificationDeliveryError
from models.schemas import SchedulerJobName, SessionReminderCandidate


@pytest.fixture
def dispatcher(memory_store, gateway, clock):
    return ReminderDispatcher(memory_store, gateway, clock=clock)


def _failing_gateway():
    failing = AsyncMock()
    failing.publish.side_effect = NotificationDeliveryError(502, "bad gateway")
    return failing


# ──────────────────────────────────────────────────────────────
#  Application SLA reminders
# ──────────────────────────────────────────────────────────────

class TestApplicationReminders:
    @pytest.mark.asyncio
    async def test_aged_application_is_reminded_once(self, memory_store, dispatcher, gateway, clock):
        memory_store.add_application("app_1", "program_1", "writer_01",
                                     created_at=clock.now - timedelta(days=2))

        result = await dispatcher.run("application_sla_reminder")
        assert result.job == SchedulerJobName.APPLICATION_SLA_REMINDER
        assert (result.scanned, result.processed, result.failed) == (1, 1, 0)

        event = gateway.published[0]
        assert event.event_type == "program_application_sla_reminder"
        assert event.resource_type == "program_application"
        assert event.resource_id == "app_1"
        assert event.target_user_id == "writer_01"
        assert event.payload["programId"] == "program_1"
        assert event.payload["status"] == "submitted"
        assert "applicationCreatedAt" in event.payload

        assert await memory_store.has_application_reminder_been_sent("program_1", "app_1")
        again = await dispatcher.run("application_sla_reminder")
        assert again.scanned == 0
        assert len(gateway.published) == 1

    @pytest.mark.asyncio
    async def test_young_or_decided_applications_are_not_candidates(self, memory_store, dispatcher, clock):
        memory_store.add_application("app_young", "program_1", "writer_01",
                                     created_at=clock.now - timedelta(hours=2))
        memory_store.add_application("app_accepted", "program_1", "writer_02", status="accepted",
                                     created_at=clock.now - timedelta(days=3))
        memory_store.add_application("app_review", "program_1", "writer_02", status="under_review",
                                     created_at=clock.now - timedelta(days=3))

        result = await dispatcher.run("application_sla_reminder")
        assert result.scanned == 1
        assert await memory_store.has_application_reminder_been_sent("program_1", "app_review")
        assert not await memory_store.has_application_reminder_been_sent("program_1", "app_young")

    @pytest.mark.asyncio
    async def test_age_and_limit_options(self, memory_store, dispatcher, clock):
        for i in range(3):
            memory_store.add_application(f"app_{i}", "program_1", "writer_01",
                                         created_at=clock.now - timedelta(hours=3))
        result = await dispatcher.run("application_sla_reminder", age_minutes=60, limit=2)
        assert result.scanned == 2
        assert result.processed == 2

    @pytest.mark.asyncio
    async def test_failed_send_leaves_no_marker(self, memory_store, gateway, clock):
        memory_store.add_application("app_1", "program_1", "writer_01",
                                     created_at=clock.now - timedelta(days=2))
        failing = ReminderDispatcher(memory_store, _failing_gateway(), clock=clock)

        result = await failing.run("application_sla_reminder")
        assert (result.processed, result.failed) == (0, 1)
        assert result.errors == ["notification_failed:502:bad gateway"]
        assert not await memory_store.has_application_reminder_been_sent("program_1", "app_1")

        # The candidate comes back and succeeds with a healthy gateway
        healthy = ReminderDispatcher(memory_store, gateway, clock=clock)
        result = await healthy.run("application_sla_reminder")
        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_marker_write_failure_counts_as_failed(self, memory_store, dispatcher, clock):
        memory_store.add_application("app_1", "program_1", "writer_01",
                                     created_at=clock.now - timedelta(days=2))
        memory_store.mark_application_reminder_sent = AsyncMock(side_effect=RuntimeError("db down"))

        result = await dispatcher.run("application_sla_reminder")
        assert (result.processed, result.failed) == (0, 1)
        assert result.errors == ["db down"]


# ──────────────────────────────────────────────────────────────
#  Session reminders
# ──────────────────────────────────────────────────────────────

class TestSessionReminders:
    @pytest.mark.asyncio
    async def test_default_offset_reminds_attendees(self, memory_store, dispatcher, gateway, clock):
        memory_store.add_session("sess_1", "program_1", clock.now + timedelta(minutes=60),
                                 provider="zoom", meeting_url="https://zoom.example/j/1")
        memory_store.add_session_attendee("sess_1", "writer_01")
        memory_store.add_session_attendee("sess_1", "writer_02")

        result = await dispatcher.run("session_reminder")
        assert (result.scanned, result.processed, result.skipped) == (2, 2, 0)

        event = gateway.published[0]
        assert event.event_type == "program_session_reminder"
        assert event.resource_type == "program_session"
        assert event.resource_id == "sess_1"
        assert event.payload["provider"] == "zoom"
        assert event.payload["meetingUrl"] == "https://zoom.example/j/1"
        assert event.payload["reminderOffsetMinutes"] == 60

        assert await memory_store.has_session_reminder_been_sent("program_1", "sess_1", "writer_01", 60)
        again = await dispatcher.run("session_reminder")
        assert again.scanned == 0

    @pytest.mark.asyncio
    async def test_not_yet_due_is_skipped(self, memory_store, dispatcher, gateway, clock):
        memory_store.add_session("sess_1", "program_1", clock.now + timedelta(hours=3))
        memory_store.add_session_attendee("sess_1", "writer_01")

        result = await dispatcher.run("session_reminder")
        assert (result.scanned, result.processed, result.skipped) == (1, 0, 1)
        assert gateway.published == []

        clock.advance(hours=2)
        result = await dispatcher.run("session_reminder")
        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_configured_offsets_cross_attendees(self, memory_store, dispatcher, clock):
        memory_store.add_session("sess_1", "program_1", clock.now + timedelta(minutes=30))
        memory_store.add_session_attendee("sess_1", "writer_01")
        await memory_store.update_session_integration(
            "program_1", "sess_1", provider="meet", reminder_offsets_minutes=[60, 30])

        result = await dispatcher.run("session_reminder")
        # offset 30 is due; offset 60 passed more than lookback minutes ago
        assert (result.scanned, result.processed, result.skipped) == (2, 1, 1)
        assert await memory_store.has_session_reminder_been_sent("program_1", "sess_1", "writer_01", 30)
        assert not await memory_store.has_session_reminder_been_sent("program_1", "sess_1", "writer_01", 60)

    @pytest.mark.asyncio
    async def test_empty_offsets_fall_back_to_default(self, memory_store, dispatcher, clock):
        memory_store.add_session("sess_1", "program_1", clock.now + timedelta(minutes=55))
        memory_store.add_session_attendee("sess_1", "writer_01")
        await memory_store.update_session_integration("program_1", "sess_1", reminder_offsets_minutes=[])

        result = await dispatcher.run("session_reminder")
        assert result.processed == 1
        assert await memory_store.has_session_reminder_been_sent("program_1", "sess_1", "writer_01", 60)

    @pytest.mark.asyncio
    async def test_sessions_outside_horizon_are_not_candidates(self, memory_store, dispatcher, clock):
        memory_store.add_session("sess_far", "program_1", clock.now + timedelta(days=3))
        memory_store.add_session("sess_past", "program_1", clock.now - timedelta(hours=1))
        memory_store.add_session_attendee("sess_far", "writer_01")
        memory_store.add_session_attendee("sess_past", "writer_01")

        result = await dispatcher.run("session_reminder")
        assert result.scanned == 0

    @pytest.mark.asyncio
    async def test_failed_send_counts_and_retries(self, memory_store, gateway, clock):
        memory_store.add_session("sess_1", "program_1", clock.now + timedelta(minutes=50))
        memory_store.add_session_attendee("sess_1", "writer_01")

        result = await ReminderDispatcher(memory_store, _failing_gateway(), clock=clock).run("session_reminder")
        assert (result.processed, result.failed) == (0, 1)

        result = await ReminderDispatcher(memory_store, gateway, clock=clock).run("session_reminder")
        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, dispatcher):
        with pytest.raises(ValueError):
            await dispatcher.run("cohort_transition")
        with pytest.raises(ValueError):
            await dispatcher.run("not_a_job")


class TestDueWindow:
    def _candidate(self, starts_at, offset=60):
        return SessionReminderCandidate(
            program_id="program_1", session_id="s", user_id="u",
            starts_at=starts_at, reminder_offset_minutes=offset,
        )

    def test_bounds_inclusive(self, clock):
        assert is_session_reminder_due(self._candidate(clock.now + timedelta(minutes=60)), clock.now, 15)
        assert is_session_reminder_due(self._candidate(clock.now + timedelta(minutes=45)), clock.now, 15)

    def test_outside_window(self, clock):
        assert not is_session_reminder_due(self._candidate(clock.now + timedelta(minutes=61)), clock.now, 15)
        assert not is_session_reminder_due(self._candidate(clock.now + timedelta(minutes=44)), clock.now, 15)
