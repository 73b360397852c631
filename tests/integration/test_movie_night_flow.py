"""
Integration tests - A movie night surviving a crash, from start to tier roles.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from app.attendance.engine import AttendanceEngine
from app.attendance.models import AttendanceMode, QualificationSettings, RoleTier
from app.attendance.panic import PanicStore
from app.attendance.persistence import SessionPersistence
from app.attendance.roles import RoleManager
from app.attendance.sessions import SessionStore
from app.attendance.tiers import DM_SENT, TierAssigner

GUILD_ID = 1001
CHANNEL_ID = 2002
EVENT_DATE = "2024-05-01"

def _build_engine(repository, clock, bot):
    """Wire a fresh engine the way the bot does on startup, sharing only storage."""
    store = SessionStore(clock=clock)
    persistence = SessionPersistence(store, repository, interval_seconds=300)
    panic_store = PanicStore(repository, clock=clock)
    sink = Mock()
    sink.log_action = AsyncMock()
    assigner = TierAssigner(repository, RoleManager(bot, repository), panic_store, sink)
    return AttendanceEngine(store, repository, persistence, panic_store, assigner)

@pytest.mark.integration
class TestCrashAndRecover:
    """Attendance tracked across a process restart."""

    @pytest.mark.asyncio
    async def test_restart_mid_movie(self, repository, clock, mock_bot, guild_factory, member_factory, role_factory):
        """Minutes before and after a crash both count, and the tier role is granted."""
        repository.settings[GUILD_ID] = QualificationSettings(AttendanceMode.CONTINUOUS, 30)
        repository.tiers[GUILD_ID] = {501: RoleTier("Regular", 501, 3)}
        repository.add_qualified(GUILD_ID, 1, 2)
        member = member_factory(1)
        guild = guild_factory(GUILD_ID, roles=[role_factory(501, "Regular")], members=[member])

        first = _build_engine(repository, clock, mock_bot)
        await first.recover_persisted_sessions()
        await first.start_event(guild, CHANNEL_ID, EVENT_DATE)
        first.handle_voice_join(GUILD_ID, 1)
        clock.advance(minutes=20)
        await first.persist_all_sessions()
        clock.advance(minutes=3)

        second = _build_engine(repository, clock, mock_bot)
        assert not second.ready.is_set()
        result = await second.recover_persisted_sessions()
        assert second.ready.is_set()
        assert result.sessions == 1
        assert result.recovered_minutes == 3

        clock.advance(minutes=10)
        second.handle_voice_leave(GUILD_ID, 1)
        finalized = await second.finalize(GUILD_ID)

        record = finalized["records"][0]
        assert record["duration_minutes"] == 13
        assert record["longest_session_minutes"] == 10
        assert finalized["qualified_user_ids"] == []

        # continuous mode lost the unbroken session; an admin bump restores it
        await second.bump_attendance(GUILD_ID, 1, EVENT_DATE, actor_id=4242, reason="bot restart")
        tier_result = await second.update_tier_role(guild, 1)

        assert tier_result["qualified_count"] == 3
        assert tier_result["target_tier"].role_id == 501
        assert tier_result["dm_status"] == DM_SENT
        assert [r.id for r in member.roles] == [501]
        assert repository.sessions == {}
        assert repository.events == {}

    @pytest.mark.asyncio
    async def test_cumulative_restart_qualifies(self, repository, clock, mock_bot, guild_factory):
        """Closed minutes survive the crash and the downtime is credited on top."""
        guild = guild_factory(GUILD_ID)
        first = _build_engine(repository, clock, mock_bot)
        await first.start_event(guild, CHANNEL_ID, EVENT_DATE)
        first.handle_voice_join(GUILD_ID, 1)
        clock.advance(minutes=20)
        first.handle_voice_leave(GUILD_ID, 1)
        first.handle_voice_join(GUILD_ID, 1)
        await first.persist_all_sessions()
        clock.advance(minutes=5)

        second = _build_engine(repository, clock, mock_bot)
        await second.recover_persisted_sessions()
        clock.advance(minutes=6)
        finalized = await second.finalize(GUILD_ID)

        assert finalized["records"][0]["duration_minutes"] == 31
        assert finalized["qualified_user_ids"] == [1]

    @pytest.mark.asyncio
    async def test_minutes_before_snapshot_in_open_session_are_not_credited(
        self, repository, clock, mock_bot, guild_factory
    ):
        """Only the downtime after the last snapshot is credited to an open session."""
        first = _build_engine(repository, clock, mock_bot)
        await first.start_event(guild_factory(GUILD_ID), CHANNEL_ID, EVENT_DATE)
        first.handle_voice_join(GUILD_ID, 1)
        clock.advance(minutes=20)
        await first.persist_all_sessions()
        clock.advance(minutes=5)

        second = _build_engine(repository, clock, mock_bot)
        await second.recover_persisted_sessions()

        assert second.get_current_session(GUILD_ID, 1).accumulated_minutes == 5

    @pytest.mark.asyncio
    async def test_restart_same_date_then_crash_recovers_no_discarded_sessions(
        self, repository, clock, mock_bot, guild_factory
    ):
        """A movie night restarted for the same date does not bring back the old attendees."""
        guild = guild_factory(GUILD_ID)
        first = _build_engine(repository, clock, mock_bot)
        await first.start_event(guild, CHANNEL_ID, EVENT_DATE)
        first.handle_voice_join(GUILD_ID, 1)
        first.handle_voice_join(GUILD_ID, 2)
        clock.advance(minutes=10)
        await first.persist_all_sessions()

        await first.start_event(guild, CHANNEL_ID, EVENT_DATE)
        clock.advance(minutes=60)

        second = _build_engine(repository, clock, mock_bot)
        result = await second.recover_persisted_sessions()

        assert result.events == 1
        assert result.sessions == 0
        assert result.recovered_minutes == 0
        assert second.get_all_sessions(GUILD_ID) == {}
