"""
Crash recovery tests - Rebuilding live state from the last snapshot.
"""

import pytest

BASE_TIME_MS = 1_700_000_000_000

GUILD_ID = 1001
CHANNEL_ID = 2002
EVENT_DATE = "2024-05-01"

def _event_row(guild_id=GUILD_ID, event_date=EVENT_DATE, started_at=BASE_TIME_MS):
    return (guild_id, CHANNEL_ID, event_date, started_at)

def _session_row(user_id, start, accumulated, longest, persisted, event_date=EVENT_DATE, guild_id=GUILD_ID):
    return (guild_id, user_id, event_date, start, accumulated, longest, persisted)

@pytest.mark.core
class TestRecovery:
    """recover_persisted_sessions behaviour."""

    @pytest.mark.asyncio
    async def test_empty_storage(self, persistence, store):
        result = await persistence.recover_persisted_sessions()

        assert result.events == 0
        assert result.sessions == 0
        assert not store.has_active_events()

    @pytest.mark.asyncio
    async def test_open_session_credits_lost_minutes(self, persistence, store, repository, clock):
        """An open session is credited the downtime and reopened at restart."""
        persisted_at = clock()
        repository.events[GUILD_ID] = _event_row()
        repository.sessions[(GUILD_ID, 1, EVENT_DATE)] = _session_row(
            1, persisted_at - 20 * 60_000, 10, 10, persisted_at
        )
        clock.advance(minutes=7, seconds=30)

        result = await persistence.recover_persisted_sessions()

        session = store.get_session(GUILD_ID, 1)
        assert result.events == 1
        assert result.sessions == 1
        assert result.recovered_minutes == 7
        assert session.accumulated_minutes == 17
        assert session.longest_session_minutes == 10
        assert session.current_session_start == clock()

    @pytest.mark.asyncio
    async def test_closed_session_restored_as_is(self, persistence, store, repository, clock):
        repository.events[GUILD_ID] = _event_row()
        repository.sessions[(GUILD_ID, 2, EVENT_DATE)] = _session_row(2, None, 25, 25, clock())
        clock.advance(minutes=30)

        await persistence.recover_persisted_sessions()

        session = store.get_session(GUILD_ID, 2)
        assert session.accumulated_minutes == 25
        assert not session.is_open

    @pytest.mark.asyncio
    async def test_continuity_after_recovery(self, persistence, store, repository, clock):
        """A leave after recovery closes the reopened session normally."""
        repository.events[GUILD_ID] = _event_row()
        repository.sessions[(GUILD_ID, 1, EVENT_DATE)] = _session_row(1, clock(), 0, 0, clock())
        clock.advance(minutes=5)
        await persistence.recover_persisted_sessions()
        clock.advance(minutes=26)

        store.handle_voice_leave(GUILD_ID, 1)

        session = store.get_session(GUILD_ID, 1)
        assert session.accumulated_minutes == 31
        assert session.longest_session_minutes == 26

    @pytest.mark.asyncio
    async def test_orphan_rows_are_skipped_and_deleted(self, persistence, store, repository, clock):
        """Sessions without a matching event are dropped from storage."""
        repository.events[GUILD_ID] = _event_row()
        repository.sessions[(GUILD_ID, 1, "2024-04-30")] = _session_row(
            1, None, 5, 5, clock(), event_date="2024-04-30"
        )
        repository.sessions[(4242, 1, EVENT_DATE)] = _session_row(1, None, 5, 5, clock(), guild_id=4242)

        result = await persistence.recover_persisted_sessions()

        assert result.sessions == 0
        assert result.skipped == 2
        assert store.get_session(GUILD_ID, 1) is None
        assert repository.sessions == {}

    @pytest.mark.asyncio
    async def test_malformed_rows_are_skipped(self, persistence, store, repository, clock):
        repository.events[GUILD_ID] = _event_row()
        repository.events[7] = (7, "not-a-channel", EVENT_DATE, BASE_TIME_MS)
        repository.sessions[(GUILD_ID, 1, EVENT_DATE)] = _session_row(1, None, -5, 0, clock())
        repository.sessions[(GUILD_ID, 2, EVENT_DATE)] = _session_row(2, "garbage", 5, 5, clock())
        repository.sessions[(GUILD_ID, 3, EVENT_DATE)] = _session_row(3, None, 8, 8, clock())

        result = await persistence.recover_persisted_sessions()

        assert result.events == 1
        assert result.sessions == 1
        assert result.skipped == 3
        assert store.get_session(GUILD_ID, 3).accumulated_minutes == 8
        assert not store.is_event_active(7)

    @pytest.mark.asyncio
    async def test_read_failure_returns_empty_result(self, persistence, store, repository):
        repository.fail_reads = True

        result = await persistence.recover_persisted_sessions()

        assert result.events == 0
        assert result.sessions == 0
        assert not store.has_active_events()

    @pytest.mark.asyncio
    async def test_roundtrip_through_snapshot(self, store, repository, clock):
        """A snapshot written by one process is recovered by the next."""
        from app.attendance.persistence import SessionPersistence
        from app.attendance.sessions import SessionStore

        store.start_event(GUILD_ID, CHANNEL_ID, EVENT_DATE)
        store.handle_voice_join(GUILD_ID, 1)
        clock.advance(minutes=15)
        await SessionPersistence(store, repository).persist_all_sessions()
        clock.advance(minutes=4)

        restarted = SessionStore(clock=clock)
        result = await SessionPersistence(restarted, repository).recover_persisted_sessions()

        assert result.recovered_minutes == 4
        assert restarted.get_active_event(GUILD_ID).event_date == EVENT_DATE
        assert restarted.get_session(GUILD_ID, 1).accumulated_minutes == 4
        assert restarted.get_session(GUILD_ID, 1).is_open

@pytest.mark.core
class TestRecoveryStatus:
    """get_recovery_status diagnostics."""

    def test_status_without_event(self, persistence):
        status = persistence.get_recovery_status(GUILD_ID)

        assert status["has_active_event"] is False
        assert status["session_count"] == 0
        assert status["recovered_at"] is None

    def test_status_with_event(self, persistence, store, clock):
        store.start_event(GUILD_ID, CHANNEL_ID, EVENT_DATE)
        store.handle_voice_join(GUILD_ID, 1)
        store.handle_voice_join(GUILD_ID, 2)
        clock.advance(minutes=10)
        store.handle_voice_leave(GUILD_ID, 2)

        status = persistence.get_recovery_status(GUILD_ID)

        assert status["has_active_event"] is True
        assert status["channel_id"] == CHANNEL_ID
        assert status["session_count"] == 2
        assert status["open_session_count"] == 1
        assert status["total_minutes"] == 10
