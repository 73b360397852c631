"""
Session store tests - Event registry, voice presence and minute accounting.
"""

import pytest

from app.attendance.models import UserSession, minutes_between

GUILD_ID = 1001
CHANNEL_ID = 2002
OTHER_GUILD_ID = 1002

@pytest.mark.unit
class TestMinuteFlooring:
    """Minutes are always whole and floored."""

    def test_fifty_nine_seconds_is_zero(self):
        assert minutes_between(0, 59_999) == 0

    def test_exact_minute(self):
        assert minutes_between(0, 60_000) == 1

    def test_partial_minutes_floored(self):
        assert minutes_between(1_000, 1_000 + 29 * 60_000 + 59_000) == 29

    def test_backwards_interval_is_zero(self):
        assert minutes_between(120_000, 60_000) == 0

@pytest.mark.unit
class TestUserSession:
    """Open/close/credit behaviour of a single session."""

    def test_close_credits_and_tracks_longest(self):
        session = UserSession()
        session.open(0)
        assert session.close(10 * 60_000) == 10
        session.open(20 * 60_000)
        assert session.close(25 * 60_000) == 5

        assert session.accumulated_minutes == 15
        assert session.longest_session_minutes == 10
        assert not session.is_open

    def test_open_twice_keeps_original_start(self):
        session = UserSession()
        assert session.open(1_000) is True
        assert session.open(5_000) is False
        assert session.current_session_start == 1_000

    def test_close_without_open_is_noop(self):
        session = UserSession(accumulated_minutes=7, longest_session_minutes=7)
        assert session.close(99_999_999) == 0
        assert session.accumulated_minutes == 7

@pytest.mark.unit
class TestEventRegistry:
    """start_event / is_event_active / get_active_event."""

    def test_start_event_registers(self, store, clock):
        event = store.start_event(GUILD_ID, CHANNEL_ID, "2024-05-01")

        assert store.is_event_active(GUILD_ID)
        assert store.get_active_event(GUILD_ID) is event
        assert event.started_at == clock()
        assert not store.is_event_active(OTHER_GUILD_ID)

    def test_second_start_overwrites_and_clears_sessions(self, store, clock):
        store.start_event(GUILD_ID, CHANNEL_ID, "2024-05-01")
        store.handle_voice_join(GUILD_ID, 1)
        clock.advance(minutes=5)

        store.start_event(GUILD_ID, 3003, "2024-05-02")

        event = store.get_active_event(GUILD_ID)
        assert event.channel_id == 3003
        assert event.event_date == "2024-05-02"
        assert store.guild_sessions(GUILD_ID) == {}

    def test_pop_guild_removes_everything(self, store):
        store.start_event(GUILD_ID, CHANNEL_ID, "2024-05-01")
        store.start_event(OTHER_GUILD_ID, CHANNEL_ID, "2024-05-01")
        store.handle_voice_join(GUILD_ID, 1)
        store.handle_voice_join(OTHER_GUILD_ID, 1)

        event, sessions = store.pop_guild(GUILD_ID)

        assert event.guild_id == GUILD_ID
        assert list(sessions) == [1]
        assert not store.is_event_active(GUILD_ID)
        assert store.get_session(GUILD_ID, 1) is None
        assert store.get_session(OTHER_GUILD_ID, 1) is not None

@pytest.mark.unit
class TestVoicePresence:
    """Join and leave handling."""

    def test_join_without_event_is_noop(self, store):
        assert store.handle_voice_join(GUILD_ID, 1) is False
        assert store.get_session(GUILD_ID, 1) is None

    def test_leave_without_session_is_noop(self, store):
        store.start_event(GUILD_ID, CHANNEL_ID, "2024-05-01")
        assert store.handle_voice_leave(GUILD_ID, 1) is None

    def test_short_stay_credits_zero_minutes(self, store, clock):
        store.start_event(GUILD_ID, CHANNEL_ID, "2024-05-01")
        store.handle_voice_join(GUILD_ID, 1)
        clock.advance(seconds=59)

        assert store.handle_voice_leave(GUILD_ID, 1) == 0
        session = store.get_session(GUILD_ID, 1)
        assert session.accumulated_minutes == 0
        assert not session.is_open

    def test_accumulates_across_sessions(self, store, clock):
        store.start_event(GUILD_ID, CHANNEL_ID, "2024-05-01")
        for stay in (10, 20):
            store.handle_voice_join(GUILD_ID, 1)
            clock.advance(minutes=stay)
            store.handle_voice_leave(GUILD_ID, 1)
            clock.advance(minutes=3)

        session = store.get_session(GUILD_ID, 1)
        assert session.accumulated_minutes == 30
        assert session.longest_session_minutes == 20
        assert session.accumulated_minutes >= session.longest_session_minutes

    def test_double_join_keeps_first_start(self, store, clock):
        store.start_event(GUILD_ID, CHANNEL_ID, "2024-05-01")
        store.handle_voice_join(GUILD_ID, 1)
        clock.advance(minutes=10)
        assert store.handle_voice_join(GUILD_ID, 1) is False
        clock.advance(minutes=5)

        assert store.handle_voice_leave(GUILD_ID, 1) == 15

    def test_close_open_sessions(self, store, clock):
        store.start_event(GUILD_ID, CHANNEL_ID, "2024-05-01")
        store.handle_voice_join(GUILD_ID, 1)
        store.handle_voice_join(GUILD_ID, 2)
        clock.advance(minutes=4)
        store.handle_voice_leave(GUILD_ID, 2)
        clock.advance(minutes=4)

        assert store.close_open_sessions(GUILD_ID) == 1
        assert store.get_session(GUILD_ID, 1).accumulated_minutes == 8

    def test_add_minutes_requires_event(self, store):
        assert store.add_minutes(GUILD_ID, 1, 10) is None

        store.start_event(GUILD_ID, CHANNEL_ID, "2024-05-01")
        session = store.add_minutes(GUILD_ID, 1, 10)
        assert session.accumulated_minutes == 10
        assert session.longest_session_minutes == 10
