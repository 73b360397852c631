"""
Session Store - Per-guild event registry and per-user voice sessions.

The store owns two maps (guild -> ActiveEvent, (guild, user) -> UserSession)
and a millisecond clock. Every method is synchronous so a voice callback
reads and writes a session within one event-loop turn.
"""

import time
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from ..core.logger import ComponentLogger
from .models import ActiveEvent, UserSession

_logger = ComponentLogger("sessions")

SessionKey = Tuple[int, int]

def system_clock_ms() -> int:
    return int(time.time() * 1000)

class SessionStore:
    """In-memory live state for every guild running a movie night."""

    def __init__(self, clock: Callable[[], int] = system_clock_ms):
        self._clock = clock
        self._events: Dict[int, ActiveEvent] = {}
        self._sessions: Dict[SessionKey, UserSession] = {}

    def now(self) -> int:
        return self._clock()

    # #################################################################################### #
    #                            Event Registry
    # #################################################################################### #
    def start_event(self, guild_id: int, channel_id: int, event_date: str) -> ActiveEvent:
        """
        Register a new active event for the guild.

        Any previous event of the guild is overwritten and its sessions are
        discarded.
        """
        previous = self._events.get(guild_id)
        if previous is not None:
            _logger.warning("movie_event_overwritten",
                guild_id=guild_id,
                previous_date=previous.event_date,
                previous_channel_id=previous.channel_id,
            )
        self.clear_guild_sessions(guild_id)
        event = ActiveEvent(
            guild_id=guild_id,
            channel_id=channel_id,
            event_date=event_date,
            started_at=self.now(),
        )
        self._events[guild_id] = event
        return event

    def is_event_active(self, guild_id: int) -> bool:
        return guild_id in self._events

    def get_active_event(self, guild_id: int) -> Optional[ActiveEvent]:
        return self._events.get(guild_id)

    def has_active_events(self) -> bool:
        return bool(self._events)

    def active_events(self) -> List[ActiveEvent]:
        return list(self._events.values())

    def restore_event(self, event: ActiveEvent) -> None:
        """Put a recovered or rolled back event back into the registry verbatim."""
        self._events[event.guild_id] = event

    # #################################################################################### #
    #                            Sessions
    # #################################################################################### #
    def get_session(self, guild_id: int, user_id: int) -> Optional[UserSession]:
        return self._sessions.get((guild_id, user_id))

    def get_or_create_session(self, guild_id: int, user_id: int) -> UserSession:
        key = (guild_id, user_id)
        session = self._sessions.get(key)
        if session is None:
            session = UserSession()
            self._sessions[key] = session
        return session

    def restore_session(self, guild_id: int, user_id: int, session: UserSession) -> None:
        self._sessions[(guild_id, user_id)] = session

    def guild_sessions(self, guild_id: int) -> Dict[int, UserSession]:
        """Sessions of one guild keyed by user id."""
        return {
            user_id: session
            for (g_id, user_id), session in self._sessions.items()
            if g_id == guild_id
        }

    def iter_sessions(self) -> Iterator[Tuple[int, int, UserSession]]:
        for (guild_id, user_id), session in list(self._sessions.items()):
            yield guild_id, user_id, session

    def clear_guild_sessions(self, guild_id: int) -> int:
        keys = [key for key in self._sessions if key[0] == guild_id]
        for key in keys:
            del self._sessions[key]
        return len(keys)

    def pop_guild(self, guild_id: int) -> Tuple[Optional[ActiveEvent], Dict[int, UserSession]]:
        """Remove the event and every session of a guild, returning what was removed."""
        event = self._events.pop(guild_id, None)
        sessions = self.guild_sessions(guild_id)
        for user_id in sessions:
            del self._sessions[(guild_id, user_id)]
        return event, sessions

    # #################################################################################### #
    #                            Voice Presence
    # #################################################################################### #
    def handle_voice_join(self, guild_id: int, user_id: int) -> bool:
        """
        Open a session for the user if the guild has an active event.

        Returns:
            True if a new session was opened
        """
        if guild_id not in self._events:
            return False

        session = self.get_or_create_session(guild_id, user_id)
        opened = session.open(self.now())
        if opened:
            _logger.debug("movie_session_opened", guild_id=guild_id, user_id=user_id)
        else:
            _logger.debug("movie_session_already_open", guild_id=guild_id, user_id=user_id)
        return opened

    def handle_voice_leave(self, guild_id: int, user_id: int) -> Optional[int]:
        """
        Close the user's open session, crediting whole minutes only.

        Returns:
            Minutes credited, or None if the user had no open session
        """
        session = self._sessions.get((guild_id, user_id))
        if session is None or not session.is_open:
            return None

        minutes = session.close(self.now())
        _logger.debug("movie_session_closed",
            guild_id=guild_id,
            user_id=user_id,
            session_minutes=minutes,
            accumulated_minutes=session.accumulated_minutes,
        )
        return minutes

    def close_open_sessions(self, guild_id: int) -> int:
        """Synthesize a leave for every open session of the guild. Returns how many were closed."""
        closed = 0
        for user_id, session in self.guild_sessions(guild_id).items():
            if session.is_open:
                self.handle_voice_leave(guild_id, user_id)
                closed += 1
        return closed

    def add_minutes(self, guild_id: int, user_id: int, minutes: int) -> Optional[UserSession]:
        """Inject minutes into a live session. None when the guild has no active event."""
        if guild_id not in self._events:
            return None
        session = self.get_or_create_session(guild_id, user_id)
        session.credit(minutes)
        return session
