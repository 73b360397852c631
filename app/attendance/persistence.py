"""
Session Persistence - Periodic snapshots of live attendance and crash recovery.

Snapshots are the only protection the in-memory session store has against a
process crash. They are written on a fixed interval, right after an event
starts and once more on shutdown. Snapshot failures are logged and never
raised: a missed snapshot only widens the window recovery has to estimate.

Recovery assumes optimistic continuity. A user whose session was open when
the last snapshot was written is credited with the whole time between that
snapshot and the restart, and the session is reopened at restart time so the
next real leave closes it normally. A user who left during the outage is
therefore over-credited; this approximation is accepted.
"""

import asyncio
from typing import List, Optional, Tuple

from ..core.logger import ComponentLogger
from ..db import DBQueryError
from .models import (
    ActiveEvent,
    RecoveryResult,
    RecoveryStatus,
    SessionSnapshotRow,
    UserSession,
    minutes_between,
)
from .repository import AttendanceRepository
from .sessions import SessionStore

_logger = ComponentLogger("session_persistence")

DEFAULT_SNAPSHOT_INTERVAL_SECONDS = 300

class SessionPersistence:
    """Owns the snapshot background task and the recovery routine."""

    def __init__(
        self,
        store: SessionStore,
        repository: AttendanceRepository,
        interval_seconds: float = DEFAULT_SNAPSHOT_INTERVAL_SECONDS,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.store = store
        self.repository = repository
        self.interval_seconds = interval_seconds
        self.lock = lock or asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._recovered_at: Optional[int] = None
        self.last_snapshot_at: Optional[int] = None

    # #################################################################################### #
    #                            Snapshot Writes
    # #################################################################################### #
    def _gather_rows(self, now: int) -> Tuple[List[ActiveEvent], List[Tuple[UserSession, SessionSnapshotRow]]]:
        events = self.store.active_events()
        dates = {event.guild_id: event.event_date for event in events}
        sessions: List[Tuple[UserSession, SessionSnapshotRow]] = []
        for guild_id, user_id, session in self.store.iter_sessions():
            event_date = dates.get(guild_id)
            if event_date is None:
                continue
            sessions.append(
                (
                    session,
                    SessionSnapshotRow(
                        guild_id=guild_id,
                        user_id=user_id,
                        event_date=event_date,
                        current_session_start=session.current_session_start,
                        accumulated_minutes=session.accumulated_minutes,
                        longest_session_minutes=session.longest_session_minutes,
                        last_persisted_at=now,
                    ),
                )
            )
        return events, sessions

    async def persist_all_sessions(self) -> int:
        """
        Write every active event and every session of those events.

        Returns:
            Number of session rows written, 0 when nothing was written
        """
        async with self.lock:
            now = self.store.now()
            events, sessions = self._gather_rows(now)
            if not events:
                return 0

            statements = self.repository.snapshot_statements(
                events, [row for _, row in sessions]
            )
            try:
                await self.repository.execute(statements)
            except DBQueryError as e:
                _logger.error("session_snapshot_failed",
                    event_count=len(events),
                    session_count=len(sessions),
                    error=str(e),
                )
                return 0
            except Exception as e:
                _logger.error("session_snapshot_unexpected_error",
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )
                return 0

            for session, _ in sessions:
                session.last_persisted_at = now
            self.last_snapshot_at = now

        _logger.debug("session_snapshot_written",
            event_count=len(events),
            session_count=len(sessions),
        )
        return len(sessions)

    async def clear_guild(self, guild_id: int) -> bool:
        """Delete the snapshot rows of a guild. Returns False when storage refused."""
        async with self.lock:
            try:
                await self.repository.execute(
                    self.repository.clear_snapshot_statements(guild_id)
                )
            except DBQueryError as e:
                _logger.error("session_snapshot_clear_failed", guild_id=guild_id, error=str(e))
                return False
        return True

    # #################################################################################### #
    #                            Background Task Lifecycle
    # #################################################################################### #
    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """
        Start the periodic snapshot task. Starting twice returns the running task.

        Returns:
            Handle of the background task
        """
        if self._task is not None and not self._task.done():
            _logger.debug("session_persistence_already_running")
            return self._task

        self._task = asyncio.create_task(
            self._snapshot_loop(), name="movie_session_persistence"
        )
        _logger.info("session_persistence_started", interval_seconds=self.interval_seconds)
        return self._task

    async def stop(self, final_flush: bool = True) -> None:
        """Cancel and join the snapshot task, then write one last snapshot."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            _logger.info("session_persistence_stopped")

        if final_flush and self.store.has_active_events():
            await self.persist_all_sessions()

    async def _snapshot_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                if not self.store.has_active_events():
                    continue
                await self.persist_all_sessions()
        except asyncio.CancelledError:
            _logger.debug("session_persistence_cancelled")
            raise

    # #################################################################################### #
    #                            Crash Recovery
    # #################################################################################### #
    async def recover_persisted_sessions(self) -> RecoveryResult:
        """
        Rebuild the event registry and session store from the last snapshot.

        Malformed rows and sessions without a recovered event are skipped and
        logged. A storage failure yields an empty result.

        Returns:
            Counts of recovered events, recovered sessions, skipped rows and
            minutes credited for downtime
        """
        try:
            event_rows = await self.repository.load_active_events()
            session_rows = await self.repository.load_active_sessions()
        except DBQueryError as e:
            _logger.error("session_recovery_read_failed", error=str(e))
            return RecoveryResult(events=0, sessions=0)

        skipped = 0
        events = 0
        for row in event_rows:
            try:
                event = ActiveEvent(
                    guild_id=int(row[0]),
                    channel_id=int(row[1]),
                    event_date=str(row[2]),
                    started_at=int(row[3]),
                )
            except (TypeError, ValueError, IndexError) as e:
                skipped += 1
                _logger.warning("malformed_event_row_skipped", error=str(e))
                continue
            self.store.restore_event(event)
            events += 1

        now = self.store.now()
        sessions = 0
        recovered_minutes = 0
        orphans: List[Tuple[int, int, str]] = []

        for row in session_rows:
            try:
                guild_id = int(row[0])
                user_id = int(row[1])
                event_date = str(row[2])
                session_start = int(row[3]) if row[3] is not None else None
                accumulated = int(row[4] or 0)
                longest = int(row[5] or 0)
                last_persisted_at = int(row[6]) if row[6] is not None else now
            except (TypeError, ValueError, IndexError) as e:
                skipped += 1
                _logger.warning("malformed_session_row_skipped", error=str(e))
                continue

            if accumulated < 0 or longest < 0:
                skipped += 1
                _logger.warning("malformed_session_row_skipped",
                    guild_id=guild_id,
                    user_id=user_id,
                    reason="negative_minutes",
                )
                continue

            event = self.store.get_active_event(guild_id)
            if event is None or event.event_date != event_date:
                skipped += 1
                orphans.append((guild_id, user_id, event_date))
                _logger.warning("orphan_session_row_skipped",
                    guild_id=guild_id,
                    user_id=user_id,
                    event_date=event_date,
                )
                continue

            session = UserSession(
                current_session_start=None,
                accumulated_minutes=max(accumulated, longest),
                longest_session_minutes=longest,
                last_persisted_at=last_persisted_at,
            )
            if session_start is not None:
                lost_minutes = minutes_between(last_persisted_at, now)
                session.credit(lost_minutes)
                session.current_session_start = now
                recovered_minutes += lost_minutes
                _logger.info("movie_session_recovered",
                    guild_id=guild_id,
                    user_id=user_id,
                    lost_minutes=lost_minutes,
                    accumulated_minutes=session.accumulated_minutes,
                )
            self.store.restore_session(guild_id, user_id, session)
            sessions += 1

        for guild_id, user_id, event_date in orphans:
            try:
                await self.repository.delete_session_rows(guild_id, user_id, event_date)
            except DBQueryError as e:
                _logger.warning("orphan_session_cleanup_failed", guild_id=guild_id, error=str(e))

        self._recovered_at = now
        _logger.info("movie_sessions_recovered",
            event_count=events,
            session_count=sessions,
            skipped_count=skipped,
            recovered_minutes=recovered_minutes,
        )
        return RecoveryResult(
            events=events,
            sessions=sessions,
            skipped=skipped,
            recovered_minutes=recovered_minutes,
        )

    def get_recovery_status(self, guild_id: Optional[int] = None) -> RecoveryStatus:
        """Diagnostic view of the live state of one guild, or of every guild when omitted."""
        if guild_id is not None:
            event = self.store.get_active_event(guild_id)
            sessions = list(self.store.guild_sessions(guild_id).values()) if event else []
        else:
            events = self.store.active_events()
            event = events[0] if len(events) == 1 else None
            sessions = [
                session
                for g_id, _, session in self.store.iter_sessions()
                if self.store.is_event_active(g_id)
            ]

        return RecoveryStatus(
            has_active_event=(
                event is not None if guild_id is not None else self.store.has_active_events()
            ),
            guild_id=event.guild_id if event else guild_id,
            channel_id=event.channel_id if event else None,
            event_date=event.event_date if event else None,
            session_count=len(sessions),
            open_session_count=sum(1 for s in sessions if s.is_open),
            total_minutes=sum(s.accumulated_minutes for s in sessions),
            recovered_at=self._recovered_at,
        )
