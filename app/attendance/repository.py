"""
Attendance Repository - SQL for snapshots, attendance records and guild settings.

Query coroutines are injected so the engine can run against the asyncmy pool
in production and against mocks in tests. Every failure surfaces as the
``DBQueryError`` raised by ``app.db``.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .models import (
    ActiveEvent,
    AdjustmentType,
    AttendanceMode,
    AttendanceRecord,
    EventStats,
    PanicDetails,
    QualificationSettings,
    RoleTier,
    SessionSnapshotRow,
)

QueryFn = Callable[..., Awaitable[Any]]
TransactionFn = Callable[[List[Tuple[str, tuple]]], Awaitable[bool]]
Statement = Tuple[str, tuple]

# column widths of app/schema.py
MAX_TIER_NAME_LENGTH = 100
MAX_REASON_LENGTH = 255

def _clip(value: Optional[str], limit: int) -> Optional[str]:
    return value[:limit] if value else value

UPSERT_EVENT = """
    INSERT INTO active_movie_events (guild_id, channel_id, event_date, started_at)
    VALUES (%s, %s, %s, %s)
    ON DUPLICATE KEY UPDATE
        channel_id = VALUES(channel_id),
        event_date = VALUES(event_date),
        started_at = VALUES(started_at)
"""

UPSERT_SESSION = """
    INSERT INTO active_movie_sessions
        (guild_id, user_id, event_date, current_session_start,
         accumulated_minutes, longest_session_minutes, last_persisted_at)
    VALUES (%s, %s, %s, %s, %s, %s, %s)
    ON DUPLICATE KEY UPDATE
        current_session_start = VALUES(current_session_start),
        accumulated_minutes = VALUES(accumulated_minutes),
        longest_session_minutes = VALUES(longest_session_minutes),
        last_persisted_at = VALUES(last_persisted_at)
"""

DELETE_EVENT_SNAPSHOT = "DELETE FROM active_movie_events WHERE guild_id = %s"
DELETE_SESSION_SNAPSHOTS = "DELETE FROM active_movie_sessions WHERE guild_id = %s"

UPSERT_ATTENDANCE = """
    INSERT INTO movie_attendance
        (guild_id, user_id, event_date, voice_channel_id, duration_minutes,
         longest_session_minutes, qualified, adjustment_type, adjusted_by,
         adjustment_reason)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON DUPLICATE KEY UPDATE
        voice_channel_id = COALESCE(VALUES(voice_channel_id), voice_channel_id),
        duration_minutes = VALUES(duration_minutes),
        longest_session_minutes = VALUES(longest_session_minutes),
        qualified = VALUES(qualified),
        adjustment_type = VALUES(adjustment_type),
        adjusted_by = VALUES(adjusted_by),
        adjustment_reason = VALUES(adjustment_reason)
"""

MERGE_AUTOMATIC_ATTENDANCE = """
    INSERT INTO movie_attendance
        (guild_id, user_id, event_date, voice_channel_id, duration_minutes,
         longest_session_minutes, qualified, adjustment_type, adjusted_by,
         adjustment_reason)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON DUPLICATE KEY UPDATE
        voice_channel_id = COALESCE(voice_channel_id, VALUES(voice_channel_id)),
        duration_minutes = GREATEST(duration_minutes, VALUES(duration_minutes)),
        longest_session_minutes = GREATEST(longest_session_minutes, VALUES(longest_session_minutes)),
        qualified = GREATEST(qualified, VALUES(qualified))
"""

SELECT_ATTENDANCE = """
    SELECT voice_channel_id, duration_minutes, longest_session_minutes, qualified,
           adjustment_type, adjusted_by, adjustment_reason
    FROM movie_attendance
    WHERE guild_id = %s AND user_id = %s AND event_date = %s
"""

class AttendanceRepository:
    """Durable rows owned by the attendance engine."""

    def __init__(
        self,
        run_query: Optional[QueryFn] = None,
        run_transaction: Optional[TransactionFn] = None,
        default_settings: Optional[QualificationSettings] = None,
    ):
        if run_query is None or run_transaction is None:
            from ..db import run_db_query, run_db_transaction
            run_query = run_query or run_db_query
            run_transaction = run_transaction or run_db_transaction
        self._run_query = run_query
        self._run_transaction = run_transaction
        self._default_settings = default_settings or QualificationSettings(
            AttendanceMode.CUMULATIVE, 30
        )

    @property
    def default_settings(self) -> QualificationSettings:
        return self._default_settings

    async def execute(self, statements: List[Statement]) -> bool:
        """Run statements atomically."""
        return await self._run_transaction(statements)

    # #################################################################################### #
    #                            Snapshot Rows
    # #################################################################################### #
    def snapshot_statements(
        self, events: Sequence[ActiveEvent], sessions: Sequence[SessionSnapshotRow]
    ) -> List[Statement]:
        statements: List[Statement] = []
        for event in events:
            statements.append(
                (UPSERT_EVENT, (event.guild_id, event.channel_id, event.event_date, event.started_at))
            )
            statements.append((DELETE_SESSION_SNAPSHOTS, (event.guild_id,)))
        for row in sessions:
            statements.append(
                (
                    UPSERT_SESSION,
                    (
                        row["guild_id"],
                        row["user_id"],
                        row["event_date"],
                        row["current_session_start"],
                        row["accumulated_minutes"],
                        row["longest_session_minutes"],
                        row["last_persisted_at"],
                    ),
                )
            )
        return statements

    def clear_snapshot_statements(self, guild_id: int) -> List[Statement]:
        return [
            (DELETE_SESSION_SNAPSHOTS, (guild_id,)),
            (DELETE_EVENT_SNAPSHOT, (guild_id,)),
        ]

    async def load_active_events(self) -> List[tuple]:
        rows = await self._run_query(
            "SELECT guild_id, channel_id, event_date, started_at FROM active_movie_events",
            fetch_all=True,
        )
        return list(rows or [])

    async def load_active_sessions(self) -> List[tuple]:
        rows = await self._run_query(
            "SELECT guild_id, user_id, event_date, current_session_start, "
            "accumulated_minutes, longest_session_minutes, last_persisted_at "
            "FROM active_movie_sessions",
            fetch_all=True,
        )
        return list(rows or [])

    async def delete_session_rows(self, guild_id: int, user_id: int, event_date: str) -> None:
        await self._run_query(
            "DELETE FROM active_movie_sessions WHERE guild_id = %s AND user_id = %s AND event_date = %s",
            (guild_id, user_id, event_date),
            commit=True,
        )

    # #################################################################################### #
    #                            Attendance Records
    # #################################################################################### #
    def attendance_statement(self, record: AttendanceRecord) -> Statement:
        """
        Upsert for one attendance record.

        Automatic records from a finished event are merged into an existing row,
        keeping the larger minutes, any qualification and the manual adjustment
        fields. Manual records replace the row.
        """
        query = (
            MERGE_AUTOMATIC_ATTENDANCE
            if record["adjustment_type"] == AdjustmentType.AUTOMATIC.value
            else UPSERT_ATTENDANCE
        )
        return (
            query,
            (
                record["guild_id"],
                record["user_id"],
                record["event_date"],
                record["voice_channel_id"],
                record["duration_minutes"],
                record["longest_session_minutes"],
                1 if record["qualified"] else 0,
                record["adjustment_type"],
                record["adjusted_by"],
                _clip(record["adjustment_reason"], MAX_REASON_LENGTH),
            ),
        )

    async def get_attendance(
        self, guild_id: int, user_id: int, event_date: str
    ) -> Optional[AttendanceRecord]:
        row = await self._run_query(
            SELECT_ATTENDANCE, (guild_id, user_id, event_date), fetch_one=True
        )
        if not row:
            return None
        return AttendanceRecord(
            guild_id=guild_id,
            user_id=user_id,
            event_date=event_date,
            voice_channel_id=row[0],
            duration_minutes=int(row[1] or 0),
            longest_session_minutes=int(row[2] or 0),
            qualified=bool(row[3]),
            adjustment_type=row[4],
            adjusted_by=row[5],
            adjustment_reason=row[6],
        )

    async def count_qualified(self, guild_id: int, user_id: int) -> int:
        row = await self._run_query(
            "SELECT COUNT(*) FROM movie_attendance WHERE guild_id = %s AND user_id = %s AND qualified = 1",
            (guild_id, user_id),
            fetch_one=True,
        )
        return int(row[0]) if row else 0

    async def list_user_attendance(
        self, guild_id: int, user_id: int, limit: int = 10
    ) -> List[tuple]:
        rows = await self._run_query(
            "SELECT event_date, duration_minutes, longest_session_minutes, qualified, adjustment_type "
            "FROM movie_attendance WHERE guild_id = %s AND user_id = %s "
            "ORDER BY event_date DESC LIMIT %s",
            (guild_id, user_id, limit),
            fetch_all=True,
        )
        return list(rows or [])

    async def get_event_stats(self, guild_id: int, event_date: str) -> EventStats:
        row = await self._run_query(
            "SELECT COUNT(*), COALESCE(SUM(qualified), 0), COALESCE(AVG(duration_minutes), 0) "
            "FROM movie_attendance WHERE guild_id = %s AND event_date = %s",
            (guild_id, event_date),
            fetch_one=True,
        )
        if not row:
            return EventStats(total=0, qualified=0, avg_minutes=0.0)
        return EventStats(
            total=int(row[0] or 0),
            qualified=int(row[1] or 0),
            avg_minutes=round(float(row[2] or 0), 1),
        )

    # #################################################################################### #
    #                            Guild Settings and Tiers
    # #################################################################################### #
    async def get_settings(self, guild_id: int) -> QualificationSettings:
        row = await self._run_query(
            "SELECT attendance_mode, qualification_threshold_minutes FROM guild_movie_config WHERE guild_id = %s",
            (guild_id,),
            fetch_one=True,
        )
        if not row:
            return self._default_settings
        threshold = int(row[1]) if row[1] else self._default_settings.threshold_minutes
        return QualificationSettings(AttendanceMode.parse(row[0]), threshold)

    async def save_settings(self, guild_id: int, settings: QualificationSettings) -> None:
        await self._run_query(
            "INSERT INTO guild_movie_config (guild_id, attendance_mode, qualification_threshold_minutes) "
            "VALUES (%s, %s, %s) ON DUPLICATE KEY UPDATE "
            "attendance_mode = VALUES(attendance_mode), "
            "qualification_threshold_minutes = VALUES(qualification_threshold_minutes)",
            (guild_id, settings.mode.value, settings.threshold_minutes),
            commit=True,
        )

    async def get_tiers(self, guild_id: int) -> List[RoleTier]:
        rows = await self._run_query(
            "SELECT tier_name, role_id, threshold FROM movie_role_tiers WHERE guild_id = %s ORDER BY threshold ASC",
            (guild_id,),
            fetch_all=True,
        )
        return [RoleTier(str(r[0]), int(r[1]), int(r[2])) for r in rows or []]

    async def save_tier(self, guild_id: int, tier: RoleTier) -> None:
        await self._run_query(
            "INSERT INTO movie_role_tiers (guild_id, role_id, tier_name, threshold) VALUES (%s, %s, %s, %s) "
            "ON DUPLICATE KEY UPDATE tier_name = VALUES(tier_name), threshold = VALUES(threshold)",
            (guild_id, tier.role_id, _clip(tier.tier_name, MAX_TIER_NAME_LENGTH), tier.threshold),
            commit=True,
        )

    async def delete_tier(self, guild_id: int, role_id: int) -> None:
        await self._run_query(
            "DELETE FROM movie_role_tiers WHERE guild_id = %s AND role_id = %s",
            (guild_id, role_id),
            commit=True,
        )

    # #################################################################################### #
    #                            Panic Freeze and Role Audit
    # #################################################################################### #
    async def load_panic_states(self) -> Dict[int, PanicDetails]:
        rows = await self._run_query(
            "SELECT guild_id, panic_enabled_at, panic_enabled_by FROM guild_movie_config WHERE panic_mode = 1",
            fetch_all=True,
        )
        return {
            int(r[0]): PanicDetails(enabled=True, enabled_at=r[1], enabled_by=r[2])
            for r in rows or []
        }

    async def save_panic_state(
        self, guild_id: int, enabled: bool, enabled_at: Optional[int], enabled_by: Optional[int]
    ) -> None:
        await self._run_query(
            "INSERT INTO guild_movie_config (guild_id, attendance_mode, qualification_threshold_minutes, "
            "panic_mode, panic_enabled_at, panic_enabled_by) VALUES (%s, %s, %s, %s, %s, %s) "
            "ON DUPLICATE KEY UPDATE panic_mode = VALUES(panic_mode), "
            "panic_enabled_at = VALUES(panic_enabled_at), panic_enabled_by = VALUES(panic_enabled_by)",
            (
                guild_id,
                self._default_settings.mode.value,
                self._default_settings.threshold_minutes,
                1 if enabled else 0,
                enabled_at,
                enabled_by,
            ),
            commit=True,
        )

    async def record_role_assignment(
        self,
        guild_id: int,
        user_id: int,
        role_id: int,
        action: str,
        reason: Optional[str],
        triggered_by: str,
        details: Optional[str] = None,
    ) -> None:
        await self._run_query(
            "INSERT INTO role_assignments (guild_id, user_id, role_id, action, reason, triggered_by, details) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s)",
            (
                guild_id,
                user_id,
                role_id,
                action,
                _clip(reason, MAX_REASON_LENGTH),
                triggered_by,
                _clip(details, MAX_REASON_LENGTH) or None,
            ),
            commit=True,
        )
