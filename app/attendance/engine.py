"""
Attendance Engine - Facade over live sessions, snapshots, qualification and tiers.

The engine is the only object the command layer talks to. Live state lives in
an injected SessionStore; durable rows go through an AttendanceRepository.
Storage failures of attendance writes surface as AttendanceStorageError.
Invalid-state calls (no active event, already finalized) return a sentinel.
"""

import asyncio
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import discord
import pytz

from ..core.logger import ComponentLogger
from ..db import DBQueryError
from .models import (
    ActiveEvent,
    AdjustmentType,
    AttendanceMode,
    AttendanceRecord,
    BumpResult,
    EventStats,
    FinalizeResult,
    PanicDetails,
    QualificationSettings,
    RecoveryResult,
    RecoveryStatus,
    RoleTier,
    TierUpdateResult,
    UserSession,
)
from .panic import PanicStore
from .persistence import SessionPersistence
from .qualification import is_qualified
from .repository import AttendanceRepository
from .sessions import SessionStore
from .tiers import TierAssigner

_logger = ComponentLogger("attendance_engine")

DATE_FORMAT = "%Y-%m-%d"
MIN_THRESHOLD_MINUTES = 1
MAX_THRESHOLD_MINUTES = 600

class AttendanceError(Exception):
    """Base error of the attendance engine."""
    pass

class AttendanceStorageError(AttendanceError):
    """A storage-critical attendance write or read failed."""
    pass

class AttendanceEngine:
    """Movie night attendance tracking for every guild of the bot."""

    def __init__(
        self,
        store: SessionStore,
        repository: AttendanceRepository,
        persistence: SessionPersistence,
        panic_store: PanicStore,
        tier_assigner: TierAssigner,
        timezone_name: str = "UTC",
    ):
        self.store = store
        self.repository = repository
        self.persistence = persistence
        self.panic_store = panic_store
        self.tier_assigner = tier_assigner
        self.timezone = pytz.timezone(timezone_name)
        self.ready = asyncio.Event()
        self._record_locks: Dict[Tuple[int, int, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    # #################################################################################### #
    #                            Dates
    # #################################################################################### #
    def today(self) -> str:
        """Current date in the event time zone, as YYYY-MM-DD."""
        return datetime.now(self.timezone).strftime(DATE_FORMAT)

    def validate_event_date(self, event_date: str) -> str:
        """
        Check an administrative event date.

        Raises:
            ValueError: If the date is not YYYY-MM-DD or lies in the future
        """
        try:
            parsed = datetime.strptime(event_date, DATE_FORMAT)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid date '{event_date}', expected YYYY-MM-DD")
        normalized = parsed.strftime(DATE_FORMAT)
        if normalized > self.today():
            raise ValueError(f"Date {normalized} is in the future")
        return normalized

    # #################################################################################### #
    #                            Event Lifecycle
    # #################################################################################### #
    async def _channel_members(self, guild: discord.Guild, channel_id: int) -> List[discord.Member]:
        channel = guild.get_channel(channel_id)
        if channel is None:
            try:
                channel = await guild.fetch_channel(channel_id)
            except (discord.NotFound, discord.Forbidden, discord.HTTPException) as e:
                _logger.warning("movie_channel_fetch_failed",
                    guild_id=guild.id,
                    channel_id=channel_id,
                    error=str(e),
                )
                return []
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            _logger.warning("movie_channel_not_voice", guild_id=guild.id, channel_id=channel_id)
            return []
        return [member for member in channel.members if not member.bot]

    async def start_event(
        self, guild: discord.Guild, channel_id: int, event_date: Optional[str] = None
    ) -> int:
        """
        Start tracking a movie night in a voice channel.

        Members already in the channel are credited as joining at event start.
        A previous event of the guild is discarded.

        Args:
            guild: Guild running the movie night
            channel_id: Voice channel of the movie
            event_date: Date of the event, today in the event time zone by default

        Returns:
            Number of members already present and credited
        """
        event = self.store.start_event(guild.id, channel_id, event_date or self.today())

        present = await self._channel_members(guild, channel_id)
        credited = 0
        for member in present:
            if self.store.get_active_event(guild.id) is not event:
                break
            session = self.store.get_or_create_session(guild.id, member.id)
            if session.open(event.started_at):
                credited += 1

        _logger.info("movie_event_started",
            guild_id=guild.id,
            channel_id=channel_id,
            event_date=event.event_date,
            present_count=credited,
        )
        await self.persistence.persist_all_sessions()
        return credited

    def is_event_active(self, guild_id: int) -> bool:
        return self.store.is_event_active(guild_id)

    def get_active_event(self, guild_id: int) -> Optional[ActiveEvent]:
        return self.store.get_active_event(guild_id)

    def handle_voice_join(self, guild_id: int, user_id: int) -> bool:
        return self.store.handle_voice_join(guild_id, user_id)

    def handle_voice_leave(self, guild_id: int, user_id: int) -> Optional[int]:
        return self.store.handle_voice_leave(guild_id, user_id)

    def _restore(self, event: ActiveEvent, sessions: Dict[int, UserSession]) -> None:
        if self.store.is_event_active(event.guild_id):
            _logger.warning("movie_event_restore_skipped",
                guild_id=event.guild_id,
                reason="new_event_started",
            )
            return
        self.store.restore_event(event)
        for user_id, session in sessions.items():
            self.store.restore_session(event.guild_id, user_id, session)

    async def finalize(self, guild_id: int) -> Optional[FinalizeResult]:
        """
        End the movie night of a guild and write one attendance record per user.

        The guild's live state is taken out of the store before any await, so
        voice events and snapshot ticks arriving meanwhile see no event. The
        attendance rows and the snapshot cleanup are written atomically.

        Returns:
            FinalizeResult, or None if the guild had no active event

        Raises:
            AttendanceStorageError: If the write failed; the live state is put back
        """
        event, sessions = self.store.pop_guild(guild_id)
        if event is None:
            _logger.info("movie_finalize_no_active_event", guild_id=guild_id)
            return None

        now = self.store.now()
        closed: Dict[int, UserSession] = {}
        for user_id, session in sessions.items():
            final = replace(session)
            final.close(now)
            closed[user_id] = final

        try:
            settings = await self.repository.get_settings(guild_id)
        except DBQueryError as e:
            self._restore(event, sessions)
            _logger.error("movie_finalize_settings_failed", guild_id=guild_id, error=str(e))
            raise AttendanceStorageError(f"Could not read attendance settings: {e}") from e

        records: List[AttendanceRecord] = []
        for user_id, session in closed.items():
            records.append(
                AttendanceRecord(
                    guild_id=guild_id,
                    user_id=user_id,
                    event_date=event.event_date,
                    voice_channel_id=event.channel_id,
                    duration_minutes=session.accumulated_minutes,
                    longest_session_minutes=session.longest_session_minutes,
                    qualified=is_qualified(
                        session.accumulated_minutes,
                        session.longest_session_minutes,
                        settings.mode,
                        settings.threshold_minutes,
                    ),
                    adjustment_type=AdjustmentType.AUTOMATIC.value,
                    adjusted_by=None,
                    adjustment_reason=None,
                )
            )

        statements = [self.repository.attendance_statement(r) for r in records]
        statements.extend(self.repository.clear_snapshot_statements(guild_id))

        async with self.persistence.lock:
            try:
                await self.repository.execute(statements)
            except DBQueryError as e:
                self._restore(event, sessions)
                _logger.error("movie_finalize_write_failed",
                    guild_id=guild_id,
                    record_count=len(records),
                    error=str(e),
                )
                raise AttendanceStorageError(f"Could not save attendance: {e}") from e

        qualified_user_ids = [r["user_id"] for r in records if r["qualified"]]
        _logger.info("movie_event_finalized",
            guild_id=guild_id,
            event_date=event.event_date,
            attendee_count=len(records),
            qualified_count=len(qualified_user_ids),
            mode=settings.mode.value,
            threshold_minutes=settings.threshold_minutes,
        )
        return FinalizeResult(
            guild_id=guild_id,
            event_date=event.event_date,
            channel_id=event.channel_id,
            records=records,
            qualified_user_ids=qualified_user_ids,
        )

    async def cancel_event(self, guild_id: int) -> bool:
        """Drop the movie night of a guild without recording attendance."""
        event, sessions = self.store.pop_guild(guild_id)
        if event is None:
            return False
        cleared = await self.persistence.clear_guild(guild_id)
        _logger.info("movie_event_cancelled",
            guild_id=guild_id,
            event_date=event.event_date,
            discarded_sessions=len(sessions),
            snapshot_cleared=cleared,
        )
        return True

    # #################################################################################### #
    #                            Live Session Reads
    # #################################################################################### #
    def get_current_session(self, guild_id: int, user_id: int) -> Optional[UserSession]:
        if not self.store.is_event_active(guild_id):
            return None
        session = self.store.get_session(guild_id, user_id)
        return replace(session) if session else None

    def get_all_sessions(self, guild_id: int) -> Dict[int, UserSession]:
        if not self.store.is_event_active(guild_id):
            return {}
        return {
            user_id: replace(session)
            for user_id, session in self.store.guild_sessions(guild_id).items()
        }

    # #################################################################################### #
    #                            Qualification and Tiers
    # #################################################################################### #
    async def get_qualification_settings(self, guild_id: int) -> QualificationSettings:
        try:
            return await self.repository.get_settings(guild_id)
        except DBQueryError as e:
            raise AttendanceStorageError(f"Could not read attendance settings: {e}") from e

    async def set_qualification_settings(
        self,
        guild_id: int,
        mode: Optional[str] = None,
        threshold_minutes: Optional[int] = None,
    ) -> QualificationSettings:
        """
        Change the attendance policy of a guild, keeping unspecified values.

        Raises:
            ValueError: If the threshold is outside 1-600 minutes
            AttendanceStorageError: If the settings could not be stored
        """
        if threshold_minutes is not None and not (
            MIN_THRESHOLD_MINUTES <= threshold_minutes <= MAX_THRESHOLD_MINUTES
        ):
            raise ValueError(
                f"Threshold must be between {MIN_THRESHOLD_MINUTES} and {MAX_THRESHOLD_MINUTES} minutes"
            )
        current = await self.get_qualification_settings(guild_id)
        settings = QualificationSettings(
            AttendanceMode.parse(mode) if mode is not None else current.mode,
            threshold_minutes if threshold_minutes is not None else current.threshold_minutes,
        )
        try:
            await self.repository.save_settings(guild_id, settings)
        except DBQueryError as e:
            raise AttendanceStorageError(f"Could not save attendance settings: {e}") from e
        _logger.info("movie_settings_updated",
            guild_id=guild_id,
            mode=settings.mode.value,
            threshold_minutes=settings.threshold_minutes,
        )
        return settings

    async def get_user_qualified_movie_count(self, guild_id: int, user_id: int) -> int:
        try:
            return await self.repository.count_qualified(guild_id, user_id)
        except DBQueryError as e:
            raise AttendanceStorageError(f"Could not count attendance: {e}") from e

    async def get_user_history(self, guild_id: int, user_id: int, limit: int = 10) -> List[tuple]:
        try:
            return await self.repository.list_user_attendance(guild_id, user_id, limit)
        except DBQueryError as e:
            raise AttendanceStorageError(f"Could not read attendance history: {e}") from e

    async def get_event_stats(self, guild_id: int, event_date: str) -> EventStats:
        try:
            return await self.repository.get_event_stats(guild_id, event_date)
        except DBQueryError as e:
            raise AttendanceStorageError(f"Could not read event stats: {e}") from e

    async def update_tier_role(self, guild: discord.Guild, user_id: int) -> TierUpdateResult:
        return await self.tier_assigner.update_tier_role(guild, user_id)

    async def get_tiers(self, guild_id: int) -> List[RoleTier]:
        try:
            return await self.repository.get_tiers(guild_id)
        except DBQueryError as e:
            raise AttendanceStorageError(f"Could not read movie tiers: {e}") from e

    async def add_tier(self, guild_id: int, role_id: int, threshold: int, tier_name: str) -> RoleTier:
        """
        Create or update the tier bound to a role.

        Raises:
            ValueError: If the threshold is below one movie
            AttendanceStorageError: If the tier could not be stored
        """
        if threshold < 1:
            raise ValueError("Tier threshold must be at least 1 movie")
        tier = RoleTier(tier_name, role_id, threshold)
        try:
            await self.repository.save_tier(guild_id, tier)
        except DBQueryError as e:
            raise AttendanceStorageError(f"Could not save movie tier: {e}") from e
        _logger.info("movie_tier_saved", guild_id=guild_id, role_id=role_id, threshold=threshold)
        return tier

    async def remove_tier(self, guild_id: int, role_id: int) -> bool:
        tiers = await self.get_tiers(guild_id)
        if not any(t.role_id == role_id for t in tiers):
            return False
        try:
            await self.repository.delete_tier(guild_id, role_id)
        except DBQueryError as e:
            raise AttendanceStorageError(f"Could not delete movie tier: {e}") from e
        _logger.info("movie_tier_removed", guild_id=guild_id, role_id=role_id)
        return True

    # #################################################################################### #
    #                            Panic Freeze
    # #################################################################################### #
    def is_panic_mode(self, guild_id: int) -> bool:
        return self.panic_store.is_panic_mode(guild_id)

    def get_panic_details(self, guild_id: int) -> PanicDetails:
        return self.panic_store.get_panic_details(guild_id)

    async def set_panic_mode(self, guild_id: int, enabled: bool, actor_id: int) -> PanicDetails:
        try:
            return await self.panic_store.set_panic_mode(guild_id, enabled, actor_id)
        except DBQueryError as e:
            raise AttendanceStorageError(f"Could not store panic mode: {e}") from e

    # #################################################################################### #
    #                            Manual Adjustments
    # #################################################################################### #
    async def add_manual_attendance(
        self,
        guild_id: int,
        user_id: int,
        minutes: int,
        actor_id: int,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Add minutes to a user's live session of the running event.

        Returns:
            False if the guild has no active event

        Raises:
            ValueError: If minutes is not positive
        """
        if minutes <= 0:
            raise ValueError("Minutes must be positive")
        session = self.store.add_minutes(guild_id, user_id, minutes)
        if session is None:
            return False
        _logger.info("movie_manual_minutes_added",
            guild_id=guild_id,
            user_id=user_id,
            actor_id=actor_id,
            minutes=minutes,
            accumulated_minutes=session.accumulated_minutes,
            reason=reason,
        )
        return True

    async def _read_record(self, guild_id: int, user_id: int, event_date: str) -> Optional[AttendanceRecord]:
        try:
            return await self.repository.get_attendance(guild_id, user_id, event_date)
        except DBQueryError as e:
            raise AttendanceStorageError(f"Could not read attendance: {e}") from e

    async def _write_record(self, record: AttendanceRecord) -> None:
        try:
            await self.repository.execute([self.repository.attendance_statement(record)])
        except DBQueryError as e:
            _logger.error("movie_attendance_write_failed",
                guild_id=record["guild_id"],
                user_id=record["user_id"],
                event_date=record["event_date"],
                error=str(e),
            )
            raise AttendanceStorageError(f"Could not save attendance: {e}") from e

    async def credit_historical_attendance(
        self,
        guild_id: int,
        user_id: int,
        event_date: str,
        minutes: int,
        actor_id: int,
        reason: Optional[str] = None,
    ) -> AttendanceRecord:
        """
        Add minutes to the stored record of a past event, re-evaluating qualification.

        The credited minutes count as one session for continuous mode.

        Raises:
            ValueError: If minutes is not positive or the date is invalid
            AttendanceStorageError: If the record could not be read or written
        """
        if minutes <= 0:
            raise ValueError("Minutes must be positive")
        event_date = self.validate_event_date(event_date)

        async with self._record_locks[(guild_id, user_id, event_date)]:
            existing = await self._read_record(guild_id, user_id, event_date)
            settings = await self.get_qualification_settings(guild_id)

            duration = (existing["duration_minutes"] if existing else 0) + minutes
            longest = max(existing["longest_session_minutes"] if existing else 0, minutes)
            record = AttendanceRecord(
                guild_id=guild_id,
                user_id=user_id,
                event_date=event_date,
                voice_channel_id=existing["voice_channel_id"] if existing else None,
                duration_minutes=duration,
                longest_session_minutes=longest,
                qualified=is_qualified(duration, longest, settings.mode, settings.threshold_minutes),
                adjustment_type=AdjustmentType.MANUAL_ADD.value,
                adjusted_by=actor_id,
                adjustment_reason=reason,
            )
            await self._write_record(record)

        _logger.info("movie_attendance_credited",
            guild_id=guild_id,
            user_id=user_id,
            actor_id=actor_id,
            event_date=event_date,
            minutes=minutes,
            duration_minutes=duration,
            qualified=record["qualified"],
        )
        return record

    async def bump_attendance(
        self,
        guild_id: int,
        user_id: int,
        event_date: str,
        actor_id: int,
        reason: Optional[str] = None,
    ) -> BumpResult:
        """
        Force a qualified record for a user on an event date.

        Returns:
            BumpResult(created=False, previously_qualified=True) when nothing had to change

        Raises:
            ValueError: If the date is invalid
            AttendanceStorageError: If the record could not be read or written
        """
        event_date = self.validate_event_date(event_date)
        async with self._record_locks[(guild_id, user_id, event_date)]:
            existing = await self._read_record(guild_id, user_id, event_date)
            if existing is not None and existing["qualified"]:
                return BumpResult(created=False, previously_qualified=True)

            settings = await self.get_qualification_settings(guild_id)
            threshold = settings.threshold_minutes
            record = AttendanceRecord(
                guild_id=guild_id,
                user_id=user_id,
                event_date=event_date,
                voice_channel_id=existing["voice_channel_id"] if existing else None,
                duration_minutes=max(existing["duration_minutes"] if existing else 0, threshold),
                longest_session_minutes=max(
                    existing["longest_session_minutes"] if existing else 0, threshold
                ),
                qualified=True,
                adjustment_type=AdjustmentType.BUMP.value,
                adjusted_by=actor_id,
                adjustment_reason=reason,
            )
            await self._write_record(record)

        _logger.info("movie_attendance_bumped",
            guild_id=guild_id,
            user_id=user_id,
            actor_id=actor_id,
            event_date=event_date,
        )
        return BumpResult(created=True, previously_qualified=False)

    # #################################################################################### #
    #                            Persistence and Recovery
    # #################################################################################### #
    def start_session_persistence(self) -> asyncio.Task:
        return self.persistence.start()

    async def stop_session_persistence(self, final_flush: bool = True) -> None:
        await self.persistence.stop(final_flush=final_flush)

    async def persist_all_sessions(self) -> int:
        return await self.persistence.persist_all_sessions()

    async def recover_persisted_sessions(self) -> RecoveryResult:
        """Rebuild live state from the last snapshot, then accept voice events."""
        try:
            return await self.persistence.recover_persisted_sessions()
        finally:
            self.ready.set()

    def get_recovery_status(self, guild_id: Optional[int] = None) -> RecoveryStatus:
        return self.persistence.get_recovery_status(guild_id)

def build_attendance_engine(bot: discord.Bot) -> AttendanceEngine:
    """Wire an AttendanceEngine against the database pool and the loaded configuration."""
    from .. import config
    from .roles import RoleManager
    from .tiers import ChannelAuditSink

    repository = AttendanceRepository(
        default_settings=QualificationSettings(
            AttendanceMode.parse(config.get_default_attendance_mode()),
            config.get_default_qualification_threshold(),
        )
    )
    store = SessionStore()
    persistence = SessionPersistence(
        store, repository, interval_seconds=config.get_snapshot_interval_seconds()
    )
    panic_store = PanicStore(repository)
    tier_assigner = TierAssigner(
        repository,
        RoleManager(bot, repository),
        panic_store,
        ChannelAuditSink(bot, config.get_audit_log_channel_id()),
    )
    return AttendanceEngine(
        store,
        repository,
        persistence,
        panic_store,
        tier_assigner,
        timezone_name=config.get_event_timezone(),
    )
