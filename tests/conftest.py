"""
Pytest configuration and fixtures for the movie night bot tests.

Provides a controllable millisecond clock, an in-memory stand-in for the
attendance repository and mocked Discord guilds and members.
"""

import os
import sys
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, Mock

import pytest

# Set environment variables immediately before any imports
env_vars = {
    "DISCORD_TOKEN": "MTE0ODk5Mjc4NjU1MTI0Njg0OC5G2dKr2.fake_discord_token_for_testing_with_sufficient_length_12345",
    "DB_USER": "test_user",
    "DB_PASS": "test_password",
    "DB_HOST": "localhost",
    "DB_PORT": "3306",
    "DB_NAME": "test_database",
    "DB_POOL_SIZE": "5",
    "DB_TIMEOUT": "10",
    "DB_CIRCUIT_BREAKER_THRESHOLD": "5",
    "MAX_MEMORY_MB": "1024",
    "MAX_CPU_PERCENT": "90",
    "MAX_RECONNECT_ATTEMPTS": "5",
    "DEBUG": "False",
    "PRODUCTION": "False",
}

for key, value in env_vars.items():
    os.environ[key] = value

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.attendance.engine import AttendanceEngine
from app.attendance.models import (
    ActiveEvent,
    AttendanceMode,
    AttendanceRecord,
    EventStats,
    PanicDetails,
    QualificationSettings,
    RoleTier,
)
from app.attendance.panic import PanicStore
from app.attendance.persistence import SessionPersistence
from app.attendance.roles import RoleManager
from app.attendance.sessions import SessionStore
from app.attendance.tiers import TierAssigner
from app.db import DBQueryError

BASE_TIME_MS = 1_700_000_000_000
GUILD_ID = 111111111111111111
CHANNEL_ID = 222222222222222222
BOT_USER_ID = 999999999999999999

# #################################################################################### #
#                            Clock
# #################################################################################### #
class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = BASE_TIME_MS):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, minutes: float = 0, seconds: float = 0) -> int:
        self.now_ms += int(minutes * 60_000 + seconds * 1000)
        return self.now_ms

# #################################################################################### #
#                            In-memory Repository
# #################################################################################### #
class FakeAttendanceRepository:
    """
    In-memory stand-in for AttendanceRepository.

    Statements are plain tagged tuples applied by ``execute``; setting
    ``fail_writes`` or ``fail_reads`` makes the matching calls raise
    DBQueryError like the real pool would.
    """

    def __init__(self, default_settings: Optional[QualificationSettings] = None):
        self._default_settings = default_settings or QualificationSettings(
            AttendanceMode.CUMULATIVE, 30
        )
        self.events: Dict[int, tuple] = {}
        self.sessions: Dict[Tuple[int, int, str], tuple] = {}
        self.attendance: Dict[Tuple[int, int, str], AttendanceRecord] = {}
        self.settings: Dict[int, QualificationSettings] = {}
        self.tiers: Dict[int, Dict[int, RoleTier]] = {}
        self.panic: Dict[int, PanicDetails] = {}
        self.role_audit: List[tuple] = []
        self.fail_writes = False
        self.fail_reads = False
        self.execute_calls = 0

    @property
    def default_settings(self) -> QualificationSettings:
        return self._default_settings

    def _check_read(self):
        if self.fail_reads:
            raise DBQueryError("Database connection error")

    def _check_write(self):
        if self.fail_writes:
            raise DBQueryError("Database connection error")

    async def execute(self, statements):
        self.execute_calls += 1
        self._check_write()
        for statement in statements:
            kind = statement[0]
            if kind == "upsert_event":
                event = statement[1]
                self.events[event.guild_id] = (
                    event.guild_id, event.channel_id, event.event_date, event.started_at
                )
            elif kind == "replace_sessions":
                guild_id = statement[1]
                for key in [k for k in self.sessions if k[0] == guild_id]:
                    del self.sessions[key]
            elif kind == "upsert_session":
                row = statement[1]
                self.sessions[(row["guild_id"], row["user_id"], row["event_date"])] = (
                    row["guild_id"],
                    row["user_id"],
                    row["event_date"],
                    row["current_session_start"],
                    row["accumulated_minutes"],
                    row["longest_session_minutes"],
                    row["last_persisted_at"],
                )
            elif kind == "clear_snapshot":
                guild_id = statement[1]
                self.events.pop(guild_id, None)
                for key in [k for k in self.sessions if k[0] == guild_id]:
                    del self.sessions[key]
            elif kind == "upsert_attendance":
                record = dict(statement[1])
                key = (record["guild_id"], record["user_id"], record["event_date"])
                existing = self.attendance.get(key)
                if existing is not None and record["adjustment_type"] == "automatic":
                    merged = dict(existing)
                    merged["voice_channel_id"] = existing["voice_channel_id"] or record["voice_channel_id"]
                    for field in ("duration_minutes", "longest_session_minutes"):
                        merged[field] = max(existing[field], record[field])
                    merged["qualified"] = existing["qualified"] or record["qualified"]
                    record = merged
                self.attendance[key] = record
        return True

    def snapshot_statements(self, events, sessions):
        statements = []
        for event in events:
            statements.append(("upsert_event", ActiveEvent(**vars(event))))
            statements.append(("replace_sessions", event.guild_id))
        statements.extend(("upsert_session", dict(row)) for row in sessions)
        return statements

    def clear_snapshot_statements(self, guild_id):
        return [("clear_snapshot", guild_id)]

    def attendance_statement(self, record):
        return ("upsert_attendance", dict(record))

    async def load_active_events(self):
        self._check_read()
        return list(self.events.values())

    async def load_active_sessions(self):
        self._check_read()
        return list(self.sessions.values())

    async def delete_session_rows(self, guild_id, user_id, event_date):
        self._check_write()
        self.sessions.pop((guild_id, user_id, event_date), None)

    async def get_attendance(self, guild_id, user_id, event_date):
        self._check_read()
        record = self.attendance.get((guild_id, user_id, event_date))
        return AttendanceRecord(**record) if record else None

    async def count_qualified(self, guild_id, user_id):
        self._check_read()
        return sum(
            1
            for (g_id, u_id, _), record in self.attendance.items()
            if g_id == guild_id and u_id == user_id and record["qualified"]
        )

    async def list_user_attendance(self, guild_id, user_id, limit=10):
        self._check_read()
        rows = [
            (
                record["event_date"],
                record["duration_minutes"],
                record["longest_session_minutes"],
                1 if record["qualified"] else 0,
                record["adjustment_type"],
            )
            for (g_id, u_id, _), record in self.attendance.items()
            if g_id == guild_id and u_id == user_id
        ]
        return sorted(rows, reverse=True)[:limit]

    async def get_event_stats(self, guild_id, event_date):
        self._check_read()
        records = [
            r for (g_id, _, date), r in self.attendance.items()
            if g_id == guild_id and date == event_date
        ]
        if not records:
            return EventStats(total=0, qualified=0, avg_minutes=0.0)
        return EventStats(
            total=len(records),
            qualified=sum(1 for r in records if r["qualified"]),
            avg_minutes=round(sum(r["duration_minutes"] for r in records) / len(records), 1),
        )

    async def get_settings(self, guild_id):
        self._check_read()
        return self.settings.get(guild_id, self._default_settings)

    async def save_settings(self, guild_id, settings):
        self._check_write()
        self.settings[guild_id] = settings

    async def get_tiers(self, guild_id):
        self._check_read()
        return sorted(self.tiers.get(guild_id, {}).values(), key=lambda t: t.threshold)

    async def save_tier(self, guild_id, tier):
        self._check_write()
        self.tiers.setdefault(guild_id, {})[tier.role_id] = tier

    async def delete_tier(self, guild_id, role_id):
        self._check_write()
        self.tiers.get(guild_id, {}).pop(role_id, None)

    async def load_panic_states(self):
        self._check_read()
        return {g: dict(d) for g, d in self.panic.items() if d["enabled"]}

    async def save_panic_state(self, guild_id, enabled, enabled_at, enabled_by):
        self._check_write()
        self.panic[guild_id] = PanicDetails(enabled=enabled, enabled_at=enabled_at, enabled_by=enabled_by)

    async def record_role_assignment(self, guild_id, user_id, role_id, action, reason, triggered_by, details=None):
        self._check_write()
        self.role_audit.append((guild_id, user_id, role_id, action, reason, triggered_by, details))

    def add_qualified(self, guild_id: int, user_id: int, count: int) -> None:
        """Seed ``count`` qualified past events for a user."""
        for index in range(count):
            event_date = (date(2020, 1, 1) + timedelta(days=index)).isoformat()
            self.attendance[(guild_id, user_id, event_date)] = dict(
                guild_id=guild_id,
                user_id=user_id,
                event_date=event_date,
                voice_channel_id=CHANNEL_ID,
                duration_minutes=60,
                longest_session_minutes=60,
                qualified=True,
                adjustment_type="automatic",
                adjusted_by=None,
                adjustment_reason=None,
            )

# #################################################################################### #
#                            Discord Doubles
# #################################################################################### #
def make_role(role_id: int, name: str = "Role", position: int = 5, managed: bool = False) -> Mock:
    role = Mock()
    role.id = role_id
    role.name = name
    role.position = position
    role.managed = managed
    role.mention = f"<@&{role_id}>"
    return role

def make_member(user_id: int, roles: Optional[List[Mock]] = None, bot: bool = False) -> Mock:
    member = Mock()
    member.id = user_id
    member.bot = bot
    member.mention = f"<@{user_id}>"
    member.roles = list(roles or [])

    async def add_roles(role, reason=None):
        member.roles.append(role)

    async def remove_roles(role, reason=None):
        member.roles = [r for r in member.roles if r.id != role.id]

    member.add_roles = AsyncMock(side_effect=add_roles)
    member.remove_roles = AsyncMock(side_effect=remove_roles)
    member.send = AsyncMock()
    return member

def make_guild(
    guild_id: int = GUILD_ID,
    roles: Optional[List[Mock]] = None,
    members: Optional[List[Mock]] = None,
    manage_roles: bool = True,
    top_position: int = 100,
) -> Mock:
    guild = Mock()
    guild.id = guild_id
    role_map = {role.id: role for role in roles or []}
    member_map = {member.id: member for member in members or []}

    me = Mock()
    me.id = BOT_USER_ID
    me.guild_permissions.manage_roles = manage_roles
    me.top_role = make_role(333, "Bot", position=top_position)
    guild.me = me

    guild.get_role = Mock(side_effect=lambda role_id: role_map.get(role_id))
    guild.get_member = Mock(side_effect=lambda user_id: member_map.get(user_id))
    guild.fetch_member = AsyncMock(return_value=None)
    guild.get_channel = Mock(return_value=None)
    guild.fetch_channel = AsyncMock(return_value=None)
    guild._members = member_map
    guild._roles = role_map
    return guild

# #################################################################################### #
#                            Engine Fixtures
# #################################################################################### #
@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def store(clock):
    return SessionStore(clock=clock)

@pytest.fixture
def repository():
    return FakeAttendanceRepository()

@pytest.fixture
def persistence(store, repository):
    return SessionPersistence(store, repository, interval_seconds=300)

@pytest.fixture
def panic_store(repository, clock):
    return PanicStore(repository, clock=clock)

@pytest.fixture
def mock_bot():
    bot = Mock()
    bot.reliability_system = None
    return bot

@pytest.fixture
def role_manager(mock_bot, repository):
    return RoleManager(mock_bot, repository)

@pytest.fixture
def audit_sink():
    sink = Mock()
    sink.log_action = AsyncMock()
    return sink

@pytest.fixture
def tier_assigner(repository, role_manager, panic_store, audit_sink):
    return TierAssigner(repository, role_manager, panic_store, audit_sink)

@pytest.fixture
def engine(store, repository, persistence, panic_store, tier_assigner):
    return AttendanceEngine(
        store, repository, persistence, panic_store, tier_assigner, timezone_name="UTC"
    )

@pytest.fixture
def guild_factory():
    return make_guild

@pytest.fixture
def member_factory():
    return make_member

@pytest.fixture
def role_factory():
    return make_role
