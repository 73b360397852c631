"""
Attendance Models - In-memory session state and durable record shapes.

Live state (ActiveEvent, UserSession) is mutable and held by the session
store; rows read from or written to storage are typed dictionaries.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, NamedTuple, Optional, TypedDict

MS_PER_MINUTE = 60_000

def minutes_between(start_ms: int, end_ms: int) -> int:
    """Whole minutes elapsed between two epoch-millisecond instants, floored, never negative."""
    if end_ms <= start_ms:
        return 0
    return (end_ms - start_ms) // MS_PER_MINUTE

class AttendanceMode(str, Enum):
    """Qualification policy configured per guild."""
    CUMULATIVE = "cumulative"
    CONTINUOUS = "continuous"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AttendanceMode":
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.CUMULATIVE

class AdjustmentType(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL_ADD = "manual_add"
    BUMP = "bump"

@dataclass
class ActiveEvent:
    """The single tracked movie night of a guild."""
    guild_id: int
    channel_id: int
    event_date: str
    started_at: int

@dataclass
class UserSession:
    """
    One user's presence within the active event of a guild.

    ``current_session_start`` is None while the user is outside the channel.
    An open session adds nothing to the totals until it is closed.
    """
    current_session_start: Optional[int] = None
    accumulated_minutes: int = 0
    longest_session_minutes: int = 0
    last_persisted_at: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.current_session_start is not None

    def open(self, now_ms: int) -> bool:
        """Open a session at ``now_ms``; an already open session keeps its start."""
        if self.current_session_start is not None:
            return False
        self.current_session_start = now_ms
        return True

    def close(self, now_ms: int) -> int:
        """Close the open session and credit its floored minutes. Returns the credited minutes."""
        if self.current_session_start is None:
            return 0
        minutes = minutes_between(self.current_session_start, now_ms)
        self.current_session_start = None
        self.credit(minutes)
        return minutes

    def credit(self, minutes: int) -> None:
        """Add a stretch of ``minutes`` to the totals as if it were one session."""
        self.accumulated_minutes += minutes
        if minutes > self.longest_session_minutes:
            self.longest_session_minutes = minutes

class QualificationSettings(NamedTuple):
    mode: AttendanceMode
    threshold_minutes: int

class RoleTier(NamedTuple):
    tier_name: str
    role_id: int
    threshold: int

class AttendanceRecord(TypedDict):
    """Durable attendance row, one per guild, user and event date."""
    guild_id: int
    user_id: int
    event_date: str
    voice_channel_id: Optional[int]
    duration_minutes: int
    longest_session_minutes: int
    qualified: bool
    adjustment_type: str
    adjusted_by: Optional[int]
    adjustment_reason: Optional[str]

class SessionSnapshotRow(TypedDict):
    guild_id: int
    user_id: int
    event_date: str
    current_session_start: Optional[int]
    accumulated_minutes: int
    longest_session_minutes: int
    last_persisted_at: int

class FinalizeResult(TypedDict):
    guild_id: int
    event_date: str
    channel_id: int
    records: List[AttendanceRecord]
    qualified_user_ids: List[int]

class BumpResult(NamedTuple):
    created: bool
    previously_qualified: bool

class RecoveryResult(NamedTuple):
    events: int
    sessions: int
    skipped: int = 0
    recovered_minutes: int = 0

class RecoveryStatus(TypedDict):
    has_active_event: bool
    guild_id: Optional[int]
    channel_id: Optional[int]
    event_date: Optional[str]
    session_count: int
    open_session_count: int
    total_minutes: int
    recovered_at: Optional[int]

class EventStats(TypedDict):
    total: int
    qualified: int
    avg_minutes: float

class RoleAssignmentResult(TypedDict):
    """Outcome of one grant or revoke decision."""
    success: bool
    role_id: int
    role_name: Optional[str]
    action: str
    reason: Optional[str]
    error: Optional[str]

class TierUpdateResult(TypedDict):
    assignments: List[RoleAssignmentResult]
    target_tier: Optional[RoleTier]
    qualified_count: int
    dm_status: str
    errors: List[str]

class PanicDetails(TypedDict):
    enabled: bool
    enabled_at: Optional[int]
    enabled_by: Optional[int]
