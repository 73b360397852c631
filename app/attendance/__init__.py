"""
Attendance Package - Movie night attendance tracking and tier rewards.

Live voice sessions are held in memory, snapshotted to the database on a
fixed interval and rebuilt after a crash. At the end of an event every
attendee is qualified under the guild's policy and moved onto the reward
tier matching their lifetime count.
"""

from .engine import (
    AttendanceEngine,
    AttendanceError,
    AttendanceStorageError,
    build_attendance_engine,
)
from .models import (
    ActiveEvent,
    AttendanceMode,
    AttendanceRecord,
    QualificationSettings,
    RoleTier,
    UserSession,
)
from .persistence import SessionPersistence
from .sessions import SessionStore

__all__ = [
    "AttendanceEngine",
    "AttendanceError",
    "AttendanceStorageError",
    "build_attendance_engine",
    "ActiveEvent",
    "AttendanceMode",
    "AttendanceRecord",
    "QualificationSettings",
    "RoleTier",
    "UserSession",
    "SessionPersistence",
    "SessionStore",
]
