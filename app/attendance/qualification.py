"""
Qualification rules shared by finalize and manual credits.
"""

from typing import Union

from .models import AttendanceMode

def is_qualified(
    duration_minutes: int,
    longest_session_minutes: int,
    mode: Union[AttendanceMode, str],
    threshold_minutes: int,
) -> bool:
    """
    Decide whether an attendance passes the guild's policy.

    Cumulative mode sums every session of the event. Continuous mode only
    looks at the single longest unbroken session.

    Args:
        duration_minutes: Total minutes across all sessions
        longest_session_minutes: Longest single session in minutes
        mode: Guild attendance mode
        threshold_minutes: Minimum minutes required

    Returns:
        True if the attendance qualifies
    """
    if AttendanceMode.parse(mode) is AttendanceMode.CONTINUOUS:
        return longest_session_minutes >= threshold_minutes
    return duration_minutes >= threshold_minutes

def ordinal(n: int) -> str:
    """Format ``n`` as an English ordinal: 1st, 2nd, 3rd, 4th, 11th, 12th, 13th, 21st."""
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"
