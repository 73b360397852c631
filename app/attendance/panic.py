"""
Panic Store - Per-guild emergency freeze of automated role changes.

The flag lives in ``guild_movie_config`` and is mirrored in memory so the tier
path can check it without a query.
"""

from typing import Callable, Dict, List

from ..core.logger import ComponentLogger
from .models import PanicDetails
from .repository import AttendanceRepository
from .sessions import system_clock_ms

_logger = ComponentLogger("panic")

class PanicStore:
    """Cached panic flags backed by storage."""

    def __init__(
        self,
        repository: AttendanceRepository,
        clock: Callable[[], int] = system_clock_ms,
    ):
        self.repository = repository
        self._clock = clock
        self._states: Dict[int, PanicDetails] = {}
        self.loaded = False

    async def load(self) -> int:
        """
        Load every enabled panic flag into memory.

        Returns:
            Number of guilds currently frozen

        Raises:
            DBQueryError: If the flags cannot be read
        """
        self._states = await self.repository.load_panic_states()
        self.loaded = True
        if self._states:
            _logger.warning("panic_mode_active_on_startup", guild_ids=sorted(self._states))
        return len(self._states)

    def is_panic_mode(self, guild_id: int) -> bool:
        details = self._states.get(guild_id)
        return bool(details and details["enabled"])

    async def set_panic_mode(self, guild_id: int, enabled: bool, actor_id: int) -> PanicDetails:
        """
        Persist then cache the panic flag of a guild.

        Raises:
            DBQueryError: If the flag cannot be stored; the cache is left unchanged
        """
        enabled_at = self._clock() if enabled else None
        enabled_by = actor_id if enabled else None
        await self.repository.save_panic_state(guild_id, enabled, enabled_at, enabled_by)

        details = PanicDetails(enabled=enabled, enabled_at=enabled_at, enabled_by=enabled_by)
        if enabled:
            self._states[guild_id] = details
            _logger.warning("panic_mode_enabled", guild_id=guild_id, actor_id=actor_id)
        else:
            self._states.pop(guild_id, None)
            _logger.info("panic_mode_disabled", guild_id=guild_id, actor_id=actor_id)
        return details

    def get_panic_details(self, guild_id: int) -> PanicDetails:
        return self._states.get(
            guild_id, PanicDetails(enabled=False, enabled_at=None, enabled_by=None)
        )

    def get_panic_guilds(self) -> List[int]:
        return sorted(self._states)

    def clear_guild(self, guild_id: int) -> None:
        """Forget the cached flag of a guild (e.g. when the bot leaves it)."""
        self._states.pop(guild_id, None)
