"""
Panic store tests - Cached freeze flags backed by storage.
"""

import pytest

from app.attendance.engine import AttendanceStorageError
from app.attendance.models import PanicDetails
from app.db import DBQueryError

GUILD_ID = 1001
ADMIN_ID = 4242

@pytest.mark.unit
class TestPanicStore:
    """PanicStore behaviour."""

    def test_default_is_off(self, panic_store):
        assert panic_store.is_panic_mode(GUILD_ID) is False
        assert panic_store.get_panic_details(GUILD_ID) == PanicDetails(
            enabled=False, enabled_at=None, enabled_by=None
        )

    @pytest.mark.asyncio
    async def test_enable_and_disable(self, panic_store, repository, clock):
        details = await panic_store.set_panic_mode(GUILD_ID, True, ADMIN_ID)

        assert details["enabled_at"] == clock()
        assert details["enabled_by"] == ADMIN_ID
        assert panic_store.is_panic_mode(GUILD_ID)
        assert panic_store.get_panic_guilds() == [GUILD_ID]
        assert repository.panic[GUILD_ID]["enabled"] is True

        await panic_store.set_panic_mode(GUILD_ID, False, ADMIN_ID)

        assert not panic_store.is_panic_mode(GUILD_ID)
        assert repository.panic[GUILD_ID]["enabled"] is False

    @pytest.mark.asyncio
    async def test_storage_failure_leaves_cache(self, panic_store, repository):
        repository.fail_writes = True

        with pytest.raises(DBQueryError):
            await panic_store.set_panic_mode(GUILD_ID, True, ADMIN_ID)
        assert not panic_store.is_panic_mode(GUILD_ID)

    @pytest.mark.asyncio
    async def test_load_survives_restart(self, panic_store, repository, clock):
        from app.attendance.panic import PanicStore

        await panic_store.set_panic_mode(GUILD_ID, True, ADMIN_ID)
        await panic_store.set_panic_mode(2002, True, ADMIN_ID)
        await panic_store.set_panic_mode(2002, False, ADMIN_ID)

        restarted = PanicStore(repository, clock=clock)
        assert await restarted.load() == 1
        assert restarted.loaded
        assert restarted.is_panic_mode(GUILD_ID)
        assert not restarted.is_panic_mode(2002)

    @pytest.mark.asyncio
    async def test_clear_guild(self, panic_store):
        await panic_store.set_panic_mode(GUILD_ID, True, ADMIN_ID)

        panic_store.clear_guild(GUILD_ID)

        assert not panic_store.is_panic_mode(GUILD_ID)

    @pytest.mark.asyncio
    async def test_engine_wraps_storage_errors(self, engine, repository):
        repository.fail_writes = True

        with pytest.raises(AttendanceStorageError):
            await engine.set_panic_mode(GUILD_ID, True, ADMIN_ID)
