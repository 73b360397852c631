"""
Role Manager - Permission-checked role grants and revokes with an audit trail.

Every decision (add, remove or skipped) is written to ``role_assignments``.
Nothing here raises: failures are reported in the returned result.
"""

from typing import Optional, Tuple

import discord

from ..core.logger import ComponentLogger
from ..core.reliability import CircuitOpenError, discord_resilient
from ..db import DBQueryError
from .models import RoleAssignmentResult
from .repository import AttendanceRepository

_logger = ComponentLogger("role_manager")

def _result(
    role_id: int,
    role_name: Optional[str],
    action: str,
    success: bool,
    reason: Optional[str] = None,
    error: Optional[str] = None,
) -> RoleAssignmentResult:
    return RoleAssignmentResult(
        success=success,
        role_id=role_id,
        role_name=role_name,
        action=action,
        reason=reason,
        error=error,
    )

class RoleManager:
    """Grants and revokes roles on behalf of the attendance engine."""

    def __init__(self, bot: discord.Bot, repository: AttendanceRepository):
        self.bot = bot
        self.repository = repository

    def can_manage_role(self, guild: discord.Guild, role: Optional[discord.Role]) -> Tuple[bool, str]:
        """
        Check that the bot is allowed to hand out ``role``.

        Returns:
            Tuple of (can_manage, reason)
        """
        me = guild.me
        if me is None:
            return False, "bot_member_not_found"
        if not me.guild_permissions.manage_roles:
            return False, "missing_manage_roles"
        if role is None:
            return False, "role_not_found"
        if role.id == guild.id:
            return False, "everyone_role"
        if role.managed:
            return False, "managed_role"
        if role.position >= me.top_role.position:
            return False, "role_hierarchy"
        return True, ""

    async def get_member(self, guild: discord.Guild, user_id: int) -> Optional[discord.Member]:
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException) as e:
            _logger.debug("member_fetch_failed", guild_id=guild.id, user_id=user_id, error=str(e))
            return None

    @discord_resilient("role_assignment", max_retries=3)
    async def _add_role(self, member: discord.Member, role: discord.Role, reason: str) -> None:
        await member.add_roles(role, reason=reason)

    @discord_resilient("role_assignment", max_retries=3)
    async def _remove_role(self, member: discord.Member, role: discord.Role, reason: str) -> None:
        await member.remove_roles(role, reason=reason)

    async def _audit(
        self,
        guild_id: int,
        user_id: int,
        result: RoleAssignmentResult,
        triggered_by: str,
    ) -> None:
        try:
            await self.repository.record_role_assignment(
                guild_id,
                user_id,
                result["role_id"],
                result["action"],
                result["reason"],
                triggered_by,
                result["error"],
            )
        except DBQueryError as e:
            _logger.warning("role_assignment_audit_failed",
                guild_id=guild_id,
                user_id=user_id,
                error=str(e),
            )

    async def _apply(
        self,
        guild: discord.Guild,
        user_id: int,
        role_id: int,
        reason: str,
        triggered_by: str,
        grant: bool,
    ) -> RoleAssignmentResult:
        action = "add" if grant else "remove"
        role = guild.get_role(role_id)
        role_name = role.name if role else None

        member = await self.get_member(guild, user_id)
        if member is None:
            result = _result(role_id, role_name, "skipped", False, reason, "member_not_found")
            await self._audit(guild.id, user_id, result, triggered_by)
            return result

        holds_role = role is not None and any(r.id == role_id for r in member.roles)
        if grant and holds_role:
            result = _result(role_id, role_name, "skipped", True, "already_has_role")
            await self._audit(guild.id, user_id, result, triggered_by)
            return result
        if not grant and not holds_role:
            return _result(role_id, role_name, "skipped", True, "does_not_have_role")

        can_manage, denial = self.can_manage_role(guild, role)
        if not can_manage:
            _logger.warning("role_change_not_permitted",
                guild_id=guild.id,
                role_id=role_id,
                reason=denial,
            )
            result = _result(role_id, role_name, "skipped", False, reason, denial)
            await self._audit(guild.id, user_id, result, triggered_by)
            return result

        try:
            if grant:
                await self._add_role(member, role, reason)
            else:
                await self._remove_role(member, role, reason)
        except (discord.Forbidden, discord.NotFound, discord.HTTPException, CircuitOpenError) as e:
            _logger.error("role_change_failed",
                guild_id=guild.id,
                user_id=user_id,
                role_id=role_id,
                action=action,
                error=str(e),
            )
            result = _result(role_id, role_name, action, False, reason, str(e))
            await self._audit(guild.id, user_id, result, triggered_by)
            return result
        except Exception as e:
            _logger.error("role_change_unexpected_error",
                guild_id=guild.id,
                user_id=user_id,
                role_id=role_id,
                action=action,
                error_type=type(e).__name__,
                error=str(e),
            )
            result = _result(role_id, role_name, action, False, reason, f"{type(e).__name__}: {e}")
            await self._audit(guild.id, user_id, result, triggered_by)
            return result

        _logger.info("role_changed",
            guild_id=guild.id,
            user_id=user_id,
            role_id=role_id,
            action=action,
            reason=reason,
        )
        result = _result(role_id, role_name, action, True, reason)
        await self._audit(guild.id, user_id, result, triggered_by)
        return result

    async def assign_role(
        self, guild: discord.Guild, user_id: int, role_id: int, reason: str, triggered_by: str = "system"
    ) -> RoleAssignmentResult:
        """Grant a role, skipping when already held."""
        return await self._apply(guild, user_id, role_id, reason, triggered_by, grant=True)

    async def remove_role(
        self, guild: discord.Guild, user_id: int, role_id: int, reason: str, triggered_by: str = "system"
    ) -> RoleAssignmentResult:
        """Revoke a role, skipping silently when not held."""
        return await self._apply(guild, user_id, role_id, reason, triggered_by, grant=False)
