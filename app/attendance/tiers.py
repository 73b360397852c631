"""
Tier Assigner - Reward roles derived from lifetime qualified movie counts.

Role changes are the primary effect of a tier update. The congratulation DM
and the audit log entry are side effects: their failures are collected in the
result and never undo or interrupt the role changes.
"""

from typing import Any, Dict, List, Optional, Protocol

import discord

from ..core.logger import ComponentLogger
from ..core.reliability import CircuitOpenError, discord_resilient
from ..db import DBQueryError
from .models import RoleAssignmentResult, RoleTier, TierUpdateResult
from .panic import PanicStore
from .qualification import ordinal
from .repository import AttendanceRepository
from .roles import RoleManager

_logger = ComponentLogger("movie_tiers")

DM_SENT = "✅ DM Sent"
DM_FAILED_CLOSED = "❌ DM Failed (closed)"
DM_FAILED_ERROR = "❌ DM Failed (error)"
DM_SKIPPED = "⏭️ No DM"

class AuditSink(Protocol):
    """Destination of administrative audit entries."""

    async def log_action(
        self,
        guild: discord.Guild,
        action: str,
        actor_id: Optional[int],
        subject_id: int,
        reason: str,
        meta: Dict[str, Any],
    ) -> None:
        ...

class ChannelAuditSink:
    """Posts audit entries as embeds to a guild text channel; silent when no channel is configured."""

    def __init__(self, bot: discord.Bot, channel_id: Optional[int] = None):
        self.bot = bot
        self.channel_id = channel_id

    async def log_action(
        self,
        guild: discord.Guild,
        action: str,
        actor_id: Optional[int],
        subject_id: int,
        reason: str,
        meta: Dict[str, Any],
    ) -> None:
        if not self.channel_id:
            return

        channel = guild.get_channel(self.channel_id)
        if channel is None:
            _logger.warning("audit_channel_not_found",
                guild_id=guild.id,
                channel_id=self.channel_id,
            )
            return

        embed = discord.Embed(
            title=action.replace("_", " ").title(),
            color=discord.Color.gold(),
            description=reason,
        )
        embed.add_field(name="Member", value=f"<@{subject_id}>", inline=True)
        if actor_id:
            embed.add_field(name="By", value=f"<@{actor_id}>", inline=True)
        for key, value in meta.items():
            embed.add_field(name=key.replace("_", " ").title(), value=str(value), inline=True)

        await channel.send(embed=embed)

def select_tier(tiers: List[RoleTier], count: int) -> Optional[RoleTier]:
    """Highest tier whose threshold is reached by ``count``."""
    target = None
    for tier in sorted(tiers, key=lambda t: t.threshold):
        if tier.threshold <= count:
            target = tier
    return target

def next_tier(tiers: List[RoleTier], count: int) -> Optional[RoleTier]:
    """Lowest tier still out of reach at ``count``."""
    for tier in sorted(tiers, key=lambda t: t.threshold):
        if tier.threshold > count:
            return tier
    return None

def build_tier_message(count: int, granted: Optional[RoleTier], upcoming: Optional[RoleTier]) -> str:
    message = f"Thanks for joining us in the movie! This is your **{ordinal(count)}** movie"
    if granted is not None:
        return message + f", so you got the <@&{granted.role_id}> role! 🎬"
    if upcoming is not None:
        remaining = upcoming.threshold - count
        plural = "movie" if remaining == 1 else "movies"
        return message + f", you need **{remaining}** more {plural} to get <@&{upcoming.role_id}>!"
    return message + "! You've reached the highest movie tier! 🏆"

def _empty_result(count: int = 0, errors: Optional[List[str]] = None) -> TierUpdateResult:
    return TierUpdateResult(
        assignments=[],
        target_tier=None,
        qualified_count=count,
        dm_status=DM_SKIPPED,
        errors=errors or [],
    )

class TierAssigner:
    """Moves a member onto the tier matching their qualified movie count."""

    def __init__(
        self,
        repository: AttendanceRepository,
        role_manager: RoleManager,
        panic_store: PanicStore,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.repository = repository
        self.role_manager = role_manager
        self.panic_store = panic_store
        self.audit_sink = audit_sink
        self.bot = role_manager.bot

    @discord_resilient("direct_message", max_retries=2)
    async def _send_dm(self, member: discord.Member, message: str) -> None:
        await member.send(message)

    async def _notify(self, member: Optional[discord.Member], message: str, errors: List[str]) -> str:
        if member is None:
            return DM_SKIPPED
        try:
            await self._send_dm(member, message)
            return DM_SENT
        except discord.Forbidden:
            errors.append("dm_closed")
            return DM_FAILED_CLOSED
        except (discord.HTTPException, CircuitOpenError) as e:
            errors.append(f"dm_failed: {e}")
            _logger.warning("tier_dm_failed", user_id=member.id, error=str(e))
            return DM_FAILED_ERROR
        except Exception as e:
            errors.append(f"dm_failed: {type(e).__name__}: {e}")
            _logger.error("tier_dm_unexpected_error",
                user_id=member.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DM_FAILED_ERROR

    async def update_tier_role(self, guild: discord.Guild, user_id: int) -> TierUpdateResult:
        """
        Grant the tier a member has earned and revoke every other tier role.

        Args:
            guild: Guild of the member
            user_id: Member to update

        Returns:
            TierUpdateResult with the role decisions, DM status and side-effect errors
        """
        if self.panic_store.is_panic_mode(guild.id):
            _logger.info("tier_update_skipped_panic", guild_id=guild.id, user_id=user_id)
            return _empty_result()

        try:
            tiers = await self.repository.get_tiers(guild.id)
            count = await self.repository.count_qualified(guild.id, user_id)
        except DBQueryError as e:
            _logger.error("tier_lookup_failed", guild_id=guild.id, user_id=user_id, error=str(e))
            return _empty_result(errors=[f"lookup_failed: {e}"])

        target = select_tier(tiers, count) if tiers else None
        if target is None:
            return _empty_result(count)

        reason = f"Movie tier: {target.tier_name} ({count} movies)"
        assignments: List[RoleAssignmentResult] = []
        for tier in tiers:
            if tier.role_id == target.role_id:
                continue
            revoke = await self.role_manager.remove_role(
                guild, user_id, tier.role_id, reason, triggered_by="movie_tier"
            )
            if revoke["action"] != "skipped":
                assignments.append(revoke)

        grant = await self.role_manager.assign_role(
            guild, user_id, target.role_id, reason, triggered_by="movie_tier"
        )
        assignments.append(grant)
        granted = grant["action"] == "add" and grant["success"]

        errors: List[str] = []
        member = await self.role_manager.get_member(guild, user_id)
        message = build_tier_message(count, target if granted else None, next_tier(tiers, count))
        dm_status = await self._notify(member, message, errors)

        if self.audit_sink is not None:
            me = guild.me
            try:
                await self.audit_sink.log_action(
                    guild,
                    "movie_tier_granted" if granted else "movie_tier_progress",
                    me.id if me else None,
                    user_id,
                    reason,
                    {"tier": target.tier_name, "qualified_count": count, "dm_status": dm_status},
                )
            except Exception as e:
                errors.append(f"audit_failed: {e}")
                _logger.warning("tier_audit_failed",
                    guild_id=guild.id,
                    user_id=user_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )

        _logger.info("tier_role_updated",
            guild_id=guild.id,
            user_id=user_id,
            tier=target.tier_name,
            qualified_count=count,
            granted=granted,
            dm_status=dm_status,
        )
        return TierUpdateResult(
            assignments=assignments,
            target_tier=target,
            qualified_count=count,
            dm_status=dm_status,
            errors=errors,
        )
