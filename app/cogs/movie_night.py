"""
Movie Night Cog - Slash commands and voice tracking for movie night attendance.

This cog is the thin command layer over the attendance engine:

Features:
    - Voice join/leave tracking in the movie channel of each guild
    - /movie start, end and cancel to drive the event lifecycle
    - Manual adjustments (add, credit, bump) for staff
    - Qualification policy, reward tiers and panic freeze configuration
    - Recovery diagnostics after a restart

Voice events are ignored until the engine has finished crash recovery.
Every command requires the Manage Events permission on the /movie group.
"""

from typing import List

import discord
from discord.ext import commands

from app.attendance import AttendanceEngine, AttendanceStorageError
from app.attendance.models import FinalizeResult, TierUpdateResult
from app.core.logger import ComponentLogger

_logger = ComponentLogger("movie_night")

STORAGE_ERROR_MESSAGE = "❌ The database is unavailable right now, nothing was changed. Please try again later."
NOT_READY_MESSAGE = "⏳ Movie night tracking is still recovering after a restart, please try again in a moment."

def _format_minutes(minutes: int) -> str:
    hours, rest = divmod(int(minutes), 60)
    return f"{hours}h{rest:02d}" if hours else f"{rest} min"

def _summarize_finalize(result: FinalizeResult, tier_results: List[TierUpdateResult]) -> str:
    lines = [
        f"🎬 Movie night of **{result['event_date']}** ended.",
        f"Attendees: **{len(result['records'])}** | Qualified: **{len(result['qualified_user_ids'])}**",
    ]
    granted = sum(
        1
        for tier_result in tier_results
        for assignment in tier_result["assignments"]
        if assignment["action"] == "add" and assignment["success"]
    )
    dm_failures = sum(1 for tier_result in tier_results if tier_result["dm_status"].startswith("❌"))
    if granted:
        lines.append(f"Tier roles granted: **{granted}**")
    if dm_failures:
        lines.append(f"DMs that could not be delivered: **{dm_failures}**")
    return "\n".join(lines)

class MovieNight(commands.Cog):
    """Cog exposing the /movie commands and the voice presence listener."""

    def __init__(self, bot: discord.Bot) -> None:
        """
        Initialize the MovieNight cog.

        Args:
            bot: Discord bot instance carrying ``attendance_engine`` and ``movie_group``
        """
        self.bot = bot
        self._register_movie_commands()

    @property
    def engine(self) -> AttendanceEngine:
        return self.bot.attendance_engine

    def _register_movie_commands(self) -> None:
        """Register movie commands with the centralized movie group."""
        if not hasattr(self.bot, "movie_group"):
            _logger.warning("movie_group_missing")
            return

        group = self.bot.movie_group
        group.command(name="start", description="Start tracking a movie night in a voice channel.")(self.movie_start)
        group.command(name="end", description="End the movie night and record attendance.")(self.movie_end)
        group.command(name="cancel", description="Cancel the movie night without recording attendance.")(self.movie_cancel)
        group.command(name="attendance", description="Show live attendance or a member's movie history.")(self.movie_attendance)
        group.command(name="add", description="Add minutes to a member for the running movie night.")(self.movie_add)
        group.command(name="credit", description="Credit minutes to a member for a past movie night.")(self.movie_credit)
        group.command(name="bump", description="Mark a member as qualified for a movie night.")(self.movie_bump)
        group.command(name="resume", description="Show the state recovered after a restart.")(self.movie_resume)
        group.command(name="config", description="Show or change the qualification policy.")(self.movie_config)
        group.command(name="tier-add", description="Add or update a reward tier role.")(self.movie_tier_add)
        group.command(name="tier-remove", description="Remove a reward tier role.")(self.movie_tier_remove)
        group.command(name="panic", description="Freeze or unfreeze automatic tier role changes.")(self.movie_panic)

    async def _ensure_ready(self, ctx: discord.ApplicationContext) -> bool:
        if self.engine.ready.is_set():
            return True
        await ctx.respond(NOT_READY_MESSAGE, ephemeral=True)
        return False

    # #################################################################################### #
    #                            Voice Presence
    # #################################################################################### #
    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        """
        Open or close the member's session when they enter or leave the movie channel.

        Args:
            member: Discord member whose voice state changed
            before: Previous voice state
            after: New voice state
        """
        if member.bot or not self.engine.ready.is_set():
            return

        guild_id = member.guild.id
        event = self.engine.get_active_event(guild_id)
        if event is None:
            return

        before_id = before.channel.id if before.channel else None
        after_id = after.channel.id if after.channel else None
        if before_id == after_id:
            return

        if after_id == event.channel_id:
            self.engine.handle_voice_join(guild_id, member.id)
        elif before_id == event.channel_id:
            self.engine.handle_voice_leave(guild_id, member.id)

    # #################################################################################### #
    #                            Event Lifecycle Commands
    # #################################################################################### #
    async def movie_start(
        self,
        ctx: discord.ApplicationContext,
        channel: discord.VoiceChannel = discord.Option(
            discord.VoiceChannel, description="Voice channel where the movie is watched"
        ),
        date: str = discord.Option(
            str, description="Event date (YYYY-MM-DD), today by default", required=False, default=None
        ),
    ):
        """Start tracking a movie night."""
        if not await self._ensure_ready(ctx):
            return
        await ctx.defer(ephemeral=True)

        try:
            event_date = self.engine.validate_event_date(date) if date else None
        except ValueError as e:
            await ctx.followup.send(f"❌ {e}", ephemeral=True)
            return

        previous = self.engine.get_active_event(ctx.guild.id)
        present = await self.engine.start_event(ctx.guild, channel.id, event_date)
        event = self.engine.get_active_event(ctx.guild.id)

        message = (
            f"🎬 Movie night started in {channel.mention} for **{event.event_date}**. "
            f"{present} member(s) already present were counted."
        )
        if previous is not None:
            message += f"\n⚠️ The previous movie night of {previous.event_date} was discarded."
        await ctx.followup.send(message, ephemeral=True)

    async def movie_end(self, ctx: discord.ApplicationContext):
        """End the movie night, record attendance and update tier roles."""
        if not await self._ensure_ready(ctx):
            return
        await ctx.defer(ephemeral=True)

        try:
            result = await self.engine.finalize(ctx.guild.id)
        except AttendanceStorageError:
            await ctx.followup.send(STORAGE_ERROR_MESSAGE, ephemeral=True)
            return

        if result is None:
            await ctx.followup.send("❌ No movie night is running.", ephemeral=True)
            return

        tier_results = []
        for user_id in result["qualified_user_ids"]:
            try:
                tier_results.append(await self.engine.update_tier_role(ctx.guild, user_id))
            except Exception as e:
                _logger.error("movie_tier_update_failed",
                    guild_id=ctx.guild.id,
                    user_id=user_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )

        await ctx.followup.send(_summarize_finalize(result, tier_results), ephemeral=True)

    async def movie_cancel(self, ctx: discord.ApplicationContext):
        """Cancel the movie night."""
        if not await self._ensure_ready(ctx):
            return
        await ctx.defer(ephemeral=True)

        if await self.engine.cancel_event(ctx.guild.id):
            await ctx.followup.send("🗑️ Movie night cancelled, no attendance was recorded.", ephemeral=True)
        else:
            await ctx.followup.send("❌ No movie night is running.", ephemeral=True)

    async def movie_attendance(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member = discord.Option(
            discord.Member, description="Member to look up", required=False, default=None
        ),
    ):
        """Show live attendance, or one member's movie history."""
        await ctx.defer(ephemeral=True)
        guild_id = ctx.guild.id

        try:
            if user is not None:
                count = await self.engine.get_user_qualified_movie_count(guild_id, user.id)
                history = await self.engine.get_user_history(guild_id, user.id)
            else:
                count, history = 0, []
        except AttendanceStorageError:
            await ctx.followup.send(STORAGE_ERROR_MESSAGE, ephemeral=True)
            return

        if user is not None:
            lines = [f"🎟️ {user.mention} qualified for **{count}** movie(s)."]
            session = self.engine.get_current_session(guild_id, user.id)
            if session is not None:
                state = "in the channel" if session.is_open else "not in the channel"
                lines.append(
                    f"Tonight: {_format_minutes(session.accumulated_minutes)} so far ({state})."
                )
            for event_date, duration, longest, qualified, adjustment in history:
                mark = "✅" if qualified else "❌"
                note = f" ({adjustment})" if adjustment and adjustment != "automatic" else ""
                lines.append(
                    f"{mark} {event_date}: {_format_minutes(duration)}, longest {_format_minutes(longest)}{note}"
                )
            await ctx.followup.send("\n".join(lines), ephemeral=True)
            return

        event = self.engine.get_active_event(guild_id)
        if event is None:
            await ctx.followup.send("❌ No movie night is running.", ephemeral=True)
            return

        sessions = self.engine.get_all_sessions(guild_id)
        lines = [f"🎬 Movie night of **{event.event_date}** in <#{event.channel_id}>"]
        ordered = sorted(sessions.items(), key=lambda item: item[1].accumulated_minutes, reverse=True)
        for user_id, session in ordered[:25]:
            marker = "🟢" if session.is_open else "⚪"
            lines.append(f"{marker} <@{user_id}>: {_format_minutes(session.accumulated_minutes)}")
        if not sessions:
            lines.append("Nobody has joined yet.")
        await ctx.followup.send("\n".join(lines), ephemeral=True)

    # #################################################################################### #
    #                            Manual Adjustment Commands
    # #################################################################################### #
    async def movie_add(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member = discord.Option(discord.Member, description="Member to credit"),
        minutes: int = discord.Option(int, description="Minutes to add", min_value=1, max_value=600),
        reason: str = discord.Option(str, description="Reason", required=False, default=None, max_length=200),
    ):
        """Add minutes to a member for the running movie night."""
        if not await self._ensure_ready(ctx):
            return
        await ctx.defer(ephemeral=True)

        try:
            added = await self.engine.add_manual_attendance(
                ctx.guild.id, user.id, minutes, ctx.author.id, reason
            )
        except ValueError as e:
            await ctx.followup.send(f"❌ {e}", ephemeral=True)
            return

        if not added:
            await ctx.followup.send("❌ No movie night is running.", ephemeral=True)
            return
        await ctx.followup.send(f"✅ Added {minutes} min to {user.mention}.", ephemeral=True)

    async def movie_credit(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member = discord.Option(discord.Member, description="Member to credit"),
        date: str = discord.Option(str, description="Event date (YYYY-MM-DD)"),
        minutes: int = discord.Option(int, description="Minutes to credit", min_value=1, max_value=600),
        reason: str = discord.Option(str, description="Reason", required=False, default=None, max_length=200),
    ):
        """Credit minutes to a member for a past movie night."""
        await ctx.defer(ephemeral=True)
        try:
            record = await self.engine.credit_historical_attendance(
                ctx.guild.id, user.id, date, minutes, ctx.author.id, reason
            )
        except ValueError as e:
            await ctx.followup.send(f"❌ {e}", ephemeral=True)
            return
        except AttendanceStorageError:
            await ctx.followup.send(STORAGE_ERROR_MESSAGE, ephemeral=True)
            return

        status = "qualified ✅" if record["qualified"] else "not qualified ❌"
        message = (
            f"✅ Credited {minutes} min to {user.mention} for {record['event_date']}: "
            f"{_format_minutes(record['duration_minutes'])} total, {status}."
        )
        if record["qualified"]:
            tier_result = await self.engine.update_tier_role(ctx.guild, user.id)
            if tier_result["target_tier"] is not None:
                message += f"\nTier: **{tier_result['target_tier'].tier_name}**"
        await ctx.followup.send(message, ephemeral=True)

    async def movie_bump(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member = discord.Option(discord.Member, description="Member to qualify"),
        date: str = discord.Option(
            str, description="Event date (YYYY-MM-DD), today by default", required=False, default=None
        ),
        reason: str = discord.Option(str, description="Reason", required=False, default=None, max_length=200),
    ):
        """Mark a member as qualified for a movie night."""
        await ctx.defer(ephemeral=True)
        try:
            result = await self.engine.bump_attendance(
                ctx.guild.id, user.id, date or self.engine.today(), ctx.author.id, reason
            )
        except ValueError as e:
            await ctx.followup.send(f"❌ {e}", ephemeral=True)
            return
        except AttendanceStorageError:
            await ctx.followup.send(STORAGE_ERROR_MESSAGE, ephemeral=True)
            return

        if result.previously_qualified:
            await ctx.followup.send(f"ℹ️ {user.mention} was already qualified.", ephemeral=True)
            return

        tier_result = await self.engine.update_tier_role(ctx.guild, user.id)
        message = f"✅ {user.mention} is now qualified ({tier_result['qualified_count']} movie(s))."
        if tier_result["target_tier"] is not None:
            message += f"\nTier: **{tier_result['target_tier'].tier_name}** ({tier_result['dm_status']})"
        await ctx.followup.send(message, ephemeral=True)

    async def movie_resume(self, ctx: discord.ApplicationContext):
        """Show the live state recovered after a restart."""
        status = self.engine.get_recovery_status(ctx.guild.id)
        if not status["has_active_event"]:
            await ctx.respond("ℹ️ No movie night is running in this server.", ephemeral=True)
            return

        lines = [
            f"🎬 Movie night of **{status['event_date']}** in <#{status['channel_id']}>",
            f"Sessions: **{status['session_count']}** ({status['open_session_count']} in the channel)",
            f"Minutes tracked: **{status['total_minutes']}**",
        ]
        if status["recovered_at"]:
            lines.append(f"Recovered after restart: <t:{status['recovered_at'] // 1000}:R>")
        await ctx.respond("\n".join(lines), ephemeral=True)

    # #################################################################################### #
    #                            Configuration Commands
    # #################################################################################### #
    async def movie_config(
        self,
        ctx: discord.ApplicationContext,
        mode: str = discord.Option(
            str,
            description="Qualification mode",
            required=False,
            default=None,
            choices=[
                discord.OptionChoice(name="Cumulative (total time)", value="cumulative"),
                discord.OptionChoice(name="Continuous (longest session)", value="continuous"),
            ],
        ),
        threshold: int = discord.Option(
            int, description="Minutes required to qualify", required=False, default=None,
            min_value=1, max_value=600,
        ),
    ):
        """Show or change the qualification policy of the server."""
        await ctx.defer(ephemeral=True)
        try:
            if mode is None and threshold is None:
                settings = await self.engine.get_qualification_settings(ctx.guild.id)
                tiers = await self.engine.get_tiers(ctx.guild.id)
            else:
                settings = await self.engine.set_qualification_settings(ctx.guild.id, mode, threshold)
                tiers = None
        except ValueError as e:
            await ctx.followup.send(f"❌ {e}", ephemeral=True)
            return
        except AttendanceStorageError:
            await ctx.followup.send(STORAGE_ERROR_MESSAGE, ephemeral=True)
            return

        lines = [f"⚙️ Mode: **{settings.mode.value}** | Threshold: **{settings.threshold_minutes} min**"]
        if tiers:
            lines.append("Tiers:")
            lines.extend(f"• <@&{t.role_id}> {t.tier_name}: {t.threshold} movie(s)" for t in tiers)
        elif tiers is not None:
            lines.append("No tiers configured.")
        if self.engine.is_panic_mode(ctx.guild.id):
            lines.append("🚨 Panic mode is ON, tier roles are frozen.")
        await ctx.followup.send("\n".join(lines), ephemeral=True)

    async def movie_tier_add(
        self,
        ctx: discord.ApplicationContext,
        role: discord.Role = discord.Option(discord.Role, description="Reward role"),
        threshold: int = discord.Option(int, description="Qualified movies required", min_value=1),
        name: str = discord.Option(str, description="Tier name", required=False, default=None, max_length=100),
    ):
        """Add or update a reward tier."""
        await ctx.defer(ephemeral=True)
        try:
            tier = await self.engine.add_tier(ctx.guild.id, role.id, threshold, name or role.name)
        except ValueError as e:
            await ctx.followup.send(f"❌ {e}", ephemeral=True)
            return
        except AttendanceStorageError:
            await ctx.followup.send(STORAGE_ERROR_MESSAGE, ephemeral=True)
            return

        message = f"✅ Tier **{tier.tier_name}** ({role.mention}) at {tier.threshold} movie(s)."
        can_manage, reason = self.engine.tier_assigner.role_manager.can_manage_role(ctx.guild, role)
        if not can_manage:
            message += f"\n⚠️ I cannot assign this role yet ({reason})."
        await ctx.followup.send(message, ephemeral=True)

    async def movie_tier_remove(
        self,
        ctx: discord.ApplicationContext,
        role: discord.Role = discord.Option(discord.Role, description="Reward role to remove"),
    ):
        """Remove a reward tier."""
        await ctx.defer(ephemeral=True)
        try:
            removed = await self.engine.remove_tier(ctx.guild.id, role.id)
        except AttendanceStorageError:
            await ctx.followup.send(STORAGE_ERROR_MESSAGE, ephemeral=True)
            return

        if removed:
            await ctx.followup.send(f"🗑️ {role.mention} is no longer a movie tier.", ephemeral=True)
        else:
            await ctx.followup.send(f"❌ {role.mention} is not a movie tier.", ephemeral=True)

    async def movie_panic(
        self,
        ctx: discord.ApplicationContext,
        action: str = discord.Option(
            str,
            description="Enable, disable or inspect the freeze",
            choices=["on", "off", "status"],
            default="status",
        ),
    ):
        """Freeze or unfreeze automatic tier role changes."""
        guild_id = ctx.guild.id
        if action == "status":
            details = self.engine.get_panic_details(guild_id)
            if details["enabled"]:
                message = f"🚨 Panic mode is ON (enabled by <@{details['enabled_by']}>)."
            else:
                message = "✅ Panic mode is OFF."
            await ctx.respond(message, ephemeral=True)
            return

        await ctx.defer(ephemeral=True)
        try:
            details = await self.engine.set_panic_mode(
                guild_id, action == "on", ctx.author.id
            )
        except AttendanceStorageError:
            await ctx.followup.send(STORAGE_ERROR_MESSAGE, ephemeral=True)
            return

        if details["enabled"]:
            await ctx.followup.send("🚨 Panic mode enabled, tier roles are frozen.", ephemeral=True)
        else:
            await ctx.followup.send("✅ Panic mode disabled, tier roles resume.", ephemeral=True)

def setup(bot: discord.Bot):
    """
    Setup function to add the MovieNight cog to the bot.

    Args:
        bot: Discord bot instance
    """
    bot.add_cog(MovieNight(bot))
