"""
Discord Bot Main Module - Movie night attendance bot.

This module wires the Discord client to the attendance engine:

ARCHITECTURE:
- Async/await throughout with a native asyncmy connection pool
- Event-driven architecture with robust error handling
- Modular cog system registering commands on shared slash command groups
- Centralized configuration management with validation
- Structured JSON logging

LIFECYCLE:
- Database pool and schema bootstrap on first ready
- Panic flags loaded and live sessions recovered before voice events count
- Periodic session snapshots as a registered background task
- Graceful shutdown flushing a final snapshot before the pool closes

RELIABILITY:
- Circuit breakers and retries for Discord API role and DM calls
- Network-aware startup retry loop with exponential backoff and jitter
- Resource monitoring (CPU, memory) with thresholds when psutil is present
"""
from __future__ import annotations

import asyncio
import os
import random
import signal
import sys
import time
import uuid
from typing import Final

import aiohttp
import discord

from . import config
from .attendance import build_attendance_engine
from .core.logger import ComponentLogger, correlation_id_context, setup_logging
from .core.reliability import setup_reliability_system
from .db import DBQueryError, close_db_pool, initialize_db_pool
from .schema import ensure_schema

if config.LOG_FILE:
    setup_logging(config.LOG_FILE, debug=bool(config.DEBUG))

_bot_logger = ComponentLogger("bot")

try:
    import psutil
    PSUTIL_AVAILABLE = True
except ImportError:
    psutil = None
    PSUTIL_AVAILABLE = False
    _bot_logger.warning("psutil_not_available", message="Resource monitoring disabled")

# #################################################################################### #
#                               Logging Configuration
# #################################################################################### #
def _global_exception_hook(exc_type, exc_value, exc_tb):
    """
    Global exception handler for uncaught exceptions.

    Args:
        exc_type: Exception type
        exc_value: Exception value
        exc_tb: Exception traceback
    """
    if config.DEBUG and not config.PRODUCTION:
        _bot_logger.critical("uncaught_exception", exc_info=(exc_type, exc_value, exc_tb))
    else:
        _bot_logger.critical("uncaught_exception", error_type=exc_type.__name__, error_msg=str(exc_value))

sys.excepthook = _global_exception_hook

import logging
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
logging.captureWarnings(True)

# #################################################################################### #
#                            Discord Bot Startup
# #################################################################################### #
loop = asyncio.new_event_loop()
asyncio.set_event_loop(loop)

def handle_async_exception(loop, context):
    """
    Handle uncaught exceptions in async tasks.

    Args:
        loop: Event loop where exception occurred
        context: Exception context with details
    """
    exception = context.get("exception")
    if exception:
        _bot_logger.error("uncaught_async_exception", exception=str(exception), exc_info=exception)
    else:
        _bot_logger.error("uncaught_async_exception", message=context["message"])

loop.set_exception_handler(handle_async_exception)

# #################################################################################### #
#                            Discord Bot Initialization
# #################################################################################### #
intents = discord.Intents.default()
intents.guilds = True
intents.members = True
intents.voice_states = True

def validate_token() -> str:
    """
    Validate Discord bot token format.

    Returns:
        Validated Discord token

    Raises:
        SystemExit: If token is invalid or missing
    """
    token = config.TOKEN
    if not token:
        _bot_logger.critical("missing_discord_token")
        raise SystemExit(1)

    if token.strip() != token:
        _bot_logger.critical("invalid_token_format", reason="contains_whitespace")
        raise SystemExit(1)

    if token.count(".") < 2:
        _bot_logger.critical("invalid_token_format", reason="missing_structure", dots_count=token.count("."))
        raise SystemExit(1)

    if config.DEBUG and not config.PRODUCTION:
        _bot_logger.debug("token_validated", masked_token=f"{token[:10]}...{token[-4:]}")
    return token

bot = discord.Bot(intents=intents)
bot.reliability_system = setup_reliability_system(bot)
bot.attendance_engine = build_attendance_engine(bot)
bot._start_time_monotonic = time.monotonic()

def register_background_task(task: asyncio.Task, task_name: str = "unknown") -> None:
    """
    Central API to register background tasks for proper cleanup.

    Args:
        task: AsyncIO task to register
        task_name: Human-readable task name for logging
    """
    if not hasattr(bot, "_background_tasks"):
        bot._background_tasks = []

    task._task_name = task_name
    bot._background_tasks.append(task)
    _bot_logger.debug("background_task_registered", task_name=task_name)

bot.register_background_task = register_background_task

# #################################################################################### #
#                           Command Groups Creation
# #################################################################################### #
def create_command_groups(bot: discord.Bot) -> None:
    """
    Create the slash command groups and inject them into bot instance.
    Must be called BEFORE loading cogs to ensure groups are available.

    Args:
        bot: Discord bot instance
    """
    bot.movie_group = discord.SlashCommandGroup(
        name="movie",
        description="Movie night attendance and rewards",
        default_member_permissions=discord.Permissions(manage_events=True),
    )
    bot.add_application_command(bot.movie_group)
    _bot_logger.debug("command_group_registered", group_name="movie")

def setup_group_error_handler(bot: discord.Bot) -> None:
    async def group_error_handler(ctx: discord.ApplicationContext, error: Exception):
        """
        Centralized error handler for the slash command groups.

        Args:
            ctx: Discord application context
            error: Exception that occurred during command execution
        """
        command_name = ctx.command.name if getattr(ctx, "command", None) else "unknown"
        original = getattr(error, "original", error)

        if config.DEBUG and not config.PRODUCTION:
            _bot_logger.error("command_error_debug",
                command_name=command_name,
                guild_id=ctx.guild.id if ctx.guild else "DM",
                error_type=type(original).__name__,
                error=str(original),
                exc_info=original,
            )
        else:
            _bot_logger.error("command_error",
                command_name=command_name,
                error_type=type(original).__name__,
                error=str(original),
            )

        if isinstance(original, discord.Forbidden):
            error_message = "❌ Missing permissions to execute this command"
        elif isinstance(original, discord.NotFound):
            error_message = "❌ Required resource not found (channel, role, or member)"
        elif isinstance(original, discord.HTTPException):
            error_message = "❌ Discord API error occurred. Please try again"
        else:
            error_message = f"❌ Unexpected error in /movie {command_name}"

        try:
            if ctx.response.is_done():
                await ctx.followup.send(error_message, ephemeral=True)
            else:
                await ctx.respond(error_message, ephemeral=True)
        except discord.HTTPException as send_error:
            _bot_logger.error("error_message_send_failed", error=str(send_error))

    bot.movie_group.error(group_error_handler)

create_command_groups(bot)
setup_group_error_handler(bot)

EXTENSIONS: Final[tuple[str, ...]] = (
    "app.cogs.movie_night",
)

def load_extensions():
    """
    Load all Discord bot extensions (cogs) with error handling.

    Raises:
        SystemExit: If an extension fails to load
    """
    if getattr(bot, "_extensions_loaded", False):
        _bot_logger.debug("extensions_already_loaded")
        return

    for ext in EXTENSIONS:
        try:
            bot.load_extension(ext)
            _bot_logger.debug("extension_loaded", extension=ext)
        except discord.ExtensionError:
            _bot_logger.critical("extension_load_failed", extension=ext, exc_info=True)
            raise SystemExit(1)

    bot._extensions_loaded = True

# #################################################################################### #
#                            Extra Event Hooks
# #################################################################################### #
@bot.event
async def on_disconnect() -> None:
    """Handle Discord gateway disconnection event."""
    _bot_logger.warning("gateway_disconnected")

@bot.event
async def on_resumed() -> None:
    """Handle Discord gateway session resume event."""
    _bot_logger.info("gateway_resumed")

@bot.before_invoke
async def set_correlation_id(ctx):
    correlation_id_context.set(uuid.uuid4().hex)

@bot.after_invoke
async def clear_context(ctx):
    correlation_id_context.set(None)

@bot.event
async def on_guild_remove(guild: discord.Guild) -> None:
    """Drop the live state of a guild the bot was removed from."""
    engine = bot.attendance_engine
    engine.panic_store.clear_guild(guild.id)
    if await engine.cancel_event(guild.id):
        _bot_logger.info("movie_event_dropped_on_guild_remove", guild_id=guild.id)

@bot.event
async def on_ready() -> None:
    """
    Handle bot ready event: database, recovery and background tasks.
    """
    _bot_logger.info("bot_connected", username=str(bot.user), user_id=bot.user.id)

    if not hasattr(bot, "_db_pool_initialized"):
        bot._db_pool_initialized = True
        if not await initialize_db_pool():
            _bot_logger.critical("database_pool_init_failed", message="Failed to initialize database pool - shutting down")
            await bot.close()
            raise SystemExit(1)
        _bot_logger.info("database_pool_initialized")

        try:
            await ensure_schema()
        except DBQueryError as e:
            _bot_logger.critical("schema_bootstrap_failed", error=str(e))
            await bot.close()
            raise SystemExit(1)

    if not hasattr(bot, "_background_tasks"):
        bot._background_tasks = []

    engine = bot.attendance_engine
    if not engine.ready.is_set():
        try:
            await engine.panic_store.load()
        except DBQueryError as e:
            _bot_logger.error("panic_state_load_failed", error=str(e))

        result = await engine.recover_persisted_sessions()
        _bot_logger.info("attendance_recovery_completed",
            events=result.events,
            sessions=result.sessions,
            skipped=result.skipped,
        )

    if not engine.persistence.is_running:
        task = engine.start_session_persistence()
        bot.register_background_task(task, "movie_session_persistence")

    if PSUTIL_AVAILABLE and not hasattr(bot, "_monitor_task"):
        bot._monitor_task = asyncio.create_task(
            monitor_resources(), name="resource_monitoring"
        )
        bot.register_background_task(bot._monitor_task, "resource_monitoring")

# #################################################################################### #
#                            Resource Monitoring
# #################################################################################### #
async def monitor_resources():
    """
    Monitor system resources (CPU, memory) and log warnings for high usage.
    """
    try:
        process = psutil.Process()
        process.cpu_percent()
        await asyncio.sleep(1)

        while True:
            try:
                memory_mb = process.memory_info().rss / 1024 / 1024
                cpu_percent = process.cpu_percent()

                if memory_mb > config.MAX_MEMORY_MB:
                    _bot_logger.warning("high_memory_usage",
                        memory_mb=round(memory_mb, 1),
                        limit_mb=config.MAX_MEMORY_MB
                    )
                if cpu_percent > config.MAX_CPU_PERCENT:
                    _bot_logger.warning("high_cpu_usage",
                        cpu_percent=round(cpu_percent, 1),
                        limit_percent=config.MAX_CPU_PERCENT
                    )
            except psutil.Error as e:
                _bot_logger.error("resource_monitoring_error", error=str(e))
            await asyncio.sleep(300)
    except asyncio.CancelledError:
        _bot_logger.debug("resource_monitoring_cancelled")
        raise

# #################################################################################### #
#                            Resilient runner
# #################################################################################### #
async def run_bot():
    """
    Main bot runner with retry logic for resilient startup.
    """
    load_extensions()
    max_retries = config.MAX_RECONNECT_ATTEMPTS
    retry_count = 0

    try:
        while retry_count < max_retries:
            try:
                await bot.start(validate_token())
            except asyncio.CancelledError:
                _bot_logger.info("bot_startup_cancelled")
                break
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError):
                retry_count += 1
                base_wait_time = min(300, 15 * (2 ** (retry_count - 1)))
                wait_time = base_wait_time + random.uniform(0.1, 0.5) * base_wait_time
                _bot_logger.error("network_error_retry",
                    attempt=retry_count,
                    max_retries=max_retries,
                    wait_time_seconds=round(wait_time, 1),
                    exc_info=True
                )
                if retry_count >= max_retries:
                    _bot_logger.critical("max_retries_reached")
                    break
                await bot.close()
                await asyncio.sleep(wait_time)
            except discord.LoginFailure as e:
                _bot_logger.critical("login_failed", error=str(e))
                break
            else:
                break
    finally:
        _bot_logger.info("shutdown_cleanup_started")
        await cleanup_background_tasks()

async def cleanup_background_tasks():
    """
    Flush live sessions, cancel background tasks and close the database pool.
    """
    shutdown_timeout = config.SHUTDOWN_TIMEOUT_SECONDS or 10

    try:
        await asyncio.wait_for(
            bot.attendance_engine.stop_session_persistence(final_flush=True),
            timeout=shutdown_timeout,
        )
    except asyncio.TimeoutError:
        _bot_logger.warning("final_snapshot_timeout", timeout_seconds=shutdown_timeout)

    background_tasks = getattr(bot, "_background_tasks", [])
    if background_tasks:
        _bot_logger.debug("background_tasks_cancelling", task_count=len(background_tasks))
        for task in background_tasks:
            if not task.done():
                task.cancel()
        try:
            await asyncio.wait_for(
                asyncio.gather(*background_tasks, return_exceptions=True),
                timeout=shutdown_timeout,
            )
        except asyncio.TimeoutError:
            _bot_logger.warning("background_tasks_cleanup_timeout",
                timeout_seconds=shutdown_timeout,
                message="Forcing shutdown"
            )
        background_tasks.clear()

    if getattr(bot, "_db_pool_initialized", False):
        await close_db_pool()
        bot._db_pool_initialized = False
        _bot_logger.debug("database_pool_closed")

def _graceful_exit(sig_name):
    """
    Handle graceful shutdown on system signals.

    Args:
        sig_name: Signal name that triggered shutdown
    """
    _bot_logger.warning("signal_received", signal=sig_name, action="initiating_graceful_shutdown")

    async def shutdown():
        await cleanup_background_tasks()
        if not bot.is_closed():
            await bot.close()
        _bot_logger.info("graceful_shutdown_completed")

    try:
        running_loop = asyncio.get_running_loop()
        running_loop.create_task(shutdown())
    except RuntimeError:
        try:
            asyncio.run(shutdown())
        except Exception as e:
            _bot_logger.critical("graceful_shutdown_failed", error=str(e))
            os._exit(1)

def install_signal_handlers() -> None:
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _graceful_exit, sig.name)
        except (NotImplementedError, AttributeError):
            signal.signal(
                sig, lambda signum, frame: _graceful_exit(signal.Signals(signum).name)
            )
