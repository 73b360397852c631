"""
Schema bootstrap for the movie night tables.

Every statement is idempotent so ``ensure_schema`` runs on each startup before
session recovery reads the snapshot tables.
"""

from typing import Awaitable, Callable, Optional

from .core.logger import ComponentLogger

_logger = ComponentLogger("schema")

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS active_movie_events (
        guild_id BIGINT UNSIGNED NOT NULL PRIMARY KEY,
        channel_id BIGINT UNSIGNED NOT NULL,
        event_date CHAR(10) NOT NULL,
        started_at BIGINT NOT NULL
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS active_movie_sessions (
        guild_id BIGINT UNSIGNED NOT NULL,
        user_id BIGINT UNSIGNED NOT NULL,
        event_date CHAR(10) NOT NULL,
        current_session_start BIGINT NULL,
        accumulated_minutes INT NOT NULL DEFAULT 0,
        longest_session_minutes INT NOT NULL DEFAULT 0,
        last_persisted_at BIGINT NOT NULL,
        PRIMARY KEY (guild_id, user_id, event_date),
        KEY idx_active_sessions_guild (guild_id)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS movie_attendance (
        guild_id BIGINT UNSIGNED NOT NULL,
        user_id BIGINT UNSIGNED NOT NULL,
        event_date CHAR(10) NOT NULL,
        voice_channel_id BIGINT UNSIGNED NULL,
        duration_minutes INT NOT NULL DEFAULT 0,
        longest_session_minutes INT NOT NULL DEFAULT 0,
        qualified TINYINT(1) NOT NULL DEFAULT 0,
        adjustment_type VARCHAR(16) NOT NULL DEFAULT 'automatic',
        adjusted_by BIGINT UNSIGNED NULL,
        adjustment_reason VARCHAR(255) NULL,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (guild_id, user_id, event_date),
        KEY idx_movie_attendance_qualified (guild_id, user_id, qualified)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS guild_movie_config (
        guild_id BIGINT UNSIGNED NOT NULL PRIMARY KEY,
        attendance_mode VARCHAR(16) NOT NULL DEFAULT 'cumulative',
        qualification_threshold_minutes INT NOT NULL DEFAULT 30,
        panic_mode TINYINT(1) NOT NULL DEFAULT 0,
        panic_enabled_at BIGINT NULL,
        panic_enabled_by BIGINT UNSIGNED NULL
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS movie_role_tiers (
        guild_id BIGINT UNSIGNED NOT NULL,
        role_id BIGINT UNSIGNED NOT NULL,
        tier_name VARCHAR(100) NOT NULL,
        threshold INT NOT NULL,
        PRIMARY KEY (guild_id, role_id)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS role_assignments (
        id BIGINT UNSIGNED NOT NULL AUTO_INCREMENT PRIMARY KEY,
        guild_id BIGINT UNSIGNED NOT NULL,
        user_id BIGINT UNSIGNED NOT NULL,
        role_id BIGINT UNSIGNED NOT NULL,
        action VARCHAR(8) NOT NULL,
        reason VARCHAR(255) NULL,
        triggered_by VARCHAR(32) NOT NULL,
        details VARCHAR(255) NULL,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        KEY idx_role_assignments_user (guild_id, user_id)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
)

async def ensure_schema(run_query: Optional[Callable[..., Awaitable]] = None) -> int:
    """
    Create all movie night tables that do not exist yet.

    Args:
        run_query: Query coroutine, defaults to ``app.db.run_db_query``

    Returns:
        Number of statements executed

    Raises:
        DBQueryError: If a statement fails
    """
    if run_query is None:
        from .db import run_db_query
        run_query = run_db_query

    for statement in SCHEMA_STATEMENTS:
        await run_query(statement, commit=True)

    _logger.info("schema_ensured", table_count=len(SCHEMA_STATEMENTS))
    return len(SCHEMA_STATEMENTS)
