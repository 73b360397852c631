"""
Configuration Module - Environment variable management for the movie night bot.

Provides centralized configuration loading with:
- JSON structured logging of every fallback and clamp decision
- Validation with optional auto-clamping into recommended ranges
- Secrets kept out of the module namespace
- Test-friendly loading (skipped under pytest)
"""

import os
import sys
import re
import tempfile
from typing import Optional, Any, Mapping
from types import MappingProxyType

import pytz
from dotenv import load_dotenv

from .core.logger import ComponentLogger

_logger = ComponentLogger("config")

class ConfigError(Exception):
    """Custom exception for configuration-related errors."""
    pass

env_path = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(env_path)

ATTENDANCE_MODES = ("cumulative", "continuous")

# #################################################################################### #
#                            Validation Ranges and Logging
# #################################################################################### #
def parse_bool(value: str, default: bool = False) -> bool:
    """Parse boolean value from string with consistent normalization.

    Args:
        value: String value to parse
        default: Default value if empty or None

    Returns:
        Parsed boolean value
    """
    if not value:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on", "y")

VALIDATION_RANGES = {
    "MAX_MEMORY_MB": (50, 2048),
    "MAX_CPU_PERCENT": (10, 95),
    "MAX_RECONNECT_ATTEMPTS": (1, 10),
    "DB_POOL_SIZE": (1, 50),
    "DB_TIMEOUT": (5, 30),
    "DB_CIRCUIT_BREAKER_THRESHOLD": (3, 20),
    "DB_PORT": (1, 65535),
    "SNAPSHOT_INTERVAL_SECONDS": (30, 3600),
    "DEFAULT_QUALIFICATION_THRESHOLD_MINUTES": (1, 600),
    "SHUTDOWN_TIMEOUT_SECONDS": (1, 120),
}

def validate_env_var(var_name: str, value: Optional[str], required: bool = True) -> str:
    """
    Validate and return environment variable value.

    Raises:
        ConfigError: If required variable is missing
    """
    if not value:
        if required:
            raise ConfigError(f"Missing required environment variable: {var_name}")
        return ""
    return value

def validate_int_env_var(
    var_name: str,
    value: Optional[str],
    default: Optional[int] = None,
    auto_clamp: bool = False,
) -> int:
    """
    Validate and return integer environment variable value.

    Args:
        var_name: Name of the environment variable
        value: Raw value from environment (can be None)
        default: Default value if not provided
        auto_clamp: Whether to automatically clamp values to valid ranges

    Returns:
        Validated integer value

    Raises:
        ConfigError: If value is invalid or missing without default
    """
    if not value:
        if default is None:
            raise ConfigError(
                f"Missing required integer environment variable: {var_name}"
            )
        return default
    try:
        parsed_value = int(value)
    except ValueError:
        raise ConfigError(f"Invalid integer value for {var_name}: {value}")

    if auto_clamp and var_name in VALIDATION_RANGES:
        min_val, max_val = VALIDATION_RANGES[var_name]
        if parsed_value < min_val:
            _logger.warning("config_value_clamped",
                variable=var_name,
                original=parsed_value,
                clamped=min_val,
                reason="below_minimum",
            )
            return min_val
        elif parsed_value > max_val:
            _logger.warning("config_value_clamped",
                variable=var_name,
                original=parsed_value,
                clamped=max_val,
                reason="above_maximum",
            )
            return max_val

    return parsed_value

def validate_ranges(var_name: str, value: int) -> None:
    """Validate value against defined ranges and log warnings."""
    if var_name in VALIDATION_RANGES:
        min_val, max_val = VALIDATION_RANGES[var_name]
        if not (min_val <= value <= max_val):
            _logger.warning("config_value_out_of_range",
                variable=var_name,
                value=value,
                min_recommended=min_val,
                max_recommended=max_val,
            )

def validate_attendance_mode(value: Optional[str]) -> str:
    """
    Validate the default attendance mode.

    Raises:
        ConfigError: If the mode is neither cumulative nor continuous
    """
    mode = (value or "cumulative").strip().lower()
    if mode not in ATTENDANCE_MODES:
        raise ConfigError(
            f"Invalid DEFAULT_ATTENDANCE_MODE: {value} (expected one of {', '.join(ATTENDANCE_MODES)})"
        )
    return mode

def validate_timezone(value: Optional[str]) -> str:
    """
    Validate the event time zone name against the pytz database.

    Raises:
        ConfigError: If the zone is unknown
    """
    tz_name = (value or "UTC").strip()
    try:
        pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        raise ConfigError(f"Unknown EVENT_TIMEZONE: {tz_name}")
    return tz_name

def _int_setting(config: dict, name: str, default: int, auto_clamp: bool) -> None:
    config[name] = validate_int_env_var(
        name, os.getenv(name), default=default, auto_clamp=auto_clamp
    )
    validate_ranges(name, config[name])

# #################################################################################### #
#                            Configuration Loading Function
# #################################################################################### #
def load_config() -> Mapping[str, Any]:
    """
    Load and validate all configuration from environment variables.

    Returns:
        Read-only mapping containing all validated configuration values

    Raises:
        ConfigError: If critical configuration is invalid or missing
    """
    config = {}
    auto_clamp = parse_bool(os.getenv("CONFIG_AUTO_CLAMP", "False"))

    try:
        # #################################################################################### #
        #                            Debug and Logging Configuration
        # #################################################################################### #
        config["DEBUG"] = parse_bool(os.getenv("DEBUG", "False"))
        config["PRODUCTION"] = parse_bool(os.getenv("PRODUCTION", "False"))

        LOG_DIR = os.getenv("LOG_DIR", "logs")
        log_fallback = False
        try:
            if not os.path.exists(LOG_DIR):
                os.makedirs(LOG_DIR, mode=0o750)
            config["LOG_FILE"] = os.path.join(LOG_DIR, "movienight-bot.log")
            with open(config["LOG_FILE"], "a"):
                pass
        except (OSError, IOError) as e:
            _logger.warning("log_dir_fallback", original_dir=LOG_DIR, error=str(e))
            try:
                fallback_log = os.path.join(tempfile.gettempdir(), "movienight-bot.log")
                with open(fallback_log, "a"):
                    pass
                config["LOG_FILE"] = fallback_log
                log_fallback = True
                _logger.info("log_file_fallback_success", fallback_path=fallback_log)
            except (OSError, IOError) as fallback_error:
                raise ConfigError(
                    f"Cannot create log file in any location: {fallback_error}"
                )

        # #################################################################################### #
        #                            Discord Bot Configuration
        # #################################################################################### #
        bot_token = os.getenv("BOT_TOKEN")
        discord_token = os.getenv("DISCORD_TOKEN")

        if bot_token and discord_token:
            _logger.warning("multiple_token_sources",
                message="Both BOT_TOKEN and DISCORD_TOKEN are defined. Using BOT_TOKEN.",
            )
            config["TOKEN"] = bot_token
        elif bot_token:
            config["TOKEN"] = bot_token
            _logger.info("token_source_detected", source="BOT_TOKEN")
        elif discord_token:
            config["TOKEN"] = discord_token
            _logger.info("token_source_detected", source="DISCORD_TOKEN")
        else:
            raise ConfigError(
                "Missing required environment variable: BOT_TOKEN or DISCORD_TOKEN"
            )

        if len(config["TOKEN"]) < 50:
            raise ConfigError("Invalid Discord token format - token too short")

        audit_channel = os.getenv("AUDIT_LOG_CHANNEL_ID")
        config["AUDIT_LOG_CHANNEL_ID"] = (
            validate_int_env_var("AUDIT_LOG_CHANNEL_ID", audit_channel)
            if audit_channel
            else None
        )

        # #################################################################################### #
        #                            Database Configuration
        # #################################################################################### #
        config["DB_USER"] = validate_env_var("DB_USER", os.getenv("DB_USER"))
        db_password = validate_env_var(
            "DB_PASSWORD", os.getenv("DB_PASSWORD") or os.getenv("DB_PASS")
        )

        db_host = os.getenv("DB_HOST", "localhost")
        if not os.getenv("DB_HOST"):
            _logger.info("db_host_fallback",
                fallback_value="localhost",
                reason="env_var_not_set",
            )
        config["DB_HOST"] = db_host

        _int_setting(config, "DB_PORT", 3306, auto_clamp)

        config["DB_NAME"] = validate_env_var("DB_NAME", os.getenv("DB_NAME"))
        if len(config["DB_NAME"]) > 64:
            raise ConfigError(
                f"DB_NAME too long: {len(config['DB_NAME'])} characters (max 64)"
            )
        if not re.match(r"^[A-Za-z0-9_]+$", config["DB_NAME"]):
            raise ConfigError(
                f"DB_NAME contains invalid characters. Only alphanumeric and underscore allowed: {config['DB_NAME']}"
            )

        _int_setting(config, "DB_POOL_SIZE", 10, auto_clamp)
        _int_setting(config, "DB_TIMEOUT", 15, auto_clamp)
        _int_setting(config, "DB_CIRCUIT_BREAKER_THRESHOLD", 5, auto_clamp)

        # #################################################################################### #
        #                            Performance and Resource Limits
        # #################################################################################### #
        _int_setting(config, "MAX_MEMORY_MB", 1024, auto_clamp)
        _int_setting(config, "MAX_CPU_PERCENT", 90, auto_clamp)
        _int_setting(config, "MAX_RECONNECT_ATTEMPTS", 5, auto_clamp)
        _int_setting(config, "SHUTDOWN_TIMEOUT_SECONDS", 10, auto_clamp)

        # #################################################################################### #
        #                            Attendance Tracking
        # #################################################################################### #
        _int_setting(config, "SNAPSHOT_INTERVAL_SECONDS", 300, auto_clamp)
        _int_setting(config, "DEFAULT_QUALIFICATION_THRESHOLD_MINUTES", 30, auto_clamp)
        if config["DEFAULT_QUALIFICATION_THRESHOLD_MINUTES"] <= 0:
            raise ConfigError("DEFAULT_QUALIFICATION_THRESHOLD_MINUTES must be positive")

        config["DEFAULT_ATTENDANCE_MODE"] = validate_attendance_mode(
            os.getenv("DEFAULT_ATTENDANCE_MODE")
        )
        config["EVENT_TIMEZONE"] = validate_timezone(os.getenv("EVENT_TIMEZONE"))

        _logger.info("config_loaded_successfully",
            total_vars=len(config),
            auto_clamp_enabled=auto_clamp,
            log_fallback_used=log_fallback,
        )

        config["get_db_password"] = lambda: db_password

        return MappingProxyType(config)

    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"Unexpected error during configuration loading: {e}")

# #################################################################################### #
#                            Global Configuration (Optional Immediate Load)
# #################################################################################### #
_config_cache: Optional[Mapping[str, Any]] = None

def _assign_module_vars():
    """Assign values to module-level variables."""
    global TOKEN, DEBUG, PRODUCTION, LOG_FILE, DB_USER, DB_HOST, DB_PORT, DB_NAME
    global MAX_MEMORY_MB, MAX_CPU_PERCENT, MAX_RECONNECT_ATTEMPTS, SHUTDOWN_TIMEOUT_SECONDS
    global DB_POOL_SIZE, DB_TIMEOUT, DB_CIRCUIT_BREAKER_THRESHOLD
    global SNAPSHOT_INTERVAL_SECONDS, DEFAULT_QUALIFICATION_THRESHOLD_MINUTES
    global DEFAULT_ATTENDANCE_MODE, EVENT_TIMEZONE, AUDIT_LOG_CHANNEL_ID

    config = _get_config()
    TOKEN = config["TOKEN"]
    DEBUG = config["DEBUG"]
    PRODUCTION = config["PRODUCTION"]
    LOG_FILE = config["LOG_FILE"]
    DB_USER = config["DB_USER"]
    DB_HOST = config["DB_HOST"]
    DB_PORT = config["DB_PORT"]
    DB_NAME = config["DB_NAME"]
    MAX_MEMORY_MB = config["MAX_MEMORY_MB"]
    MAX_CPU_PERCENT = config["MAX_CPU_PERCENT"]
    MAX_RECONNECT_ATTEMPTS = config["MAX_RECONNECT_ATTEMPTS"]
    SHUTDOWN_TIMEOUT_SECONDS = config["SHUTDOWN_TIMEOUT_SECONDS"]
    DB_POOL_SIZE = config["DB_POOL_SIZE"]
    DB_TIMEOUT = config["DB_TIMEOUT"]
    DB_CIRCUIT_BREAKER_THRESHOLD = config["DB_CIRCUIT_BREAKER_THRESHOLD"]
    SNAPSHOT_INTERVAL_SECONDS = config["SNAPSHOT_INTERVAL_SECONDS"]
    DEFAULT_QUALIFICATION_THRESHOLD_MINUTES = config["DEFAULT_QUALIFICATION_THRESHOLD_MINUTES"]
    DEFAULT_ATTENDANCE_MODE = config["DEFAULT_ATTENDANCE_MODE"]
    EVENT_TIMEZONE = config["EVENT_TIMEZONE"]
    AUDIT_LOG_CHANNEL_ID = config["AUDIT_LOG_CHANNEL_ID"]

def _get_config() -> Mapping[str, Any]:
    """Get cached configuration, loading it if necessary."""
    global _config_cache
    if _config_cache is None:
        _config_cache = load_config()
    return _config_cache

def get_token() -> str:
    """Get Discord bot token."""
    return _get_config()["TOKEN"]

def get_debug() -> bool:
    """Get debug mode setting."""
    return _get_config()["DEBUG"]

def get_production() -> bool:
    """Get production mode setting."""
    return _get_config()["PRODUCTION"]

def get_log_file() -> str:
    """Get log file path."""
    return _get_config()["LOG_FILE"]

def get_db_user() -> str:
    """Get database user."""
    return _get_config()["DB_USER"]

def get_db_host() -> str:
    """Get database host."""
    return _get_config()["DB_HOST"]

def get_db_port() -> int:
    """Get database port."""
    return _get_config()["DB_PORT"]

def get_db_name() -> str:
    """Get database name."""
    return _get_config()["DB_NAME"]

def get_db_password() -> str:
    """Securely get database password without storing it globally."""
    return _get_config()["get_db_password"]()

def get_db_pool_size() -> int:
    """Get database connection pool size."""
    return _get_config()["DB_POOL_SIZE"]

def get_db_timeout() -> int:
    """Get database timeout in seconds."""
    return _get_config()["DB_TIMEOUT"]

def get_db_circuit_breaker_threshold() -> int:
    """Get database circuit breaker threshold."""
    return _get_config()["DB_CIRCUIT_BREAKER_THRESHOLD"]

def get_max_memory_mb() -> int:
    return _get_config()["MAX_MEMORY_MB"]

def get_max_cpu_percent() -> int:
    return _get_config()["MAX_CPU_PERCENT"]

def get_max_reconnect_attempts() -> int:
    return _get_config()["MAX_RECONNECT_ATTEMPTS"]

def get_shutdown_timeout_seconds() -> int:
    return _get_config()["SHUTDOWN_TIMEOUT_SECONDS"]

def get_snapshot_interval_seconds() -> int:
    """Get the interval between two session snapshots."""
    return _get_config()["SNAPSHOT_INTERVAL_SECONDS"]

def get_default_qualification_threshold() -> int:
    """Get the qualification threshold used for guilds without settings."""
    return _get_config()["DEFAULT_QUALIFICATION_THRESHOLD_MINUTES"]

def get_default_attendance_mode() -> str:
    """Get the attendance mode used for guilds without settings."""
    return _get_config()["DEFAULT_ATTENDANCE_MODE"]

def get_event_timezone() -> str:
    """Get the pytz zone name used to derive event dates."""
    return _get_config()["EVENT_TIMEZONE"]

def get_audit_log_channel_id() -> Optional[int]:
    """Get the audit log channel, None when audit embeds are disabled."""
    return _get_config()["AUDIT_LOG_CHANNEL_ID"]

TOKEN: str = None  # type: ignore
DEBUG: bool = None  # type: ignore
PRODUCTION: bool = None  # type: ignore
LOG_FILE: str = None  # type: ignore
DB_USER: str = None  # type: ignore
DB_HOST: str = None  # type: ignore
DB_PORT: int = None  # type: ignore
DB_NAME: str = None  # type: ignore
MAX_MEMORY_MB: int = None  # type: ignore
MAX_CPU_PERCENT: int = None  # type: ignore
MAX_RECONNECT_ATTEMPTS: int = None  # type: ignore
SHUTDOWN_TIMEOUT_SECONDS: int = None  # type: ignore
DB_POOL_SIZE: int = None  # type: ignore
DB_TIMEOUT: int = None  # type: ignore
DB_CIRCUIT_BREAKER_THRESHOLD: int = None  # type: ignore
SNAPSHOT_INTERVAL_SECONDS: int = None  # type: ignore
DEFAULT_QUALIFICATION_THRESHOLD_MINUTES: int = None  # type: ignore
DEFAULT_ATTENDANCE_MODE: str = None  # type: ignore
EVENT_TIMEZONE: str = None  # type: ignore
AUDIT_LOG_CHANNEL_ID: Optional[int] = None

# #################################################################################### #
#                            Immediate Validation (Optional)
# #################################################################################### #
config_immediate_load = parse_bool(
    os.getenv("CONFIG_IMMEDIATE_LOAD", "True"), default=True
)

if config_immediate_load and "pytest" not in sys.modules:
    try:
        _config_cache = load_config()
        _assign_module_vars()
        _logger.info("config_module_initialized", immediate_load=True)
    except ConfigError as e:
        _logger.critical("config_initialization_failed", error_msg=str(e))
        sys.exit(1)
else:
    _logger.debug("config_module_initialized",
        immediate_load=False,
        reason="test_context",
    )

# #################################################################################### #
#                            Public API Export
# #################################################################################### #
__all__ = [
    "load_config",
    "ConfigError",
    "parse_bool",
    "validate_int_env_var",
    "validate_attendance_mode",
    "validate_timezone",
    "get_token",
    "get_debug",
    "get_production",
    "get_log_file",
    "get_db_user",
    "get_db_host",
    "get_db_port",
    "get_db_name",
    "get_db_password",
    "get_db_pool_size",
    "get_db_timeout",
    "get_db_circuit_breaker_threshold",
    "get_max_memory_mb",
    "get_max_cpu_percent",
    "get_max_reconnect_attempts",
    "get_shutdown_timeout_seconds",
    "get_snapshot_interval_seconds",
    "get_default_qualification_threshold",
    "get_default_attendance_mode",
    "get_event_timezone",
    "get_audit_log_channel_id",
]
