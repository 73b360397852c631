"""
Database Module - Async MySQL/MariaDB connection management.

Provides async database operations for attendance storage with:
- Native async connection pooling via asyncmy
- Circuit breaker pattern for fault tolerance
- Slow query detection
- Automatic retry logic with backoff on timeouts and pool exhaustion
- Transaction support with rollback on errors
- Query logging that never exposes parameter values

API Overview:
- run_db_query(): Execute single queries with various fetch options
- run_db_transaction(): Execute multiple queries in one atomic transaction
- Circuit breaker automatically opens on repeated failures
"""

import asyncio
import contextlib
import re
import time
from typing import Optional, Any, List, Tuple

from asyncmy import pool  # type: ignore
from asyncmy.errors import (  # type: ignore
    Error as AsyncMyError,
    DataError,
    IntegrityError,
    OperationalError,
    ProgrammingError,
    PoolError,
)

from . import config
from .core.logger import ComponentLogger

# #################################################################################### #
#                            Database Pool Initialization
# #################################################################################### #
db_pool: Optional[pool.Pool] = None
_logger = ComponentLogger("database")

DEFAULT_CIRCUIT_BREAKER_THRESHOLD = 5

async def initialize_db_pool() -> bool:
    """
    Initialize async MySQL/MariaDB connection pool with configuration settings.

    Returns:
        True if pool initialization succeeded, False otherwise
    """
    global db_pool
    try:
        db_pool = await pool.create_pool(
            user=config.get_db_user(),
            password=config.get_db_password(),
            host=config.get_db_host(),
            port=config.get_db_port(),
            db=config.get_db_name(),
            minsize=1,
            maxsize=config.get_db_pool_size(),
            connect_timeout=config.get_db_timeout(),
            pool_recycle=3600,
            echo=config.get_debug(),
            charset="utf8mb4",
            autocommit=True,
        )
        _logger.info("pool_initialized",
            pool_size=config.get_db_pool_size(),
            timeout=config.get_db_timeout()
        )
        return True
    except AsyncMyError as e:
        _logger.critical("pool_init_failed",
            error_type=type(e).__name__,
            error_msg=str(e)
        )
        return False
    except OSError as e:
        _logger.critical("pool_init_connection_refused",
            error_type=type(e).__name__,
            error_msg=str(e)
        )
        return False

async def close_db_pool():
    """Close the database pool and all connections."""
    global db_pool
    if db_pool:
        db_pool.close()
        await db_pool.wait_closed()
        db_pool = None
        _logger.info("pool_closed")

# #################################################################################### #
#                            Query Logging Utilities
# #################################################################################### #
def _mask_query(query: str, limit: int) -> str:
    safe_query = " ".join(query.split())
    safe_query = re.sub(r"VALUES\s*\([^)]+\)", "VALUES(...)", safe_query)
    safe_query = re.sub(r"'[^']*'", "'?'", safe_query)
    safe_query = re.sub(r'"[^"]*"', '"?"', safe_query)
    return safe_query[:limit] + "..." if len(safe_query) > limit else safe_query

def safe_log_query(query: str, params: tuple):
    """Log query execution without exposing parameter values."""
    _logger.debug("query_executing",
        param_count=len(params) if params else 0,
        query_preview=_mask_query(query, 100)
    )

def safe_log_error(error: Exception, query: str):
    """Log query errors without exposing parameter values."""
    _logger.error("query_failed",
        error_type=type(error).__name__,
        query_preview=_mask_query(query, 50)
    )

# #################################################################################### #
#                            Circuit Breaker Pattern
# #################################################################################### #
class CircuitBreaker:
    """Circuit breaker to prevent cascading failures when database is unavailable."""

    def __init__(self, failure_threshold: int | None = None, timeout: int = 60):
        """
        Initialize circuit breaker with failure threshold and timeout.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Timeout in seconds before attempting to close circuit
        """
        self.failure_threshold = (
            failure_threshold
            or config.DB_CIRCUIT_BREAKER_THRESHOLD
            or DEFAULT_CIRCUIT_BREAKER_THRESHOLD
        )
        self.timeout = timeout
        self.failure_count = 0
        self.last_failure_time: float | None = None
        self.state = "CLOSED"

    def is_open(self) -> bool:
        """
        Check if circuit breaker is open (blocking requests).

        Returns:
            True if circuit breaker is open, False otherwise
        """
        if self.state == "OPEN":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "HALF_OPEN"
                _logger.info("circuit_breaker_half_open")
                return False
            return True
        return False

    def record_success(self):
        if self.state == "HALF_OPEN":
            _logger.info("circuit_breaker_closed", reason="db_recovered")
        self.failure_count = 0
        self.state = "CLOSED"

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "OPEN"
            _logger.warning("circuit_breaker_open",
                failure_count=self.failure_count,
                reason="db_temporarily_unavailable"
            )

# #################################################################################### #
#                            Database Connection Manager
# #################################################################################### #
class DatabaseManager:
    """Manages async database connections with native pooling and timeout handling."""

    def __init__(self):
        self.active_connections = 0
        self.waiting_queue = 0
        self.query_metrics = {}
        self.slow_query_threshold = 0.1

    @contextlib.asynccontextmanager
    async def get_connection_with_timeout(self):
        """
        Get async database connection with timeout and proper resource management.

        Yields:
            Async database connection from the pool

        Raises:
            asyncio.TimeoutError: If connection acquisition times out
            DBQueryError: If pool is not initialized
        """
        if not db_pool:
            raise DBQueryError("Database pool not initialized")

        self.waiting_queue += 1
        try:
            conn = await asyncio.wait_for(
                db_pool.acquire(), timeout=config.get_db_timeout()
            )
            try:
                self.active_connections += 1
                yield conn
            finally:
                self.active_connections -= 1
                await db_pool.release(conn)
        finally:
            self.waiting_queue -= 1

    def log_query_metrics(self, query: str, execution_time: float):
        """
        Record query execution metrics and detect slow queries.

        Args:
            query: SQL query that was executed
            execution_time: Query execution time in seconds
        """
        query_type = query.strip().split()[0].upper()
        metrics = self.query_metrics.setdefault(
            query_type, {"count": 0, "total_time": 0.0, "avg_time": 0.0, "slow_queries": 0}
        )
        metrics["count"] += 1
        metrics["total_time"] += execution_time
        metrics["avg_time"] = metrics["total_time"] / metrics["count"]

        if execution_time > self.slow_query_threshold:
            metrics["slow_queries"] += 1
            _logger.warning("slow_query_detected",
                execution_time_s=round(execution_time, 2),
                query_preview=_mask_query(query, 100)
            )

# #################################################################################### #
#                            Global Database Components
# #################################################################################### #
db_circuit_breaker = CircuitBreaker()
db_manager = DatabaseManager()

class DBQueryError(Exception):
    """Raised for every database failure surfaced to callers."""
    pass

def _translate_error(error: AsyncMyError, query: str) -> "DBQueryError":
    safe_log_error(error, query)
    if isinstance(error, ProgrammingError):
        return DBQueryError(f"Database query error: {type(error).__name__}")
    db_circuit_breaker.record_failure()
    if isinstance(error, (DataError, IntegrityError)):
        return DBQueryError(f"Database constraint error: {type(error).__name__}")
    if isinstance(error, PoolError):
        return DBQueryError("Connection pool exhausted - too many concurrent requests")
    if isinstance(error, OperationalError):
        return DBQueryError("Database connection error")
    return DBQueryError(f"Database error: {type(error).__name__}")

# #################################################################################### #
#                            Main Database Query Function
# #################################################################################### #
async def run_db_query(
    query: str,
    params: tuple = (),
    commit: bool = False,
    fetch_one: bool = False,
    fetch_all: bool = False,
) -> Optional[Any]:
    """
    Execute database query with resilience patterns and proper error handling.

    Args:
        query: SQL query string
        params: Query parameters tuple (default: empty)
        commit: Whether to commit the transaction (default: False)
        fetch_one: Whether to fetch one row (default: False)
        fetch_all: Whether to fetch all rows (default: False)

    Returns:
        Query result or None depending on fetch parameters

    Raises:
        DBQueryError: If query execution fails
    """
    if db_circuit_breaker.is_open():
        _logger.warning("query_blocked_circuit_open")
        raise DBQueryError("Database temporarily unavailable (circuit breaker open)")

    safe_log_query(query, params)

    async def _execute():
        start_time = time.perf_counter()
        async with db_manager.get_connection_with_timeout() as conn:
            async with conn.cursor() as cursor:
                try:
                    await cursor.execute(query, params)

                    result = None
                    if commit:
                        await conn.commit()
                    elif fetch_one:
                        result = await cursor.fetchone()
                    elif fetch_all:
                        result = await cursor.fetchall()
                except AsyncMyError as e:
                    raise _translate_error(e, query) from e

                db_manager.log_query_metrics(query, time.perf_counter() - start_time)
                db_circuit_breaker.record_success()
                return result

    max_attempts = 3
    for attempt in range(max_attempts):
        try:
            return await asyncio.wait_for(_execute(), timeout=config.get_db_timeout())
        except asyncio.TimeoutError:
            _logger.warning("query_timeout",
                attempt=attempt + 1,
                max_attempts=max_attempts
            )
            if attempt == max_attempts - 1:
                db_circuit_breaker.record_failure()
                raise DBQueryError("Query timeout after multiple attempts")
            await asyncio.sleep(0.5 * (attempt + 1))
        except DBQueryError as e:
            if "pool exhausted" not in str(e).lower() or attempt == max_attempts - 1:
                raise
            wait_time = min(2.0 * (attempt + 1), 5.0)
            _logger.warning("pool_exhausted_retry",
                wait_time_s=wait_time,
                attempt=attempt + 1,
                max_attempts=max_attempts
            )
            await asyncio.sleep(wait_time)
    return None

async def run_db_transaction(
    queries_and_params: List[Tuple[str, tuple]], max_attempts: int = 3
) -> bool:
    """Execute multiple queries in a single transaction with rollback support.

    Args:
        queries_and_params: List of tuples (query, params)
        max_attempts: Maximum retry attempts

    Returns:
        bool: True if transaction succeeded

    Raises:
        DBQueryError: If transaction fails after all attempts
    """
    if not queries_and_params:
        return True

    if db_circuit_breaker.is_open():
        raise DBQueryError("Database temporarily unavailable (circuit breaker open)")

    async def _execute_transaction():
        async with db_manager.get_connection_with_timeout() as conn:
            async with conn.begin():
                try:
                    async with conn.cursor() as cursor:
                        for query, params in queries_and_params:
                            safe_log_query(query, params)
                            await cursor.execute(query, params)
                except AsyncMyError as e:
                    _logger.warning("transaction_rolled_back",
                        error_type=type(e).__name__
                    )
                    raise _translate_error(e, "TRANSACTION") from e

        db_circuit_breaker.record_success()
        _logger.debug("transaction_completed", query_count=len(queries_and_params))
        return True

    for attempt in range(max_attempts):
        try:
            return await asyncio.wait_for(
                _execute_transaction(), timeout=config.get_db_timeout() * 2
            )
        except asyncio.TimeoutError:
            _logger.warning("transaction_timeout",
                attempt=attempt + 1,
                max_attempts=max_attempts
            )
            if attempt == max_attempts - 1:
                db_circuit_breaker.record_failure()
                raise DBQueryError("Transaction timeout after multiple attempts")
            await asyncio.sleep(1.0 * (attempt + 1))
        except DBQueryError as e:
            if "pool exhausted" not in str(e).lower() or attempt == max_attempts - 1:
                raise
            wait_time = min(2.0 * (attempt + 1), 5.0)
            _logger.warning("transaction_pool_exhausted_retry", wait_time_s=wait_time)
            await asyncio.sleep(wait_time)

    return False
