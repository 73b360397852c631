"""
Reliability System - Failure handling for Discord API operations.

CIRCUIT BREAKERS:
- Per-service failure threshold protection
- Automatic state transitions (CLOSED/OPEN/HALF_OPEN)
- Monotonic time-based timeout management

RETRY MANAGEMENT:
- Exponential backoff with jitter
- Permission and missing-resource errors are never retried

DISCORD RESILIENCE:
- Rate limit handling honouring Retry-After
- ``discord_resilient`` decorator for role grants, revokes and DMs
"""

import asyncio
import random
import time
from collections import defaultdict
from functools import wraps
from typing import Any, Callable, Dict, Optional

import discord

from .logger import ComponentLogger

_logger = ComponentLogger("reliability")

NON_RETRYABLE_DISCORD_ERRORS = (discord.Forbidden, discord.NotFound)

class CircuitOpenError(Exception):
    """Raised when a call is blocked by an open service circuit breaker."""
    pass

class ServiceCircuitBreaker:
    """Circuit breaker for external services with monotonic time and JSON logging."""

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        half_open_max_calls: int = 3,
    ):
        """
        Initialize circuit breaker with failure thresholds and timeouts.

        Args:
            service_name: Name of the service to protect
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds to wait before attempting to close circuit
            half_open_max_calls: Successful calls needed in half-open state to close
        """
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls

        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"

    def can_execute(self) -> bool:
        if self.state == "OPEN":
            if time.monotonic() - self.last_failure_time > self.timeout:
                self.state = "HALF_OPEN"
                self.success_count = 0
                _logger.info("cb_state_transition",
                    service=self.service_name,
                    new_state="HALF_OPEN",
                    reason="timeout_expired",
                )
                return True
            return False
        return True

    def record_success(self):
        if self.state == "HALF_OPEN":
            self.success_count += 1
            if self.success_count >= self.half_open_max_calls:
                self.state = "CLOSED"
                self.failure_count = 0
                self.success_count = 0
                _logger.info("cb_closed",
                    service=self.service_name,
                    reason="service_recovered",
                )
        else:
            self.failure_count = max(0, self.failure_count - 1)

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        if self.state == "HALF_OPEN" or self.failure_count >= self.failure_threshold:
            reason = (
                "half_open_test_failed" if self.state == "HALF_OPEN" else "failure_threshold_reached"
            )
            self.state = "OPEN"
            _logger.warning("cb_opened",
                service=self.service_name,
                reason=reason,
                failure_count=self.failure_count,
            )

    def get_status(self) -> Dict[str, Any]:
        return {
            "service": self.service_name,
            "state": self.state,
            "failure_count": self.failure_count,
        }

class RetryManager:
    """Retry mechanism with exponential backoff and jitter."""

    def __init__(self):
        self.retry_attempts_count: Dict[str, int] = defaultdict(int)

    async def retry_with_backoff(
        self,
        func: Callable,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retry_on: tuple = (Exception,),
        exclude_on: tuple = (),
    ):
        """
        Execute an async callable with exponential backoff.

        Args:
            func: Coroutine function to execute
            max_attempts: Maximum number of attempts
            base_delay: Initial delay between retries in seconds
            max_delay: Maximum delay between retries in seconds
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add randomization to delay
            retry_on: Exceptions that trigger a retry
            exclude_on: Exceptions that are raised immediately

        Returns:
            Result of the first successful call

        Raises:
            The last exception if every attempt fails
        """
        for attempt in range(max_attempts):
            try:
                return await func()
            except exclude_on:
                raise
            except retry_on as e:
                if attempt == max_attempts - 1:
                    raise

                delay = min(base_delay * (exponential_base ** attempt), max_delay)
                if jitter:
                    delay *= 0.5 + random.random() * 0.5

                func_name = getattr(func, "__name__", "unknown_function")
                self.retry_attempts_count[func_name] += 1
                _logger.debug("retry_scheduled",
                    attempt=attempt + 1,
                    delay_seconds=round(delay, 2),
                    exception=str(e)[:200],
                    function=func_name,
                )
                await asyncio.sleep(delay)
        return None

class ReliabilitySystem:
    """Circuit breakers and retries shared by every Discord API call of the bot."""

    def __init__(self, bot):
        self.bot = bot
        self.retry_manager = RetryManager()
        self.failure_counts: Dict[str, int] = defaultdict(int)
        self.circuit_breakers: Dict[str, ServiceCircuitBreaker] = {
            "discord_api": ServiceCircuitBreaker("discord_api", failure_threshold=5, timeout=120),
            "role_assignment": ServiceCircuitBreaker("role_assignment", failure_threshold=5, timeout=60),
            "direct_message": ServiceCircuitBreaker("direct_message", failure_threshold=10, timeout=60),
        }

    def get_circuit_breaker(self, service_name: str) -> Optional[ServiceCircuitBreaker]:
        return self.circuit_breakers.get(service_name)

    async def execute_with_reliability(
        self, service_name: str, func: Callable, max_attempts: int = 3
    ):
        """
        Execute a coroutine function behind the service circuit breaker with retries.

        Raises:
            CircuitOpenError: If the service circuit breaker is open
        """
        circuit_breaker = self.get_circuit_breaker(service_name)
        if circuit_breaker and not circuit_breaker.can_execute():
            _logger.warning("cb_open_blocked", service=service_name)
            raise CircuitOpenError(f"Service {service_name} circuit breaker is open")

        async def monitored_execution():
            try:
                result = await func()
            except NON_RETRYABLE_DISCORD_ERRORS:
                raise
            except Exception as e:
                if circuit_breaker:
                    circuit_breaker.record_failure()
                self.failure_counts[service_name] += 1
                _logger.warning("service_failure",
                    service=service_name,
                    error=str(e),
                    failure_count=self.failure_counts[service_name],
                )
                raise
            if circuit_breaker:
                circuit_breaker.record_success()
            self.failure_counts[service_name] = 0
            return result

        return await self.retry_manager.retry_with_backoff(
            monitored_execution,
            max_attempts=max_attempts,
            exclude_on=NON_RETRYABLE_DISCORD_ERRORS,
        )

    def get_system_status(self) -> Dict[str, Any]:
        return {
            "circuit_breakers": {
                name: cb.get_status() for name, cb in self.circuit_breakers.items()
            },
            "failure_counts": dict(self.failure_counts),
        }

def discord_resilient(service_name: str = "discord_api", max_retries: int = 3):
    """
    Decorator for Discord API operations on objects exposing ``bot``.

    Forbidden and NotFound are logged and raised without retry. HTTP 429
    waits for Retry-After before the next attempt.

    Args:
        service_name: Name of the service for circuit breaker tracking
        max_retries: Maximum number of attempts
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            reliability_system = None
            for arg in args:
                candidate = getattr(getattr(arg, "bot", None), "reliability_system", None)
                if isinstance(candidate, ReliabilitySystem):
                    reliability_system = candidate
                    break

            async def execute():
                try:
                    return await func(*args, **kwargs)
                except discord.Forbidden as e:
                    _logger.warning("discord_permission_denied",
                        function=func.__name__,
                        error=str(e)
                    )
                    raise
                except discord.NotFound as e:
                    _logger.warning("discord_resource_not_found",
                        function=func.__name__,
                        error=str(e)
                    )
                    raise
                except discord.HTTPException as e:
                    if e.status == 429:
                        retry_after = getattr(e, "retry_after", None)
                        if retry_after is None:
                            try:
                                retry_after = float(e.response.headers.get("Retry-After", "5"))
                            except (AttributeError, ValueError, TypeError):
                                retry_after = 5.0
                        _logger.warning("discord_rate_limited",
                            function=func.__name__,
                            retry_after=retry_after,
                        )
                        await asyncio.sleep(retry_after)
                    raise

            if reliability_system is None:
                return await execute()
            return await reliability_system.execute_with_reliability(
                service_name, execute, max_retries
            )

        return wrapper

    return decorator

def setup_reliability_system(bot) -> ReliabilitySystem:
    """Attach a ReliabilitySystem to the bot once and return it."""
    if not isinstance(getattr(bot, "reliability_system", None), ReliabilitySystem):
        bot.reliability_system = ReliabilitySystem(bot)
    return bot.reliability_system
