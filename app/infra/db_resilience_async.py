# app/infra/db_resilience_async.py
"""
Async database resilience utilities.

``retry_on_transient_error`` wraps whole repository operations: each
retry opens a fresh connection and re-runs the complete transaction,
never a partial one.
"""
from __future__ import annotations
import asyncio
from typing import TypeVar, Callable
from functools import wraps

import asyncpg
from app.core.dispatch.errors import DispatchError
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

T = TypeVar('T')


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock / serialization failure
    """
    if isinstance(exc, DispatchError):
        return False

    # Check asyncpg-specific exceptions
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
        asyncpg.InterfaceError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    if isinstance(exc, asyncpg.PostgresError):
        # Constraint violations, syntax errors, ... are never transient
        return False

    error_message = str(exc).lower()
    transient_patterns = [
        "connection reset",
        "connection refused",
        "server closed",
        "too many connections",
        "deadlock",
    ]
    return any(pattern in error_message for pattern in transient_patterns)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry async function on transient database errors.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay between retries (seconds)
        backoff_factor: Multiplier for delay after each retry
        max_delay: Maximum delay between retries (seconds)

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get_job(self, job_id: str):
            async with db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    # Domain errors raised by the repository are results, not failures
                    if isinstance(exc, DispatchError):
                        raise

                    if not is_transient_error(exc):
                        DispatchMetrics.database_error(func.__name__)
                        logger.error(
                            f"Non-transient error in {func.__name__}: {exc}",
                            exc_info=True
                        )
                        raise

                    if attempt >= max_retries:
                        DispatchMetrics.database_error(func.__name__)
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {func.__name__}",
                            exc_info=True
                        )
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )

                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator
