"""
Retry helpers for transient failures (model server hiccups, locked database).
"""
import asyncio
import logging
import sqlite3
from functools import wraps

from core.config import LLM_MAX_RETRIES, LLM_RETRY_BASE_DELAY

logger = logging.getLogger(__name__)


def retry_on_transient_error(max_retries: int = LLM_MAX_RETRIES, base_delay: float = LLM_RETRY_BASE_DELAY):
    """
    Decorator to retry a coroutine on transient errors.

    Detects SQLite busy errors, network timeouts, rate limiting and
    unavailable services. Delay doubles on every attempt.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    if "locked" in str(e).lower() and attempt < max_retries - 1:
                        delay = base_delay * (2 ** attempt)
                        logger.warning(f"Database locked, retrying in {delay}s...")
                        await asyncio.sleep(delay)
                        continue
                    raise
                except Exception as e:
                    if is_transient_error(e) and attempt < max_retries - 1:
                        delay = base_delay * (2 ** attempt)
                        logger.warning(f"Transient error, retrying in {delay}s: {e}")
                        await asyncio.sleep(delay)
                        continue
                    raise

            return await func(*args, **kwargs)

        return wrapper
    return decorator


def is_transient_error(error: Exception) -> bool:
    """Determine if error is transient (retryable)."""
    status_code = getattr(error, "status_code", None)
    if status_code in (408, 429, 500, 502, 503, 504):
        return True

    error_str = str(error).lower()
    transient_indicators = [
        "timeout",
        "timed out",
        "connection reset",
        "connection refused",
        "temporary failure",
        "service unavailable",
        "overloaded",
        "429",  # Rate limit
        "503",  # Service unavailable
    ]
    return any(indicator in error_str for indicator in transient_indicators)
