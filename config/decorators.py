import asyncio
import functools
import logging

from config.billing_config import REFRESH_MAX_ATTEMPTS, REFRESH_BACKOFF_BASE
from services.errors import BillingError, TransientReadError

logger = logging.getLogger(__name__)


def retry_with_backoff(max_attempts: int = REFRESH_MAX_ATTEMPTS, base_delay: float = REFRESH_BACKOFF_BASE):
    """
    Retry an async read with exponential backoff (base_delay, 2*base_delay, ...).
    Once every attempt has failed, raise TransientReadError chained to the last error.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_error = None
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except BillingError:
                    raise
                except Exception as e:
                    last_error = e
                    if attempt < max_attempts - 1:
                        delay = base_delay * (2 ** attempt)
                        logger.warning(f"Read failed in {func.__name__}: {e}. Retrying in {delay}s (Attempt {attempt + 1}/{max_attempts})")
                        await asyncio.sleep(delay)
            logger.error(f"{func.__name__} failed after {max_attempts} attempts: {last_error}")
            raise TransientReadError(
                f"{func.__name__} failed after {max_attempts} attempts",
                details=str(last_error),
            ) from last_error
        return wrapper
    return decorator
