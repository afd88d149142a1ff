import asyncio
import logging
from functools import wraps


def async_retry(max_retries: int = 3, delay: float = 1.0, retry_on=(Exception,)):
    """Decorator for async retry logic with exponential backoff"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        logging.getLogger(func.__module__).warning(
                            f"{func.__qualname__} failed (attempt {attempt + 1}/{max_retries}): {e}"
                        )
                        await asyncio.sleep(delay * (2 ** attempt))
            raise last_exception
        return wrapper
    return decorator
