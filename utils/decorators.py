# utils/decorators.py
"""
Reusable logging decorators for engine operations
"""
import functools
import time
import logging
from typing import Callable

logger = logging.getLogger(__name__)


def log_execution_time(func: Callable) -> Callable:
    """
    Log function execution time

    Usage:
        @log_execution_time
        def normalize(schema):
            pass
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        logger.debug(f"Starting {func.__name__}...")

        try:
            result = func(*args, **kwargs)
            elapsed = time.perf_counter() - start_time
            logger.info(f"{func.__name__} completed in {elapsed:.3f}s")
            return result
        except Exception as e:
            elapsed = time.perf_counter() - start_time
            logger.error(f"{func.__name__} failed after {elapsed:.3f}s: {str(e)}")
            raise

    return wrapper
