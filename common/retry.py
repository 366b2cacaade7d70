"""
Exponential-backoff retry for transient ledger failures
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence, Type

from common.error_handling import ErrorCodes, UpstreamUnavailable

logger = logging.getLogger(__name__)

@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Sequence[Type[BaseException]] = (Exception,)
    # Error ``code`` values that are final even on a retryable exception type
    non_retryable_codes: Sequence[str] = ()

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff before attempt ``attempt + 1``; jitter keeps 50-100% of it"""
    delay = min(config.base_delay * (config.exponential_base ** (attempt - 1)), config.max_delay)
    if config.jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay

async def retry_async(func: Callable[..., Awaitable[Any]], config: RetryConfig, *args,
                      operation: str = None, **kwargs) -> Any:
    """Await ``func`` until it succeeds, raises a non-retryable error, or attempts run out"""
    operation = operation or getattr(func, "__name__", "operation")
    retryable = tuple(config.retryable_exceptions)

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retryable as e:
            code = getattr(e, "code", None)
            if code in config.non_retryable_codes:
                logger.warning(f"{operation} failed with {code}, not retrying: {e}")
                raise
            if attempt == config.max_attempts:
                logger.error(f"{operation} failed after {attempt} attempts: {e}")
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(f"{operation} attempt {attempt}/{config.max_attempts} failed: {e}. Retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

# Only transient upstream failures are retried; "not found" is an answer, not a failure.
# An open breaker and a rejected RPC request fail the same way on every attempt.
LEDGER_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.25,
    max_delay=2.0,
    retryable_exceptions=(UpstreamUnavailable,),
    non_retryable_codes=(ErrorCodes.CIRCUIT_BREAKER_OPEN, ErrorCodes.LEDGER_RPC_ERROR),
)
