"""
Bounded retries with exponential backoff for outbound calls.

Only idempotent calls are retried: rail status queries and referral commands
(the referral service dedups on the Idempotency-Key). Rail initiation is
never retried, since a second attempt could open a second checkout.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Tuple, Type

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    delay = min(config.base_delay * (config.exponential_base ** (attempt - 1)), config.max_delay)
    if config.jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay


async def retry_async(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Await ``func(*args, **kwargs)``, retrying exceptions listed in ``config.retry_on``."""
    name = getattr(func, "__qualname__", repr(func))
    for attempt in range(1, config.max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except config.retry_on as e:
            if attempt == config.max_attempts:
                logger.error(f"{name} failed after {attempt} attempts: {e!r}")
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(f"{name} attempt {attempt}/{config.max_attempts} failed: {e!r}; "
                           f"retrying in {delay:.2f}s")
            await asyncio.sleep(delay)


# Connection errors only; a timed-out query is left to the next poll
RAIL_QUERY_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    retry_on=(requests.exceptions.ConnectionError,),
)

SIDE_EFFECT_RETRY_CONFIG = RetryConfig(
    max_attempts=2,
    base_delay=0.2,
    max_delay=2.0,
    retry_on=(requests.exceptions.ConnectionError, requests.exceptions.Timeout),
)
