import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
from redis import exceptions as redis_errors
from sqlalchemy import exc as sa_errors

from .errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (
    TransientError,
    redis_errors.ConnectionError,
    redis_errors.TimeoutError,
    sa_errors.OperationalError,
    sa_errors.DisconnectionError,
    httpx.TransportError,
    asyncio.TimeoutError,
)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TRANSIENT_ERRORS)


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff for transient storage failures.

    Delays run base_delay, base_delay * multiplier, ... and never exceed
    max_delay. Only errors accepted by ``is_transient`` are retried; anything
    else propagates on the first attempt.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "operation") -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if not is_transient(e) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{label} failed with {type(e).__name__}, retrying in {delay}s",
                    extra={"attempt": attempt, "outcome": "retry"}
                )
                await asyncio.sleep(delay)
                attempt += 1
