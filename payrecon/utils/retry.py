from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from payrecon.errors import TransientGatewayError

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def call_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation``, retrying only transient gateway failures.

    Delay doubles after every failed attempt (base, 2*base, 4*base...) and is
    capped at ``max_delay``. The last TransientGatewayError is re-raised once
    ``attempts`` is exhausted; every other exception propagates immediately.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientGatewayError as exc:
            if attempt == attempts:
                logger.warning(
                    "gateway still unavailable, giving up",
                    extra={"attempt": attempt, "provider": exc.provider, "error": str(exc)},
                )
                raise
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            logger.info(
                "transient gateway error, retrying",
                extra={"attempt": attempt, "provider": exc.provider, "error": str(exc)},
            )
            await sleep(delay)
    raise AssertionError("unreachable")
