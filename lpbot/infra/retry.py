"""
Retry-forever primitive for read-only queries.

Account, pool, blockhash and swap-route fetches are idempotent, so a failure
is always safe to repeat. Transaction submission must never go through here;
it has its own expiry-aware loop in the submission engine.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

log = logging.getLogger("lpbot")

T = TypeVar("T")


async def retry(
    operation: Callable[[], Awaitable[T]],
    wait: float = 0.5,
    *,
    max_attempts: Optional[int] = None,
    jitter: float = 0.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: Optional[str] = None,
) -> T:
    """
    Await `operation()` until it succeeds.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        wait: Fixed delay between attempts (seconds)
        max_attempts: Give up after this many attempts and re-raise the last
            error. None (production default) retries forever.
        jitter: Extra uniform random delay in [0, jitter] added to `wait`
        retry_on: Exception types that trigger a retry; others propagate
        label: Name used in the `http_retry` log event

    Cancellation is never retried.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except retry_on as exc:
            if max_attempts is not None and attempt >= max_attempts:
                raise
            log.warning(json.dumps({
                "event": "http_retry",
                "label": label or getattr(operation, "__name__", "operation"),
                "attempt": attempt,
                "error": repr(exc),
            }))
            delay = wait + (random.uniform(0, jitter) if jitter > 0 else 0.0)
            await asyncio.sleep(delay)
