"""Retries for AWS eventual-consistency races.

A resource EC2 has just created is not always visible to the very next API
call. ``retry`` re-runs an async call while it fails with an error the
caller names, backing off between attempts.

Example:
    from cloudrig.retry import on_error_codes, retry

    @retry(on=on_error_codes("InvalidInstanceID.NotFound"), attempts=5)
    async def tag(instance_id):
        ...
"""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable

from loguru import logger

from .errors import aws_error_code

log = logger.bind(component="retry")

type AsyncFn[**P, T] = Callable[P, Awaitable[T]]
type Predicate = Callable[[Exception], bool]


def on_error_codes(*codes: str) -> Predicate:
    """Retry only botocore ``ClientError``s carrying one of ``codes``."""
    wanted = frozenset(codes)
    return lambda e: aws_error_code(e) in wanted


def retry[**P, T](
    on: Predicate | type[Exception] | tuple[type[Exception], ...],
    *,
    attempts: int = 5,
    delay: float = 1.0,
    factor: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.1,
) -> Callable[[AsyncFn[P, T]], AsyncFn[P, T]]:
    """Decorate an async function so matching failures are retried.

    Args:
        on: Exception type(s), or a predicate over the raised exception.
        attempts: Total tries, the first one included.
        delay: Pause before the second try, in seconds.
        factor: Growth of the pause after every failed try.
        max_delay: Cap on the pause.
        jitter: Fraction of the pause added at random.
    """
    match on:
        case type() | tuple():
            should_retry: Predicate = lambda e: isinstance(e, on)
        case _:
            should_retry = on

    def decorator(fn: AsyncFn[P, T]) -> AsyncFn[P, T]:
        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            pause = delay
            for attempt in range(1, attempts + 1):
                try:
                    return await fn(*args, **kwargs)
                except Exception as e:
                    if attempt == attempts or not should_retry(e):
                        raise
                    wait = min(pause, max_delay) * (1 + random.uniform(0, jitter))
                    log.warning(
                        f"{fn.__qualname__} failed ({e}); "
                        f"attempt {attempt}/{attempts}, retrying in {wait:.1f}s"
                    )
                    await asyncio.sleep(wait)
                    pause *= factor
            raise AssertionError("unreachable")

        return wrapper

    return decorator
