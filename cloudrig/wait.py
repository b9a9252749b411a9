"""Polling utilities.

Every polling loop in cloudrig goes through ``wait_for_ready`` so each one
gets the same timeout, backoff and cancellation behavior.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress

from loguru import logger

from .errors import PollCancelledError, PollTimeoutError

log = logger.bind(component="wait")


class TerminalStateError(RuntimeError):
    """The polled resource reached a state it will never leave."""

    def __init__(self, description: str, result: object) -> None:
        super().__init__(f"{description} reached terminal state: {result}")
        self.result = result


class CancelToken:
    """Cooperative cancellation flag shared between a caller and a poll loop."""

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PollCancelledError(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        if seconds <= 0:
            await asyncio.sleep(0)
        else:
            with suppress(TimeoutError):
                await asyncio.wait_for(self._event.wait(), timeout=seconds)
        self.raise_if_cancelled()

    async def guard[T](self, aw: Awaitable[T]) -> T:
        """Await ``aw``, abandoning it as soon as the token is cancelled."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(aw)
        watcher = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            watcher.cancel()
        if not work.done():
            work.cancel()
            with suppress(asyncio.CancelledError):
                await work
            self.raise_if_cancelled()
        return work.result()


async def wait_for_ready[T](
    poll_fn: Callable[[], Awaitable[T | None]],
    ready_check: Callable[[T], bool],
    *,
    terminal_check: Callable[[T], bool] | None = None,
    timeout: float | None = 300.0,
    interval: float = 5.0,
    backoff: float = 1.0,
    max_interval: float = 60.0,
    cancel: CancelToken | None = None,
    description: str = "resource",
) -> T:
    """Wait until poll_fn returns something that passes ready_check.

    The first poll happens immediately; nothing is polled after the ready
    result is seen.

    Args:
        poll_fn: Async function that polls for the resource state.
        ready_check: Function that returns True when resource is ready.
        terminal_check: Optional function that returns True if resource reached
            a terminal failure state.
        timeout: Maximum time to wait in seconds. None waits forever.
        interval: Time between the first two polls in seconds.
        backoff: Multiplier applied to the interval after each poll.
        max_interval: Upper bound for the interval.
        cancel: Token that aborts the wait when set.
        description: Description for log and error messages.

    Returns:
        The ready resource.

    Raises:
        PollTimeoutError: If timeout is exceeded.
        PollCancelledError: If the token is cancelled.
        TerminalStateError: If resource reaches terminal state.
    """
    token = cancel or CancelToken()
    loop = asyncio.get_running_loop()
    start = loop.time()
    delay = interval
    attempt = 0

    while True:
        token.raise_if_cancelled()
        attempt += 1
        result = await poll_fn()

        if result is not None:
            if ready_check(result):
                return result

            if terminal_check is not None and terminal_check(result):
                raise TerminalStateError(description, result)

        elapsed = loop.time() - start
        if timeout is not None and elapsed > timeout:
            raise PollTimeoutError(
                f"Timeout waiting for {description} after {timeout:.1f}s"
            )

        log.debug(f"Waiting for {description} (poll {attempt}, next in {delay:.1f}s)")
        await token.sleep(delay)
        delay = min(delay * backoff, max_interval)
