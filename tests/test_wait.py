import asyncio

import pytest
from botocore.exceptions import ClientError

from cloudrig.errors import PollCancelledError, PollTimeoutError
from cloudrig.retry import on_error_codes, retry
from cloudrig.wait import CancelToken, TerminalStateError, wait_for_ready

from tests.fakes import client_error

pytestmark = [pytest.mark.unit]


def scripted(*results):
    """Poll function returning ``results`` in order, then the last one forever."""
    calls = []

    async def poll():
        value = results[min(len(calls), len(results) - 1)]
        calls.append(value)
        return value

    poll.calls = calls
    return poll


class TestWaitForReady:
    @pytest.mark.asyncio
    async def test_ready_on_first_poll(self):
        poll = scripted("ok")
        assert await wait_for_ready(poll, lambda r: r == "ok", interval=0) == "ok"
        assert len(poll.calls) == 1

    @pytest.mark.asyncio
    async def test_stops_polling_once_ready(self):
        poll = scripted("pending", "pending", "ok", "after")
        assert await wait_for_ready(poll, lambda r: r == "ok", interval=0) == "ok"
        assert poll.calls == ["pending", "pending", "ok"]

    @pytest.mark.asyncio
    async def test_none_means_keep_polling(self):
        poll = scripted(None, None, "ok")
        assert await wait_for_ready(poll, lambda r: r == "ok", interval=0) == "ok"
        assert len(poll.calls) == 3

    @pytest.mark.asyncio
    async def test_terminal_state_raises_with_result(self):
        poll = scripted("pending", "failed")
        with pytest.raises(TerminalStateError) as exc_info:
            await wait_for_ready(
                poll,
                lambda r: r == "ok",
                terminal_check=lambda r: r == "failed",
                interval=0,
            )
        assert exc_info.value.result == "failed"
        assert len(poll.calls) == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        poll = scripted("pending")
        with pytest.raises(PollTimeoutError, match="widget"):
            await wait_for_ready(poll, lambda r: False, timeout=0.05, interval=0.01, description="widget")

    @pytest.mark.asyncio
    async def test_timeout_is_a_timeout_error(self):
        with pytest.raises(TimeoutError):
            await wait_for_ready(scripted("x"), lambda r: False, timeout=0, interval=0.01)

    @pytest.mark.asyncio
    async def test_cancel_before_first_poll(self):
        token = CancelToken()
        token.cancel("user abort")
        poll = scripted("pending")
        with pytest.raises(PollCancelledError, match="user abort"):
            await wait_for_ready(poll, lambda r: False, interval=0, cancel=token)
        assert poll.calls == []

    @pytest.mark.asyncio
    async def test_cancel_interrupts_sleep(self):
        token = CancelToken()
        poll = scripted("pending")
        wait = asyncio.create_task(
            wait_for_ready(poll, lambda r: False, timeout=None, interval=3600, cancel=token)
        )
        await asyncio.sleep(0.01)
        token.cancel()
        with pytest.raises(PollCancelledError):
            await asyncio.wait_for(wait, timeout=1)
        assert len(poll.calls) == 1

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, monkeypatch: pytest.MonkeyPatch):
        delays = []

        async def fake_sleep(self, seconds):
            delays.append(seconds)

        monkeypatch.setattr(CancelToken, "sleep", fake_sleep)
        poll = scripted(1, 2, 3, 4, 5)
        await wait_for_ready(poll, lambda r: r == 5, interval=1, backoff=2, max_interval=5)
        assert delays == [1, 2, 4, 5]


class TestCancelToken:
    def test_initial_state(self):
        token = CancelToken()
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_cancel_records_reason(self):
        token = CancelToken()
        token.cancel("stop it")
        assert token.cancelled
        assert token.reason == "stop it"

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        async def work():
            return 42

        assert await CancelToken().guard(work()) == 42

    @pytest.mark.asyncio
    async def test_guard_abandons_work_on_cancel(self):
        token = CancelToken()
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def blocking():
            started.set()
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        guarded = asyncio.create_task(token.guard(blocking()))
        await started.wait()
        token.cancel()
        with pytest.raises(PollCancelledError):
            await guarded
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_guard_propagates_errors(self):
        async def broken():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await CancelToken().guard(broken())


class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_matching_error_codes(self):
        attempts = []

        @retry(on=on_error_codes("InvalidInstanceID.NotFound"), attempts=3, delay=0)
        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise client_error("InvalidInstanceID.NotFound", "CreateTags")
            return "done"

        assert await flaky() == "done"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_last_attempt(self):
        attempts = []

        @retry(on=RuntimeError, attempts=2, delay=0)
        async def always():
            attempts.append(1)
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await always()
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_other_codes_are_not_retried(self):
        attempts = []

        @retry(on=on_error_codes("InvalidInstanceID.NotFound"), attempts=5, delay=0)
        async def denied():
            attempts.append(1)
            raise client_error("UnauthorizedOperation", "CreateTags")

        with pytest.raises(ClientError, match="UnauthorizedOperation"):
            await denied()
        assert len(attempts) == 1
