"""Tests for the priority request queue."""

import asyncio

import httpx
import pytest

from reride.queueing.request_queue import RequestQueue, TaskState
from reride.shared.errors import (
    ActionCancelledError,
    QueueClearedError,
    QueueClosedError,
    RequestTimeoutError,
    StoreError,
    TransientError,
)


def make_queue(**overrides) -> RequestQueue:
    options = dict(
        concurrency=1,
        max_retries=3,
        base_backoff_s=0.01,
        max_backoff_s=0.05,
        request_interval_s=0,
        timeout_s=1.0,
    )
    options.update(overrides)
    return RequestQueue(**options)


class Gate:
    """An action that blocks the queue until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self):
        self.started.set()
        await self.release.wait()
        return "gate"


def recorder(order: list[str], name: str, result=None):
    async def action():
        order.append(name)
        return result if result is not None else name

    return action


class TestEnqueue:
    """Tests for basic enqueue behaviour and dedup."""

    async def test_returns_action_result(self):
        async with make_queue() as queue:
            assert await queue.enqueue(recorder([], "a", 42)) == 42

    async def test_duplicate_id_runs_action_once(self):
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.02)
            return "shared"

        async with make_queue() as queue:
            first = queue.enqueue(slow, id="vehicles")
            second = queue.enqueue(slow, id="vehicles")
            assert await asyncio.gather(first, second) == ["shared", "shared"]
        assert calls == 1

    async def test_id_is_reusable_after_settling(self):
        order = []
        async with make_queue() as queue:
            await queue.enqueue(recorder(order, "one"), id="x")
            await queue.enqueue(recorder(order, "two"), id="x")
        assert order == ["one", "two"]

    async def test_duplicate_waiter_sees_the_same_failure(self):
        async def broken():
            raise StoreError("bad request", status=400)

        async with make_queue() as queue:
            first = queue.enqueue(broken, id="dup")
            second = queue.enqueue(broken, id="dup")
            results = await asyncio.gather(first, second, return_exceptions=True)
        assert all(isinstance(r, StoreError) for r in results)
        assert queue.failed_count == 1

    async def test_cancelling_one_caller_keeps_the_shared_task(self):
        gate = Gate()
        async with make_queue() as queue:
            first = queue.enqueue(gate, id="g")
            second = queue.enqueue(gate, id="g")
            await gate.started.wait()
            first.cancel()
            gate.release.set()
            assert await second == "gate"


class TestPriority:
    """Tests for dispatch ordering."""

    async def test_higher_priority_runs_first(self):
        order = []
        gate = Gate()
        async with make_queue() as queue:
            blocker = queue.enqueue(gate)
            await gate.started.wait()
            low = queue.enqueue(recorder(order, "low"), priority=0)
            high = queue.enqueue(recorder(order, "high"), priority=5)
            mid = queue.enqueue(recorder(order, "mid"), priority=2)
            gate.release.set()
            await asyncio.gather(blocker, low, high, mid)
        assert order == ["high", "mid", "low"]

    async def test_equal_priority_is_fifo(self):
        order = []
        gate = Gate()
        async with make_queue() as queue:
            blocker = queue.enqueue(gate)
            await gate.started.wait()
            futures = [queue.enqueue(recorder(order, name)) for name in ("a", "b", "c")]
            gate.release.set()
            await asyncio.gather(blocker, *futures)
        assert order == ["a", "b", "c"]

    async def test_higher_priority_duplicate_promotes_queued_task(self):
        order = []
        gate = Gate()
        async with make_queue() as queue:
            blocker = queue.enqueue(gate)
            await gate.started.wait()
            a1 = queue.enqueue(recorder(order, "a"), id="a", priority=0)
            b = queue.enqueue(recorder(order, "b"), id="b", priority=0)
            a2 = queue.enqueue(recorder(order, "a-again"), id="a", priority=5)
            assert queue.get_task("a").priority == 5
            gate.release.set()
            results = await asyncio.gather(blocker, a1, b, a2)
        assert order == ["a", "b"]
        assert results[1] == results[3] == "a"

    async def test_concurrency_bound(self):
        running = 0
        peak = 0

        async def tracked():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1

        async with make_queue(concurrency=2) as queue:
            await asyncio.gather(*(queue.enqueue(tracked) for _ in range(6)))
        assert peak == 2


class TestRetry:
    """Tests for failure classification and retry."""

    async def test_transient_failures_are_retried(self):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransientError("connection reset")
            return "ok"

        async with make_queue() as queue:
            assert await queue.enqueue(flaky) == "ok"
        assert calls == 3

    async def test_retry_ceiling_surfaces_last_error(self):
        calls = 0

        async def always_down():
            nonlocal calls
            calls += 1
            raise TransientError(f"down {calls}", status=502)

        async with make_queue(max_retries=2) as queue:
            with pytest.raises(TransientError, match="down 3"):
                await queue.enqueue(always_down)
        assert calls == 3

    @pytest.mark.parametrize("status", [429, 503])
    async def test_rate_limit_is_not_retried(self, status):
        calls = 0

        async def limited():
            nonlocal calls
            calls += 1
            raise StoreError("slow down", status=status)

        async with make_queue() as queue:
            with pytest.raises(StoreError):
                await queue.enqueue(limited)
        assert calls == 1

    async def test_http_status_error_429_is_not_retried(self):
        calls = 0

        async def limited():
            nonlocal calls
            calls += 1
            request = httpx.Request("GET", "https://api.example.com/conversations")
            httpx.Response(429, request=request).raise_for_status()

        async with make_queue() as queue:
            with pytest.raises(httpx.HTTPStatusError):
                await queue.enqueue(limited)
        assert calls == 1

    async def test_permanent_failure_is_not_retried(self):
        calls = 0

        async def rejected():
            nonlocal calls
            calls += 1
            raise StoreError("bad request", status=400)

        async with make_queue() as queue:
            with pytest.raises(StoreError):
                await queue.enqueue(rejected)
        assert calls == 1

    async def test_per_request_max_retries_zero(self):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            raise TransientError("reset")

        async with make_queue() as queue:
            with pytest.raises(TransientError):
                await queue.enqueue(flaky, max_retries=0)
        assert calls == 1

    async def test_synchronous_raise_is_a_failed_attempt(self):
        def not_a_coroutine():
            raise ValueError("bad payload")

        async with make_queue() as queue:
            with pytest.raises(ValueError, match="bad payload"):
                await queue.enqueue(not_a_coroutine)
            assert queue.failed_count == 1

    async def test_cancellation_inside_action_settles_every_caller(self):
        async def cancelled_inside():
            raise asyncio.CancelledError()

        async with make_queue() as queue:
            first = queue.enqueue(cancelled_inside, id="x")
            second = queue.enqueue(cancelled_inside, id="x")
            results = await asyncio.wait_for(asyncio.gather(first, second, return_exceptions=True), timeout=1.0)

            assert all(isinstance(r, ActionCancelledError) for r in results)
            assert queue.get_task("x") is None
            assert queue.stats()["running"] == 0
            assert await asyncio.wait_for(queue.enqueue(recorder([], "later"), id="x"), timeout=1.0) == "later"

    async def test_timeout_raises_request_timeout(self):
        async def hangs():
            await asyncio.sleep(5)

        async with make_queue() as queue:
            with pytest.raises(RequestTimeoutError):
                await queue.enqueue(hangs, timeout=0.05, max_retries=0)

    async def test_timed_out_request_is_retried(self):
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(5)
            return "fast"

        async with make_queue() as queue:
            assert await queue.enqueue(slow_then_fast, timeout=0.05) == "fast"
        assert calls == 2


class TestLifecycle:
    """Tests for clear, shutdown, batch and stats."""

    async def test_clear_rejects_queued_but_not_running(self):
        gate = Gate()
        queue = make_queue()
        running = queue.enqueue(gate)
        await gate.started.wait()
        queued = [queue.enqueue(recorder([], str(i))) for i in range(3)]

        assert queue.clear() == 3
        for future in queued:
            with pytest.raises(QueueClearedError):
                await future

        gate.release.set()
        assert await running == "gate"
        await queue.shutdown()

    async def test_shutdown_rejects_pending_and_waits_for_running(self):
        gate = Gate()
        queue = make_queue()
        running = queue.enqueue(gate)
        await gate.started.wait()
        queued = queue.enqueue(recorder([], "never"))

        stopper = asyncio.create_task(queue.shutdown())
        await asyncio.sleep(0.01)
        assert not stopper.done()
        gate.release.set()
        await stopper

        assert await running == "gate"
        with pytest.raises(QueueClosedError):
            await queued
        with pytest.raises(QueueClosedError):
            queue.enqueue(recorder([], "late"))

    async def test_shutdown_cancels_pending_retry(self):
        async def flaky():
            raise TransientError("reset")

        queue = make_queue(base_backoff_s=10, max_backoff_s=10)
        future = queue.enqueue(flaky)
        await asyncio.sleep(0.05)
        assert queue.stats()["retry_scheduled"] == 1
        await queue.shutdown()
        with pytest.raises(QueueClosedError):
            await future

    async def test_batch_returns_results_in_order(self):
        order = []
        async with make_queue() as queue:
            results = await queue.batch(
                [recorder(order, "first"), recorder(order, "second"), recorder(order, "third")], delay=0.01
            )
        assert results == ["first", "second", "third"]
        assert order == results

    async def test_stats_and_len(self):
        gate = Gate()
        async with make_queue() as queue:
            blocker = queue.enqueue(gate, id="gate")
            await gate.started.wait()
            waiting = queue.enqueue(recorder([], "w"), id="w")

            assert len(queue) == 1
            assert queue.get_task("gate").state is TaskState.RUNNING
            assert set(queue.pending_ids()) == {"gate", "w"}
            stats = queue.stats()
            assert stats["running"] == 1
            assert stats["queued"] == 1

            gate.release.set()
            await asyncio.gather(blocker, waiting)
            assert queue.stats()["completed"] == 2
