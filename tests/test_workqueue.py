"""Tests for the rate-limited work queue."""

import asyncio

import pytest

from cfn_operator.workqueue import WorkQueue, WorkQueueShutDown


class TestWorkQueue:
    """Tests for de-duplication, exclusivity and backoff."""

    @pytest.mark.asyncio
    async def test_deduplicates_waiting_keys(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add("a")
        queue.add("b")
        queue.add("a")

        assert len(queue) == 2
        assert await queue.get() == "a"
        assert await queue.get() == "b"
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_key_added_while_processing_waits_for_done(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add("a")
        key = await queue.get()

        queue.add("a")
        queue.add("a")
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == "a"
        queue.done("a")
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_get_waits_for_add(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        assert not waiter.done()

        queue.add("a")

        assert await asyncio.wait_for(waiter, timeout=1) == "a"

    @pytest.mark.asyncio
    async def test_rate_limited_delays_double(self) -> None:
        queue: WorkQueue[str] = WorkQueue(base_delay=0.5, max_delay=1.5)

        assert queue.add_rate_limited("a") == 0.5
        assert queue.add_rate_limited("a") == 1.0
        assert queue.add_rate_limited("a") == 1.5
        assert queue.add_rate_limited("a") == 1.5
        assert queue.num_requeues("a") == 4

        queue.forget("a")
        assert queue.num_requeues("a") == 0
        assert queue.when("a") == 0.5
        queue.shutdown()

    @pytest.mark.asyncio
    async def test_add_after_fires(self) -> None:
        queue: WorkQueue[str] = WorkQueue(base_delay=0.01, max_delay=0.01)
        queue.add_rate_limited("a")
        assert len(queue) == 0

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    @pytest.mark.asyncio
    async def test_shutdown_stops_get(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.shutdown()

        with pytest.raises(WorkQueueShutDown):
            await asyncio.wait_for(waiter, timeout=1)
        assert queue.shutting_down is True

        queue.add("a")
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_delayed_adds(self) -> None:
        queue: WorkQueue[str] = WorkQueue(base_delay=0.01, max_delay=0.01)
        queue.add_after("a", 0.01)

        queue.shutdown()
        await asyncio.sleep(0.05)

        assert len(queue) == 0
