import asyncio

import pytest

from codescope.embeddings import EmbeddingQueue
from codescope.errors import EmbeddingQueueFullError, EmbeddingTimeoutError


def test_concurrency_is_bounded():
    queue = EmbeddingQueue(concurrency=2, default_timeout=5.0)
    running = 0
    observed = []

    async def work(i):
        nonlocal running
        running += 1
        observed.append(running)
        await asyncio.sleep(0.01)
        running -= 1
        return i

    async def main():
        return await asyncio.gather(*(queue.run(lambda i=i: work(i)) for i in range(6)))

    assert asyncio.run(main()) == list(range(6))
    assert max(observed) == 2
    assert queue.peak_active == 2
    assert queue.active == 0


def test_timeout_releases_slot():
    queue = EmbeddingQueue(concurrency=1, default_timeout=5.0)

    async def slow():
        await asyncio.sleep(1.0)
        return "slow"

    async def fast():
        return "fast"

    async def main():
        with pytest.raises(EmbeddingTimeoutError) as excinfo:
            await queue.run(slow, timeout=0.02, label="batch-1")
        assert excinfo.value.timeout == pytest.approx(0.02)
        assert isinstance(excinfo.value, TimeoutError)
        assert queue.active == 0
        return await queue.run(fast)

    assert asyncio.run(main()) == "fast"
    assert queue.timeouts == 1


def test_late_result_does_not_reach_the_next_caller():
    queue = EmbeddingQueue(concurrency=1, default_timeout=0.02)

    async def stubborn():
        # keeps running after the queue gives up on it
        return await asyncio.shield(asyncio.sleep(0.05, result="stale"))

    async def fresh():
        await asyncio.sleep(0.08)
        return "fresh"

    async def main():
        with pytest.raises(EmbeddingTimeoutError):
            await queue.run(stubborn)
        return await queue.run(fresh, timeout=1.0)

    assert asyncio.run(main()) == "fresh"


def test_waiting_callers_get_slots_in_order():
    queue = EmbeddingQueue(concurrency=1, default_timeout=5.0)
    order = []

    async def work(i):
        order.append(i)
        await asyncio.sleep(0.005)
        return i

    async def main():
        await asyncio.gather(*(queue.run(lambda i=i: work(i)) for i in range(4)))

    asyncio.run(main())
    assert order == [0, 1, 2, 3]
    assert queue.peak_active == 1


def test_single_slot_runs_one_call_at_a_time():
    queue = EmbeddingQueue(concurrency=1, default_timeout=5.0)
    running = 0
    observed = []

    async def work(i):
        nonlocal running
        running += 1
        observed.append(running)
        await asyncio.sleep(0.01)
        running -= 1
        return i

    async def main():
        return await asyncio.gather(*(queue.run(lambda i=i: work(i)) for i in range(3)))

    assert asyncio.run(main()) == [0, 1, 2]
    assert observed == [1, 1, 1]
    assert queue.peak_active == 1
    assert queue.active == 0


def test_full_queue_rejects_submissions():
    queue = EmbeddingQueue(concurrency=1, default_timeout=5.0, max_queue_size=1)

    async def work():
        await asyncio.sleep(0.05)
        return "ok"

    async def main():
        first = asyncio.ensure_future(queue.run(work))
        second = asyncio.ensure_future(queue.run(work))
        await asyncio.sleep(0.01)
        assert queue.active == 1
        assert queue.pending == 1
        with pytest.raises(EmbeddingQueueFullError):
            await queue.run(work)
        return await asyncio.gather(first, second)

    assert asyncio.run(main()) == ["ok", "ok"]


def test_factory_errors_propagate_and_release():
    queue = EmbeddingQueue(concurrency=1)

    async def boom():
        raise RuntimeError("provider down")

    async def main():
        with pytest.raises(RuntimeError):
            await queue.run(boom)
        return queue.stats()

    stats = asyncio.run(main())
    assert stats["active"] == 0
    assert stats["timeouts"] == 0


def test_invalid_concurrency():
    with pytest.raises(ValueError):
        EmbeddingQueue(concurrency=0)
