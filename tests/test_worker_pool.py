import asyncio
import threading

import pytest

from spanextract.ai.types import Chunk
from spanextract.ai.worker_pool import AsyncWorkerPool, ChunkTask


@pytest.mark.asyncio
async def test_map_bounds_concurrency_and_keeps_order():
    pool = AsyncWorkerPool(max_workers=3)

    async def handler(item):
        await asyncio.sleep(0.01 * (5 - item % 5))
        return item * 2

    progress = []
    results = await pool.map(list(range(12)), handler, on_result=lambda done, _: progress.append(done))
    assert results == [item * 2 for item in range(12)]
    assert pool.peak_in_flight == 3
    assert progress == list(range(1, 13))


@pytest.mark.asyncio
async def test_map_empty():
    pool = AsyncWorkerPool(max_workers=2)

    async def handler(item):
        return item

    assert await pool.map([], handler) == []


@pytest.mark.asyncio
async def test_run_blocking_uses_worker_threads():
    with AsyncWorkerPool(max_workers=2, thread_name_prefix="test-pool") as pool:
        name = await pool.run_blocking(lambda: threading.current_thread().name)
        assert name.startswith("test-pool")
        assert await pool.run_blocking(pow, 2, 5) == 32


def test_minimum_one_worker():
    assert AsyncWorkerPool(max_workers=0).max_workers == 1


def test_chunk_task_idx():
    task = ChunkTask(Chunk(id=7, text="x", char_offset=0, char_length=1), pass_number=2)
    assert task.idx == 7
