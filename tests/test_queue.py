"""
QA Resolver — Job Queue Tests

GenerationQueue dedup and operator actions over MemoryQueueBackend.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from jobs.models import GENERATION_QUEUE, JobState, QueueJob
from jobs.queue import (
    ArqQueueBackend,
    GenerationQueue,
    MemoryQueueBackend,
    create_queue_backend,
)
from resolver.config import ResolverConfig
from resolver.errors import InvalidJobState, NotFound, QueueOperationFailed


class StubConfigProvider:
    def __init__(self, **overrides):
        self.config = ResolverConfig(**overrides)
        self.bypass_calls = []

    def get_config(self, bypass_cache=False):
        self.bypass_calls.append(bypass_cache)
        return self.config


class _QueueTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.now = 1_000.0
        self.backend = MemoryQueueBackend(clock=lambda: self.now)
        self.queue = GenerationQueue(self.backend, clock_ms=lambda: int(self.now * 1000))

    def finish(self, job_id, failed=False):
        job = self.backend.claim(GENERATION_QUEUE)
        self.assertEqual(job.id, job_id)
        if failed:
            self.backend.mark_failed(GENERATION_QUEUE, job_id, "boom")
        else:
            self.backend.mark_completed(GENERATION_QUEUE, job_id)


class TestEnqueueDedup(_QueueTest):

    async def test_first_enqueue_uses_entity_id(self):
        self.assertEqual(await self.queue.enqueue("t1"), "t1")
        job = await self.queue.get_job("t1")
        self.assertEqual(job.state, JobState.WAITING)
        self.assertEqual(job.entity_id, "t1")
        self.assertEqual(job.retry_count, 0)
        self.assertEqual(job.function, "resolve_entity")

    async def test_waiting_job_blocks_second(self):
        await self.queue.enqueue("t1")
        self.assertIsNone(await self.queue.enqueue("t1"))
        self.assertEqual(len(await self.queue.list_jobs()), 1)

    async def test_active_job_blocks_second(self):
        await self.queue.enqueue("t1")
        self.backend.claim(GENERATION_QUEUE)
        self.assertIsNone(await self.queue.enqueue("t1"))

    async def test_finished_job_gets_fresh_id(self):
        await self.queue.enqueue("t1")
        self.finish("t1")
        self.assertEqual(await self.queue.enqueue("t1"), "t1-1000000")

    async def test_fresh_id_then_dedups_again(self):
        await self.queue.enqueue("t1")
        self.finish("t1", failed=True)
        second = await self.queue.enqueue("t1")
        self.assertIsNotNone(second)
        self.assertIsNone(await self.queue.enqueue("t1"))

    async def test_delayed_retry_blocks_enqueue(self):
        await self.queue.enqueue("t1")
        self.finish("t1", failed=True)
        self.assertEqual(await self.queue.enqueue_retry("t1", 1, 2000), "t1-retry-1")
        self.assertEqual((await self.queue.get_job("t1-retry-1")).state, JobState.DELAYED)
        self.assertIsNone(await self.queue.enqueue("t1"))

    async def test_delayed_becomes_waiting(self):
        await self.queue.enqueue_retry("t1", 1, 2000)
        self.now += 2.0
        job = await self.queue.get_job("t1-retry-1")
        self.assertEqual(job.state, JobState.WAITING)
        self.assertEqual(job.retry_count, 1)

    async def test_duplicate_retry_id(self):
        await self.queue.enqueue_retry("t1", 1, 0)
        self.assertIsNone(await self.queue.enqueue_retry("t1", 1, 0))

    async def test_entities_independent(self):
        self.assertEqual(await self.queue.enqueue("t1"), "t1")
        self.assertEqual(await self.queue.enqueue("t2"), "t2")


class TestEnqueueToggle(_QueueTest):

    async def test_disabled(self):
        config = StubConfigProvider(generation_feature_enabled=False)
        queue = GenerationQueue(self.backend, config)
        self.assertIsNone(await queue.enqueue_if_enabled("t1"))
        self.assertEqual(config.bypass_calls, [True])
        self.assertEqual(await queue.list_jobs(), [])

    async def test_enabled(self):
        queue = GenerationQueue(self.backend, StubConfigProvider())
        self.assertEqual(await queue.enqueue_if_enabled("t1"), "t1")


class TestOperatorActions(_QueueTest):

    async def test_get_missing(self):
        with self.assertRaises(NotFound):
            await self.queue.get_job("nope")

    async def test_list_by_state_and_counts(self):
        await self.queue.enqueue("t1")
        await self.queue.enqueue("t2")
        self.finish("t1", failed=True)
        failed = await self.queue.list_jobs("failed")
        self.assertEqual([j.id for j in failed], ["t1"])
        self.assertEqual(failed[0].last_error, "boom")
        counts = await self.queue.counts()
        self.assertEqual(counts["failed"], 1)
        self.assertEqual(counts["waiting"], 1)
        self.assertEqual(counts["completed"], 0)

    async def test_retry_failed(self):
        await self.queue.enqueue("t1")
        self.finish("t1", failed=True)
        job = await self.queue.retry("t1")
        self.assertEqual(job.state, JobState.WAITING)
        self.assertEqual(job.last_error, "")

    async def test_retry_older_job_blocks_enqueue(self):
        await self.queue.enqueue("t1")
        self.finish("t1", failed=True)
        self.now += 1.0
        self.assertEqual(await self.queue.enqueue("t1"), "t1-1001000")
        self.finish("t1-1001000")

        await self.queue.retry("t1")
        self.assertIsNone(await self.queue.enqueue("t1"))
        waiting = await self.queue.list_jobs(JobState.WAITING)
        self.assertEqual([j.id for j in waiting], ["t1"])

    async def test_retry_requires_failed(self):
        await self.queue.enqueue("t1")
        with self.assertRaises(InvalidJobState):
            await self.queue.retry("t1")

    async def test_remove(self):
        await self.queue.enqueue("t1")
        await self.queue.remove("t1")
        with self.assertRaises(NotFound):
            await self.queue.get_job("t1")

    async def test_remove_active_refused(self):
        await self.queue.enqueue("t1")
        self.backend.claim(GENERATION_QUEUE)
        with self.assertRaises(InvalidJobState):
            await self.queue.remove("t1")

    async def test_clean(self):
        for entity in ("t1", "t2", "t3"):
            await self.queue.enqueue(entity)
        self.finish("t1")
        self.finish("t2")
        self.assertEqual(await self.queue.clean("completed"), 2)
        self.assertEqual([j.id for j in await self.queue.list_jobs()], ["t3"])

    async def test_clean_live_state_refused(self):
        with self.assertRaises(InvalidJobState):
            await self.queue.clean(JobState.WAITING)

    async def test_job_to_dict(self):
        await self.queue.enqueue("t1")
        data = (await self.queue.get_job("t1")).to_dict()
        self.assertEqual(data["state"], "waiting")
        self.assertEqual(data["entity_id"], "t1")


class TestFactory(unittest.TestCase):

    def test_memory(self):
        self.assertIsInstance(create_queue_backend("memory"), MemoryQueueBackend)

    def test_arq(self):
        backend = create_queue_backend("arq", redis_url="redis://example:6379")
        self.assertIsInstance(backend, ArqQueueBackend)
        self.assertEqual(backend.redis_url, "redis://example:6379")

    def test_unknown(self):
        with self.assertRaises(ValueError):
            create_queue_backend("kafka")

    def test_arq_pool_requires_open(self):
        with self.assertRaises(QueueOperationFailed):
            ArqQueueBackend(redis_url="redis://example:6379").pool


class TestQueueJob(unittest.TestCase):

    def test_defaults(self):
        job = QueueJob(id="x", queue=GENERATION_QUEUE, function="resolve_entity", state=JobState.WAITING)
        self.assertIsNone(job.entity_id)
        self.assertEqual(job.retry_count, 0)


if __name__ == "__main__":
    unittest.main()
