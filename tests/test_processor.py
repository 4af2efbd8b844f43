"""
QA Resolver — Generation Job Processor Tests

End to end through real resolvers and stores, with a scripted
generator and an in-memory queue.
"""

import json
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from jobs.models import GENERATION_QUEUE, GenerationStatus, JobState
from jobs.processor import GenerationJobProcessor, WorkItem, retry_delay_ms
from jobs.queue import GenerationQueue, MemoryQueueBackend
from resolver.config import ResolverConfig
from resolver.data import DataRequirement, DataResolver
from resolver.db import SQLiteBackend
from resolver.errors import GenerationUnavailable, InvalidGenerationOutput
from resolver.selector import SelectorResolver
from resolver.store import DataKnowledgeStore, SelectorKnowledgeStore, ensure_schema


class StubConfigProvider:
    def __init__(self, **overrides):
        self.config = ResolverConfig(**overrides)

    def get_config(self, bypass_cache=False):
        return self.config


class ScriptedGenerator:

    def __init__(self, *responses, available=True):
        self.responses = list(responses)
        self.available = available

    def require_available(self):
        if not self.available:
            raise GenerationUnavailable("no credential")

    def generate(self, system_prompt, user_prompt, **kwargs):
        return self.responses.pop(0)


class FakeWorkSource:

    def __init__(self, item=None, load_error=None):
        self.item = item
        self.load_error = load_error
        self.marks = []
        self.completed = {}

    def load(self, entity_id):
        if self.load_error is not None:
            raise self.load_error
        return self.item

    def mark(self, entity_id, status, detail=""):
        self.marks.append((entity_id, status, detail))

    def complete(self, entity_id, outcome):
        self.completed[entity_id] = outcome


ITEM = WorkItem(
    entity_id="e1",
    project_id="p1",
    application_id="app1",
    requirements=[DataRequirement(alias="user", type="LOGIN", scenario="checkout", role="buyer")],
    steps=["Click Login", "  "],
)


class TestRetryDelay(unittest.TestCase):

    def test_backoff_capped(self):
        self.assertEqual(retry_delay_ms(0), 1000)
        self.assertEqual(retry_delay_ms(1), 2000)
        self.assertEqual(retry_delay_ms(5), 32000)
        self.assertEqual(retry_delay_ms(6), 60000)
        self.assertEqual(retry_delay_ms(12), 60000)


class TestGenerationJobProcessor(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.db = SQLiteBackend(path=":memory:")
        ensure_schema(self.db)
        self.now = 500.0
        self.backend = MemoryQueueBackend(clock=lambda: self.now)
        self.queue = GenerationQueue(self.backend)

    def tearDown(self):
        self.db.close()

    def processor(self, source, *responses, available=True, max_retry=3):
        generator = ScriptedGenerator(*responses, available=available)
        return GenerationJobProcessor(
            work_source=source,
            data_resolver=DataResolver(DataKnowledgeStore(self.db), generator),
            selector_resolver=SelectorResolver(SelectorKnowledgeStore(self.db), generator),
            queue=self.queue,
            config_provider=StubConfigProvider(generation_max_retry=max_retry),
        )

    def statuses(self, source):
        return [status for _, status, _ in source.marks]

    async def test_success(self):
        source = FakeWorkSource(ITEM)
        processor = self.processor(
            source,
            json.dumps({"value": {"username": "buyer1", "password": "pw"}}),
            json.dumps({"selector": "button,Login", "locatorStrategy": "role"}),
        )
        outcome = await processor.process("e1")

        self.assertEqual(outcome.resolved_data["user"]["username"], "buyer1")
        self.assertEqual(outcome.variables["user.password"], "pw")
        self.assertEqual([s.selector for s in outcome.selectors], ["role:button,Login"])
        self.assertIs(source.completed["e1"], outcome)
        self.assertEqual(self.statuses(source), [GenerationStatus.QUEUED, GenerationStatus.GENERATED])

    async def test_retry_attempt_marked_retrying(self):
        source = FakeWorkSource(WorkItem(entity_id="e1", project_id="p1"))
        await self.processor(source).process("e1", retry_count=2)
        self.assertEqual(self.statuses(source)[0], GenerationStatus.RETRYING)

    async def test_invalid_output_first_attempt_schedules_retry(self):
        source = FakeWorkSource(ITEM)
        result = await self.processor(source, "not json").process("e1")

        self.assertIsNone(result)
        job = await self.queue.get_job("e1-retry-1")
        self.assertEqual(job.state, JobState.DELAYED)
        self.assertEqual(job.retry_count, 1)
        self.assertEqual(job.run_at, self.now + 1.0)
        self.assertEqual(self.statuses(source), [GenerationStatus.QUEUED, GenerationStatus.RETRYING])
        self.assertEqual(source.completed, {})

    async def test_invalid_output_on_retry_fails(self):
        source = FakeWorkSource(ITEM)
        with self.assertRaises(InvalidGenerationOutput):
            await self.processor(source, "not json").process("e1", retry_count=1)
        self.assertEqual(self.statuses(source)[-1], GenerationStatus.FAILED)
        self.assertEqual(await self.queue.list_jobs(), [])

    async def test_unavailable_fails_immediately(self):
        source = FakeWorkSource(ITEM)
        with self.assertRaises(GenerationUnavailable):
            await self.processor(source, available=False).process("e1")
        entity, status, detail = source.marks[-1]
        self.assertEqual(status, GenerationStatus.FAILED)
        self.assertIn("no credential", detail)

    async def test_transient_error_backs_off(self):
        source = FakeWorkSource(load_error=RuntimeError("db down"))
        self.assertIsNone(await self.processor(source).process("e1", retry_count=1))
        job = await self.queue.get_job("e1-retry-2")
        self.assertEqual(job.run_at, self.now + 2.0)

    async def test_retry_ceiling(self):
        source = FakeWorkSource(load_error=RuntimeError("db down"))
        with self.assertRaises(RuntimeError):
            await self.processor(source, max_retry=2).process("e1", retry_count=2)
        self.assertEqual(self.statuses(source)[-1], GenerationStatus.FAILED)

    async def test_data_persisted_before_selector_failure(self):
        source = FakeWorkSource(ITEM)
        processor = self.processor(
            source,
            json.dumps({"value": {"username": "buyer1"}}),
            json.dumps({"selector": "div.card", "locatorStrategy": "css"}),
        )
        self.assertIsNone(await processor.process("e1"))
        self.assertIsNotNone(DataKnowledgeStore(self.db).find("p1", "CHECKOUT_BUYER_LOGIN"))
        self.assertEqual(
            (await self.queue.get_job("e1-retry-1")).queue, GENERATION_QUEUE,
        )


if __name__ == "__main__":
    unittest.main()
