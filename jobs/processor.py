"""
QA Resolver — Generation Job Processing

Worker-side handling of one generation job: load the entity's work item
from the host, resolve its data requirements and step selectors, report
the result, and on failure either schedule a bounded retry or give up.

Retry policy:
  - GenerationUnavailable                     → FAILED (no retry helps)
  - InvalidGenerationOutput on retry_count ≥ 1 → FAILED
  - retry_count ≥ generation_max_retry        → FAILED
  - otherwise re-enqueue {entity_id}-retry-{n+1} after min(60 s, 1 s · 2^n)

A FAILED outcome re-raises so the queue records the job as failed and it
stays inspectable.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Protocol

from jobs.models import GenerationStatus
from jobs.queue import GenerationQueue
from resolver.config import ConfigProvider
from resolver.data import DataRequirement, DataResolver, ResolutionContext, flatten_resolved_data
from resolver.errors import GenerationUnavailable, InvalidGenerationOutput
from resolver.selector import SelectorResolution, SelectorResolver

logger = logging.getLogger("qa_resolver.processor")

MAX_RETRY_DELAY_MS = 60_000
BASE_RETRY_DELAY_MS = 1_000


@dataclass
class WorkItem:
    """What the host needs resolved for one entity."""
    entity_id: str
    project_id: str
    application_id: str = ""
    requirements: list[DataRequirement] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    context: ResolutionContext = field(default_factory=ResolutionContext)
    page_context: str | None = None


@dataclass
class WorkOutcome:
    entity_id: str
    resolved_data: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, str] = field(default_factory=dict)
    selectors: list[SelectorResolution] = field(default_factory=list)


class WorkSource(Protocol):
    """Host-supplied access to the entities behind generation jobs."""

    def load(self, entity_id: str) -> WorkItem: ...

    def mark(self, entity_id: str, status: GenerationStatus, detail: str = "") -> None: ...

    def complete(self, entity_id: str, outcome: WorkOutcome) -> None: ...


def retry_delay_ms(retry_count: int) -> int:
    return min(MAX_RETRY_DELAY_MS, BASE_RETRY_DELAY_MS * 2 ** retry_count)


class GenerationJobProcessor:
    """Runs resolution for a dequeued job and applies the retry policy."""

    def __init__(
        self,
        work_source: WorkSource,
        data_resolver: DataResolver,
        selector_resolver: SelectorResolver,
        queue: GenerationQueue,
        config_provider: ConfigProvider,
    ):
        self.work_source = work_source
        self.data_resolver = data_resolver
        self.selector_resolver = selector_resolver
        self.queue = queue
        self.config_provider = config_provider

    def resolve(self, entity_id: str) -> WorkOutcome:
        """Blocking resolution for one entity; runs in a worker thread."""
        item = self.work_source.load(entity_id)
        resolved = self.data_resolver.resolve_requirements(
            item.project_id, item.requirements, item.context,
        )
        selectors = [
            self.selector_resolver.resolve(
                step,
                item.page_context,
                project_id=item.project_id,
                application_id=item.application_id,
            )
            for step in item.steps
            if step and step.strip()
        ]
        return WorkOutcome(
            entity_id=entity_id,
            resolved_data=resolved,
            variables=flatten_resolved_data(resolved),
            selectors=selectors,
        )

    async def process(
        self,
        entity_id: str,
        retry_count: int = 0,
        executor: Executor | None = None,
    ) -> WorkOutcome | None:
        """
        Process one job. Returns the outcome, or None when a retry was
        scheduled. Raises when the entity is marked FAILED.
        """
        loop = asyncio.get_running_loop()
        status = GenerationStatus.RETRYING if retry_count > 0 else GenerationStatus.QUEUED
        await loop.run_in_executor(executor, self.work_source.mark, entity_id, status, "")

        try:
            outcome = await loop.run_in_executor(executor, self.resolve, entity_id)
        except Exception as e:
            return await self._handle_failure(entity_id, retry_count, e, executor)

        await loop.run_in_executor(executor, self.work_source.complete, entity_id, outcome)
        await loop.run_in_executor(
            executor, self.work_source.mark, entity_id, GenerationStatus.GENERATED, "",
        )
        logger.info(
            "Generated entity %s: %d data values, %d selectors",
            entity_id, len(outcome.resolved_data), len(outcome.selectors),
        )
        return outcome

    async def _handle_failure(
        self,
        entity_id: str,
        retry_count: int,
        error: Exception,
        executor: Executor | None,
    ) -> None:
        loop = asyncio.get_running_loop()
        max_retry = self.config_provider.get_config().generation_max_retry
        logger.error("Generation failed for %s (attempt %d): %s", entity_id, retry_count, error)

        if (
            isinstance(error, GenerationUnavailable)
            or (isinstance(error, InvalidGenerationOutput) and retry_count >= 1)
            or retry_count >= max_retry
        ):
            await loop.run_in_executor(
                executor, self.work_source.mark, entity_id, GenerationStatus.FAILED, str(error)[:500],
            )
            raise error

        next_try = retry_count + 1
        await self.queue.enqueue_retry(entity_id, next_try, retry_delay_ms(retry_count))
        await loop.run_in_executor(
            executor, self.work_source.mark, entity_id, GenerationStatus.RETRYING, str(error)[:500],
        )
        return None
