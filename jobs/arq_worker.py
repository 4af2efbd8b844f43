"""
QA Resolver — arq Worker Entry Points

Two worker classes, one per consumed queue:

  GenerationWorkerSettings  queue "ai-testcase-generation" → resolve_entity
  TickWorkerSettings        queue "qa-scheduler-tick"      → scheduler_tick

The host supplies its WorkSource by subclassing GenerationWorkerSettings
(or via create_worker_settings) because arq only knows classes and
module paths:

    # myapp/worker.py
    from jobs.arq_worker import create_worker_settings
    WorkerSettings = create_worker_settings(MyTicketSource())

    arq myapp.worker.WorkerSettings
    arq jobs.arq_worker.TickWorkerSettings

Blocking work (database, generator) runs in a thread pool held in ctx,
never on the event loop.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from arq.connections import RedisSettings

from jobs.models import GENERATION_QUEUE, TICK_QUEUE
from jobs.processor import GenerationJobProcessor, WorkSource
from jobs.queue import KEEP_RESULT_SECONDS, ArqQueueBackend, GenerationQueue
from jobs.scheduler import TickScheduler
from resolver.call_log import GenerationCallLog
from resolver.config import ConfigProvider
from resolver.cost import load_pricing
from resolver.data import DataResolver
from resolver.db import create_backend
from resolver.generation import GenerationAdapter
from resolver.logging import configure_logging
from resolver.selector import SelectorResolver
from resolver.store import DataKnowledgeStore, SelectorKnowledgeStore, ensure_schema

logger = logging.getLogger("qa_resolver.arq_worker")


def _redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(os.environ.get("REDIS_URL", "redis://localhost:6379"))


def _max_workers() -> int:
    return int(os.environ.get("RESOLVER_MAX_WORKERS", "4"))


# ═══════════════════════════════════════════════════════════════════
# Task Functions
# ═══════════════════════════════════════════════════════════════════

async def resolve_entity(ctx: dict, *, entity_id: str, retry_count: int = 0):
    """arq task: resolve everything one entity needs."""
    processor: GenerationJobProcessor = ctx["processor"]
    outcome = await processor.process(entity_id, retry_count, executor=ctx.get("pool"))
    if outcome is None:
        return {"entity_id": entity_id, "retry_scheduled": True}
    return {
        "entity_id": entity_id,
        "data_values": len(outcome.resolved_data),
        "selectors": len(outcome.selectors),
    }


async def scheduler_tick(ctx: dict, *, slot: int | None = None):
    """arq task: one scheduler tick."""
    scheduler: TickScheduler = ctx["scheduler"]
    return await scheduler.on_tick(slot)


# ═══════════════════════════════════════════════════════════════════
# Lifecycle Hooks
# ═══════════════════════════════════════════════════════════════════

async def _startup_common(ctx: dict) -> None:
    configure_logging(level=os.environ.get("RESOLVER_LOG_LEVEL", "INFO"))
    db = create_backend()
    ensure_schema(db)
    config = ConfigProvider(base_path=os.environ.get("RESOLVER_CONFIG", "resolver_config.yaml"), db=db)

    backend = ArqQueueBackend()
    await backend.open()

    ctx["db"] = db
    ctx["config"] = config
    ctx["backend"] = backend
    ctx["pool"] = ThreadPoolExecutor(max_workers=_max_workers(), thread_name_prefix="resolver_worker")
    ctx["scheduler"] = TickScheduler(backend.pool, backend, config)


async def generation_startup(ctx: dict) -> None:
    """arq startup hook for the generation worker."""
    await _startup_common(ctx)
    db, config = ctx["db"], ctx["config"]

    call_log = GenerationCallLog(db, pricing=load_pricing(config.settings()))
    adapter = GenerationAdapter(config, call_log=call_log)
    ctx["processor"] = GenerationJobProcessor(
        work_source=ctx["work_source"],
        data_resolver=DataResolver(DataKnowledgeStore(db), adapter),
        selector_resolver=SelectorResolver(SelectorKnowledgeStore(db), adapter),
        queue=GenerationQueue(ctx["backend"], config),
        config_provider=config,
    )
    await ctx["scheduler"].ensure_registered()
    logger.info("Generation worker started: max_workers=%d", _max_workers())


async def tick_startup(ctx: dict) -> None:
    """arq startup hook for the tick worker."""
    await _startup_common(ctx)
    await ctx["scheduler"].ensure_registered()
    logger.info("Tick worker started")


async def shutdown(ctx: dict) -> None:
    """arq shutdown hook — release pool, queue connection and database."""
    pool = ctx.get("pool")
    if pool:
        pool.shutdown(wait=True)
    backend = ctx.get("backend")
    if backend:
        await backend.close()
    db = ctx.get("db")
    if db:
        db.close()
    logger.info("arq worker shutdown complete")


# ═══════════════════════════════════════════════════════════════════
# Worker Settings
# ═══════════════════════════════════════════════════════════════════

class GenerationWorkerSettings:
    """arq settings for the generation queue. ctx must carry a work_source."""
    functions = [resolve_entity]
    queue_name = GENERATION_QUEUE
    on_startup = generation_startup
    on_shutdown = shutdown
    max_jobs = _max_workers()
    job_timeout = int(os.environ.get("RESOLVER_JOB_TIMEOUT", "300"))
    max_tries = 1
    keep_result = KEEP_RESULT_SECONDS
    redis_settings = _redis_settings()
    ctx: dict[str, Any] = {}


class TickWorkerSettings:
    """arq settings for the scheduler tick queue."""
    functions = [scheduler_tick]
    queue_name = TICK_QUEUE
    on_startup = tick_startup
    on_shutdown = shutdown
    max_jobs = 1
    max_tries = 1
    keep_result = 3600
    redis_settings = _redis_settings()


def create_worker_settings(work_source: WorkSource) -> type:
    """GenerationWorkerSettings bound to a host WorkSource."""
    return type(
        "WorkerSettings",
        (GenerationWorkerSettings,),
        {"ctx": {"work_source": work_source}},
    )
