"""
QA Resolver — Scheduler Tick

One repeatable tick for the whole cluster. Registration is guarded by a
Redis lock (SET NX EX) so only one process registers, and a schedule
marker so re-registration after the lock expires is a no-op.

The tick repeats by scheduling its own next slot before it fans out, so
a failed dispatch does not end the chain. Tick and fan-out job ids are
derived from the slot number (floor(epoch_ms / interval_ms)), so a
redelivered tick or a second registration cannot dispatch twice. Fan-out
ids carry the target queue name because arq job keys are global across
queues. A registration that finds the marker but no pending tick
schedules the next slot again.

Each tick only dispatches: one job to the create-test-run queue and one
to the orchestrator queue. It never runs tests itself.

Usage:
    scheduler = TickScheduler(redis, backend, config_provider)
    await scheduler.ensure_registered()      # worker startup
    await scheduler.on_tick()                # arq scheduler_tick task
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from jobs.models import CREATE_TEST_RUN_QUEUE, LIVE_STATES, ORCHESTRATOR_QUEUE, TICK_QUEUE
from jobs.queue import QueueBackend
from resolver.config import ConfigProvider

logger = logging.getLogger("qa_resolver.scheduler")

TICK_LOCK_KEY = "scheduler:tick:repeat:init"
TICK_LOCK_TTL_SECONDS = 86400
TICK_SCHEDULE_KEY = "scheduler:tick:schedule"
MIN_TICK_INTERVAL_MS = 60_000


def fan_out_job_id(queue: str, slot: int) -> str:
    return f"{queue}:tick-{slot}"


class TickScheduler:
    """
    Registers and advances the scheduler tick.

    redis is an asyncio Redis client (the arq pool works); backend is the
    queue backend ticks and fan-out jobs are added to.
    """

    def __init__(
        self,
        redis: Any,
        backend: QueueBackend,
        config_provider: ConfigProvider,
        clock_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        self.redis = redis
        self.backend = backend
        self.config_provider = config_provider
        self._clock_ms = clock_ms

    def interval_ms(self) -> int:
        configured = self.config_provider.get_config(bypass_cache=True).queue_tick_interval_ms
        return max(MIN_TICK_INTERVAL_MS, configured or MIN_TICK_INTERVAL_MS)

    async def ensure_registered(self) -> bool:
        """
        Register the repeating tick. True only for the process that
        registered it, or that restarted a chain with no pending tick.
        """
        acquired = await self.redis.set(TICK_LOCK_KEY, "1", nx=True, ex=TICK_LOCK_TTL_SECONDS)
        if not acquired:
            logger.debug("Tick registration lock held elsewhere")
            return False

        if await self.redis.exists(TICK_SCHEDULE_KEY):
            if await self._has_pending_tick():
                logger.debug("Tick schedule already registered")
                return False
            interval = await self._schedule_interval()
            await self._schedule_slot(self._clock_ms() // interval + 1, interval)
            logger.warning("Tick schedule had no pending tick; rescheduled every %d ms", interval)
            return True

        interval = self.interval_ms()
        await self.redis.hset(
            TICK_SCHEDULE_KEY,
            mapping={"interval_ms": str(interval), "registered_at_ms": str(self._clock_ms())},
        )
        await self._schedule_slot(self._clock_ms() // interval + 1, interval)
        logger.info("Registered scheduler tick every %d ms", interval)
        return True

    async def on_tick(self, slot: int | None = None) -> dict[str, str | None]:
        """Schedule the next slot, then fan out one create-test-run and one orchestrator job."""
        interval = await self._schedule_interval()
        if slot is None:
            slot = self._clock_ms() // interval

        await self._schedule_slot(slot + 1, interval)
        dispatched = {}
        for queue in (CREATE_TEST_RUN_QUEUE, ORCHESTRATOR_QUEUE):
            dispatched[queue] = await self.backend.add(queue, {"slot": slot}, fan_out_job_id(queue, slot))
        logger.info("Tick %d dispatched to create-test-run and orchestrator", slot)
        return dispatched

    async def _has_pending_tick(self) -> bool:
        for job in await self.backend.list_jobs(TICK_QUEUE):
            if job.state in LIVE_STATES:
                return True
        return False

    async def _schedule_interval(self) -> int:
        raw = await self.redis.hget(TICK_SCHEDULE_KEY, "interval_ms")
        if isinstance(raw, bytes):
            raw = raw.decode()
        return max(MIN_TICK_INTERVAL_MS, int(raw)) if raw else self.interval_ms()

    async def _schedule_slot(self, slot: int, interval: int) -> str | None:
        run_at = datetime.fromtimestamp(slot * interval / 1000.0, tz=timezone.utc)
        return await self.backend.add(TICK_QUEUE, {"slot": slot}, f"tick:{slot}", defer_until=run_at)
