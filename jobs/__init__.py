"""
QA Resolver - Background Jobs

Generation queue with per-entity deduplication, worker-side processing
with bounded retry, and the cluster-wide scheduler tick.

  - jobs.queue: GenerationQueue, ArqQueueBackend, MemoryQueueBackend
  - jobs.processor: GenerationJobProcessor, WorkSource
  - jobs.scheduler: TickScheduler
  - jobs.arq_worker: arq WorkerSettings entry points
"""
