"""
QA Resolver — Job Models

Queue names, job states and the job record returned by queue inspection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


GENERATION_QUEUE = "ai-testcase-generation"
TICK_QUEUE = "qa-scheduler-tick"
CREATE_TEST_RUN_QUEUE = "qa-create-test-run"
ORCHESTRATOR_QUEUE = "qa-orchestrator"
EXECUTION_QUEUE = "qa-execution"

# arq function name consumed from each queue
JOB_FUNCTIONS: dict[str, str] = {
    GENERATION_QUEUE: "resolve_entity",
    TICK_QUEUE: "scheduler_tick",
    CREATE_TEST_RUN_QUEUE: "create_test_run",
    ORCHESTRATOR_QUEUE: "orchestrate",
    EXECUTION_QUEUE: "execute",
}


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


LIVE_STATES = frozenset({JobState.WAITING, JobState.ACTIVE, JobState.DELAYED})
FINISHED_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class GenerationStatus(str, Enum):
    """Status of the triggering entity, reported through the WorkSource."""
    QUEUED = "QUEUED"
    RETRYING = "RETRYING"
    GENERATED = "GENERATED"
    FAILED = "FAILED"


@dataclass
class QueueJob:
    """A job as seen by queue inspection."""
    id: str
    queue: str
    function: str
    state: JobState
    payload: dict[str, Any] = field(default_factory=dict)
    last_error: str = ""
    enqueued_at: float = 0.0
    run_at: float = 0.0
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def entity_id(self) -> str | None:
        return self.payload.get("entity_id")

    @property
    def retry_count(self) -> int:
        return int(self.payload.get("retry_count", 0) or 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "function": self.function,
            "state": self.state.value,
            "entity_id": self.entity_id,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at,
            "run_at": self.run_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
