"""
QA Resolver — Knowledge Store

Durable key → value tables, one per artifact kind:

  selector_knowledge  (project_id, application_id, semantic_key) → selector
  data_knowledge      (project_id, data_key) → structured JSON value

The composite unique keys are the only concurrency control. Selector
writes are upserts that bump usage_count; data writes are insert-if-absent
so the first persisted value wins and never changes afterwards.

Usage:
    from resolver.db import create_backend
    from resolver.store import SelectorKnowledgeStore, DataKnowledgeStore, ensure_schema

    db = create_backend("sqlite", path=":memory:")
    ensure_schema(db)
    selectors = SelectorKnowledgeStore(db)
    selectors.upsert("p1", "app1", "login_button", "role:button,Login")
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, asdict
from typing import Any

from resolver.db import DatabaseBackend
from resolver.errors import NotFound

logger = logging.getLogger("qa_resolver.store")


SCHEMA = """
CREATE TABLE IF NOT EXISTS selector_knowledge (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    application_id TEXT NOT NULL,
    semantic_key TEXT NOT NULL,
    selector TEXT NOT NULL,
    confidence_score DOUBLE PRECISION NOT NULL DEFAULT 1.0,
    usage_count INTEGER NOT NULL DEFAULT 0,
    last_verified_at DOUBLE PRECISION,
    created_at DOUBLE PRECISION NOT NULL,
    updated_at DOUBLE PRECISION NOT NULL,
    UNIQUE (project_id, application_id, semantic_key)
);

CREATE INDEX IF NOT EXISTS idx_selector_knowledge_project ON selector_knowledge(project_id);

CREATE TABLE IF NOT EXISTS data_knowledge (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    data_key TEXT NOT NULL,
    requirement_type TEXT NOT NULL,
    scenario TEXT NOT NULL,
    role TEXT,
    value TEXT NOT NULL,
    source TEXT,
    verified INTEGER NOT NULL DEFAULT 1,
    previously_passed INTEGER NOT NULL DEFAULT 0,
    created_at DOUBLE PRECISION NOT NULL,
    updated_at DOUBLE PRECISION NOT NULL,
    UNIQUE (project_id, data_key)
);

CREATE INDEX IF NOT EXISTS idx_data_knowledge_project ON data_knowledge(project_id);

CREATE TABLE IF NOT EXISTS generation_logs (
    id TEXT PRIMARY KEY,
    source TEXT NOT NULL,
    model TEXT NOT NULL,
    request_payload TEXT NOT NULL,
    response_payload TEXT NOT NULL,
    prompt_tokens INTEGER,
    completion_tokens INTEGER,
    total_tokens INTEGER,
    estimated_cost_usd DOUBLE PRECISION,
    created_at DOUBLE PRECISION NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_generation_logs_created ON generation_logs(created_at);

CREATE TABLE IF NOT EXISTS system_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at DOUBLE PRECISION NOT NULL
);
"""


def ensure_schema(db: DatabaseBackend) -> None:
    """Create all resolver tables if they do not exist."""
    db.executescript(SCHEMA)


def _new_id() -> str:
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Selector Knowledge
# ═══════════════════════════════════════════════════════════════════

@dataclass
class SelectorKnowledgeRecord:
    """One learned selector for (project, application, semantic key)."""
    id: str
    project_id: str
    application_id: str
    semantic_key: str
    selector: str
    confidence_score: float
    usage_count: int
    last_verified_at: float | None
    created_at: float
    updated_at: float

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SelectorKnowledgeRecord:
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            application_id=row["application_id"],
            semantic_key=row["semantic_key"],
            selector=row["selector"],
            confidence_score=float(row["confidence_score"]),
            usage_count=int(row["usage_count"]),
            last_verified_at=row.get("last_verified_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SelectorKnowledgeStore:
    """Selector knowledge table access."""

    def __init__(self, db: DatabaseBackend):
        self.db = db

    def find(
        self,
        project_id: str,
        application_id: str,
        semantic_key: str,
    ) -> SelectorKnowledgeRecord | None:
        row = self.db.fetchone(
            "SELECT * FROM selector_knowledge "
            "WHERE project_id = ? AND application_id = ? AND semantic_key = ?",
            (project_id, application_id, semantic_key),
        )
        return SelectorKnowledgeRecord.from_row(row) if row else None

    def upsert(
        self,
        project_id: str,
        application_id: str,
        semantic_key: str,
        selector: str,
        confidence_score: float = 1.0,
    ) -> SelectorKnowledgeRecord:
        """Insert a new record (usage_count=1) or overwrite the selector and bump usage."""
        now = time.time()
        self.db.execute(
            """
            INSERT INTO selector_knowledge (
                id, project_id, application_id, semantic_key, selector,
                confidence_score, usage_count, last_verified_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
            ON CONFLICT (project_id, application_id, semantic_key) DO UPDATE SET
                selector = excluded.selector,
                confidence_score = excluded.confidence_score,
                usage_count = selector_knowledge.usage_count + 1,
                last_verified_at = excluded.last_verified_at,
                updated_at = excluded.updated_at
            """,
            (
                _new_id(), project_id, application_id, semantic_key, selector,
                confidence_score, now, now, now,
            ),
        )
        record = self.find(project_id, application_id, semantic_key)
        logger.debug(
            "Upserted selector knowledge %s/%s/%s (usage=%d)",
            project_id, application_id, semantic_key, record.usage_count,
        )
        return record

    def increment_usage(self, project_id: str, application_id: str, semantic_key: str) -> bool:
        """Record a cache hit. Returns False if the record does not exist."""
        now = time.time()
        self.db.execute(
            "UPDATE selector_knowledge "
            "SET usage_count = usage_count + 1, last_verified_at = ?, updated_at = ? "
            "WHERE project_id = ? AND application_id = ? AND semantic_key = ?",
            (now, now, project_id, application_id, semantic_key),
        )
        return self.db.rowcount > 0

    def get(self, record_id: str) -> SelectorKnowledgeRecord:
        row = self.db.fetchone("SELECT * FROM selector_knowledge WHERE id = ?", (record_id,))
        if row is None:
            raise NotFound(f"Selector knowledge record '{record_id}' not found")
        return SelectorKnowledgeRecord.from_row(row)

    def list_for_project(
        self,
        project_id: str,
        application_id: str | None = None,
    ) -> list[SelectorKnowledgeRecord]:
        if application_id is None:
            rows = self.db.fetchall(
                "SELECT * FROM selector_knowledge WHERE project_id = ? "
                "ORDER BY application_id, semantic_key",
                (project_id,),
            )
        else:
            rows = self.db.fetchall(
                "SELECT * FROM selector_knowledge WHERE project_id = ? AND application_id = ? "
                "ORDER BY semantic_key",
                (project_id, application_id),
            )
        return [SelectorKnowledgeRecord.from_row(r) for r in rows]


# ═══════════════════════════════════════════════════════════════════
# Data Knowledge
# ═══════════════════════════════════════════════════════════════════

@dataclass
class DataKnowledgeRecord:
    """One generated test data value for (project, data key)."""
    id: str
    project_id: str
    data_key: str
    requirement_type: str
    scenario: str
    role: str | None
    value: Any
    source: str | None
    verified: bool
    previously_passed: bool
    created_at: float
    updated_at: float

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> DataKnowledgeRecord:
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            data_key=row["data_key"],
            requirement_type=row["requirement_type"],
            scenario=row["scenario"],
            role=row.get("role"),
            value=json.loads(row["value"]),
            source=row.get("source"),
            verified=bool(row["verified"]),
            previously_passed=bool(row["previously_passed"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DataKnowledgeStore:
    """Data knowledge table access. Values are write-once."""

    def __init__(self, db: DatabaseBackend):
        self.db = db

    def find(self, project_id: str, data_key: str) -> DataKnowledgeRecord | None:
        row = self.db.fetchone(
            "SELECT * FROM data_knowledge WHERE project_id = ? AND data_key = ?",
            (project_id, data_key),
        )
        return DataKnowledgeRecord.from_row(row) if row else None

    def create(
        self,
        project_id: str,
        data_key: str,
        requirement_type: str,
        scenario: str,
        role: str | None,
        value: Any,
        source: str = "ai",
    ) -> DataKnowledgeRecord:
        """
        Persist a value unless one already exists for (project, key).

        Returns the stored record, which is the earlier value when a
        concurrent writer got there first.
        """
        now = time.time()
        self.db.execute(
            """
            INSERT INTO data_knowledge (
                id, project_id, data_key, requirement_type, scenario, role,
                value, source, verified, previously_passed, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, 0, ?, ?)
            ON CONFLICT (project_id, data_key) DO NOTHING
            """,
            (
                _new_id(), project_id, data_key, requirement_type, scenario, role,
                json.dumps(value), source, now, now,
            ),
        )
        if self.db.rowcount == 0:
            logger.info("Data key %s/%s already persisted; keeping stored value", project_id, data_key)
        return self.find(project_id, data_key)

    def mark_previously_passed(self, project_id: str, data_key: str) -> bool:
        self.db.execute(
            "UPDATE data_knowledge SET previously_passed = 1, updated_at = ? "
            "WHERE project_id = ? AND data_key = ?",
            (time.time(), project_id, data_key),
        )
        return self.db.rowcount > 0

    def get(self, project_id: str, record_id: str) -> DataKnowledgeRecord:
        row = self.db.fetchone(
            "SELECT * FROM data_knowledge WHERE id = ? AND project_id = ?",
            (record_id, project_id),
        )
        if row is None:
            raise NotFound(f"Data knowledge record '{record_id}' not found in project '{project_id}'")
        return DataKnowledgeRecord.from_row(row)

    def delete(self, project_id: str, record_id: str) -> None:
        """Operator removal; the next resolution for the key regenerates it."""
        self.get(project_id, record_id)
        self.db.execute(
            "DELETE FROM data_knowledge WHERE id = ? AND project_id = ?",
            (record_id, project_id),
        )
        logger.info("Deleted data knowledge %s from project %s", record_id, project_id)

    def list_for_project(self, project_id: str) -> list[DataKnowledgeRecord]:
        rows = self.db.fetchall(
            "SELECT * FROM data_knowledge WHERE project_id = ? ORDER BY data_key",
            (project_id,),
        )
        return [DataKnowledgeRecord.from_row(r) for r in rows]
