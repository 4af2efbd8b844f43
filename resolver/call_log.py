"""
QA Resolver — Generation Call Log

Persists one generation_logs row per generator call: the scrubbed
request, the response, token counts and an estimated USD cost. This is
a side channel. A failure to log is reported and swallowed so it can
never fail a resolution.

Usage:
    log = GenerationCallLog(db)
    log.log_call(source="step-resolver", request=req, response=resp)
    log.summary()
    # {"total_calls": 3, "total_cost_usd": 0.00042, "by_source": {...}, "by_model": {...}}
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any

from resolver.cost import ModelPricing, estimate_cost_usd
from resolver.db import DatabaseBackend

logger = logging.getLogger("qa_resolver.call_log")

REDACTED = "[REDACTED]"
_SECRET_MARKERS = ("api_key", "apikey", "authorization", "credential", "secret", "password", "token")
# token counts are not secrets
_SAFE_KEYS = {"max_tokens", "prompt_tokens", "completion_tokens", "total_tokens"}


def scrub_secrets(payload: Any) -> Any:
    """Recursively replace values of secret-named keys."""
    if isinstance(payload, dict):
        cleaned = {}
        for key, value in payload.items():
            lowered = str(key).lower()
            if lowered not in _SAFE_KEYS and any(m in lowered for m in _SECRET_MARKERS):
                cleaned[key] = REDACTED
            else:
                cleaned[key] = scrub_secrets(value)
        return cleaned
    if isinstance(payload, list):
        return [scrub_secrets(v) for v in payload]
    return payload


def extract_usage(response: dict[str, Any] | None) -> tuple[int, int, int]:
    usage = (response or {}).get("usage") or {}
    prompt = int(usage.get("prompt_tokens") or 0)
    completion = int(usage.get("completion_tokens") or 0)
    total = int(usage.get("total_tokens") or (prompt + completion))
    return prompt, completion, total


class GenerationCallLog:
    """Writes and reads generation_logs rows."""

    def __init__(self, db: DatabaseBackend, pricing: dict[str, ModelPricing] | None = None):
        self.db = db
        self.pricing = pricing

    def log_call(self, source: str, request: dict[str, Any], response: dict[str, Any]) -> None:
        try:
            model = str(request.get("model") or "unknown")
            prompt, completion, total = extract_usage(response)
            cost = estimate_cost_usd(model, prompt, completion, self.pricing)
            self.db.execute(
                """
                INSERT INTO generation_logs (
                    id, source, model, request_payload, response_payload,
                    prompt_tokens, completion_tokens, total_tokens,
                    estimated_cost_usd, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    uuid.uuid4().hex, source, model,
                    json.dumps(scrub_secrets(request), default=str),
                    json.dumps(response, default=str),
                    prompt, completion, total, cost, time.time(),
                ),
            )
        except Exception:
            logger.exception("Failed to persist generation log (source=%s)", source)

    def recent(self, limit: int = 50, source: str | None = None) -> list[dict[str, Any]]:
        if source:
            rows = self.db.fetchall(
                "SELECT * FROM generation_logs WHERE source = ? ORDER BY created_at DESC LIMIT ?",
                (source, limit),
            )
        else:
            rows = self.db.fetchall(
                "SELECT * FROM generation_logs ORDER BY created_at DESC LIMIT ?",
                (limit,),
            )
        for row in rows:
            row["request_payload"] = json.loads(row["request_payload"])
            row["response_payload"] = json.loads(row["response_payload"])
        return rows

    def summary(self) -> dict[str, Any]:
        """Calls, tokens and cost, in total and grouped by source and by model."""
        rows = self.db.fetchall(
            """
            SELECT source, model, COUNT(*) AS calls,
                   SUM(prompt_tokens) AS prompt_tokens,
                   SUM(completion_tokens) AS completion_tokens,
                   SUM(estimated_cost_usd) AS cost_usd
            FROM generation_logs
            GROUP BY source, model
            """
        )

        by_source: dict[str, dict[str, Any]] = {}
        by_model: dict[str, dict[str, Any]] = {}
        for r in rows:
            for bucket, name in ((by_source, r["source"]), (by_model, r["model"])):
                if name not in bucket:
                    bucket[name] = {
                        "calls": 0, "prompt_tokens": 0,
                        "completion_tokens": 0, "cost_usd": 0.0,
                    }
                b = bucket[name]
                b["calls"] += int(r["calls"])
                b["prompt_tokens"] += int(r["prompt_tokens"] or 0)
                b["completion_tokens"] += int(r["completion_tokens"] or 0)
                b["cost_usd"] += float(r["cost_usd"] or 0.0)

        return {
            "total_calls": sum(v["calls"] for v in by_source.values()),
            "total_prompt_tokens": sum(v["prompt_tokens"] for v in by_source.values()),
            "total_completion_tokens": sum(v["completion_tokens"] for v in by_source.values()),
            "total_cost_usd": round(sum(v["cost_usd"] for v in by_source.values()), 8),
            "by_source": {k: {**v, "cost_usd": round(v["cost_usd"], 8)} for k, v in by_source.items()},
            "by_model": {k: {**v, "cost_usd": round(v["cost_usd"], 8)} for k, v in by_model.items()},
        }
