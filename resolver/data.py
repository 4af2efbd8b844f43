"""
QA Resolver — Test Data Resolution

Resolves abstract data requirements ("a LOGIN credential for the buyer
role in the checkout scenario") to concrete JSON values. Each
requirement maps to a data key; a stored value is returned unchanged,
otherwise the generator is asked for {"value": ...} and the result is
persisted once. Later runs, and concurrent workers, all see that first
value.

Requirements in a batch resolve strictly in order and each is persisted
before the next starts. The first failure aborts the batch.

Usage:
    resolver = DataResolver(DataKnowledgeStore(db), adapter)
    data = resolver.resolve_requirements(
        "p1",
        [DataRequirement(alias="user", type="LOGIN", scenario="checkout", role="buyer")],
        ResolutionContext(test_case_title="Buyer can check out"),
    )
    interpolate_placeholders("{{user.username}}", data)
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from resolver.errors import ResolverError, UnresolvedPlaceholder
from resolver.generation import Err, GenerationAdapter, parse_json_object, require_field
from resolver.keys import build_data_key
from resolver.logging import ResolutionTrace
from resolver.store import DataKnowledgeStore

logger = logging.getLogger("qa_resolver.data")

SOURCE = "data-generation"
MAX_TOKENS = 1024
TEMPERATURE = 0.2
NARRATIVE_LIMIT = 500

SYSTEM_PROMPT = (
    "You generate structured JSON test data only. No explanation, no markdown, no code block. "
    'Return a single JSON object with a "value" key containing the structured data matching '
    "the requested type. Types are domain-specific (e.g. LOGIN → {username, password}; "
    "USER → {email, name}; FORM_DATA → form fields). No login steps, no placeholder text. "
    "Valid JSON only."
)


@dataclass(frozen=True)
class DataRequirement:
    """One named data need of a test case."""
    alias: str
    type: str
    scenario: str
    role: str | None = None

    @property
    def data_key(self) -> str:
        return build_data_key(self.scenario, self.role, self.type)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DataRequirement:
        return cls(
            alias=d["alias"],
            type=d["type"],
            scenario=d["scenario"],
            role=d.get("role") or None,
        )


@dataclass(frozen=True)
class ResolutionContext:
    """Ticket and test case narrative, used only when generation is needed."""
    test_case_title: str = ""
    ticket_title: str | None = None
    ticket_description: str | None = None
    acceptance_criteria: str | None = None
    test_case_scenario: str | None = None


def build_user_prompt(requirement: DataRequirement, context: ResolutionContext) -> str:
    role_line = f"- Role: {requirement.role}" if requirement.role else "- Role: (none)"
    return "\n".join([
        "Generate test data for:",
        f"- Type: {requirement.type}",
        f"- Scenario: {requirement.scenario}",
        role_line,
        f"- Ticket: {context.ticket_title or '(none)'}",
        f"- Ticket description: {(context.ticket_description or '')[:NARRATIVE_LIMIT]}",
        f"- Acceptance criteria: {(context.acceptance_criteria or '')[:NARRATIVE_LIMIT]}",
        f"- Test case: {context.test_case_title}",
        f"- Test case scenario: {context.test_case_scenario or '(none)'}",
        "",
        'Return JSON: { "value": { ... } }',
    ])


class DataResolver:
    """Lookup → generate → persist for data requirements."""

    def __init__(
        self,
        store: DataKnowledgeStore,
        generator: GenerationAdapter,
        model: str | None = None,
    ):
        self.store = store
        self.generator = generator
        self.model = model

    def resolve_requirement(
        self,
        project_id: str,
        requirement: DataRequirement,
        context: ResolutionContext,
    ) -> Any:
        key = requirement.data_key
        trace = ResolutionTrace(project_id=project_id)

        existing = self.store.find(project_id, key)
        if existing is not None:
            trace.knowledge_hit("data", key)
            return existing.value
        trace.knowledge_miss("data", key)

        try:
            value = self._generate(requirement, context, key, trace)
        except ResolverError as e:
            trace.resolution_failed("data", key, e)
            raise

        record = self.store.create(
            project_id,
            key,
            requirement_type=requirement.type,
            scenario=requirement.scenario,
            role=requirement.role,
            value=value,
        )
        trace.knowledge_persist("data", key)
        return record.value

    def resolve_requirements(
        self,
        project_id: str,
        requirements: list[DataRequirement],
        context: ResolutionContext,
    ) -> dict[str, Any]:
        """{alias: value} for every requirement, in order; all-or-nothing."""
        resolved: dict[str, Any] = {}
        for requirement in requirements:
            resolved[requirement.alias] = self.resolve_requirement(project_id, requirement, context)
        return resolved

    def _generate(
        self,
        requirement: DataRequirement,
        context: ResolutionContext,
        key: str,
        trace: ResolutionTrace,
    ) -> Any:
        self.generator.require_available()
        trace.generation_start("data", key, SOURCE)
        started = time.monotonic()
        raw = self.generator.generate(
            SYSTEM_PROMPT,
            build_user_prompt(requirement, context),
            model=self.model,
            max_tokens=MAX_TOKENS,
            temperature=TEMPERATURE,
            source=SOURCE,
        )
        trace.generation_end("data", key, time.monotonic() - started, len(raw))

        result = require_field(parse_json_object(raw), "value")
        if isinstance(result, Err):
            raise result.to_exception()
        return result.value


# ═══════════════════════════════════════════════════════════════════
# Placeholders and Flattening
# ═══════════════════════════════════════════════════════════════════

_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")
_SEGMENT_SPLIT_RE = re.compile(r"[.\[]")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _get_path(obj: Any, path: str) -> Any:
    current = obj
    for part in (p for p in _SEGMENT_SPLIT_RE.split(path.replace("]", "")) if p):
        if isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
        if current is None:
            return None
    return current


def interpolate_placeholders(text: str, resolved_data: dict[str, Any]) -> str:
    """
    Replace {{alias.path}} / {{alias.items[n].path}} with resolved values.

    Raises UnresolvedPlaceholder when a path is missing or null.
    """
    def _replace(match: re.Match) -> str:
        raw = match.group(1)
        alias, _, rest = raw.strip().partition(".")
        base = resolved_data.get(alias)
        value = _get_path(base, rest) if rest else base
        if value is None:
            raise UnresolvedPlaceholder(raw)
        return _stringify(value)

    return _PLACEHOLDER_RE.sub(_replace, text)


def flatten_resolved_data(resolved_data: dict[str, Any]) -> dict[str, str]:
    """{"alias.path[idx]": "string"}; nulls are skipped."""
    variables: dict[str, str] = {}

    def _walk(obj: Any, prefix: str) -> None:
        if obj is None:
            return
        if isinstance(obj, list):
            for i, item in enumerate(obj):
                _walk(item, f"{prefix}[{i}]")
        elif isinstance(obj, dict):
            for k, v in obj.items():
                _walk(v, f"{prefix}.{k}" if prefix else str(k))
        else:
            variables[prefix] = _stringify(obj)

    for alias, value in resolved_data.items():
        _walk(value, alias)
    return variables
