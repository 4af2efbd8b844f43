"""
QA Resolver — Selector Resolution

Turns a free-text step description ("Click the Login button") into a
strategy-tagged locator string ("role:button,Login") through three tiers:

  1. strict     description is already a tagged selector; returned as-is
  2. knowledge  stored selector for (project, application, semantic key)
  3. ai         generator call, validated, then upserted into knowledge

A generated selector is only saved after it passes the action check
(fill → editable element, click → clickable element) and, when an
interactive snapshot was supplied, after it is found in that snapshot.
Failures raise; a guessed selector is never returned.

Usage:
    resolver = SelectorResolver(SelectorKnowledgeStore(db), adapter)
    result = resolver.resolve(
        "Click Login", project_id="p1", application_id="app1",
    )
    result.selector        # "role:button,Login"
    result.resolved_from   # "strict" | "knowledge" | "ai"
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from resolver.errors import InvalidGenerationOutput, ResolverError
from resolver.generation import Err, GenerationAdapter, Ok, ParseResult, parse_json_object
from resolver.keys import build_selector_key
from resolver.logging import ResolutionTrace
from resolver.store import SelectorKnowledgeStore

logger = logging.getLogger("qa_resolver.selector")

SOURCE = "step-resolver"
MAX_TOKENS = 512
TEMPERATURE = 0.0
MAX_SNAPSHOT_ELEMENTS = 80

LOCATOR_STRATEGIES = ("css", "role", "text", "xpath")
# role:= is the legacy spelling; longest prefix first
STRICT_PREFIXES = ("role:=", "role:", "css:", "xpath:", "text:")

SYSTEM_PROMPT = """You resolve test step targets into Playwright-friendly selectors.

You MUST respect the action type when selecting elements.

Rules:

For action = "fill":
- The element MUST be editable: input, textarea or contenteditable=true.
- NEVER return a button, a link, or a div/span without contenteditable.
- If multiple matches exist, prioritize:
  1) input[type="password" | "text" | "email" | "number"]
  2) role="textbox"
  3) input with matching label/name

For action = "click":
- The element MUST be clickable: button, link, menuitem, checkbox or radio.
- Prefer role-based selectors with the accessible name.
- The name MUST exactly match the visible accessible name. Do NOT extend,
  shorten or infer additional words. If the target says "Login", do NOT
  select "Login as Operator".

For action = "assert_text":
- Return the selector of the container element.
- Put the expected text into "resolvedValue".

For action = "navigate":
- The element may be a clickable container (div, card, panel).
- Text-based or CSS-based selectors are allowed.

Avoid ambiguous matches. If multiple elements match, choose the most
interactive and specific one.

Respond ONLY in JSON:
{
  "selector": "string",
  "locatorStrategy": "css" | "role" | "text" | "xpath",
  "resolvedValue": "optional"
}

When an Interactive Snapshot is provided:
- Select elements ONLY from the snapshot list. Do NOT guess elements not listed.
- If no valid match exists, return {"selector": null, "locatorStrategy": "css", "noMatch": true}.
- Prefer exact visible text equality."""


# ═══════════════════════════════════════════════════════════════════
# Action Inference and Selector Formatting
# ═══════════════════════════════════════════════════════════════════

_ACTION_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("click", "press", "submit"), "click"),
    (("fill", "type", "enter"), "fill"),
    (("select",), "select"),
    (("navigate", "go to", "open"), "navigate"),
    (("visible", "displayed"), "assert_visible"),
    (("redirect", "url"), "assert_url"),
    (("contain", "text"), "assert_text"),
    (("hover",), "hover"),
    (("wait",), "wait"),
)


def infer_action(description: str | None) -> str:
    """Ordered substring heuristics over the lowercased description; default click."""
    text = (description or "").lower()
    for needles, action in _ACTION_RULES:
        if any(n in text for n in needles):
            return action
    return "click"


def format_selector_for_storage(strategy: str, selector: str | None) -> str:
    sel = (selector or "").strip() or "body"
    if strategy in ("role", "text", "xpath"):
        return f"{strategy}:{sel}"
    return f"css:{sel}"


_ROLE_NAME_RE = re.compile(
    r"""(?:^role\s*=\s*)?(\w+)\s*\[\s*name\s*=\s*["']([^"']*)["']\s*\]""",
    re.IGNORECASE,
)
_ROLE_PREFIX_RE = re.compile(r"^role:=?\s*", re.IGNORECASE)


def normalize_role_selector(selector: str | None) -> str:
    """Reduce role=button[name="X"] / button[name='X'] to the compact form button,X."""
    s = _ROLE_PREFIX_RE.sub("", (selector or "").strip())
    if s.startswith("="):
        s = s[1:].strip()
    match = _ROLE_NAME_RE.search(s)
    if match:
        return f"{match.group(1)},{match.group(2)}"
    return s


def parse_strict_selector(text: str | None) -> tuple[str, str] | None:
    """(strategy, selector) if text already carries a strategy prefix, else None."""
    t = (text or "").strip()
    lower = t.lower()
    for prefix in STRICT_PREFIXES:
        if lower.startswith(prefix):
            strategy = "role" if prefix.startswith("role") else prefix[:-1]
            selector = t[len(prefix):].strip()
            if strategy == "role":
                selector = normalize_role_selector(selector)
            return strategy, selector or t
    return None


def normalize_stored_selector(stored: str) -> str:
    """Re-tag a stored selector; untagged legacy values are treated as css."""
    strict = parse_strict_selector(stored)
    if strict is None:
        return format_selector_for_storage("css", stored)
    return format_selector_for_storage(*strict)


# ═══════════════════════════════════════════════════════════════════
# Save-time Validation
# ═══════════════════════════════════════════════════════════════════

_FILL_ALLOWED = (
    re.compile(r"\binput\b", re.IGNORECASE),
    re.compile(r"\btextarea\b", re.IGNORECASE),
    re.compile(r"contenteditable", re.IGNORECASE),
    re.compile(r"\btextbox\b", re.IGNORECASE),
    re.compile(r"""\[type\s*=\s*["']?(?:text|email|password|number|search)["']?\]""", re.IGNORECASE),
)
_FILL_REJECTED = re.compile(
    r"""\binput\b.*\[type\s*=\s*["']?(?:submit|button|image)["']?\]""", re.IGNORECASE,
)
_CLICK_ALLOWED = (
    re.compile(r"^role:", re.IGNORECASE),
    re.compile(r"""role\s*=\s*["']?(?:button|link|menuitem|checkbox|radio)["']?""", re.IGNORECASE),
    re.compile(r"^button", re.IGNORECASE),
    re.compile(r"^a\b", re.IGNORECASE),
    re.compile(r"""\[role\s*=\s*["']?(?:button|link)["']?\]""", re.IGNORECASE),
    re.compile(r"""\[type\s*=\s*["']?(?:submit|button)["']?\]""", re.IGNORECASE),
)
_STRATEGY_PREFIX_RE = re.compile(r"^(css|role|text|xpath):", re.IGNORECASE)


def is_body_selector_for_fill(stored: str | None, action: str | None) -> bool:
    """css:body (in any spelling) is never a fill target."""
    if not (stored or "").strip() or (action or "").lower() != "fill":
        return False
    s = stored.strip().lower()
    return s in ("css:body", "body", "css: body") or s.endswith(" body")


def validate_selector_before_save(action: str | None, stored: str | None) -> None:
    """Raise InvalidGenerationOutput if the selector cannot serve the action."""
    action_lower = (action or "click").lower()
    sel = (stored or "").strip()
    if not sel:
        raise InvalidGenerationOutput("Selector cannot be empty", kind="invalid_selector")

    if action_lower == "fill":
        if is_body_selector_for_fill(sel, "fill"):
            raise InvalidGenerationOutput(
                "Selector 'css:body' is invalid for fill actions", kind="invalid_selector",
            )
        if _FILL_REJECTED.search(sel):
            raise InvalidGenerationOutput(
                "Fill selector cannot target submit/button inputs", kind="invalid_selector",
            )
        bare = _STRATEGY_PREFIX_RE.sub("", sel)
        if not any(p.search(bare) for p in _FILL_ALLOWED):
            raise InvalidGenerationOutput(
                f"Fill selector must target input, textarea or contenteditable. Got: {sel[:80]}",
                kind="invalid_selector",
            )
        return

    if action_lower == "click":
        lower = sel.lower()
        if lower.startswith("role:"):
            part = sel
        elif lower.startswith("text:"):
            part = "text"
        elif lower.startswith("css:"):
            part = sel[4:].strip()
        else:
            part = sel
        if not any(p.search(part) for p in _CLICK_ALLOWED):
            raise InvalidGenerationOutput(
                f"Click selector must target a button, link or clickable element. Got: {sel[:80]}",
                kind="invalid_selector",
            )


# ═══════════════════════════════════════════════════════════════════
# Interactive Snapshot
# ═══════════════════════════════════════════════════════════════════

def _element_name(el: dict[str, Any]) -> str:
    return (
        el.get("visible_text") or el.get("aria-label") or el.get("name") or el.get("placeholder") or ""
    ).strip().lower()


def is_selector_in_snapshot(selector: str, strategy: str, snapshot: list[dict[str, Any]]) -> bool:
    """
    Loose containment check of a generated selector against the snapshot.

    role  → role (or tag) equal and names contain one another
    text  → visible text and selector text contain one another
    css / xpath → selector mentions an element's id, name="..." or tag
    """
    sel = (selector or "").strip()
    if not sel:
        return False

    if strategy == "role":
        role_or_tag, _, name_part = sel.partition(",")
        role_or_tag = role_or_tag.strip().lower()
        name_part = name_part.strip().lower()
        for el in snapshot:
            el_role = (el.get("role") or el.get("tag") or "").lower()
            el_name = _element_name(el)
            if el_role == role_or_tag and (not name_part or name_part in el_name or el_name in name_part):
                return True

    if strategy == "text":
        wanted = sel.lower()
        for el in snapshot:
            vt = (el.get("visible_text") or "").lower()
            if wanted in vt or vt in wanted:
                return True

    if strategy in ("css", "xpath"):
        for el in snapshot:
            if el.get("id") and el["id"] in sel:
                return True
            if el.get("name") and f'name="{el["name"]}"' in sel:
                return True
            if el.get("tag") and el["tag"] in sel:
                return True
    return False


def validate_selector_payload(payload: ParseResult) -> ParseResult:
    """Ok((strategy, selector, resolved_value)) or Err."""
    if isinstance(payload, Err):
        return payload
    obj = payload.value
    if obj.get("noMatch") is True:
        return Err("no_match", "Generator found no valid match in the interactive snapshot")

    selector = obj.get("selector")
    if not isinstance(selector, str) or not selector.strip():
        return Err("missing_field", "Generator response is missing 'selector'")

    strategy = obj.get("locatorStrategy")
    if strategy not in LOCATOR_STRATEGIES:
        strategy = "css"
    selector = selector.strip()
    if strategy == "role":
        selector = normalize_role_selector(selector)

    resolved_value = obj.get("resolvedValue")
    if resolved_value is not None:
        resolved_value = str(resolved_value)
    return Ok((strategy, selector, resolved_value))


# ═══════════════════════════════════════════════════════════════════
# Resolver
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SelectorResolution:
    selector: str
    resolved_from: str
    semantic_key: str | None
    action: str
    resolved_value: str | None = None


class SelectorResolver:
    """Strict → knowledge → generation pipeline for step selectors."""

    def __init__(
        self,
        store: SelectorKnowledgeStore,
        generator: GenerationAdapter,
        model: str | None = None,
    ):
        self.store = store
        self.generator = generator
        self.model = model

    def resolve(
        self,
        description: str,
        page_context: str | None = None,
        *,
        project_id: str,
        application_id: str,
        semantic_key: str | None = None,
        skip_knowledge_lookup: bool = False,
        snapshot: list[dict[str, Any]] | None = None,
    ) -> SelectorResolution:
        action = infer_action(description)

        strict = parse_strict_selector(description)
        if strict is not None:
            return SelectorResolution(
                selector=format_selector_for_storage(*strict),
                resolved_from="strict",
                semantic_key=semantic_key,
                action=action,
            )

        key = semantic_key or build_selector_key(action, description)
        trace = ResolutionTrace(project_id=project_id, application_id=application_id)

        if not skip_knowledge_lookup:
            hit = self._lookup(project_id, application_id, key, action)
            if hit is not None:
                trace.knowledge_hit("selector", key)
                return SelectorResolution(
                    selector=hit, resolved_from="knowledge", semantic_key=key, action=action,
                )
            trace.knowledge_miss("selector", key)

        try:
            stored, resolved_value = self._generate(description, action, key, page_context, snapshot, trace)
            validate_selector_before_save(action, stored)
        except ResolverError as e:
            trace.resolution_failed("selector", key, e)
            raise

        self.store.upsert(project_id, application_id, key, stored)
        trace.knowledge_persist("selector", key)
        return SelectorResolution(
            selector=stored,
            resolved_from="ai",
            semantic_key=key,
            action=action,
            resolved_value=resolved_value,
        )

    def _lookup(self, project_id: str, application_id: str, key: str, action: str) -> str | None:
        record = self.store.find(project_id, application_id, key)
        if record is None or not record.selector:
            return None
        if is_body_selector_for_fill(record.selector, action):
            logger.warning("Ignoring stored css:body selector for fill (key=%s)", key)
            return None
        self.store.increment_usage(project_id, application_id, key)
        return normalize_stored_selector(record.selector)

    def _generate(
        self,
        description: str,
        action: str,
        key: str,
        page_context: str | None,
        snapshot: list[dict[str, Any]] | None,
        trace: ResolutionTrace,
    ) -> tuple[str, str | None]:
        self.generator.require_available()
        if snapshot is not None and len(snapshot) == 0:
            raise ResolverError("No interactive elements found on page")
        elements = snapshot[:MAX_SNAPSHOT_ELEMENTS] if snapshot else []

        lines = [f"Action: {action}", f"Target: {description}"]
        if page_context:
            lines.append(f"Page context: {page_context}")
        if elements:
            lines.append("Interactive Snapshot:")
            lines.append(json.dumps(elements, indent=2))

        trace.generation_start("selector", key, SOURCE)
        started = time.monotonic()
        raw = self.generator.generate(
            SYSTEM_PROMPT,
            "\n".join(lines),
            model=self.model,
            max_tokens=MAX_TOKENS,
            temperature=TEMPERATURE,
            source=SOURCE,
        )
        trace.generation_end("selector", key, time.monotonic() - started, len(raw))

        result = validate_selector_payload(parse_json_object(raw))
        if isinstance(result, Err):
            raise result.to_exception()
        strategy, selector, resolved_value = result.value

        if elements and not is_selector_in_snapshot(selector, strategy, elements):
            raise InvalidGenerationOutput(
                "Generated selector is not present in the interactive snapshot",
                kind="not_in_snapshot",
            )
        return format_selector_for_storage(strategy, selector), resolved_value
