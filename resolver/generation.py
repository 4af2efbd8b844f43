"""
QA Resolver — Generation Adapter

Opaque call-and-response access to the chat model, plus the validation
boundary for what comes back. Raw generator text is never trusted: the
resolvers run it through parse_json_object() and act on the tagged
result (Ok / Err) instead of indexing into untyped JSON.

Every call is recorded through the GenerationCallLog side channel with
token counts; the credential never appears in the logged request.

Usage:
    adapter = GenerationAdapter(config_provider, call_log=GenerationCallLog(db))
    raw = adapter.generate(
        SYSTEM_PROMPT, user_prompt,
        max_tokens=512, temperature=0.0, source="step-resolver",
    )
    result = parse_json_object(raw)
    if isinstance(result, Err):
        ...
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Union

from langchain_core.messages import HumanMessage, SystemMessage

from resolver.config import ConfigProvider, ResolverConfig
from resolver.errors import GenerationUnavailable, InvalidGenerationOutput
from resolver.llm import create_llm

logger = logging.getLogger("qa_resolver.generation")


# ═══════════════════════════════════════════════════════════════════
# Structured Output Results
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Ok:
    value: Any


@dataclass(frozen=True)
class Err:
    """Validation failure. kind is one of: empty, not_json, not_object, missing_field, invalid."""
    kind: str
    detail: str

    def to_exception(self) -> InvalidGenerationOutput:
        return InvalidGenerationOutput(self.detail, kind=self.kind)


ParseResult = Union[Ok, Err]

_LEADING_FENCE_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"\s*```$")


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence."""
    stripped = (text or "").strip()
    stripped = _LEADING_FENCE_RE.sub("", stripped)
    stripped = _TRAILING_FENCE_RE.sub("", stripped)
    return stripped.strip()


def parse_json_object(text: str | None) -> ParseResult:
    """Parse generator text as a single JSON object."""
    cleaned = strip_code_fences(text or "")
    if not cleaned:
        return Err("empty", "Generator returned an empty response")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        return Err("not_json", f"Generator response is not valid JSON: {e.msg}")
    if not isinstance(parsed, dict):
        return Err("not_object", f"Expected a JSON object, got {type(parsed).__name__}")
    return Ok(parsed)


def require_field(result: ParseResult, name: str) -> ParseResult:
    """Narrow an Ok(dict) to Ok(dict[name]); absent or null is missing_field."""
    if isinstance(result, Err):
        return result
    if result.value.get(name) is None:
        return Err("missing_field", f"Generator response is missing '{name}'")
    return Ok(result.value[name])


# ═══════════════════════════════════════════════════════════════════
# Adapter
# ═══════════════════════════════════════════════════════════════════

def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content or "")


def _usage_from_message(message: Any) -> dict[str, int]:
    usage = getattr(message, "usage_metadata", None) or {}
    if usage:
        prompt = int(usage.get("input_tokens", 0) or 0)
        completion = int(usage.get("output_tokens", 0) or 0)
        return {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": int(usage.get("total_tokens", prompt + completion) or 0),
        }
    token_usage = (getattr(message, "response_metadata", None) or {}).get("token_usage") or {}
    return {
        "prompt_tokens": int(token_usage.get("prompt_tokens", 0) or 0),
        "completion_tokens": int(token_usage.get("completion_tokens", 0) or 0),
        "total_tokens": int(token_usage.get("total_tokens", 0) or 0),
    }


class GenerationAdapter:
    """
    Sends a system + user prompt to the configured chat model and returns
    the raw completion text.

    llm_factory is create_llm by default; tests inject a fake that
    returns a stub model.
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        call_log: Any = None,
        llm_factory: Callable[..., Any] = create_llm,
    ):
        self.config_provider = config_provider
        self.call_log = call_log
        self.llm_factory = llm_factory

    def require_available(self) -> ResolverConfig:
        """Current config; raises GenerationUnavailable without a credential."""
        cfg = self.config_provider.get_config()
        if not cfg.has_credential:
            raise GenerationUnavailable(
                "No generation credential configured. Set OPENAI_API_KEY or the "
                "openai_api_key system config entry."
            )
        return cfg

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.0,
        source: str = "generation",
    ) -> str:
        cfg = self.require_available()
        model = model or cfg.generation_model

        llm = self.llm_factory(
            model=model,
            temperature=temperature,
            provider=cfg.llm_provider,
            api_key=cfg.generation_credential,
            max_tokens=max_tokens,
        )
        message = llm.invoke([
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_prompt),
        ])

        text = _content_text(getattr(message, "content", message)).strip()
        usage = _usage_from_message(message)
        logger.debug(
            "Generation call source=%s model=%s tokens=%d",
            source, model, usage["total_tokens"],
        )

        if self.call_log is not None:
            self.call_log.log_call(
                source=source,
                request={
                    "model": model,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                },
                response={"content": text, "usage": usage},
            )

        if not text:
            raise InvalidGenerationOutput("Generator returned an empty response", kind="empty")
        return text
