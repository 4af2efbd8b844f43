"""
QA Resolver — Semantic Key Derivation

Pure functions that turn a resolution need into the cache coordinate used
by the knowledge store. The same builder MUST be used for insertion and
lookup; no key logic is duplicated elsewhere.

Selector keys come from (action, target); data keys come from
(scenario, role, type). Both are total: any input, including None or
whitespace, yields a non-empty key.

Usage:
    from resolver.keys import build_selector_key, build_data_key

    build_selector_key("click", "Login")           # "login_button"
    build_selector_key("fill", "Search box")       # "search_input"
    build_data_key("checkout", "buyer", "login")   # "CHECKOUT_BUYER_LOGIN"
"""

from __future__ import annotations

import re

_PLACEHOLDER_RE = re.compile(r"\{\{[^}]*\}\}")
_PARENTHETICAL_RE = re.compile(r"\([^)]*\)")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_NON_ALNUM_RUN_RE = re.compile(r"[^a-z0-9]+")
_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_ACTION = "click"
DEFAULT_TARGET = "target"


def normalize_target(target: str | None) -> str:
    """Lowercase, drop {{vars}} and (asides), keep only alphanumerics and single spaces."""
    text = (target or "").lower()
    text = _PLACEHOLDER_RE.sub("", text)
    text = _PARENTHETICAL_RE.sub("", text)
    text = _NON_ALNUM_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def _safe_token(text: str, default: str) -> str:
    token = _NON_ALNUM_RUN_RE.sub("_", text.lower()).strip("_")
    return token or default


def build_selector_key(action: str | None, target: str | None) -> str:
    """
    Build the selector knowledge key for an (action, target) pair.

    Intent table, first match wins:
      fill  + target contains "search"   → search_input
      click + target is "login"          → login_button
      click + target contains "register" → register_button
      assert_text                        → assert_container
      otherwise                          → {action}_{target}
    """
    normalized = normalize_target(target)
    action_lower = (action or "").strip().lower() or DEFAULT_ACTION

    if action_lower == "fill" and "search" in normalized:
        return "search_input"
    # "click login" is what a step description like "Click Login" normalizes to
    if action_lower == "click" and normalized in ("login", "click login"):
        return "login_button"
    if action_lower == "click" and "register" in normalized:
        return "register_button"
    if action_lower == "assert_text":
        return "assert_container"

    safe_action = _safe_token(action_lower, DEFAULT_ACTION)
    safe_target = _safe_token(normalized, DEFAULT_TARGET)
    return f"{safe_action}_{safe_target}"


def _upper_compact(value: object) -> str:
    if value is None:
        return ""
    return _WHITESPACE_RE.sub("", str(value)).upper()


def build_data_key(
    scenario: str | None,
    role: str | None,
    requirement_type: str | None,
) -> str:
    """
    Build the data knowledge key for a requirement.

    {SCENARIO}_{ROLE}_{TYPE} when role is non-empty, else {SCENARIO}_{TYPE}.
    """
    type_part = _upper_compact(requirement_type)
    scenario_part = _upper_compact(scenario)
    role_part = _upper_compact(role)

    if role_part:
        return f"{scenario_part}_{role_part}_{type_part}"
    return f"{scenario_part}_{type_part}"
