"""
QA Resolver — Selector Resolution Tests

Strict → knowledge → generation, with a scripted generator.
"""

import json
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from resolver.db import SQLiteBackend
from resolver.errors import GenerationUnavailable, InvalidGenerationOutput, ResolverError
from resolver.generation import Ok
from resolver.selector import (
    SOURCE,
    SelectorResolver,
    format_selector_for_storage,
    infer_action,
    is_selector_in_snapshot,
    normalize_role_selector,
    normalize_stored_selector,
    parse_strict_selector,
    validate_selector_before_save,
    validate_selector_payload,
)
from resolver.store import SelectorKnowledgeStore, ensure_schema


class ScriptedGenerator:
    """Returns queued responses; records every call."""

    def __init__(self, *responses, available=True):
        self.responses = list(responses)
        self.available = available
        self.calls = []

    def require_available(self):
        if not self.available:
            raise GenerationUnavailable("no credential")

    def generate(self, system_prompt, user_prompt, **kwargs):
        self.calls.append({"system": system_prompt, "user": user_prompt, **kwargs})
        return self.responses.pop(0)


def _payload(**obj):
    return json.dumps(obj)


class TestHelpers(unittest.TestCase):

    def test_infer_action(self):
        self.assertEqual(infer_action("Click the Login button"), "click")
        self.assertEqual(infer_action("Type the email"), "fill")
        self.assertEqual(infer_action("Select a country"), "select")
        self.assertEqual(infer_action("Go to settings"), "navigate")
        self.assertEqual(infer_action("Banner is displayed"), "assert_visible")
        self.assertEqual(infer_action("Hover the avatar"), "hover")
        self.assertEqual(infer_action("Something else"), "click")
        self.assertEqual(infer_action(None), "click")

    def test_format_for_storage(self):
        self.assertEqual(format_selector_for_storage("role", "button,Login"), "role:button,Login")
        self.assertEqual(format_selector_for_storage("css", "#q"), "css:#q")
        self.assertEqual(format_selector_for_storage("weird", "#q"), "css:#q")
        self.assertEqual(format_selector_for_storage("css", "  "), "css:body")

    def test_normalize_role_selector(self):
        self.assertEqual(normalize_role_selector('role=button[name="Login"]'), "button,Login")
        self.assertEqual(normalize_role_selector("button[name='Sign in']"), "button,Sign in")
        self.assertEqual(normalize_role_selector("button,Login"), "button,Login")

    def test_parse_strict_selector(self):
        self.assertEqual(parse_strict_selector("css:#submit"), ("css", "#submit"))
        self.assertEqual(parse_strict_selector('role:=button[name="Go"]'), ("role", "button,Go"))
        self.assertEqual(parse_strict_selector("XPATH://a"), ("xpath", "//a"))
        self.assertIsNone(parse_strict_selector("Click Login"))

    def test_normalize_stored_selector(self):
        self.assertEqual(normalize_stored_selector("#legacy"), "css:#legacy")
        self.assertEqual(normalize_stored_selector("role:button,Login"), "role:button,Login")


class TestSaveValidation(unittest.TestCase):

    def assertRejected(self, action, selector):
        with self.assertRaises(InvalidGenerationOutput) as ctx:
            validate_selector_before_save(action, selector)
        self.assertEqual(ctx.exception.kind, "invalid_selector")

    def test_fill_accepts_editable(self):
        for sel in ("css:input#email", "css:textarea", "role:textbox,Email", "css:div[contenteditable=true]"):
            validate_selector_before_save("fill", sel)

    def test_fill_rejects(self):
        self.assertRejected("fill", "css:body")
        self.assertRejected("fill", "css:input[type=submit]")
        self.assertRejected("fill", "css:button.primary")

    def test_click_accepts_clickable(self):
        for sel in ("role:button,Login", "css:button.primary", "css:a.nav", "css:div[role=button]"):
            validate_selector_before_save("click", sel)

    def test_click_rejects(self):
        self.assertRejected("click", "css:div.card")
        self.assertRejected("click", "text:Login")

    def test_empty_rejected(self):
        self.assertRejected("navigate", "  ")

    def test_other_actions_unchecked(self):
        validate_selector_before_save("navigate", "css:div.card")


class TestSnapshot(unittest.TestCase):

    SNAPSHOT = [
        {"tag": "button", "role": "button", "visible_text": "Login"},
        {"tag": "input", "id": "email", "name": "email", "placeholder": "Email"},
    ]

    def test_role_match(self):
        self.assertTrue(is_selector_in_snapshot("button,Login", "role", self.SNAPSHOT))
        self.assertFalse(is_selector_in_snapshot("button,Logout", "role", self.SNAPSHOT))

    def test_css_match_by_id(self):
        self.assertTrue(is_selector_in_snapshot("#email", "css", self.SNAPSHOT))

    def test_text_match(self):
        self.assertTrue(is_selector_in_snapshot("login", "text", self.SNAPSHOT))

    def test_payload_no_match(self):
        result = validate_selector_payload(Ok({"selector": None, "noMatch": True}))
        self.assertEqual(result.kind, "no_match")

    def test_payload_missing_selector(self):
        self.assertEqual(validate_selector_payload(Ok({"locatorStrategy": "css"})).kind, "missing_field")

    def test_payload_defaults_strategy(self):
        result = validate_selector_payload(Ok({"selector": " #q ", "locatorStrategy": "bogus"}))
        self.assertEqual(result.value, ("css", "#q", None))


class TestSelectorResolver(unittest.TestCase):

    def setUp(self):
        self.db = SQLiteBackend(path=":memory:")
        ensure_schema(self.db)
        self.store = SelectorKnowledgeStore(self.db)

    def tearDown(self):
        self.db.close()

    def resolver(self, *responses, **kwargs):
        self.generator = ScriptedGenerator(*responses, **kwargs)
        return SelectorResolver(self.store, self.generator)

    def test_strict_selector_skips_everything(self):
        result = self.resolver().resolve(
            "css:#submit", project_id="p1", application_id="app1", semantic_key="submit",
        )
        self.assertEqual(result.selector, "css:#submit")
        self.assertEqual(result.resolved_from, "strict")
        self.assertEqual(result.semantic_key, "submit")
        self.assertEqual(self.generator.calls, [])
        self.assertEqual(self.store.list_for_project("p1"), [])

    def test_generation_then_knowledge(self):
        resolver = self.resolver(_payload(selector='button[name="Login"]', locatorStrategy="role"))

        first = resolver.resolve("Click Login", project_id="p1", application_id="app1")
        self.assertEqual(first.resolved_from, "ai")
        self.assertEqual(first.selector, "role:button,Login")
        self.assertEqual(first.semantic_key, "login_button")
        self.assertEqual(self.generator.calls[0]["source"], SOURCE)
        self.assertEqual(self.generator.calls[0]["max_tokens"], 512)

        second = resolver.resolve("Click Login", project_id="p1", application_id="app1")
        self.assertEqual(second.resolved_from, "knowledge")
        self.assertEqual(second.selector, "role:button,Login")
        self.assertEqual(len(self.generator.calls), 1)
        self.assertEqual(self.store.find("p1", "app1", "login_button").usage_count, 2)

    def test_knowledge_scoped_by_application(self):
        self.store.upsert("p1", "app1", "login_button", "role:button,Login")
        resolver = self.resolver(_payload(selector="button,Sign in", locatorStrategy="role"))
        result = resolver.resolve("Click Login", project_id="p1", application_id="app2")
        self.assertEqual(result.resolved_from, "ai")
        self.assertEqual(result.selector, "role:button,Sign in")

    def test_skip_knowledge_lookup(self):
        self.store.upsert("p1", "app1", "login_button", "role:button,Old")
        resolver = self.resolver(_payload(selector="button,Login", locatorStrategy="role"))
        result = resolver.resolve(
            "Click Login", project_id="p1", application_id="app1", skip_knowledge_lookup=True,
        )
        self.assertEqual(result.resolved_from, "ai")
        self.assertEqual(self.store.find("p1", "app1", "login_button").selector, "role:button,Login")

    def test_stored_body_ignored_for_fill(self):
        self.store.upsert("p1", "app1", "search_input", "css:body")
        resolver = self.resolver(_payload(selector="input#q", locatorStrategy="css"))
        result = resolver.resolve("Fill the search box", project_id="p1", application_id="app1")
        self.assertEqual(result.resolved_from, "ai")
        self.assertEqual(result.selector, "css:input#q")
        self.assertEqual(self.store.find("p1", "app1", "search_input").selector, "css:input#q")

    def test_invalid_selector_not_saved(self):
        resolver = self.resolver(_payload(selector="div.card", locatorStrategy="css"))
        with self.assertRaises(InvalidGenerationOutput) as ctx:
            resolver.resolve("Click Login", project_id="p1", application_id="app1")
        self.assertEqual(ctx.exception.kind, "invalid_selector")
        self.assertIsNone(self.store.find("p1", "app1", "login_button"))

    def test_no_credential(self):
        resolver = self.resolver(available=False)
        with self.assertRaises(GenerationUnavailable):
            resolver.resolve("Click Login", project_id="p1", application_id="app1")
        self.assertEqual(self.generator.calls, [])

    def test_malformed_response(self):
        resolver = self.resolver("not json at all")
        with self.assertRaises(InvalidGenerationOutput) as ctx:
            resolver.resolve("Click Login", project_id="p1", application_id="app1")
        self.assertEqual(ctx.exception.kind, "not_json")

    def test_snapshot_in_prompt_and_checked(self):
        snapshot = [{"tag": "button", "role": "button", "visible_text": "Login"}]
        resolver = self.resolver(_payload(selector="button,Login", locatorStrategy="role"))
        result = resolver.resolve(
            "Click Login", "Login page", project_id="p1", application_id="app1", snapshot=snapshot,
        )
        self.assertEqual(result.selector, "role:button,Login")
        prompt = self.generator.calls[0]["user"]
        self.assertIn("Interactive Snapshot:", prompt)
        self.assertIn("Page context: Login page", prompt)

    def test_selector_outside_snapshot_rejected(self):
        snapshot = [{"tag": "button", "role": "button", "visible_text": "Login"}]
        resolver = self.resolver(_payload(selector="button,Logout", locatorStrategy="role"))
        with self.assertRaises(InvalidGenerationOutput) as ctx:
            resolver.resolve("Click Login", project_id="p1", application_id="app1", snapshot=snapshot)
        self.assertEqual(ctx.exception.kind, "not_in_snapshot")

    def test_empty_snapshot(self):
        resolver = self.resolver()
        with self.assertRaises(ResolverError):
            resolver.resolve("Click Login", project_id="p1", application_id="app1", snapshot=[])
        self.assertEqual(self.generator.calls, [])

    def test_resolved_value_passed_through(self):
        resolver = self.resolver(_payload(selector="div.banner", locatorStrategy="css", resolvedValue="Welcome"))
        result = resolver.resolve(
            "Page should contain text Welcome", project_id="p1", application_id="app1",
        )
        self.assertEqual(result.action, "assert_text")
        self.assertEqual(result.semantic_key, "assert_container")
        self.assertEqual(result.resolved_value, "Welcome")


if __name__ == "__main__":
    unittest.main()
