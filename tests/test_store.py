import json
import tempfile
import unittest
from pathlib import Path
from urllib.parse import parse_qs

import httpx

from loadwarden.config import StoreConfig
from loadwarden.errors import (
    GENERIC_REJECTED_MESSAGE,
    ServerRejectedError,
    StoreError,
    TransportError,
    UnknownScopeError,
)
from loadwarden.rules.model import Mode, Plugin
from loadwarden.store.actions import ActionHandler
from loadwarden.store.backend import InMemoryRuleStore, JsonFileRuleStore, load_snapshot
from loadwarden.store.client import RuleStoreClient

Y = "contact-form-7/wp-contact-form-7.php"
Z = "wordpress-seo/wp-seo.php"
GUARD = "loadwarden/loadwarden.php"
PLUGINS = (Plugin(Y, "Contact Form 7"), Plugin(Z, "Yoast SEO"), Plugin(GUARD, "LoadWarden", protected=True))


class RuleStoreClientTests(unittest.TestCase):
    def make_client(self, handler):
        client = RuleStoreClient(
            StoreConfig(base_url="http://store.test", nonce="n1"),
            transport=httpx.MockTransport(handler),
        )
        self.addCleanup(client.close)
        return client

    def test_posts_form_and_returns_data(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["form"] = {k: v[-1] for k, v in parse_qs(request.content.decode("utf-8")).items()}
            return httpx.Response(200, json={"success": True, "data": {"message": "Rules saved"}})

        data = self.make_client(handler).save_screen_rules({"edit-post": {Y: "defer"}})
        self.assertEqual(data, {"message": "Rules saved"})
        self.assertEqual(seen["path"], "/wp-admin/admin-ajax.php")
        self.assertEqual(seen["form"]["action"], "save-screen-rules")
        self.assertEqual(seen["form"]["nonce"], "n1")
        self.assertEqual(json.loads(seen["form"]["rules"]), {"edit-post": {Y: "defer"}})

    def test_rejection_message_is_surfaced(self):
        def handler(request):
            return httpx.Response(403, json={"success": False, "data": {"message": "Security check failed"}})

        with self.assertRaises(ServerRejectedError) as ctx:
            self.make_client(handler).call("set-mode", {"mode": "auto"})
        self.assertEqual(str(ctx.exception), "Security check failed")
        self.assertEqual(ctx.exception.status_code, 403)

    def test_rejection_without_message_uses_generic_text(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "data": None})

        with self.assertRaises(ServerRejectedError) as ctx:
            self.make_client(handler).call("set-mode")
        self.assertEqual(str(ctx.exception), GENERIC_REJECTED_MESSAGE)

    def test_plain_string_rejection(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "data": "Invalid data"})

        with self.assertRaises(ServerRejectedError) as ctx:
            self.make_client(handler).call("toggle-rule")
        self.assertEqual(str(ctx.exception), "Invalid data")

    def test_http_error_without_envelope_is_transport_error(self):
        def handler(request):
            return httpx.Response(500, text="<html>fatal error</html>")

        with self.assertRaises(TransportError):
            self.make_client(handler).call("set-mode")

    def test_undecodable_success_body_is_transport_error(self):
        def handler(request):
            return httpx.Response(200, text="0")

        with self.assertRaises(TransportError):
            self.make_client(handler).call("set-mode")

    def test_connection_failure_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(TransportError):
            self.make_client(handler).call("set-mode")


class ActionHandlerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryRuleStore()
        self.handler = ActionHandler(self.store, nonce="n1", plugins=PLUGINS)

    def call(self, action, **fields):
        return self.handler.handle(action, {"nonce": "n1", **fields})

    def test_nonce_and_unknown_action(self):
        status, payload = self.handler.handle("set-mode", {"nonce": "nope", "mode": "auto"})
        self.assertEqual(status, 403)
        self.assertEqual(payload, {"success": False, "data": {"message": "Security check failed"}})
        status, payload = self.call("explode")
        self.assertEqual(status, 400)
        self.assertFalse(payload["success"])

    def test_save_screen_rules_strips_protected_plugins(self):
        status, payload = self.call("save-screen-rules", rules={"edit-post": {Y: "defer", GUARD: "disabled"}})
        self.assertEqual(status, 200)
        self.assertEqual(payload["data"]["screen_rules"], {"edit-post": {Y: "defer"}})
        self.assertEqual(self.store.read("screen_rules"), {"edit-post": {Y: "defer"}})

    def test_invalid_rules_are_rejected(self):
        status, payload = self.call("save-screen-rules", rules="{not json")
        self.assertEqual(status, 400)
        status, _ = self.call("save-screen-rules", rules={"edit-post": {Y: "sometimes"}})
        self.assertEqual(status, 400)
        self.assertIsNone(self.store.read("screen_rules"))

    def test_block_under_passthrough_switches_to_blacklist(self):
        status, payload = self.call("toggle-frontend-rule", context="front_page", plugin=Y, rule_action="block")
        self.assertEqual(status, 200)
        data = payload["data"]
        self.assertEqual(data["mode"], "blacklist")
        self.assertEqual(data["ruleKey"], "front_page")
        entry = next(item for item in data["allPlugins"] if item["file"] == Y)
        self.assertEqual((entry["state"], entry["source"]), ("disabled", "context"))
        self.assertEqual(load_snapshot(self.store).contexts["front_page"].mode, Mode.BLACKLIST)

        self.call("toggle-frontend-rule", context="front_page", plugin=Y, rule_action="allow")
        self.assertEqual(load_snapshot(self.store).contexts["front_page"].active, [])

    def test_override_toggle_and_reset(self):
        self.call(
            "toggle-frontend-rule",
            context="single_post",
            plugin=Z,
            rule_action="block",
            scope="override",
            override_type="post",
            override_id="12",
        )
        self.assertEqual(self.store.read("overrides"), {"post:12": {"disabled_plugins": [Z], "enabled_plugins": []}})
        status, payload = self.call("reset-overrides", context="single_post", override_type="post", override_id="12")
        self.assertEqual(status, 200)
        self.assertEqual(self.store.read("overrides"), {})
        self.assertEqual(len(payload["data"]["allPlugins"]), len(PLUGINS))

    def test_toggle_rule_sets_screen_state(self):
        status, payload = self.call("toggle-rule", screen_id="edit-post", plugin=Y, state="defer")
        self.assertEqual(status, 200)
        self.assertEqual(payload["data"]["screen_rules"], {Y: "defer"})
        status, _ = self.call("toggle-rule", screen_id="edit-post", plugin=GUARD, state="disabled")
        self.assertEqual(status, 400)
        status, _ = self.call("toggle-rule", screen_id="edit-post", plugin="../etc/passwd", state="disabled")
        self.assertEqual(status, 400)

    def test_apply_auto_rules_saves_whole_batch(self):
        status, payload = self.call(
            "apply-auto-rules",
            suggestions=[
                {"type": "screen", "action": "block", "plugin": Z, "screen": "edit-post"},
                {"type": "screen", "action": "defer", "plugin": Y, "screen": "edit-post"},
            ],
        )
        self.assertEqual(status, 200)
        data = payload["data"]
        self.assertEqual(len(data["applied"]), 2)
        self.assertEqual(data["screen_rules"], {"edit-post": {Z: "disabled", Y: "defer"}})
        self.assertEqual(self.store.read("screen_rules"), {"edit-post": {Z: "disabled", Y: "defer"}})

    def test_apply_auto_rules_rejects_batch_with_invalid_item(self):
        status, payload = self.call(
            "apply-auto-rules",
            suggestions=[
                {"type": "screen", "action": "block", "plugin": Z, "screen": "edit-post"},
                {"type": "screen", "action": "whitelist", "plugin": Z, "screen": "edit-post"},
            ],
        )
        self.assertEqual(status, 400)
        self.assertFalse(payload["success"])
        self.assertIsNone(self.store.read("screen_rules"))

        status, _ = self.call(
            "apply-auto-rules",
            suggestions=[
                {"type": "screen", "action": "block", "plugin": Z, "screen": "edit-post"},
                {"type": "screen", "action": "block", "plugin": GUARD, "screen": "edit-post"},
            ],
        )
        self.assertEqual(status, 400)
        self.assertIsNone(self.store.read("screen_rules"))

        status, payload = self.call("apply-auto-rules", suggestions=[])
        self.assertEqual(status, 400)
        self.assertEqual(payload["data"]["message"], "No suggestions to apply")

    def test_settings_theme_and_mode(self):
        self.assertEqual(self.call("save-admin-theme", theme="dark")[0], 200)
        self.assertEqual(self.store.read("admin_theme"), "dark")
        self.assertEqual(self.call("save-admin-theme", theme="neon")[0], 400)
        self.assertEqual(self.call("set-mode", mode="auto")[0], 200)
        self.assertEqual(self.call("set-mode", mode="turbo")[0], 400)
        self.call("save-frontend-settings", enabled="0", asset_audit="1")
        self.assertFalse(load_snapshot(self.store).frontend.enabled)
        self.assertTrue(load_snapshot(self.store).frontend.asset_audit)

    def test_clear_performance_validates_target(self):
        self.assertEqual(self.call("clear-request-kind-performance", target="ajax")[0], 200)
        self.assertEqual(self.call("clear-request-kind-performance", target="everything")[0], 400)

    def test_non_post_request_is_refused(self):
        response = self.handler.handle_request(httpx.Request("GET", "http://store.test/wp-admin/admin-ajax.php"))
        self.assertEqual(response.status_code, 405)


class JsonFileRuleStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.state_dir = Path(self._tmp.name) / "state"
        self.store = JsonFileRuleStore(self.state_dir)

    def test_replace_read_and_delete(self):
        self.assertIsNone(self.store.read("screen_rules"))
        self.store.replace("screen_rules", {"edit-post": {Y: "defer"}})
        self.assertTrue((self.state_dir / "screen_rules.json").exists())
        self.assertEqual(self.store.read("screen_rules"), {"edit-post": {Y: "defer"}})
        self.store.replace("screen_rules", None)
        self.assertIsNone(self.store.read("screen_rules"))

    def test_unknown_document(self):
        with self.assertRaises(UnknownScopeError):
            self.store.read("secrets")

    def test_corrupt_document_raises_store_error(self):
        self.state_dir.mkdir(parents=True)
        (self.state_dir / "overrides.json").write_text("{broken", encoding="utf-8")
        with self.assertRaises(StoreError):
            self.store.read("overrides")

    def test_empty_store_loads_default_snapshot(self):
        snapshot = load_snapshot(self.store)
        self.assertEqual(snapshot.screens, {})
        self.assertEqual(sorted(snapshot.request_kinds), ["ajax", "cli", "cron", "rest"])
        self.assertTrue(snapshot.frontend.enabled)


if __name__ == "__main__":
    unittest.main()
