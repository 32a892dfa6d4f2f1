import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path

from loadwarden.cli import main
from loadwarden.store.backend import JsonFileRuleStore

WOO = "woocommerce/woocommerce.php"
ADDON = "woo-addon/woo-addon.php"
LOCO = "loco-translate/loco.php"


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        root = Path(self._tmp.name)
        self.state_dir = root / "state"
        self.samples = root / "samples.jsonl"
        self.config = root / "config.yaml"
        self.config.write_text(
            "\n".join(
                [
                    "screens:",
                    "  - id: edit-post",
                    "    label: Posts",
                    "plugins:",
                    f"  - id: {WOO}",
                    "    name: WooCommerce",
                    f"  - id: {ADDON}",
                    f"    requires: [{WOO}]",
                    f"  - id: {LOCO}",
                    f"state_dir: {self.state_dir}",
                    "samples:",
                    f"  path: {self.samples}",
                    "logging:",
                    "  level: warning",
                ]
            )
            + "\n",
            encoding="utf-8",
        )
        JsonFileRuleStore(self.state_dir).replace("screen_rules", {"edit-post": {WOO: "disabled", LOCO: "defer"}})

    def run_cli(self, *argv):
        stdout, stderr = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
            code = main(list(argv))
        return code, stdout.getvalue(), stderr.getvalue()

    def test_resolve(self):
        code, out, _ = self.run_cli("resolve", "--config", str(self.config), "--plugin", LOCO, "--screen", "edit-post")
        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual(payload["state"], "defer")
        self.assertEqual(payload["source"], "screen")
        self.assertEqual(payload["key"], "screen:edit-post")
        self.assertEqual(payload["request"], "screen=edit-post")

    def test_plan_cascades_to_dependents(self):
        code, out, _ = self.run_cli("plan", "--config", str(self.config), "--screen", "edit-post")
        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual(payload["loaded"], [])
        self.assertEqual(payload["deferred"], [LOCO])
        self.assertEqual(payload["disabled"], {WOO: "screen:edit-post", ADDON: f"cascade:{WOO}"})

    def test_suggest_from_sample_feed(self):
        lines = [
            json.dumps({"kind": "ajax", "trigger": "heartbeat", "timestamp": 1718000000 + i, "plugins": {LOCO: 5}})
            for i in range(10)
        ]
        self.samples.write_text("\n".join(lines) + "\n", encoding="utf-8")
        code, out, _ = self.run_cli("suggest", "--config", str(self.config))
        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual([item["plugin"] for item in payload["ajax"]["suggested_blocks"]], [LOCO])
        self.assertEqual(payload["admin_screens"], [])

        code, out, _ = self.run_cli("performance", "--config", str(self.config), "--limit", "4")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["ajax"]["heartbeat"]["samples"], 4)

    def test_errors_are_reported(self):
        code, _, err = self.run_cli(
            "resolve", "--config", str(self.config), "--plugin", LOCO, "--override", "post:abc"
        )
        self.assertEqual(code, 1)
        self.assertIn("invalid override", err)

        code, _, err = self.run_cli("suggest", "--config", str(self.config))
        self.assertEqual(code, 1)
        self.assertIn("sample feed not found", err)

        code, _, err = self.run_cli("plan", "--config", str(Path(self._tmp.name) / "missing.yaml"))
        self.assertEqual(code, 1)
        self.assertTrue(err.startswith("error:"))


if __name__ == "__main__":
    unittest.main()
