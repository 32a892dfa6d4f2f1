import unittest

from loadwarden.config import LoadWardenConfig
from loadwarden.errors import ServerRejectedError
from loadwarden.rules.model import Mode, Plugin, RuleSnapshot, RuleState, ScopeKey, ScreenDefinition
from loadwarden.services.dispatcher import (
    CycleTag,
    Dispatcher,
    ResetOverrides,
    SetDrawerOpen,
    SetTheme,
    SwitchMode,
    ToggleBinary,
)
from loadwarden.services.session import AdminSession
from loadwarden.services.view import default_section_keys, render_text
from loadwarden.sync.client import INVALID, PENDING, SENT
from loadwarden.sync.transport import QueuedTransport

A = "akismet/akismet.php"
GUARD = "loadwarden/loadwarden.php"

CONFIG = LoadWardenConfig(
    plugins=(Plugin(A, "Akismet"), Plugin(GUARD, "LoadWarden", protected=True)),
    screens=(ScreenDefinition("edit-post", "Posts", group="content"),),
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class DispatcherTests(unittest.TestCase):
    def open(self, snapshot=None, preferences=None):
        self.clock = FakeClock()
        self.transport = QueuedTransport()
        self.session = AdminSession.open(
            CONFIG, self.transport, snapshot, clock=self.clock, preferences=preferences
        )
        return Dispatcher(self.session)

    def test_cycle_updates_view_and_debounces_save(self):
        dispatcher = self.open()
        view = dispatcher.dispatch(CycleTag(ScopeKey.screen("edit-post"), A))
        self.assertEqual(view.state_of(ScopeKey.screen("edit-post"), A), RuleState.ENABLED)
        self.assertEqual(view.last_status, PENDING)
        self.assertTrue(view.pending_writes)
        self.assertEqual(view.summary.enabled, 1)
        self.assertEqual(len(self.transport), 0)

        self.clock.now = 1.0
        self.assertEqual(self.session.tick(), 1)
        self.assertEqual(self.transport.requests[0].action, "save-screen-rules")

    def test_close_flushes_pending_save(self):
        dispatcher = self.open()
        dispatcher.dispatch(CycleTag(ScopeKey.screen("edit-post"), A))
        self.session.close()
        self.assertEqual(len(self.transport), 1)

    def test_invalid_command_posts_notice(self):
        dispatcher = self.open()
        view = dispatcher.dispatch(ToggleBinary(ScopeKey.request_kind("cron"), A))
        self.assertEqual(view.last_status, INVALID)
        self.assertEqual(view.notices[-1].level, "error")
        self.assertIn("passthrough", view.notices[-1].message)
        self.assertEqual(len(self.transport), 0)

    def test_bad_override_target_is_invalid(self):
        dispatcher = self.open()
        view = dispatcher.dispatch(ResetOverrides("single_post", "post", 0))
        self.assertEqual(view.last_status, INVALID)
        self.assertEqual(len(self.transport), 0)

    def test_mode_switch_waits_for_store(self):
        dispatcher = self.open()
        key = ScopeKey.request_kind("ajax")
        view = dispatcher.dispatch(SwitchMode(key, Mode.WHITELIST))
        self.assertEqual(view.last_status, SENT)
        self.assertEqual(view.section(key).mode, Mode.PASSTHROUGH)
        self.transport.complete(0, {})
        self.assertEqual(dispatcher.view().section(key).mode, Mode.WHITELIST)

    def test_protected_and_inert_tags(self):
        view = self.open().view()
        cron = view.section(ScopeKey.request_kind("cron"))
        self.assertTrue(cron.tag(A).inert)
        guard = view.section(ScopeKey.screen("edit-post")).tag(GUARD)
        self.assertTrue(guard.protected)
        self.assertEqual(guard.state, RuleState.DEFAULT)

    def test_unknown_command(self):
        with self.assertRaises(TypeError):
            self.open().dispatch("cycle")


class PreferenceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transport = QueuedTransport()
        self.values = {}
        self.session = AdminSession.open(CONFIG, self.transport, preferences=self.values)
        self.dispatcher = Dispatcher(self.session)

    def test_drawer_state_is_kept_in_backing_mapping(self):
        view = self.dispatcher.dispatch(SetDrawerOpen(True))
        self.assertIn(("drawer_open", True), view.preferences)
        self.assertEqual(self.values["drawer_open"], True)

    def test_theme_is_saved_and_rolled_back_on_failure(self):
        view = self.dispatcher.dispatch(SetTheme("dark"))
        self.assertEqual(dict(view.preferences)["theme"], "dark")
        self.assertEqual(self.transport.requests[0].action, "save-admin-theme")
        self.assertEqual(self.transport.requests[0].payload, {"theme": "dark"})
        self.transport.fail(0, ServerRejectedError("Invalid theme"))
        self.assertEqual(self.session.preferences.theme, "light")
        self.assertEqual(self.session.notices.latest().message, "Invalid theme")

    def test_unknown_theme_is_invalid(self):
        view = self.dispatcher.dispatch(SetTheme("neon"))
        self.assertEqual(view.last_status, INVALID)
        self.assertEqual(len(self.transport), 0)


class RenderTests(unittest.TestCase):
    def setUp(self) -> None:
        snapshot = RuleSnapshot(screens={"_group_content": {A: RuleState.ENABLED}})
        self.session = AdminSession.open(CONFIG, QueuedTransport(), snapshot)

    def test_section_order(self):
        keys = default_section_keys(self.session)
        self.assertEqual(keys[0], ScopeKey.global_admin())
        self.assertEqual(keys[1:3], [ScopeKey.screen("edit-post"), ScopeKey.group("content")])
        self.assertEqual(keys[3:7], [ScopeKey.request_kind(kind) for kind in ("ajax", "rest", "cron", "cli")])
        self.assertEqual(keys[7], ScopeKey.global_context())

    def test_render_marks_inherited_tags(self):
        text = render_text(Dispatcher(self.session).view())
        self.assertEqual(
            text.splitlines(),
            [
                "rules: 1 enabled, 0 disabled, 0 deferred",
                "[screen:edit-post] Posts",
                "  + Akismet [enabled] via screen:_group_content",
                "[screen:_group_content] _group_content",
                "  + Akismet [enabled]",
            ],
        )


if __name__ == "__main__":
    unittest.main()
