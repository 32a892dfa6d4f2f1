import itertools
import unittest

from loadwarden.rules.dependencies import DependencyGraph
from loadwarden.rules.model import (
    BinaryRuleSet,
    FrontendSettings,
    Mode,
    Plugin,
    RuleSnapshot,
    RuleState,
    Scope,
    ScopeKey,
    ScreenDefinition,
)
from loadwarden.rules.resolver import LoadPlanner, RequestContext, StateResolver

X = "x-plugin/x-plugin.php"
Y = "y-plugin/y-plugin.php"
SEO = "wordpress-seo/wp-seo.php"
WOO = "woocommerce/woocommerce.php"
WOO_ADDON = "woo-addon/woo-addon.php"

PLUGINS = (
    Plugin(X, "X"),
    Plugin(Y, "Y"),
    Plugin(SEO, "Yoast SEO"),
    Plugin(WOO, "WooCommerce"),
    Plugin(WOO_ADDON, "Shipping for WooCommerce"),
    Plugin("loadwarden/loadwarden.php", "LoadWarden", protected=True),
)

SCREENS = (
    ScreenDefinition("edit-post", "Posts", group="content"),
    ScreenDefinition("edit-page", "Pages", group="content"),
    ScreenDefinition("plugins", "Plugins", always_all=True),
)


def make_resolver(snapshot):
    return StateResolver(snapshot, PLUGINS, SCREENS)


class PrecedenceTests(unittest.TestCase):
    def test_scenario_a_screen_defer_without_other_rules(self):
        snapshot = RuleSnapshot(screens={"edit-post": {X: RuleState.DEFER}})
        effective = make_resolver(snapshot).resolve(X, RequestContext(screen_id="edit-post"))
        self.assertEqual(effective.state, RuleState.DEFER)
        self.assertEqual(effective.source, Scope.SCREEN)
        self.assertEqual(effective.key, ScopeKey.screen("edit-post"))

    def test_screen_defer_beats_global_admin_disabled(self):
        snapshot = RuleSnapshot(
            screens={"edit-post": {X: RuleState.DEFER}, "_global_admin": {X: RuleState.DISABLED}}
        )
        effective = make_resolver(snapshot).resolve(X, RequestContext(screen_id="edit-post"))
        self.assertEqual((effective.state, effective.source), (RuleState.DEFER, Scope.SCREEN))

    def test_group_rule_applies_below_screen_rule(self):
        snapshot = RuleSnapshot(screens={"_group_content": {X: RuleState.DISABLED}})
        resolver = make_resolver(snapshot)
        effective = resolver.resolve(X, RequestContext(screen_id="edit-page"))
        self.assertEqual(effective.state, RuleState.DISABLED)
        self.assertEqual(effective.key, ScopeKey.group("content"))

        snapshot.screens["edit-page"] = {X: RuleState.ENABLED}
        effective = resolver.resolve(X, RequestContext(screen_id="edit-page"))
        self.assertEqual((effective.state, effective.key), (RuleState.ENABLED, ScopeKey.screen("edit-page")))

    def test_global_admin_is_lowest_admin_layer(self):
        snapshot = RuleSnapshot(screens={"_global_admin": {Y: RuleState.DISABLED}})
        effective = make_resolver(snapshot).resolve(Y, RequestContext(screen_id="edit-post"))
        self.assertEqual((effective.state, effective.source), (RuleState.DISABLED, Scope.GLOBAL))

    def test_override_beats_screen_and_context(self):
        snapshot = RuleSnapshot(
            screens={"edit-post": {X: RuleState.DISABLED}},
            contexts={"single_post": BinaryRuleSet(mode=Mode.BLACKLIST, active=[X])},
            overrides={"post:12": {X: RuleState.ENABLED}},
        )
        request = RequestContext(screen_id="edit-post", context_id="single_post", override=("post", 12))
        effective = make_resolver(snapshot).resolve(X, request)
        self.assertEqual((effective.state, effective.source), (RuleState.ENABLED, Scope.OVERRIDE))

    def test_first_match_wins_for_every_layer_combination(self):
        layers = {
            Scope.OVERRIDE: lambda s, state: s.overrides.setdefault("post:7", {}).__setitem__(X, state),
            Scope.SCREEN: lambda s, state: s.screens.setdefault("edit-post", {}).__setitem__(X, state),
            Scope.CONTEXT: lambda s, state: s.contexts.__setitem__(
                "single_post",
                BinaryRuleSet(mode=Mode.BLACKLIST if state is RuleState.DISABLED else Mode.WHITELIST, active=[X]),
            ),
        }
        order = [Scope.OVERRIDE, Scope.SCREEN, Scope.CONTEXT]
        request = RequestContext(screen_id="edit-post", context_id="single_post", override=("post", 7))
        for size in range(1, len(order) + 1):
            for chosen in itertools.combinations(order, size):
                snapshot = RuleSnapshot()
                expected = {}
                for index, scope in enumerate(chosen):
                    state = RuleState.ENABLED if index % 2 == 0 else RuleState.DISABLED
                    layers[scope](snapshot, state)
                    expected[scope] = state
                top = next(scope for scope in order if scope in chosen)
                effective = make_resolver(snapshot).resolve(X, request)
                self.assertEqual(effective.source, top, chosen)
                self.assertEqual(effective.state, expected[top], chosen)

    def test_no_rules_resolve_to_plain_default(self):
        effective = make_resolver(RuleSnapshot()).resolve(X, RequestContext(screen_id="edit-post"))
        self.assertEqual(effective.state, RuleState.DEFAULT)
        self.assertIsNone(effective.source)

    def test_protected_plugin_always_default(self):
        snapshot = RuleSnapshot(screens={"edit-post": {"loadwarden/loadwarden.php": RuleState.DISABLED}})
        effective = make_resolver(snapshot).resolve("loadwarden/loadwarden.php", RequestContext(screen_id="edit-post"))
        self.assertEqual(effective.state, RuleState.DEFAULT)

    def test_always_all_screen_ignores_rules(self):
        snapshot = RuleSnapshot(screens={"plugins": {X: RuleState.DISABLED}})
        effective = make_resolver(snapshot).resolve(X, RequestContext(screen_id="plugins"))
        self.assertEqual(effective.state, RuleState.DEFAULT)


class ContextTests(unittest.TestCase):
    def test_scenario_b_mode_switch_reinterprets_active_flag(self):
        snapshot = RuleSnapshot(contexts={"front_page": BinaryRuleSet(mode=Mode.BLACKLIST, active=[Y])})
        resolver = make_resolver(snapshot)
        request = RequestContext(context_id="front_page")
        effective = resolver.resolve(Y, request)
        self.assertEqual((effective.state, effective.source), (RuleState.DISABLED, Scope.CONTEXT))

        snapshot.contexts["front_page"].mode = Mode.WHITELIST
        effective = resolver.resolve(Y, request)
        self.assertEqual((effective.state, effective.source), (RuleState.ENABLED, Scope.CONTEXT))
        self.assertEqual(snapshot.contexts["front_page"].active, [Y])

    def test_whitelist_implies_disabled_for_unlisted_plugins(self):
        snapshot = RuleSnapshot(contexts={"front_page": BinaryRuleSet(mode=Mode.WHITELIST, active=[Y])})
        effective = make_resolver(snapshot).resolve(X, RequestContext(context_id="front_page"))
        self.assertEqual((effective.state, effective.source), (RuleState.DISABLED, Scope.GLOBAL))

    def test_global_context_set_applies_with_inherited_mode(self):
        snapshot = RuleSnapshot(
            contexts={
                "_global": BinaryRuleSet(mode=Mode.BLACKLIST, active=[SEO]),
                "archive": BinaryRuleSet(mode=None, active=[X]),
            }
        )
        resolver = make_resolver(snapshot)
        request = RequestContext(context_id="archive")
        self.assertEqual(resolver.resolve(X, request).source, Scope.CONTEXT)
        effective = resolver.resolve(SEO, request)
        self.assertEqual((effective.state, effective.source), (RuleState.DISABLED, Scope.GLOBAL))
        self.assertEqual(resolver.resolve(Y, request).state, RuleState.DEFAULT)

    def test_global_blacklist_member_stays_disabled_under_whitelist_context(self):
        snapshot = RuleSnapshot(
            contexts={
                "_global": BinaryRuleSet(mode=Mode.BLACKLIST, active=[SEO]),
                "archive": BinaryRuleSet(mode=Mode.WHITELIST, active=[X]),
            }
        )
        resolver = make_resolver(snapshot)
        request = RequestContext(context_id="archive")
        effective = resolver.resolve(SEO, request)
        self.assertEqual((effective.state, effective.source), (RuleState.DISABLED, Scope.GLOBAL))
        self.assertEqual(resolver.resolve(X, request).state, RuleState.ENABLED)
        self.assertEqual(resolver.resolve(Y, request).state, RuleState.DISABLED)

    def test_global_whitelist_member_loads_under_blacklist_context(self):
        snapshot = RuleSnapshot(
            contexts={
                "_global": BinaryRuleSet(mode=Mode.WHITELIST, active=[SEO]),
                "archive": BinaryRuleSet(mode=Mode.BLACKLIST, active=[X]),
            }
        )
        resolver = make_resolver(snapshot)
        request = RequestContext(context_id="archive")
        self.assertEqual(resolver.resolve(SEO, request).state, RuleState.ENABLED)
        self.assertEqual(resolver.resolve(X, request).state, RuleState.DISABLED)
        self.assertEqual(resolver.resolve(Y, request).state, RuleState.DEFAULT)

    def test_wildcard_whitelist_enables_every_plugin(self):
        snapshot = RuleSnapshot(contexts={"front_page": BinaryRuleSet(mode=Mode.WHITELIST, active=["*"])})
        resolver = make_resolver(snapshot)
        request = RequestContext(context_id="front_page")
        for plugin_id in (X, Y, SEO):
            effective = resolver.resolve(plugin_id, request)
            self.assertEqual((effective.state, effective.source), (RuleState.ENABLED, Scope.CONTEXT))

    def test_global_wildcard_whitelist_enables_every_plugin(self):
        snapshot = RuleSnapshot(
            contexts={
                "_global": BinaryRuleSet(mode=Mode.WHITELIST, active=["*"]),
                "archive": BinaryRuleSet(mode=None, active=[]),
            }
        )
        effective = make_resolver(snapshot).resolve(X, RequestContext(context_id="archive"))
        self.assertEqual((effective.state, effective.source), (RuleState.ENABLED, Scope.GLOBAL))

    def test_passthrough_context_has_no_opinion(self):
        snapshot = RuleSnapshot(contexts={"front_page": BinaryRuleSet(mode=Mode.PASSTHROUGH)})
        effective = make_resolver(snapshot).resolve(X, RequestContext(context_id="front_page"))
        self.assertEqual(effective.state, RuleState.DEFAULT)

    def test_frontend_switch_off_skips_context_and_override(self):
        snapshot = RuleSnapshot(
            contexts={"front_page": BinaryRuleSet(mode=Mode.BLACKLIST, active=[X])},
            overrides={"post:3": {Y: RuleState.DISABLED}},
            frontend=FrontendSettings(enabled=False),
        )
        resolver = make_resolver(snapshot)
        request = RequestContext(context_id="front_page", override=("post", 3))
        self.assertEqual(resolver.resolve(X, request).state, RuleState.DEFAULT)
        self.assertEqual(resolver.resolve(Y, request).state, RuleState.DEFAULT)


class RequestKindTests(unittest.TestCase):
    def test_blacklist_disables_active_members(self):
        snapshot = RuleSnapshot()
        snapshot.request_kinds["cron"] = BinaryRuleSet(mode=Mode.BLACKLIST, active=[SEO])
        resolver = make_resolver(snapshot)
        request = RequestContext(request_kind="cron")
        self.assertEqual(resolver.resolve(SEO, request).state, RuleState.DISABLED)
        self.assertEqual(resolver.resolve(X, request).state, RuleState.DEFAULT)

    def test_whitelist_disables_everything_not_listed(self):
        snapshot = RuleSnapshot()
        snapshot.request_kinds["cli"] = BinaryRuleSet(mode=Mode.WHITELIST, active=[X])
        resolver = make_resolver(snapshot)
        request = RequestContext(request_kind="cli")
        self.assertEqual(resolver.resolve(X, request).state, RuleState.ENABLED)
        effective = resolver.resolve(Y, request)
        self.assertEqual((effective.state, effective.source), (RuleState.DISABLED, Scope.GLOBAL))

    def test_smart_detection_extends_whitelist(self):
        snapshot = RuleSnapshot()
        snapshot.request_kinds["ajax"].mode = Mode.WHITELIST
        snapshot.request_kinds["ajax"].detect_by_action = True
        resolver = make_resolver(snapshot)
        woo = RequestContext(request_kind="ajax", trigger="woocommerce_add_to_cart")
        self.assertEqual(resolver.resolve(WOO, woo).state, RuleState.ENABLED)
        self.assertEqual(resolver.resolve(X, woo).state, RuleState.DISABLED)
        heartbeat = RequestContext(request_kind="ajax", trigger="heartbeat")
        self.assertEqual(resolver.resolve(X, heartbeat).state, RuleState.ENABLED)

    def test_smart_detection_requires_flag(self):
        snapshot = RuleSnapshot()
        snapshot.request_kinds["rest"].mode = Mode.WHITELIST
        resolver = make_resolver(snapshot)
        request = RequestContext(request_kind="rest", trigger="/wp/v2/")
        self.assertEqual(resolver.resolve(X, request).state, RuleState.DISABLED)
        snapshot.request_kinds["rest"].detect_by_namespace = True
        self.assertEqual(resolver.resolve(X, request).state, RuleState.ENABLED)


class LoadPlannerTests(unittest.TestCase):
    def test_plan_splits_and_cascades_to_dependents(self):
        snapshot = RuleSnapshot(screens={"edit-post": {WOO: RuleState.DISABLED, SEO: RuleState.DEFER}})
        planner = LoadPlanner(make_resolver(snapshot), DependencyGraph(PLUGINS))
        plan = planner.plan([X, SEO, WOO, WOO_ADDON], RequestContext(screen_id="edit-post"))
        self.assertEqual(plan.loaded, [X])
        self.assertEqual(plan.deferred, [SEO])
        self.assertEqual(plan.disabled[WOO], "screen:edit-post")
        self.assertEqual(plan.disabled[WOO_ADDON], f"cascade:{WOO}")


if __name__ == "__main__":
    unittest.main()
