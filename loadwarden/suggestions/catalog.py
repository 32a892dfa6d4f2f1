"""Known-plugin catalog consulted before sampling heuristics."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from loadwarden.rules.model import Plugin

_ALL = frozenset({"ajax", "rest", "cron"})

# slug fragment -> request kinds where the plugin does no useful work
SAFE_TO_BLOCK: Mapping[str, FrozenSet[str]] = {
    "loco-translate": _ALL,
    "translatepress": _ALL,
    "host-webfonts-local": _ALL,
    "omgf": _ALL,
    "font-awesome": _ALL,
    "index-wp-mysql-for-speed": _ALL,
    "wp-optimize": frozenset({"ajax", "rest"}),
    "gallery-lightbox": _ALL,
    "instagram-feed": _ALL,
    "wp-reviews-plugin-for-google": _ALL,
    "complianz": _ALL,
    "cookie-notice": _ALL,
    "duracelltomi-google-tag-manager": _ALL,
    "google-analytics": _ALL,
    "facebook-pixel": frozenset({"ajax", "cron"}),
    "enhanced-e-commerce": _ALL,
    "conversios": _ALL,
    "woo-ecommerce-tracking": _ALL,
    "ecomail": frozenset({"ajax", "rest"}),
    "mailchimp": frozenset({"ajax", "rest"}),
    "updraftplus": frozenset({"ajax", "rest"}),
    "duplicator": frozenset({"ajax", "rest"}),
    "backwpup": frozenset({"ajax", "rest"}),
    "code-profiler": _ALL,
    "query-monitor": frozenset({"cron"}),
    "woo-preview-emails": _ALL,
    "order-import-export": _ALL,
    "woo-order-export-lite": _ALL,
    "wp-all-export": _ALL,
    "wp-all-import": _ALL,
    "smash-balloon": _ALL,
    "feeds-for-youtube": _ALL,
    "packeta": frozenset({"rest", "cron"}),
    "zasilkovna": frozenset({"rest", "cron"}),
    "points-and-rewards-for-woocommerce": _ALL,
    "wc-points-rewards": _ALL,
    "seopress": frozenset({"cron"}),
}

# slug prefix -> request kinds where blocking is still fine; empty = never block
REQUIRED: Mapping[str, FrozenSet[str]] = {
    "woocommerce": frozenset(),
    "ajax-search-for-woocommerce": frozenset({"rest", "cron"}),
    "fibosearch": frozenset({"rest", "cron"}),
    "searchwp": frozenset({"rest", "cron"}),
    "fluentform": frozenset({"cron"}),
    "wpforms": frozenset({"cron"}),
    "contact-form-7": frozenset({"cron"}),
    "gravityforms": frozenset({"cron"}),
    "litespeed-cache": frozenset(),
    "wp-rocket": frozenset(),
    "wp-super-cache": frozenset(),
    "w3-total-cache": frozenset(),
    "wordfence": frozenset({"ajax", "rest"}),
    "sucuri": frozenset({"ajax", "rest"}),
    "ithemes-security": frozenset({"ajax", "rest"}),
    "loadwarden": frozenset(),
}

# screen fragment -> plugin slug keywords that make a plugin relevant there
SCREEN_RELEVANCE: Mapping[str, Tuple[str, ...]] = {
    "product": ("woocommerce", "woo", "product", "shop", "ecommerce", "commerce", "cart", "checkout",
                "payment", "shipping", "inventory", "pricing", "stock", "feed"),
    "shop_order": ("woocommerce", "woo", "order", "payment", "shipping", "invoice", "delivery", "checkout"),
    "shop_coupon": ("woocommerce", "woo", "coupon", "discount", "promotion", "voucher"),
    "wc-": ("woocommerce", "woo", "shop", "ecommerce", "commerce", "cart", "checkout", "payment",
            "shipping", "order", "product", "stock", "tax", "email"),
    "woocommerce": ("woocommerce", "woo", "shop", "ecommerce", "commerce", "payment", "shipping", "order"),
    "post": ("seo", "yoast", "rank-math", "aioseo", "editor", "gutenberg", "content", "meta", "schema",
             "social", "elementor", "beaver", "divi", "bricks", "acf", "custom-fields"),
    "page": ("seo", "yoast", "rank-math", "aioseo", "editor", "gutenberg", "content", "meta", "schema",
             "social", "elementor", "beaver", "divi", "bricks", "acf", "custom-fields"),
    "edit-post": ("seo", "yoast", "rank-math", "aioseo", "bulk", "quick-edit"),
    "edit-page": ("seo", "yoast", "rank-math", "aioseo", "bulk", "quick-edit"),
    "upload": ("media", "image", "gallery", "optimization", "smush", "imagify", "shortpixel", "compress", "webp"),
    "users": ("user", "member", "profile", "role", "permission", "login", "security"),
    "profile": ("user", "profile", "author", "bio"),
    "edit-comments": ("comment", "spam", "akismet", "antispam", "discussion"),
    "options-general": ("settings", "options", "config"),
    "options-permalink": ("permalink", "url", "seo", "redirect"),
    "dashboard": ("dashboard", "analytics", "stats", "monitor", "health", "performance"),
    "themes": ("theme", "template", "design", "style"),
    "widgets": ("widget", "sidebar"),
    "nav-menus": ("menu", "navigation", "mega-menu"),
    "customize": ("customizer", "theme", "design", "style"),
    "plugins": ("plugin", "update", "manage"),
    "elementor": ("elementor", "builder", "widget", "template", "design"),
}

ALWAYS_RELEVANT: FrozenSet[str] = frozenset(
    {"query-monitor", "debug-bar", "user-switching", "health-check", "wp-crontrol"}
)

_SCREEN_WORD_SPLIT = re.compile(r"[_\-\s]+")


@dataclass(frozen=True, slots=True)
class CatalogVerdict:
    """``safe`` is ``True``/``False`` for catalogued plugins, ``None`` otherwise."""

    safe: Optional[bool]
    reason: str = ""


UNKNOWN = CatalogVerdict(None)


def plugin_slug(plugin_id: str) -> str:
    return Plugin(plugin_id).slug


class PluginCatalog:
    """Lookups over the safe-to-block, required and relevance tables."""

    def __init__(
        self,
        safe_to_block: Optional[Mapping[str, Iterable[str]]] = None,
        required: Optional[Mapping[str, Iterable[str]]] = None,
        relevance: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> None:
        self._safe = {k: frozenset(v) for k, v in (safe_to_block or SAFE_TO_BLOCK).items()}
        required_map = {k: frozenset(v) for k, v in (required or REQUIRED).items()}
        # Longest pattern first so "ajax-search-for-woocommerce" wins over "woocommerce".
        self._required: List[Tuple[str, FrozenSet[str]]] = sorted(
            required_map.items(), key=lambda item: (-len(item[0]), item[0])
        )
        self._relevance: Dict[str, Tuple[str, ...]] = {
            k: tuple(v) for k, v in (relevance or SCREEN_RELEVANCE).items()
        }

    def check(self, plugin_id: str, kind: str) -> CatalogVerdict:
        slug = plugin_slug(plugin_id)
        for pattern, blockable in self._required:
            if slug == pattern or re.match(rf"^{re.escape(pattern)}(?:[/\-]|$)", slug):
                if not blockable:
                    return CatalogVerdict(False, f'Plugin "{pattern}" is critical and should not be blocked')
                if kind in blockable:
                    return CatalogVerdict(
                        True, f'Plugin "{pattern}" does not need to run for {kind.upper()} requests'
                    )
                return CatalogVerdict(False, f'Plugin "{pattern}" needs to run for {kind.upper()} requests')
        for pattern, kinds in self._safe.items():
            if pattern in slug and kind in kinds:
                return CatalogVerdict(
                    True,
                    f'Plugin "{pattern}" is typically frontend-only and can be safely blocked '
                    f"for {kind.upper()} requests",
                )
        return UNKNOWN

    def is_relevant(self, plugin_id: str, screen_id: str) -> bool:
        """Whether a plugin plausibly does work on an admin screen."""

        slug = plugin_slug(plugin_id)
        screen = screen_id.lower()
        keywords: List[str] = []
        for pattern, words in self._relevance.items():
            if pattern in screen:
                keywords.extend(words)
        if not keywords:
            return True
        if any(keyword in slug for keyword in keywords):
            return True
        if slug in ALWAYS_RELEVANT or slug in screen:
            return True
        return any(len(word) > 3 and word in slug for word in _SCREEN_WORD_SPLIT.split(screen))


__all__ = [
    "ALWAYS_RELEVANT",
    "CatalogVerdict",
    "PluginCatalog",
    "REQUIRED",
    "SAFE_TO_BLOCK",
    "SCREEN_RELEVANCE",
    "plugin_slug",
]
