"""HTTP client for the rule store action endpoint."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from loadwarden.config import StoreConfig
from loadwarden.errors import ServerRejectedError, TransportError

logger = logging.getLogger(__name__)


class RuleStoreClient:
    """Thin wrapper around the single POST action endpoint.

    Requests are form encoded: ``action``, ``nonce`` and one field per
    payload entry, where non-string values are JSON encoded.  Replies use the
    ``{"success": bool, "data": ...}`` envelope; on failure ``data`` is either
    ``{"message": str}`` or a plain string.
    """

    def __init__(self, config: StoreConfig, *, transport: Optional[httpx.BaseTransport] = None) -> None:
        self._config = config
        self._client = httpx.Client(
            base_url=config.base_url.rstrip("/"),
            timeout=config.request_timeout,
            follow_redirects=True,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Public API
    def call(self, action: str, payload: Optional[Mapping[str, Any]] = None) -> Any:
        """POST ``action`` and return the envelope's ``data`` on success."""

        form: Dict[str, str] = {"action": action, "nonce": self._config.nonce}
        for name, value in (payload or {}).items():
            form[name] = value if isinstance(value, str) else json.dumps(value)
        try:
            response = self._client.post(self._config.endpoint, data=form)
        except httpx.HTTPError as exc:
            logger.warning("%s failed: %s", action, exc)
            raise TransportError() from exc
        envelope = self._decode(response)
        if envelope is not None and envelope.get("success") is False:
            message = _failure_message(envelope.get("data"))
            logger.info("%s rejected: %s", action, message or "<no message>")
            raise ServerRejectedError(message, status_code=response.status_code)
        self._validate_response(response)
        if envelope is None:
            raise TransportError()
        return envelope.get("data")

    def save_screen_rules(self, rules: Mapping[str, Any]) -> Any:
        return self.call("save-screen-rules", {"rules": rules})

    def save_request_kind_rules(self, rules: Mapping[str, Any]) -> Any:
        return self.call("save-request-kind-rules", {"rules": rules})

    def save_frontend_rules(self, rules: Mapping[str, Any]) -> Any:
        return self.call("save-frontend-rules", {"rules": rules})

    def toggle_frontend_rule(self, payload: Mapping[str, Any]) -> Any:
        return self.call("toggle-frontend-rule", payload)

    def reset_overrides(self, context: str, override_type: str, override_id: int) -> Any:
        return self.call(
            "reset-overrides",
            {"context": context, "override_type": override_type, "override_id": str(override_id)},
        )

    def apply_auto_rules(self, suggestions: Any) -> Any:
        return self.call("apply-auto-rules", {"suggestions": suggestions})

    def get_performance(self) -> Any:
        return self.call("get-request-kind-performance")

    def get_auto_suggestions(self) -> Any:
        return self.call("get-auto-suggestions")

    def save_admin_theme(self, theme: str) -> Any:
        return self.call("save-admin-theme", {"theme": theme})

    def set_mode(self, mode: str) -> Any:
        return self.call("set-mode", {"mode": mode})

    def close(self) -> None:
        """Close the underlying :class:`httpx.Client`."""

        self._client.close()

    def __enter__(self) -> "RuleStoreClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    @staticmethod
    def _decode(response: httpx.Response) -> Optional[Dict[str, Any]]:
        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict) or "success" not in payload:
            return None
        return payload

    @staticmethod
    def _validate_response(response: httpx.Response) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError() from exc


def _failure_message(data: Any) -> Optional[str]:
    if isinstance(data, str) and data.strip():
        return data.strip()
    if isinstance(data, Mapping):
        message = data.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None


__all__ = ["RuleStoreClient"]
