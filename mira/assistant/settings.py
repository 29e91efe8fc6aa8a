"""Per-session key/value settings with change notification."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

LOGGER = logging.getLogger("mira-assistant.settings")

WAKE_REQUIRES_HEAD_UP = "wake_requires_head_up"
SPEAK_RESPONSE = "speak_response"
LLM_PROVIDER = "llm_provider"
LLM_MODEL = "llm_model"
LLM_API_KEY = "llm_api_key"

SettingsListener = Callable[[Mapping[str, Any]], None]


class SessionSettings:
    """Settings pushed from the companion app for a single session."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(initial or {})
        self._listeners: list[SettingsListener] = []

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self._values.get(key)
        if value is None:
            return default
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)

    def get_str(self, key: str) -> str | None:
        """Return a trimmed string value; empty or whitespace counts as unset."""
        value = self._values.get(key)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def snapshot(self) -> dict[str, Any]:
        return dict(self._values)

    def update(self, values: Mapping[str, Any]) -> bool:
        """Merge new values and notify listeners. Returns True if anything changed."""
        changed = {key: value for key, value in values.items() if self._values.get(key) != value}
        if not changed:
            return False
        self._values.update(changed)
        for listener in list(self._listeners):
            try:
                listener(changed)
            except Exception:
                LOGGER.exception("[settings] Settings listener failed")
        return True

    def on_change(self, listener: SettingsListener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove
