"""Named, cancelable timers on the asyncio loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

LOGGER = logging.getLogger("mira-assistant.timers")

FINALIZE_DEBOUNCE = "finalize_debounce"
MAX_LISTEN_DURATION = "max_listen_duration"
HEAD_UP_WINDOW = "head_up_window"


class TimerArena:
    """Holds at most one armed handle per timer name.

    Arming a name that is already armed cancels the previous handle first.
    Callbacks run on the loop thread; a fired timer is removed before its
    callback runs so the callback may re-arm the same name.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._handles: dict[str, asyncio.TimerHandle] = {}

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def arm(self, name: str, delay: float, callback: Callable[[], None]) -> None:
        self.cancel(name)

        def _fire() -> None:
            if self._handles.get(name) is handle:
                del self._handles[name]
            try:
                callback()
            except Exception:
                LOGGER.exception("[timers] Timer %s callback failed", name)

        handle = self._get_loop().call_later(max(0.0, delay), _fire)
        self._handles[name] = handle

    def cancel(self, name: str) -> bool:
        handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_armed(self, name: str) -> bool:
        return name in self._handles

    def armed(self) -> list[str]:
        return sorted(self._handles)

    def cancel_all(self) -> None:
        for name in list(self._handles):
            self.cancel(name)
