"""
Multimodal turn context: camera photo and geocoded location

Photos: at most one capture request is in flight per session. The request
handle is stored before anything is awaited so concurrent callers in the
same turn share it. A completed photo is reused while it is fresh (5s since
completion by default); after that the next turn start issues a new request.
Photos older than the hard expiry (30s) are purged. Waiting for a photo is a
bounded race that never cancels the underlying capture, so a late result can
still serve a later turn while it is fresh.

Location: best-effort reverse geocoding and timezone lookup. Partial results
are normal; anything missing stays at the ``Unknown`` sentinel.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mira.location_resolver import UNKNOWN_LOCATION, LocationContext, resolve_location_context

if TYPE_CHECKING:
    from .device import DeviceSession

LOGGER = logging.getLogger("mira-assistant.context")


@dataclass(frozen=True)
class Photo:
    data: bytes
    mime_type: str = "image/jpeg"
    request_id: str | None = None
    captured_at: float = field(default_factory=time.time)


@dataclass
class PendingPhoto:
    future: asyncio.Future[Photo]
    requested_at: float
    photo: Photo | None = None
    completed_at: float | None = None


class ContextCollector:
    """Collects photo and location context keyed by session."""

    def __init__(
        self,
        *,
        stale_after: float = 5.0,
        expire_after: float = 30.0,
        photo_wait: float = 3.0,
        geocoding_token: str | None = None,
        geocoding_base_url: str | None = None,
        geocoding_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.stale_after = stale_after
        self.expire_after = expire_after
        self.photo_wait = photo_wait
        self._geocoding_token = geocoding_token
        self._geocoding_base_url = geocoding_base_url
        self._geocoding_timeout = geocoding_timeout
        self._clock = clock
        self.logger = logger or LOGGER
        self._photos: dict[str, PendingPhoto] = {}
        self._locations: dict[str, LocationContext] = {}
        self._location_tasks: dict[str, asyncio.Task[LocationContext]] = {}

    # ------------------------------------------------------------------ photos

    def pending_photo(self, session_key: str) -> PendingPhoto | None:
        entry = self._photos.get(session_key)
        if entry and entry.completed_at is not None and self._age(entry) > self.expire_after:
            self._photos.pop(session_key, None)
            return None
        return entry

    def _age(self, entry: PendingPhoto) -> float:
        if entry.completed_at is None:
            return 0.0
        return self._clock() - entry.completed_at

    def request_photo(self, session_key: str, camera: DeviceSession) -> PendingPhoto:
        """Start a capture unless one is in flight or a fresh result exists."""
        entry = self.pending_photo(session_key)
        if entry is not None:
            if entry.completed_at is None or self._age(entry) <= self.stale_after:
                return entry
            self.logger.debug("[context] Discarding stale photo for %s", session_key)
            self._photos.pop(session_key, None)

        future = asyncio.ensure_future(camera.request_photo())
        entry = PendingPhoto(future=future, requested_at=self._clock())
        self._photos[session_key] = entry
        future.add_done_callback(lambda done: self._on_photo_done(session_key, entry, done))
        return entry

    def _on_photo_done(self, session_key: str, entry: PendingPhoto, future: asyncio.Future[Photo]) -> None:
        if future.cancelled():
            self._drop_if_current(session_key, entry)
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error("[context] Error getting photo for %s: %s", session_key, exc)
            self._drop_if_current(session_key, entry)
            return
        entry.photo = future.result()
        entry.completed_at = self._clock()
        with contextlib.suppress(RuntimeError):
            asyncio.get_running_loop().call_later(
                self.expire_after, lambda: self._drop_if_current(session_key, entry)
            )

    def _drop_if_current(self, session_key: str, entry: PendingPhoto) -> None:
        if self._photos.get(session_key) is entry:
            del self._photos[session_key]

    async def get_photo(self, session_key: str, timeout: float | None = None) -> Photo | None:
        """Return the session's photo, waiting a bounded time for an in-flight capture."""
        entry = self.pending_photo(session_key)
        if entry is None:
            return None
        if entry.photo is not None:
            return entry.photo
        wait = self.photo_wait if timeout is None else timeout
        self.logger.debug("[context] Waiting up to %.1fs for photo", wait)
        try:
            return await asyncio.wait_for(asyncio.shield(entry.future), timeout=wait)
        except asyncio.TimeoutError:
            self.logger.debug("[context] Photo not ready after %.1fs; continuing without it", wait)
            return None
        except Exception as exc:
            self.logger.debug("[context] Photo request failed: %s", exc)
            return None

    # ---------------------------------------------------------------- location

    async def resolve_location(self, raw_coordinates: Any) -> LocationContext:
        kwargs: dict[str, Any] = {"token": self._geocoding_token, "timeout": self._geocoding_timeout}
        if self._geocoding_base_url:
            kwargs["base_url"] = self._geocoding_base_url
        try:
            return await resolve_location_context(raw_coordinates, **kwargs)
        except Exception:
            self.logger.exception("[context] Error processing location")
            return UNKNOWN_LOCATION

    def refresh_location(self, session_key: str, locator: DeviceSession) -> asyncio.Task[LocationContext]:
        """Fetch and resolve the device location in the background."""
        running = self._location_tasks.get(session_key)
        if running is not None and not running.done():
            return running
        task = asyncio.ensure_future(self._refresh_location(session_key, locator))
        self._location_tasks[session_key] = task
        return task

    async def _refresh_location(self, session_key: str, locator: DeviceSession) -> LocationContext:
        try:
            raw = await locator.get_location("high")
        except Exception as exc:
            self.logger.warning("[context] Error getting location: %s", exc)
            return self.location_context(session_key)
        if raw is None:
            return self.location_context(session_key)
        context = await self.resolve_location(raw)
        self._locations[session_key] = context
        return context

    def location_context(self, session_key: str) -> LocationContext:
        return self._locations.get(session_key, UNKNOWN_LOCATION)

    def discard(self, session_key: str) -> None:
        self._photos.pop(session_key, None)
        self._locations.pop(session_key, None)
        task = self._location_tasks.pop(session_key, None)
        if task is not None and not task.done():
            task.cancel()
