"""
Turns a completed listening window into an answer

The finalizer fetches the turn's transcript from the backend store, strips
the wake phrase, asks the resolved model client, then shows and/or speaks
the result. A boolean guard allows one query per session at a time; it is
checked before and after the transcript fetch and released only after a
short cooldown so trailing duplicate triggers are absorbed.

All failures end the turn with a short message on the display; nothing
propagates to the controller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from mira.utils import truncate_text, wrap_text

from .config import SoundConfig, TurnTiming
from .context_collector import ContextCollector
from .device import DeviceSession, SpeakResult
from .listening_window import TurnSnapshot
from .llm import CONTROL_SIGNAL, ModelQuery
from .notifications import NotificationBuffer
from .provider_resolver import ProviderResolver
from .settings import SPEAK_RESPONSE, SessionSettings
from .transcript_store import (
    TranscriptFormatError,
    TranscriptStoreClient,
    TranscriptStoreError,
    capture_duration_seconds,
)
from .wake_words import WakeWordMatcher

LOGGER = logging.getLogger("mira-assistant.finalize")

DISPLAY_WIDTH = 30
QUERY_PREVIEW_CHARS = 60
NOTIFICATIONS_PER_QUERY = 5

TRANSCRIPT_ERROR_MESSAGE = "Sorry, there was an error retrieving your transcript. Please try again."
TRANSCRIPT_FORMAT_MESSAGE = "Sorry, the transcript format was invalid. Please try again."
NO_QUERY_MESSAGE = "No query provided."
NO_ANSWER_MESSAGE = "Sorry, I couldn't find an answer to that."
PROCESSING_ERROR_MESSAGE = "Sorry, there was an error processing your request."
NO_MODEL_MESSAGE = "Sorry, no language model is configured right now."


class QueryFinalizer:
    """Runs the fetch, model and render steps for one session's turns."""

    def __init__(
        self,
        session_id: str,
        device: DeviceSession,
        settings: SessionSettings,
        store: TranscriptStoreClient,
        resolver: ProviderResolver,
        collector: ContextCollector,
        *,
        user_id: str | None = None,
        notifications: NotificationBuffer | None = None,
        timing: TurnTiming | None = None,
        sounds: SoundConfig | None = None,
        matcher: WakeWordMatcher | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session_id = session_id
        self.user_id = user_id or session_id
        self.device = device
        self.settings = settings
        self.store = store
        self.resolver = resolver
        self.collector = collector
        self.notifications = notifications
        self.timing = timing or TurnTiming()
        self.sounds = sounds
        self.matcher = matcher or WakeWordMatcher()
        self.logger = logger or LOGGER
        self._processing = False
        self._release_handle: asyncio.TimerHandle | None = None

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def finalize(self, snapshot: TurnSnapshot) -> None:
        if self._processing:
            self.logger.info("[finalize] Session %s: query already in progress; skipping", self.session_id)
            return

        duration = capture_duration_seconds(snapshot.started_at, snapshot.triggered_at, snapshot.nominal_ms / 1000)
        try:
            transcript = await self.store.fetch(self.session_id, duration)
        except TranscriptFormatError as exc:
            self.logger.error("[finalize] Session %s: invalid transcript response: %s", self.session_id, exc)
            self._show(TRANSCRIPT_FORMAT_MESSAGE, self.timing.answer_display_ms)
            return
        except TranscriptStoreError as exc:
            self.logger.error("[finalize] Session %s: error fetching transcript: %s", self.session_id, exc)
            self._show(TRANSCRIPT_ERROR_MESSAGE, self.timing.answer_display_ms)
            return

        if self._processing:
            self.logger.info("[finalize] Session %s: another query started during fetch; dropping", self.session_id)
            return
        self._processing = True

        raw_text = transcript.text
        query = self.matcher.strip_wake_word(raw_text)
        self.logger.debug("[finalize] Session %s: raw=%r query=%r", self.session_id, raw_text, query)
        if not query.strip():
            self.logger.warning("[finalize] Session %s: empty query (raw text %r)", self.session_id, raw_text)
            self._show(NO_QUERY_MESSAGE, self.timing.answer_display_ms)
            self._processing = False
            return

        done = asyncio.Event()
        sound_task: asyncio.Task[None] | None = None
        if self._should_speak() and self.sounds:
            sound_task = asyncio.ensure_future(self._play_processing_sounds(done))

        try:
            self._show(
                "Processing query: " + truncate_text(query, QUERY_PREVIEW_CHARS),
                self.timing.processing_display_ms,
            )
            photo = await self.collector.get_photo(self.session_id)
            selection, client = self.resolver.client_for(self.session_id, self.settings)
            if client is None:
                done.set()
                self.logger.error("[finalize] Session %s: no model available (%s)", self.session_id, selection.reason)
                await self.show_or_speak(NO_MODEL_MESSAGE)
                return

            request = ModelQuery(
                query=query,
                photo=photo,
                location_context=self.collector.location_context(self.session_id),
                notifications=self._latest_notifications(),
            )
            answer = await client.invoke(request)
            done.set()

            if not answer or not answer.strip():
                self.logger.info("[finalize] Session %s: no answer found", self.session_id)
                await self.show_or_speak(NO_ANSWER_MESSAGE)
            elif answer == CONTROL_SIGNAL:
                self.logger.info("[finalize] Session %s: a tool took control of the response", self.session_id)
            else:
                self.logger.info("[finalize] Session %s: answered via %s", self.session_id, selection.describe())
                await self.show_or_speak(answer.strip())
        except Exception:
            done.set()
            self.logger.exception("[finalize] Session %s: error processing query", self.session_id)
            await self.show_or_speak(PROCESSING_ERROR_MESSAGE)
        finally:
            done.set()
            if sound_task is not None and not sound_task.done():
                sound_task.cancel()
            self._schedule_release()

    async def show_or_speak(self, text: str) -> None:
        self._show(text, self.timing.answer_display_ms)
        if not self._should_speak():
            return
        try:
            result = await self.device.speak(text)
        except Exception as exc:
            self.logger.error("[finalize] Session %s: error speaking text: %s", self.session_id, exc)
            return
        if isinstance(result, SpeakResult) and result.error:
            self.logger.error("[finalize] Session %s: error speaking text: %s", self.session_id, result.error)

    def close(self) -> None:
        if self._release_handle is not None:
            self._release_handle.cancel()
            self._release_handle = None
        self._processing = False

    def _should_speak(self) -> bool:
        return self.settings.get_bool(SPEAK_RESPONSE) or not self.device.capabilities.has_display

    def _latest_notifications(self) -> list[dict[str, Any]]:
        if self.notifications is None:
            return []
        return self.notifications.latest(self.user_id, NOTIFICATIONS_PER_QUERY)

    async def _play_processing_sounds(self, done: asyncio.Event) -> None:
        if self.sounds is None:
            return
        for _ in range(self.sounds.processing_repeats):
            if done.is_set():
                return
            try:
                await self.device.play_audio(self.sounds.processing_url)
            except Exception as exc:
                self.logger.debug("[finalize] Session %s: processing sound failed: %s", self.session_id, exc)
                return

    def _schedule_release(self) -> None:
        if self._release_handle is not None:
            self._release_handle.cancel()
        self._release_handle = asyncio.get_running_loop().call_later(self.timing.cooldown, self._release)

    def _release(self) -> None:
        self._release_handle = None
        self._processing = False
        self.logger.debug("[finalize] Session %s: ready for the next query", self.session_id)

    def _show(self, text: str, duration_ms: int) -> None:
        try:
            self.device.show_text(wrap_text(text, DISPLAY_WIDTH), duration_ms)
        except Exception as exc:
            self.logger.warning("[finalize] Session %s: display failed: %s", self.session_id, exc)
