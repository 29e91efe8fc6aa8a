"""Owns the per-session controller, finalizer and settings."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import AssistantConfig
from .context_collector import ContextCollector
from .device import DeviceSession
from .listening_window import ListeningWindowController
from .notifications import NotificationBuffer
from .provider_resolver import ProviderResolver
from .query_finalizer import QueryFinalizer
from .settings import SessionSettings
from .transcript_store import TranscriptStoreClient
from .wake_words import WakeWordMatcher

LOGGER = logging.getLogger("mira-assistant.sessions")


@dataclass
class AssistantSession:
    session_id: str
    user_id: str
    device: DeviceSession
    settings: SessionSettings
    controller: ListeningWindowController
    finalizer: QueryFinalizer
    started_at: float
    last_activity: float
    _remove_listener: Callable[[], None] | None = field(default=None, repr=False)

    def idle_for(self, now: float) -> float:
        return now - max(self.last_activity, self.controller.last_event_at)


class AssistantSessionManager:
    def __init__(
        self,
        config: AssistantConfig,
        *,
        store: TranscriptStoreClient | None = None,
        resolver: ProviderResolver | None = None,
        collector: ContextCollector | None = None,
        notifications: NotificationBuffer | None = None,
        matcher: WakeWordMatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or LOGGER
        self._clock = clock
        self.store = store or TranscriptStoreClient(config.server_url, timeout=config.transcript_timeout)
        self.resolver = resolver or ProviderResolver(config.llm)
        timing = config.timing
        self.collector = collector or ContextCollector(
            stale_after=timing.photo_stale_after,
            expire_after=timing.photo_expire_after,
            photo_wait=timing.photo_wait,
            geocoding_token=config.location.token,
            geocoding_base_url=config.location.base_url,
            geocoding_timeout=config.location.timeout,
        )
        self.notifications = notifications or NotificationBuffer(config.notification_history)
        self.matcher = matcher or WakeWordMatcher(config.wake_phrases or None)
        self._sessions: dict[str, AssistantSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> AssistantSession | None:
        return self._sessions.get(session_id)

    def sessions_for_user(self, user_id: str) -> list[AssistantSession]:
        return [session for session in self._sessions.values() if session.user_id == user_id]

    def start_session(
        self,
        session_id: str,
        user_id: str,
        device: DeviceSession,
        settings: dict[str, Any] | None = None,
    ) -> AssistantSession:
        if session_id in self._sessions:
            self.logger.info("[sessions] Session %s restarted; replacing previous state", session_id)
            self.stop_session(session_id)

        session_settings = SessionSettings(settings)
        finalizer = QueryFinalizer(
            session_id,
            device,
            session_settings,
            self.store,
            self.resolver,
            self.collector,
            user_id=user_id,
            notifications=self.notifications,
            timing=self.config.timing,
            sounds=self.config.sounds,
            matcher=self.matcher,
        )
        controller = ListeningWindowController(
            session_id,
            device,
            session_settings,
            finalizer,
            self.collector,
            timing=self.config.timing,
            sounds=self.config.sounds,
            matcher=self.matcher,
            clock=self._clock,
            log_transcripts=self.config.log_transcripts,
        )
        now = self._clock()
        session = AssistantSession(
            session_id=session_id,
            user_id=user_id,
            device=device,
            settings=session_settings,
            controller=controller,
            finalizer=finalizer,
            started_at=now,
            last_activity=now,
        )
        session._remove_listener = session_settings.on_change(
            lambda changed: self._on_settings_changed(session, changed)
        )
        self._sessions[session_id] = session
        self.logger.info("[sessions] Started session %s for user %s", session_id, user_id)
        return session

    def stop_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if session._remove_listener is not None:
            session._remove_listener()
        session.controller.close()
        session.finalizer.close()
        self.collector.discard(session_id)
        self.resolver.invalidate(session_id)
        self.logger.info("[sessions] Stopped session %s", session_id)
        return True

    def handle_head_position(self, session_id: str, payload: Any) -> None:
        session = self._touch(session_id)
        if session is not None:
            session.controller.handle_head_position(payload)

    def handle_settings_update(self, session_id: str, values: dict[str, Any]) -> None:
        session = self._touch(session_id)
        if session is None:
            return
        session.settings.update(values)

    def handle_phone_notifications(self, session_id: str, notifications: Any) -> None:
        session = self._touch(session_id)
        if session is None:
            return
        self.notifications.add(session.user_id, notifications)

    def handle_notification_dismissed(self, session_id: str, notification_id: str) -> None:
        session = self._touch(session_id)
        if session is None:
            return
        self.notifications.dismiss(session.user_id, notification_id)

    def prune_idle(self, max_idle_seconds: float | None = None) -> list[str]:
        """Stop sessions with no activity for longer than ``max_idle_seconds``."""
        limit = self.config.session_idle_seconds if max_idle_seconds is None else max_idle_seconds
        now = self._clock()
        stale = [session_id for session_id, session in self._sessions.items() if session.idle_for(now) > limit]
        for session_id in stale:
            self.logger.info("[sessions] Pruning idle session %s", session_id)
            self.stop_session(session_id)
        return stale

    async def prune_forever(self, interval: float = 3600.0) -> None:
        while True:
            await asyncio.sleep(interval)
            self.prune_idle()

    async def close(self) -> None:
        for session_id in list(self._sessions):
            self.stop_session(session_id)
        await self.store.close()

    def _touch(self, session_id: str) -> AssistantSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            self.logger.debug("[sessions] Event for unknown session %s", session_id)
            return None
        session.last_activity = self._clock()
        return session

    def _on_settings_changed(self, session: AssistantSession, changed: dict[str, Any]) -> None:
        self.logger.info("[sessions] Session %s settings changed: %s", session.session_id, sorted(changed))
        self.resolver.invalidate(session.session_id)
        session.controller.reload_settings(changed)
