"""Tests for session lifecycle, event fan-out and idle pruning."""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest
from mira.assistant.config import AssistantConfig
from mira.assistant.listening_window import TurnPhase
from mira.assistant.session_manager import AssistantSessionManager
from mira.assistant.settings import WAKE_REQUIRES_HEAD_UP

pytestmark = pytest.mark.anyio


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def config():
    return AssistantConfig.from_env({"MIRA_SERVER_URL": "https://api.mira.test", "MIRA_HOSTNAME": "test-host"})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    store = Mock()
    store.close = AsyncMock()
    return store


@pytest.fixture
def resolver():
    return Mock()


@pytest.fixture
async def manager(config, store, resolver, clock):
    manager = AssistantSessionManager(config, store=store, resolver=resolver, clock=clock)
    yield manager
    await manager.close()


class TestSessions:
    async def test_start_session(self, manager, device):
        session = manager.start_session("s1", "user-1", device, {"speak_response": True})

        assert len(manager) == 1
        assert manager.get("s1") is session
        assert manager.sessions_for_user("user-1") == [session]
        assert session.settings.get_bool("speak_response")
        assert session.controller.phase is TurnPhase.IDLE
        assert device.subscribed

    async def test_restart_replaces_session(self, manager, make_device):
        first_device = make_device()
        second_device = make_device()
        first = manager.start_session("s1", "user-1", first_device)

        second = manager.start_session("s1", "user-1", second_device)

        assert manager.get("s1") is second
        assert second is not first
        assert not first_device.subscribed
        assert second_device.subscribed

    async def test_stop_session(self, manager, device, resolver):
        manager.start_session("s1", "user-1", device)

        assert manager.stop_session("s1") is True
        assert manager.stop_session("s1") is False

        assert manager.get("s1") is None
        assert not device.subscribed
        resolver.invalidate.assert_called_with("s1")

    async def test_events_for_unknown_session_ignored(self, manager):
        manager.handle_head_position("missing", "up")
        manager.handle_settings_update("missing", {"speak_response": True})
        manager.handle_phone_notifications("missing", {"id": "1"})
        manager.handle_notification_dismissed("missing", "1")

        assert len(manager.notifications) == 0

    async def test_close_stops_everything(self, config, store, resolver, clock, make_device):
        manager = AssistantSessionManager(config, store=store, resolver=resolver, clock=clock)
        manager.start_session("s1", "u1", make_device())
        manager.start_session("s2", "u2", make_device())

        await manager.close()

        assert len(manager) == 0
        store.close.assert_awaited_once()

    def test_store_requires_server_url(self):
        config = AssistantConfig.from_env({"MIRA_HOSTNAME": "test-host"})
        with pytest.raises(ValueError):
            AssistantSessionManager(config)


class TestSettingsUpdates:
    async def test_settings_change_reloads_controller(self, manager, device, resolver):
        session = manager.start_session("s1", "user-1", device)
        resolver.invalidate.reset_mock()

        manager.handle_settings_update("s1", {WAKE_REQUIRES_HEAD_UP: True})

        assert session.controller.phase is TurnPhase.HEAD_GATED
        assert not device.subscribed
        resolver.invalidate.assert_called_once_with("s1")

    async def test_unchanged_settings_do_not_invalidate(self, manager, device, resolver):
        manager.start_session("s1", "user-1", device, {"llm_provider": "openai"})
        resolver.invalidate.reset_mock()

        manager.handle_settings_update("s1", {"llm_provider": "openai"})

        resolver.invalidate.assert_not_called()

    async def test_head_position_routed(self, manager, device):
        manager.start_session("s1", "user-1", device, {WAKE_REQUIRES_HEAD_UP: True})
        assert not device.subscribed

        manager.handle_head_position("s1", {"position": "down"})
        manager.handle_head_position("s1", {"position": "up"})

        assert device.subscribed


class TestNotifications:
    async def test_stored_per_user(self, manager, make_device):
        manager.start_session("s1", "user-1", make_device())
        manager.start_session("s2", "user-1", make_device())

        manager.handle_phone_notifications("s1", [{"id": "a"}, {"id": "b"}])
        manager.handle_phone_notifications("s2", {"id": "c"})
        manager.handle_notification_dismissed("s2", "a")

        assert manager.notifications.latest("user-1") == [{"id": "b"}, {"id": "c"}]


class TestPruning:
    async def test_idle_sessions_pruned(self, manager, make_device, clock):
        manager.start_session("old", "u1", make_device())
        clock.now += 50
        manager.start_session("new", "u2", make_device())
        clock.now += 30

        pruned = manager.prune_idle(60)

        assert pruned == ["old"]
        assert manager.get("old") is None
        assert manager.get("new") is not None

    async def test_activity_keeps_session_alive(self, manager, make_device, clock):
        manager.start_session("s1", "u1", make_device())
        clock.now += 50
        manager.handle_phone_notifications("s1", {"id": "x"})
        clock.now += 50

        assert manager.prune_idle(60) == []

    async def test_default_limit_from_config(self, manager, make_device, clock, config):
        manager.start_session("s1", "u1", make_device())
        clock.now += config.session_idle_seconds + 1

        assert manager.prune_idle() == ["s1"]
