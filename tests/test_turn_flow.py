"""End-to-end turn: real controller, finalizer and transcript store client."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from mira.assistant.context_collector import ContextCollector
from mira.assistant.listening_window import ListeningWindowController, TurnPhase
from mira.assistant.provider_resolver import Provider, ProviderSelection, SelectionSource
from mira.assistant.query_finalizer import QueryFinalizer
from mira.assistant.settings import SessionSettings
from mira.assistant.transcript_store import TranscriptStoreClient

pytestmark = pytest.mark.anyio

SELECTION = ProviderSelection(
    provider=Provider.OPENAI, model="gpt-4o", api_key="sk-0123456789abc", source=SelectionSource.DEFAULT
)


@pytest.fixture
def requests() -> list[httpx.Request]:
    return []


@pytest.fixture
async def store(requests):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"segments": [{"text": "hey mentra what's the weather"}]})

    store = TranscriptStoreClient(base_url="http://transcripts.test/", transport=httpx.MockTransport(handler))
    yield store
    await store.close()


@pytest.fixture
def model_client():
    client = Mock()
    client.invoke = AsyncMock(return_value="Sunny and 72.")
    return client


@pytest.fixture
def turn(device, store, model_client, fast_timing, sounds):
    timing = replace(fast_timing, cooldown=0.5)
    settings = SessionSettings()
    resolver = Mock()
    resolver.client_for = Mock(return_value=(SELECTION, model_client))
    collector = ContextCollector(photo_wait=timing.photo_wait)
    finalizer = QueryFinalizer(
        "session-1", device, settings, store, resolver, collector, timing=timing, sounds=sounds
    )
    controller = ListeningWindowController(
        "session-1", device, settings, finalizer, collector, timing=timing, sounds=sounds
    )
    yield controller, finalizer
    controller.close()
    finalizer.close()


async def _wait_for(condition, attempts: int = 100) -> None:
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never became true")


class TestTurnFlow:
    async def test_repeated_final_sends_one_query(self, turn, device, model_client, requests):
        controller, finalizer = turn

        device.emit("hey mentra what's the weather", is_final=True)
        device.emit("hey mentra what's the weather", is_final=True)
        await asyncio.sleep(0)

        assert controller.phase is TurnPhase.LISTENING
        assert requests == []

        await _wait_for(lambda: model_client.invoke.await_count == 1 and controller.phase is TurnPhase.IDLE)

        assert len(requests) == 1
        assert requests[0].url.path == "/api/transcripts/session-1"
        query = model_client.invoke.await_args.args[0]
        assert query.query == "what's the weather"
        assert device.shown[-1][0] == "Sunny and 72."

    async def test_wake_word_during_cooldown_is_dropped(self, turn, device, model_client, requests):
        controller, finalizer = turn

        device.emit("hey mentra what's the weather", is_final=True)
        await _wait_for(lambda: model_client.invoke.await_count == 1 and controller.phase is TurnPhase.IDLE)
        assert finalizer.is_processing
        photo_requests = device.photo_requests

        device.emit("hey mentra", is_final=True)
        await asyncio.sleep(0.1)

        assert controller.phase is TurnPhase.IDLE
        assert device.photo_requests == photo_requests
        assert model_client.invoke.await_count == 1
        assert len(requests) == 1

        await _wait_for(lambda: not finalizer.is_processing)
