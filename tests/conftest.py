"""Shared test fixtures and configuration for the Mira test suite.

This module provides reusable fixtures for common test scenarios including:
- A fake glasses device session
- MQTT configuration and client mocking
- LLM configuration factories
- Scaled-down turn timing for state machine tests
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from unittest.mock import Mock

import paho.mqtt.client as mqtt
import pytest
from mira.assistant.config import LLMConfig, MqttConfig, SoundConfig, TurnTiming
from mira.assistant.context_collector import Photo
from mira.assistant.device import DeviceCapabilities, DeviceSession, SpeakResult, TranscriptEvent

# ============================================================================
# Pytest Configuration
# ============================================================================


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio backend for async tests."""
    return "asyncio"


# ============================================================================
# Logging Fixtures
# ============================================================================


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    return Mock(spec=logging.Logger)


# ============================================================================
# Device Fixtures
# ============================================================================


class FakeDevice(DeviceSession):
    """In-memory stand-in for a glasses session."""

    def __init__(
        self,
        *,
        has_display: bool = True,
        has_camera: bool = True,
        photo: Photo | None = None,
        photo_delay: float = 0.0,
        location: Any = None,
    ) -> None:
        self.capabilities = DeviceCapabilities(has_display=has_display, has_camera=has_camera)
        self.photo = photo or Photo(data=b"jpeg-bytes", request_id="photo-1")
        self.photo_delay = photo_delay
        self.location = location
        self.shown: list[tuple[str, int]] = []
        self.spoken: list[str] = []
        self.played: list[str] = []
        self.photo_requests = 0
        self.location_requests = 0
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0
        self.speak_result = SpeakResult()
        self._listeners: list[Any] = []

    @property
    def subscribed(self) -> bool:
        return bool(self._listeners)

    def subscribe_transcription(self, callback):
        self._listeners.append(callback)
        self.subscribe_calls += 1

        def _unsubscribe() -> None:
            self._listeners.remove(callback)
            self.unsubscribe_calls += 1

        return _unsubscribe

    def emit(self, text: str, is_final: bool = False) -> None:
        for callback in list(self._listeners):
            callback(TranscriptEvent(text=text, is_final=is_final))

    def show_text(self, text: str, duration_ms: int) -> None:
        self.shown.append((text, duration_ms))

    async def speak(self, text: str) -> SpeakResult:
        self.spoken.append(text)
        return self.speak_result

    async def play_audio(self, url: str) -> None:
        self.played.append(url)
        await asyncio.sleep(0)

    async def request_photo(self) -> Photo:
        self.photo_requests += 1
        if self.photo_delay:
            await asyncio.sleep(self.photo_delay)
        return self.photo

    async def get_location(self, accuracy: str = "high") -> Any:
        self.location_requests += 1
        return self.location


@pytest.fixture
def make_device():
    """Factory fixture for fake devices.

    Usage:
        device = make_device(has_display=False)
    """

    def _create(**kwargs: Any) -> FakeDevice:
        return FakeDevice(**kwargs)

    return _create


@pytest.fixture
def device():
    return FakeDevice()


# ============================================================================
# Timing Fixtures
# ============================================================================


@pytest.fixture
def fast_timing():
    """Turn timing scaled down so state machine tests run in well under a second."""
    return TurnTiming(
        debounce_final=0.05,
        debounce_trailing_wake=0.3,
        debounce_interim=0.1,
        max_listen=0.4,
        head_up_window=0.15,
        cooldown=0.05,
        photo_wait=0.05,
        photo_stale_after=0.5,
        photo_expire_after=1.0,
    )


@pytest.fixture
def sounds():
    return SoundConfig(
        start_listening_url="https://sounds.test/start.mp3",
        processing_url="https://sounds.test/processing.mp3",
        processing_repeats=5,
    )


# ============================================================================
# MQTT Fixtures
# ============================================================================


@pytest.fixture
def mqtt_config():
    """Create a basic MQTT configuration for testing."""
    return MqttConfig(
        host="localhost",
        port=1883,
        topic_base="mira/test-host",
        username=None,
        password=None,
        tls_enabled=False,
        ca_cert=None,
        cert=None,
        key=None,
    )


@pytest.fixture
def mock_mqtt_client():
    """Create a mock paho MQTT client."""
    client = Mock(spec=mqtt.Client)
    client.connect = Mock()
    client.disconnect = Mock()
    client.subscribe = Mock(return_value=(mqtt.MQTT_ERR_SUCCESS, 1))
    client.unsubscribe = Mock()

    message_info = Mock(spec=mqtt.MQTTMessageInfo)
    message_info.rc = mqtt.MQTT_ERR_SUCCESS
    message_info.mid = 1
    client.publish = Mock(return_value=message_info)

    client.loop_start = Mock()
    client.loop_stop = Mock()
    client.is_connected = Mock(return_value=True)
    return client


# ============================================================================
# LLM Fixtures
# ============================================================================


@pytest.fixture
def make_llm_config():
    """Factory fixture for creating LLM configs with custom overrides.

    Usage:
        config = make_llm_config(provider="anthropic", anthropic_api_key="key")
    """

    def _create_config(**overrides: Any) -> LLMConfig:
        defaults: dict[str, Any] = {
            "provider": None,
            "model": None,
            "system_prompt": "You are a helpful assistant.",
            "temperature": 0.3,
            "max_tokens": 300,
            "timeout": 30,
            "generic_api_key": None,
            "openai_api_key": None,
            "openai_base_url": "https://api.openai.com/v1",
            "azure_api_key": None,
            "azure_instance_name": None,
            "azure_deployment_name": None,
            "azure_api_version": "2024-02-15-preview",
            "anthropic_api_key": None,
            "anthropic_base_url": "https://api.anthropic.com/v1",
            "google_api_key": None,
            "google_base_url": "https://generativelanguage.googleapis.com/v1beta",
            "perplexity_api_key": None,
            "perplexity_base_url": "https://api.perplexity.ai",
        }
        defaults.update(overrides)
        return LLMConfig(**defaults)

    return _create_config


@pytest.fixture
def llm_config_openai(make_llm_config):
    return make_llm_config(openai_api_key="sk-test-openai-0123456789")
