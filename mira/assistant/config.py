"""Configuration helpers for the Mira assistant."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from mira.location_resolver import DEFAULT_LOCATIONIQ_BASE_URL
from mira.utils import clean_server_url, parse_bool, parse_float, parse_int, strip_or_none


@dataclass(frozen=True)
class TurnTiming:
    """Durations (seconds) that shape a listening turn."""

    debounce_final: float = 1.5
    debounce_trailing_wake: float = 10.0
    debounce_interim: float = 3.0
    max_listen: float = 15.0
    head_up_window: float = 10.0
    cooldown: float = 2.0
    photo_wait: float = 3.0
    photo_stale_after: float = 5.0
    photo_expire_after: float = 30.0
    listening_display_ms: int = 10000
    live_display_ms: int = 20000
    processing_display_ms: int = 8000
    answer_display_ms: int = 5000


@dataclass(frozen=True)
class LLMConfig:
    provider: str | None
    model: str | None
    system_prompt: str
    temperature: float
    max_tokens: int
    timeout: int
    generic_api_key: str | None
    openai_api_key: str | None
    openai_base_url: str
    azure_api_key: str | None
    azure_instance_name: str | None
    azure_deployment_name: str | None
    azure_api_version: str
    anthropic_api_key: str | None
    anthropic_base_url: str
    google_api_key: str | None
    google_base_url: str
    perplexity_api_key: str | None
    perplexity_base_url: str

    def env_credential(self, provider: str) -> str | None:
        """Provider-specific credential from the process environment."""
        return {
            "openai": self.openai_api_key,
            "azure": self.azure_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
            "perplexity": self.perplexity_api_key,
        }.get(provider)


@dataclass(frozen=True)
class LocationConfig:
    token: str | None
    base_url: str
    timeout: float


@dataclass(frozen=True)
class MqttConfig:
    host: str | None
    port: int
    username: str | None
    password: str | None
    tls_enabled: bool
    cert: str | None
    key: str | None
    ca_cert: str | None
    topic_base: str


@dataclass(frozen=True)
class SoundConfig:
    start_listening_url: str
    processing_url: str
    processing_repeats: int = 5


@dataclass(frozen=True)
class AssistantConfig:
    hostname: str
    server_url: str
    transcript_timeout: float
    timing: TurnTiming
    llm: LLMConfig
    location: LocationConfig
    mqtt: MqttConfig
    sounds: SoundConfig
    log_transcripts: bool
    session_idle_seconds: int
    notification_history: int = 50
    wake_phrases: tuple[str, ...] = field(default_factory=tuple)

    @staticmethod
    def from_env(env: dict[str, str] | None = None) -> AssistantConfig:
        source = os.environ if env is None else env
        hostname = source.get("MIRA_HOSTNAME") or socket.gethostname()

        timing = TurnTiming(
            debounce_final=_ms(source.get("MIRA_DEBOUNCE_FINAL_MS"), 1500),
            debounce_trailing_wake=_ms(source.get("MIRA_DEBOUNCE_TRAILING_WAKE_MS"), 10000),
            debounce_interim=_ms(source.get("MIRA_DEBOUNCE_INTERIM_MS"), 3000),
            max_listen=_ms(source.get("MIRA_MAX_LISTEN_MS"), 15000),
            head_up_window=_ms(source.get("MIRA_HEAD_UP_WINDOW_MS"), 10000),
            cooldown=_ms(source.get("MIRA_COOLDOWN_MS"), 2000),
            photo_wait=_ms(source.get("MIRA_PHOTO_WAIT_MS"), 3000),
            photo_stale_after=_ms(source.get("MIRA_PHOTO_STALE_MS"), 5000),
            photo_expire_after=_ms(source.get("MIRA_PHOTO_EXPIRE_MS"), 30000),
        )

        system_prompt = source.get("MIRA_SYSTEM_PROMPT", "").strip()
        prompt_file = source.get("MIRA_SYSTEM_PROMPT_FILE")
        if not system_prompt and prompt_file:
            candidate = Path(prompt_file)
            if candidate.is_file():
                system_prompt = candidate.read_text(encoding="utf-8").strip()
        if not system_prompt:
            system_prompt = DEFAULT_SYSTEM_PROMPT

        llm = LLMConfig(
            provider=_lower_or_none(source.get("LLM_PROVIDER")),
            model=strip_or_none(source.get("LLM_MODEL")),
            system_prompt=system_prompt,
            temperature=parse_float(source.get("LLM_TEMPERATURE"), 0.3),
            max_tokens=parse_int(source.get("LLM_MAX_TOKENS"), 300),
            timeout=parse_int(source.get("LLM_TIMEOUT_SECONDS"), 45),
            generic_api_key=strip_or_none(source.get("LLM_API_KEY")),
            openai_api_key=strip_or_none(source.get("OPENAI_API_KEY")),
            openai_base_url=(source.get("OPENAI_BASE_URL") or "https://api.openai.com/v1").rstrip("/"),
            azure_api_key=strip_or_none(source.get("AZURE_OPENAI_API_KEY")),
            azure_instance_name=strip_or_none(source.get("AZURE_OPENAI_API_INSTANCE_NAME")),
            azure_deployment_name=strip_or_none(source.get("AZURE_OPENAI_API_DEPLOYMENT_NAME")),
            azure_api_version=source.get("AZURE_OPENAI_API_VERSION") or "2024-02-15-preview",
            anthropic_api_key=strip_or_none(source.get("ANTHROPIC_API_KEY")),
            anthropic_base_url=(source.get("ANTHROPIC_BASE_URL") or "https://api.anthropic.com/v1").rstrip("/"),
            google_api_key=strip_or_none(source.get("GOOGLE_API_KEY")),
            google_base_url=(
                source.get("GOOGLE_BASE_URL") or "https://generativelanguage.googleapis.com/v1beta"
            ).rstrip("/"),
            perplexity_api_key=strip_or_none(source.get("PERPLEXITY_API_KEY")),
            perplexity_base_url=(source.get("PERPLEXITY_BASE_URL") or "https://api.perplexity.ai").rstrip("/"),
        )

        location = LocationConfig(
            token=strip_or_none(source.get("LOCATIONIQ_TOKEN")),
            base_url=(source.get("LOCATIONIQ_BASE_URL") or DEFAULT_LOCATIONIQ_BASE_URL).rstrip("/"),
            timeout=parse_float(source.get("LOCATIONIQ_TIMEOUT_SECONDS"), 10.0),
        )

        topic_base = source.get("MIRA_TOPIC_BASE") or f"mira/{hostname}"
        mqtt = MqttConfig(
            host=strip_or_none(source.get("MQTT_HOST")),
            port=parse_int(source.get("MQTT_PORT"), 1883),
            username=strip_or_none(source.get("MQTT_USER") or source.get("MQTT_USERNAME")),
            password=strip_or_none(source.get("MQTT_PASS") or source.get("MQTT_PASSWORD")),
            tls_enabled=parse_bool(source.get("MQTT_TLS_ENABLED"), False),
            cert=strip_or_none(source.get("MQTT_CERT")),
            key=strip_or_none(source.get("MQTT_KEY")),
            ca_cert=strip_or_none(source.get("MQTT_CA_CERT")),
            topic_base=topic_base.rstrip("/"),
        )

        sounds = SoundConfig(
            start_listening_url=source.get("MIRA_START_SOUND_URL") or DEFAULT_START_LISTENING_SOUND_URL,
            processing_url=source.get("MIRA_PROCESSING_SOUND_URL") or DEFAULT_PROCESSING_SOUND_URL,
            processing_repeats=max(0, parse_int(source.get("MIRA_PROCESSING_SOUND_REPEATS"), 5)),
        )

        wake_phrases = tuple(
            phrase.strip().lower() for phrase in (source.get("MIRA_WAKE_PHRASES") or "").split("|") if phrase.strip()
        )

        return AssistantConfig(
            hostname=hostname,
            server_url=clean_server_url(source.get("MIRA_SERVER_URL")),
            transcript_timeout=parse_float(source.get("MIRA_TRANSCRIPT_TIMEOUT_SECONDS"), 10.0),
            timing=timing,
            llm=llm,
            location=location,
            mqtt=mqtt,
            sounds=sounds,
            log_transcripts=parse_bool(source.get("MIRA_LOG_TRANSCRIPTS"), False),
            session_idle_seconds=max(60, parse_int(source.get("MIRA_SESSION_IDLE_SECONDS"), 3600)),
            notification_history=max(1, parse_int(source.get("MIRA_NOTIFICATION_HISTORY"), 50)),
            wake_phrases=wake_phrases,
        )


DEFAULT_START_LISTENING_SOUND_URL = "https://mira.augmentos.cloud/start.mp3"
DEFAULT_PROCESSING_SOUND_URL = "https://mira.augmentos.cloud/popping.mp3"

DEFAULT_SYSTEM_PROMPT = """You are Mira, a helpful assistant running on the user's smart glasses.
- Answers are shown on a tiny display or read aloud, so keep them to one or two
  short sentences unless the user explicitly asks for more detail.
- Use the provided location and time context when the question depends on it.
- When a photo from the glasses camera is attached, it shows what the user is
  looking at; use it to answer questions about "this" or "that".
- Never invent facts. If you are unsure, say so briefly."""


def _ms(value: str | None, default_ms: int) -> float:
    return max(0, parse_int(value, default_ms)) / 1000.0


def _lower_or_none(value: str | None) -> str | None:
    stripped = strip_or_none(value)
    return stripped.lower() if stripped else None
