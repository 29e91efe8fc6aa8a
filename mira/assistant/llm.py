"""Chat-completion clients for the supported model providers."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from mira.location_resolver import UNKNOWN_LOCATION, LocationContext

from .config import LLMConfig

LOGGER = logging.getLogger("mira-assistant.llm")

# Returned instead of an answer when a collaborator tool has taken over the display.
CONTROL_SIGNAL = "GIVE_APP_CONTROL_OF_TOOL_RESPONSE"
CONTROL_EVENTS = {"app_control", "give_app_control"}


class LLMError(RuntimeError):
    """Model call failed or returned an unusable body."""


@dataclass
class ModelQuery:
    query: str
    photo: Any = None
    location_context: LocationContext = UNKNOWN_LOCATION
    notifications: Sequence[dict[str, Any]] = field(default_factory=list)


class LLMProvider:
    name = "base"

    def __init__(
        self,
        model: str,
        api_key: str,
        config: LLMConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        if not api_key:
            raise ValueError(f"{self.name} API key is not set")
        self.model = model
        self.api_key = api_key
        self.config = config
        self._logger = logger or LOGGER

    async def invoke(self, query: ModelQuery) -> str:
        payload = self._build_payload(query)
        try:
            response_text = await asyncio.to_thread(self._call_api, payload)
        except httpx.HTTPStatusError as exc:
            raise LLMError(f"{self.name} HTTP error: {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise LLMError(f"{self.name} request failed: {exc}") from exc
        return _parse_model_response(response_text)

    def _build_payload(self, query: ModelQuery) -> dict[str, Any]:
        raise NotImplementedError

    def _call_api(self, payload: dict[str, Any]) -> str:
        raise NotImplementedError

    def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        with httpx.Client(timeout=self.config.timeout) as client:
            response = client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            try:
                parsed = response.json()
            except json.JSONDecodeError as exc:
                raise LLMError(f"{self.name} returned malformed JSON") from exc
        if not isinstance(parsed, dict):
            raise LLMError(f"{self.name} returned an unexpected body")
        return parsed

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"


def _parse_model_response(response_text: str) -> str:
    text = (response_text or "").strip()
    if not text.startswith("{"):
        return text
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return text
    if not isinstance(parsed, dict):
        return text
    event = parsed.get("event")
    if isinstance(event, str) and event.strip().lower() in CONTROL_EVENTS:
        return CONTROL_SIGNAL
    answer = parsed.get("response")
    if isinstance(answer, str):
        return answer.strip()
    return text


def _format_location(location: LocationContext) -> str:
    if location.is_unknown:
        return "The user's location is unknown."
    tz = location.timezone
    lines = [f"The user is in {location.city}, {location.state}, {location.country}."]
    if tz.name != "Unknown":
        local = datetime.now(timezone(timedelta(seconds=tz.offset_sec)))
        lines.append(f"Their timezone is {tz.name} ({tz.short_name}); local time is {local:%A %Y-%m-%d %H:%M}.")
    return " ".join(lines)


def _format_notifications(notifications: Sequence[dict[str, Any]]) -> str:
    lines = []
    for notification in notifications:
        if not isinstance(notification, dict):
            continue
        app = notification.get("appName") or notification.get("app_name") or notification.get("app") or ""
        title = notification.get("title") or ""
        body = notification.get("content") or notification.get("text") or ""
        summary = " ".join(part for part in (str(title), str(body)) if part).strip()
        if summary:
            lines.append(f"- {app}: {summary}" if app else f"- {summary}")
    return "\n".join(lines)


def _format_system_prompt(config: LLMConfig, query: ModelQuery) -> str:
    sections = [config.system_prompt.strip(), _format_location(query.location_context)]
    notifications = _format_notifications(query.notifications)
    if notifications:
        sections.append(f"Recent phone notifications:\n{notifications}")
    if query.photo is not None:
        sections.append("A photo from the user's glasses camera is attached.")
    return "\n\n".join(section for section in sections if section)


def _photo_base64(photo: Any) -> tuple[str, str] | None:
    data = getattr(photo, "data", None)
    if not data:
        return None
    mime_type = getattr(photo, "mime_type", None) or "image/jpeg"
    return mime_type, base64.b64encode(data).decode("ascii")


def _openai_messages(config: LLMConfig, query: ModelQuery, *, with_photo: bool = True) -> list[dict[str, Any]]:
    user_content: list[dict[str, Any]] = [{"type": "text", "text": query.query.strip()}]
    encoded = _photo_base64(query.photo) if with_photo else None
    if encoded:
        mime_type, data = encoded
        user_content.append({"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{data}"}})
    return [
        {"role": "system", "content": _format_system_prompt(config, query)},
        {"role": "user", "content": user_content},
    ]


def _first_choice_content(parsed: dict[str, Any]) -> str:
    choices = parsed.get("choices") or []
    if not choices:
        raise LLMError("LLM response missing choices")
    message = choices[0].get("message") or {}
    content = message.get("content")
    if not content:
        raise LLMError("LLM response missing content")
    return str(content)


class OpenAIProvider(LLMProvider):
    """Call OpenAI chat completion endpoints."""

    name = "openai"

    def _build_payload(self, query: ModelQuery) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": _openai_messages(self.config, query),
        }
        if self.model.startswith("gpt-5"):
            # gpt-5 models take max_completion_tokens and a fixed temperature.
            payload["max_completion_tokens"] = self.config.max_tokens
        else:
            payload["max_tokens"] = self.config.max_tokens
            payload["temperature"] = self.config.temperature
        return payload

    def _endpoint(self) -> str:
        return f"{self.config.openai_base_url.rstrip('/')}/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _call_api(self, payload: dict[str, Any]) -> str:
        return _first_choice_content(self._post(self._endpoint(), payload, self._headers()))


class AzureOpenAIProvider(OpenAIProvider):
    """Call an Azure OpenAI deployment."""

    name = "azure"

    def __init__(
        self,
        model: str,
        api_key: str,
        config: LLMConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(model, api_key, config, logger)
        if not config.azure_instance_name:
            raise ValueError("AZURE_OPENAI_API_INSTANCE_NAME is not set")
        self.deployment = config.azure_deployment_name or model

    def _endpoint(self) -> str:
        return (
            f"https://{self.config.azure_instance_name}.openai.azure.com/openai/deployments/"
            f"{self.deployment}/chat/completions?api-version={self.config.azure_api_version}"
        )

    def _headers(self) -> dict[str, str]:
        return {"api-key": self.api_key, "Content-Type": "application/json"}


class PerplexityProvider(OpenAIProvider):
    """Call Perplexity's OpenAI-compatible endpoint (text only)."""

    name = "perplexity"

    def _build_payload(self, query: ModelQuery) -> dict[str, Any]:
        messages = _openai_messages(self.config, query, with_photo=False)
        messages[1]["content"] = query.query.strip()
        return {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }

    def _endpoint(self) -> str:
        return f"{self.config.perplexity_base_url.rstrip('/')}/chat/completions"


class AnthropicProvider(LLMProvider):
    """Call the Anthropic Messages API."""

    name = "anthropic"

    def _build_payload(self, query: ModelQuery) -> dict[str, Any]:
        content: list[dict[str, Any]] = []
        encoded = _photo_base64(query.photo)
        if encoded:
            mime_type, data = encoded
            content.append({"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": data}})
        content.append({"type": "text", "text": query.query.strip()})
        return {
            "model": self.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "system": _format_system_prompt(self.config, query),
            "messages": [{"role": "user", "content": content}],
        }

    def _call_api(self, payload: dict[str, Any]) -> str:
        parsed = self._post(
            f"{self.config.anthropic_base_url.rstrip('/')}/messages",
            payload,
            {
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
        )
        texts = [
            block.get("text", "")
            for block in parsed.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        text = "".join(texts).strip()
        if not text:
            raise LLMError("LLM response missing content")
        return text


class GoogleProvider(LLMProvider):
    """Call Google Gemini (Generative Language) models."""

    name = "google"

    def _build_payload(self, query: ModelQuery) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"text": query.query.strip()}]
        encoded = _photo_base64(query.photo)
        if encoded:
            mime_type, data = encoded
            parts.append({"inline_data": {"mime_type": mime_type, "data": data}})
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_tokens,
            },
            "system_instruction": {"parts": [{"text": _format_system_prompt(self.config, query)}]},
        }

    def _call_api(self, payload: dict[str, Any]) -> str:
        endpoint = f"{self.config.google_base_url.rstrip('/')}/models/{self.model}:generateContent"
        parsed = self._post(
            endpoint,
            payload,
            {"Content-Type": "application/json", "x-goog-api-key": self.api_key},
        )
        for candidate in parsed.get("candidates") or []:
            content = candidate.get("content") or {}
            if not isinstance(content, dict):
                continue
            for part in content.get("parts") or []:
                if isinstance(part, dict):
                    text = part.get("text")
                    if isinstance(text, str) and text.strip():
                        return text

        prompt_feedback = parsed.get("promptFeedback")
        if isinstance(prompt_feedback, dict):
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                raise LLMError(f"Gemini blocked prompt: {block_reason}")
        raise LLMError("LLM response missing content")


PROVIDER_CLASSES: dict[str, type[LLMProvider]] = {
    "openai": OpenAIProvider,
    "azure": AzureOpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
    "perplexity": PerplexityProvider,
}


def build_llm_provider(
    provider: str,
    model: str,
    api_key: str,
    config: LLMConfig,
    logger: logging.Logger | None = None,
) -> LLMProvider:
    """Instantiate the client for ``provider``; raises ValueError when it cannot be built."""
    try:
        cls = PROVIDER_CLASSES[provider]
    except KeyError as exc:
        raise ValueError(f"Unsupported LLM provider: {provider}") from exc
    return cls(model, api_key, config, logger)
