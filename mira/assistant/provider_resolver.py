"""
Model provider resolution with safe degradation

Provider and model are each read from three layers, highest priority first:
the session's settings, the process environment, then the built-in default.
Blank values count as unset. The credential is layered the same way: session
key, provider-specific environment key, then the generic ``LLM_API_KEY``.

Anything that prevents the configured selection from producing a client
(unknown provider, a model the provider does not serve, no usable credential,
a constructor that rejects its configuration, or an error while reading
settings) falls through a fixed degrade chain that only uses
provider-specific environment credentials. If the whole chain fails the
resolver returns ``UNAVAILABLE``; it never raises.

Built clients are cached per session until ``invalidate`` is called.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import LLMConfig
from .llm import LLMProvider, build_llm_provider
from .settings import LLM_API_KEY, LLM_MODEL, LLM_PROVIDER

LOGGER = logging.getLogger("mira-assistant.provider")


class Provider(str, Enum):
    AZURE = "azure"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    PERPLEXITY = "perplexity"


class SelectionSource(str, Enum):
    USER_SETTING = "user_setting"
    ENVIRONMENT = "environment"
    DEFAULT = "default"
    FALLBACK = "fallback"
    UNAVAILABLE = "unavailable"


SUPPORTED_MODELS: dict[Provider, tuple[str, ...]] = {
    Provider.AZURE: ("gpt-4o", "gpt-4o-mini", "gpt-5", "gpt-5-mini"),
    Provider.OPENAI: ("gpt-4o", "gpt-4o-mini", "gpt-5", "gpt-5-mini"),
    Provider.ANTHROPIC: (
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-5-sonnet-20250108",
    ),
    Provider.GOOGLE: ("gemini-pro", "gemini-2.0-flash-exp", "gemini-2.0-flash-thinking-exp"),
    Provider.PERPLEXITY: ("sonar", "sonar-pro"),
}

DEFAULT_MODELS: dict[Provider, str] = {
    Provider.AZURE: "gpt-4o",
    Provider.OPENAI: "gpt-4o",
    Provider.ANTHROPIC: "claude-3-5-sonnet-20241022",
    Provider.GOOGLE: "gemini-2.0-flash-exp",
    Provider.PERPLEXITY: "sonar",
}

DEFAULT_PROVIDER = Provider.OPENAI
DEFAULT_MODEL = DEFAULT_MODELS[DEFAULT_PROVIDER]

DEGRADE_CHAIN: tuple[tuple[Provider, str], ...] = (
    (Provider.OPENAI, "gpt-4o-mini"),
    (Provider.ANTHROPIC, "claude-3-5-haiku-20241022"),
    (Provider.GOOGLE, "gemini-2.0-flash-exp"),
    (Provider.PERPLEXITY, "sonar"),
    (Provider.AZURE, "gpt-4o-mini"),
)

# Lower rank wins.
_LAYER_RANK = {
    SelectionSource.USER_SETTING: 0,
    SelectionSource.ENVIRONMENT: 1,
    SelectionSource.DEFAULT: 2,
}

_PLACEHOLDER_PATTERN = re.compile(
    r"^(?:<.*>|\$\{.*\}|your[-_ ]?.*|.*(?:changeme|change[-_]me|placeholder|example|replace[-_]?me).*"
    r"|x{3,}.*|\*+|\.{3,}|sk-\.\.\.|none|null|undefined|todo|tbd)$",
    re.IGNORECASE,
)
MIN_CREDENTIAL_LENGTH = 11

ClientFactory = Callable[..., LLMProvider]


def is_usable_credential(value: str | None) -> bool:
    """Reject blanks, short strings and obvious template placeholders."""
    if value is None:
        return False
    candidate = value.strip()
    if len(candidate) < MIN_CREDENTIAL_LENGTH:
        return False
    return not _PLACEHOLDER_PATTERN.match(candidate)


@dataclass(frozen=True)
class ProviderSelection:
    provider: Provider | None
    model: str | None
    api_key: str | None = field(repr=False)
    source: SelectionSource
    reason: str | None = None

    @property
    def available(self) -> bool:
        return self.provider is not None and self.source is not SelectionSource.UNAVAILABLE

    def describe(self) -> str:
        if not self.available or self.provider is None:
            return "unavailable"
        return f"{self.provider.value}/{self.model} ({self.source.value})"


UNAVAILABLE = ProviderSelection(provider=None, model=None, api_key=None, source=SelectionSource.UNAVAILABLE)


class SelectionRejected(ValueError):
    """The configured selection cannot be used as-is."""


def _read_setting(settings: Any, key: str) -> str | None:
    if settings is None:
        return None
    if hasattr(settings, "get_str"):
        return settings.get_str(key)
    if isinstance(settings, Mapping):
        value = settings.get(key)
        if value is None:
            return None
        text = str(value).strip()
        return text or None
    raise TypeError(f"Unsupported settings object: {type(settings).__name__}")


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    text = value.strip()
    return text or None


class ProviderResolver:
    """Resolves provider selections and caches built clients per session."""

    def __init__(
        self,
        config: LLMConfig,
        *,
        client_factory: ClientFactory = build_llm_provider,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._client_factory = client_factory
        self.logger = logger or LOGGER
        self._cache: dict[str, tuple[ProviderSelection, LLMProvider]] = {}

    # ----------------------------------------------------------------- public

    def resolve(self, session_id: str, settings: Any = None) -> ProviderSelection:
        selection, _client = self._resolve_with_client(session_id, settings)
        return selection

    def client_for(self, session_id: str, settings: Any = None) -> tuple[ProviderSelection, LLMProvider | None]:
        cached = self._cache.get(session_id)
        if cached is not None:
            return cached
        selection, client = self._resolve_with_client(session_id, settings)
        if client is not None and selection.available:
            self._cache[session_id] = (selection, client)
            self.logger.info("[provider] Session %s using %s", session_id, selection.describe())
        return selection, client

    def invalidate(self, session_id: str | None = None) -> None:
        if session_id is None:
            if self._cache:
                self.logger.debug("[provider] Dropping %d cached client(s)", len(self._cache))
            self._cache.clear()
            return
        if self._cache.pop(session_id, None) is not None:
            self.logger.debug("[provider] Dropped cached client for session %s", session_id)

    def cached_sessions(self) -> list[str]:
        return sorted(self._cache)

    # --------------------------------------------------------------- internal

    def _resolve_with_client(self, session_id: str, settings: Any) -> tuple[ProviderSelection, LLMProvider | None]:
        try:
            selection = self._configured_selection(settings)
            client = self._build(selection)
            return selection, client
        except SelectionRejected as exc:
            self.logger.warning("[provider] Session %s: %s; trying fallbacks", session_id, exc)
            reason = str(exc)
        except ValueError as exc:
            self.logger.warning("[provider] Session %s: client rejected configuration: %s", session_id, exc)
            reason = str(exc)
        except Exception as exc:
            self.logger.exception("[provider] Session %s: error reading provider configuration", session_id)
            reason = str(exc) or type(exc).__name__
        return self._degrade(session_id, reason)

    def _configured_selection(self, settings: Any) -> ProviderSelection:
        provider_name, provider_layer = self._layered(
            _read_setting(settings, LLM_PROVIDER), self.config.provider, DEFAULT_PROVIDER.value
        )
        try:
            provider = Provider(provider_name.lower())
        except ValueError as exc:
            raise SelectionRejected(f"unknown provider {provider_name!r}") from exc

        model, model_layer = self._layered(_read_setting(settings, LLM_MODEL), self.config.model, None)
        supported = SUPPORTED_MODELS[provider]
        if model is None or model_layer is SelectionSource.DEFAULT:
            model = DEFAULT_MODELS[provider]
            model_layer = SelectionSource.DEFAULT
        elif model not in supported:
            if _LAYER_RANK[model_layer] > _LAYER_RANK[provider_layer]:
                # Model came from a weaker layer than the provider; use the provider's default.
                self.logger.info(
                    "[provider] Model %s (%s) is not served by %s; using %s",
                    model,
                    model_layer.value,
                    provider.value,
                    DEFAULT_MODELS[provider],
                )
                model = DEFAULT_MODELS[provider]
                model_layer = SelectionSource.DEFAULT
            else:
                raise SelectionRejected(f"model {model!r} is not supported by {provider.value}")

        api_key = self._credential(provider, settings)
        if api_key is None:
            raise SelectionRejected(f"no usable credential for {provider.value}")

        source = min((provider_layer, model_layer), key=_LAYER_RANK.__getitem__)
        return ProviderSelection(provider=provider, model=model, api_key=api_key, source=source)

    @staticmethod
    def _layered(
        session_value: str | None, env_value: str | None, default: str | None
    ) -> tuple[str | None, SelectionSource]:
        session_value = _blank_to_none(session_value)
        if session_value is not None:
            return session_value, SelectionSource.USER_SETTING
        env_value = _blank_to_none(env_value)
        if env_value is not None:
            return env_value, SelectionSource.ENVIRONMENT
        return default, SelectionSource.DEFAULT

    def _credential(self, provider: Provider, settings: Any) -> str | None:
        candidates = (
            ("session setting", _read_setting(settings, LLM_API_KEY)),
            ("provider environment", self.config.env_credential(provider.value)),
            ("LLM_API_KEY", self.config.generic_api_key),
        )
        for label, value in candidates:
            if value is None:
                continue
            if is_usable_credential(value):
                return value.strip()
            self.logger.warning("[provider] Ignoring placeholder %s credential for %s", label, provider.value)
        return None

    def _build(self, selection: ProviderSelection) -> LLMProvider:
        if selection.provider is None or selection.model is None or selection.api_key is None:
            raise ValueError("incomplete provider selection")
        return self._client_factory(
            selection.provider.value, selection.model, selection.api_key, self.config, self.logger
        )

    def _degrade(self, session_id: str, reason: str) -> tuple[ProviderSelection, LLMProvider | None]:
        for provider, model in DEGRADE_CHAIN:
            api_key = self.config.env_credential(provider.value)
            if api_key is None or not is_usable_credential(api_key):
                continue
            selection = ProviderSelection(
                provider=provider,
                model=model,
                api_key=api_key.strip(),
                source=SelectionSource.FALLBACK,
                reason=reason,
            )
            try:
                client = self._build(selection)
            except ValueError as exc:
                self.logger.debug("[provider] Fallback %s/%s unavailable: %s", provider.value, model, exc)
                continue
            except Exception:
                self.logger.exception("[provider] Fallback %s/%s client failed to build", provider.value, model)
                continue
            self.logger.info("[provider] Session %s falling back to %s/%s", session_id, provider.value, model)
            return selection, client

        self.logger.error("[provider] Session %s: no language model provider could be configured", session_id)
        return ProviderSelection(
            provider=None, model=None, api_key=None, source=SelectionSource.UNAVAILABLE, reason=reason
        ), None
