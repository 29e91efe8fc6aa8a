"""Tests for provider/model/credential resolution and the degrade chain."""

from __future__ import annotations

from unittest.mock import Mock

import pytest
from mira.assistant.llm import AnthropicProvider, OpenAIProvider, build_llm_provider
from mira.assistant.provider_resolver import (
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    SUPPORTED_MODELS,
    UNAVAILABLE,
    Provider,
    ProviderResolver,
    ProviderSelection,
    SelectionSource,
    is_usable_credential,
)
from mira.assistant.settings import SessionSettings

OPENAI_KEY = "sk-openai-0123456789abcdef"
ANTHROPIC_KEY = "sk-ant-0123456789abcdef"
USER_KEY = "sk-user-provided-0123456789"


@pytest.fixture
def resolver_for(make_llm_config):
    def _create(**overrides) -> ProviderResolver:
        return ProviderResolver(make_llm_config(**overrides))

    return _create


# ===================================================================
# Credential filtering
# ===================================================================


class TestUsableCredential:
    @pytest.mark.parametrize(
        "value",
        [
            None,
            "",
            "   ",
            "short-key",
            "0123456789",
            "your-api-key-here",
            "YOUR_OPENAI_KEY",
            "<insert key here>",
            "${OPENAI_API_KEY}",
            "xxxxxxxxxxxxxxxx",
            "please-changeme-now",
            "placeholder-value",
            "undefined",
        ],
    )
    def test_rejected(self, value):
        assert not is_usable_credential(value)

    @pytest.mark.parametrize("value", [OPENAI_KEY, ANTHROPIC_KEY, "AIzaSyA-0123456789abcdef", "01234567890"])
    def test_accepted(self, value):
        assert is_usable_credential(value)


# ===================================================================
# Layered resolution
# ===================================================================


class TestResolve:
    def test_builtin_default_when_nothing_configured(self, resolver_for):
        selection = resolver_for(openai_api_key=OPENAI_KEY).resolve("s1", SessionSettings())

        assert selection.available
        assert (selection.provider, selection.model) == (DEFAULT_PROVIDER, DEFAULT_MODEL)
        assert selection.source is SelectionSource.DEFAULT
        assert selection.api_key == OPENAI_KEY

    def test_environment_layer(self, resolver_for):
        resolver = resolver_for(provider="anthropic", model="claude-3-5-haiku-20241022", anthropic_api_key=ANTHROPIC_KEY)
        selection = resolver.resolve("s1", SessionSettings())

        assert selection.provider is Provider.ANTHROPIC
        assert selection.model == "claude-3-5-haiku-20241022"
        assert selection.source is SelectionSource.ENVIRONMENT

    def test_session_setting_wins(self, resolver_for):
        resolver = resolver_for(provider="openai", model="gpt-4o", perplexity_api_key="pplx-0123456789abcdef")
        settings = SessionSettings({"llm_provider": "perplexity", "llm_model": "sonar-pro"})

        selection = resolver.resolve("s1", settings)

        assert (selection.provider, selection.model) == (Provider.PERPLEXITY, "sonar-pro")
        assert selection.source is SelectionSource.USER_SETTING

    def test_blank_settings_are_absent(self, resolver_for):
        resolver = resolver_for(provider="anthropic", anthropic_api_key=ANTHROPIC_KEY)
        settings = SessionSettings({"llm_provider": "   ", "llm_model": ""})

        selection = resolver.resolve("s1", settings)

        assert selection.provider is Provider.ANTHROPIC
        assert selection.model == "claude-3-5-sonnet-20241022"

    def test_lower_layer_model_replaced_by_provider_default(self, resolver_for):
        resolver = resolver_for(model="gpt-4o", anthropic_api_key=ANTHROPIC_KEY)
        settings = SessionSettings({"llm_provider": "anthropic"})

        selection = resolver.resolve("s1", settings)

        assert selection.provider is Provider.ANTHROPIC
        assert selection.model == "claude-3-5-sonnet-20241022"
        assert selection.source is SelectionSource.USER_SETTING

    def test_provider_case_insensitive(self, resolver_for):
        selection = resolver_for(openai_api_key=OPENAI_KEY).resolve("s1", {"llm_provider": "OpenAI"})
        assert selection.provider is Provider.OPENAI

    def test_model_from_higher_layer_kept_with_default_provider(self, resolver_for):
        settings = SessionSettings({"llm_model": "gpt-5-mini"})
        selection = resolver_for(openai_api_key=OPENAI_KEY).resolve("s1", settings)

        assert (selection.provider, selection.model) == (Provider.OPENAI, "gpt-5-mini")
        assert selection.source is SelectionSource.USER_SETTING


class TestCredentials:
    def test_session_key_preferred(self, resolver_for):
        settings = SessionSettings({"llm_api_key": USER_KEY})
        selection = resolver_for(openai_api_key=OPENAI_KEY).resolve("s1", settings)
        assert selection.api_key == USER_KEY

    def test_placeholder_session_key_skipped(self, resolver_for):
        settings = SessionSettings({"llm_api_key": "your-api-key"})
        selection = resolver_for(openai_api_key=OPENAI_KEY).resolve("s1", settings)
        assert selection.api_key == OPENAI_KEY

    def test_generic_key_used_last(self, resolver_for):
        selection = resolver_for(generic_api_key=USER_KEY).resolve("s1", SessionSettings())

        assert selection.source is SelectionSource.DEFAULT
        assert selection.api_key == USER_KEY

    def test_api_key_hidden_from_repr(self, resolver_for):
        selection = resolver_for(openai_api_key=OPENAI_KEY).resolve("s1")
        assert OPENAI_KEY not in repr(selection)

    def test_describe(self, resolver_for):
        selection = resolver_for(openai_api_key=OPENAI_KEY).resolve("s1")

        assert selection.describe() == "openai/gpt-4o (default)"
        assert UNAVAILABLE.describe() == "unavailable"

    def test_incomplete_selection_not_built(self, resolver_for):
        resolver = resolver_for(openai_api_key=OPENAI_KEY)
        incomplete = ProviderSelection(
            provider=Provider.OPENAI, model="gpt-4o", api_key=None, source=SelectionSource.ENVIRONMENT
        )

        with pytest.raises(ValueError, match="incomplete"):
            resolver._build(incomplete)


# ===================================================================
# Degrade chain
# ===================================================================


class TestDegradeChain:
    def test_unsupported_model_never_returned(self, resolver_for):
        resolver = resolver_for(openai_api_key=OPENAI_KEY, anthropic_api_key=ANTHROPIC_KEY)
        settings = SessionSettings({"llm_provider": "anthropic", "llm_model": "gpt-4o"})

        selection = resolver.resolve("s1", settings)

        assert (selection.provider, selection.model) != (Provider.ANTHROPIC, "gpt-4o")
        assert (selection.provider, selection.model) == (Provider.OPENAI, "gpt-4o-mini")
        assert selection.source is SelectionSource.FALLBACK
        assert "not supported" in (selection.reason or "")

    def test_same_layer_model_mismatch_rejected(self, resolver_for):
        resolver = resolver_for(provider="openai", model="sonar", anthropic_api_key=ANTHROPIC_KEY, openai_api_key=OPENAI_KEY)

        selection = resolver.resolve("s1", SessionSettings())

        assert (selection.provider, selection.model) == (Provider.OPENAI, "gpt-4o-mini")
        assert selection.source is SelectionSource.FALLBACK

    def test_unknown_provider_degrades(self, resolver_for):
        resolver = resolver_for(anthropic_api_key=ANTHROPIC_KEY)
        selection = resolver.resolve("s1", SessionSettings({"llm_provider": "ollama"}))

        assert (selection.provider, selection.model) == (Provider.ANTHROPIC, "claude-3-5-haiku-20241022")

    def test_missing_credential_degrades(self, resolver_for):
        resolver = resolver_for(provider="google", anthropic_api_key=ANTHROPIC_KEY)
        selection = resolver.resolve("s1", SessionSettings())

        assert selection.provider is Provider.ANTHROPIC
        assert selection.source is SelectionSource.FALLBACK

    def test_chain_uses_only_provider_specific_credentials(self, resolver_for):
        resolver = resolver_for(generic_api_key=USER_KEY)
        selection = resolver.resolve("s1", SessionSettings({"llm_provider": "openai", "llm_model": "sonar"}))

        assert not selection.available
        assert selection.source is SelectionSource.UNAVAILABLE

    def test_constructor_failure_moves_down_chain(self, resolver_for):
        # Azure without an instance name cannot be built; nothing else is configured.
        resolver = resolver_for(azure_api_key="azure-0123456789abcdef")
        selection, client = resolver.client_for("s1", SessionSettings({"llm_provider": "azure"}))

        assert not selection.available
        assert client is None

    def test_factory_value_error_skips_provider(self, make_llm_config):
        def _factory(provider, model, api_key, config, logger=None):
            if provider == "openai":
                raise ValueError("openai endpoint misconfigured")
            return build_llm_provider(provider, model, api_key, config, logger)

        resolver = ProviderResolver(
            make_llm_config(openai_api_key=OPENAI_KEY, anthropic_api_key=ANTHROPIC_KEY),
            client_factory=_factory,
        )

        selection, client = resolver.client_for("s1", SessionSettings())

        assert selection.provider is Provider.ANTHROPIC
        assert isinstance(client, AnthropicProvider)

    def test_factory_crash_skips_provider(self, make_llm_config):
        def _factory(provider, model, api_key, config, logger=None):
            if provider == "openai":
                raise RuntimeError("boom")
            return build_llm_provider(provider, model, api_key, config, logger)

        resolver = ProviderResolver(
            make_llm_config(openai_api_key=OPENAI_KEY, anthropic_api_key=ANTHROPIC_KEY),
            client_factory=_factory,
        )

        selection, client = resolver.client_for("s1", SessionSettings())

        assert selection.provider is Provider.ANTHROPIC
        assert selection.source is SelectionSource.FALLBACK
        assert isinstance(client, AnthropicProvider)

    def test_factory_crash_everywhere_is_unavailable(self, make_llm_config):
        def _factory(provider, model, api_key, config, logger=None):
            raise RuntimeError("boom")

        resolver = ProviderResolver(make_llm_config(openai_api_key=OPENAI_KEY), client_factory=_factory)

        selection = resolver.resolve("s1", SessionSettings())

        assert not selection.available
        assert selection.reason == "boom"

    def test_settings_error_degrades(self, resolver_for):
        settings = Mock()
        settings.get_str.side_effect = RuntimeError("settings unavailable")
        selection = resolver_for(openai_api_key=OPENAI_KEY).resolve("s1", settings)

        assert (selection.provider, selection.model) == (Provider.OPENAI, "gpt-4o-mini")
        assert selection.source is SelectionSource.FALLBACK

    def test_nothing_configured_is_unavailable_not_error(self, resolver_for):
        selection, client = resolver_for().client_for("s1", SessionSettings())

        assert selection.source is UNAVAILABLE.source
        assert selection.provider is None
        assert client is None

    def test_chain_models_are_supported(self):
        from mira.assistant.provider_resolver import DEGRADE_CHAIN

        for provider, model in DEGRADE_CHAIN:
            assert model in SUPPORTED_MODELS[provider]


# ===================================================================
# Client cache
# ===================================================================


class TestClientCache:
    def test_client_cached_per_session(self, resolver_for):
        resolver = resolver_for(openai_api_key=OPENAI_KEY)
        settings = SessionSettings()

        first = resolver.client_for("s1", settings)
        second = resolver.client_for("s1", settings)
        other = resolver.client_for("s2", settings)

        assert first[1] is second[1]
        assert other[1] is not first[1]
        assert isinstance(first[1], OpenAIProvider)
        assert resolver.cached_sessions() == ["s1", "s2"]

    def test_invalidate_one_session(self, resolver_for):
        resolver = resolver_for(openai_api_key=OPENAI_KEY, anthropic_api_key=ANTHROPIC_KEY)
        settings = SessionSettings()
        _, before = resolver.client_for("s1", settings)
        resolver.client_for("s2", settings)

        settings.update({"llm_provider": "anthropic"})
        assert resolver.client_for("s1", settings)[1] is before

        resolver.invalidate("s1")
        selection, after = resolver.client_for("s1", settings)

        assert selection.provider is Provider.ANTHROPIC
        assert isinstance(after, AnthropicProvider)
        assert resolver.cached_sessions() == ["s1", "s2"]

    def test_invalidate_all(self, resolver_for):
        resolver = resolver_for(openai_api_key=OPENAI_KEY)
        resolver.client_for("s1")
        resolver.client_for("s2")

        resolver.invalidate()

        assert resolver.cached_sessions() == []

    def test_unavailable_not_cached(self, resolver_for):
        resolver = resolver_for()
        resolver.client_for("s1")
        assert resolver.cached_sessions() == []
