"""Tests for credential resolution."""

from unittest.mock import patch

import pytest

from toolrelay.clients.credentials import CredentialResolver, provider_auth
from toolrelay.errors import CredentialError


class TestCredentialResolver:
    """Tests for CredentialResolver.resolve."""

    def test_environment(self):
        """Test that keys are read from the provider's environment variable."""
        resolver = CredentialResolver({"ANTHROPIC_API_KEY": "env-key"})

        credentials = resolver.resolve("anthropic")

        assert credentials.api_key == "env-key"
        assert credentials.source == "environment"

    def test_os_environ_by_default(self):
        """Test that the process environment is used when none is given."""
        with patch.dict("os.environ", {"OPENAI_API_KEY": "os-key"}):
            credentials = CredentialResolver().resolve("openai")

        assert credentials.api_key == "os-key"

    def test_request_override_wins(self):
        """Test that per-request keys take precedence over caller and environment keys."""
        resolver = CredentialResolver({"ANTHROPIC_API_KEY": "env-key"})
        resolver.set_caller_key("alice", "anthropic", "caller-key")

        credentials = resolver.resolve("anthropic", {"api_key": "request-key"}, caller="alice")

        assert credentials.api_key == "request-key"
        assert credentials.source == "request"

    def test_provider_specific_override(self):
        """Test that a provider-prefixed override key is accepted."""
        resolver = CredentialResolver({})

        credentials = resolver.resolve("openai", {"openai_api_key": "request-key"})

        assert credentials.api_key == "request-key"

    def test_caller_override_beats_environment(self):
        """Test that caller keys take precedence over the environment."""
        resolver = CredentialResolver({"ANTHROPIC_API_KEY": "env-key"})
        resolver.set_caller_key("alice", "anthropic", "caller-key")

        assert resolver.resolve("anthropic", caller="alice").api_key == "caller-key"
        assert resolver.resolve("anthropic", caller="bob").api_key == "env-key"
        assert resolver.resolve("anthropic").api_key == "env-key"

    def test_clear_caller_keys(self):
        """Test that clearing caller keys falls back to the environment."""
        resolver = CredentialResolver({"ANTHROPIC_API_KEY": "env-key"})
        resolver.set_caller_key("alice", "anthropic", "caller-key")

        resolver.clear_caller_keys("alice")

        assert resolver.resolve("anthropic", caller="alice").source == "environment"

    def test_resolvers_do_not_share_state(self):
        """Test that caller keys are scoped to their resolver."""
        first = CredentialResolver({})
        second = CredentialResolver({})
        first.set_caller_key("alice", "openai", "first-key")

        assert first.resolve("openai", caller="alice").api_key == "first-key"
        with pytest.raises(CredentialError):
            second.resolve("openai", caller="alice")

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_missing_key(self, value):
        """Test that missing or blank keys are an error naming the variable."""
        environ = {} if value is None else {"ANTHROPIC_API_KEY": value}

        with pytest.raises(CredentialError, match="ANTHROPIC_API_KEY environment variable is required"):
            CredentialResolver(environ).resolve("anthropic", {"api_key": ""})

    def test_blank_caller_key_rejected(self):
        """Test that a blank caller key cannot be set."""
        with pytest.raises(CredentialError):
            CredentialResolver({}).set_caller_key("alice", "openai", " ")


class TestProviderHeaders:
    """Tests for provider-specific authentication headers."""

    def test_anthropic_headers(self):
        """Test that Anthropic uses an API key header and a version header."""
        credentials = CredentialResolver({"ANTHROPIC_API_KEY": "k"}).resolve("anthropic")

        assert credentials.headers == {"x-api-key": "k", "anthropic-version": "2023-06-01"}

    def test_bearer_headers(self):
        """Test that OpenAI-style providers use a bearer token."""
        credentials = CredentialResolver({"OPENROUTER_API_KEY": "k"}).resolve("openrouter")

        assert credentials.headers == {"Authorization": "Bearer k"}

    def test_unknown_provider(self):
        """Test that unknown providers read <PROVIDER>_API_KEY."""
        assert provider_auth("mistral").env_var == "MISTRAL_API_KEY"

        credentials = CredentialResolver({"MISTRAL_API_KEY": "k"}).resolve("mistral")

        assert credentials.headers == {"Authorization": "Bearer k"}

    def test_key_is_hidden_from_repr(self):
        """Test that the key does not appear in the credentials repr."""
        credentials = CredentialResolver({"OPENAI_API_KEY": "sk-secret"}).resolve("openai")

        assert "sk-secret" not in repr(credentials)

    def test_credential_error_is_value_error(self):
        """Test that a missing key can be caught as ValueError."""
        with pytest.raises(ValueError):
            CredentialResolver({}).resolve("openai")
