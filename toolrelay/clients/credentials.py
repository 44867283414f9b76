"""Resolution of provider API keys and authentication headers."""

import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, Field

from toolrelay.errors import CredentialError
from toolrelay.utils.logging import get_logger

logger = get_logger(__name__)

CredentialSource = Literal["request", "caller", "environment"]


@dataclass(frozen=True)
class ProviderAuth:
    """How a provider expects to be authenticated."""

    env_var: str
    header_name: str = "Authorization"
    bearer: bool = True
    headers: dict[str, str] = field(default_factory=dict)


PROVIDER_AUTH: dict[str, ProviderAuth] = {
    "anthropic": ProviderAuth(
        env_var="ANTHROPIC_API_KEY",
        header_name="x-api-key",
        bearer=False,
        headers={"anthropic-version": "2023-06-01"},
    ),
    "openai": ProviderAuth(env_var="OPENAI_API_KEY"),
    "openrouter": ProviderAuth(env_var="OPENROUTER_API_KEY"),
    "google": ProviderAuth(env_var="GOOGLE_API_KEY", header_name="x-goog-api-key", bearer=False),
}


def provider_auth(provider_id: str) -> ProviderAuth:
    """Auth requirements for a provider; unknown providers use a bearer token from ``<PROVIDER>_API_KEY``."""
    return PROVIDER_AUTH.get(provider_id, ProviderAuth(env_var=f"{provider_id.upper()}_API_KEY"))


class Credentials(BaseModel):
    """Resolved credentials for one provider request."""

    model_config = {"frozen": True}

    provider: str
    api_key: str = Field(repr=False)
    headers: dict[str, str] = Field(default_factory=dict, repr=False)
    source: CredentialSource


class CredentialResolver:
    """Resolves credentials from per-request overrides, per-caller overrides, then the environment.

    Per-caller overrides live on the resolver instance, keyed by caller
    identity, so independent resolvers never share state.
    """

    def __init__(self, environ: Mapping[str, str] | None = None):
        """Initialize the resolver.

        Args:
            environ: Environment to read keys from (defaults to ``os.environ``)
        """
        self._environ = environ
        self._caller_keys: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def set_caller_key(self, caller: str, provider_id: str, api_key: str) -> None:
        """Override the key used for ``provider_id`` whenever ``caller`` resolves."""
        if not api_key or not api_key.strip():
            raise CredentialError(f"Empty API key for provider {provider_id}")
        with self._lock:
            self._caller_keys[(caller, provider_id)] = api_key

    def clear_caller_keys(self, caller: str, provider_id: str | None = None) -> None:
        with self._lock:
            for key in [key for key in self._caller_keys if key[0] == caller]:
                if provider_id is None or key[1] == provider_id:
                    del self._caller_keys[key]

    def resolve(
        self,
        provider_id: str,
        overrides: Mapping[str, str] | None = None,
        caller: str | None = None,
    ) -> Credentials:
        """Resolve the API key and headers for a provider.

        Args:
            provider_id: Provider name, e.g. "anthropic"
            overrides: Per-request values; ``api_key`` or ``<provider>_api_key``
            caller: Identity whose caller overrides apply

        Raises:
            CredentialError: If no non-empty key is found
        """
        auth = provider_auth(provider_id)
        api_key, source = self._find_key(provider_id, auth, overrides or {}, caller)
        if api_key is None:
            raise CredentialError(f"{auth.env_var} environment variable is required")

        header_value = f"Bearer {api_key}" if auth.bearer else api_key
        logger.debug(f"Resolved {provider_id} credentials from {source}")
        return Credentials(
            provider=provider_id,
            api_key=api_key,
            headers={**auth.headers, auth.header_name: header_value},
            source=source,
        )

    def _find_key(
        self, provider_id: str, auth: ProviderAuth, overrides: Mapping[str, str], caller: str | None
    ) -> tuple[str | None, CredentialSource]:
        for name in ("api_key", f"{provider_id}_api_key"):
            if _usable(overrides.get(name)):
                return overrides[name], "request"

        if caller is not None:
            with self._lock:
                caller_key = self._caller_keys.get((caller, provider_id))
            if _usable(caller_key):
                return caller_key, "caller"

        environ = self._environ if self._environ is not None else os.environ
        env_key = environ.get(auth.env_var)
        if _usable(env_key):
            return env_key, "environment"
        return None, "environment"


def _usable(value: str | None) -> bool:
    return isinstance(value, str) and bool(value.strip())
